"""WebDAV synchronization with mutual exclusion and debounce.

At most one sync body runs at a time. Guard check and acquisition happen
without an await in between, so concurrent triggers on the event loop
cannot both enter. The guard is released on every exit path.

Strategy per sync:
1. Export local state and download the remote export (404 -> none)
2. Import remote bookmarks whose URL is unknown locally
3. Compare content fingerprints: equal -> nothing to upload
4. Otherwise PUT the local export
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from bookmark_rag.core.errors import SyncError
from bookmark_rag.core.export import content_fingerprint, export_all_bookmarks, import_bookmarks
from bookmark_rag.core.jobs import JobStore
from bookmark_rag.core.settings import SYNC_SETTING_KEYS, SyncSettings
from bookmark_rag.core.storage import DB, now_iso
from bookmark_rag.providers.webdav import WebDAVClient

logger = logging.getLogger(__name__)

SYNC_DEBOUNCE_SECONDS = 5.0
ALARM_NAME = "webdav-sync"
ALARM_INITIAL_DELAY = 60.0


class SyncAction(str, Enum):
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    NO_CHANGE = "no-change"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class SyncResult:
    success: bool
    action: SyncAction
    message: str
    timestamp: str | None = None
    bookmark_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "action": self.action.value,
            "message": self.message,
        }
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        if self.bookmark_count is not None:
            data["bookmarkCount"] = self.bookmark_count
        return data


@dataclass
class SyncState:
    """Runtime guard owned by one SyncController."""

    is_syncing: bool = False
    # Monotonic time of the last finished attempt, None before the first
    last_sync_attempt_at: float | None = None

    def try_acquire(self, now: float, debounce_seconds: float, force: bool) -> SyncResult | None:
        """Enter the sync body, or return the skip result explaining why not."""
        if self.is_syncing:
            return SyncResult(success=True, action=SyncAction.SKIPPED, message="Sync already in progress")
        recent = self.last_sync_attempt_at is not None and now - self.last_sync_attempt_at < debounce_seconds
        if not force and recent:
            return SyncResult(success=True, action=SyncAction.SKIPPED, message="Sync debounced (too frequent)")
        self.is_syncing = True
        return None

    def release(self, now: float) -> None:
        self.is_syncing = False
        self.last_sync_attempt_at = now


def default_client_factory(settings: SyncSettings) -> WebDAVClient:
    return WebDAVClient(
        base_url=settings.webdav_url,
        path=settings.webdav_path,
        username=settings.webdav_username,
        password=settings.webdav_password,
    )


class SyncController:
    def __init__(
        self,
        db: DB,
        jobs: JobStore,
        client_factory: Callable[[SyncSettings], WebDAVClient] = default_client_factory,
        debounce_seconds: float = SYNC_DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        state: SyncState | None = None,
    ) -> None:
        self._db = db
        self._jobs = jobs
        self._client_factory = client_factory
        self._debounce_seconds = debounce_seconds
        self._clock = clock
        self.state = state or SyncState()

    def get_sync_status(self) -> dict[str, Any]:
        settings = SyncSettings.load(self._db)
        return {
            "isSyncing": self.state.is_syncing,
            "lastSyncTime": settings.webdav_last_sync_time or None,
            "lastSyncError": settings.webdav_last_sync_error or None,
        }

    async def test_connection(self) -> dict[str, Any]:
        """Check the stored server URL and credentials without syncing."""
        settings = SyncSettings.load(self._db)
        if not settings.webdav_url.strip():
            return {"success": False, "error": "WebDAV URL is required"}
        try:
            async with self._client_factory(settings) as client:
                return await client.test_connection()
        except SyncError as e:
            return {"success": False, "error": str(e)}

    async def trigger_sync_if_enabled(self) -> SyncResult | None:
        if not SyncSettings.load(self._db).is_configured:
            return None
        result = await self.perform_sync()
        if not result.success:
            logger.warning(f"Background sync failed: {result.message}")
        return result

    async def perform_sync(self, force: bool = False) -> SyncResult:
        settings = SyncSettings.load(self._db)
        if not settings.is_configured:
            return SyncResult(success=False, action=SyncAction.SKIPPED, message="WebDAV sync not configured")

        skipped = self.state.try_acquire(self._clock(), self._debounce_seconds, force)
        if skipped is not None:
            logger.debug(f"Sync skipped: {skipped.message}")
            return skipped

        try:
            result = await self._sync(settings)
            self._record_success(result.timestamp or now_iso())
            logger.info(f"Sync finished: {result.action.value} - {result.message}")
            return result
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.exception(f"WebDAV sync failed: {message}")
            self._record_error(message)
            return SyncResult(success=False, action=SyncAction.ERROR, message=message)
        finally:
            self.state.release(self._clock())

    async def _sync(self, settings: SyncSettings) -> SyncResult:
        async with self._client_factory(settings) as client:
            local = export_all_bookmarks(self._db)
            remote = await client.download()

            if remote is None:
                if local["bookmarkCount"] == 0:
                    return SyncResult(
                        success=True, action=SyncAction.NO_CHANGE, message="No bookmarks to sync", timestamp=now_iso()
                    )
                await client.upload(local)
                return self._uploaded(local)

            imported = 0
            local_urls = {b["url"] for b in local["bookmarks"]}
            remote_urls = {b.get("url") for b in remote.get("bookmarks") or [] if isinstance(b, dict)}
            if remote_urls - local_urls:
                result = import_bookmarks(self._db, self._jobs, remote, source_label="webdav-sync")
                imported = result.imported
                if imported:
                    local = export_all_bookmarks(self._db)

            if content_fingerprint(local) == content_fingerprint(remote):
                if imported:
                    return SyncResult(
                        success=True,
                        action=SyncAction.DOWNLOADED,
                        message=f"Imported {imported} bookmarks",
                        timestamp=now_iso(),
                        bookmark_count=imported,
                    )
                return SyncResult(
                    success=True,
                    action=SyncAction.NO_CHANGE,
                    message="Remote is up to date",
                    timestamp=now_iso(),
                    bookmark_count=local["bookmarkCount"],
                )

            await client.upload(local)
            if imported:
                return SyncResult(
                    success=True,
                    action=SyncAction.DOWNLOADED,
                    message=f"Imported {imported} bookmarks, uploaded {local['bookmarkCount']}",
                    timestamp=now_iso(),
                    bookmark_count=imported,
                )
            return self._uploaded(local)

    @staticmethod
    def _uploaded(data: dict[str, Any]) -> SyncResult:
        return SyncResult(
            success=True,
            action=SyncAction.UPLOADED,
            message=f"Uploaded {data['bookmarkCount']} bookmarks",
            timestamp=now_iso(),
            bookmark_count=data["bookmarkCount"],
        )

    def _record_success(self, timestamp: str) -> None:
        self._db.set_setting(SYNC_SETTING_KEYS["webdav_last_sync_time"], timestamp)
        self._db.set_setting(SYNC_SETTING_KEYS["webdav_last_sync_error"], "")

    def _record_error(self, message: str) -> None:
        try:
            self._db.set_setting(SYNC_SETTING_KEYS["webdav_last_sync_error"], message)
        except Exception:
            logger.exception("Could not persist sync error")


@dataclass
class SyncAlarm:
    """Recurring sync trigger: first fire after `initial_delay`, then every interval."""

    db: DB
    controller: SyncController
    initial_delay: float = ALARM_INITIAL_DELAY
    minute_seconds: float = 60.0
    _task: asyncio.Task | None = field(default=None, init=False, repr=False)

    @property
    def is_scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    def setup_sync_alarm(self) -> bool:
        """Clear the alarm and recreate it from current settings.

        Returns True if an alarm is now scheduled.
        """
        self.clear()
        settings = SyncSettings.load(self.db)
        if not settings.webdav_enabled or settings.webdav_sync_interval <= 0:
            logger.info("WebDAV sync alarm disabled")
            return False

        period = settings.webdav_sync_interval * self.minute_seconds
        self._task = asyncio.get_running_loop().create_task(self._run(period), name=ALARM_NAME)
        logger.info(f"WebDAV sync alarm set: every {settings.webdav_sync_interval} min")
        return True

    def clear(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self, period: float) -> None:
        await asyncio.sleep(self.initial_delay)
        while True:
            try:
                await self.controller.trigger_sync_if_enabled()
            except Exception:
                logger.exception("Scheduled sync failed")
            await asyncio.sleep(period)
