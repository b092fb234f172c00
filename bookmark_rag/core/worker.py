"""Background worker: wires pipeline, queue, sync and the message router."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from bookmark_rag.core.bulk_import import create_bulk_import, validate_single_url, validate_urls
from bookmark_rag.core.content_fetcher import ContentFetcher, get_fetcher
from bookmark_rag.core.embedding_providers import get_provider
from bookmark_rag.core.export import ImportResult, import_bookmarks
from bookmark_rag.core.extractor import TrafilaturaExtractor
from bookmark_rag.core.jobs import JobStatus, JobStore, JobType
from bookmark_rag.core.llm_providers import get_llm_provider
from bookmark_rag.core.messages import MessageError, MessageRouter, MessageType, require_str
from bookmark_rag.core.models import BookmarkStatus
from bookmark_rag.core.pipeline import PipelineEngine
from bookmark_rag.core.qa_generator import LLMQAGenerator
from bookmark_rag.core.queue import QueueProcessor, recover_interrupted
from bookmark_rag.core.settings import Settings, SyncSettings
from bookmark_rag.core.storage import DB
from bookmark_rag.core.webdav_sync import SyncAlarm, SyncController

logger = logging.getLogger(__name__)


class Worker:
    def __init__(
        self,
        db: DB,
        jobs: JobStore,
        pipeline: PipelineEngine,
        sync: SyncController | None = None,
        fetcher: ContentFetcher | None = None,
    ) -> None:
        self.db = db
        self.jobs = jobs
        self.sync = sync or SyncController(db, jobs)
        self.queue = QueueProcessor(db, pipeline, on_drained=self.sync.trigger_sync_if_enabled)
        self.alarm = SyncAlarm(db, self.sync)
        self.router = MessageRouter()
        self._fetcher = fetcher
        self._tasks: set[asyncio.Task] = set()
        self._register_handlers()

    @classmethod
    def from_settings(cls, settings: Settings, db: DB, jobs: JobStore) -> Worker:
        fetcher = get_fetcher(settings)
        pipeline = PipelineEngine(
            db=db,
            jobs=jobs,
            fetcher=fetcher,
            extractor=TrafilaturaExtractor(),
            qa_generator=LLMQAGenerator(get_llm_provider(settings), settings.api_content_max_chars, db),
            embeddings=get_provider(settings),
        )
        sync = SyncController(db, jobs, debounce_seconds=settings.sync_debounce_seconds)
        return cls(db, jobs, pipeline, sync=sync, fetcher=fetcher)

    def _register_handlers(self) -> None:
        self.router.register(MessageType.SAVE_FROM_PAGE, self.handle_save_from_page)
        self.router.register(MessageType.CREATE_FROM_URL_LIST, self.handle_create_from_url_list)
        self.router.register(MessageType.SYNC_TRIGGER, self.handle_sync_trigger)
        self.router.register(MessageType.SYNC_STATUS, self.handle_sync_status)
        self.router.register(MessageType.SYNC_UPDATE_SETTINGS, self.handle_update_settings)
        self.router.register(MessageType.SYNC_TEST_CONNECTION, self.handle_test_connection)
        self.router.register(MessageType.BOOKMARK_RETRY, self.handle_retry)

    # ==================== Lifecycle ====================

    async def initialize(self) -> None:
        """Recover interrupted work, schedule sync and start the queue."""
        recover_interrupted(self.db, self.jobs)
        self.jobs.cleanup_old_jobs()
        self.alarm.setup_sync_alarm()
        self.start_queue()

    async def shutdown(self) -> None:
        self.alarm.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._fetcher is not None:
            await self._fetcher.close()

    async def wait_idle(self) -> None:
        """Wait until all background work started so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start_queue(self) -> asyncio.Task:
        """Run a queue pass in the background."""
        return self._spawn(self.queue.start_processing_queue())

    # ==================== Message handlers ====================

    async def handle_save_from_page(self, message: dict[str, Any]) -> dict[str, Any]:
        check = validate_single_url(require_str(message, "url"))
        if not check.is_valid:
            raise MessageError(check.error or "Invalid URL")
        title = message.get("title") or ""
        html = message.get("html") or ""
        if not isinstance(title, str) or not isinstance(html, str):
            raise MessageError("'title' and 'html' must be strings")

        bookmark, updated = self.db.save_page(check.normalized, title, html)
        if not updated:
            self.jobs.create(
                JobType.MANUAL_ADD,
                status=JobStatus.COMPLETED,
                bookmark_id=bookmark.id,
                metadata={"url": bookmark.url, "title": bookmark.title},
            )
        logger.info(f"{'Updated' if updated else 'Saved'} bookmark {bookmark.id} ({bookmark.url})")
        self.start_queue()

        response: dict[str, Any] = {"success": True, "bookmarkId": bookmark.id}
        if updated:
            response["updated"] = True
        return response

    async def handle_create_from_url_list(self, message: dict[str, Any]) -> dict[str, Any]:
        urls = message.get("urls")
        if not isinstance(urls, list) or not all(isinstance(u, str) for u in urls):
            raise MessageError("'urls' must be a list of strings")
        if not validate_urls(urls).valid:
            raise MessageError("No valid URLs provided")
        result = create_bulk_import(self.db, self.jobs, urls)
        self.start_queue()
        return {"success": True, "jobId": result.job.id, "totalUrls": result.total_urls}

    async def handle_sync_trigger(self, message: dict[str, Any]) -> dict[str, Any]:
        result = await self.sync.perform_sync(force=True)
        return result.to_dict()

    async def handle_sync_status(self, message: dict[str, Any]) -> dict[str, Any]:
        return self.sync.get_sync_status()

    async def handle_test_connection(self, message: dict[str, Any]) -> dict[str, Any]:
        return await self.sync.test_connection()

    async def handle_update_settings(self, message: dict[str, Any]) -> dict[str, Any]:
        updates = message.get("settings")
        if updates is not None:
            if not isinstance(updates, dict):
                raise MessageError("'settings' must be an object")
            try:
                SyncSettings.load(self.db).apply(updates).save(self.db)
            except ValueError as e:
                raise MessageError(str(e)) from e
        self.alarm.setup_sync_alarm()
        return {"success": True}

    async def handle_retry(self, message: dict[str, Any]) -> dict[str, Any]:
        bookmark_id = message.get("bookmarkId")
        if bookmark_id is None:
            self.start_queue()
            return {"success": True}

        bookmark = self.db.get_bookmark(str(bookmark_id))
        if bookmark is None:
            raise MessageError(f"Bookmark not found: {bookmark_id}")
        if bookmark.status != BookmarkStatus.ERROR:
            raise MessageError(f"Bookmark is not in error state: {bookmark.status.value}")
        self._spawn(self.queue.retry_bookmark(bookmark.id))
        return {"success": True}

    # ==================== Import ====================

    def import_payload(self, payload: Any, file_name: str = "import") -> ImportResult:
        """Import an export file and queue any records that still need processing."""
        result = import_bookmarks(self.db, self.jobs, payload, source_label=file_name)
        if result.imported:
            self.start_queue()
        return result
