"""Queue processor driving runnable bookmarks through the pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from bookmark_rag.core.jobs import JobStore
from bookmark_rag.core.pipeline import PipelineEngine
from bookmark_rag.core.storage import DB

logger = logging.getLogger(__name__)


@dataclass
class QueueRunSummary:
    processed: int = 0
    failed: int = 0
    skipped: bool = False


class QueueProcessor:
    """Serial processor over bookmarks with status pending or fetching.

    `start_processing_queue` may be called at any time; a call made while a
    pass is running returns immediately, the running pass picks up any
    bookmark that became runnable meanwhile.
    """

    def __init__(
        self,
        db: DB,
        pipeline: PipelineEngine,
        on_drained: Callable[[], Awaitable[object]] | None = None,
    ) -> None:
        self._db = db
        self._pipeline = pipeline
        self._on_drained = on_drained
        self._processing = False
        self._rerun_requested = False

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def start_processing_queue(self) -> QueueRunSummary:
        if self._processing:
            logger.debug("Queue already processing, skipping")
            self._rerun_requested = True
            return QueueRunSummary(skipped=True)

        self._processing = True
        self._rerun_requested = False
        summary = QueueRunSummary()
        attempted: set[str] = set()
        try:
            while True:
                bookmark = self._db.next_runnable_bookmark(exclude_ids=attempted)
                if bookmark is None:
                    if not self._rerun_requested:
                        break
                    # A bookmark attempted earlier in this pass may have been re-saved
                    self._rerun_requested = False
                    attempted.clear()
                    continue
                attempted.add(bookmark.id)
                try:
                    await self._pipeline.process(bookmark)
                    summary.processed += 1
                except Exception:
                    summary.failed += 1
                    logger.exception(f"Failed to process bookmark {bookmark.id}")
        finally:
            self._processing = False

        if attempted:
            logger.info(f"Queue drained: {summary.processed} processed, {summary.failed} failed")
        if self._on_drained is not None:
            try:
                await self._on_drained()
            except Exception:
                logger.exception("Post-queue hook failed")
        return summary

    async def retry_bookmark(self, bookmark_id: str) -> bool:
        """Reset an errored bookmark to pending and run the queue.

        Returns False if the bookmark does not exist or is not in error.
        """
        if not self._db.reset_bookmark_for_retry(bookmark_id):
            return False
        logger.info(f"Retrying bookmark {bookmark_id}")
        await self.start_processing_queue()
        return True


def recover_interrupted(db: DB, jobs: JobStore) -> dict[str, int]:
    """Reset work left in flight by a previous process."""
    bookmarks = db.reset_interrupted_bookmarks()
    failed_jobs = jobs.fail_interrupted()
    if bookmarks or failed_jobs:
        logger.info(f"Recovered {bookmarks} interrupted bookmarks, failed {failed_jobs} stale jobs")
    return {"bookmarks": bookmarks, "jobs": failed_jobs}
