"""Per-bookmark processing pipeline: fetch -> markdown -> Q&A + embeddings.

Every stage is idempotent:
1. FETCH runs only when the bookmark has no HTML yet
2. MARKDOWN is skipped when a Markdown row exists
3. QA is skipped when any Q&A row exists

Each stage that runs records one Job (COMPLETED or FAILED). Any failure
marks the bookmark as error with message and stack, then re-raises.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable

from bookmark_rag.core.content_fetcher import ContentFetcher
from bookmark_rag.core.embedding_providers import EmbeddingError, EmbeddingProvider
from bookmark_rag.core.errors import ErrorInfo
from bookmark_rag.core.extractor import MarkdownExtractor
from bookmark_rag.core.jobs import JobStore, JobType
from bookmark_rag.core.models import Bookmark, BookmarkStatus, NewQuestionAnswer
from bookmark_rag.core.qa_generator import QAGenerator
from bookmark_rag.core.storage import DB

logger = logging.getLogger(__name__)


class PipelineStage(str, Enum):
    """Stages of the bookmark pipeline, in execution order."""

    FETCH = "fetch"
    MARKDOWN = "markdown"
    QA = "qa"


STAGE_JOB_TYPES = {
    PipelineStage.FETCH: JobType.URL_FETCH,
    PipelineStage.MARKDOWN: JobType.MARKDOWN_GENERATION,
    PipelineStage.QA: JobType.QA_GENERATION,
}


@dataclass
class PipelineResult:
    """Which stages ran for one bookmark."""

    bookmark_id: str
    stages_run: list[PipelineStage] = field(default_factory=list)
    stages_skipped: list[PipelineStage] = field(default_factory=list)
    pairs_generated: int = 0


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def combined_text(question: str, answer: str) -> str:
    return f"Q: {question}\nA: {answer}"


class PipelineEngine:
    def __init__(
        self,
        db: DB,
        jobs: JobStore,
        fetcher: ContentFetcher,
        extractor: MarkdownExtractor,
        qa_generator: QAGenerator,
        embeddings: EmbeddingProvider,
    ) -> None:
        self._db = db
        self._jobs = jobs
        self._fetcher = fetcher
        self._extractor = extractor
        self._qa_generator = qa_generator
        self._embeddings = embeddings

    async def process(self, bookmark: Bookmark) -> PipelineResult:
        """Bring one bookmark to `complete`, or mark it `error` and re-raise."""
        result = PipelineResult(bookmark_id=bookmark.id)
        needs_fetch = not bookmark.html
        self._db.set_bookmark_status(
            bookmark.id, BookmarkStatus.FETCHING if needs_fetch else BookmarkStatus.PROCESSING
        )
        logger.info(f"Processing bookmark {bookmark.id} ({bookmark.url})")

        try:
            if needs_fetch:
                bookmark = await self._run_stage(PipelineStage.FETCH, bookmark, self._fetch)
                result.stages_run.append(PipelineStage.FETCH)
                self._db.set_bookmark_status(bookmark.id, BookmarkStatus.PROCESSING)
            else:
                result.stages_skipped.append(PipelineStage.FETCH)

            markdown = self._db.get_markdown(bookmark.id)
            if markdown is not None:
                logger.info(f"Markdown already exists for {bookmark.id}, skipping extraction")
                result.stages_skipped.append(PipelineStage.MARKDOWN)
            else:
                await self._run_stage(PipelineStage.MARKDOWN, bookmark, self._generate_markdown)
                result.stages_run.append(PipelineStage.MARKDOWN)

            if self._db.has_question_answers(bookmark.id):
                logger.info(f"Q&A pairs already exist for {bookmark.id}, skipping generation")
                result.stages_skipped.append(PipelineStage.QA)
            else:
                result.pairs_generated = await self._run_stage(
                    PipelineStage.QA, bookmark, self._generate_qa
                )
                result.stages_run.append(PipelineStage.QA)

            self._db.set_bookmark_status(bookmark.id, BookmarkStatus.COMPLETE)
            logger.info(f"Bookmark {bookmark.id} complete")
            return result

        except Exception as e:
            error = ErrorInfo.from_exception(e)
            logger.error(f"Pipeline failed for bookmark {bookmark.id}: {error.message}")
            self._db.mark_bookmark_error(bookmark.id, error.message, error.stack)
            raise

    async def _run_stage(
        self,
        stage: PipelineStage,
        bookmark: Bookmark,
        body: Callable[[Bookmark, dict[str, Any]], Awaitable[Any]],
    ) -> Any:
        """Run one stage under its own Job; the body fills the job metadata.

        A pending job queued for this stage (a bulk import's per-URL fetch)
        is picked up instead of starting a new one, and its outcome is
        counted on the parent job.
        """
        job_type = STAGE_JOB_TYPES[stage]
        job = self._jobs.claim_pending(job_type, bookmark.id, current_step=stage.value)
        if job is None:
            job = self._jobs.start(
                job_type,
                bookmark_id=bookmark.id,
                metadata={"url": bookmark.url},
                current_step=stage.value,
            )
        metadata: dict[str, Any] = {}
        try:
            value = await body(bookmark, metadata)
        except Exception as e:
            job.metadata.update(metadata)
            self._jobs.fail(job, ErrorInfo.from_exception(e))
            if job.parent_job_id:
                self._jobs.record_child_result(job.parent_job_id, success=False)
            raise
        self._jobs.complete(job, metadata)
        if job.parent_job_id:
            self._jobs.record_child_result(job.parent_job_id, success=True)
        return value

    async def _fetch(self, bookmark: Bookmark, metadata: dict[str, Any]) -> Bookmark:
        start = time.monotonic()
        page = await self._fetcher.fetch_html(bookmark.url)
        title = bookmark.title or page.title or bookmark.url
        self._db.update_bookmark_content(bookmark.id, page.html, title)
        metadata.update({
            "httpStatus": page.http_status,
            "htmlSize": len(page.html),
            "fetchTimeMs": _elapsed_ms(start),
        })
        return replace(bookmark, html=page.html, title=title)

    async def _generate_markdown(self, bookmark: Bookmark, metadata: dict[str, Any]) -> None:
        start = time.monotonic()
        extracted = await self._extractor.extract(bookmark.html, bookmark.url)
        self._db.save_markdown(bookmark.id, extracted.content)
        metadata.update({
            "characterCount": len(extracted.content),
            "wordCount": extracted.word_count,
            "extractionTimeMs": _elapsed_ms(start),
        })

    async def _generate_qa(self, bookmark: Bookmark, metadata: dict[str, Any]) -> int:
        markdown = self._db.get_markdown(bookmark.id)
        if markdown is None:
            raise RuntimeError(f"No markdown for bookmark {bookmark.id}")

        api_start = time.monotonic()
        generated = await self._qa_generator.generate(markdown.content)
        metadata.update({
            "apiTimeMs": _elapsed_ms(api_start),
            "tokensInput": generated.tokens_input,
            "tokensOutput": generated.tokens_output,
            "costUsd": round(generated.cost_usd, 6),
        })

        pairs = generated.pairs
        if not pairs:
            logger.info(f"No Q&A pairs generated for {bookmark.id}")
            metadata["pairsGenerated"] = 0
            return 0

        # One embedding call per batch, not per pair
        embed_start = time.monotonic()
        questions, answers, both = await asyncio.gather(
            self._embeddings.embed([p.question for p in pairs]),
            self._embeddings.embed([p.answer for p in pairs]),
            self._embeddings.embed([combined_text(p.question, p.answer) for p in pairs]),
        )
        for batch in (questions, answers, both):
            if len(batch) != len(pairs):
                raise EmbeddingError(
                    f"Expected {len(pairs)} embeddings, got {len(batch)}",
                    provider=self._embeddings.name,
                )

        self._db.save_question_answers(
            bookmark.id,
            [
                NewQuestionAnswer(
                    question=pair.question,
                    answer=pair.answer,
                    embedding_question=questions[i],
                    embedding_answer=answers[i],
                    embedding_both=both[i],
                )
                for i, pair in enumerate(pairs)
            ],
        )
        metadata.update({
            "pairsGenerated": len(pairs),
            "embeddingTimeMs": _elapsed_ms(embed_start),
        })
        return len(pairs)
