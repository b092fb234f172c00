"""Tests for pipeline.py"""

import pytest

from bookmark_rag.core.errors import ExtractionError, FetchError, FetchErrorType
from bookmark_rag.core.jobs import JobStatus, JobType
from bookmark_rag.core.models import BookmarkStatus
from bookmark_rag.core.pipeline import PipelineStage, combined_text
from bookmark_rag.core.qa_generator import QAPair


def _job_summary(jobs, bookmark_id):
    return [(j.type, j.status) for j in jobs.get_by_bookmark(bookmark_id)]


class TestFetchStage:
    """Fetch only runs when the bookmark has no HTML."""

    @pytest.mark.asyncio
    async def test_html_present_skips_fetch(self, db, jobs, engine, fetcher):
        bookmark = db.create_bookmark(url="https://example.com/a", title="A", html="<p>saved</p>")

        result = await engine.process(bookmark)

        assert fetcher.calls == []
        assert PipelineStage.FETCH in result.stages_skipped
        assert (JobType.URL_FETCH, JobStatus.COMPLETED) not in _job_summary(jobs, bookmark.id)
        assert db.get_bookmark(bookmark.id).status == BookmarkStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_missing_html_is_fetched_and_titled(self, db, jobs, engine, fetcher, extractor):
        bookmark = db.create_bookmark(url="https://example.com/b")

        await engine.process(bookmark)

        assert fetcher.calls == ["https://example.com/b"]
        stored = db.get_bookmark(bookmark.id)
        assert stored.html == fetcher.html
        assert stored.title == "Example & Co"
        assert extractor.calls[0] == (fetcher.html, "https://example.com/b")
        assert _job_summary(jobs, bookmark.id)[0] == (JobType.URL_FETCH, JobStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_fetch_failure_records_failed_job(self, db, jobs, engine, fetcher):
        fetcher.error = FetchError("HTTP 404: Not Found", FetchErrorType.HTTP_4XX, http_status=404)
        bookmark = db.create_bookmark(url="https://example.com/missing")

        with pytest.raises(FetchError):
            await engine.process(bookmark)

        stored = db.get_bookmark(bookmark.id)
        assert stored.status == BookmarkStatus.ERROR
        assert stored.error_message == "HTTP 404: Not Found"
        assert _job_summary(jobs, bookmark.id) == [(JobType.URL_FETCH, JobStatus.FAILED)]


class TestIdempotence:
    """Re-running the pipeline never duplicates artifacts."""

    @pytest.mark.asyncio
    async def test_second_run_creates_nothing_new(self, db, jobs, engine, extractor, qa_generator):
        bookmark = db.create_bookmark(url="https://example.com/c", title="C", html="<p>c</p>")

        await engine.process(bookmark)
        markdown_before = db.get_markdown(bookmark.id)
        qa_before = [(qa.id, qa.question) for qa in db.get_question_answers(bookmark.id)]
        jobs_before = len(jobs.get_by_bookmark(bookmark.id))

        result = await engine.process(db.get_bookmark(bookmark.id))

        assert result.stages_run == []
        assert db.get_markdown(bookmark.id).id == markdown_before.id
        assert [(qa.id, qa.question) for qa in db.get_question_answers(bookmark.id)] == qa_before
        assert len(extractor.calls) == 1
        assert len(qa_generator.calls) == 1
        assert len(jobs.get_by_bookmark(bookmark.id)) == jobs_before
        count = db.conn.execute("SELECT count(*) FROM markdown WHERE bookmark_id = ?", (bookmark.id,)).fetchone()[0]
        assert count == 1

    @pytest.mark.asyncio
    async def test_existing_markdown_is_reused(self, db, engine, extractor, qa_generator):
        bookmark = db.create_bookmark(url="https://example.com/d", title="D", html="<p>d</p>")
        db.save_markdown(bookmark.id, "# Existing")

        await engine.process(bookmark)

        assert extractor.calls == []
        assert qa_generator.calls == ["# Existing"]


class TestQAStage:
    @pytest.mark.asyncio
    async def test_three_pairs_three_embedding_calls(self, db, jobs, engine, embeddings, qa_generator):
        bookmark = db.create_bookmark(url="https://example.com/e", title="E", html="<p>e</p>")

        result = await engine.process(bookmark)

        assert result.pairs_generated == 3
        assert embeddings.embed.await_count == 3
        batches = [call.args[0] for call in embeddings.embed.await_args_list]
        pairs = qa_generator.pairs
        assert [p.question for p in pairs] in batches
        assert [p.answer for p in pairs] in batches
        assert [combined_text(p.question, p.answer) for p in pairs] in batches

        rows = db.get_question_answers(bookmark.id)
        assert [r.question for r in rows] == [p.question for p in pairs]
        for i, row in enumerate(rows):
            assert row.embedding_question == [float(i), float(len(pairs[i].question) % 7), 0.5]
            assert row.embedding_answer == [float(i), float(len(pairs[i].answer) % 7), 0.5]
            both = combined_text(pairs[i].question, pairs[i].answer)
            assert row.embedding_both == [float(i), float(len(both) % 7), 0.5]

        qa_job = [j for j in jobs.get_by_bookmark(bookmark.id) if j.type == JobType.QA_GENERATION][0]
        assert qa_job.status == JobStatus.COMPLETED
        assert qa_job.metadata["pairsGenerated"] == 3

    @pytest.mark.asyncio
    async def test_zero_pairs_is_success(self, db, jobs, engine, embeddings, qa_generator):
        qa_generator.pairs = []
        bookmark = db.create_bookmark(url="https://example.com/f", title="F", html="<p>f</p>")

        await engine.process(bookmark)

        assert embeddings.embed.await_count == 0
        assert db.get_question_answers(bookmark.id) == []
        assert db.get_bookmark(bookmark.id).status == BookmarkStatus.COMPLETE
        qa_job = [j for j in jobs.get_by_bookmark(bookmark.id) if j.type == JobType.QA_GENERATION][0]
        assert qa_job.status == JobStatus.COMPLETED
        assert qa_job.metadata["pairsGenerated"] == 0

    @pytest.mark.asyncio
    async def test_embedding_count_mismatch_fails_stage(self, db, jobs, engine, embeddings, qa_generator):
        qa_generator.pairs = [QAPair("Q1", "A1"), QAPair("Q2", "A2")]
        embeddings.embed.side_effect = lambda texts: [[0.0, 1.0]]
        bookmark = db.create_bookmark(url="https://example.com/g", title="G", html="<p>g</p>")

        with pytest.raises(Exception, match="Expected 2 embeddings"):
            await engine.process(bookmark)

        assert db.get_question_answers(bookmark.id) == []
        assert (JobType.QA_GENERATION, JobStatus.FAILED) in _job_summary(jobs, bookmark.id)


class TestFailures:
    @pytest.mark.asyncio
    async def test_extraction_error_marks_bookmark(self, db, jobs, engine, extractor):
        url = "https://example.com/broken"
        extractor.fail_urls[url] = ExtractionError("Could not parse the page")
        bookmark = db.create_bookmark(url=url, title="Broken", html="<p>x</p>")

        with pytest.raises(ExtractionError):
            await engine.process(bookmark)

        stored = db.get_bookmark(bookmark.id)
        assert stored.status == BookmarkStatus.ERROR
        assert stored.error_message == "Could not parse the page"
        assert stored.error_stack
        assert "ExtractionError" in stored.error_stack

        summary = _job_summary(jobs, bookmark.id)
        assert summary == [(JobType.MARKDOWN_GENERATION, JobStatus.FAILED)]
        failed = jobs.get_by_bookmark(bookmark.id)[0]
        assert failed.metadata["errorMessage"] == "Could not parse the page"
        assert failed.metadata["errorKind"] == "extraction"

    @pytest.mark.asyncio
    async def test_status_is_processing_during_stages(self, db, engine, extractor):
        seen = []
        original = extractor.extract

        async def spy(html, url):
            seen.append(db.get_bookmark(bookmark.id).status)
            return await original(html, url)

        extractor.extract = spy
        bookmark = db.create_bookmark(url="https://example.com/h", title="H", html="<p>h</p>")

        await engine.process(bookmark)

        assert seen == [BookmarkStatus.PROCESSING]
