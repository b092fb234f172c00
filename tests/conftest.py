"""Shared fixtures: in-memory database and fake external services."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from bookmark_rag.core.content_fetcher import ContentFetcher, FetchedPage
from bookmark_rag.core.extractor import ExtractedContent, MarkdownExtractor
from bookmark_rag.core.jobs import JobStore
from bookmark_rag.core.pipeline import PipelineEngine
from bookmark_rag.core.qa_generator import QAGenerationResult, QAGenerator, QAPair
from bookmark_rag.core.storage import DB, connect

PAGE_HTML = "<html><head><title>Example &amp; Co</title></head><body><p>Hello world</p></body></html>"


@pytest.fixture
def db():
    """In-memory database with schema and sqlite-vec loaded."""
    database = DB(conn=connect(":memory:"))
    database.init()
    yield database
    database.conn.close()


@pytest.fixture
def jobs(db):
    return JobStore(db.conn)


class FakeFetcher(ContentFetcher):
    def __init__(self, html: str = PAGE_HTML) -> None:
        self.html = html
        self.calls: list[str] = []
        self.error: Exception | None = None
        self.fail_urls: dict[str, Exception] = {}

    async def fetch_html(self, url: str) -> FetchedPage:
        self.calls.append(url)
        if url in self.fail_urls:
            raise self.fail_urls[url]
        if self.error is not None:
            raise self.error
        return FetchedPage(url=url, html=self.html, http_status=200)


class FakeExtractor(MarkdownExtractor):
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail_urls: dict[str, Exception] = {}

    async def extract(self, html: str, url: str) -> ExtractedContent:
        self.calls.append((html, url))
        if url in self.fail_urls:
            raise self.fail_urls[url]
        return ExtractedContent(title="Title", content=f"# Title\n\nContent of {url}")


class FakeQAGenerator(QAGenerator):
    def __init__(self, pairs: list[QAPair] | None = None) -> None:
        self.pairs = pairs if pairs is not None else [
            QAPair("What is A?", "A is first."),
            QAPair("What is B?", "B is second."),
            QAPair("What is C?", "C is third."),
        ]
        self.calls: list[str] = []

    async def generate(self, markdown: str) -> QAGenerationResult:
        self.calls.append(markdown)
        return QAGenerationResult(pairs=list(self.pairs), tokens_input=100, tokens_output=50)


def _fake_vectors(texts: list[str]) -> list[list[float]]:
    # Distinct, float32-exact vectors per text position and batch content
    return [[float(i), float(len(t) % 7), 0.5] for i, t in enumerate(texts)]


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def qa_generator():
    return FakeQAGenerator()


@pytest.fixture
def embeddings():
    provider = MagicMock()
    provider.name = "fake"
    provider.embed = AsyncMock(side_effect=_fake_vectors)
    return provider


@pytest.fixture
def engine(db, jobs, fetcher, extractor, qa_generator, embeddings):
    return PipelineEngine(
        db=db,
        jobs=jobs,
        fetcher=fetcher,
        extractor=extractor,
        qa_generator=qa_generator,
        embeddings=embeddings,
    )
