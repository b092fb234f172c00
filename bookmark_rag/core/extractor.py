"""Readable-content extraction from HTML into Markdown using trafilatura."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import trafilatura
from trafilatura.settings import use_config

from bookmark_rag.core.errors import ExtractionError

logger = logging.getLogger(__name__)


@dataclass
class ExtractedContent:
    title: str
    content: str

    @property
    def word_count(self) -> int:
        return len(self.content.split())


class MarkdownExtractor(ABC):
    @abstractmethod
    async def extract(self, html: str, url: str) -> ExtractedContent:
        """Raises ExtractionError when no readable content is found."""
        ...


class TrafilaturaExtractor(MarkdownExtractor):
    """Main-content extraction with Markdown output.

    trafilatura is CPU-bound, so extraction runs in the default executor.
    """

    def __init__(self, extraction_timeout: int = 30) -> None:
        self._config = use_config()
        self._config.set("DEFAULT", "EXTRACTION_TIMEOUT", str(extraction_timeout))
        # Short pages are still worth keeping
        self._config.set("DEFAULT", "MIN_OUTPUT_SIZE", "1")
        self._config.set("DEFAULT", "MIN_EXTRACTED_SIZE", "1")

    def _extract_sync(self, html: str, url: str) -> ExtractedContent | None:
        content = trafilatura.extract(
            html,
            url=url,
            config=self._config,
            output_format="markdown",
            include_comments=False,
            include_tables=True,
            include_links=True,
            favor_recall=True,
        )
        if not content or not content.strip():
            return None
        metadata = trafilatura.extract_metadata(html, default_url=url)
        title = metadata.title if metadata and metadata.title else ""
        return ExtractedContent(title=title, content=content.strip())

    async def extract(self, html: str, url: str) -> ExtractedContent:
        if not html or not html.strip():
            raise ExtractionError("Cannot extract from empty HTML")

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self._extract_sync, html, url)
        if result is None:
            raise ExtractionError("Could not parse the page")

        # Prefix a heading so the Markdown stands on its own
        if result.title and not result.content.startswith("#"):
            result.content = f"# {result.title}\n\n{result.content}"
        logger.debug(f"Extracted {len(result.content)} chars from {url}")
        return result
