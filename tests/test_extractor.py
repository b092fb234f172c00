"""Tests for extractor.py"""

from unittest.mock import patch

import pytest

from bookmark_rag.core.errors import ExtractionError
from bookmark_rag.core.extractor import ExtractedContent, TrafilaturaExtractor

ARTICLE_HTML = """
<html>
<head><title>Sample Article</title></head>
<body>
  <nav><a href="/">Home</a> <a href="/about">About</a></nav>
  <article>
    <h1>Sample Article</h1>
    <p>Vector search finds documents by meaning instead of exact keywords. It compares
    embeddings, which are lists of numbers produced by a language model.</p>
    <p>Generating questions for each document helps because user queries are usually
    phrased as questions, and a question embedding lands close to other questions.</p>
    <p>Cosine distance is the usual metric when comparing normalized embedding vectors
    stored in a local SQLite database.</p>
  </article>
  <footer>Copyright 2026</footer>
</body>
</html>
"""


class TestExtractedContent:
    def test_word_count(self):
        assert ExtractedContent(title="", content="one two  three\nfour").word_count == 4


class TestTrafilaturaExtractor:
    @pytest.mark.asyncio
    async def test_extracts_article_as_markdown(self):
        result = await TrafilaturaExtractor().extract(ARTICLE_HTML, "https://example.com/article")

        assert "Vector search finds documents by meaning" in result.content
        assert "Cosine distance" in result.content
        assert result.content.startswith("#")
        assert result.word_count > 20

    @pytest.mark.asyncio
    @pytest.mark.parametrize("html", ["", "   \n"])
    async def test_empty_html(self, html):
        with pytest.raises(ExtractionError, match="empty HTML"):
            await TrafilaturaExtractor().extract(html, "https://example.com")

    @pytest.mark.asyncio
    async def test_nothing_extracted(self):
        with patch("bookmark_rag.core.extractor.trafilatura.extract", return_value=None):
            with pytest.raises(ExtractionError, match="Could not parse the page"):
                await TrafilaturaExtractor().extract("<html><body></body></html>", "https://example.com")

    @pytest.mark.asyncio
    async def test_title_heading_is_prefixed(self):
        with (
            patch("bookmark_rag.core.extractor.trafilatura.extract", return_value="Body text only."),
            patch("bookmark_rag.core.extractor.trafilatura.extract_metadata") as metadata,
        ):
            metadata.return_value.title = "Page Title"
            result = await TrafilaturaExtractor().extract("<p>Body text only.</p>", "https://example.com")

        assert result.content == "# Page Title\n\nBody text only."
        assert result.title == "Page Title"
