"""Export of the full knowledge store and duplicate-safe import.

Export format (version 2):

    {"version": 2, "exportedAt": ISO-8601, "bookmarkCount": n,
     "bookmarks": [{id, url, title, html, status, createdAt, updatedAt,
                    markdown?, questionsAnswers: [{question, answer,
                    embeddingQuestion?, embeddingAnswer?, embeddingBoth?}]}]}

Embeddings use the compact codec in `embedding_codec`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from bookmark_rag.core.embedding_codec import decode_embedding, encode_embedding
from bookmark_rag.core.errors import ImportValidationError
from bookmark_rag.core.jobs import JobStatus, JobStore, JobType
from bookmark_rag.core.models import Bookmark, BookmarkStatus, NewQuestionAnswer
from bookmark_rag.core.storage import DB, content_hash, now_iso

logger = logging.getLogger(__name__)

EXPORT_VERSION = 2


def export_bookmark(db: DB, bookmark: Bookmark) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": bookmark.id,
        "url": bookmark.url,
        "title": bookmark.title,
        "html": bookmark.html,
        "status": bookmark.status.value,
        "createdAt": bookmark.created_at,
        "updatedAt": bookmark.updated_at,
    }
    markdown = db.get_markdown(bookmark.id)
    if markdown is not None:
        data["markdown"] = markdown.content
    data["questionsAnswers"] = [
        {
            "question": qa.question,
            "answer": qa.answer,
            "embeddingQuestion": encode_embedding(qa.embedding_question),
            "embeddingAnswer": encode_embedding(qa.embedding_answer),
            "embeddingBoth": encode_embedding(qa.embedding_both),
        }
        for qa in db.get_question_answers(bookmark.id)
    ]
    return data


def export_all_bookmarks(db: DB) -> dict[str, Any]:
    bookmarks = [export_bookmark(db, b) for b in db.list_bookmarks()]
    return {
        "version": EXPORT_VERSION,
        "exportedAt": now_iso(),
        "bookmarkCount": len(bookmarks),
        "bookmarks": bookmarks,
    }


def content_fingerprint(payload: dict[str, Any]) -> str:
    """Hash of the knowledge content of an export.

    Covers url, title, markdown and Q&A text of every bookmark, ignoring
    ids, timestamps, status and ordering, so two stores holding the same
    content produce the same fingerprint.
    """
    entries = []
    for item in payload.get("bookmarks") or []:
        if not isinstance(item, dict) or not isinstance(item.get("url"), str):
            continue
        pairs = sorted(
            [str(qa.get("question", "")), str(qa.get("answer", ""))]
            for qa in item.get("questionsAnswers") or []
            if isinstance(qa, dict)
        )
        entries.append([item["url"], str(item.get("title") or ""), str(item.get("markdown") or ""), pairs])
    entries.sort()
    return content_hash(entries)


def validate_import_data(data: Any) -> dict[str, Any]:
    """Check the export envelope. Individual records are validated on import."""
    if not isinstance(data, dict):
        raise ImportValidationError("Import data must be a JSON object")
    version = data.get("version")
    if isinstance(version, bool) or not isinstance(version, (int, float)):
        raise ImportValidationError("Missing or invalid version")
    if not isinstance(data.get("bookmarks"), list):
        raise ImportValidationError("Missing or invalid bookmarks array")
    count = data.get("bookmarkCount")
    if isinstance(count, int) and count != len(data["bookmarks"]):
        logger.warning(f"bookmarkCount {count} does not match {len(data['bookmarks'])} bookmarks")
    return data


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors or self.imported > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def _validate_record(item: Any) -> dict[str, Any]:
    if not isinstance(item, dict):
        raise ImportValidationError("Bookmark record must be an object")
    url = item.get("url")
    if not isinstance(url, str) or not url.strip():
        raise ImportValidationError("Missing url")
    if not isinstance(item.get("title"), str):
        raise ImportValidationError("Missing title")
    for key in ("html", "markdown"):
        if item.get(key) is not None and not isinstance(item[key], str):
            raise ImportValidationError(f"Invalid {key}")
    qas = item.get("questionsAnswers")
    if qas is not None and not isinstance(qas, list):
        raise ImportValidationError("Invalid questionsAnswers")
    return item


def _decode_pairs(items: list[Any]) -> list[NewQuestionAnswer]:
    """Q&A pairs whose three embeddings all decode; others are dropped."""
    pairs = []
    for qa in items:
        if not isinstance(qa, dict):
            continue
        question, answer = qa.get("question"), qa.get("answer")
        if not isinstance(question, str) or not isinstance(answer, str):
            continue
        vectors = [decode_embedding(qa.get(k)) for k in ("embeddingQuestion", "embeddingAnswer", "embeddingBoth")]
        if any(v is None for v in vectors):
            continue
        pairs.append(NewQuestionAnswer(question, answer, *vectors))  # type: ignore[arg-type]
    return pairs


def _insert_record(db: DB, record: dict[str, Any]) -> None:
    html = record.get("html") or ""
    markdown = record.get("markdown") or ""
    status = BookmarkStatus.COMPLETE if (html or markdown) else BookmarkStatus.PENDING
    bookmark = db.create_bookmark(
        url=record["url"].strip(),
        title=record["title"],
        html=html,
        status=status,
        created_at=record.get("createdAt") if isinstance(record.get("createdAt"), str) else None,
    )
    try:
        if markdown:
            db.save_markdown(bookmark.id, markdown)
        pairs = _decode_pairs(record.get("questionsAnswers") or [])
        if pairs:
            db.save_question_answers(bookmark.id, pairs)
    except Exception:
        db.delete_bookmark(bookmark.id)
        raise


def import_bookmarks(
    db: DB,
    jobs: JobStore,
    payload: Any,
    source_label: str | None = None,
) -> ImportResult:
    """Import bookmarks, skipping any whose URL already exists locally.

    Raises:
        ImportValidationError: If the envelope itself is malformed.
    """
    job = jobs.create(
        JobType.FILE_IMPORT,
        status=JobStatus.IN_PROGRESS,
        metadata={"fileName": source_label or "import"},
    )
    try:
        data = validate_import_data(payload)
    except ImportValidationError as e:
        jobs.fail(job, str(e))
        raise

    result = ImportResult()
    existing_urls = db.get_bookmark_urls()
    for item in data["bookmarks"]:
        title = item.get("title") if isinstance(item, dict) and isinstance(item.get("title"), str) else "Untitled"
        try:
            record = _validate_record(item)
            url = record["url"].strip()
            if url in existing_urls:
                result.skipped += 1
                continue
            _insert_record(db, record)
            existing_urls.add(url)
            result.imported += 1
        except Exception as e:
            logger.warning(f"Import of '{title}' failed: {e}")
            result.errors.append(f'Failed to import "{title}": {e}')

    jobs.complete(job, {
        "importedCount": result.imported,
        "skippedCount": result.skipped,
        "errorCount": len(result.errors),
    })
    logger.info(
        f"Import from {source_label or 'file'}: {result.imported} imported, "
        f"{result.skipped} skipped, {len(result.errors)} errors"
    )
    return result
