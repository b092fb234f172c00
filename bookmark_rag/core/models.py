"""Domain records: bookmarks, their Markdown and their Q&A pairs."""

from __future__ import annotations

import sqlite3
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BookmarkStatus(str, Enum):
    """Lifecycle of a bookmark in the processing pipeline."""

    PENDING = "pending"
    FETCHING = "fetching"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


# Statuses the queue picks up
RUNNABLE_STATUSES = (BookmarkStatus.PENDING, BookmarkStatus.FETCHING)


def deserialize_f32(blob: bytes | None) -> list[float]:
    """Inverse of serialize_f32."""
    if not blob:
        return []
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


@dataclass
class Bookmark:
    id: str
    url: str
    title: str
    html: str
    status: BookmarkStatus
    created_at: str
    updated_at: str
    error_message: str | None = None
    error_stack: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Bookmark:
        return cls(
            id=row["id"],
            url=row["url"],
            title=row["title"],
            html=row["html"] or "",
            status=BookmarkStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            error_message=row["error_message"],
            error_stack=row["error_stack"],
        )

    def to_dict(self, include_html: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "status": self.status.value,
            "errorMessage": self.error_message,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if include_html:
            data["html"] = self.html
        return data


@dataclass
class Markdown:
    id: str
    bookmark_id: str
    content: str
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Markdown:
        return cls(
            id=row["id"],
            bookmark_id=row["bookmark_id"],
            content=row["content"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class QuestionAnswer:
    id: str
    bookmark_id: str
    question: str
    answer: str
    embedding_question: list[float] = field(default_factory=list)
    embedding_answer: list[float] = field(default_factory=list)
    embedding_both: list[float] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> QuestionAnswer:
        return cls(
            id=row["id"],
            bookmark_id=row["bookmark_id"],
            question=row["question"],
            answer=row["answer"],
            embedding_question=deserialize_f32(row["embedding_question"]),
            embedding_answer=deserialize_f32(row["embedding_answer"]),
            embedding_both=deserialize_f32(row["embedding_both"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class NewQuestionAnswer:
    """A generated Q&A pair with its three embeddings, ready to persist."""

    question: str
    answer: str
    embedding_question: list[float]
    embedding_answer: list[float]
    embedding_both: list[float]
