from __future__ import annotations

import hashlib
import json
import os
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable
from urllib.parse import urlparse, urlunparse

import sqlite_vec

from bookmark_rag.core.embedding_providers import serialize_f32
from bookmark_rag.core.models import (
    RUNNABLE_STATUSES,
    Bookmark,
    BookmarkStatus,
    Markdown,
    NewQuestionAnswer,
    QuestionAnswer,
)
from bookmark_rag.core.settings import Settings


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_url(url: str | None) -> str | None:
    """Normalize URL for duplicate detection in URL lists.

    - Lowercase scheme and host
    - Remove trailing slash from the path
    - Drop the fragment (query is kept, it usually selects content)
    """
    if not url:
        return None
    parsed = urlparse(url.strip())
    normalized = urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        parsed.path.rstrip("/"),
        parsed.params,
        parsed.query,
        "",  # fragment
    ))
    return normalized or None


def content_hash(data: Any) -> str:
    """Stable sha256 of a JSON-serializable value."""
    encoded = json.dumps(data, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(encoded.encode()).hexdigest()


SCHEMA_SQL = """
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS bookmarks (
  id TEXT PRIMARY KEY,
  url TEXT NOT NULL UNIQUE,
  title TEXT NOT NULL DEFAULT '',
  html TEXT NOT NULL DEFAULT '',
  status TEXT NOT NULL,
  error_message TEXT,
  error_stack TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_bookmarks_status ON bookmarks(status);

CREATE TABLE IF NOT EXISTS markdown (
  id TEXT PRIMARY KEY,
  bookmark_id TEXT NOT NULL UNIQUE REFERENCES bookmarks(id) ON DELETE CASCADE,
  content TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS questions_answers (
  id TEXT PRIMARY KEY,
  bookmark_id TEXT NOT NULL REFERENCES bookmarks(id) ON DELETE CASCADE,
  position INTEGER NOT NULL DEFAULT 0,
  question TEXT NOT NULL,
  answer TEXT NOT NULL,
  embedding_question BLOB NOT NULL,
  embedding_answer BLOB NOT NULL,
  embedding_both BLOB NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_qa_bookmark ON questions_answers(bookmark_id);

CREATE TABLE IF NOT EXISTS jobs (
  id TEXT PRIMARY KEY,
  type TEXT NOT NULL,
  status TEXT NOT NULL,
  parent_job_id TEXT,
  bookmark_id TEXT,
  progress INTEGER NOT NULL DEFAULT 0,
  current_step TEXT,
  metadata TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_bookmark ON jobs(bookmark_id);
CREATE INDEX IF NOT EXISTS idx_jobs_parent ON jobs(parent_job_id);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at);

CREATE TABLE IF NOT EXISTS app_settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT DEFAULT (datetime('now'))
);
"""


BOOKMARK_COLUMNS = "id, url, title, html, status, error_message, error_stack, created_at, updated_at"
QA_COLUMNS = (
    "id, bookmark_id, question, answer, embedding_question, embedding_answer, "
    "embedding_both, created_at, updated_at"
)


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def get_stats(self) -> dict[str, Any]:
        cur = self.conn.execute("SELECT status, count(*) FROM bookmarks GROUP BY status")
        by_status = {row[0]: row[1] for row in cur.fetchall()}
        markdown = self.conn.execute("SELECT count(*) FROM markdown").fetchone()[0]
        qa = self.conn.execute("SELECT count(*) FROM questions_answers").fetchone()[0]
        return {
            "bookmarks": sum(by_status.values()),
            "by_status": by_status,
            "markdown": markdown,
            "questions_answers": qa,
        }

    # ==================== Bookmarks ====================

    def create_bookmark(
        self,
        url: str,
        title: str = "",
        html: str = "",
        status: BookmarkStatus = BookmarkStatus.PENDING,
        bookmark_id: str | None = None,
        created_at: str | None = None,
        updated_at: str | None = None,
    ) -> Bookmark:
        now = now_iso()
        bookmark = Bookmark(
            id=bookmark_id or str(uuid.uuid4()),
            url=url,
            title=title,
            html=html,
            status=status,
            created_at=created_at or now,
            updated_at=updated_at or now,
        )
        self.conn.execute(
            f"INSERT INTO bookmarks ({BOOKMARK_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                bookmark.id,
                bookmark.url,
                bookmark.title,
                bookmark.html,
                bookmark.status.value,
                None,
                None,
                bookmark.created_at,
                bookmark.updated_at,
            ),
        )
        self.conn.commit()
        return bookmark

    def get_bookmark(self, bookmark_id: str) -> Bookmark | None:
        cur = self.conn.execute(f"SELECT {BOOKMARK_COLUMNS} FROM bookmarks WHERE id = ?", (bookmark_id,))
        row = cur.fetchone()
        return Bookmark.from_row(row) if row else None

    def get_bookmark_by_url(self, url: str) -> Bookmark | None:
        cur = self.conn.execute(f"SELECT {BOOKMARK_COLUMNS} FROM bookmarks WHERE url = ?", (url,))
        row = cur.fetchone()
        return Bookmark.from_row(row) if row else None

    def get_bookmark_urls(self) -> set[str]:
        cur = self.conn.execute("SELECT url FROM bookmarks")
        return {row[0] for row in cur.fetchall()}

    def list_bookmarks(
        self, status: BookmarkStatus | None = None, limit: int | None = None
    ) -> list[Bookmark]:
        sql = f"SELECT {BOOKMARK_COLUMNS} FROM bookmarks"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at, rowid"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        cur = self.conn.execute(sql, params)
        return [Bookmark.from_row(row) for row in cur.fetchall()]

    def count_bookmarks(self) -> int:
        return self.conn.execute("SELECT count(*) FROM bookmarks").fetchone()[0]

    def save_page(self, url: str, title: str, html: str) -> tuple[Bookmark, bool]:
        """Create a bookmark or refresh an existing one with the same URL.

        Returns (bookmark, updated). A refreshed bookmark goes back to
        pending with its error cleared.
        """
        existing = self.get_bookmark_by_url(url)
        if existing is None:
            return self.create_bookmark(url=url, title=title, html=html), False

        now = now_iso()
        self.conn.execute(
            """
            UPDATE bookmarks
            SET title = ?, html = ?, status = ?, error_message = NULL, error_stack = NULL, updated_at = ?
            WHERE id = ?
            """,
            (title or existing.title, html, BookmarkStatus.PENDING.value, now, existing.id),
        )
        self.conn.commit()
        return self.get_bookmark(existing.id), True  # type: ignore[return-value]

    def update_bookmark_content(self, bookmark_id: str, html: str, title: str) -> None:
        self.conn.execute(
            "UPDATE bookmarks SET html = ?, title = ?, updated_at = ? WHERE id = ?",
            (html, title, now_iso(), bookmark_id),
        )
        self.conn.commit()

    def set_bookmark_status(self, bookmark_id: str, status: BookmarkStatus) -> None:
        self.conn.execute(
            "UPDATE bookmarks SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, now_iso(), bookmark_id),
        )
        self.conn.commit()

    def mark_bookmark_error(self, bookmark_id: str, message: str, stack: str) -> None:
        self.conn.execute(
            """
            UPDATE bookmarks
            SET status = ?, error_message = ?, error_stack = ?, updated_at = ?
            WHERE id = ?
            """,
            (BookmarkStatus.ERROR.value, message, stack, now_iso(), bookmark_id),
        )
        self.conn.commit()

    def reset_bookmark_for_retry(self, bookmark_id: str) -> bool:
        """Move an errored bookmark back to pending. Returns False if it was not in error."""
        cur = self.conn.execute(
            """
            UPDATE bookmarks
            SET status = ?, error_message = NULL, error_stack = NULL, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (BookmarkStatus.PENDING.value, now_iso(), bookmark_id, BookmarkStatus.ERROR.value),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def reset_interrupted_bookmarks(self) -> int:
        """Return bookmarks left mid-pipeline by a previous process to pending."""
        cur = self.conn.execute(
            "UPDATE bookmarks SET status = ?, updated_at = ? WHERE status IN (?, ?)",
            (
                BookmarkStatus.PENDING.value,
                now_iso(),
                BookmarkStatus.FETCHING.value,
                BookmarkStatus.PROCESSING.value,
            ),
        )
        self.conn.commit()
        return cur.rowcount

    def next_runnable_bookmark(self, exclude_ids: Iterable[str] = ()) -> Bookmark | None:
        """Oldest bookmark with status pending or fetching that is not excluded."""
        excluded = set(exclude_ids)
        placeholders = ", ".join("?" for _ in RUNNABLE_STATUSES)
        cur = self.conn.execute(
            f"""
            SELECT {BOOKMARK_COLUMNS} FROM bookmarks
            WHERE status IN ({placeholders})
            ORDER BY created_at, rowid
            """,
            [s.value for s in RUNNABLE_STATUSES],
        )
        for row in cur:
            if row["id"] not in excluded:
                return Bookmark.from_row(row)
        return None

    def delete_bookmark(self, bookmark_id: str) -> bool:
        """Delete a bookmark with its markdown, Q&A pairs and jobs."""
        self.conn.execute("DELETE FROM questions_answers WHERE bookmark_id = ?", (bookmark_id,))
        self.conn.execute("DELETE FROM markdown WHERE bookmark_id = ?", (bookmark_id,))
        self.conn.execute("DELETE FROM jobs WHERE bookmark_id = ?", (bookmark_id,))
        cur = self.conn.execute("DELETE FROM bookmarks WHERE id = ?", (bookmark_id,))
        self.conn.commit()
        return cur.rowcount > 0

    # ==================== Markdown ====================

    def get_markdown(self, bookmark_id: str) -> Markdown | None:
        cur = self.conn.execute(
            "SELECT id, bookmark_id, content, created_at, updated_at FROM markdown WHERE bookmark_id = ?",
            (bookmark_id,),
        )
        row = cur.fetchone()
        return Markdown.from_row(row) if row else None

    def save_markdown(self, bookmark_id: str, content: str, created_at: str | None = None) -> Markdown:
        now = now_iso()
        markdown = Markdown(
            id=str(uuid.uuid4()),
            bookmark_id=bookmark_id,
            content=content,
            created_at=created_at or now,
            updated_at=now,
        )
        self.conn.execute(
            "INSERT INTO markdown (id, bookmark_id, content, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (markdown.id, markdown.bookmark_id, markdown.content, markdown.created_at, markdown.updated_at),
        )
        self.conn.commit()
        return markdown

    # ==================== Questions & Answers ====================

    def has_question_answers(self, bookmark_id: str) -> bool:
        cur = self.conn.execute(
            "SELECT 1 FROM questions_answers WHERE bookmark_id = ? LIMIT 1", (bookmark_id,)
        )
        return cur.fetchone() is not None

    def get_question_answers(self, bookmark_id: str) -> list[QuestionAnswer]:
        cur = self.conn.execute(
            f"SELECT {QA_COLUMNS} FROM questions_answers WHERE bookmark_id = ? ORDER BY position",
            (bookmark_id,),
        )
        return [QuestionAnswer.from_row(row) for row in cur.fetchall()]

    def save_question_answers(
        self, bookmark_id: str, pairs: list[NewQuestionAnswer]
    ) -> list[str]:
        """Persist Q&A pairs for a bookmark in one transaction."""
        now = now_iso()
        ids = [str(uuid.uuid4()) for _ in pairs]
        self.conn.executemany(
            """
            INSERT INTO questions_answers (
                id, bookmark_id, position, question, answer,
                embedding_question, embedding_answer, embedding_both, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    qa_id,
                    bookmark_id,
                    position,
                    pair.question,
                    pair.answer,
                    serialize_f32(pair.embedding_question),
                    serialize_f32(pair.embedding_answer),
                    serialize_f32(pair.embedding_both),
                    now,
                    now,
                )
                for position, (qa_id, pair) in enumerate(zip(ids, pairs))
            ],
        )
        self.conn.commit()
        return ids

    def search_questions(self, query_embedding: list[float], limit: int = 10) -> list[dict[str, Any]]:
        """Nearest Q&A pairs by cosine distance on the combined embedding.

        Requires sqlite-vec loaded into the connection.
        """
        cur = self.conn.execute(
            """
            SELECT q.id, q.bookmark_id, q.question, q.answer, b.title, b.url,
                   vec_distance_cosine(q.embedding_both, ?) AS distance
            FROM questions_answers q
            JOIN bookmarks b ON b.id = q.bookmark_id
            WHERE length(q.embedding_both) = ?
            ORDER BY distance
            LIMIT ?
            """,
            (serialize_f32(query_embedding), len(query_embedding) * 4, limit),
        )
        return [
            {
                "id": row[0],
                "bookmark_id": row[1],
                "question": row[2],
                "answer": row[3],
                "title": row[4],
                "url": row[5],
                "distance": row[6],
            }
            for row in cur.fetchall()
        ]

    # ==================== App Settings ====================

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        """Get a setting value by key."""
        cur = self.conn.execute("SELECT value FROM app_settings WHERE key = ?", (key,))
        row = cur.fetchone()
        return row[0] if row else default

    def set_setting(self, key: str, value: str) -> None:
        """Set a setting value (upsert)."""
        self.conn.execute(
            """
            INSERT INTO app_settings (key, value, updated_at)
            VALUES (?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = datetime('now')
            """,
            (key, value),
        )
        self.conn.commit()


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with row access by name and sqlite-vec loaded."""
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    return conn


_db: DB | None = None


def init_db(settings: Settings | None = None) -> DB:
    global _db
    from bookmark_rag.core.jobs import init_job_store

    s = settings or Settings.from_env()
    if s.db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(s.db_path)), exist_ok=True)

    conn = connect(s.db_path)
    conn.execute("PRAGMA journal_mode=WAL")

    _db = DB(conn=conn)
    _db.init()

    # Job store shares the same connection
    init_job_store(conn)
    return _db


def get_db() -> DB:
    assert _db is not None, "DB not initialized"
    return _db
