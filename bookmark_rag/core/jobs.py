"""Job ledger: one persisted row per pipeline stage attempt or import run."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from bookmark_rag.core.errors import ErrorInfo

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    """What a job records."""

    MANUAL_ADD = "manual_add"
    URL_FETCH = "url_fetch"
    MARKDOWN_GENERATION = "markdown_generation"
    QA_GENERATION = "qa_generation"
    FILE_IMPORT = "file_import"
    BULK_URL_IMPORT = "bulk_url_import"


class JobStatus(str, Enum):
    """Status of a job."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    id: str
    type: JobType
    status: JobStatus
    bookmark_id: str | None = None
    parent_job_id: str | None = None
    progress: int = 0
    current_step: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None

    def touch(self) -> None:
        """Update updated_at timestamp."""
        self.updated_at = _now()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "bookmarkId": self.bookmark_id,
            "parentJobId": self.parent_job_id,
            "progress": self.progress,
            "currentStep": self.current_step,
            "metadata": self.metadata,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Job:
        """Create Job from database row."""
        return cls(
            id=row["id"],
            type=JobType(row["type"]),
            status=JobStatus(row["status"]),
            bookmark_id=row["bookmark_id"],
            parent_job_id=row["parent_job_id"],
            progress=row["progress"],
            current_step=row["current_step"],
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
        )


JOB_COLUMNS = (
    "id, type, status, parent_job_id, bookmark_id, progress, current_step, "
    "metadata, created_at, updated_at, completed_at"
)


class JobStore:
    """Store for Jobs with DB persistence. Thread-safe."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def _persist(self, job: Job) -> None:
        """Save or update job in DB. Must be called within lock."""
        self._conn.execute(
            f"""
            INSERT INTO jobs ({JOB_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                progress = excluded.progress,
                current_step = excluded.current_step,
                metadata = excluded.metadata,
                updated_at = excluded.updated_at,
                completed_at = excluded.completed_at
            """,
            (
                job.id,
                job.type.value,
                job.status.value,
                job.parent_job_id,
                job.bookmark_id,
                job.progress,
                job.current_step,
                json.dumps(job.metadata),
                job.created_at.isoformat(),
                job.updated_at.isoformat(),
                job.completed_at.isoformat() if job.completed_at else None,
            ),
        )
        self._conn.commit()

    def create(
        self,
        type: JobType,
        status: JobStatus = JobStatus.PENDING,
        bookmark_id: str | None = None,
        parent_job_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        current_step: str | None = None,
    ) -> Job:
        """Create a new job and persist to DB."""
        job = Job(
            id=str(uuid.uuid4()),
            type=type,
            status=status,
            bookmark_id=bookmark_id,
            parent_job_id=parent_job_id,
            metadata=dict(metadata or {}),
            current_step=current_step,
        )
        if status in TERMINAL_STATUSES:
            job.progress = 100
            job.completed_at = job.created_at
        with self._lock:
            self._persist(job)
        return job

    def start(
        self,
        type: JobType,
        bookmark_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        current_step: str | None = None,
        parent_job_id: str | None = None,
    ) -> Job:
        """Create a job that is already running."""
        return self.create(
            type,
            status=JobStatus.IN_PROGRESS,
            bookmark_id=bookmark_id,
            parent_job_id=parent_job_id,
            metadata=metadata,
            current_step=current_step,
        )

    def claim_pending(self, type: JobType, bookmark_id: str, current_step: str | None = None) -> Job | None:
        """Move the oldest pending job of `type` for a bookmark to in progress.

        Returns None when the bookmark has no such pending job.
        """
        with self._lock:
            cur = self._conn.execute(
                f"""
                SELECT {JOB_COLUMNS} FROM jobs
                WHERE type = ? AND bookmark_id = ? AND status = ?
                ORDER BY created_at, rowid LIMIT 1
                """,
                (type.value, bookmark_id, JobStatus.PENDING.value),
            )
            row = cur.fetchone()
            if row is None:
                return None
            job = Job.from_row(row)
            job.status = JobStatus.IN_PROGRESS
            job.current_step = current_step
            job.touch()
            self._persist(job)
        return job

    def record_child_result(self, parent_job_id: str, success: bool) -> Job | None:
        """Count one finished child against its parent's totalUrls.

        The parent completes once every child has succeeded or failed. A
        parent that is missing or already finished is left alone.
        """
        with self._lock:
            parent = self.get(parent_job_id)
            if parent is None or parent.status in TERMINAL_STATUSES:
                return parent
            counter = "successCount" if success else "failureCount"
            parent.metadata[counter] = parent.metadata.get(counter, 0) + 1
            done = parent.metadata.get("successCount", 0) + parent.metadata.get("failureCount", 0)
            total = parent.metadata.get("totalUrls") or 1
            parent.progress = min(100, round(done / total * 100))
            if done >= total:
                parent.status = JobStatus.COMPLETED
                parent.current_step = None
                parent.completed_at = _now()
            parent.touch()
            self._persist(parent)
        if parent.status == JobStatus.COMPLETED:
            logger.info(
                f"Job {parent.id} finished: {parent.metadata.get('successCount', 0)} succeeded, "
                f"{parent.metadata.get('failureCount', 0)} failed"
            )
        return parent

    def get(self, job_id: str) -> Job | None:
        """Get job by ID, or None if not found."""
        cur = self._conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))
        row = cur.fetchone()
        return Job.from_row(row) if row else None

    def update(self, job: Job) -> None:
        """Update job and persist to DB."""
        job.touch()
        with self._lock:
            self._persist(job)

    def complete(self, job: Job, metadata: dict[str, Any] | None = None) -> Job:
        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.current_step = None
        job.metadata.update(metadata or {})
        job.completed_at = _now()
        self.update(job)
        return job

    def fail(self, job: Job, error: ErrorInfo | str) -> Job:
        if isinstance(error, str):
            job.metadata["errorMessage"] = error
        else:
            job.metadata.update({
                "errorKind": error.kind.value,
                "errorMessage": error.message,
                "errorStack": error.stack,
            })
        job.status = JobStatus.FAILED
        job.completed_at = _now()
        self.update(job)
        return job

    def cancel_pending_for_bookmark(self, bookmark_id: str) -> int:
        """Cancel a bookmark's pending jobs, counting each as failed on its parent."""
        cur = self._conn.execute(
            f"SELECT {JOB_COLUMNS} FROM jobs WHERE bookmark_id = ? AND status = ?",
            (bookmark_id, JobStatus.PENDING.value),
        )
        pending = [Job.from_row(row) for row in cur.fetchall()]
        for job in pending:
            job.status = JobStatus.CANCELLED
            job.completed_at = _now()
            self.update(job)
            if job.parent_job_id:
                self.record_child_result(job.parent_job_id, success=False)
        return len(pending)

    def list_recent(
        self,
        limit: int = 50,
        type: JobType | None = None,
        status: JobStatus | None = None,
        parent_job_id: str | None = None,
    ) -> list[Job]:
        """List recent jobs from DB, newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if type is not None:
            clauses.append("type = ?")
            params.append(type.value)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if parent_job_id is not None:
            clauses.append("parent_job_id = ?")
            params.append(parent_job_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = self._conn.execute(
            f"SELECT {JOB_COLUMNS} FROM jobs {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (*params, limit),
        )
        return [Job.from_row(row) for row in cur.fetchall()]

    def get_by_parent(self, parent_job_id: str) -> list[Job]:
        cur = self._conn.execute(
            f"SELECT {JOB_COLUMNS} FROM jobs WHERE parent_job_id = ? ORDER BY created_at, rowid",
            (parent_job_id,),
        )
        return [Job.from_row(row) for row in cur.fetchall()]

    def get_by_bookmark(self, bookmark_id: str) -> list[Job]:
        """Jobs for one bookmark, oldest first."""
        cur = self._conn.execute(
            f"SELECT {JOB_COLUMNS} FROM jobs WHERE bookmark_id = ? ORDER BY created_at, rowid",
            (bookmark_id,),
        )
        return [Job.from_row(row) for row in cur.fetchall()]

    def delete(self, job_id: str) -> bool:
        """Delete job and its children. Returns True if deleted."""
        with self._lock:
            self._conn.execute("DELETE FROM jobs WHERE parent_job_id = ?", (job_id,))
            cur = self._conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            self._conn.commit()
            return cur.rowcount > 0

    def cleanup_old_jobs(self, days_old: int = 30) -> int:
        """Delete finished jobs older than `days_old` days."""
        cutoff = (_now() - timedelta(days=days_old)).isoformat()
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM jobs WHERE created_at < ? AND status IN (?, ?, ?)",
                (cutoff, *[s.value for s in TERMINAL_STATUSES]),
            )
            self._conn.commit()
        if cur.rowcount:
            logger.info(f"Cleaned up {cur.rowcount} jobs older than {days_old} days")
        return cur.rowcount

    def fail_interrupted(self) -> int:
        """Mark jobs left in progress by a previous process as failed."""
        cur = self._conn.execute(
            f"SELECT {JOB_COLUMNS} FROM jobs WHERE status IN (?, ?)",
            (JobStatus.PENDING.value, JobStatus.IN_PROGRESS.value),
        )
        jobs = [Job.from_row(row) for row in cur.fetchall()]
        for job in jobs:
            self.fail(job, "Interrupted by restart")
        return len(jobs)


# Global store instance
_store: JobStore | None = None


def init_job_store(conn: sqlite3.Connection) -> None:
    """Initialize the global JobStore with DB connection."""
    global _store
    _store = JobStore(conn)


def get_job_store() -> JobStore:
    """Get the global JobStore. Must call init_job_store first."""
    if _store is None:
        raise RuntimeError("JobStore not initialized. Call init_job_store first.")
    return _store
