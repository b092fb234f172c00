"""Bulk import of bookmarks from a list of URLs.

Bookmarks are created without HTML, the pipeline's fetch stage downloads
them when the queue runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from bookmark_rag.core.jobs import Job, JobStatus, JobStore, JobType
from bookmark_rag.core.models import BookmarkStatus
from bookmark_rag.core.storage import DB, normalize_url

logger = logging.getLogger(__name__)

BLOCKED_SCHEMES = ("javascript:", "data:", "vbscript:", "file:")
ALLOWED_SCHEMES = ("http", "https")


@dataclass
class UrlCheck:
    original: str
    normalized: str = ""
    error: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.error is None


@dataclass
class UrlValidationResult:
    valid: list[str] = field(default_factory=list)
    invalid: list[dict[str, str]] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "invalid": self.invalid, "duplicates": self.duplicates}


def validate_single_url(url: str) -> UrlCheck:
    """Validate one URL, adding https:// when no scheme is given."""
    candidate = url.strip()
    if not candidate:
        return UrlCheck(original=url, error="Empty URL")

    lowered = candidate.lower()
    if lowered.startswith(BLOCKED_SCHEMES):
        return UrlCheck(original=url, error="Unsafe URL scheme")

    if "://" not in candidate:
        candidate = f"https://{candidate}"

    try:
        parsed = urlparse(candidate)
    except ValueError:
        return UrlCheck(original=url, error="Invalid URL format")

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        return UrlCheck(original=url, error="Only HTTP and HTTPS URLs are allowed")
    if not parsed.hostname:
        return UrlCheck(original=url, error="URL has no host")

    return UrlCheck(original=url, normalized=candidate)


def validate_urls(text_or_urls: str | list[str]) -> UrlValidationResult:
    """Split, trim and validate URLs; report invalid entries and duplicates."""
    lines = text_or_urls.splitlines() if isinstance(text_or_urls, str) else list(text_or_urls)
    result = UrlValidationResult()
    seen: set[str] = set()
    for line in lines:
        line = line.strip()
        if not line:
            continue
        check = validate_single_url(line)
        if not check.is_valid:
            result.invalid.append({"url": line, "error": check.error or ""})
            continue
        key = normalize_url(check.normalized) or check.normalized
        if key in seen:
            result.duplicates.append(check.normalized)
            continue
        seen.add(key)
        result.valid.append(check.normalized)
    return result


@dataclass
class BulkImportResult:
    job: Job
    total_urls: int
    created: int
    skipped: int
    invalid: int


def create_bulk_import(db: DB, jobs: JobStore, urls: list[str]) -> BulkImportResult:
    """Create a BULK_URL_IMPORT job and a pending bookmark per new URL.

    Each new bookmark gets a pending URL_FETCH child job. The parent stays in
    progress until the pipeline has counted every child in successCount or
    failureCount. URLs that already have a bookmark are skipped. The caller
    starts the queue.
    """
    validation = validate_urls(urls)
    job = jobs.create(
        JobType.BULK_URL_IMPORT,
        status=JobStatus.IN_PROGRESS,
        metadata={"totalUrls": 0, "successCount": 0, "failureCount": 0},
        current_step="Creating bookmarks",
    )

    created = 0
    skipped = 0
    for url in validation.valid:
        if db.get_bookmark_by_url(url) is not None:
            skipped += 1
            continue
        bookmark = db.create_bookmark(url=url, title="", html="", status=BookmarkStatus.PENDING)
        jobs.create(
            JobType.URL_FETCH,
            bookmark_id=bookmark.id,
            parent_job_id=job.id,
            metadata={"url": url},
        )
        created += 1

    job.metadata.update({
        "totalUrls": created,
        "createdCount": created,
        "skippedCount": skipped,
        "invalidCount": len(validation.invalid),
        "duplicateCount": len(validation.duplicates),
    })
    if created:
        job.current_step = "Fetching URLs"
        jobs.update(job)
    else:
        jobs.complete(job)
    logger.info(f"Bulk import {job.id}: {created} created, {skipped} already saved, {len(validation.invalid)} invalid")
    return BulkImportResult(
        job=job,
        total_urls=len(validation.valid),
        created=created,
        skipped=skipped,
        invalid=len(validation.invalid),
    )
