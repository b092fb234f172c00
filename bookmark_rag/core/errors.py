"""Error taxonomy for the bookmark pipeline, sync and import paths.

Exceptions are raised at the failing call site. `ErrorInfo` is the tagged
value that gets persisted on bookmarks and failed jobs.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Tag for persisted errors."""

    FETCH = "fetch"
    EXTRACTION = "extraction"
    GENERATION = "generation"
    SYNC = "sync"
    IMPORT_VALIDATION = "import_validation"
    UNKNOWN = "unknown"


class PipelineError(Exception):
    """Base class for all errors raised by this package."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class FetchErrorType(str, Enum):
    """Classification of fetch errors."""

    TIMEOUT = "timeout"
    HTTP_4XX = "http_4xx"
    HTTP_5XX = "http_5xx"
    CONNECTION_ERROR = "connection_error"
    TOO_LARGE = "too_large"
    NO_CONTENT = "no_content"


RETRIABLE_FETCH_ERRORS = {FetchErrorType.TIMEOUT, FetchErrorType.HTTP_5XX, FetchErrorType.CONNECTION_ERROR}


class FetchError(PipelineError):
    """Network, timeout or HTTP failure while fetching a page."""

    kind = ErrorKind.FETCH

    def __init__(self, message: str, error_type: FetchErrorType, http_status: int | None = None):
        super().__init__(message)
        self.error_type = error_type
        self.http_status = http_status

    @property
    def retriable(self) -> bool:
        return self.error_type in RETRIABLE_FETCH_ERRORS


class ExtractionError(PipelineError):
    """The page could not be turned into Markdown."""

    kind = ErrorKind.EXTRACTION


class GenerationError(PipelineError):
    """Q&A or embedding API failure."""

    kind = ErrorKind.GENERATION

    def __init__(self, message: str, provider: str = "", retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class SyncError(PipelineError):
    """Network, auth or serialization failure during WebDAV sync."""

    kind = ErrorKind.SYNC

    def __init__(self, message: str, http_status: int | None = None):
        super().__init__(message)
        self.http_status = http_status


class ImportValidationError(PipelineError):
    """Malformed import payload or record."""

    kind = ErrorKind.IMPORT_VALIDATION


@dataclass(frozen=True)
class ErrorInfo:
    kind: ErrorKind
    message: str
    stack: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorInfo:
        kind = exc.kind if isinstance(exc, PipelineError) else ErrorKind.UNKNOWN
        message = str(exc) or type(exc).__name__
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).strip()
        return cls(kind=kind, message=message, stack=stack)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "stack": self.stack}
