"""Error taxonomy for the fetch -> extract -> ingest pipeline.

Each error carries a ``kind`` so callers (the check worker, the API) can
decide whether to retry, how to record the failure and which status code
to surface, without matching on message text.
"""

from __future__ import annotations

from enum import Enum


class FetchErrorKind(str, Enum):
    TIMEOUT = "Timeout"
    BOT_BLOCKED = "BotBlocked"
    NOT_FOUND = "NotFound"
    TRANSPORT = "Transport"


class ExtractionErrorKind(str, Enum):
    NO_PRODUCT_FOUND = "NoProductFound"
    UNSUPPORTED_LAYOUT = "UnsupportedLayout"


class IngestionErrorKind(str, Enum):
    CONSTRAINT_VIOLATION = "ConstraintViolation"
    TRANSIENT_STORE_FAILURE = "TransientStoreFailure"


class PipelineError(Exception):
    """Base class for errors raised while checking a product page."""

    def __init__(self, kind: Enum, message: str = "") -> None:
        self.kind = kind
        self.message = message or kind.value
        super().__init__(f"{kind.value}: {self.message}")


class FetchError(PipelineError):
    """Raised when a page could not be retrieved."""

    kind: FetchErrorKind

    @property
    def retryable(self) -> bool:
        return self.kind in (FetchErrorKind.TIMEOUT, FetchErrorKind.TRANSPORT)


class ExtractionError(PipelineError):
    """Raised when no extraction strategy produced a plausible product."""

    kind: ExtractionErrorKind


class IngestionError(PipelineError):
    """Raised when extracted data could not be written to the store."""

    kind: IngestionErrorKind

    @property
    def retryable(self) -> bool:
        return self.kind is IngestionErrorKind.TRANSIENT_STORE_FAILURE


__all__ = [
    "FetchErrorKind",
    "ExtractionErrorKind",
    "IngestionErrorKind",
    "PipelineError",
    "FetchError",
    "ExtractionError",
    "IngestionError",
]
