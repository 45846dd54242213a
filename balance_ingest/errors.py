"""
balance_ingest/errors.py

Error taxonomy for the ingestion pipeline.

Every failure the pipeline surfaces is an :class:`IngestionError` tagged with
one member of the closed :class:`ErrorKind` enum. Callers branch on
``err.kind`` instead of on a class hierarchy.

Kinds
-----
INVALID_RANGE
    Bad input dates or granularity. Not retried.
FETCH_ERROR
    Transport/status failure from the REE API, raised after the orchestrator
    exhausted its retries.
RESPONSE_SHAPE_ERROR
    The payload is missing ``data`` or ``included``. Not retried.
NORMALIZATION_ERROR
    The payload has sections but no timestamp source. Not retried.
PERSISTENCE_ERROR
    A store operation failed. Not retried by the orchestrator; the
    scheduler's deferred retry is the outer safety net.
UNKNOWN_GRANULARITY
    A manual trigger named a granularity with no configured scheduler.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_RANGE = "InvalidRange"
    FETCH_ERROR = "FetchError"
    RESPONSE_SHAPE_ERROR = "ResponseShapeError"
    NORMALIZATION_ERROR = "NormalizationError"
    PERSISTENCE_ERROR = "PersistenceError"
    UNKNOWN_GRANULARITY = "UnknownGranularity"


# Kinds the scheduler may recover from with a deferred retry.
RETRIABLE_KINDS = frozenset({ErrorKind.FETCH_ERROR, ErrorKind.PERSISTENCE_ERROR})


class IngestionError(Exception):
    """Single exception type raised by the pipeline.

    Args:
        kind: Which failure this is.
        message: Human readable description.
        cause: Optional underlying exception (also set as ``__cause__`` when
            raised with ``raise ... from cause``).
    """

    def __init__(self, kind: ErrorKind, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause

    @property
    def retriable(self) -> bool:
        return self.kind in RETRIABLE_KINDS

    def to_dict(self) -> dict:
        out = {"kind": self.kind.value, "message": self.message}
        if self.cause is not None:
            out["cause"] = repr(self.cause)
        return out

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    def __repr__(self) -> str:
        return f"IngestionError({self.kind.value!r}, {self.message!r})"
