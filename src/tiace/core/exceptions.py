# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Custom exception hierarchy for tiace.

Every error carries an :class:`ErrorKind` and a ``retryable`` flag so the
scheduler and sync pipeline can decide between retry, per-record counting,
and terminating a job without inspecting concrete types.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    RATE_LIMITED = "rate_limited"
    UNREACHABLE = "unreachable"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    PARTIAL_TRANSPORT = "partial_transport"
    MALFORMED = "malformed"
    SCHEMA_DRIFT = "schema_drift"
    FILTERED_OUT = "filtered_out"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    AUTH_FAILED = "auth_failed"
    QUARANTINED = "quarantined"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CANCELLED = "cancelled"
    STORAGE_CORRUPTED = "storage_corrupted"
    SERIALIZATION = "serialization"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class TiaceError(Exception):
    """Base exception for all tiace errors."""

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False


class ConfigurationError(TiaceError):
    """Invalid or missing configuration."""

    kind = ErrorKind.CONFIGURATION


class ValidationError(TiaceError):
    """An entity or request failed validation."""

    kind = ErrorKind.VALIDATION


class NotFoundError(TiaceError):
    """Requested entity does not exist in the caller's tenant."""

    kind = ErrorKind.NOT_FOUND


class PermissionDeniedError(TiaceError):
    """Caller lacks the permission or tenant scope for the operation."""

    kind = ErrorKind.PERMISSION_DENIED


class ConflictError(TiaceError):
    """Operation conflicts with current state."""

    kind = ErrorKind.CONFLICT


class SerializationError(TiaceError):
    """A record could not be encoded or decoded."""

    kind = ErrorKind.SERIALIZATION


class DeadlineExceededError(TiaceError):
    """An operation did not complete before its deadline."""

    kind = ErrorKind.DEADLINE_EXCEEDED


class SyncCancelledError(TiaceError):
    """A sync observed its cancellation signal."""

    kind = ErrorKind.CANCELLED


class QuarantinedError(TiaceError):
    """Feed is quarantined and requires operator re-enable."""

    kind = ErrorKind.QUARANTINED


# ---------------------------------------------------------------------------
# Connectors
# ---------------------------------------------------------------------------


class ConnectorError(TiaceError):
    """Failure while pulling from a feed endpoint."""

    def __init__(self, message: str, *, feed_id: str = "") -> None:
        super().__init__(message)
        self.feed_id = feed_id


class AuthFailedError(ConnectorError):
    kind = ErrorKind.AUTH_FAILED


class UnreachableError(ConnectorError):
    kind = ErrorKind.UNREACHABLE
    retryable = True


class RateLimitedError(ConnectorError):
    kind = ErrorKind.RATE_LIMITED
    retryable = True

    def __init__(
        self, message: str, *, feed_id: str = "", retry_after: float | None = None
    ) -> None:
        super().__init__(message, feed_id=feed_id)
        self.retry_after = retry_after


class PartialTransportError(ConnectorError):
    kind = ErrorKind.PARTIAL_TRANSPORT
    retryable = True


class MalformedResponseError(ConnectorError):
    kind = ErrorKind.MALFORMED


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


class ParseError(TiaceError):
    """A raw record could not be turned into canonical records."""


class MalformedRecordError(ParseError):
    kind = ErrorKind.MALFORMED


class SchemaDriftError(ParseError):
    """A mandatory field is missing from an otherwise well-formed record."""

    kind = ErrorKind.SCHEMA_DRIFT


class FilteredOutError(ParseError):
    kind = ErrorKind.FILTERED_OUT


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(TiaceError):
    """Database or storage operation failed."""


class BackendUnavailableError(StorageError):
    kind = ErrorKind.BACKEND_UNAVAILABLE
    retryable = True


class StorageCorruptedError(StorageError):
    """Persisted state failed an integrity check.  Fatal at startup."""

    kind = ErrorKind.STORAGE_CORRUPTED
