"""Canonical storage errors.

Every provider normalises its native SDK errors into the classes defined here
so callers can match on them without knowing which backend is in use.
"""

from __future__ import annotations


class StorageError(RuntimeError):
    """Raised when object storage operations fail."""


class ValidationError(StorageError, ValueError):
    """Raised before any network call when arguments are malformed."""


class InvalidByteRangeError(ValidationError):
    """Raised when a byte range is malformed or not allowed for the operation."""

    def __init__(self, start: int, end: int | None) -> None:
        super().__init__(f"invalid byte range: start={start} end={end}")
        self.start = start
        self.end = end


class IncludeExcludeMutuallyExclusiveError(ValidationError):
    """Raised when both include and exclude filters are supplied."""

    def __init__(self) -> None:
        super().__init__("include and exclude are mutually exclusive")


class InvalidPartNumberError(ValidationError):
    """Raised when a part number is outside of the supported range."""

    def __init__(self, number: int) -> None:
        super().__init__(f"invalid part number {number}, must be between 1 and 10000")
        self.number = number


class NotFoundError(StorageError):
    """Raised when the requested object or bucket does not exist."""

    def __init__(self, bucket: str, key: str | None = None, *, type: str = "object") -> None:
        target = f"{bucket}/{key}" if key else bucket
        super().__init__(f"{type} '{target}' not found")
        self.bucket = bucket
        self.key = key
        self.type = type


class UnsupportedOperationError(StorageError):
    """Raised when the backend cannot perform the requested operation."""


class UnauthorizedError(StorageError):
    """Raised when the credentials are missing or lack the required permissions."""

    def __init__(self, bucket: str, key: str | None = None) -> None:
        target = f"{bucket}/{key}" if key else bucket
        super().__init__(f"not authorized to access '{target}'")
        self.bucket = bucket
        self.key = key


class ProviderError(StorageError):
    """Opaque wrapper around a native provider error, available as ``__cause__``."""

    def __init__(self, bucket: str, key: str | None, message: str) -> None:
        target = f"{bucket}/{key}" if key else bucket
        super().__init__(f"provider error for '{target}': {message}")
        self.bucket = bucket
        self.key = key


class RetriesExhaustedError(StorageError):
    """Raised by the retryer when every attempt failed."""

    def __init__(self, attempts: int, last: BaseException | None = None, payload: object = None) -> None:
        super().__init__(f"exhausted retry count after {attempts} retries: {last}")
        self.attempts = attempts
        self.last = last
        self.payload = payload


class RetriesAbortedError(StorageError):
    """Raised by the retryer when the operation was cancelled."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"retries aborted after {attempts} retries")
        self.attempts = attempts


class PhaseError(StorageError):
    """Wraps an error raised during one phase of a multi-step operation."""

    def __init__(self, phase: str, cause: BaseException) -> None:
        super().__init__(f"failed to {phase}: {cause}")
        self.phase = phase
        self.__cause__ = cause


def root_cause(exc: BaseException) -> BaseException:
    """Return the innermost error of a ``PhaseError`` chain."""
    while isinstance(exc, PhaseError) and exc.__cause__ is not None:
        exc = exc.__cause__
    return exc


def is_not_found(exc: BaseException | None) -> bool:
    return exc is not None and isinstance(root_cause(exc), NotFoundError)
