"""Object storage abstraction layer.

This module provides a provider agnostic client for AWS S3 and Google Cloud
Storage, emulating the capabilities one provider lacks so both behave the same.
"""

from .client import Body, IterateFunc, StorageClient
from ..errors import (
    IncludeExcludeMutuallyExclusiveError,
    InvalidByteRangeError,
    InvalidPartNumberError,
    NotFoundError,
    PhaseError,
    ProviderError,
    RetriesAbortedError,
    RetriesExhaustedError,
    StorageError,
    UnauthorizedError,
    UnsupportedOperationError,
    ValidationError,
    is_not_found,
)
from .factory import build_client, configure_logging
from .gcs_client import GCSStorageClient
from .s3_client import S3StorageClient
from .values import ByteRange, Object, ObjectAttrs, Part, Provider

__all__ = [
    "Body",
    "ByteRange",
    "GCSStorageClient",
    "IncludeExcludeMutuallyExclusiveError",
    "InvalidByteRangeError",
    "InvalidPartNumberError",
    "IterateFunc",
    "NotFoundError",
    "Object",
    "ObjectAttrs",
    "Part",
    "PhaseError",
    "Provider",
    "ProviderError",
    "RetriesAbortedError",
    "RetriesExhaustedError",
    "S3StorageClient",
    "StorageClient",
    "StorageError",
    "UnauthorizedError",
    "UnsupportedOperationError",
    "ValidationError",
    "build_client",
    "configure_logging",
    "is_not_found",
]
