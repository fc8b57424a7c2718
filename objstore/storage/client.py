"""Storage client protocol.

This module defines the provider agnostic interface for object storage
operations. Every provider implements the same operation set so callers may
append, overwrite, enumerate and delete objects without knowing which backend
is in use.
"""

from __future__ import annotations

import re
import threading
from typing import BinaryIO, Callable, Protocol, Sequence, Union

from objstore.errors import IncludeExcludeMutuallyExclusiveError
from objstore.storage.values import ByteRange, Object, ObjectAttrs, Part, Provider

# Body accepted by uploads, streams must be seekable so requests may be retried
Body = Union[bytes, BinaryIO]

# Function executed for each object visited by 'iterate_objects', raising stops iteration
IterateFunc = Callable[[ObjectAttrs], None]


class StorageClient(Protocol):
    """Protocol defining the interface for object storage backends.

    Implementations must be safe to use concurrently for distinct keys and
    hold no mutable state other than a handle to the provider API.
    """

    @property
    def provider(self) -> Provider:
        """The cloud provider this client talks to."""
        ...

    def with_cancel(self, cancel: threading.Event | None) -> "StorageClient":
        """Return a client sharing the same API handle, bound to the given cancellation event."""
        ...

    def get_object(
        self, *, bucket: str, key: str, byte_range: ByteRange | None = None
    ) -> Object:
        """Fetch an object, or a range of it.

        Args:
            bucket: Source bucket name.
            key: Object key (path) in the bucket.
            byte_range: Optional inclusive range, the whole object is returned when omitted.

        Returns:
            Object whose body is owned (and must be closed) by the caller.

        Raises:
            InvalidByteRangeError: If the range is malformed, before any request is made.
            NotFoundError: If the object does not exist.
        """
        ...

    def get_object_attrs(self, *, bucket: str, key: str) -> ObjectAttrs:
        """Get object metadata without downloading the content.

        Raises:
            NotFoundError: If the object does not exist.
        """
        ...

    def put_object(self, *, bucket: str, key: str, body: Body) -> None:
        """Upload an object, unconditionally overwriting any existing object."""
        ...

    def append_to_object(self, *, bucket: str, key: str, data: Body) -> None:
        """Append data to an object, creating it if it does not exist.

        Raises:
            PhaseError: Wrapping the failure of one step of the append.
        """
        ...

    def delete_objects(self, *, bucket: str, keys: Sequence[str]) -> None:
        """Delete the given keys, keys which do not exist are ignored."""
        ...

    def delete_directory(self, *, bucket: str, prefix: str) -> None:
        """Delete every object whose key starts with ``prefix``."""
        ...

    def iterate_objects(
        self,
        *,
        bucket: str,
        prefix: str = "",
        delimiter: str = "",
        include: Sequence[re.Pattern[str]] | None = None,
        exclude: Sequence[re.Pattern[str]] | None = None,
        fn: IterateFunc,
    ) -> None:
        """Visit every object under ``prefix`` which is not filtered out.

        Args:
            bucket: Bucket to list.
            prefix: Only keys starting with this prefix are visited.
            delimiter: When set, keys are grouped into pseudo-directories.
            include: Only visit keys matching at least one of these patterns.
            exclude: Skip keys matching any of these patterns.
            fn: Called for each object; an exception stops iteration and propagates unchanged.

        Raises:
            IncludeExcludeMutuallyExclusiveError: If both filters are given, before any listing.
        """
        ...

    def create_multipart_upload(self, *, bucket: str, key: str) -> str:
        """Start a multipart upload, returning its id."""
        ...

    def upload_part(
        self, *, bucket: str, upload_id: str, key: str, number: int, body: Body
    ) -> Part:
        """Upload a single part of a multipart upload.

        Raises:
            InvalidPartNumberError: If ``number`` is not between 1 and 10000.
        """
        ...

    def upload_part_copy(
        self,
        *,
        bucket: str,
        upload_id: str,
        dst: str,
        src: str,
        number: int,
        byte_range: ByteRange | None,
    ) -> Part:
        """Copy a range of an existing object into a multipart upload.

        Raises:
            InvalidByteRangeError: If the range is malformed or missing when required.
            UnsupportedOperationError: If the provider cannot copy the requested range.
        """
        ...

    def complete_multipart_upload(
        self, *, bucket: str, upload_id: str, key: str, parts: Sequence[Part]
    ) -> None:
        """Assemble the given parts, in the given order, into the object at ``key``."""
        ...

    def abort_multipart_upload(self, *, bucket: str, upload_id: str, key: str) -> None:
        """Discard a multipart upload and any intermediate state; safe to call repeatedly."""
        ...

    def list_parts(self, *, bucket: str, upload_id: str, key: str) -> list[Part]:
        """List the parts uploaded so far; part numbers may not be populated."""
        ...


def should_ignore(
    key: str,
    include: Sequence[re.Pattern[str]] | None,
    exclude: Sequence[re.Pattern[str]] | None,
) -> bool:
    """Return whether a key is filtered out by the include/exclude patterns."""
    if include:
        return not any(pattern.search(key) for pattern in include)
    if exclude:
        return any(pattern.search(key) for pattern in exclude)
    return False


def check_filters(
    include: Sequence[re.Pattern[str]] | None,
    exclude: Sequence[re.Pattern[str]] | None,
) -> None:
    if include and exclude:
        raise IncludeExcludeMutuallyExclusiveError()
