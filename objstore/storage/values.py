"""Value types shared by every storage provider."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO

from objstore.errors import InvalidByteRangeError, InvalidPartNumberError

# Part numbers accepted by multipart uploads
MIN_PART_NUMBER = 1
MAX_PART_NUMBER = 10000


class Provider(str, enum.Enum):
    """Cloud provider backing a storage client."""

    AWS = "aws"
    GCP = "gcp"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class ByteRange:
    """Inclusive byte range, an absent end means "until the end of the object"."""

    start: int = 0
    end: int | None = None

    def validate(self, required: bool = False) -> None:
        """Raise ``InvalidByteRangeError`` when the range is malformed.

        Args:
            required: When set, the range must be closed (have an end).
        """
        if self.start < 0:
            raise InvalidByteRangeError(self.start, self.end)
        if self.end is None:
            if required:
                raise InvalidByteRangeError(self.start, self.end)
            return
        if self.end < self.start:
            raise InvalidByteRangeError(self.start, self.end)

    def header(self) -> str:
        """Format the range as an HTTP ``Range`` header value."""
        end = "" if self.end is None else str(self.end)
        return f"bytes={self.start}-{end}"

    def to_offset_length(self, total: int = -1) -> tuple[int, int]:
        """Return the range as an offset and a length.

        ``total`` is returned as the length of an open ended range.
        """
        if self.end is None:
            return self.start, total
        return self.start, self.end - self.start + 1

    def covers(self, size: int) -> bool:
        """Return whether the range spans exactly one whole object of ``size`` bytes."""
        if size == 0:
            return self.start == 0 and self.end is None
        return self.start == 0 and self.end in (None, size - 1)

    def __str__(self) -> str:
        return self.header()


def validate_byte_range(br: ByteRange | None, required: bool = False) -> None:
    """Validate an optional byte range, ``None`` is only valid when not required."""
    if br is None:
        if required:
            raise InvalidByteRangeError(0, None)
        return
    br.validate(required)


def validate_part_number(number: int) -> None:
    if not MIN_PART_NUMBER <= number <= MAX_PART_NUMBER:
        raise InvalidPartNumberError(number)


@dataclass(frozen=True, slots=True)
class ObjectAttrs:
    """Metadata snapshot of a remote object, or of a pseudo-directory.

    ``generation`` is only populated by providers which version objects.
    """

    key: str
    size: int = 0
    etag: str | None = None
    last_modified: datetime | None = None
    generation: int | None = None

    def is_dir(self, delimiter: str = "/") -> bool:
        """Return whether these attributes describe a pseudo-directory entry."""
        return (
            bool(delimiter)
            and self.key.endswith(delimiter)
            and self.size == 0
            and self.last_modified is None
        )


@dataclass(frozen=True, slots=True)
class Object:
    """A remote object with an open body owned by the caller.

    The client which returned the object never closes the body; use the object
    as a context manager to guarantee it is released.
    """

    attrs: ObjectAttrs
    body: BinaryIO

    def read(self, size: int = -1) -> bytes:
        return self.body.read(size)

    def close(self) -> None:
        self.body.close()

    def __enter__(self) -> "Object":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass(frozen=True, slots=True)
class Part:
    """A single part of a multipart upload.

    ``id`` is an entity tag for AWS and a generated intermediate key for GCP.
    ``number`` is not populated by functions listing parts from the provider.
    """

    id: str
    number: int = 0
    size: int = 0
