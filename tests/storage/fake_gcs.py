"""In-memory fake of ``google.cloud.storage.Client`` for testing."""

from __future__ import annotations

import base64
import hashlib
import io
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator

from google.api_core import exceptions as api_exceptions

MAX_COMPOSE_SOURCES = 32


def _md5(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


@dataclass
class FakeGCS:
    """Implements the subset of the storage client used by ``GCSStorageClient``.

    ``failures`` maps an operation name to errors raised by its next calls,
    ``calls`` records each operation with the affected key.
    """

    objects: dict[str, dict[str, bytes]] = field(default_factory=dict)
    generations: dict[tuple[str, str], int] = field(default_factory=dict)
    calls: list[tuple[str, Any]] = field(default_factory=list)
    failures: dict[str, list[Exception]] = field(default_factory=dict)
    page_size: int = 1000
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def put(self, bucket: str, key: str, data: bytes) -> None:
        self.write(bucket, key, data)

    def data(self, bucket: str, key: str) -> bytes:
        return self.objects[bucket][key]

    def names(self, bucket: str) -> list[str]:
        return sorted(self.objects.get(bucket, {}))

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def record(self, operation: str, detail: Any) -> None:
        with self._lock:
            self.calls.append((operation, detail))
            pending = self.failures.get(operation)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    def read(self, bucket: str, key: str) -> bytes:
        with self._lock:
            try:
                return self.objects[bucket][key]
            except KeyError:
                raise api_exceptions.NotFound(f"No such object: {bucket}/{key}") from None

    def write(self, bucket: str, key: str, data: bytes) -> None:
        with self._lock:
            self.objects.setdefault(bucket, {})[key] = data
            self.generations[(bucket, key)] = self.generations.get((bucket, key), 0) + 1

    def generation(self, bucket: str, key: str) -> int | None:
        with self._lock:
            if key not in self.objects.get(bucket, {}):
                return None
            return self.generations.get((bucket, key))

    def remove(self, bucket: str, key: str) -> None:
        with self._lock:
            try:
                del self.objects[bucket][key]
            except KeyError:
                raise api_exceptions.NotFound(f"No such object: {bucket}/{key}") from None

    def bucket(self, name: str) -> "FakeBucket":
        return FakeBucket(self, name)

    def list_blobs(
        self,
        bucket_or_name: str,
        prefix: str | None = None,
        delimiter: str | None = None,
        fields: str | None = None,
    ) -> "FakeIterator":
        self.record("list", prefix)
        with self._lock:
            snapshot = dict(self.objects.get(bucket_or_name, {}))
        return FakeIterator(self, bucket_or_name, snapshot, prefix or "", delimiter or "")


@dataclass
class FakePage:
    blobs: list["FakeBlob"]
    prefixes: tuple[str, ...]

    def __iter__(self) -> Iterator["FakeBlob"]:
        return iter(self.blobs)


@dataclass
class FakeIterator:
    client: FakeGCS
    bucket: str
    snapshot: dict[str, bytes]
    prefix: str
    delimiter: str

    @property
    def pages(self) -> Iterator[FakePage]:
        blobs: list[FakeBlob] = []
        prefixes: list[str] = []
        for key in sorted(self.snapshot):
            if not key.startswith(self.prefix):
                continue
            if self.delimiter:
                index = key.find(self.delimiter, len(self.prefix))
                if index >= 0:
                    common = key[: index + len(self.delimiter)]
                    if common not in prefixes:
                        prefixes.append(common)
                    continue
            blob = FakeBlob(FakeBucket(self.client, self.bucket), key)
            blob._load(self.snapshot[key], self.client.generation(self.bucket, key))
            blobs.append(blob)

        size = self.client.page_size
        for start in range(0, max(len(blobs), 1), size):
            last = start + size >= len(blobs)
            yield FakePage(blobs[start : start + size], tuple(prefixes) if last else ())


@dataclass
class FakeBucket:
    client: FakeGCS
    name: str

    def blob(self, key: str) -> "FakeBlob":
        return FakeBlob(self, key)

    def copy_blob(
        self,
        blob: "FakeBlob",
        destination_bucket: "FakeBucket",
        new_name: str | None = None,
        retry: Any = None,
    ) -> "FakeBlob":
        self.client.record("copy", (blob.name, new_name))
        data = self.client.read(self.name, blob.name)
        target = new_name or blob.name
        self.client.write(destination_bucket.name, target, data)
        return FakeBlob(destination_bucket, target)


class FakeBlob:
    def __init__(self, bucket: FakeBucket, name: str) -> None:
        self.bucket = bucket
        self.name = name
        self.size: int | None = None
        self.etag: str | None = None
        self.updated: datetime | None = None
        self.chunk_size: int | None = None
        self.md5_hash: str | None = None
        self.generation: int | None = None

    @property
    def _client(self) -> FakeGCS:
        return self.bucket.client

    def _load(self, data: bytes, generation: int | None = None) -> None:
        self.generation = generation
        self.size = len(data)
        self.etag = _md5(data)
        self.updated = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def reload(self, retry: Any = None) -> None:
        self._client.record("reload", self.name)
        self._load(
            self._client.read(self.bucket.name, self.name),
            self._client.generation(self.bucket.name, self.name),
        )

    def open(self, mode: str = "r", chunk_size: int | None = None, retry: Any = "default") -> io.BytesIO:
        self._client.record("open", (self.name, retry))
        return io.BytesIO(self._client.read(self.bucket.name, self.name))

    def download_as_bytes(
        self,
        start: int | None = None,
        end: int | None = None,
        checksum: str | None = None,
        retry: Any = None,
    ) -> bytes:
        self._client.record("download", (self.name, start, end))
        data = self._client.read(self.bucket.name, self.name)
        start = start or 0
        if start >= len(data) and data:
            raise api_exceptions.RequestRangeNotSatisfiable("range not satisfiable")
        return data[start:] if end is None else data[start : end + 1]

    def upload_from_file(self, file_obj: Any, checksum: str | None = None, retry: Any = None) -> None:
        self._client.record("upload", self.name)
        data = file_obj.read()
        if self.md5_hash is not None and self.md5_hash != _md5(data):
            raise api_exceptions.BadRequest("md5 mismatch")
        self._client.write(self.bucket.name, self.name, data)

    def delete(self, retry: Any = None) -> None:
        self._client.record("delete", self.name)
        self._client.remove(self.bucket.name, self.name)

    def compose(
        self,
        sources: list["FakeBlob"],
        if_generation_match: int | None = None,
        retry: Any = None,
    ) -> None:
        self._client.record("compose", (self.name, [source.name for source in sources]))
        if (
            if_generation_match is not None
            and self._client.generation(self.bucket.name, self.name) != if_generation_match
        ):
            raise api_exceptions.PreconditionFailed("generation does not match")
        if len(sources) > MAX_COMPOSE_SOURCES:
            raise api_exceptions.BadRequest("too many source objects")
        data = b"".join(self._client.read(self.bucket.name, source.name) for source in sources)
        self._client.write(self.bucket.name, self.name, data)
