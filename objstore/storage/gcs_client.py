"""Google Cloud Storage client implementation.

Google Storage has no multipart uploads and cannot copy partial byte ranges;
it only supports whole-object copies and composing up to 32 objects into one.
Multipart uploads are emulated by uploading each part as an intermediate
object under a per-upload key prefix, then composing the parts into the final
object.

Dependencies:
    - google-cloud-storage
"""

from __future__ import annotations

import base64
import dataclasses
import hashlib
import io
import logging
import re
import threading
import uuid
from typing import TYPE_CHECKING, Any, BinaryIO, Callable, Iterator, Sequence, TypeVar

import requests
from google.api_core import exceptions as api_exceptions
from google.auth.exceptions import TransportError
from google.cloud import storage

from objstore.common.logging import user_tag
from objstore.common.pool import WorkerPool, num_workers
from objstore.common.retry import RetryContext, Retryer
from objstore.errors import (
    NotFoundError,
    PhaseError,
    ProviderError,
    RetriesAbortedError,
    StorageError,
    UnauthorizedError,
    UnsupportedOperationError,
    ValidationError,
)
from objstore.storage import compose
from objstore.storage.client import Body, IterateFunc, check_filters, should_ignore
from objstore.storage.values import (
    ByteRange,
    Object,
    ObjectAttrs,
    Part,
    Provider,
    validate_byte_range,
    validate_part_number,
)

if TYPE_CHECKING:
    from objstore.common.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Hard limit imposed by Google Storage on the number of objects composed into one, composed objects
# may themselves be used as the source of a later compose.
MAX_COMPOSABLE = 32

# Chunk size used for resumable uploads, required for the SDK to be able to retry requests
CHUNK_SIZE = 5 * 1024 * 1024

# Number of listed keys deleted together when removing a directory
DELETE_BATCH_SIZE = 1000

# Only the attributes we use are requested when listing
_LIST_FIELDS = "items(name,etag,size,updated),prefixes,nextPageToken"

_TRANSIENT_ERRORS = (
    api_exceptions.TooManyRequests,
    api_exceptions.InternalServerError,
    api_exceptions.BadGateway,
    api_exceptions.ServiceUnavailable,
    api_exceptions.GatewayTimeout,
    requests.exceptions.ConnectionError,
    requests.exceptions.ChunkedEncodingError,
    requests.exceptions.Timeout,
    TransportError,
    ConnectionError,
)


def handle_error(bucket: str, key: str | None, exc: BaseException) -> StorageError:
    """Convert a native Google Storage error into a storage error."""
    if isinstance(exc, StorageError):
        return exc
    if isinstance(exc, api_exceptions.NotFound):
        return NotFoundError(bucket, key)
    if isinstance(exc, (api_exceptions.Unauthorized, api_exceptions.Forbidden)):
        return UnauthorizedError(bucket, key)
    if isinstance(exc, api_exceptions.MethodNotImplemented):
        return UnsupportedOperationError(f"operation not supported for '{bucket}/{key}': {exc}")
    return ProviderError(bucket, key, str(exc))


def is_transient(exc: BaseException | None) -> bool:
    return isinstance(exc, _TRANSIENT_ERRORS)


def _should_retry(ctx: RetryContext, payload: Any, exc: BaseException | None) -> bool:
    # Callers hold exclusive access to the key prefix, so writes, copies and composes are always retried
    return is_transient(exc)


def part_prefix(upload_id: str, key: str) -> str:
    """Return the prefix under which the intermediate objects of an upload are stored."""
    return f"{key}-mpu-{upload_id}/"


def part_key(upload_id: str, key: str, number: int) -> str:
    return f"{part_prefix(upload_id, key)}part-{number:05d}"


def intermediate_key(upload_id: str, key: str) -> str:
    return f"{part_prefix(upload_id, key)}{uuid.uuid4()}"


def _as_stream(body: Body) -> BinaryIO:
    if isinstance(body, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(body))
    return body


class _ComposeBackend:
    """Adapts a client and bucket to the provider independent compose loop.

    When the destination is one of the sources, ``generation`` pins the version
    being composed and ``size`` is the size of the completed object.
    """

    def __init__(
        self,
        client: "GCSStorageClient",
        bucket: str,
        *,
        generation: int | None = None,
        size: int | None = None,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._generation = generation
        self._size = size

    def compose(self, destination: str, sources: Sequence[str]) -> None:
        if self._generation is None or destination not in sources:
            self._client._compose(self._bucket, destination, sources)
            return

        self._client._compose(
            self._bucket,
            destination,
            sources,
            if_generation_match=self._generation,
            expected_size=self._size,
        )

    def delete(self, keys: Sequence[str]) -> None:
        self._client.delete_objects(bucket=self._bucket, keys=keys)


class GCSStorageClient:
    """Google Cloud Storage object storage client."""

    def __init__(
        self,
        client: Any,
        *,
        retryer: Retryer | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        """Wrap an existing ``google.cloud.storage.Client``.

        Args:
            client: The storage client used for every request.
            retryer: Retryer used for each request, transient errors are retried by default.
            cancel: Event which, once set, aborts requests, retry back-off and queued deletes.
        """
        retryer = retryer or Retryer()
        if retryer.options.should_retry is None:
            retryer = Retryer(dataclasses.replace(retryer.options, should_retry=_should_retry))

        self._client = client
        self._retryer = retryer
        self._cancel = cancel

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        retryer: Retryer | None = None,
        cancel: threading.Event | None = None,
    ) -> "GCSStorageClient":
        return cls(cls._build_client(settings), retryer=retryer, cancel=cancel)

    @staticmethod
    def _build_client(settings: "Settings") -> Any:
        """Create a Google Storage client from settings."""
        kwargs: dict[str, Any] = {"project": settings.GCS_PROJECT}
        if settings.GCS_ENDPOINT_URL:
            kwargs["client_options"] = {"api_endpoint": settings.GCS_ENDPOINT_URL}

        if settings.GCS_CREDENTIALS_FILE:
            return storage.Client.from_service_account_json(settings.GCS_CREDENTIALS_FILE, **kwargs)

        return storage.Client(**kwargs)

    @property
    def provider(self) -> Provider:
        return Provider.GCP

    def with_cancel(self, cancel: threading.Event | None) -> "GCSStorageClient":
        return GCSStorageClient(self._client, retryer=self._retryer, cancel=cancel)

    def _do(self, fn: Callable[[], T], *, bucket: str, key: str | None = None) -> T:
        """Run a single request through the retryer, normalising any error."""
        try:
            return self._retryer.do(lambda _: fn(), cancel=self._cancel)
        except StorageError:
            raise
        except Exception as exc:
            raise handle_error(bucket, key, exc) from exc

    def _blob(self, bucket: str, key: str) -> Any:
        return self._client.bucket(bucket).blob(key)

    def get_object(
        self, *, bucket: str, key: str, byte_range: ByteRange | None = None
    ) -> Object:
        validate_byte_range(byte_range)

        blob = self._blob(bucket, key)
        self._do(lambda: blob.reload(retry=None), bucket=bucket, key=key)

        attrs = ObjectAttrs(
            key=key,
            size=int(blob.size or 0),
            etag=blob.etag,
            last_modified=blob.updated,
            generation=blob.generation,
        )

        if byte_range is None:
            return Object(attrs=attrs, body=blob.open("rb", chunk_size=CHUNK_SIZE, retry=None))

        data = self._do(
            lambda: blob.download_as_bytes(
                start=byte_range.start, end=byte_range.end, checksum=None, retry=None
            ),
            bucket=bucket,
            key=key,
        )

        return Object(attrs=attrs, body=io.BytesIO(data))

    def get_object_attrs(self, *, bucket: str, key: str) -> ObjectAttrs:
        blob = self._blob(bucket, key)
        self._do(lambda: blob.reload(retry=None), bucket=bucket, key=key)

        return ObjectAttrs(
            key=key,
            size=int(blob.size or 0),
            etag=blob.etag,
            last_modified=blob.updated,
            generation=blob.generation,
        )

    def put_object(self, *, bucket: str, key: str, body: Body) -> None:
        stream = _as_stream(body)
        offset = stream.tell()

        md5sum = hashlib.md5()
        for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
            md5sum.update(chunk)
        md5_hash = base64.b64encode(md5sum.digest()).decode("ascii")

        def put() -> None:
            stream.seek(offset)
            blob = self._blob(bucket, key)
            blob.chunk_size = CHUNK_SIZE
            # Sent with the upload so the server rejects corrupted data
            blob.md5_hash = md5_hash
            blob.upload_from_file(stream, checksum="crc32c", retry=None)

        self._do(put, bucket=bucket, key=key)

    def append_to_object(self, *, bucket: str, key: str, data: Body) -> None:
        try:
            attrs = self.get_object_attrs(bucket=bucket, key=key)
        except NotFoundError:
            attrs = None
        except StorageError as exc:
            raise PhaseError("get object attributes", exc) from exc

        # Appending to a missing (or empty) object is the same as creating it
        if attrs is None or attrs.size == 0:
            self.put_object(bucket=bucket, key=key, body=data)
            return

        upload_id = self.create_multipart_upload(bucket=bucket, key=key)

        try:
            self._compose_and_append(bucket, upload_id, attrs, data)
        except Exception:
            self._abort_quietly(bucket, upload_id, key)
            raise

    def _compose_and_append(
        self, bucket: str, upload_id: str, attrs: ObjectAttrs, data: Body
    ) -> None:
        """Upload the data as part two, using the existing object itself as part one."""
        try:
            appended = self.upload_part(
                bucket=bucket, upload_id=upload_id, key=attrs.key, number=2, body=data
            )
        except StorageError as exc:
            raise PhaseError("upload part", exc) from exc

        existing = Part(id=attrs.key, number=1, size=attrs.size)

        try:
            self._complete(
                bucket, upload_id, attrs.key, [existing, appended], generation=attrs.generation
            )
        except StorageError as exc:
            raise PhaseError("complete multipart upload", exc) from exc

    def _abort_quietly(self, bucket: str, upload_id: str, key: str) -> None:
        try:
            self.abort_multipart_upload(bucket=bucket, upload_id=upload_id, key=key)
        except Exception as exc:
            logger.error(
                "Failed to abort multipart upload, it should be aborted manually id=%s key=%s error=%s",
                upload_id,
                user_tag(key),
                exc,
                extra={"extra": {"upload_id": upload_id, "key": key, "error": str(exc)}},
            )

    def delete_objects(self, *, bucket: str, keys: Sequence[str]) -> None:
        if not keys:
            return

        pool = WorkerPool(num_workers(len(keys)), cancel=self._cancel, log_prefix="(gcs)")

        for key in keys:
            if not pool.queue(lambda key=key: self._delete(bucket, key)):
                break

        pool.stop()

        if self._cancel is not None and self._cancel.is_set():
            raise RetriesAbortedError(0)

    def _delete(self, bucket: str, key: str) -> None:
        blob = self._blob(bucket, key)
        try:
            self._do(lambda: blob.delete(retry=None), bucket=bucket, key=key)
        except NotFoundError:
            return

    def delete_directory(self, *, bucket: str, prefix: str) -> None:
        keys: list[str] = []

        for attrs in self._list(bucket, prefix, ""):
            keys.append(attrs.key)
            if len(keys) >= DELETE_BATCH_SIZE:
                self.delete_objects(bucket=bucket, keys=keys)
                keys = []

        self.delete_objects(bucket=bucket, keys=keys)

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
        check_filters(include, exclude)

        for attrs in self._list(bucket, prefix, delimiter):
            if should_ignore(attrs.key, include, exclude):
                continue
            fn(attrs)

    def _list(self, bucket: str, prefix: str, delimiter: str) -> Iterator[ObjectAttrs]:
        """Lazily yield attributes from each page of the listing, directory stubs last."""
        iterator = self._client.list_blobs(
            bucket,
            prefix=prefix or None,
            delimiter=delimiter or None,
            fields=_LIST_FIELDS,
        )

        pages = iter(iterator.pages)

        while True:
            if self._cancel is not None and self._cancel.is_set():
                raise RetriesAbortedError(0)

            try:
                page = next(pages)
                blobs = list(page)
            except StopIteration:
                return
            except Exception as exc:
                raise handle_error(bucket, None, exc) from exc

            for blob in blobs:
                yield ObjectAttrs(
                    key=blob.name,
                    size=int(blob.size or 0),
                    etag=blob.etag,
                    last_modified=blob.updated,
                )

            # Pseudo-directories have no size or modification time
            for stub in getattr(page, "prefixes", ()) or ():
                yield ObjectAttrs(key=stub)

    def create_multipart_upload(self, *, bucket: str, key: str) -> str:
        # There's no upload session in Google Storage, the id only namespaces the intermediate objects
        return str(uuid.uuid4())

    def list_parts(self, *, bucket: str, upload_id: str, key: str) -> list[Part]:
        parts: list[Part] = []

        self.iterate_objects(
            bucket=bucket,
            prefix=part_prefix(upload_id, key),
            delimiter="/",
            fn=lambda attrs: parts.append(Part(id=attrs.key, size=attrs.size)),
        )

        return parts

    def upload_part(
        self, *, bucket: str, upload_id: str, key: str, number: int, body: Body
    ) -> Part:
        validate_part_number(number)

        stream = _as_stream(body)
        offset = stream.tell()
        size = stream.seek(0, io.SEEK_END) - offset
        stream.seek(offset)

        intermediate = part_key(upload_id, key, number)

        self.put_object(bucket=bucket, key=intermediate, body=stream)

        return Part(id=intermediate, number=number, size=size)

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
        """Copy an entire object into a multipart upload.

        Google Storage can't copy byte ranges, so only the whole object may be
        copied; either omit the range or provide one covering the whole object.
        """
        validate_byte_range(byte_range)
        validate_part_number(number)

        try:
            attrs = self.get_object_attrs(bucket=bucket, key=src)
        except StorageError as exc:
            raise PhaseError("get object attributes", exc) from exc

        if byte_range is not None and not byte_range.covers(attrs.size):
            raise UnsupportedOperationError(
                f"Google Storage only supports copying entire objects, got {byte_range} "
                f"for an object of {attrs.size} bytes"
            )

        intermediate = part_key(upload_id, dst, number)

        src_bucket = self._client.bucket(bucket)
        self._do(
            lambda: src_bucket.copy_blob(
                src_bucket.blob(src), src_bucket, new_name=intermediate, retry=None
            ),
            bucket=bucket,
            key=intermediate,
        )

        return Part(id=intermediate, number=number, size=attrs.size)

    def complete_multipart_upload(
        self, *, bucket: str, upload_id: str, key: str, parts: Sequence[Part]
    ) -> None:
        """Compose the parts, in the order given, into the object at ``key``.

        The part numbers are ignored; Google Storage has no concept of part ordering.
        """
        self._complete(bucket, upload_id, key, parts)

    def _complete(
        self,
        bucket: str,
        upload_id: str,
        key: str,
        parts: Sequence[Part],
        *,
        generation: int | None = None,
    ) -> None:
        if not parts:
            raise ValidationError("at least one part is required to complete a multipart upload")

        backend = _ComposeBackend(
            self, bucket, generation=generation, size=sum(part.size for part in parts)
        )

        compose.complete(
            backend,
            key,
            [part.id for part in parts],
            max_composable=MAX_COMPOSABLE,
            new_intermediate=lambda: intermediate_key(upload_id, key),
        )

    def _compose(
        self,
        bucket: str,
        key: str,
        sources: Sequence[str],
        *,
        if_generation_match: int | None = None,
        expected_size: int | None = None,
    ) -> None:
        """Compose the given sources, in order, into a single object.

        Composing an object into itself isn't idempotent, so callers doing so
        pass the generation being composed; a retried request which fails that
        precondition is successful when the object already has the expected size.
        """
        handle = self._client.bucket(bucket)
        destination = handle.blob(key)
        blobs = [handle.blob(source) for source in sources]
        attempted = False

        def compose_once() -> None:
            nonlocal attempted
            retried, attempted = attempted, True

            try:
                destination.compose(blobs, if_generation_match=if_generation_match, retry=None)
            except api_exceptions.PreconditionFailed:
                # The response to an earlier, successful, attempt was lost
                if retried and expected_size is not None:
                    destination.reload(retry=None)
                    if destination.size == expected_size:
                        return
                raise

        self._do(compose_once, bucket=bucket, key=key)

    def abort_multipart_upload(self, *, bucket: str, upload_id: str, key: str) -> None:
        self.delete_directory(bucket=bucket, prefix=part_prefix(upload_id, key))
