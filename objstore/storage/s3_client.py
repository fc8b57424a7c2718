"""S3-compatible storage client implementation.

This module provides a storage client for AWS S3, MinIO and other
S3-compatible object storage services. S3 natively supports multipart
uploads and server-side copies of partial byte ranges.

Dependencies:
    - boto3
    - botocore
"""

from __future__ import annotations

import dataclasses
import io
import logging
import re
import threading
from typing import TYPE_CHECKING, Any, BinaryIO, Callable, Iterator, Sequence, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

from objstore.common.logging import user_tag
from objstore.common.retry import RetryContext, Retryer
from objstore.errors import (
    NotFoundError,
    PhaseError,
    ProviderError,
    StorageError,
    UnauthorizedError,
    UnsupportedOperationError,
)
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

# Minimum size of a part in a multipart upload (other than the last one)
MIN_UPLOAD_SIZE = 5 * 1024 * 1024

# Maximum number of keys which may be deleted/listed in a single request
PAGE_SIZE = 1000

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "NoSuchUpload", "404"})
_NO_SUCH_BUCKET_CODES = frozenset({"NoSuchBucket"})
_UNAUTHORIZED_CODES = frozenset(
    {"AccessDenied", "Forbidden", "InvalidAccessKeyId", "SignatureDoesNotMatch", "401", "403"}
)
_UNSUPPORTED_CODES = frozenset({"NotImplemented", "501"})
_TRANSIENT_CODES = frozenset(
    {
        "InternalError",
        "RequestTimeout",
        "RequestTimeoutException",
        "ServiceUnavailable",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
    }
)


def _error_details(exc: ClientError) -> tuple[str, int | None]:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code, status


def handle_error(bucket: str, key: str | None, exc: BaseException) -> StorageError:
    """Convert a native S3 error into a storage error."""
    if isinstance(exc, StorageError):
        return exc

    if isinstance(exc, ClientError):
        code, status = _error_details(exc)
        if code in _NO_SUCH_BUCKET_CODES:
            return NotFoundError(bucket, type="bucket")
        if code in _NOT_FOUND_CODES or status == 404:
            return NotFoundError(bucket, key)
        if code in _UNAUTHORIZED_CODES or status in (401, 403):
            return UnauthorizedError(bucket, key)
        if code in _UNSUPPORTED_CODES or status == 501:
            return UnsupportedOperationError(f"operation not supported for '{bucket}/{key}': {exc}")

    return ProviderError(bucket, key, str(exc))


def is_transient(exc: BaseException | None) -> bool:
    """Return whether the error is worth retrying (throttling, server errors, dropped connections)."""
    if isinstance(exc, (HTTPClientError, BotoConnectionError)):
        return True
    if isinstance(exc, ClientError):
        code, status = _error_details(exc)
        return code in _TRANSIENT_CODES or (status is not None and status >= 500 and status != 501)
    return False


def _should_retry(ctx: RetryContext, payload: Any, exc: BaseException | None) -> bool:
    # Callers hold exclusive access to the key prefix, so writes are always retried
    return is_transient(exc)


def _as_stream(body: Body) -> BinaryIO:
    if isinstance(body, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(body))
    return body


def _stream_size(stream: BinaryIO) -> int:
    offset = stream.tell()
    end = stream.seek(0, io.SEEK_END)
    stream.seek(offset)
    return end - offset


class S3StorageClient:
    """S3-compatible object storage client.

    Supports AWS S3, MinIO, and other S3-compatible services.
    Uses boto3 for all storage operations.
    """

    def __init__(
        self,
        client: Any,
        *,
        retryer: Retryer | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        """Wrap an existing boto3 S3 client.

        Args:
            client: The boto3 ``s3`` client used for every request.
            retryer: Retryer used for each request, transient errors are retried by default.
            cancel: Event which, once set, aborts requests and retry back-off.
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
    ) -> "S3StorageClient":
        return cls(cls._build_client(settings), retryer=retryer, cancel=cancel)

    @staticmethod
    def _build_client(settings: "Settings") -> Any:
        """Create a boto3 S3 client from settings."""
        addressing_style = (settings.S3_ADDRESSING_STYLE or "auto").strip().lower()
        # SDK retries are disabled, requests are retried by our own retryer
        config = Config(
            s3={"addressing_style": addressing_style},
            retries={"total_max_attempts": 1},
        )

        return boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            region_name=settings.S3_REGION,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            use_ssl=bool(settings.S3_USE_SSL),
            config=config,
        )

    @property
    def provider(self) -> Provider:
        return Provider.AWS

    def with_cancel(self, cancel: threading.Event | None) -> "S3StorageClient":
        return S3StorageClient(self._client, retryer=self._retryer, cancel=cancel)

    def _do(self, fn: Callable[[], T], *, bucket: str, key: str | None = None) -> T:
        """Run a single request through the retryer, normalising any error."""
        try:
            return self._retryer.do(lambda _: fn(), cancel=self._cancel)
        except StorageError:
            raise
        except Exception as exc:
            raise handle_error(bucket, key, exc) from exc

    def get_object(
        self, *, bucket: str, key: str, byte_range: ByteRange | None = None
    ) -> Object:
        validate_byte_range(byte_range)

        params: dict[str, Any] = {"Bucket": bucket, "Key": key}
        if byte_range is not None:
            params["Range"] = byte_range.header()

        response = self._do(lambda: self._client.get_object(**params), bucket=bucket, key=key)

        attrs = ObjectAttrs(
            key=key,
            size=int(response.get("ContentLength") or 0),
            etag=response.get("ETag"),
            last_modified=response.get("LastModified"),
        )

        return Object(attrs=attrs, body=response["Body"])

    def get_object_attrs(self, *, bucket: str, key: str) -> ObjectAttrs:
        response = self._do(
            lambda: self._client.head_object(Bucket=bucket, Key=key), bucket=bucket, key=key
        )

        size = response.get("ContentLength")
        return ObjectAttrs(
            key=key,
            size=int(size) if size is not None else 0,
            etag=response.get("ETag"),
            last_modified=response.get("LastModified"),
        )

    def put_object(self, *, bucket: str, key: str, body: Body) -> None:
        stream = _as_stream(body)
        offset = stream.tell()

        def put() -> None:
            stream.seek(offset)
            self._client.put_object(Bucket=bucket, Key=key, Body=stream)

        self._do(put, bucket=bucket, key=key)

    def append_to_object(self, *, bucket: str, key: str, data: Body) -> None:
        try:
            attrs = self.get_object_attrs(bucket=bucket, key=key)
        except NotFoundError:
            # The object doesn't exist, appending is the same as creating it
            self.put_object(bucket=bucket, key=key, body=data)
            return
        except StorageError as exc:
            raise PhaseError("get object attributes", exc) from exc

        if attrs.size < MIN_UPLOAD_SIZE:
            self._download_and_append(bucket, attrs, data)
            return

        self._create_mpu_then_copy_and_append(bucket, attrs, data)

    def _download_and_append(self, bucket: str, attrs: ObjectAttrs, data: Body) -> None:
        """Download the object and upload it again with the data appended.

        Used for objects smaller than the minimum multipart upload part size.
        """
        try:
            with self.get_object(bucket=bucket, key=attrs.key) as obj:
                existing = obj.read()
        except StorageError as exc:
            raise PhaseError("download object", exc) from exc

        buffer = io.BytesIO(existing)
        buffer.seek(0, io.SEEK_END)
        buffer.write(_as_stream(data).read())
        buffer.seek(0)

        try:
            self.put_object(bucket=bucket, key=attrs.key, body=buffer)
        except StorageError as exc:
            raise PhaseError("upload updated object", exc) from exc

    def _create_mpu_then_copy_and_append(
        self, bucket: str, attrs: ObjectAttrs, data: Body
    ) -> None:
        try:
            upload_id = self.create_multipart_upload(bucket=bucket, key=attrs.key)
        except StorageError as exc:
            raise PhaseError("create multipart upload", exc) from exc

        try:
            self._copy_and_append(bucket, upload_id, attrs, data)
        except Exception:
            self._abort_quietly(bucket, upload_id, attrs.key)
            raise

    def _copy_and_append(
        self, bucket: str, upload_id: str, attrs: ObjectAttrs, data: Body
    ) -> None:
        """Copy the existing object server-side as part one, then upload the data as part two."""
        try:
            copied = self.upload_part_copy(
                bucket=bucket,
                upload_id=upload_id,
                dst=attrs.key,
                src=attrs.key,
                number=1,
                byte_range=ByteRange(start=0, end=attrs.size - 1),
            )
        except StorageError as exc:
            raise PhaseError("copy source object", exc) from exc

        try:
            appended = self.upload_part(
                bucket=bucket, upload_id=upload_id, key=attrs.key, number=2, body=data
            )
        except StorageError as exc:
            raise PhaseError("upload part", exc) from exc

        try:
            self.complete_multipart_upload(
                bucket=bucket, upload_id=upload_id, key=attrs.key, parts=[copied, appended]
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
        for start in range(0, len(keys), PAGE_SIZE):
            self._delete_page(bucket, keys[start : start + PAGE_SIZE])

    def _delete_page(self, bucket: str, keys: Sequence[str]) -> None:
        """Delete a single page (<=1000) of keys in one batched request."""
        if not keys:
            return

        payload = {
            "Objects": [{"Key": key} for key in keys],
            # Only report failures
            "Quiet": True,
        }

        response = self._do(
            lambda: self._client.delete_objects(Bucket=bucket, Delete=payload), bucket=bucket
        )

        for failure in response.get("Errors") or []:
            code = failure.get("Code", "")
            if code in _NOT_FOUND_CODES:
                continue
            native = ClientError(
                {"Error": {"Code": code, "Message": failure.get("Message", "")}},
                "DeleteObjects",
            )
            raise handle_error(bucket, failure.get("Key"), native) from native

    def delete_directory(self, *, bucket: str, prefix: str) -> None:
        for page in self._list_pages(bucket, prefix):
            self._delete_page(bucket, [item["Key"] for item in page.get("Contents") or []])

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

        for page in self._list_pages(bucket, prefix, delimiter):
            for attrs in self._page_attrs(page):
                if should_ignore(attrs.key, include, exclude):
                    continue
                fn(attrs)

    @staticmethod
    def _page_attrs(page: dict[str, Any]) -> Iterator[ObjectAttrs]:
        for item in page.get("Contents") or []:
            yield ObjectAttrs(
                key=item["Key"],
                size=int(item.get("Size") or 0),
                etag=item.get("ETag"),
                last_modified=item.get("LastModified"),
            )

        # Pseudo-directories have no size or modification time
        for common in page.get("CommonPrefixes") or []:
            yield ObjectAttrs(key=common["Prefix"])

    def _list_pages(
        self, bucket: str, prefix: str, delimiter: str = ""
    ) -> Iterator[dict[str, Any]]:
        """Lazily yield pages from ``ListObjectsV2``, one request per page."""
        params: dict[str, Any] = {"Bucket": bucket, "Prefix": prefix, "MaxKeys": PAGE_SIZE}
        if delimiter:
            params["Delimiter"] = delimiter

        while True:
            page = self._do(lambda: self._client.list_objects_v2(**params), bucket=bucket)
            yield page

            token = page.get("NextContinuationToken")
            if not page.get("IsTruncated") or not token:
                return

            params = {**params, "ContinuationToken": token}

    def create_multipart_upload(self, *, bucket: str, key: str) -> str:
        response = self._do(
            lambda: self._client.create_multipart_upload(Bucket=bucket, Key=key),
            bucket=bucket,
            key=key,
        )

        upload_id = response.get("UploadId")
        if not upload_id:
            raise ProviderError(bucket, key, "S3 response missing UploadId")

        return str(upload_id)

    def upload_part(
        self, *, bucket: str, upload_id: str, key: str, number: int, body: Body
    ) -> Part:
        validate_part_number(number)

        stream = _as_stream(body)
        offset = stream.tell()
        size = _stream_size(stream)

        def upload() -> Any:
            stream.seek(offset)
            return self._client.upload_part(
                Body=stream, Bucket=bucket, Key=key, PartNumber=number, UploadId=upload_id
            )

        response = self._do(upload, bucket=bucket, key=key)

        return Part(id=response["ETag"], number=number, size=size)

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
        # S3 requires an explicit range, which may be any part of the source object
        validate_byte_range(byte_range, required=True)
        validate_part_number(number)

        response = self._do(
            lambda: self._client.upload_part_copy(
                Bucket=bucket,
                Key=dst,
                CopySource={"Bucket": bucket, "Key": src},
                CopySourceRange=byte_range.header(),
                PartNumber=number,
                UploadId=upload_id,
            ),
            bucket=bucket,
            key=dst,
        )

        return Part(
            id=response["CopyPartResult"]["ETag"],
            number=number,
            size=byte_range.end - byte_range.start + 1,
        )

    def complete_multipart_upload(
        self, *, bucket: str, upload_id: str, key: str, parts: Sequence[Part]
    ) -> None:
        payload = {"Parts": [{"ETag": part.id, "PartNumber": part.number} for part in parts]}

        self._do(
            lambda: self._client.complete_multipart_upload(
                Bucket=bucket, Key=key, UploadId=upload_id, MultipartUpload=payload
            ),
            bucket=bucket,
            key=key,
        )

    def abort_multipart_upload(self, *, bucket: str, upload_id: str, key: str) -> None:
        try:
            self._do(
                lambda: self._client.abort_multipart_upload(
                    Bucket=bucket, Key=key, UploadId=upload_id
                ),
                bucket=bucket,
                key=key,
            )
        except NotFoundError:
            # Already aborted (or completed)
            return

    def list_parts(self, *, bucket: str, upload_id: str, key: str) -> list[Part]:
        params: dict[str, Any] = {"Bucket": bucket, "Key": key, "UploadId": upload_id}
        parts: list[Part] = []

        while True:
            page = self._do(lambda: self._client.list_parts(**params), bucket=bucket, key=key)

            for item in page.get("Parts") or []:
                parts.append(
                    Part(
                        id=item["ETag"],
                        number=int(item.get("PartNumber") or 0),
                        size=int(item.get("Size") or 0),
                    )
                )

            marker = page.get("NextPartNumberMarker")
            if not page.get("IsTruncated") or marker is None:
                return parts

            params = {**params, "PartNumberMarker": marker}
