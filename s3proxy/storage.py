from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import format_datetime
from functools import partial
from typing import TYPE_CHECKING, Any, Protocol

from anyio import from_thread, to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping

    from .proxy import ProxySettings
    from .request import StorageParams

    MetadataListener = Callable[[int, Mapping[str, str]], None]

LOG = logging.getLogger("s3proxy.storage")

READ_CHUNK_SIZE = 64 * 1024

_OPERATIONS = ("HeadBucket", "HeadObject", "GetObject")

_OBJECT_HEADERS = {
    "Accept-Ranges": "AcceptRanges",
    "Cache-Control": "CacheControl",
    "Content-Disposition": "ContentDisposition",
    "Content-Encoding": "ContentEncoding",
    "Content-Language": "ContentLanguage",
    "Content-Length": "ContentLength",
    "Content-Range": "ContentRange",
    "Content-Type": "ContentType",
    "ETag": "ETag",
    "Expires": "Expires",
    "Last-Modified": "LastModified",
    "x-amz-delete-marker": "DeleteMarker",
    "x-amz-version-id": "VersionId",
    "x-amz-storage-class": "StorageClass",
    "x-amz-bucket-region": "BucketRegion",
}


async def _run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(partial(func, *args, **kwargs))


class ErrorKind(enum.Enum):
    OBJECT_NOT_FOUND = "object-not-found"
    BUCKET_NOT_FOUND = "bucket-not-found"
    ACCESS_DENIED = "access-denied"
    INVALID_RANGE = "invalid-range"
    OTHER = "other"


_KIND_BY_CODE = {
    "NoSuchKey": ErrorKind.OBJECT_NOT_FOUND,
    "NotFound": ErrorKind.OBJECT_NOT_FOUND,
    "404": ErrorKind.OBJECT_NOT_FOUND,
    "NoSuchBucket": ErrorKind.BUCKET_NOT_FOUND,
    "AccessDenied": ErrorKind.ACCESS_DENIED,
    "Forbidden": ErrorKind.ACCESS_DENIED,
    "403": ErrorKind.ACCESS_DENIED,
    "InvalidRange": ErrorKind.INVALID_RANGE,
    "416": ErrorKind.INVALID_RANGE,
}


class StorageError(Exception):
    """Terminal failure reported by a storage backend.

    ``kind`` is the only thing callers should branch on; ``status`` and
    ``headers`` describe the wire response when the backend received one.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status: int | None = None,
        headers: Mapping[str, str] | None = None,
        code: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.headers = dict(headers or {})
        self.code = code
        self.operation = operation

    @classmethod
    def from_client_error(cls, error: ClientError) -> StorageError:
        code = str(error.response.get("Error", {}).get("Code", ""))
        operation = getattr(error, "operation_name", None)
        kind = _KIND_BY_CODE.get(code, ErrorKind.OTHER)
        # HeadBucket has no body, so a missing bucket only surfaces as "404".
        if operation == "HeadBucket" and kind is ErrorKind.OBJECT_NOT_FOUND:
            kind = ErrorKind.BUCKET_NOT_FOUND
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return cls(
            kind,
            str(error),
            status=int(status) if status is not None else None,
            code=code or None,
            operation=operation,
        )


@dataclass
class StorageResult:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: AsyncIterator[bytes] | None = None


class StorageBackend(Protocol):
    """Capability consumed by the proxy.

    Every call reports ``(status, headers)`` through ``on_metadata`` as soon as
    the wire response is known, whether or not the call then succeeds.
    """

    async def head_bucket(
        self, bucket: str, *, on_metadata: MetadataListener | None = None
    ) -> StorageResult: ...

    async def head_object(
        self, params: StorageParams, *, on_metadata: MetadataListener | None = None
    ) -> StorageResult: ...

    async def get_object(
        self, params: StorageParams, *, on_metadata: MetadataListener | None = None
    ) -> StorageResult: ...


async def empty_stream() -> AsyncIterator[bytes]:
    """Async iterator that finishes without yielding."""
    return
    yield b""  # pragma: no cover


async def _iter_body(body: Any) -> AsyncIterator[bytes]:
    try:
        while True:
            chunk = await _run_sync(body.read, READ_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        await _run_sync(body.close)


def read_stream(body: Any) -> AsyncIterator[bytes]:
    """Adapt a boto3 response body to an async iterator of bytes."""
    if body is None:
        return empty_stream()
    if callable(getattr(body, "read", None)):
        return _iter_body(body)
    msg = "unrecognized type"
    raise TypeError(msg)


def format_header_value(value: Any) -> str:
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return format_datetime(aware.astimezone(UTC), usegmt=True)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def object_headers(result: Mapping[str, Any]) -> dict[str, str]:
    """Translate a parsed boto3 response into HTTP response headers."""
    headers: dict[str, str] = {}
    for header, key in _OBJECT_HEADERS.items():
        value = result.get(key)
        if value is None:
            continue
        headers[header] = format_header_value(value)

    metadata = result.get("Metadata") or {}
    for meta_key, meta_value in metadata.items():
        headers[f"x-amz-meta-{meta_key}"] = meta_value

    return headers


def _status(result: Mapping[str, Any]) -> int:
    return int(result.get("ResponseMetadata", {}).get("HTTPStatusCode", 200))


class S3Backend:
    """StorageBackend on top of a boto3 S3 client.

    Response metadata is captured from botocore's ``after-call`` event, which
    is emitted for every wire response before botocore raises for non-2xx
    statuses. Calls run in worker threads; the hook hands metadata back to the
    event loop thread.
    """

    def __init__(self, client: Any) -> None:
        self._client = client
        self._listener = threading.local()
        for operation in _OPERATIONS:
            client.meta.events.register(
                f"after-call.s3.{operation}", self._on_after_call
            )

    @classmethod
    def from_settings(cls, settings: ProxySettings) -> S3Backend:
        session = Session(
            aws_access_key_id=settings.access_key,
            aws_secret_access_key=settings.secret_key,
            aws_session_token=settings.session_token,
            region_name=settings.region,
        )
        client = session.client(
            "s3",
            endpoint_url=settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": settings.max_attempts},
                s3={"addressing_style": settings.addressing_style},
            ),
        )
        return cls(client)

    @property
    def client(self) -> Any:
        return self._client

    async def head_bucket(
        self, bucket: str, *, on_metadata: MetadataListener | None = None
    ) -> StorageResult:
        result = await self._call("head_bucket", {"Bucket": bucket}, on_metadata)
        return StorageResult(
            status=_status(result), headers=object_headers(result), body=empty_stream()
        )

    async def head_object(
        self, params: StorageParams, *, on_metadata: MetadataListener | None = None
    ) -> StorageResult:
        result = await self._call("head_object", params.to_kwargs(), on_metadata)
        return StorageResult(
            status=_status(result), headers=object_headers(result), body=empty_stream()
        )

    async def get_object(
        self, params: StorageParams, *, on_metadata: MetadataListener | None = None
    ) -> StorageResult:
        result = await self._call("get_object", params.to_kwargs(), on_metadata)
        return StorageResult(
            status=_status(result),
            headers=object_headers(result),
            body=read_stream(result.get("Body")),
        )

    async def _call(
        self,
        method_name: str,
        kwargs: dict[str, Any],
        on_metadata: MetadataListener | None,
    ) -> dict[str, Any]:
        method = getattr(self._client, method_name)

        def invoke() -> dict[str, Any]:
            if on_metadata is not None:
                self._listener.current = partial(from_thread.run_sync, on_metadata)
            try:
                return method(**kwargs)
            finally:
                self._listener.current = None

        LOG.debug("%s %s", method_name, kwargs)
        try:
            return await _run_sync(invoke)
        except ClientError as error:
            raise StorageError.from_client_error(error) from error
        except BotoCoreError as error:
            raise StorageError(
                ErrorKind.OTHER, str(error), operation=method_name
            ) from error

    def _on_after_call(
        self,
        http_response: Any = None,
        parsed: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        listener = getattr(self._listener, "current", None)
        if listener is None:
            return
        parsed = parsed or {}
        status = getattr(http_response, "status_code", None) or _status(parsed)
        listener(int(status), object_headers(parsed))
