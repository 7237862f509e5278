from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import docker
import pytest
from s3proxy import ProxySettings, S3Proxy
from s3proxy.storage import ErrorKind, StorageError, StorageResult, empty_stream

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Generator, Mapping

    from botocore.client import BaseClient
    from pytest_databases._service import DockerService

    from s3proxy.request import StorageParams


BUCKET = "s3proxy-public"

INDEX_HTML = (
    b"<!doctype html>\n\n"
    b'<html lang="en">\n<head>\n  <meta charset="utf-8">\n'
    b"  <title>s3proxy</title>\n</head>\n\n<body>\n"
    b"<h1>s3proxy public landing page</h1>\n</body>\n</html>\n"
).ljust(338, b"\n")

BIG_BIN = bytes(range(256)) * 4


class RecordingSink:
    """Output sink that remembers every head write and body chunk in order."""

    def __init__(self) -> None:
        self.heads: list[tuple[int, dict[str, str]]] = []
        self.chunks: list[bytes] = []
        self.events: list[str] = []

    def write_head(self, status_code: int, headers: Mapping[str, str]):
        self.heads.append((status_code, dict(headers)))
        self.events.append("head")
        return self

    async def write(self, chunk: bytes) -> None:
        self.chunks.append(chunk)
        self.events.append("data")

    @property
    def status(self) -> int:
        return self.heads[0][0]

    @property
    def headers(self) -> dict[str, str]:
        return self.heads[0][1]

    @property
    def body(self) -> bytes:
        return b"".join(self.chunks)


async def _chunked(data: bytes, size: int = 128) -> AsyncIterator[bytes]:
    for start in range(0, len(data), size):
        yield data[start : start + size]


def _parse_range(header: str, total: int) -> tuple[int, int] | None:
    unit, _, byte_range = header.partition("=")
    if unit.strip().lower() != "bytes" or "-" not in byte_range:
        return None
    start_str, end_str = byte_range.split(",")[0].strip().split("-", 1)
    if start_str:
        start = int(start_str)
        end = min(int(end_str), total - 1) if end_str else total - 1
    else:
        start, end = max(total - int(end_str), 0), total - 1
    if start >= total or start > end:
        return None
    return start, end


class MemoryBackend:
    """StorageBackend holding objects in a dict, reporting metadata like S3."""

    def __init__(
        self,
        bucket: str = BUCKET,
        objects: dict[str, tuple[bytes, str]] | None = None,
        *,
        bucket_exists: bool = True,
    ) -> None:
        self.bucket = bucket
        self.objects = dict(objects or {})
        self.bucket_exists = bucket_exists
        self.denied: set[str] = set()
        self.fail_with: BaseException | None = None
        self.calls: list[tuple[str, Any]] = []

    def _check(self, bucket: str, on_metadata) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        if not self.bucket_exists or bucket != self.bucket:
            if on_metadata is not None:
                on_metadata(404, {})
            raise StorageError(
                ErrorKind.BUCKET_NOT_FOUND,
                "The specified bucket does not exist",
                status=404,
                code="NoSuchBucket",
            )

    def _lookup(self, params: StorageParams, on_metadata) -> tuple[bytes, str]:
        self._check(params.bucket, on_metadata)
        if params.key in self.denied:
            if on_metadata is not None:
                on_metadata(403, {})
            raise StorageError(
                ErrorKind.ACCESS_DENIED, "Access Denied", status=403, code="AccessDenied"
            )
        if params.key not in self.objects:
            if on_metadata is not None:
                on_metadata(404, {})
            raise StorageError(
                ErrorKind.OBJECT_NOT_FOUND,
                "The specified key does not exist.",
                status=404,
                code="NoSuchKey",
            )
        return self.objects[params.key]

    def _respond(
        self, params: StorageParams, data: bytes, content_type: str, on_metadata
    ) -> tuple[int, dict[str, str], bytes]:
        headers = {
            "Accept-Ranges": "bytes",
            "Content-Type": content_type,
            "Content-Length": str(len(data)),
        }
        status = 200
        if params.range is not None:
            span = _parse_range(params.range, len(data))
            if span is None:
                if on_metadata is not None:
                    on_metadata(416, {})
                raise StorageError(
                    ErrorKind.INVALID_RANGE,
                    "The requested range is not satisfiable",
                    status=416,
                    code="InvalidRange",
                )
            start, end = span
            status = 206
            headers["Content-Length"] = str(end - start + 1)
            headers["Content-Range"] = f"bytes {start}-{end}/{len(data)}"
            data = data[start : end + 1]
        if on_metadata is not None:
            on_metadata(status, headers)
        return status, headers, data

    async def head_bucket(
        self, bucket: str, *, on_metadata=None
    ) -> StorageResult:
        self.calls.append(("head_bucket", bucket))
        self._check(bucket, on_metadata)
        if on_metadata is not None:
            on_metadata(200, {})
        return StorageResult(status=200, headers={}, body=empty_stream())

    async def head_object(
        self, params: StorageParams, *, on_metadata=None
    ) -> StorageResult:
        self.calls.append(("head_object", params))
        data, content_type = self._lookup(params, on_metadata)
        status, headers, _ = self._respond(params, data, content_type, on_metadata)
        return StorageResult(status=status, headers=headers, body=empty_stream())

    async def get_object(
        self, params: StorageParams, *, on_metadata=None
    ) -> StorageResult:
        self.calls.append(("get_object", params))
        data, content_type = self._lookup(params, on_metadata)
        status, headers, data = self._respond(params, data, content_type, on_metadata)
        return StorageResult(status=status, headers=headers, body=_chunked(data))


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def memory_backend() -> MemoryBackend:
    return MemoryBackend(
        objects={
            "index.html": (INDEX_HTML, "text/html"),
            "big.bin": (BIG_BIN, "application/octet-stream"),
            "empty.txt": (b"", "text/plain"),
            "file with spaces": (b"spaced", "text/plain"),
            "secret.txt": (b"classified", "text/plain"),
        }
    )


@pytest.fixture
def settings() -> ProxySettings:
    return ProxySettings(bucket=BUCKET)


@pytest.fixture
async def proxy(
    settings: ProxySettings, memory_backend: MemoryBackend
) -> AsyncGenerator[S3Proxy]:
    """Create and initialize a proxy backed by the in-memory store."""
    memory_backend.denied.add("secret.txt")
    proxy = S3Proxy(settings, backend=memory_backend)
    await proxy.init()
    yield proxy


@dataclass
class MinioService:
    endpoint: str
    access_key: str
    secret_key: str
    secure: bool


def _docker_available() -> bool:
    try:
        docker.from_env().ping()
    except Exception:  # noqa: BLE001
        return False
    return True


@pytest.fixture(scope="session")
def minio_access_key() -> str:
    return os.getenv("MINIO_ACCESS_KEY", "minio")


@pytest.fixture(scope="session")
def minio_secret_key() -> str:
    return os.getenv("MINIO_SECRET_KEY", "minio123")


@pytest.fixture(scope="session")
def minio_secure() -> bool:
    return os.getenv("MINIO_SECURE", "false").lower() in {
        "true",
        "1",
        "yes",
        "y",
        "t",
        "on",
    }


@pytest.fixture(scope="session")
def minio_service_name() -> str:
    return "minio-s3proxy"


@pytest.fixture(scope="session")
def docker_ready() -> None:
    if not _docker_available():
        pytest.skip("docker is not available")


@pytest.fixture(scope="session")
def minio_service(
    docker_ready: None,
    docker_service: DockerService,
    minio_access_key: str,
    minio_secret_key: str,
    minio_secure: bool,
    minio_service_name: str,
) -> Generator[MinioService]:
    from urllib.error import URLError
    from urllib.request import Request, urlopen

    from pytest_databases.types import ServiceContainer

    def check(_service: ServiceContainer) -> bool:
        scheme = "https" if minio_secure else "http"
        url = f"{scheme}://{_service.host}:{_service.port}/minio/health/ready"
        if not url.startswith(("http:", "https:")):
            msg = "URL must start with 'http:' or 'https:'"
            raise ValueError(msg)
        try:
            with urlopen(url=Request(url, method="GET"), timeout=10) as response:
                return response.status == 200
        except (URLError, ConnectionError):
            return False

    env = {
        "MINIO_ROOT_USER": minio_access_key,
        "MINIO_ROOT_PASSWORD": minio_secret_key,
    }

    with docker_service.run(
        image="quay.io/minio/minio",
        name=minio_service_name,
        command="server /data",
        container_port=9000,
        timeout=20,
        pause=0.5,
        env=env,
        check=check,
    ) as service:
        yield MinioService(
            endpoint=f"{service.host}:{service.port}",
            access_key=minio_access_key,
            secret_key=minio_secret_key,
            secure=minio_secure,
        )


def _endpoint(minio_service: MinioService) -> str:
    scheme = "https" if minio_service.secure else "http"
    return f"{scheme}://{minio_service.endpoint}"


@pytest.fixture
def s3_client(minio_service: MinioService) -> BaseClient:
    """Create a boto3 S3 client for the MinIO service."""
    import boto3
    from botocore.config import Config

    return boto3.client(
        "s3",
        endpoint_url=_endpoint(minio_service),
        aws_access_key_id=minio_service.access_key,
        aws_secret_access_key=minio_service.secret_key,
        region_name="us-east-1",
        config=Config(s3={"addressing_style": "path"}),
    )


@pytest.fixture
def minio_settings(minio_service: MinioService) -> ProxySettings:
    return ProxySettings(
        bucket=BUCKET,
        endpoint=_endpoint(minio_service),
        access_key=minio_service.access_key,
        secret_key=minio_service.secret_key,
        region="us-east-1",
        addressing_style="path",
    )


@pytest.fixture
def proxy_env_vars(
    minio_service: MinioService,
) -> Generator[dict[str, str]]:
    """Set up environment variables pointing the proxy at MinIO."""
    env_vars = {
        "S3PROXY_BUCKET": BUCKET,
        "S3PROXY_ENDPOINT": _endpoint(minio_service),
        "S3PROXY_ACCESS_KEY_ID": minio_service.access_key,
        "S3PROXY_SECRET_ACCESS_KEY": minio_service.secret_key,
        "S3PROXY_REGION": "us-east-1",
        "S3PROXY_ADDRESSING_STYLE": "path",
    }

    original_values = {}
    for key, value in env_vars.items():
        original_values[key] = os.environ.get(key)
        os.environ[key] = value

    yield env_vars

    for key, original_value in original_values.items():
        if original_value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original_value


def _bucket_exists(client, bucket: str) -> bool:
    from botocore.exceptions import ClientError

    try:
        client.head_bucket(Bucket=bucket)
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        if code in {"404", "NoSuchBucket", "NotFound"}:
            return False
        raise
    else:
        return True


def _ensure_bucket(client, bucket: str) -> None:
    if not _bucket_exists(client, bucket):
        client.create_bucket(Bucket=bucket)


@pytest.fixture
def s3_helpers():
    return {
        "bucket_exists": _bucket_exists,
        "ensure_bucket": _ensure_bucket,
    }
