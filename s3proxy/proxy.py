from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Any, Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ._version import __version__
from .coordinator import Phase, ResponseCoordinator, Signal
from .errors import UserException
from .outcome import Fatal, Success, classify
from .request import parse_request, request_field, to_storage_params
from .storage import S3Backend, empty_stream

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from .coordinator import HeadSink
    from .request import StorageParams
    from .storage import StorageBackend, StorageResult

LOG = logging.getLogger("s3proxy.proxy")

EVENTS = frozenset({"init", "error"})


class ProxySettings(BaseSettings):
    """Configuration for one proxied bucket and the S3 client serving it."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    bucket: str | None = Field(
        default=None,
        validation_alias="S3PROXY_BUCKET",
    )
    endpoint: str | None = Field(
        default=None,
        validation_alias=AliasChoices("S3PROXY_ENDPOINT", "AWS_ENDPOINT_URL"),
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3PROXY_ACCESS_KEY_ID",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3PROXY_SECRET_ACCESS_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3PROXY_SESSION_TOKEN",
            "AWS_SESSION_TOKEN",
        ),
    )
    region: str | None = Field(
        default=None,
        validation_alias=AliasChoices("S3PROXY_REGION", "AWS_REGION"),
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="auto",
        validation_alias="S3PROXY_ADDRESSING_STYLE",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        validation_alias="S3PROXY_MAX_ATTEMPTS",
    )
    fallback_status: int = Field(
        default=200,
        ge=100,
        le=599,
        validation_alias="S3PROXY_FALLBACK_STATUS",
    )
    error_status: int = Field(
        default=500,
        ge=100,
        le=599,
        validation_alias="S3PROXY_ERROR_STATUS",
    )


def load_settings_from_env() -> ProxySettings:
    """Load proxy settings from environment variables.

    Returns:
        ProxySettings instance populated from environment variables.
    """
    return ProxySettings()


class S3Proxy:
    def __init__(
        self,
        settings: ProxySettings | None,
        *,
        backend: StorageBackend | None = None,
    ):
        if settings is None:
            raise UserException(
                "InvalidParameterList", "constructor parameters are required"
            )
        if not settings.bucket:
            raise UserException("InvalidParameterList", "bucket parameter is required")
        self._settings = settings
        self._bucket = settings.bucket
        self._backend = backend
        self._storage: StorageBackend | None = None
        self._listeners: dict[str, list[Callable[..., Any]]] = {
            event: [] for event in EVENTS
        }

    @classmethod
    def from_env(cls) -> S3Proxy:
        """Create an S3Proxy instance from environment variables.

        Returns:
            S3Proxy configured from environment variables.
        """
        return cls(load_settings_from_env())

    @staticmethod
    def version() -> str:
        return __version__

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def settings(self) -> ProxySettings:
        return self._settings

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        self._check_event(event)
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Callable[..., Any]) -> None:
        self._check_event(event)
        if listener in self._listeners[event]:
            self._listeners[event].remove(listener)

    def emit(self, event: str, *args: Any) -> None:
        self._check_event(event)
        for listener in list(self._listeners[event]):
            listener(*args)

    @staticmethod
    def _check_event(event: str) -> None:
        if event not in EVENTS:
            msg = f"unknown event {event!r} (expected one of {sorted(EVENTS)})"
            raise ValueError(msg)

    async def init(self) -> None:
        """Build the storage client and verify the bucket is reachable.

        The proxy only becomes usable when the bucket check succeeds. On
        failure the ``error`` event fires with the exception, which is then
        re-raised.
        """
        try:
            backend = self._backend or S3Backend.from_settings(self._settings)
            await backend.head_bucket(self._bucket)
        except Exception as error:
            LOG.warning("init failed for bucket %s: %s", self._bucket, error)
            self.emit("error", error)
            raise
        self._storage = backend
        LOG.info(
            "s3proxy ready (bucket=%s, endpoint=%s)",
            self._bucket,
            self._settings.endpoint or "aws",
        )
        self.emit("init")

    def is_initialized(self) -> None:
        if self._storage is None:
            raise UserException(
                "UninitializedError", "S3Proxy is uninitialized (call s3proxy.init)"
            )

    def _require_storage(self) -> StorageBackend:
        self.is_initialized()
        assert self._storage is not None
        return self._storage

    async def get(self, request: Any, sink: HeadSink) -> AsyncIterator[bytes]:
        """Fetch the requested object and write its head to ``sink``.

        Returns the body for the caller to drain. Missing objects, denied
        access and unsatisfiable ranges yield an empty body with the matching
        status.
        """
        storage = self._require_storage()
        params = self._params(request)
        return await self._send(
            partial(storage.get_object, params),
            sink,
            f"GET s3://{params.bucket}/{params.key}",
        )

    async def head(self, request: Any, sink: HeadSink) -> AsyncIterator[bytes]:
        storage = self._require_storage()
        params = self._params(request)
        return await self._send(
            partial(storage.head_object, params),
            sink,
            f"HEAD s3://{params.bucket}/{params.key}",
        )

    async def health_check(self, sink: HeadSink) -> AsyncIterator[bytes]:
        """Check the bucket and write the resulting status to ``sink``."""
        storage = self._require_storage()
        return await self._send(
            partial(storage.head_bucket, self._bucket),
            sink,
            f"HEAD s3://{self._bucket}",
        )

    def _params(self, request: Any) -> StorageParams:
        parsed = parse_request(request)
        return to_storage_params(
            self._bucket, parsed, request_field(request, "headers")
        )

    async def _send(
        self,
        call: Callable[..., Awaitable[StorageResult]],
        sink: HeadSink,
        target: str,
    ) -> AsyncIterator[bytes]:
        coordinator = ResponseCoordinator(
            sink,
            fallback_status=self._settings.fallback_status,
            error_status=self._settings.error_status,
        )
        try:
            result = await call(on_metadata=coordinator.capture)
        except Exception as error:
            outcome = classify(error)
            if isinstance(outcome, Fatal):
                coordinator.on_signal(Signal.OPERATION_ERROR)
                raise
            LOG.debug(
                "%s: %s, answering %s", target, outcome.reason.value, outcome.status
            )
            coordinator.capture(
                outcome.status, {**coordinator.state.headers, **outcome.headers}
            )
            coordinator.on_signal(Signal.OPERATION_ERROR)
            return coordinator.wrap(empty_stream())

        outcome = Success(result.status, result.headers, result.body)
        if coordinator.state.phase is Phase.IDLE:
            coordinator.capture(outcome.status, outcome.headers)
        coordinator.on_signal(Signal.COMPLETE)
        LOG.debug("%s: status=%s", target, coordinator.state.status)
        return coordinator.wrap(outcome.body or empty_stream())
