from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from litestar import Litestar, MediaType, Request, get
from litestar.config.cors import CORSConfig
from litestar.handlers import asgi
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController
from litestar.response import Response, Stream

from .proxy import S3Proxy

if TYPE_CHECKING:
    from collections.abc import Mapping

    from litestar.types import Receive, Scope, Send


prometheus_config = PrometheusConfig(app_name="s3proxy", prefix="s3proxy")


class ResponseHead:
    """Sink that records the head so it can be handed to a Litestar response."""

    def __init__(self) -> None:
        self.status_code: int | None = None
        self.headers: dict[str, str] = {}

    def write_head(self, status_code: int, headers: Mapping[str, str]) -> ResponseHead:
        self.status_code = status_code
        self.headers = dict(headers)
        return self

    @property
    def media_type(self) -> str:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return MediaType.TEXT


def describe_request(scope: Scope, request: Request) -> dict[str, Any]:
    """Build a raw-style request descriptor from the ASGI scope.

    The raw path keeps percent-encoding intact so keys containing ``%``,
    ``?`` or ``#`` reach the parser unchanged.
    """
    raw_path = scope.get("raw_path")
    if raw_path:
        target = raw_path.decode("latin-1").partition("?")[0]
    else:
        target = quote(scope.get("path", "/"))
    query = scope.get("query_string", b"")
    if query:
        target = f"{target}?{query.decode('latin-1')}"
    return {
        "url": target,
        "headers": dict(request.headers),
        "method": request.method,
    }


def create_app(proxy: S3Proxy | None = None) -> Litestar:
    """Create the s3proxy ASGI application."""
    if proxy is None:
        proxy = S3Proxy.from_env()

    @get("/health", include_in_schema=False)
    async def health() -> Stream:
        head = ResponseHead()
        body = await proxy.health_check(head)
        return Stream(
            content=body,
            status_code=head.status_code,
            headers=head.headers,
            media_type=head.media_type,
        )

    @asgi(path="/", is_mount=True, copy_scope=True)
    async def proxy_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        head = ResponseHead()
        descriptor = describe_request(scope, request)
        if request.method == "GET":
            body = await proxy.get(descriptor, head)
            response: Response = Stream(
                content=body,
                status_code=head.status_code,
                headers=head.headers,
                media_type=head.media_type,
            )
        elif request.method == "HEAD":
            body = await proxy.head(descriptor, head)
            async for _ in body:
                pass
            response = Response(
                content=b"",
                status_code=head.status_code,
                headers=head.headers,
                media_type=head.media_type,
            )
        else:
            response = Response(
                content=b"Method Not Allowed",
                status_code=405,
                headers={"Allow": "GET, HEAD"},
                media_type=MediaType.TEXT,
            )
        asgi_response = response.to_asgi_response(None, request)
        await asgi_response(scope, receive, send)

    async def startup(app: Litestar) -> None:
        await proxy.init()

    cors_config = CORSConfig(
        allow_origins=["*"],
        allow_methods=["GET", "HEAD"],
        allow_headers=["*"],
        expose_headers=["ETag", "Content-Range", "Accept-Ranges", "x-amz-*"],
    )

    return Litestar(
        route_handlers=[health, proxy_handler, PrometheusController],
        on_startup=[startup],
        cors_config=cors_config,
        middleware=[prometheus_config.middleware],
    )
