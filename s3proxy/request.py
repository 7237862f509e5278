from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any
from urllib.parse import parse_qs, unquote, urlsplit

_ABSOLUTE_URL = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")


@dataclass(frozen=True)
class ParsedRequest:
    """Object key and query derived from one incoming request."""

    key: str
    query: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StorageParams:
    bucket: str
    key: str
    range: str | None = None

    def to_kwargs(self) -> dict[str, str]:
        kwargs = {"Bucket": self.bucket, "Key": self.key}
        if self.range is not None:
            kwargs["Range"] = self.range
        return kwargs


def request_field(request: Any, name: str) -> Any:
    if isinstance(request, Mapping):
        return request.get(name)
    return getattr(request, name, None)


def strip_leading_slash(value: str) -> str:
    return value.lstrip("/")


def _split_url(url: str) -> tuple[str, str]:
    target = url.split("#", 1)[0]
    if _ABSOLUTE_URL.match(target):
        try:
            parts = urlsplit(target)
        except ValueError:
            return "", ""
        return parts.path, parts.query
    # A request target is always a path; "//a/b" must not become host "a".
    path, _, query = target.partition("?")
    return path, query


def _parse_query(query: str) -> dict[str, Any]:
    parsed: dict[str, Any] = {}
    for name, values in parse_qs(query, keep_blank_values=True).items():
        parsed[name] = values[0] if len(values) == 1 else values
    return parsed


def parse_request(request: Any) -> ParsedRequest:
    """Return the object key and query for a request descriptor.

    Framework requests expose ``path`` and an already parsed ``query``; raw
    requests only carry ``url``. The descriptor may be a mapping or an object
    with attributes. The key is percent-decoded and loses every leading slash.
    Malformed URLs yield an empty key rather than an error.
    """
    path = request_field(request, "path")
    if path is None:
        url = request_field(request, "url")
        pathname, query_string = _split_url(str(url)) if url else ("", "")
        query = _parse_query(query_string)
        key = unquote(pathname)
    else:
        query = {
            name: value
            for name, value in (request_field(request, "query") or {}).items()
            if value is not None
        }
        key = unquote(str(path))
    return ParsedRequest(
        key=strip_leading_slash(key), query=MappingProxyType(dict(query))
    )


def _header(headers: Mapping[str, Any] | None, name: str) -> Any:
    if not headers:
        return None
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for header, candidate in headers.items():
        if str(header).lower() == lowered:
            return candidate
    return None


def map_header_to_param(
    headers: Mapping[str, Any] | None, header_key: str, param_key: str
) -> dict[str, str]:
    """Return ``{param_key: value}`` when ``header_key`` carries a string value.

    List values contribute their first element. Anything else maps to ``{}``
    so the result can be merged straight into call parameters.
    """
    value = _header(headers, header_key)
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if isinstance(value, str) and value:
        return {param_key: value}
    return {}


def to_storage_params(
    bucket: str,
    parsed: ParsedRequest,
    headers: Mapping[str, Any] | None = None,
) -> StorageParams:
    mapped = map_header_to_param(headers, "range", "range")
    return StorageParams(bucket=bucket, key=parsed.key, range=mapped.get("range"))
