from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .storage import ErrorKind, StorageError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class Reason(enum.Enum):
    ABSENT = "absent"
    FORBIDDEN = "forbidden"
    INVALID_RANGE = "invalid-range"


@dataclass(frozen=True)
class Success:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: AsyncIterator[bytes] | None = None


@dataclass(frozen=True)
class NonFatal:
    status: int
    reason: Reason
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Fatal:
    error: BaseException


# kind -> (reason, status used when the backend did not report one)
_NON_FATAL = {
    ErrorKind.OBJECT_NOT_FOUND: (Reason.ABSENT, 404),
    ErrorKind.BUCKET_NOT_FOUND: (Reason.ABSENT, 404),
    ErrorKind.ACCESS_DENIED: (Reason.FORBIDDEN, 403),
    ErrorKind.INVALID_RANGE: (Reason.INVALID_RANGE, 416),
}


def classify(error: BaseException) -> NonFatal | Fatal:
    """Decide whether a terminal storage error is an expected HTTP outcome.

    Missing objects or buckets, denied access and unsatisfiable ranges are
    answered with their status and an empty body. Everything else, including
    exceptions that did not come from the backend at all, is fatal.
    """
    if not isinstance(error, StorageError):
        return Fatal(error)
    mapped = _NON_FATAL.get(error.kind)
    if mapped is None:
        return Fatal(error)
    reason, default_status = mapped
    return NonFatal(
        status=error.status or default_status,
        reason=reason,
        headers=dict(error.headers),
    )
