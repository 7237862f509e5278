from __future__ import annotations

import enum
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

LOG = logging.getLogger("s3proxy.coordinator")


class HeadSink(Protocol):
    def write_head(self, status_code: int, headers: Mapping[str, str]) -> Any: ...


class ResponseSink(HeadSink, Protocol):
    async def write(self, chunk: bytes) -> None: ...


class Signal(enum.Enum):
    METADATA = "metadata"
    FIRST_BYTE = "first-byte"
    COMPLETE = "complete"
    OPERATION_ERROR = "operation-error"
    STREAM_ERROR = "stream-error"


_ERROR_SIGNALS = frozenset({Signal.OPERATION_ERROR, Signal.STREAM_ERROR})


class Phase(enum.Enum):
    IDLE = "idle"
    CAPTURED = "captured"
    SENT = "sent"


@dataclass
class HeaderState:
    phase: Phase = Phase.IDLE
    status: int | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def sent(self) -> bool:
        return self.phase is Phase.SENT


class ResponseCoordinator:
    """Writes the response head exactly once for a single request.

    Response metadata, body data, completion and failures arrive from
    independent sources in any order. Metadata is only ever captured; the
    head goes out on the first body, completion or error signal, using
    whatever metadata was captured by then. Without captured metadata the
    head falls back to ``fallback_status`` (first byte or completion) or
    ``error_status`` (errors). Once sent, every later signal is ignored.
    """

    def __init__(
        self,
        sink: HeadSink,
        *,
        fallback_status: int = 200,
        error_status: int = 500,
    ) -> None:
        self._sink = sink
        self._fallback_status = fallback_status
        self._error_status = error_status
        self._state = HeaderState()

    @property
    def state(self) -> HeaderState:
        return self._state

    @property
    def sent(self) -> bool:
        return self._state.sent

    def capture(self, status: int, headers: Mapping[str, str]) -> None:
        self.on_signal(Signal.METADATA, (status, headers))

    def on_signal(self, signal: Signal, payload: Any = None) -> bool:
        """Feed one signal into the state machine.

        Returns ``True`` when this signal caused the head to be written.
        """
        state = self._state
        if state.sent:
            if signal is Signal.METADATA:
                LOG.debug("discarding metadata received after head was sent")
            return False

        if signal is Signal.METADATA:
            status, headers = payload
            state.status = status
            state.headers = dict(headers or {})
            state.phase = Phase.CAPTURED
            return False

        if state.phase is Phase.CAPTURED and state.status is not None:
            status = state.status
        elif signal in _ERROR_SIGNALS:
            status = self._error_status
        else:
            status = self._fallback_status

        state.phase = Phase.SENT
        LOG.debug("writing head status=%s on %s", status, signal.value)
        self._sink.write_head(status, dict(state.headers))
        return True

    async def wrap(self, body: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """Relay ``body`` while signalling first byte, completion and errors."""
        async with aclosing(body) as chunks:
            first = True
            try:
                async for chunk in chunks:
                    if first and chunk:
                        self.on_signal(Signal.FIRST_BYTE)
                        first = False
                    yield chunk
            except Exception:
                self.on_signal(Signal.STREAM_ERROR)
                raise
        self.on_signal(Signal.COMPLETE)


async def pipe(stream: AsyncIterator[bytes], sink: ResponseSink) -> int:
    """Drain ``stream`` into ``sink`` and return the number of bytes written."""
    written = 0
    async with aclosing(stream) as chunks:
        async for chunk in chunks:
            await sink.write(chunk)
            written += len(chunk)
    return written
