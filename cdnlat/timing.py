"""Per-request clock for time-to-first-byte and connection reuse.

A :class:`ProbeClock` is activated for the duration of one request.  The
forced-IP network streams stamp every socket read into the active clock,
and httpcore's ``trace`` extension (``request.extensions["trace"]``) tells
it when the response headers are awaited and when they are complete.  The
HTTP/3 transport reports its first-byte time directly through the same
trace callback.
"""

from __future__ import annotations

import contextlib
import time
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Iterator, Optional

_active_clock: ContextVar[Optional["ProbeClock"]] = ContextVar("cdnlat_probe_clock", default=None)


@dataclass
class ProbeClock:
    """Monotonic timestamps (``time.perf_counter``) for one request."""

    started_at: float = 0.0
    first_byte_at: Optional[float] = None
    opened_connection: bool = False
    _awaiting_response: bool = False
    _first_read_at: Optional[float] = None
    _last_read_at: Optional[float] = None

    def start(self) -> None:
        self.started_at = time.perf_counter()

    @property
    def ttfb_ms(self) -> float:
        if self.first_byte_at is None:
            return 0.0
        return (self.first_byte_at - self.started_at) * 1000.0

    @property
    def reused(self) -> bool:
        return not self.opened_connection

    def record_read(self, at: float) -> None:
        if not self._awaiting_response:
            return
        if self._first_read_at is None:
            self._first_read_at = at
        self._last_read_at = at

    async def on_trace(self, event_name: str, info: dict[str, Any]) -> None:
        """httpcore trace hook, e.g. ``http11.receive_response_headers.started``."""
        scope, _, event = event_name.partition(".")

        if scope == "connection" and event.startswith("connect_") and event.endswith(".started"):
            self.opened_connection = True
        elif event == "receive_response_headers.started":
            self._awaiting_response = True
            self._first_read_at = None
            self._last_read_at = None
        elif event == "receive_response_headers.complete":
            self._awaiting_response = False
            if self.first_byte_at is not None:
                return
            if "first_byte_at" in info:
                self.first_byte_at = info["first_byte_at"]
            elif scope == "http2":
                # Earlier reads on a fresh h2 connection may only carry
                # SETTINGS/WINDOW_UPDATE frames.
                self.first_byte_at = self._last_read_at
            else:
                self.first_byte_at = self._first_read_at
            if self.first_byte_at is None:
                self.first_byte_at = time.perf_counter()


def record_read() -> None:
    """Stamp a completed socket read into the active clock, if any."""
    clock = _active_clock.get()
    if clock is not None:
        clock.record_read(time.perf_counter())


@contextlib.contextmanager
def activate(clock: ProbeClock) -> Iterator[ProbeClock]:
    token = _active_clock.set(clock)
    try:
        yield clock
    finally:
        _active_clock.reset(token)
