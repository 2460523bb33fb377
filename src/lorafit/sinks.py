"""Output sinks.

A sink is where a session sends text it produces:

- on_log(text):      log lines (fed from Python logging via SinkLogHandler)
- on_token(chunk):   streamed generation chunks
- on_complete():     a streaming call finished
- on_error(message): a streaming call failed

A streaming call ends with exactly one on_complete or one on_error.

Sinks are registered into a `SinkSlot`. The slot is shared, cross-thread state:
registration and delivery both take the slot's lock, and registering a new sink
releases (closes) the previous one. When the consumer lives on another thread,
register a `QueueSink` and drain it there instead of running callbacks on the
worker thread.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable

EventKind = Literal["log", "token", "complete", "error"]


@runtime_checkable
class OutputSink(Protocol):
    def on_log(self, text: str) -> None: ...

    def on_token(self, chunk: str) -> None: ...

    def on_complete(self) -> None: ...

    def on_error(self, message: str) -> None: ...


class NullSink:
    """Drops everything."""

    def on_log(self, text: str) -> None:
        pass

    def on_token(self, chunk: str) -> None:
        pass

    def on_complete(self) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


@dataclass
class CallbackSink:
    """Sink built from plain callables; missing ones are no-ops."""

    log: Callable[[str], None] | None = None
    token: Callable[[str], None] | None = None
    complete: Callable[[], None] | None = None
    error: Callable[[str], None] | None = None

    def on_log(self, text: str) -> None:
        if self.log is not None:
            self.log(text)

    def on_token(self, chunk: str) -> None:
        if self.token is not None:
            self.token(chunk)

    def on_complete(self) -> None:
        if self.complete is not None:
            self.complete()

    def on_error(self, message: str) -> None:
        if self.error is not None:
            self.error(message)


@dataclass(frozen=True)
class SinkEvent:
    kind: EventKind
    text: str = ""


class QueueSink:
    """Thread-safe channel: producers put events, one consumer drains them."""

    def __init__(self, maxsize: int = 0) -> None:
        self._q: queue.Queue[SinkEvent | None] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    def on_log(self, text: str) -> None:
        self._put(SinkEvent("log", text))

    def on_token(self, chunk: str) -> None:
        self._put(SinkEvent("token", chunk))

    def on_complete(self) -> None:
        self._put(SinkEvent("complete"))

    def on_error(self, message: str) -> None:
        self._put(SinkEvent("error", message))

    def _put(self, event: SinkEvent) -> None:
        if not self._closed.is_set():
            self._q.put(event)

    def close(self) -> None:
        """Stop accepting events and wake the consumer."""
        if not self._closed.is_set():
            self._closed.set()
            self._q.put(None)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def events(self, *, timeout: float | None = None, until_done: bool = True) -> Iterator[SinkEvent]:
        """Drain events in order.

        :param timeout: Seconds to wait per event (None blocks).
        :param bool until_done: Stop after the first complete/error event.
        :raises queue.Empty: If `timeout` elapses with no event.
        :return Iterator[SinkEvent]: Events in emission order.
        """
        while True:
            event = self._q.get(timeout=timeout)
            if event is None:
                return
            yield event
            if until_done and event.kind in ("complete", "error"):
                return

    def drain(self) -> list[SinkEvent]:
        """Everything queued right now, without blocking."""
        out: list[SinkEvent] = []
        while True:
            try:
                event = self._q.get_nowait()
            except queue.Empty:
                return out
            if event is not None:
                out.append(event)


def _release(sink: OutputSink | None) -> None:
    close = getattr(sink, "close", None)
    if callable(close):
        close()


class SinkSlot:
    """Lock-guarded holder for the currently registered sink.

    An empty slot holds a `NullSink`, so delivery never checks for None.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.RLock()
        self._sink: OutputSink = NullSink()

    def register(self, sink: OutputSink | None) -> None:
        """Replace the current sink; the previous one is released. None empties the slot."""
        sink = NullSink() if sink is None else sink
        with self._lock:
            previous, self._sink = self._sink, sink
            if previous is not sink:
                _release(previous)

    def clear(self) -> None:
        self.register(None)

    @property
    def sink(self) -> OutputSink:
        with self._lock:
            return self._sink

    def log(self, text: str) -> None:
        with self._lock:
            self._sink.on_log(text)

    def token(self, chunk: str) -> None:
        with self._lock:
            self._sink.on_token(chunk)

    def complete(self) -> None:
        with self._lock:
            self._sink.on_complete()

    def error(self, message: str) -> None:
        with self._lock:
            self._sink.on_error(message)


class SinkLogHandler(logging.Handler):
    """Forward formatted log records to a slot's on_log."""

    def __init__(self, slot: SinkSlot, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self.slot = slot
        self.setFormatter(logging.Formatter("%(message)s"))
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        # A sink that logs from inside on_log would recurse forever
        if getattr(self._local, "busy", False):
            return
        self._local.busy = True
        try:
            self.slot.log(self.format(record))
        except Exception:
            self.handleError(record)
        finally:
            self._local.busy = False
