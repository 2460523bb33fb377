"""Stop detection + UTF-8-safe incremental output.

Generated text is kept as *bytes*. A token maps to a byte fragment that may
be part of a multi-byte character, so nothing is decoded until a boundary is
known to be complete.

Two safety properties for streamed output:
- a chunk never ends inside a multi-byte UTF-8 character
- a chunk never contains text that is, or could still become, a stop string

Chunk concatenation law: every emitted chunk plus the final flush, joined in
order, equals the text a non-streaming call returns.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from lorafit.types import Token


def _utf8_len(lead: int) -> int:
    """Sequence length announced by a lead byte (1 for ASCII/invalid leads)."""
    if lead < 0x80:
        return 1
    if 0xC0 <= lead < 0xE0:
        return 2
    if 0xE0 <= lead < 0xF0:
        return 3
    if 0xF0 <= lead < 0xF8:
        return 4
    return 1


def utf8_safe_boundary(buf: bytes | bytearray, end: int) -> int:
    """Move `end` back so that buf[:end] does not stop mid-character.

    Only the last (at most 4) bytes are inspected. Bytes that can never become
    valid UTF-8 are not held back.

    :param buf: Byte buffer.
    :param int end: Candidate boundary (clamped to [0, len(buf)]).
    :return int: The largest safe boundary <= end.
    """
    end = max(0, min(int(end), len(buf)))
    for back in range(1, min(4, end) + 1):
        b = buf[end - back]
        if b & 0xC0 == 0x80:
            # continuation byte, keep looking for the lead
            continue
        need = _utf8_len(b)
        return end - back if need > back else end
    return end


@dataclass(frozen=True)
class StopMatch:
    """A stop string found in the generated bytes."""

    stop: str
    start: int


class StopDetector:
    """Token-level and text-level stop rules.

    Token rules are exact id matches (checked before any text is appended).
    Text rules are literal strings matched against the tail of the generated
    bytes; the first rule in configuration order that matches wins.
    """

    def __init__(self, stop_strings: Sequence[str] = (), stop_tokens: Iterable[Token] = ()) -> None:
        self.stop_strings: tuple[str, ...] = tuple(s for s in stop_strings if s)
        self._encoded: tuple[bytes, ...] = tuple(s.encode("utf-8") for s in self.stop_strings)
        self.stop_tokens: frozenset[Token] = frozenset(int(t) for t in stop_tokens)

    @property
    def max_stop_len(self) -> int:
        """Longest stop string in bytes (0 if none)."""
        return max((len(s) for s in self._encoded), default=0)

    def is_stop_token(self, token: Token) -> bool:
        return int(token) in self.stop_tokens

    def find(self, buf: bytes | bytearray, n_new: int) -> StopMatch | None:
        """Look for a stop string that overlaps the last `n_new` bytes.

        Earlier bytes were already checked on previous calls, so a match must
        end inside the new region.

        :param buf: All generated bytes so far.
        :param int n_new: Bytes appended since the last call.
        :return StopMatch | None: The first configured stop string found.
        """
        if not self._encoded or n_new <= 0:
            return None
        for stop, raw in zip(self.stop_strings, self._encoded, strict=True):
            start = max(0, len(buf) - n_new - len(raw) + 1)
            idx = bytes(buf).find(raw, start)
            if idx >= 0:
                return StopMatch(stop=stop, start=idx)
        return None


class StreamEmitter:
    """Byte buffer with a streamed offset and a hold-back window.

    `sink` receives decoded chunks; without a sink the emitter only buffers
    (non-streaming mode), which keeps both modes on one code path.
    """

    def __init__(self, *, hold_back: int = 0, sink: Callable[[str], None] | None = None) -> None:
        self.accumulated = bytearray()
        self.streamed_offset = 0
        self.hold_back = max(0, int(hold_back))
        self._sink = sink
        self.chunks: list[str] = []

    def append(self, piece: bytes) -> int:
        self.accumulated.extend(piece)
        return len(piece)

    def truncate(self, at: int) -> None:
        """Cut the buffer at `at` (a stop match start). Never below what was streamed."""
        if at < self.streamed_offset:
            raise ValueError(f"cannot truncate at {at}: {self.streamed_offset} bytes already streamed")
        del self.accumulated[at:]

    def _emit_until(self, boundary: int) -> None:
        if boundary <= self.streamed_offset:
            return
        chunk = bytes(self.accumulated[self.streamed_offset : boundary]).decode("utf-8", errors="replace")
        self.streamed_offset = boundary
        self.chunks.append(chunk)
        if self._sink is not None:
            self._sink(chunk)

    def flush(self) -> None:
        """Emit everything that can no longer be part of a stop string or a split character."""
        end = len(self.accumulated) - self.hold_back
        self._emit_until(utf8_safe_boundary(self.accumulated, end))

    def finish(self) -> str:
        """Final flush: drop any trailing incomplete character, emit the rest.

        :return str: The full text (what a non-streaming call returns).
        """
        end = utf8_safe_boundary(self.accumulated, len(self.accumulated))
        del self.accumulated[end:]
        self._emit_until(end)
        return self.text

    @property
    def text(self) -> str:
        return bytes(self.accumulated).decode("utf-8", errors="replace")
