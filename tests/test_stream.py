"""Stop detection and UTF-8-safe streaming tests."""

from __future__ import annotations

import pytest

from lorafit.stream import StopDetector, StreamEmitter, utf8_safe_boundary


def _feed(emitter: StreamEmitter, detector: StopDetector, data: bytes, step: int = 1) -> bool:
    """Feed bytes in fixed steps; return True if a stop string matched."""
    for i in range(0, len(data), step):
        n = emitter.append(data[i : i + step])
        match = detector.find(emitter.accumulated, n)
        if match is not None:
            emitter.truncate(match.start)
            return True
        emitter.flush()
    return False


def test_utf8_safe_boundary() -> None:
    euro = "€".encode()  # 3 bytes
    buf = b"a" + euro
    assert utf8_safe_boundary(buf, 4) == 4
    assert utf8_safe_boundary(buf, 3) == 1
    assert utf8_safe_boundary(buf, 2) == 1
    assert utf8_safe_boundary(buf, 1) == 1
    assert utf8_safe_boundary(buf[:3], 3) == 1
    # clamps out-of-range ends
    assert utf8_safe_boundary(buf, 99) == 4
    assert utf8_safe_boundary(buf, -3) == 0
    # a stray continuation byte with no lead is not held back forever
    assert utf8_safe_boundary(b"\x80\x80\x80\x80\x80", 5) == 5


@pytest.mark.parametrize("text", ["héllo wörld", "日本語のテキスト", "emoji 😀🎉 ok", "plain ascii"])
def test_streamed_chunks_are_valid_utf8_and_concatenate(text: str) -> None:
    chunks: list[str] = []
    emitter = StreamEmitter(hold_back=0, sink=chunks.append)
    detector = StopDetector()
    assert not _feed(emitter, detector, text.encode("utf-8"))
    final = emitter.finish()

    assert final == text
    assert "".join(chunks) == text
    for c in chunks:
        assert "�" not in c


def test_incomplete_trailing_character_is_dropped() -> None:
    emitter = StreamEmitter()
    emitter.append(b"ok" + "😀".encode()[:2])
    assert emitter.finish() == "ok"
    assert bytes(emitter.accumulated) == b"ok"


def test_stop_string_is_never_streamed() -> None:
    chunks: list[str] = []
    detector = StopDetector(["<|im_end|>"])
    emitter = StreamEmitter(hold_back=detector.max_stop_len, sink=chunks.append)

    assert _feed(emitter, detector, b"hi<|im_end|>trailing")
    final = emitter.finish()

    assert final == "hi"
    assert "".join(chunks) == "hi"
    assert all("<" not in c for c in chunks)


def test_stop_string_split_across_pieces() -> None:
    detector = StopDetector(["END"])
    emitter = StreamEmitter(hold_back=detector.max_stop_len)
    assert _feed(emitter, detector, b"abcEN", step=2) is False
    n = emitter.append(b"D!")
    match = detector.find(emitter.accumulated, n)
    assert match is not None and match.stop == "END" and match.start == 3


def test_first_configured_stop_wins() -> None:
    detector = StopDetector(["B", "AB"])
    match = detector.find(b"xAB", 2)
    assert match is not None
    assert match.stop == "B"
    assert match.start == 2


def test_find_only_searches_new_region() -> None:
    detector = StopDetector(["ab"])
    assert detector.find(b"ab" + b"zzzz", 2) is None
    assert detector.find(b"zzza", 0) is None
    assert detector.find(b"zzzab", 1) is not None


def test_stop_tokens_and_empty_strings() -> None:
    detector = StopDetector(["", "x"], stop_tokens=[3, 7])
    assert detector.stop_strings == ("x",)
    assert detector.is_stop_token(7)
    assert not detector.is_stop_token(2)
    assert StopDetector().max_stop_len == 0


def test_hold_back_keeps_possible_stop_prefix() -> None:
    chunks: list[str] = []
    detector = StopDetector(["STOP"])
    emitter = StreamEmitter(hold_back=detector.max_stop_len, sink=chunks.append)
    _feed(emitter, detector, b"hello ST")
    assert "".join(chunks) == "hell"
    assert emitter.finish() == "hello ST"
    assert "".join(chunks) == "hello ST"


def test_truncate_below_streamed_offset_raises() -> None:
    emitter = StreamEmitter()
    emitter.append(b"abcdef")
    emitter.flush()
    with pytest.raises(ValueError, match="already streamed"):
        emitter.truncate(2)
