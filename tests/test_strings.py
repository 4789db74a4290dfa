"""Unit tests for the streaming strings filter."""

from __future__ import annotations

import io
from typing import List

import pytest

import annul
from annul import StringBuf, strings, stringify


def _feed(chunks: List[bytes]) -> bytes:
    out = io.BytesIO()
    sb = StringBuf(out)
    for c in chunks:
        sb.accept(c)
    n = sb.finish()
    assert n == len(out.getvalue())
    return out.getvalue()


def _split(data: bytes, size: int) -> List[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


TEXT = (b"first line\twith a tab\r\n" + b"x" * 700 + b"\nlast line without newline") * 3


@pytest.mark.parametrize("size", [1, 2, 3, 7, 250, 255, 256, 4096, len(TEXT)])
def test_pure_text_unchanged_for_any_chunking(size: int) -> None:
    assert _feed(_split(TEXT, size)) == TEXT


def test_all_ascii() -> None:
    assert strings(b"hello") == b"hello"


def test_crush_unprintable() -> None:
    assert strings(b"hello\0\x01\x02\x03world") == b"hello\0world"


def test_noise_collapses_to_nul() -> None:
    assert strings(b"hello\x01\x02\x03world") == b"hello\0world"


def test_two_binary_bytes_are_tolerated_inline() -> None:
    assert strings(b"hello\x01world") == b"hello\x01world"
    assert strings(b"hello\x01\x02world") == b"hello\x01\x02world"


def test_short_run_before_noise_is_dropped() -> None:
    assert strings(b"abc\x01\x02\x03wxyz") == b"wxyz"
    assert strings(b"abcd\x01\x02\x03wxyz") == b"abcd\0wxyz"


def test_tolerated_noise_without_text_is_cleared() -> None:
    assert strings(b"\x01\x02hello") == b"hello"


def test_long_binary_run_keeps_only_the_trailing_noise() -> None:
    # every third byte resets the counter; the tenth is still pending at EOF
    assert strings(b"\0" * 10) == b"\0"


def test_run_is_flushed_as_is_at_eof() -> None:
    assert strings(b"hello\x01\x02") == b"hello\x01\x02"


def test_utf8_sequence_kept() -> None:
    data = "price: 5€, café, \U0001f600".encode("utf-8")
    assert strings(data) == data


@pytest.mark.parametrize(
    "chunks",
    [
        [b"cost \xe2", b"\x82\xac today"],
        [b"cost \xe2\x82", b"\xac today"],
        [b"cost \xe2", b"\x82", b"\xac today"],
    ],
)
def test_utf8_split_across_chunks(chunks: List[bytes]) -> None:
    whole = b"".join(chunks)
    assert _feed(chunks) == strings(whole) == whole


def test_four_byte_sequence_split_byte_by_byte() -> None:
    data = "smile \U0001f600 please".encode("utf-8")
    assert _feed(_split(data, 1)) == data


def test_invalid_continuation_reclassifies_lead_only() -> None:
    # \xc3 is binary and tolerated; '(' is scanned normally and starts the run
    assert strings(b"\xc3(abc") == b"(abc"
    # inside a run the lead stays inline and nothing is consumed twice
    assert strings(b"abcd\xe2Xefgh") == b"abcd\xe2Xefgh"


def test_invalid_continuation_detected_across_chunks() -> None:
    data = b"ab\xe2\x82Zcd"
    assert _feed([b"ab\xe2\x82", b"Zcd"]) == strings(data) == data


def test_stray_continuation_and_del_are_binary() -> None:
    assert strings(b"text\x80\x7f\x80more") == b"text\0more"


def test_incomplete_sequence_at_eof_flushed_verbatim() -> None:
    assert _feed([b"abcd\xe2\x82"]) == b"abcd\xe2\x82"
    assert _feed([b"abcd", b"\xf0\x9f"]) == b"abcd\xf0\x9f"


class _Recorder(io.RawIOBase):
    def __init__(self) -> None:
        self.writes: List[bytes] = []

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        self.writes.append(bytes(b))
        return len(b)


def test_long_runs_are_flushed_in_bounded_pieces() -> None:
    rec = _Recorder()
    sb = StringBuf(rec)
    sb.accept(b"a" * 1000)
    # nothing above the bound is held back
    assert all(len(w) == annul.RUN_FLUSH_LEN for w in rec.writes)
    assert len(rec.writes) == 3
    sb.finish()
    assert b"".join(rec.writes) == b"a" * 1000
    assert len(rec.writes[-1]) == 250


def test_bounded_flush_does_not_add_separator() -> None:
    data = b"a" * 300 + b"\x01\x02\x03" + b"b" * 10
    assert strings(data) == b"a" * 300 + b"\0" + b"b" * 10


def test_stringify_reports_lengths() -> None:
    src = io.BytesIO(b"hello\x01\x02\x03world")
    out = io.BytesIO()
    read, written = stringify(src, out, chunk_size=3)
    assert (read, written) == (13, 11)
    assert out.getvalue() == b"hello\0world"
