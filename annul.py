"""annul: recursive source-package flattener (Python implementation).

An .annul container is a zstd-compressed stream of length-prefixed frames, one frame
per entry found while recursively unpacking a source package file:

  u64 total_len   8 + meta_len + data_len
  u64 meta_len
  meta            u8 content_tag, u8 status_tag, NUL-joined path, NUL
  data            entry content after the strings filter

There is no overall header or trailer, and no index: readers scan the whole stream.

Determinism is the default contract:
- Siblings are emitted in raw path byte order; a parent is followed by its subtree.
- Identical inputs produce bit-identical frame streams on any host.

Entry content goes through a streaming strings(1)-like filter: printable ASCII and
UTF-8 runs survive, binary noise collapses to a single NUL separator, and short runs
between noise are dropped. Content tag 0 means the filter changed nothing.

CLI (subcommands):
  fetch  download a .dsc (or a single file) and annul each constituent file
  a      annul local files
  l      list the frames of a container
  cat    write the decompressed frame stream to stdout
"""

from __future__ import annotations

import argparse
import bz2
import concurrent.futures
import functools
import gzip
import hashlib
import io
import lzma
import os
import pathlib
import re
import shutil
import struct
import sys
import tarfile
import tempfile
import time
import zipfile
import zlib
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO, Callable, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import unquote, urljoin, urlsplit

import requests
import zstandard as zstd


class PhaseTimer:
    __slots__ = ("t0", "acc")

    def __init__(self) -> None:
        self.t0 = time.perf_counter()
        self.acc: Dict[str, float] = {}  # phase -> seconds

    def mark(self, phase: str) -> None:
        t = time.perf_counter()
        self.acc[phase] = self.acc.get(phase, 0.0) + (t - self.t0)
        self.t0 = t

    def report(self) -> str:
        items = sorted(self.acc.items(), key=lambda kv: (-kv[1], kv[0]))
        total = sum(v for _, v in items) or 1e-9
        return " | ".join(f"{k}={v:.3f}s({(100.0 * v / total):.1f}%)" for k, v in items)


# -----------------------------
# Versioning / format
# -----------------------------
TOOL_VERSION = "0.3.0"
VERSION_STR = TOOL_VERSION
__version__ = VERSION_STR

CONTAINER_SUFFIX = ".annul"

FRAME_HDR = struct.Struct("<QQ")  # total_len, meta_len
FRAME_FIXED = 8                   # the meta_len field is counted in total_len
META_MIN = 3                      # two tags + trailing NUL

# content tags
CONTENT_RAW = 0       # filter output identical in length to the original
CONTENT_STRINGED = 1  # filter dropped or replaced something
CONTENT_NONE = 2      # entry has no backing content
CONTENT_NAME = {CONTENT_RAW: "raw", CONTENT_STRINGED: "stringed", CONTENT_NONE: "none"}


class Status(IntEnum):
    """Outcome of trying to expand an entry's children; the value is the wire tag."""
    UNNECESSARY = 3
    UNRECOGNISED = 4
    TOO_NESTED = 5
    UNSUPPORTED = 6
    ERROR = 7
    SUCCESS = 8


# -----------------------------
# Defaults / knobs
# -----------------------------
IO_CHUNK = 64 * 1024
DEF_CHUNK_SIZE = 16 * 1024   # strings filter read size
DEF_ZSTD_LEVEL = 8
DEF_MAX_DEPTH = 10
DEF_TIMEOUT = 60.0

# strings filter
MAX_TOLERATED_BINARY = 2     # binary bytes kept inline in a run
MIN_KEPT_RUN = 4             # shorter runs are dropped at a binary boundary
RUN_FLUSH_OVER = 255         # run buffer bound
RUN_FLUSH_LEN = 250


# -----------------------------
# Errors
# -----------------------------
class AnnulError(RuntimeError):
    """Base class for failures that abort one package file."""


class FetchError(AnnulError):
    pass


class UnpackError(AnnulError):
    pass


class ShortWriteError(AnnulError):
    pass


class PublishError(AnnulError):
    pass


class FrameError(AnnulError):
    pass


class ProcessingError(AnnulError):
    """A failure scoped to one package file; `name` identifies the file."""

    def __init__(self, name: str, cause: BaseException) -> None:
        if isinstance(cause, (AnnulError, OSError)):
            detail = str(cause)
        else:
            detail = f"worker fault: {cause!r}"
        super().__init__(f"processing {name}: {detail}")
        self.name = name
        self.cause = cause


# -----------------------------
# Utilities
# -----------------------------
def ensure_dir(p: pathlib.Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def unlink_quiet(p: Optional[pathlib.Path]) -> None:
    if p is None:
        return
    try:
        p.unlink()
    except FileNotFoundError:
        pass


def iter_chunks(f: BinaryIO, chunk_size: int) -> Iterable[bytes]:
    while True:
        b = f.read(chunk_size)
        if not b:
            break
        yield b


def check_chunk_size(chunk_size: int) -> int:
    # read(0) ends the stream at once and read(-1) slurps the whole file
    if chunk_size < 1:
        raise ValueError(f"chunk size must be at least 1, got {chunk_size}")
    return chunk_size


def format_path(path: bytes) -> str:
    return " :: ".join(p.decode("utf-8", errors="backslashreplace") for p in path.split(b"\0"))


# -----------------------------
# Strings filter
# -----------------------------
_TEXT_CONTROLS = frozenset(b"\t\n\r")
_ASCII_RUN = re.compile(rb"[\t\n\r\x20-\x7e]+")


def utf8_width(lead: int) -> int:
    """Sequence length announced by a UTF-8 lead byte, or 0 if it is not a lead."""
    if lead & 0b1110_0000 == 0b1100_0000:
        return 2
    if lead & 0b1111_0000 == 0b1110_0000:
        return 3
    if lead & 0b1111_1000 == 0b1111_0000:
        return 4
    return 0


def is_follower(byte: int) -> bool:
    return byte & 0b1100_0000 == 0b1000_0000


class StringBuf:
    """
    Incremental strings filter.

    Feed arbitrary chunks with accept(), then call finish() once. Classification:
      - control bytes other than TAB/LF/CR, 0x7F, stray continuation bytes, and UTF-8
        leads whose continuation fails are binary;
      - ASCII below 0x7F and fully validated 2/3/4-byte UTF-8 sequences are printable.

    Up to MAX_TOLERATED_BINARY consecutive binary bytes stay inline in the current run.
    The next one trims them off again and ends the run: the run is written followed by
    a NUL if it is at least MIN_KEPT_RUN bytes long, otherwise dropped. Runs longer than
    RUN_FLUSH_OVER are written out in RUN_FLUSH_LEN pieces without a separator.

    A UTF-8 sequence cut by a chunk edge waits in `_pending` (never more than 3 bytes).
    """

    __slots__ = ("_out", "_pending", "_run", "_binaries", "written")

    def __init__(self, out: BinaryIO) -> None:
        self._out = out
        self._pending = b""
        self._run = bytearray()
        self._binaries = 0
        self.written = 0

    def _emit(self, data: bytes) -> None:
        if data:
            self._out.write(data)
            self.written += len(data)

    def _bound(self) -> None:
        run = self._run
        while len(run) > RUN_FLUSH_OVER:
            self._emit(bytes(run[:RUN_FLUSH_LEN]))
            del run[:RUN_FLUSH_LEN]

    def _binary(self, byte: int) -> None:
        if self._binaries < MAX_TOLERATED_BINARY:
            self._binaries += 1
            self._run.append(byte)
            self._bound()
            return

        if self._binaries:
            del self._run[-self._binaries:]
        if len(self._run) >= MIN_KEPT_RUN:
            self._emit(bytes(self._run))
            self._emit(b"\0")
        self._binaries = 0
        self._run.clear()

    def _printable(self, unit: bytes) -> None:
        # a run made only of tolerated noise never started
        if self._binaries == len(self._run):
            self._run.clear()
        self._run += unit
        self._binaries = 0
        self._bound()

    def accept(self, chunk: bytes) -> None:
        data = self._pending + bytes(chunk) if self._pending else bytes(chunk)
        self._pending = b""
        n = len(data)
        i = 0
        while i < n:
            b = data[i]
            if b < 0x7F:
                if b < 0x20 and b not in _TEXT_CONTROLS:
                    self._binary(b)
                    i += 1
                    continue
                end = _ASCII_RUN.match(data, i).end()
                self._printable(data[i:end])
                i = end
                continue

            width = utf8_width(b)
            if not width:
                self._binary(b)
                i += 1
                continue

            end = i + width
            j = i + 1
            while j < end and j < n and is_follower(data[j]):
                j += 1
            if j == end:
                self._printable(data[i:end])
                i = end
            elif j == n:
                self._pending = data[i:]
                break
            else:
                # only the lead is consumed; the byte that failed is scanned next
                self._binary(b)
                i += 1

    def finish(self) -> int:
        """Flush the current run and any undecided tail; return total bytes written."""
        self._emit(bytes(self._run))
        self._run.clear()
        self._binaries = 0
        self._emit(self._pending)
        self._pending = b""
        return self.written


def stringify(src: BinaryIO, out: BinaryIO, chunk_size: int = DEF_CHUNK_SIZE) -> Tuple[int, int]:
    """Run the strings filter over src into out; returns (bytes_read, bytes_written)."""
    check_chunk_size(chunk_size)
    sb = StringBuf(out)
    read = 0
    for chunk in iter_chunks(src, chunk_size):
        read += len(chunk)
        sb.accept(chunk)
    return read, sb.finish()


def strings(data: bytes) -> bytes:
    out = io.BytesIO()
    sb = StringBuf(out)
    sb.accept(data)
    sb.finish()
    return out.getvalue()


# -----------------------------
# Entry tree
# -----------------------------
@dataclass
class Entry:
    path: bytes
    status: Status = Status.UNNECESSARY
    temp: Optional[pathlib.Path] = None
    children: List["Entry"] = field(default_factory=list)
    detail: str = ""

    def __post_init__(self) -> None:
        self.path = bytes(self.path)
        if b"\0" in self.path:
            raise ValueError(f"entry path contains NUL: {self.path!r}")
        if self.children and self.status is not Status.SUCCESS:
            raise ValueError(f"{self.status.name} entry cannot carry children: {self.path!r}")

    def release(self) -> None:
        unlink_quiet(self.temp)
        self.temp = None

    def release_tree(self) -> None:
        for child in self.children:
            child.release_tree()
        self.release()


def entry_notes(entries: Iterable[Entry], prefix: bytes = b"") -> Iterator[Tuple[bytes, Entry]]:
    """(full_path, entry) for every entry carrying a detail, in frame order."""
    for entry in sorted(entries, key=lambda e: e.path):
        full_path = prefix + entry.path
        if entry.detail:
            yield full_path, entry
        yield from entry_notes(entry.children, full_path + b"\0")


# -----------------------------
# Frame encoder / walker
# -----------------------------
def build_meta(content_tag: int, status: Status, full_path: bytes) -> bytes:
    if content_tag not in CONTENT_NAME:
        raise ValueError(f"bad content tag {content_tag}")
    return bytes((content_tag, int(status))) + full_path + b"\0"


def copy_exact(src: BinaryIO, out: BinaryIO, expected: int) -> int:
    written = 0
    for chunk in iter_chunks(src, IO_CHUNK):
        out.write(chunk)
        written += len(chunk)
    if written != expected:
        raise ShortWriteError(f"short write: expected: {expected}, actual: {written}")
    return written


def write_frame(
    out: BinaryIO,
    entry: Entry,
    full_path: bytes,
    *,
    chunk_size: int = DEF_CHUNK_SIZE,
    scratch_dir: Optional[pathlib.Path] = None,
) -> int:
    """Write one frame for entry; returns data_len."""
    check_chunk_size(chunk_size)
    stringed: Optional[BinaryIO] = None
    data_len = 0
    try:
        if entry.temp is not None:
            stringed = tempfile.TemporaryFile(dir=scratch_dir)
            with open(entry.temp, "rb") as src:
                original_len, data_len = stringify(src, stringed, chunk_size)
            content_tag = CONTENT_RAW if original_len == data_len else CONTENT_STRINGED
        else:
            content_tag = CONTENT_NONE

        meta = build_meta(content_tag, entry.status, full_path)
        out.write(FRAME_HDR.pack(FRAME_FIXED + len(meta) + data_len, len(meta)))
        out.write(meta)

        if stringed is not None:
            stringed.seek(0)
            copy_exact(stringed, out, data_len)
    finally:
        if stringed is not None:
            stringed.close()
    return data_len


def write_entries(
    out: BinaryIO,
    entries: Iterable[Entry],
    prefix: bytes = b"",
    *,
    chunk_size: int = DEF_CHUNK_SIZE,
    scratch_dir: Optional[pathlib.Path] = None,
    release: bool = True,
) -> int:
    """
    Depth-first walk in raw path byte order; returns the number of frames written.

    Every frame carries prefix + path; children of a SUCCESS entry get the parent's full
    path plus NUL as their prefix. Backing files are released once an entry's subtree is out.
    """
    count = 0
    for entry in sorted(entries, key=lambda e: e.path):
        full_path = prefix + entry.path
        write_frame(out, entry, full_path, chunk_size=chunk_size, scratch_dir=scratch_dir)
        count += 1
        if entry.status is Status.SUCCESS:
            count += write_entries(
                out, entry.children, full_path + b"\0",
                chunk_size=chunk_size, scratch_dir=scratch_dir, release=release,
            )
        if release:
            entry.release()
    return count


# -----------------------------
# Frame reader
# -----------------------------
@dataclass
class Frame:
    content_tag: int
    status: Status
    path: bytes
    data_len: int
    data: Optional[bytes] = None

    @property
    def parts(self) -> List[bytes]:
        return self.path.split(b"\0")


def _read_exact(f: BinaryIO, n: int, *, allow_eof: bool = False) -> Optional[bytes]:
    parts: List[bytes] = []
    got = 0
    while got < n:
        b = f.read(n - got)
        if not b:
            break
        parts.append(b)
        got += len(b)
    if got == 0 and allow_eof and n:
        return None
    if got != n:
        raise FrameError(f"truncated frame: wanted {n} bytes, got {got}")
    return b"".join(parts)


def _skip(f: BinaryIO, n: int) -> None:
    while n:
        b = f.read(min(n, IO_CHUNK))
        if not b:
            raise FrameError(f"truncated frame data: {n} bytes missing")
        n -= len(b)


def iter_frames(f: BinaryIO, *, with_data: bool = True) -> Iterator[Frame]:
    while True:
        hdr = _read_exact(f, FRAME_HDR.size, allow_eof=True)
        if hdr is None:
            return
        total_len, meta_len = FRAME_HDR.unpack(hdr)
        if meta_len < META_MIN or total_len < FRAME_FIXED + meta_len:
            raise FrameError(f"corrupt frame lengths total={total_len} meta={meta_len}")
        meta = _read_exact(f, meta_len)
        content_tag, status_tag = meta[0], meta[1]
        if meta[-1] != 0:
            raise FrameError("frame metadata is not NUL terminated")
        if content_tag not in CONTENT_NAME:
            raise FrameError(f"unknown content tag {content_tag}")
        try:
            status = Status(status_tag)
        except ValueError:
            raise FrameError(f"unknown status tag {status_tag}") from None
        data_len = total_len - FRAME_FIXED - meta_len
        if content_tag == CONTENT_NONE and data_len:
            raise FrameError(f"contentless frame carries {data_len} bytes")

        data = None
        if with_data:
            data = _read_exact(f, data_len)
        else:
            _skip(f, data_len)
        yield Frame(content_tag, status, meta[2:-1], data_len, data)


# -----------------------------
# Dictionaries
# -----------------------------
DICT_DIFF = "diff"
DICT_DEBIAN = "debian"
DICT_ORIG = "orig"

DICT_FILES = {
    DICT_DIFF: "diff.zstd-dictionary",
    DICT_DEBIAN: "debian.tar.zstd-dictionary",
    DICT_ORIG: "orig.zstd-dictionary",
}

# Raw-content seeds: zstd uses them as history preceding the first frame byte.
_SEED_DIFF = (
    b"diff -urN ", b"--- a/", b"+++ b/", b"@@ -1,", b" @@\n",
    b"\\ No newline at end of file\n",
    b"--- ", b".orig/", b"+++ ", b"/debian/changelog\n",
    b"/debian/control\n", b"/debian/rules\n", b"/debian/copyright\n",
    b"+Source: ", b"+Section: ", b"+Priority: optional\n",
    b"+Maintainer: ", b"+Build-Depends: debhelper (>= ",
    b"+Standards-Version: ", b"+Homepage: https://",
    b"+Package: ", b"+Architecture: any\n", b"+Depends: ${shlibs:Depends}, ${misc:Depends}\n",
    b"+Description: ", b"+#!/usr/bin/make -f\n", b"+%:\n+\tdh $@\n",
    b" urgency=medium\n\n  * ", b"\n\n -- ",
)

_SEED_DEBIAN = (
    b"debian\0", b"debian/changelog\0", b"debian/control\0", b"debian/copyright\0",
    b"debian/rules\0", b"debian/source\0", b"debian/source/format\0",
    b"debian/patches\0", b"debian/patches/series\0", b"debian/watch\0",
    b"debian/tests/control\0", b"debian/upstream/metadata\0",
    b"3.0 (quilt)\n",
    b"Source: ", b"Section: ", b"Priority: optional\n", b"Maintainer: ",
    b"Uploaders: ", b"Build-Depends: debhelper-compat (= 13)",
    b"Standards-Version: 4.6.2\n", b"Homepage: https://",
    b"Vcs-Browser: https://salsa.debian.org/", b"Vcs-Git: https://salsa.debian.org/",
    b"Rules-Requires-Root: no\n",
    b"Package: ", b"Architecture: any\n", b"Multi-Arch: same\n",
    b"Depends: ${shlibs:Depends}, ${misc:Depends}\n", b"Description: ",
    b"Format: https://www.debian.org/doc/packaging-manuals/copyright-format/1.0/\n",
    b"Upstream-Name: ", b"Files: *\nCopyright: ", b"License: GPL-2+\n",
    b"#!/usr/bin/make -f\n", b"export DH_VERBOSE = 1\n", b"%:\n\tdh $@\n",
    b"override_dh_auto_configure:\n\tdh_auto_configure -- ",
    b" unstable; urgency=medium\n\n  * ", b"\n\n -- ", b"  +0000\n",
    b"version=4\n", b"opts=",
)

_SEED_ORIG = (
    b"README\0", b"README.md\0", b"LICENSE\0", b"COPYING\0", b"ChangeLog\0",
    b"NEWS\0", b"AUTHORS\0", b"INSTALL\0", b"Makefile\0", b"Makefile.am\0",
    b"Makefile.in\0", b"configure\0", b"configure.ac\0", b"CMakeLists.txt\0",
    b"setup.py\0", b"pyproject.toml\0", b"Cargo.toml\0", b"package.json\0",
    b"src\0", b"tests\0", b"docs\0",
    b"#include <stdio.h>\n", b"#include <stdlib.h>\n", b"#include <string.h>\n",
    b"#ifndef ", b"#define ", b"#endif\n", b"int main(int argc, char **argv)\n{\n",
    b"    return 0;\n}\n", b"static const char *",
    b"import os\nimport sys\n", b"def __init__(self", b"if __name__ == \"__main__\":\n",
    b"/*\n * Copyright (C) ", b" * This program is free software; you can redistribute it and/or modify\n",
    b" * it under the terms of the GNU General Public License as published by\n",
    b" * the Free Software Foundation; either version 2 of the License, or\n",
    b" * (at your option) any later version.\n */\n",
    b"Permission is hereby granted, free of charge, to any person obtaining a copy\n",
    b"Licensed under the Apache License, Version 2.0",
    b"AC_INIT(", b"AM_INIT_AUTOMAKE(", b"AC_CONFIG_FILES([Makefile])\n",
    b"cmake_minimum_required(VERSION ", b"project(",
)

BUILTIN_DICTS = {
    DICT_DIFF: b"".join(_SEED_DIFF),
    DICT_DEBIAN: b"".join(_SEED_DEBIAN),
    DICT_ORIG: b"".join(_SEED_ORIG),
}


def dictionary_kind(name: str) -> str:
    if ".diff." in name:
        return DICT_DIFF
    if ".debian." in name:
        return DICT_DEBIAN
    return DICT_ORIG


def load_dictionary(
    name: str,
    dict_dir: Optional[pathlib.Path] = None,
    enabled: bool = True,
) -> Optional[zstd.ZstdCompressionDict]:
    """Pick the dictionary for a top-level file name; trained files in dict_dir win."""
    if not enabled:
        return None
    kind = dictionary_kind(name)
    if dict_dir is not None:
        data = (pathlib.Path(dict_dir) / DICT_FILES[kind]).read_bytes()
    else:
        data = BUILTIN_DICTS[kind]
    # DICT_TYPE_AUTO: trained dictionaries are recognised by magic, anything else is raw content
    return zstd.ZstdCompressionDict(data, dict_type=zstd.DICT_TYPE_AUTO)


def source_name_for(container: pathlib.Path) -> str:
    name = container.name
    if name.endswith(CONTAINER_SUFFIX):
        name = name[: -len(CONTAINER_SUFFIX)]
    return name


def open_container(path: pathlib.Path, dictionary: Optional[zstd.ZstdCompressionDict] = None):
    """Decompressing reader over a published container (use as a context manager)."""
    dctx = zstd.ZstdDecompressor(dict_data=dictionary)
    return dctx.stream_reader(open(path, "rb"), closefd=True)


# -----------------------------
# Unpacker
# -----------------------------
SIG_ZIP = (b"PK\x03\x04", b"PK\x05\x06")
SIG_GZIP = b"\x1f\x8b"
SIG_BZIP2 = b"BZh"
SIG_XZ = b"\xfd7zXZ\x00"
SIG_ZSTD = b"\x28\xb5\x2f\xfd"
SIG_AR = b"!<arch>\n"
SIG_TAR = b"ustar"
TAR_MAGIC_OFF = 257
SIG_UNSUPPORTED = (
    (b"7z\xbc\xaf\x27\x1c", "7z"),
    (b"Rar!\x1a\x07", "rar"),
    (b"MSCF", "cab"),
)
DETECT_BYTES = 512

KIND_EMPTY = "empty"
KIND_RAW = "raw"
STREAM_KINDS = ("gzip", "bzip2", "xz", "zstd")
CONTAINER_KINDS = ("zip", "tar", "ar") + STREAM_KINDS

# compressed-stream child naming: first matching suffix (case-insensitive) is replaced
STREAM_SUFFIXES = {
    "gzip": ((b".tgz", b".tar"), (b".gz", b"")),
    "bzip2": ((b".tbz2", b".tar"), (b".tbz", b".tar"), (b".bz2", b"")),
    "xz": ((b".txz", b".tar"), (b".xz", b"")),
    "zstd": ((b".tzst", b".tar"), (b".zst", b"")),
}

AR_HDR = struct.Struct("16s12s6s6s8s10s2s")
AR_FMAG = b"`\n"

# zip local file header: signature ... name length, extra length
ZIP_LOCAL_HDR = struct.Struct("<4s2B4HL2L2H")
ZIP_NAME_LEN_FIELD = 10

# expansion failures of a nested container are recorded, not raised
UNPACK_ERRORS = (
    OSError, EOFError, ValueError, struct.error, zlib.error, lzma.LZMAError,
    zipfile.BadZipFile, tarfile.TarError, zstd.ZstdError, NotImplementedError, RuntimeError,
)

Opener = Callable[[], BinaryIO]


def detect(head: bytes) -> str:
    if not head:
        return KIND_EMPTY
    if head.startswith(SIG_ZIP):
        return "zip"
    if head.startswith(SIG_GZIP):
        return "gzip"
    if head.startswith(SIG_BZIP2):
        return "bzip2"
    if head.startswith(SIG_XZ):
        return "xz"
    if head.startswith(SIG_ZSTD):
        return "zstd"
    if head.startswith(SIG_AR):
        return "ar"
    for sig, kind in SIG_UNSUPPORTED:
        if head.startswith(sig):
            return kind
    if head[TAR_MAGIC_OFF:TAR_MAGIC_OFF + len(SIG_TAR)] == SIG_TAR:
        return "tar"
    return KIND_RAW


def stream_child_name(name: bytes, kind: str) -> bytes:
    lower = name.lower()
    for suffix, repl in STREAM_SUFFIXES[kind]:
        if lower.endswith(suffix) and len(name) > len(suffix):
            return name[: -len(suffix)] + repl
    return name


def _open_zstd(path: pathlib.Path) -> BinaryIO:
    return zstd.ZstdDecompressor().stream_reader(open(path, "rb"), read_across_frames=True, closefd=True)


STREAM_OPENERS: Dict[str, Callable[[pathlib.Path], BinaryIO]] = {
    "gzip": lambda p: gzip.open(p, "rb"),
    "bzip2": lambda p: bz2.open(p, "rb"),
    "xz": lambda p: lzma.open(p, "rb"),
    "zstd": _open_zstd,
}


class _Slice(io.RawIOBase):
    """Read-only window of `size` bytes at the current position of f."""

    def __init__(self, f: BinaryIO, size: int) -> None:
        self._f = f
        self._left = size

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        n = min(len(b), self._left)
        if n <= 0:
            return 0
        data = self._f.read(n)
        if not data:
            raise EOFError(f"truncated member: {self._left} bytes missing")
        b[: len(data)] = data
        self._left -= len(data)
        return len(data)


def zip_raw_name(f: BinaryIO, info: zipfile.ZipInfo) -> bytes:
    """Name bytes exactly as stored in the member's local header."""
    f.seek(info.header_offset)
    hdr = f.read(ZIP_LOCAL_HDR.size)
    if len(hdr) != ZIP_LOCAL_HDR.size or hdr[:4] != SIG_ZIP[0]:
        raise zipfile.BadZipFile(f"bad local header for {info.filename!r}")
    name_len = ZIP_LOCAL_HDR.unpack(hdr)[ZIP_NAME_LEN_FIELD]
    raw = f.read(name_len)
    if len(raw) != name_len:
        raise zipfile.BadZipFile(f"truncated local header for {info.filename!r}")
    return raw


def zip_members(path: pathlib.Path) -> Iterator[Tuple[bytes, Optional[Opener]]]:
    # zipfile hands out decoded names only; the bytes come from a second handle
    with open(path, "rb") as f, zipfile.ZipFile(path) as zf:
        for info in zf.infolist():
            raw = zip_raw_name(f, info)
            if info.is_dir():
                yield raw, None
            else:
                yield raw, functools.partial(zf.open, info)


def tar_members(path: pathlib.Path) -> Iterator[Tuple[bytes, Optional[Opener]]]:
    with tarfile.open(path, "r:", encoding="utf-8", errors="surrogateescape") as tf:
        for member in tf:
            raw = member.name.encode("utf-8", "surrogateescape")
            if member.isreg():
                yield raw, functools.partial(tf.extractfile, member)
            else:
                yield raw, None


def ar_members(path: pathlib.Path) -> Iterator[Tuple[bytes, Optional[Opener]]]:
    with open(path, "rb") as f:
        if f.read(len(SIG_AR)) != SIG_AR:
            raise ValueError("bad ar magic")
        while True:
            hdr = f.read(AR_HDR.size)
            if not hdr:
                return
            if len(hdr) != AR_HDR.size:
                raise EOFError("truncated ar header")
            name, _mtime, _uid, _gid, _mode, size_s, fmag = AR_HDR.unpack(hdr)
            if fmag != AR_FMAG:
                raise ValueError("bad ar member header")
            size = int(size_s.decode("ascii").strip() or "0")
            name = name.rstrip(b" ")
            # GNU terminates short names with '/'
            if name.endswith(b"/") and name not in (b"/", b"//"):
                name = name[:-1]
            start = f.tell()
            yield name, functools.partial(_Slice, f, size)
            f.seek(start + size + (size & 1))


def stream_members(path: pathlib.Path, name: bytes, kind: str) -> Iterator[Tuple[bytes, Optional[Opener]]]:
    yield stream_child_name(name, kind), functools.partial(STREAM_OPENERS[kind], path)


class Unpacker:
    """
    Recursive expansion into an Entry tree.

    Every member with data is copied (streamed) into its own file under `scratch`, so
    nested containers can be detected and opened like the top-level one.
    """

    def __init__(self, scratch: pathlib.Path, max_depth: int = DEF_MAX_DEPTH) -> None:
        self.scratch = scratch
        self.max_depth = max_depth

    def _store(self, opener: Opener) -> pathlib.Path:
        fd, name = tempfile.mkstemp(prefix="e", dir=self.scratch)
        p = pathlib.Path(name)
        try:
            with open(fd, "wb") as dst, opener() as src:
                shutil.copyfileobj(src, dst, IO_CHUNK)
        except BaseException:
            unlink_quiet(p)
            raise
        return p

    def _members(self, kind: str, path: pathlib.Path, name: bytes):
        if kind == "zip":
            return zip_members(path)
        if kind == "tar":
            return tar_members(path)
        if kind == "ar":
            return ar_members(path)
        return stream_members(path, name, kind)

    def expand(self, path: pathlib.Path, name: bytes, depth: int) -> Tuple[Status, List[Entry], str]:
        with open(path, "rb") as f:
            kind = detect(f.read(DETECT_BYTES))
        if kind == KIND_EMPTY:
            return Status.UNNECESSARY, [], ""
        if kind == KIND_RAW:
            return Status.UNRECOGNISED, [], ""
        if kind not in CONTAINER_KINDS:
            return Status.UNSUPPORTED, [], f"{kind} archives are not supported"
        if depth >= self.max_depth:
            return Status.TOO_NESTED, [], f"{kind} at depth {depth}"

        children: List[Entry] = []
        try:
            for child_name, opener in self._members(kind, path, name):
                temp = self._store(opener) if opener is not None else None
                children.append(self.entry(child_name, temp, depth + 1))
        except UNPACK_ERRORS as e:
            for child in children:
                child.release_tree()
            return Status.ERROR, [], f"{kind}: {e}"
        return Status.SUCCESS, children, ""

    def entry(self, name: bytes, temp: Optional[pathlib.Path], depth: int) -> Entry:
        if temp is None:
            return Entry(name, Status.UNNECESSARY)
        status, children, detail = self.expand(temp, name, depth)
        return Entry(name, status, temp, children, detail)


class Unpack:
    """Result of unpack_into(); owns the scratch directory holding all backing files."""

    def __init__(self, scratch: pathlib.Path, status: Status, children: List[Entry], detail: str = "") -> None:
        self.scratch = scratch
        self.status = status
        self.children = children
        self.detail = detail

    def close(self) -> None:
        shutil.rmtree(self.scratch, ignore_errors=True)

    def __enter__(self) -> "Unpack":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def unpack_into(
    src: pathlib.Path,
    root: pathlib.Path,
    *,
    name: Optional[bytes] = None,
    max_depth: int = DEF_MAX_DEPTH,
) -> Unpack:
    """Expand src under a fresh scratch directory in root; `name` defaults to src's file name."""
    src = pathlib.Path(src)
    if name is None:
        name = os.fsencode(src.name)
    scratch = pathlib.Path(tempfile.mkdtemp(prefix=".annul-unpack-", dir=root))
    try:
        status, children, detail = Unpacker(scratch, max_depth).expand(src, name, 0)
    except BaseException:
        shutil.rmtree(scratch, ignore_errors=True)
        raise
    return Unpack(scratch, status, children, detail)


# -----------------------------
# Compression / publish
# -----------------------------
def persist_noclobber(tmp: pathlib.Path, dest: pathlib.Path) -> None:
    """Make tmp visible as dest unless dest exists; the caller removes tmp afterwards."""
    try:
        os.link(tmp, dest)
    except FileExistsError as e:
        raise PublishError(f"refusing to overwrite {dest}") from e


def unarchive(
    src: pathlib.Path,
    dest: pathlib.Path,
    dictionary: Optional[zstd.ZstdCompressionDict] = None,
    *,
    name: Optional[bytes] = None,
    level: int = DEF_ZSTD_LEVEL,
    chunk_size: int = DEF_CHUNK_SIZE,
    max_depth: int = DEF_MAX_DEPTH,
    timer: Optional[PhaseTimer] = None,
) -> int:
    """Unpack src and publish its frame stream as dest; returns the number of frames."""
    root = dest.parent
    with unpack_into(src, root, name=name, max_depth=max_depth) as unpack:
        if unpack.status is not Status.SUCCESS:
            why = f" ({unpack.detail})" if unpack.detail else ""
            raise UnpackError(f"expecting top level archive, not: {unpack.status.name}{why}")
        for path, entry in entry_notes(unpack.children):
            print(f"  {entry.status.name.lower()}: {format_path(path)} ({entry.detail})")
        if timer:
            timer.mark("unpack")

        fd, tmp_name = tempfile.mkstemp(prefix=".annul-", suffix=".tmp", dir=root)
        tmp = pathlib.Path(tmp_name)
        try:
            with open(fd, "wb") as raw:
                cctx = zstd.ZstdCompressor(level=level, dict_data=dictionary)
                with cctx.stream_writer(raw, closefd=False) as out:
                    frames = write_entries(
                        out, unpack.children,
                        chunk_size=chunk_size, scratch_dir=unpack.scratch,
                    )
            if timer:
                timer.mark("encode")
            persist_noclobber(tmp, dest)
        finally:
            unlink_quiet(tmp)
        if timer:
            timer.mark("publish")
    return frames


# -----------------------------
# Package driver
# -----------------------------
@dataclass
class Options:
    level: int = DEF_ZSTD_LEVEL
    max_depth: int = DEF_MAX_DEPTH
    chunk_size: int = DEF_CHUNK_SIZE
    dict_dir: Optional[pathlib.Path] = None
    use_dict: bool = True
    timeout: float = DEF_TIMEOUT
    profile: bool = False


@dataclass(frozen=True)
class DscFile:
    name: str
    size: int
    sha256: Optional[str] = None


def container_path(dest_dir: pathlib.Path, name: str) -> pathlib.Path:
    return dest_dir / f"{name}{CONTAINER_SUFFIX}"


def run_isolated(name: str, fn: Callable, *args, **kwargs):
    """Run fn on a dedicated worker and surface any failure as ProcessingError(name)."""
    with concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"annul-{name}") as pool:
        fut = pool.submit(fn, *args, **kwargs)
        try:
            return fut.result()
        except Exception as e:
            raise ProcessingError(name, e) from e


def _annul_worker(src: pathlib.Path, name: str, out: pathlib.Path, opts: Options) -> int:
    pt = PhaseTimer() if opts.profile else None
    dictionary = load_dictionary(name, opts.dict_dir, opts.use_dict)
    frames = unarchive(
        src, out, dictionary,
        name=os.fsencode(name),
        level=opts.level, chunk_size=opts.chunk_size, max_depth=opts.max_depth, timer=pt,
    )
    if pt:
        print("  profile: " + pt.report())
    return frames


def annul_file(src: pathlib.Path, name: str, dest_dir: pathlib.Path, opts: Optional[Options] = None) -> bool:
    """Annul one local file as `name`; False if the container already existed."""
    opts = opts or Options()
    out = container_path(dest_dir, name)
    if out.exists():
        print(f"skip: {out} exists")
        return False
    t0 = time.time()
    frames = run_isolated(name, _annul_worker, pathlib.Path(src), name, out, opts)
    kind = dictionary_kind(name) if opts.use_dict else "none"
    print(f"[annul v{VERSION_STR}] OK: wrote {out}")
    print(f"  frames={frames} bytes={out.stat().st_size} dict={kind} time={time.time() - t0:.2f}s")
    return True


def annul_paths(paths: Iterable[pathlib.Path], dest_dir: pathlib.Path, opts: Optional[Options] = None) -> List[AnnulError]:
    """Annul local files one after another; returns the failures."""
    opts = opts or Options()
    failures: List[AnnulError] = []
    for p in paths:
        p = pathlib.Path(p)
        try:
            annul_file(p, p.name, dest_dir, opts)
        except AnnulError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            failures.append(e)
    return failures


def url_basename(url: str) -> str:
    name = unquote(urlsplit(url).path.rsplit("/", 1)[-1])
    if not name or name in (".", ".."):
        raise FetchError(f"no file name in url {url}")
    return name


def fetch_to(session, url: str, fh: BinaryIO, timeout: float = DEF_TIMEOUT) -> Tuple[int, str]:
    """Stream url into fh; returns (size, sha256 hex)."""
    h = hashlib.sha256()
    size = 0
    try:
        with session.get(url, stream=True, timeout=timeout) as resp:
            resp.raise_for_status()
            for chunk in resp.iter_content(chunk_size=IO_CHUNK):
                if not chunk:
                    continue
                fh.write(chunk)
                h.update(chunk)
                size += len(chunk)
    except requests.exceptions.RequestException as e:
        raise FetchError(f"downloading {url}: {e}") from e
    return size, h.hexdigest()


_DSC_FIELD = re.compile(r"^([A-Za-z0-9][A-Za-z0-9-]*):\s*(.*)$")


def _dsc_paragraph(text: str) -> List[str]:
    lines = text.splitlines()
    if lines and lines[0].startswith("-----BEGIN PGP SIGNED MESSAGE"):
        # armor headers run up to the first blank line
        try:
            lines = lines[lines.index("", 1) + 1:]
        except ValueError:
            lines = []
    out: List[str] = []
    for line in lines:
        if line.startswith("-----BEGIN PGP SIGNATURE"):
            break
        if line.startswith("- "):
            line = line[2:]
        if not line.strip():
            if out:
                break
            continue
        out.append(line)
    return out


def parse_dsc(text: str) -> List[DscFile]:
    """
    Constituent files of a Debian source control (.dsc) file.

    Uses Checksums-Sha256 when present and falls back to Files (md5 is not verified).
    """
    fields: Dict[str, List[str]] = {}
    current: Optional[List[str]] = None
    for line in _dsc_paragraph(text):
        if line[:1] in (" ", "\t"):
            if current is None:
                raise FetchError(f"bad dsc: continuation without field: {line!r}")
            if line.strip() != ".":
                current.append(line.strip())
            continue
        m = _DSC_FIELD.match(line)
        if not m:
            raise FetchError(f"bad dsc line: {line!r}")
        current = fields.setdefault(m.group(1).lower(), [])
        if m.group(2).strip():
            current.append(m.group(2).strip())

    def rows(key: str) -> List[Tuple[str, int, str]]:
        out = []
        for line in fields.get(key, []):
            parts = line.split()
            if len(parts) != 3 or not parts[1].isdigit():
                raise FetchError(f"bad dsc {key} line: {line!r}")
            digest, size, name = parts
            if "/" in name or name in (".", ".."):
                raise FetchError(f"bad dsc file name: {name!r}")
            out.append((name, int(size), digest.lower()))
        return out

    sha = rows("checksums-sha256")
    if sha:
        return [DscFile(name, size, digest) for name, size, digest in sha]
    return [DscFile(name, size) for name, size, _md5 in rows("files")]


def annul_remote(
    session,
    url: str,
    name: str,
    dest_dir: pathlib.Path,
    opts: Options,
    expected: Optional[DscFile] = None,
) -> bool:
    if container_path(dest_dir, name).exists():
        print(f"skip: {container_path(dest_dir, name)} exists")
        return False
    fd, tmp_name = tempfile.mkstemp(prefix=".annul-src-", dir=dest_dir)
    tmp = pathlib.Path(tmp_name)
    try:
        with open(fd, "wb") as fh:
            size, digest = fetch_to(session, url, fh, opts.timeout)
        if expected is not None:
            if size != expected.size:
                raise FetchError(f"{url}: size {size} != {expected.size}")
            if expected.sha256 is not None and digest != expected.sha256:
                raise FetchError(f"{url}: sha256 {digest} != {expected.sha256}")
        return annul_file(tmp, name, dest_dir, opts)
    finally:
        unlink_quiet(tmp)


def annul_url(url: str, dest_dir: pathlib.Path, opts: Optional[Options] = None, session=None) -> List[AnnulError]:
    """
    Annul a remote package.

    A .dsc URL is fetched and every file it lists is processed, in manifest order,
    relative to it; any other URL is processed as a single file. A failing file is
    reported and skipped; the failures are returned.
    """
    opts = opts or Options()
    own_session = session is None
    if own_session:
        session = requests.Session()
    try:
        name = url_basename(url)
        if name.endswith(".dsc"):
            buf = io.BytesIO()
            fetch_to(session, url, buf, opts.timeout)
            files = parse_dsc(buf.getvalue().decode("utf-8", errors="replace"))
            if not files:
                raise FetchError(f"{url}: no files listed")
            jobs = [(urljoin(url, f.name), f.name, f) for f in files]
        else:
            jobs = [(url, name, None)]

        failures: List[AnnulError] = []
        for file_url, file_name, expected in jobs:
            try:
                annul_remote(session, file_url, file_name, dest_dir, opts, expected)
            except AnnulError as e:
                print(f"ERROR: {e}", file=sys.stderr)
                failures.append(e)
            except OSError as e:
                err = ProcessingError(file_name, e)
                print(f"ERROR: {err}", file=sys.stderr)
                failures.append(err)
        return failures
    finally:
        if own_session:
            session.close()


# -----------------------------
# Commands
# -----------------------------
def _options(args: argparse.Namespace) -> Options:
    return Options(
        level=args.level,
        max_depth=args.max_depth,
        chunk_size=args.chunk_size,
        dict_dir=pathlib.Path(args.dict_dir) if args.dict_dir else None,
        use_dict=not args.no_dict,
        timeout=getattr(args, "timeout", DEF_TIMEOUT),
        profile=args.profile,
    )


def _report(failures: List[AnnulError]) -> None:
    if failures:
        print(f"FAILED: {len(failures)} file(s)", file=sys.stderr)
        raise SystemExit(1)


def cmd_fetch(args: argparse.Namespace) -> None:
    dest = pathlib.Path(args.dest).resolve()
    ensure_dir(dest)
    try:
        failures = annul_url(args.url, dest, _options(args))
    except AnnulError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        raise SystemExit(1)
    _report(failures)


def cmd_add(args: argparse.Namespace) -> None:
    dest = pathlib.Path(args.dest).resolve()
    ensure_dir(dest)
    _report(annul_paths([pathlib.Path(p) for p in args.inputs], dest, _options(args)))


def _reader_dictionary(args: argparse.Namespace) -> Optional[zstd.ZstdCompressionDict]:
    path = pathlib.Path(args.archive)
    dict_dir = pathlib.Path(args.dict_dir) if args.dict_dir else None
    return load_dictionary(source_name_for(path), dict_dir, not args.no_dict)


def cmd_list(args: argparse.Namespace) -> None:
    path = pathlib.Path(args.archive)
    n = 0
    with open_container(path, _reader_dictionary(args)) as reader:
        for fr in iter_frames(reader, with_data=False):
            n += 1
            print(f"{fr.data_len:12d}  {CONTENT_NAME[fr.content_tag]:8s}  {fr.status.name.lower():12s}  {format_path(fr.path)}")
    print(f"{path}: {n} frame(s)")


def cmd_cat(args: argparse.Namespace) -> None:
    out = sys.stdout.buffer
    with open_container(pathlib.Path(args.archive), _reader_dictionary(args)) as reader:
        for chunk in iter_chunks(reader, IO_CHUNK):
            out.write(chunk)
    out.flush()


def _add_dict_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--dict-dir", default=None,
                   help="directory holding diff/debian.tar/orig .zstd-dictionary files (default: built-in seeds)")
    p.add_argument("--no-dict", action="store_true", help="compress without a dictionary")


def _positive_int(s: str) -> int:
    try:
        return check_chunk_size(int(s))
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def _add_write_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--level", type=int, default=DEF_ZSTD_LEVEL, help="zstd level")
    p.add_argument("--max-depth", type=int, default=DEF_MAX_DEPTH,
                   help="nested containers deeper than this are recorded as too-nested")
    p.add_argument("--chunk-size", type=_positive_int, default=DEF_CHUNK_SIZE, help="strings filter read size")
    p.add_argument("--profile", action="store_true", help="print per-phase timing for each file")
    _add_dict_args(p)


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="annul", add_help=True)
    ap.add_argument("--version", action="version", version=f"annul {VERSION_STR}")
    sub = ap.add_subparsers(dest="cmd", required=True)

    pf = sub.add_parser("fetch", help="download a .dsc (or a single file) and annul its files")
    pf.add_argument("url")
    pf.add_argument("dest")
    pf.add_argument("--timeout", type=float, default=DEF_TIMEOUT, help="HTTP timeout in seconds")
    _add_write_args(pf)
    pf.set_defaults(func=cmd_fetch)

    pa = sub.add_parser("a", help="annul local files")
    pa.add_argument("dest")
    pa.add_argument("inputs", nargs="+")
    _add_write_args(pa)
    pa.set_defaults(func=cmd_add)

    pl = sub.add_parser("l", help="list frames")
    pl.add_argument("archive")
    _add_dict_args(pl)
    pl.set_defaults(func=cmd_list)

    pc = sub.add_parser("cat", help="write the decompressed frame stream to stdout")
    pc.add_argument("archive")
    _add_dict_args(pc)
    pc.set_defaults(func=cmd_cat)

    return ap


def main(argv: Optional[List[str]] = None) -> None:
    args = build_argparser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
