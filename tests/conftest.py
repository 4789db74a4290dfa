"""Pytest configuration and fixtures."""

from __future__ import annotations

import gzip
import io
import sys
import tarfile
import zipfile
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

# Add repo root to path (for 'annul' imports without an install)
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root))


Members = List[Tuple[str, Optional[bytes]]]


class ArchiveBuilder:
    """Deterministic in-memory archive construction; a None payload is a directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def tar(self, members: Members) -> bytes:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tf:
            for name, data in members:
                info = tarfile.TarInfo(name)
                info.mtime = 0
                if data is None:
                    info.type = tarfile.DIRTYPE
                    info.mode = 0o755
                    tf.addfile(info)
                else:
                    info.size = len(data)
                    info.mode = 0o644
                    tf.addfile(info, io.BytesIO(data))
        return buf.getvalue()

    def tgz(self, members: Members) -> bytes:
        return gzip.compress(self.tar(members), mtime=0)

    def zip(self, members: Members) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, data in members:
                if data is None:
                    zf.writestr(zipfile.ZipInfo(name.rstrip("/") + "/", date_time=(1980, 1, 1, 0, 0, 0)), b"")
                else:
                    zf.writestr(zipfile.ZipInfo(name, date_time=(1980, 1, 1, 0, 0, 0)), data)
        return buf.getvalue()

    def ar(self, members: List[Tuple[bytes, bytes]]) -> bytes:
        out = [b"!<arch>\n"]
        for name, data in members:
            hdr = b"%-16s%-12s%-6s%-6s%-8s%-10s`\n" % (
                name + b"/", b"0", b"0", b"0", b"100644", str(len(data)).encode("ascii"),
            )
            out.append(hdr + data + (b"\n" if len(data) % 2 else b""))
        return b"".join(out)

    def write(self, name: str, data: bytes) -> Path:
        p = self.root / name
        p.write_bytes(data)
        return p


@pytest.fixture()
def archives(tmp_path: Path) -> ArchiveBuilder:
    return ArchiveBuilder(tmp_path / "src")


NOISE = bytes(range(256)) * 4

README = b"hello world\nthis is a readme\n"


@pytest.fixture()
def package(archives: ArchiveBuilder) -> Path:
    """pkg.tar.gz with text, a nested zip, an empty file, a directory and a 7z blob."""
    inner = archives.zip([("x.bin", NOISE)])
    return archives.write(
        "pkg.tar.gz",
        archives.tgz(
            [
                ("pkg/README", README),
                ("pkg/inner.zip", inner),
                ("pkg/empty", b""),
                ("pkg/sub", None),
                ("pkg/x.7z", b"7z\xbc\xaf\x27\x1c" + b"\0" * 32),
            ]
        ),
    )
