"""Tests for ipk archive unpacking."""

import io
import os
import tarfile
from pathlib import Path

import pytest

from compat_checker.ipk import (
    AR_MAGIC,
    ArchiveFormatError,
    extract_ipk,
    iter_ar_members,
)


def ar_header(name: str, size: int) -> bytes:
    header = (
        f"{name:<16}{0:<12}{0:<6}{0:<6}{0o100644:<8o}{size:<10}".encode("ascii")
        + b"`\n"
    )
    assert len(header) == 60
    return header


def build_ar(members: list[tuple[str, bytes]]) -> bytes:
    out = bytearray(AR_MAGIC)
    for name, data in members:
        out += ar_header(name, len(data))
        out += data
        if len(data) % 2:
            out += b"\n"
    return bytes(out)


def build_tar(entries: list[tarfile.TarInfo], contents: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for info in entries:
            data = contents.get(info.name)
            if data is not None:
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
            else:
                tar.addfile(info)
    return buf.getvalue()


def tar_dir(name: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = 0o755
    return info


def tar_file(name: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.mode = 0o755
    return info


def tar_symlink(name: str, target: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    return info


APP = "./usr/palm/applications/com.example.app"
APPINFO = b'{"id": "com.example.app", "type": "native", "main": "app"}'


@pytest.fixture
def ipk(tmp_path: Path) -> Path:
    data = build_tar(
        [
            tar_dir("./usr"),
            tar_dir(APP),
            tar_file(f"{APP}/appinfo.json"),
            tar_file(f"{APP}/app"),
            tar_dir(f"{APP}/lib"),
            tar_file(f"{APP}/lib/libfoo.so.1"),
            tar_symlink(f"{APP}/lib/libfoo.so", "libfoo.so.1"),
            tar_symlink(
                f"{APP}/lib/libabs.so",
                "/usr/palm/applications/com.example.app/lib/libfoo.so.1",
            ),
        ],
        {
            f"{APP}/appinfo.json": APPINFO,
            f"{APP}/app": b"\x7fELF-main",
            f"{APP}/lib/libfoo.so.1": b"\x7fELF-lib",
        },
    )
    path = tmp_path / "com.example.app_1.0.0_arm.ipk"
    path.write_bytes(
        build_ar(
            [
                ("debian-binary", b"2.0\n"),
                ("control.tar.gz", build_tar([], {})),
                ("data.tar.gz", data),
            ]
        )
    )
    return path


class TestIterArMembers:
    """Tests for the streaming ar reader."""

    def test_members_in_order(self):
        archive = build_ar([("a.txt/", b"abc"), ("b.txt", b"hello!")])
        members = list(iter_ar_members(io.BytesIO(archive)))
        assert [m.name for m in members] == ["a.txt", "b.txt"]
        assert members[0].data == b"abc"
        assert members[1].size == 6

    def test_gnu_long_names(self):
        long_name = "a-very-long-member-name.tar.gz"
        table = f"{long_name}/\n".encode()
        archive = build_ar([("//", table), ("/0", b"data"), ("/", b"symtab")])
        members = list(iter_ar_members(io.BytesIO(archive)))
        assert [m.name for m in members] == [long_name]

    def test_bsd_long_names(self):
        name = b"bsd-style-long-name.tar"
        archive = build_ar([(f"#1/{len(name)}", name + b"payload")])
        (member,) = iter_ar_members(io.BytesIO(archive))
        assert member.name == "bsd-style-long-name.tar"
        assert member.data == b"payload"

    def test_pull_based(self):
        archive = build_ar([("first", b"1"), ("second", b"22")])
        stream = io.BytesIO(archive)
        members = iter_ar_members(stream)
        assert next(members).name == "first"
        # Only the first member has been consumed
        assert stream.tell() < len(archive)

    def test_not_ar(self):
        with pytest.raises(ArchiveFormatError, match="Not an ar archive"):
            list(iter_ar_members(io.BytesIO(b"PK\x03\x04 zip file")))

    def test_truncated(self):
        archive = build_ar([("member", b"0123456789")])[:-4]
        with pytest.raises(ArchiveFormatError, match="Truncated"):
            list(iter_ar_members(io.BytesIO(archive)))

    def test_corrupt_header(self):
        archive = AR_MAGIC + b"x" * 60
        with pytest.raises(ArchiveFormatError, match="Corrupt"):
            list(iter_ar_members(io.BytesIO(archive)))


class TestExtractIpk:
    def test_extract(self, ipk: Path, tmp_path: Path):
        extracted = extract_ipk(ipk, tmp_path / "out")
        root = extracted.root
        app = root / APP
        assert (app / "appinfo.json").is_file()
        assert (app / "app").read_bytes() == b"\x7fELF-main"
        assert os.access(app / "app", os.X_OK)
        assert len(extracted.files) == 3

    def test_symlinks_stay_inside_root(self, ipk: Path, tmp_path: Path):
        extracted = extract_ipk(ipk, tmp_path / "out")
        lib = extracted.root / APP / "lib"
        assert os.readlink(lib / "libfoo.so") == "libfoo.so.1"
        # Absolute targets are re-rooted and made relative
        assert os.readlink(lib / "libabs.so") == "libfoo.so.1"
        assert (lib / "libabs.so").resolve() == (lib / "libfoo.so.1").resolve()

    def test_no_data_member(self, tmp_path: Path):
        path = tmp_path / "empty.ipk"
        path.write_bytes(build_ar([("debian-binary", b"2.0\n")]))
        with pytest.raises(ArchiveFormatError, match="no data.tar"):
            extract_ipk(path, tmp_path / "out")

    def test_bad_data_member(self, tmp_path: Path):
        path = tmp_path / "bad.ipk"
        path.write_bytes(build_ar([("data.tar.gz", b"not a tarball")]))
        with pytest.raises(ArchiveFormatError, match="bad data.tar.gz"):
            extract_ipk(path, tmp_path / "out")

    def test_path_traversal_rejected(self, tmp_path: Path):
        data = build_tar([tar_file("../../evil")], {"../../evil": b"x"})
        path = tmp_path / "evil.ipk"
        path.write_bytes(build_ar([("data.tar.gz", data)]))
        with pytest.raises(ArchiveFormatError, match="escapes"):
            extract_ipk(path, tmp_path / "out")
        assert not (tmp_path / "evil").exists()
