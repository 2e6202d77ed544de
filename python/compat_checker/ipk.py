"""
Unpacking of ``.ipk`` package archives.

An ipk is a Unix ``ar`` archive holding ``debian-binary``,
``control.tar.gz`` and ``data.tar.gz``; the last one carries the installed
file tree. Archive members are produced by a pull-based generator: the
underlying file only advances when the consumer asks for the next member,
so a consumer that stops early never reads the remaining data.
"""

import io
import logging
import os
import shutil
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator

logger = logging.getLogger(__name__)

AR_MAGIC = b"!<arch>\n"
AR_HEADER_SIZE = 60
AR_FMAG = b"`\n"

DATA_MEMBER_PREFIX = "data.tar"


class ArchiveFormatError(ValueError):
    """Raised when a package is not a readable ipk archive."""

    pass


@dataclass
class ArMember:
    """One member of an ar archive. ``data`` is valid until the iterator advances."""

    name: str
    size: int
    mode: int
    data: bytes


@dataclass
class ExtractedPackage:
    """A package unpacked into ``root``."""

    root: Path
    files: list[Path] = field(default_factory=list)
    links: dict[Path, Path] = field(default_factory=dict)


def _parse_ar_header(header: bytes) -> tuple[str, int, int]:
    if len(header) != AR_HEADER_SIZE or header[58:60] != AR_FMAG:
        raise ArchiveFormatError("Corrupt ar member header")
    name = header[0:16].decode("ascii", errors="replace").rstrip()
    try:
        mode = int(header[40:48].decode("ascii").strip() or "0", 8)
        size = int(header[48:58].decode("ascii").strip())
    except ValueError as e:
        raise ArchiveFormatError(f"Corrupt ar member header: {e}") from e
    return name, size, mode


def iter_ar_members(stream: BinaryIO) -> Iterator[ArMember]:
    """Yield members of the ar archive read from ``stream`` one at a time.

    Handles GNU (``name/`` and ``//`` long-name table) and BSD (``#1/len``)
    name conventions. Symbol tables are skipped.

    Raises:
        ArchiveFormatError: If the stream is not an ar archive
    """
    if stream.read(len(AR_MAGIC)) != AR_MAGIC:
        raise ArchiveFormatError("Not an ar archive")
    long_names = b""
    while True:
        header = stream.read(AR_HEADER_SIZE)
        if not header:
            return
        name, size, mode = _parse_ar_header(header)
        data = stream.read(size)
        if len(data) != size:
            raise ArchiveFormatError(f"Truncated ar member {name}")
        if size % 2:
            stream.read(1)

        if name in ("/", "/SYM64/", "__.SYMDEF", "__.SYMDEF SORTED"):
            continue
        if name == "//":
            long_names = data
            continue
        if name.startswith("#1/"):
            name_len = int(name[3:])
            name, data = data[:name_len].decode().rstrip("\x00"), data[name_len:]
        elif name.startswith("/") and name[1:].isdigit():
            offset = int(name[1:])
            end = long_names.find(b"/\n", offset)
            name = long_names[offset : end if end >= 0 else None].decode()
        elif name.endswith("/"):
            name = name[:-1]
        yield ArMember(name=name, size=len(data), mode=mode, data=data)


def _safe_target(root: Path, member_name: str) -> Path:
    target = Path(os.path.normpath(root / member_name.lstrip("/")))
    if target != root and root not in target.parents:
        raise ArchiveFormatError(
            f"Archive entry escapes extraction root: {member_name}"
        )
    return target


def extract_data_tar(tar: tarfile.TarFile, root: Path) -> ExtractedPackage:
    """Extract regular files, directories and symlinks of ``tar`` into ``root``.

    Symlink targets are rewritten relative to the link location and must
    stay inside ``root``. Other member types (devices, fifos) are ignored.
    """
    result = ExtractedPackage(root=root)
    for member in tar:
        target = _safe_target(root, member.name)
        if member.isdir():
            target.mkdir(parents=True, exist_ok=True)
        elif member.isfile():
            target.parent.mkdir(parents=True, exist_ok=True)
            source = tar.extractfile(member)
            with source, open(target, "wb") as out:
                shutil.copyfileobj(source, out)
            os.chmod(target, member.mode & 0o777 | 0o600)
            result.files.append(target)
            logger.debug("write %s", target)
        elif member.issym():
            if not member.linkname:
                continue
            if member.linkname.startswith("/"):
                link_dest = _safe_target(root, member.linkname)
            else:
                relative = Path(member.name).parent / member.linkname
                link_dest = _safe_target(root, str(relative))
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.is_symlink() or target.exists():
                target.unlink()
            os.symlink(os.path.relpath(link_dest, target.parent), target)
            result.links[target] = link_dest
            logger.debug("link %s => %s", target, link_dest)
        elif member.islnk():
            link_dest = _safe_target(root, member.linkname)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(link_dest, target)
            result.files.append(target)
    return result


def extract_ipk(package: Path, root: Path) -> ExtractedPackage:
    """Unpack the file tree of ``package`` into ``root``.

    Raises:
        ArchiveFormatError: If the archive has no data member
    """
    root.mkdir(parents=True, exist_ok=True)
    root = Path(os.path.normpath(root.resolve()))
    with open(package, "rb") as f:
        for member in iter_ar_members(f):
            if not member.name.startswith(DATA_MEMBER_PREFIX):
                continue
            logger.debug("Extracting %s from %s", member.name, package)
            try:
                with tarfile.open(fileobj=io.BytesIO(member.data), mode="r:*") as tar:
                    return extract_data_tar(tar, root)
            except tarfile.TarError as e:
                raise ArchiveFormatError(f"{package}: bad {member.name}: {e}") from e
    raise ArchiveFormatError(f"{package} has no {DATA_MEMBER_PREFIX}.* member")
