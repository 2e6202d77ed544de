"""
Generation of per-version symbol databases from a firmware root filesystem.

The OS version is read from ``etc/issue``. Libraries are collected from
``lib``, ``usr/lib`` and the directories listed in ``etc/ld.so.conf``.
Every real ``*.so*`` file gets a record (exports and NEEDED list); every
symlink becomes an alias of the file it resolves to.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from packaging.version import Version

from .binutils import Toolchain, ToolExecutionError
from .symbol_store import (
    INDEX_FILE,
    VERSIONS_FILE,
    LibraryRecord,
    record_filename,
    write_record_file,
)

logger = logging.getLogger(__name__)

DEFAULT_LIBRARY_DIRS = ["lib", "usr/lib"]

_VERSION_RE = re.compile(r"(\d+\.\d+\.\d+)")


@dataclass
class _Entry:
    names: list[str] = field(default_factory=list)
    symbols: list[str] | None = None
    needed: list[str] = field(default_factory=list)


def read_system_version(rootfs: Path) -> str:
    """First ``N.N.N`` found in ``etc/issue``."""
    issue = (rootfs / "etc" / "issue").read_text(encoding="utf-8", errors="replace")
    m = _VERSION_RE.search(issue)
    if m is None:
        raise ValueError(f"No version number in {rootfs / 'etc' / 'issue'}")
    return m.group(1)


def library_dirs(rootfs: Path) -> list[str]:
    """Default library directories plus those listed in ``etc/ld.so.conf``."""
    dirs = list(DEFAULT_LIBRARY_DIRS)
    conf = rootfs / "etc" / "ld.so.conf"
    if conf.is_file():
        for line in conf.read_text(encoding="utf-8").splitlines():
            line = line.split("#", 1)[0].strip()
            if not line or line.startswith("include"):
                continue
            entry = line.lstrip("/")
            if entry not in dirs:
                dirs.append(entry)
    return dirs


def _resolve_in_rootfs(rootfs: Path, link: Path) -> Path:
    """Follow ``link`` with absolute targets interpreted inside ``rootfs``."""
    current = link
    for _ in range(40):
        if not current.is_symlink():
            return current
        target = Path(current.readlink())
        if target.is_absolute():
            current = rootfs / target.relative_to("/")
        else:
            current = current.parent / target
    raise OSError(f"Too many levels of symbolic links: {link}")


def index_rootfs(
    rootfs: Path, output: Path, toolchain: Toolchain, *, fmt: str = "msgpack.zst"
) -> str:
    """Write the database for the firmware at ``rootfs`` under ``output``.

    Returns:
        The detected OS version; records are in ``output/<version>/``
    """
    version = read_system_version(rootfs)
    logger.info("Extracting symbols list for version %s", version)

    entries: dict[str, _Entry] = {}
    index: dict[str, str] = {}

    for libpath in library_dirs(rootfs):
        directory = rootfs / libpath
        if not directory.is_dir():
            logger.warning("%s not found", directory)
            continue
        for path in sorted(directory.iterdir()):
            if ".so" not in path.name:
                continue
            if path.is_symlink():
                try:
                    target = _resolve_in_rootfs(rootfs, path)
                except (OSError, ValueError) as e:
                    logger.debug("Skipping link %s: %s", path, e)
                    continue
                if not target.is_file():
                    continue
                canonical = target.name
            elif path.is_file():
                canonical = path.name
                entry = entries.setdefault(canonical, _Entry())
                if entry.symbols is None:
                    try:
                        entry.symbols = toolchain.defined_symbols(path)
                        entry.needed = toolchain.dynamic_section(path).needed
                    except ToolExecutionError as e:
                        logger.warning("Skipping %s: %s", path, e)
                        continue
            else:
                continue
            entry = entries.setdefault(canonical, _Entry())
            if path.name not in entry.names:
                entry.names.append(path.name)
            index[path.name] = record_filename(canonical, fmt)

    outdir = output / version
    outdir.mkdir(parents=True, exist_ok=True)
    written = 0
    for canonical, entry in entries.items():
        if entry.symbols is None:
            continue
        record = LibraryRecord(
            filename=canonical,
            names=tuple(entry.names),
            symbols=frozenset(entry.symbols),
            needed=tuple(entry.needed),
        )
        write_record_file(outdir / record_filename(canonical, fmt), record)
        written += 1
    # Aliases of libraries that could not be analyzed have no record to point at
    index = {
        name: record
        for name, record in index.items()
        if (outdir / record).is_file()
    }
    (outdir / INDEX_FILE).write_text(
        json.dumps(dict(sorted(index.items())), indent=2), encoding="utf-8"
    )
    logger.info("Wrote %d library records, %d names", written, len(index))
    return version


def register_version(output: Path, version: str) -> list[str]:
    """Add ``version`` to ``output/versions.json``, keeping it sorted."""
    path = output / VERSIONS_FILE
    versions: list[str] = []
    if path.is_file():
        versions = list(json.loads(path.read_text(encoding="utf-8")))
    if version not in versions:
        versions.append(version)
    versions.sort(key=Version)
    path.write_text(json.dumps(versions, indent=2), encoding="utf-8")
    return versions
