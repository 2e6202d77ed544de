"""
Structural fact sheets for ELF binaries.

A BinaryDescriptor records what the dynamic loader needs from a binary
(NEEDED libraries, search paths, undefined symbols) and what the binary
provides to others (exported symbols). Descriptors are built once per file
and shared by every version the file is checked against.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from .binutils import Toolchain
from .cache import SingleFlightCache

logger = logging.getLogger(__name__)

ORIGIN_TOKENS = ("${ORIGIN}", "$ORIGIN")


class BinaryRole(Enum):
    """Role of a binary within its package."""

    MAIN = "main"
    LIB = "lib"


@dataclass(frozen=True)
class BinaryDescriptor:
    """Immutable facts extracted from one ELF file."""

    name: str
    path: Path
    role: BinaryRole
    rpath: tuple[Path, ...] = ()
    needed: tuple[str, ...] = ()
    exports: frozenset[str] = field(default_factory=frozenset)
    undefined: tuple[str, ...] = ()
    important: bool = False

    def mark_important(self, important: bool = True) -> "BinaryDescriptor":
        return replace(self, important=important)


def resolve_rpath(
    entries: list[str], binary_path: Path, relative_base: Path | None = None
) -> list[Path]:
    """Resolve raw RPATH/RUNPATH entries to directories.

    ``$ORIGIN`` expands to the directory holding the binary. Entries that are
    absolute as written point into the build machine or the target's system
    directories and are dropped. Other relative entries are taken relative
    to ``relative_base`` (the package root) or, without one, the binary's
    directory.

    Args:
        entries: Raw entries in declaration order
        binary_path: Path of the binary declaring them
        relative_base: Directory plain relative entries are resolved against

    Returns:
        Ordered, de-duplicated directories
    """
    origin = binary_path.parent
    base = relative_base if relative_base is not None else origin
    result: list[Path] = []
    for entry in entries:
        if entry.startswith("/"):
            logger.debug("Dropping absolute rpath entry %s of %s", entry, binary_path)
            continue
        expanded = entry
        for token in ORIGIN_TOKENS:
            if token in expanded:
                expanded = expanded.replace(token, str(origin))
        directory = Path(expanded)
        if not directory.is_absolute():
            directory = base / directory
        directory = Path(os.path.normpath(directory))
        if directory not in result:
            result.append(directory)
    return result


def extract_descriptor(
    toolchain: Toolchain,
    path: Path,
    role: BinaryRole,
    *,
    relative_base: Path | None = None,
) -> BinaryDescriptor:
    """Run the binutils queries on ``path`` and build its descriptor.

    Raises:
        ToolMissingError: If nm or objdump cannot be found
        ToolExecutionError: If a tool fails on this file
    """
    dynamic = toolchain.dynamic_section(path)
    exports = toolchain.defined_symbols(path)
    undefined = toolchain.undefined_symbols(path)
    rpath = resolve_rpath(dynamic.search_paths, path, relative_base)
    logger.debug(
        "%s: %d needed, %d rpath dirs, %d exports, %d undefined",
        path.name,
        len(dynamic.needed),
        len(rpath),
        len(exports),
        len(undefined),
    )
    return BinaryDescriptor(
        name=path.name,
        path=path,
        role=role,
        rpath=tuple(rpath),
        needed=tuple(dynamic.needed),
        exports=frozenset(exports),
        undefined=tuple(undefined),
        important=role is BinaryRole.MAIN,
    )


class DescriptorCache:
    """Run-scoped descriptor memo keyed by (real path, role).

    Paths are resolved before lookup, so a library reached through a
    symlink or a relative path is still extracted only once. The cached
    descriptor carries the resolved path.
    """

    def __init__(self, toolchain: Toolchain, relative_base: Path | None = None):
        self.toolchain = toolchain
        self.relative_base = (
            relative_base.resolve() if relative_base is not None else None
        )
        self._cache: SingleFlightCache[tuple[Path, BinaryRole], BinaryDescriptor] = (
            SingleFlightCache(self._load)
        )

    def _load(self, key: tuple[Path, BinaryRole]) -> BinaryDescriptor:
        path, role = key
        return extract_descriptor(
            self.toolchain, path, role, relative_base=self.relative_base
        )

    def get(self, path: Path, role: BinaryRole = BinaryRole.LIB) -> BinaryDescriptor:
        return self._cache.get((path.resolve(), role))
