"""
Library resolution for one binary against one OS version.

Each NEEDED library is satisfied locally (a file found in the search
directories), through the version's baseline store, or not at all. The
exports of satisfied libraries form the direct symbol universe. Exports of
libraries that are only pulled in transitively (a dependency of a needed
library that the binary does not declare itself) form the indirect universe.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping

from .binutils import ToolExecutionError
from .descriptor import BinaryDescriptor, BinaryRole, DescriptorCache
from .symbol_store import VersionSymbolStore

logger = logging.getLogger(__name__)


class Satisfaction(Enum):
    """How a library dependency is satisfied."""

    LOCAL = "local"
    BASELINE = "baseline"
    MISSING = "missing"


def _dedupe(paths: Iterable[Path]) -> tuple[Path, ...]:
    seen: list[Path] = []
    for p in paths:
        if p not in seen:
            seen.append(p)
    return tuple(seen)


@dataclass(frozen=True)
class SearchContext:
    """Directories searched for package-local libraries.

    ``aliases`` maps symlink names found while scanning the directories to
    the filename of the real file they resolve to.
    """

    directories: tuple[Path, ...]
    aliases: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def for_binary(
        cls,
        binary: BinaryDescriptor,
        search_dirs: Iterable[Path],
        aliases: Mapping[str, str] | None = None,
    ) -> "SearchContext":
        """Explicit search dirs followed by the binary's rpath, de-duplicated."""
        return cls(_dedupe([*search_dirs, *binary.rpath]), dict(aliases or {}))

    def canonical_name(self, name: str) -> str:
        return self.aliases.get(name, name)

    def locate(self, name: str) -> Path | None:
        """Path of the real file satisfying ``name``, or None."""
        candidates = [name]
        target = self.aliases.get(name)
        if target is not None and target != name:
            candidates.append(target)
        for directory in self.directories:
            for candidate in candidates:
                path = directory / candidate
                if path.is_symlink():
                    resolved = path.resolve()
                    if resolved.is_file():
                        return resolved
                elif path.is_file():
                    return path
        return None


@dataclass(frozen=True)
class ResolvedLibrary:
    """Outcome of resolving one library name."""

    name: str
    satisfaction: Satisfaction
    canonical: str
    path: Path | None = None
    exports: frozenset[str] = field(default_factory=frozenset)
    needed: tuple[str, ...] = ()

    @property
    def satisfied(self) -> bool:
        return self.satisfaction is not Satisfaction.MISSING


@dataclass(frozen=True)
class Resolution:
    """Libraries and symbol universes for one (binary, version) cell."""

    libraries: tuple[ResolvedLibrary, ...]
    direct_symbols: frozenset[str]
    indirect_symbols: frozenset[str]
    indirect_libraries: tuple[ResolvedLibrary, ...] = ()

    @property
    def required_libraries(self) -> list[str]:
        return [lib.name for lib in self.libraries]

    @property
    def missing_libraries(self) -> list[str]:
        return [lib.name for lib in self.libraries if not lib.satisfied]


class LibraryResolver:
    """Resolves library names against local directories and a baseline store.

    Args:
        store: Baseline database of the version being checked
        descriptors: Run-scoped descriptor cache for local libraries
        context: Search directories and scanned aliases
        main: The package's main executable, if any. Libraries may resolve
            symbols back into their host executable.
    """

    def __init__(
        self,
        store: VersionSymbolStore,
        descriptors: DescriptorCache,
        context: SearchContext,
        main: BinaryDescriptor | None = None,
    ):
        self.store = store
        self.descriptors = descriptors
        self.context = context
        self.main = main

    def resolve_library(self, name: str) -> ResolvedLibrary:
        """Resolve one library name, preferring a package-local file."""
        path = self.context.locate(name)
        if path is not None:
            desc = self.descriptors.get(path, BinaryRole.LIB)
            logger.debug("%s: satisfied locally by %s", name, path)
            return ResolvedLibrary(
                name=name,
                satisfaction=Satisfaction.LOCAL,
                canonical=path.name,
                path=path,
                exports=desc.exports,
                needed=desc.needed,
            )
        record = self.store.record(name)
        if record is not None:
            logger.debug("%s: satisfied by %s baseline", name, self.store.version)
            return ResolvedLibrary(
                name=name,
                satisfaction=Satisfaction.BASELINE,
                canonical=record.filename,
                exports=record.symbols,
                needed=record.needed,
            )
        logger.debug("%s: not found on %s", name, self.store.version)
        return ResolvedLibrary(
            name=name,
            satisfaction=Satisfaction.MISSING,
            canonical=self.context.canonical_name(name),
        )

    def _declared_names(self, libraries: Iterable[ResolvedLibrary]) -> set[str]:
        names: set[str] = set()
        for lib in libraries:
            names.update(
                (
                    lib.name,
                    lib.canonical,
                    self.context.canonical_name(lib.name),
                    self.store.canonical_name(lib.name),
                )
            )
        return names

    def resolve(self, binary: BinaryDescriptor) -> Resolution:
        """Resolve every NEEDED library of ``binary`` and build its universes."""
        libraries = tuple(self.resolve_library(name) for name in binary.needed)

        direct: set[str] = set()
        for lib in libraries:
            direct.update(lib.exports)
        if (
            binary.role is BinaryRole.LIB
            and self.main is not None
            and self.main.path != binary.path
        ):
            direct.update(self.main.exports)

        declared = self._declared_names(libraries)
        indirect_libs: list[ResolvedLibrary] = []
        visited: set[str] = set()
        for lib in libraries:
            for dep in lib.needed:
                if dep in declared or dep in visited:
                    continue
                visited.add(dep)
                try:
                    resolved = self.resolve_library(dep)
                except ToolExecutionError as e:
                    # Only direct dependencies must be analyzable
                    logger.warning(
                        "Ignoring indirect dependency %s of %s: %s", dep, lib.name, e
                    )
                    continue
                if resolved.canonical in declared or not resolved.satisfied:
                    continue
                indirect_libs.append(resolved)

        indirect: set[str] = set()
        for lib in indirect_libs:
            indirect.update(lib.exports)

        return Resolution(
            libraries=libraries,
            direct_symbols=frozenset(direct),
            indirect_symbols=frozenset(indirect),
            indirect_libraries=tuple(indirect_libs),
        )
