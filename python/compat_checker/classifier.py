"""
Classification of undefined symbols against resolved symbol universes.

Each required symbol lands in exactly one bucket, checked in order:

1. direct:     exported by a declared dependency (exact name, or a bare
               request matching any version of that name)
2. no-version: a versioned request (``name@VER``) whose bare ``name`` is
               exported without version information. Baseline databases
               built from stripped images often lose symbol versions; the
               loader binds such references, but the match is unconfirmed.
3. indirect:   only exported by a library the binary does not declare but
               that gets loaded through one of its dependencies
4. missing

Buckets 2 and 3 are deliberate relaxations of strict ELF resolution and
produce warnings, not failures.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

VERSION_MARKER = "@"


class SymbolOutcome(Enum):
    OK = "ok"
    NO_VERSION = "no-version"
    INDIRECT = "indirect"
    MISSING = "missing"


def split_version(symbol: str) -> tuple[str, str | None]:
    """Split ``name@VER`` (or ``name@@VER``) into (name, VER)."""
    base, marker, version = symbol.partition(VERSION_MARKER)
    if not marker:
        return symbol, None
    return base, version.lstrip(VERSION_MARKER)


class SymbolUniverse:
    """Set of exported symbols indexed for exact and base-name lookups."""

    def __init__(self, symbols: Iterable[str]):
        self.symbols = frozenset(symbols)
        self.versioned_bases = frozenset(
            split_version(s)[0] for s in self.symbols if VERSION_MARKER in s
        )

    def __contains__(self, symbol: str) -> bool:
        return symbol in self.symbols

    def provides(self, symbol: str) -> bool:
        """Exact match, or a bare request matched by some versioned export."""
        if symbol in self.symbols:
            return True
        base, version = split_version(symbol)
        return version is None and base in self.versioned_bases

    def provides_unversioned(self, symbol: str) -> bool:
        """A versioned request whose base name is exported without a version."""
        base, version = split_version(symbol)
        return version is not None and base in self.symbols

    def provides_any(self, symbol: str) -> bool:
        """Exact or base-name match in either direction."""
        return self.provides(symbol) or self.provides_unversioned(symbol)


def classify_symbol(
    symbol: str, direct: SymbolUniverse, indirect: SymbolUniverse
) -> SymbolOutcome:
    if direct.provides(symbol):
        return SymbolOutcome.OK
    if direct.provides_unversioned(symbol):
        return SymbolOutcome.NO_VERSION
    if indirect.provides_any(symbol):
        return SymbolOutcome.INDIRECT
    return SymbolOutcome.MISSING


@dataclass
class Classification:
    """Reported (non-OK) symbols per bucket, in requirement order."""

    missing: list[str] = field(default_factory=list)
    indirect: list[str] = field(default_factory=list)
    no_version: list[str] = field(default_factory=list)

    def add(self, symbol: str, outcome: SymbolOutcome) -> None:
        if outcome is SymbolOutcome.MISSING:
            self.missing.append(symbol)
        elif outcome is SymbolOutcome.INDIRECT:
            self.indirect.append(symbol)
        elif outcome is SymbolOutcome.NO_VERSION:
            self.no_version.append(symbol)

    def reported(self) -> list[str]:
        return [*self.missing, *self.indirect, *self.no_version]


def classify_symbols(
    required: Iterable[str],
    direct_symbols: Iterable[str],
    indirect_symbols: Iterable[str],
) -> Classification:
    direct = SymbolUniverse(direct_symbols)
    indirect = SymbolUniverse(indirect_symbols)
    result = Classification()
    seen: set[str] = set()
    for symbol in required:
        if symbol in seen:
            continue
        seen.add(symbol)
        result.add(symbol, classify_symbol(symbol, direct, indirect))
    return result


def demangle_symbols(symbols: list[str], demangler) -> list[str]:
    """Demangle the name part of each symbol, keeping any version suffix.

    ``demangler`` maps a list of raw names to a list of readable names of
    the same length (Toolchain.demangle).
    """
    if not symbols:
        return []
    parts = [symbol.partition(VERSION_MARKER) for symbol in symbols]
    readable = demangler([base for base, _, _ in parts])
    if len(readable) != len(parts):
        return list(symbols)
    return [
        (name or base) + marker + version
        for name, (base, marker, version) in zip(readable, parts)
    ]
