"""
Verification of one binary against one OS version.

verify() is a pure function of its inputs plus reads of the run's caches,
so independent (binary, version) cells can be evaluated concurrently.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping

from .binutils import Toolchain, ToolExecutionError
from .classifier import classify_symbols, demangle_symbols
from .descriptor import BinaryDescriptor, DescriptorCache
from .resolver import LibraryResolver, SearchContext
from .symbol_store import (
    DataStoreCorruptError,
    DataStoreMissingError,
    SymbolStoreCache,
)

logger = logging.getLogger(__name__)


class VerifyStatus(Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def worst(cls, statuses: Iterable["VerifyStatus"]) -> "VerifyStatus":
        return max(statuses, key=lambda s: s.severity, default=cls.OK)


_SEVERITY = {VerifyStatus.OK: 0, VerifyStatus.WARN: 1, VerifyStatus.FAIL: 2}


@dataclass(frozen=True)
class VerifyResult:
    """Result of verifying one binary on one OS version.

    Symbol lists hold demangled names. ``error`` is set when the cell could
    not be evaluated (tool failure, missing database); such cells fail.
    """

    binary: str
    version: str
    required_libraries: tuple[str, ...] = ()
    missing_libraries: tuple[str, ...] = ()
    missing_references: tuple[str, ...] = ()
    indirect_references: tuple[str, ...] = ()
    no_version_references: tuple[str, ...] = ()
    error: str | None = None

    @property
    def status(self) -> VerifyStatus:
        if self.error is not None or self.missing_libraries or self.missing_references:
            return VerifyStatus.FAIL
        if self.indirect_references or self.no_version_references:
            return VerifyStatus.WARN
        return VerifyStatus.OK

    @property
    def passed(self) -> bool:
        return self.status is not VerifyStatus.FAIL

    @classmethod
    def failed(
        cls, binary: str, version: str, error: BaseException | str
    ) -> "VerifyResult":
        return cls(binary=binary, version=version, error=str(error))

    def __str__(self) -> str:
        """Human-readable summary."""
        lines = [f"{self.binary} on {self.version}: {self.status.value}"]
        if self.error is not None:
            lines.append(f"  Error: {self.error}")
        sections = [
            ("Missing library", self.missing_libraries),
            ("Missing symbol", self.missing_references),
            ("No version info", self.no_version_references),
            ("Indirectly referencing", self.indirect_references),
        ]
        for label, items in sections:
            for item in items:
                lines.append(f"  {label}: {item}")
        return "\n".join(lines)


def verify(
    binary: BinaryDescriptor,
    search_dirs: Iterable[Path],
    version: str,
    main: BinaryDescriptor | None = None,
    *,
    stores: SymbolStoreCache,
    descriptors: DescriptorCache,
    toolchain: Toolchain,
    aliases: Mapping[str, str] | None = None,
) -> VerifyResult:
    """Verify ``binary`` against the baseline of ``version``.

    Args:
        binary: Descriptor of the binary under test
        search_dirs: Explicit library directories (the binary's rpath is
            appended to these)
        version: OS version key into ``stores``
        main: The package's main executable, when ``binary`` is a library
        stores: Run-scoped baseline stores
        descriptors: Run-scoped descriptor cache for local libraries
        toolchain: Binutils used for local libraries and demangling
        aliases: Symlink aliases discovered while scanning ``search_dirs``

    Returns:
        VerifyResult. Tool failures and a missing or unreadable database
        are recorded in ``error`` rather than raised.

    Raises:
        ToolMissingError: If a required binutils program is not installed
    """
    try:
        store = stores.get(version)
        context = SearchContext.for_binary(binary, search_dirs, aliases)
        resolution = LibraryResolver(store, descriptors, context, main).resolve(binary)
    except (ToolExecutionError, DataStoreMissingError, DataStoreCorruptError) as e:
        logger.debug("%s on %s: %s", binary.name, version, e)
        return VerifyResult.failed(binary.name, version, e)

    classification = classify_symbols(
        binary.undefined, resolution.direct_symbols, resolution.indirect_symbols
    )
    reported = demangle_symbols(classification.reported(), toolchain.demangle)
    n_missing = len(classification.missing)
    n_indirect = len(classification.indirect)
    return VerifyResult(
        binary=binary.name,
        version=version,
        required_libraries=tuple(resolution.required_libraries),
        missing_libraries=tuple(resolution.missing_libraries),
        missing_references=tuple(reported[:n_missing]),
        indirect_references=tuple(reported[n_missing : n_missing + n_indirect]),
        no_version_references=tuple(reported[n_missing + n_indirect :]),
    )
