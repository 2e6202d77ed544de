"""
compat-checker: native binary compatibility checks against OS firmware baselines.

Given the ELF binaries of an application or service package, this package
decides for each target OS version whether every NEEDED library and every
undefined symbol can be satisfied, without access to a device:

    from compat_checker import Orchestrator, Toolchain, find_entries

    orchestrator = Orchestrator(Toolchain(), Path("data"))
    for entry in find_entries(unpacked_root):
        report = orchestrator.verify_package(entry, ["4.0.0", "6.3.1"])

Symbol databases are produced offline from firmware images with
``compat_checker.indexer`` (``compat-symlist-generate``).
"""

from .binutils import (
    Toolchain,
    ToolMissingError,
    ToolExecutionError,
    ToolOutputError,
)
from .descriptor import BinaryDescriptor, BinaryRole, extract_descriptor
from .symbol_store import (
    LibraryRecord,
    VersionSymbolStore,
    SymbolStoreCache,
    DataStoreCorruptError,
    DataStoreMissingError,
    NoVersionsAvailableError,
)
from .resolver import LibraryResolver, SearchContext, Satisfaction
from .classifier import SymbolOutcome, classify_symbols
from .verify import VerifyResult, VerifyStatus, verify
from .package import MalformedPackageError, PackageEntry, find_entries, walk_package
from .orchestrator import Orchestrator, PackageReport

__all__ = [
    # Binutils
    "Toolchain",
    "ToolMissingError",
    "ToolExecutionError",
    "ToolOutputError",
    # Descriptors
    "BinaryDescriptor",
    "BinaryRole",
    "extract_descriptor",
    # Baseline stores
    "LibraryRecord",
    "VersionSymbolStore",
    "SymbolStoreCache",
    "DataStoreCorruptError",
    "DataStoreMissingError",
    "NoVersionsAvailableError",
    # Resolution and classification
    "LibraryResolver",
    "SearchContext",
    "Satisfaction",
    "SymbolOutcome",
    "classify_symbols",
    "VerifyResult",
    "VerifyStatus",
    "verify",
    # Packages
    "MalformedPackageError",
    "PackageEntry",
    "find_entries",
    "walk_package",
    "Orchestrator",
    "PackageReport",
]
