"""
Verification of whole packages across a set of OS versions.

The Orchestrator owns the run-scoped caches (baseline stores and binary
descriptors) and a bounded thread pool. Work is dominated by binutils
subprocess calls, so threads block only while waiting on those.

A failure analyzing one binary is attached to that binary's cells. Only a
missing binutils installation aborts the run.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping

from .binutils import Toolchain, ToolExecutionError
from .descriptor import BinaryDescriptor, BinaryRole, DescriptorCache
from .package import PackageEntry, PackageLayout, walk_package
from .symbol_store import SymbolStoreCache
from .verify import VerifyResult, VerifyStatus, verify

logger = logging.getLogger(__name__)


@dataclass
class BinaryRow:
    """One binary of a package and its results per version."""

    name: str
    role: BinaryRole
    important: bool
    results: dict[str, VerifyResult] = field(default_factory=dict)

    def status(self, version: str) -> VerifyStatus:
        return self.results[version].status


@dataclass
class PackageReport:
    """Result matrix of one package entry: binaries x versions."""

    entry: PackageEntry
    versions: list[str]
    rows: list[BinaryRow] = field(default_factory=list)
    main_name: str | None = None

    def row(self, name: str) -> BinaryRow:
        for row in self.rows:
            if row.name == name:
                return row
        raise KeyError(name)

    def ordered_rows(self) -> list[BinaryRow]:
        """Important binaries first (main executable leading), then by name."""
        return sorted(
            self.rows,
            key=lambda r: (r.role is not BinaryRole.MAIN, not r.important, r.name),
        )

    def version_status(self, version: str) -> VerifyStatus:
        """Package status on ``version``.

        A failing main executable fails the package; otherwise the worst
        status across important binaries.
        """
        if self.main_name is not None:
            main_status = self.row(self.main_name).status(version)
            if main_status is VerifyStatus.FAIL:
                return VerifyStatus.FAIL
        return VerifyStatus.worst(
            row.status(version) for row in self.rows if row.important
        )

    @property
    def failed(self) -> bool:
        """True if any important binary fails on any version."""
        return any(
            row.important and row.status(v) is VerifyStatus.FAIL
            for row in self.rows
            for v in self.versions
        )


class Orchestrator:
    """Runs verification cells over a worker pool with shared caches.

    Args:
        toolchain: Binutils used for every extraction
        data_dir: Root of the per-version symbol databases
        jobs: Worker count (None lets the executor decide)
    """

    def __init__(self, toolchain: Toolchain, data_dir: Path, jobs: int | None = None):
        self.toolchain = toolchain
        self.stores = SymbolStoreCache(data_dir)
        self.jobs = jobs

    def verify_binaries(
        self,
        binaries: list[BinaryDescriptor],
        versions: list[str],
        search_dirs: Iterable[Path],
        descriptors: DescriptorCache,
        *,
        main: BinaryDescriptor | None = None,
        aliases: Mapping[str, str] | None = None,
    ) -> dict[tuple[str, str], VerifyResult]:
        """Cross product of ``binaries`` x ``versions``, keyed by (name, version)."""
        search_dirs = list(search_dirs)

        def run(binary: BinaryDescriptor, version: str) -> VerifyResult:
            return verify(
                binary,
                search_dirs,
                version,
                main if binary.role is BinaryRole.LIB else None,
                stores=self.stores,
                descriptors=descriptors,
                toolchain=self.toolchain,
                aliases=aliases,
            )

        cells = [(b, v) for b in binaries for v in versions]
        with ThreadPoolExecutor(max_workers=self.jobs) as pool:
            futures = [pool.submit(run, b, v) for b, v in cells]
            # result() re-raises ToolMissingError, which aborts the run
            return {(b.name, v): f.result() for (b, v), f in zip(cells, futures)}

    def _describe_libraries(
        self, layout: PackageLayout, descriptors: DescriptorCache
    ) -> tuple[list[BinaryDescriptor], dict[Path, ToolExecutionError]]:
        def describe(path: Path) -> BinaryDescriptor | ToolExecutionError:
            try:
                desc = descriptors.get(path, BinaryRole.LIB)
            except ToolExecutionError as e:
                logger.warning("Cannot analyze %s: %s", path, e)
                return e
            return desc.mark_important(layout.is_important(desc.name))

        with ThreadPoolExecutor(max_workers=self.jobs) as pool:
            outcomes = list(pool.map(describe, layout.libraries))

        libraries: list[BinaryDescriptor] = []
        failures: dict[Path, ToolExecutionError] = {}
        for path, outcome in zip(layout.libraries, outcomes):
            if isinstance(outcome, ToolExecutionError):
                failures[path] = outcome
            else:
                libraries.append(outcome)
        return libraries, failures

    def verify_package(self, entry: PackageEntry, versions: list[str]) -> PackageReport:
        """Verify every binary of ``entry`` against every version.

        Raises:
            MalformedPackageError: If the main executable is absent
            ToolMissingError: If binutils are not installed
        """
        report = PackageReport(entry=entry, versions=list(versions))
        descriptors = DescriptorCache(self.toolchain, relative_base=entry.root)
        try:
            layout = walk_package(entry, descriptors)
        except ToolExecutionError as e:
            # Without the main binary nothing else can be located
            logger.warning("Cannot analyze main executable %s: %s", entry.main, e)
            name = entry.main.name
            report.main_name = name
            report.rows.append(
                BinaryRow(
                    name=name,
                    role=BinaryRole.MAIN,
                    important=True,
                    results={v: VerifyResult.failed(name, v, e) for v in versions},
                )
            )
            return report

        libraries, failures = self._describe_libraries(layout, descriptors)
        binaries = [layout.main, *libraries]
        results = self.verify_binaries(
            binaries,
            versions,
            layout.search_dirs,
            descriptors,
            main=layout.main,
            aliases=layout.aliases,
        )

        report.main_name = layout.main.name
        for binary in binaries:
            report.rows.append(
                BinaryRow(
                    name=binary.name,
                    role=binary.role,
                    important=binary.important,
                    results={v: results[(binary.name, v)] for v in versions},
                )
            )
        for path, error in failures.items():
            report.rows.append(
                BinaryRow(
                    name=path.name,
                    role=BinaryRole.LIB,
                    important=layout.is_important(path.name),
                    results={
                        v: VerifyResult.failed(path.name, v, error) for v in versions
                    },
                )
            )
        return report

    def verify_files(
        self,
        files: list[Path],
        versions: list[str],
        libdirs: list[Path],
    ) -> dict[Path, dict[str, VerifyResult]]:
        """Verify standalone ELF files, each treated as a main executable."""
        descriptors = DescriptorCache(self.toolchain)
        report: dict[Path, dict[str, VerifyResult]] = {}
        binaries: list[tuple[Path, BinaryDescriptor]] = []
        for path in files:
            try:
                binaries.append((path, descriptors.get(path, BinaryRole.MAIN)))
            except ToolExecutionError as e:
                logger.warning("Cannot analyze %s: %s", path, e)
                report[path] = {
                    v: VerifyResult.failed(path.name, v, e) for v in versions
                }
        for path, binary in binaries:
            # Names may repeat across directories, so verify per file
            results = self.verify_binaries([binary], versions, libdirs, descriptors)
            report[path] = {v: results[(binary.name, v)] for v in versions}
        return {path: report[path] for path in files}
