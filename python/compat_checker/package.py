"""
Discovery of native binaries inside an unpacked application/service bundle.

An application directory carries ``appinfo.json``; a service directory
carries ``services.json``. Only native entries are checked: applications
with ``type: native`` (entry point ``main``) and services with
``engine: native`` (entry point ``executable``).

The library search set of an entry is its ``lib`` directory followed by the
relative RPATH/RUNPATH directories of the main executable. Each directory is
scanned once: symlinks are recorded as aliases, real ELF files become
library binaries.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from .descriptor import BinaryDescriptor, BinaryRole, DescriptorCache

logger = logging.getLogger(__name__)

APPINFO_FILE = "appinfo.json"
SERVICES_FILE = "services.json"
PACKAGEINFO_FILE = "packageinfo.json"

ELF_MAGIC = b"\x7fELF"


class MalformedPackageError(ValueError):
    """Raised when an unpacked bundle lacks the manifests it should carry."""

    pass


@dataclass(frozen=True)
class PackageEntry:
    """A native application or service within a bundle."""

    kind: str
    id: str
    root: Path
    main: Path
    version: str | None = None

    @property
    def label(self) -> str:
        if self.version:
            return f"{self.kind} {self.id} {self.version}"
        return f"{self.kind} {self.id}"


@dataclass
class LibraryScan:
    """Contents of the scanned library directories."""

    directories: list[Path] = field(default_factory=list)
    libraries: list[Path] = field(default_factory=list)
    aliases: dict[str, str] = field(default_factory=dict)
    skipped: list[Path] = field(default_factory=list)


@dataclass
class PackageLayout:
    """Main executable and library files of one entry.

    ``libraries`` lists real library files only; descriptors for them are
    produced by the orchestrator so that a broken library fails just its
    own cells.
    """

    entry: PackageEntry
    main: BinaryDescriptor
    search_dirs: list[Path]
    libraries: list[Path]
    aliases: dict[str, str]

    def is_important(self, name: str) -> bool:
        """Main executable, or a direct (alias-normalized) dependency of it."""
        if name == self.main.name:
            return True
        needed = {self.aliases.get(n, n) for n in self.main.needed}
        return name in needed or self.aliases.get(name, name) in needed


def _read_manifest(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise MalformedPackageError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise MalformedPackageError(f"{path} does not contain a JSON object")
    return data


def load_app(appdir: Path) -> PackageEntry | None:
    """Entry for the application in ``appdir``, or None if it is not native."""
    info = _read_manifest(appdir / APPINFO_FILE)
    app_id = info.get("id") or appdir.name
    if info.get("type") != "native":
        logger.info("Skipping non-native app %s", app_id)
        return None
    main = info.get("main")
    if not main:
        raise MalformedPackageError(f"{appdir / APPINFO_FILE} has no 'main' entry")
    return PackageEntry(
        kind="app",
        id=app_id,
        root=appdir,
        main=appdir / main,
        version=info.get("version"),
    )


def load_service(
    servicedir: Path, package_version: str | None = None
) -> PackageEntry | None:
    """Entry for the service in ``servicedir``, or None if it is not native.

    ``services.json`` carries no version, so the bundle's
    ``packageinfo.json`` version is used when known.
    """
    info = _read_manifest(servicedir / SERVICES_FILE)
    service_id = info.get("id") or servicedir.name
    if info.get("engine") != "native":
        logger.info("Skipping non-native service %s", service_id)
        return None
    executable = info.get("executable")
    if not executable:
        raise MalformedPackageError(
            f"{servicedir / SERVICES_FILE} has no 'executable' entry"
        )
    return PackageEntry(
        kind="service",
        id=service_id,
        root=servicedir,
        main=servicedir / executable,
        version=info.get("version") or package_version,
    )


def find_entries(root: Path) -> list[PackageEntry]:
    """Native applications and services anywhere below ``root``.

    Raises:
        MalformedPackageError: If the bundle has no application or service
            manifest at all, or a manifest is unreadable
    """
    app_dirs: list[Path] = []
    service_dirs: list[Path] = []
    package_version: str | None = None
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        if APPINFO_FILE in filenames:
            app_dirs.append(Path(dirpath))
        if SERVICES_FILE in filenames:
            service_dirs.append(Path(dirpath))
        if PACKAGEINFO_FILE in filenames and package_version is None:
            info = _read_manifest(Path(dirpath) / PACKAGEINFO_FILE)
            package_version = info.get("version")
    if not app_dirs and not service_dirs:
        raise MalformedPackageError(
            f"No {APPINFO_FILE} or {SERVICES_FILE} found under {root}"
        )
    entries = []
    for appdir in app_dirs:
        entry = load_app(appdir)
        if entry is not None:
            entries.append(entry)
    for servicedir in service_dirs:
        entry = load_service(servicedir, package_version)
        if entry is not None:
            entries.append(entry)
    return entries


def is_elf_file(path: Path) -> bool:
    """True if ``path`` starts with the ELF magic.

    Library directories may also hold launcher scripts or GNU ld scripts
    named like libraries. Unreadable files count as non-ELF.
    """
    try:
        with open(path, "rb") as f:
            return f.read(len(ELF_MAGIC)) == ELF_MAGIC
    except OSError:
        return False


def _resolve_link_name(path: Path) -> str | None:
    try:
        target = path.resolve(strict=True)
    except (OSError, RuntimeError):
        logger.warning("Dangling or looping symlink %s", path)
        return None
    return target.name


def scan_library_dirs(directories: list[Path]) -> LibraryScan:
    """Scan each directory once, classifying entries as aliases or libraries."""
    scan = LibraryScan()
    for directory in directories:
        if directory in scan.directories:
            continue
        scan.directories.append(directory)
        if not directory.is_dir():
            logger.debug("Library directory %s does not exist", directory)
            continue
        logger.debug("Scanning %s", directory)
        for path in sorted(directory.iterdir()):
            if path.is_symlink():
                target = _resolve_link_name(path)
                if target is not None:
                    scan.aliases.setdefault(path.name, target)
            elif path.is_file():
                if any(p.name == path.name for p in scan.libraries):
                    # Shadowed by an earlier directory in search order
                    logger.debug("Ignoring shadowed library %s", path)
                elif is_elf_file(path):
                    scan.libraries.append(path)
                else:
                    logger.warning("Skipping non-ELF file %s", path)
                    scan.skipped.append(path)
    return scan


def walk_package(entry: PackageEntry, descriptors: DescriptorCache) -> PackageLayout:
    """Locate the main binary and library search set of ``entry``.

    Raises:
        MalformedPackageError: If the main executable does not exist
        ToolMissingError: If binutils are not installed
        ToolExecutionError: If the main executable cannot be analyzed
    """
    if not entry.main.is_file():
        raise MalformedPackageError(
            f"Main executable {entry.main} of {entry.label} does not exist"
        )
    main = descriptors.get(entry.main, BinaryRole.MAIN)
    search_dirs = [entry.root.resolve() / "lib"]
    for directory in main.rpath:
        if directory not in search_dirs:
            search_dirs.append(directory)
    scan = scan_library_dirs(search_dirs)
    libraries = [p for p in scan.libraries if p.resolve() != main.path]
    return PackageLayout(
        entry=entry,
        main=main.mark_important(),
        search_dirs=search_dirs,
        libraries=libraries,
        aliases=scan.aliases,
    )
