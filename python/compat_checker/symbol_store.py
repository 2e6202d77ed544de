"""
Per-OS-version databases of system library exports.

Layout of a data directory::

    <data>/versions.json              ordered list of version strings
    <data>/<version>/index.json       library filename -> record file
    <data>/<version>/<record file>    {names, symbols, needed}

Every alias of a library (symlink names such as ``libfoo.so.1``) appears in
the index and points at the same record file. Record files are JSON,
MessagePack, or zstd-compressed MessagePack, selected by file suffix.

Stores are read-only once loaded. SymbolStoreCache owns the stores for one
run and loads each version at most once, even under concurrent first access.
"""

import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path

import msgpack
import zstandard as zstd
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from .cache import SingleFlightCache

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "COMPAT_CHECKER_DATA"
INDEX_FILE = "index.json"
VERSIONS_FILE = "versions.json"

RECORD_SUFFIXES = (".json", ".msgpack", ".msgpack.zst")


class DataStoreMissingError(FileNotFoundError):
    """Raised when no symbol database exists for a requested OS version."""

    def __init__(self, version: str, path: Path):
        self.version = version
        self.path = path
        super().__init__(f"No symbol database for version {version} at {path}")


class DataStoreCorruptError(ValueError):
    """Raised when an index or record file of a version cannot be decoded."""

    def __init__(self, version: str, path: Path, reason: str):
        self.version = version
        self.path = path
        super().__init__(
            f"Corrupt symbol database for version {version} at {path}: {reason}"
        )


class NoVersionsAvailableError(ValueError):
    """Raised when version filters leave nothing to check."""

    pass


@dataclass(frozen=True)
class LibraryRecord:
    """Exports and dependencies of one system library."""

    filename: str
    names: tuple[str, ...]
    symbols: frozenset[str]
    needed: tuple[str, ...]

    @classmethod
    def from_dict(cls, filename: str, data: dict) -> "LibraryRecord":
        return cls(
            filename=filename,
            names=tuple(data.get("names") or ()),
            symbols=frozenset(data.get("symbols") or ()),
            needed=tuple(data.get("needed") or ()),
        )

    def to_dict(self) -> dict:
        return {
            "names": list(self.names),
            "symbols": sorted(self.symbols),
            "needed": list(self.needed),
        }


def record_filename(library: str, fmt: str) -> str:
    """Record file name for a canonical library filename in format ``fmt``."""
    suffix = {"json": ".json", "msgpack": ".msgpack", "msgpack.zst": ".msgpack.zst"}
    if fmt not in suffix:
        raise ValueError(f"Unknown record format: {fmt}")
    return f"{library}{suffix[fmt]}"


def _split_record_name(record: str) -> tuple[str, str]:
    for suffix in sorted(RECORD_SUFFIXES, key=len, reverse=True):
        if record.endswith(suffix):
            return record[: -len(suffix)], suffix
    raise ValueError(f"Unsupported record file type: {record}")


def read_record_file(path: Path) -> dict:
    """Decode a record file according to its suffix."""
    _, suffix = _split_record_name(path.name)
    data = path.read_bytes()
    if suffix == ".json":
        return json.loads(data.decode("utf-8"))
    if suffix == ".msgpack.zst":
        data = zstd.ZstdDecompressor().decompress(data)
    return msgpack.unpackb(data, raw=False)


def write_record_file(path: Path, record: LibraryRecord) -> None:
    """Encode ``record`` into ``path`` according to its suffix."""
    _, suffix = _split_record_name(path.name)
    if suffix == ".json":
        path.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
        return
    data = msgpack.packb(record.to_dict(), use_bin_type=True)
    if suffix == ".msgpack.zst":
        data = zstd.ZstdCompressor().compress(data)
    path.write_bytes(data)


class VersionSymbolStore:
    """Read-only view of one version's library database.

    The index is read on construction. Record files are decoded on first
    query and kept; callers only ever observe the immutable records.
    """

    def __init__(self, version: str, root: Path, index: dict[str, str]):
        self.version = version
        self.root = root
        self._index = dict(index)
        self._records: dict[str, LibraryRecord] = {}
        self._lock = threading.Lock()

    @classmethod
    def load(cls, data_dir: Path, version: str) -> "VersionSymbolStore":
        """Load the index of ``version`` from ``data_dir``.

        Raises:
            DataStoreMissingError: If the version has no index file
            DataStoreCorruptError: If the index is not a JSON object
        """
        root = data_dir / version
        index_path = root / INDEX_FILE
        if not index_path.is_file():
            raise DataStoreMissingError(version, index_path)
        try:
            index = json.loads(index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise DataStoreCorruptError(version, index_path, str(e)) from e
        if not isinstance(index, dict):
            raise DataStoreCorruptError(
                version, index_path, "index is not a JSON object"
            )
        logger.debug("Loaded index for %s: %d library names", version, len(index))
        return cls(version, root, index)

    def __contains__(self, name: str) -> bool:
        return self.is_known(name)

    def is_known(self, name: str) -> bool:
        return name in self._index

    def names(self) -> list[str]:
        return sorted(self._index)

    def record(self, name: str) -> LibraryRecord | None:
        """Record for library ``name`` (canonical or alias), or None.

        Raises:
            DataStoreCorruptError: If the record file cannot be decoded
        """
        record_file = self._index.get(name)
        if record_file is None:
            return None
        with self._lock:
            cached = self._records.get(record_file)
        if cached is not None:
            return cached
        path = self.root / str(record_file)
        try:
            filename, _ = _split_record_name(record_file)
        except (TypeError, ValueError) as e:
            raise DataStoreCorruptError(self.version, path, str(e)) from e
        if path.is_file():
            record = self._decode_record(filename, path)
        else:
            # Aliases of libraries whose analysis failed during indexing
            logger.debug("%s: record %s missing, treating as empty", name, path)
            record = LibraryRecord(filename, (name,), frozenset(), ())
        with self._lock:
            return self._records.setdefault(record_file, record)

    def _decode_record(self, filename: str, path: Path) -> LibraryRecord:
        try:
            data = read_record_file(path)
            if isinstance(data, dict):
                return LibraryRecord.from_dict(filename, data)
            reason = f"expected an object, got {type(data).__name__}"
        except (OSError, TypeError, ValueError, zstd.ZstdError) as e:
            raise DataStoreCorruptError(self.version, path, str(e)) from e
        raise DataStoreCorruptError(self.version, path, reason)

    def canonical_name(self, name: str) -> str:
        """Canonical filename for ``name``, or ``name`` itself when unknown."""
        record = self.record(name)
        return record.filename if record is not None else name

    def symbols_of(self, name: str) -> frozenset[str]:
        record = self.record(name)
        return record.symbols if record is not None else frozenset()

    def needed_of(self, name: str) -> tuple[str, ...]:
        record = self.record(name)
        return record.needed if record is not None else ()


class SymbolStoreCache:
    """Stores for one run, loaded lazily and at most once per version."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self._cache: SingleFlightCache[str, VersionSymbolStore] = SingleFlightCache(
            lambda version: VersionSymbolStore.load(self.data_dir, version)
        )

    def get(self, version: str) -> VersionSymbolStore:
        return self._cache.get(version)

    def __contains__(self, version: str) -> bool:
        return version in self._cache


def default_data_dir() -> Path:
    return Path(os.environ.get(DATA_DIR_ENV, "data"))


def list_versions(data_dir: Path) -> list[str]:
    """Versions recorded in ``<data_dir>/versions.json``.

    Falls back to the version subdirectories holding an index when the
    versions file is absent.
    """
    versions_path = data_dir / VERSIONS_FILE
    if versions_path.is_file():
        return list(json.loads(versions_path.read_text(encoding="utf-8")))
    if not data_dir.is_dir():
        raise DataStoreMissingError("*", data_dir)
    found = []
    for p in data_dir.iterdir():
        if not (p / INDEX_FILE).is_file():
            continue
        try:
            found.append((Version(p.name), p.name))
        except InvalidVersion:
            logger.debug("Ignoring non-version directory %s", p)
    return [name for _, name in sorted(found)]


# One range term: optional operator, then a dotted version that may end in
# an x/* wildcard ("^5.0.0", "~4.1", ">= 4.0", "4.x", "*")
_RANGE_OPERATOR = r"(\^|~>?|>=|<=|>|<|==?)"
_RANGE_TERM = re.compile(_RANGE_OPERATOR + r"?v?([0-9]+(?:\.[0-9xX*]+)*|[xX*])")
_HYPHEN_RANGE = re.compile(r"^\s*v?([0-9][0-9.]*)\s+-\s+v?([0-9][0-9.]*)\s*$")


def _release(version: str) -> list[int]:
    return list(Version(version).release)


def _format(parts: list[int]) -> str:
    return ".".join(str(p) for p in parts)


def _term_specifiers(op: str | None, version: str) -> list[str]:
    parts = version.split(".")
    wildcard = next((i for i, p in enumerate(parts) if p in ("x", "X", "*")), None)
    if wildcard is not None:
        # "4.x" and "4.1.*" are prefix matches; "*" alone matches everything
        parts = parts[:wildcard]
        if op not in (None, "=", "=="):
            raise InvalidSpecifier(f"{op}{version}")
        return [f"=={'.'.join(parts)}.*"] if parts else []
    if op == "^":
        release = _release(version)
        while len(release) < 3:
            release.append(0)
        # Bump the first non-zero component (or the last one if all are zero)
        index = next((i for i, p in enumerate(release) if p), len(release) - 1)
        upper = release[:index] + [release[index] + 1]
        return [f">={version}", f"<{_format(upper)}"]
    if op in ("~", "~>"):
        release = _release(version)
        if len(release) == 1:
            upper = [release[0] + 1]
        else:
            upper = [release[0], release[1] + 1]
        return [f">={version}", f"<{_format(upper)}"]
    if op in (None, "=", "=="):
        if len(version.split(".")) < 3:
            # A partial version names the whole series ("4.1" is 4.1.x)
            return [f"=={version}.*"]
        return [f"=={version}"]
    return [f"{op}{version}"]


def parse_version_range(requirements: str) -> list[SpecifierSet]:
    """Translate a semver-style range into alternatives of specifier sets.

    Accepts ``||`` alternatives, each a space or comma separated list of
    terms (``>=4.0 <6``, ``^5.0.0``, ``~4.1``, ``4.x``, ``5.1.0``) or a
    hyphen range (``4.0 - 5.5``). A version satisfies the range when it is
    contained in any of the returned sets.

    Raises:
        ValueError: If the range cannot be parsed
    """
    alternatives = []
    for alternative in requirements.split("||"):
        m = _HYPHEN_RANGE.match(alternative)
        if m is not None:
            alternatives.append(SpecifierSet(f">={m.group(1)},<={m.group(2)}"))
            continue
        specifiers: list[str] = []
        # ">= 4.0" is one term
        text = re.sub(_RANGE_OPERATOR + r"\s+", r"\1", alternative)
        for token in re.split(r"[\s,]+", text.strip()):
            if not token:
                continue
            term = _RANGE_TERM.fullmatch(token)
            if term is None:
                raise ValueError(f"Invalid version range term: {token!r}")
            try:
                specifiers.extend(_term_specifiers(term.group(1), term.group(2)))
            except (InvalidSpecifier, InvalidVersion) as e:
                raise ValueError(f"Invalid version range term: {token!r}") from e
        try:
            alternatives.append(SpecifierSet(",".join(specifiers)))
        except InvalidSpecifier as e:
            raise ValueError(f"Invalid version range: {alternative!r}") from e
    return alternatives


def select_versions(
    versions: list[str],
    *,
    min_os: str | None = None,
    max_os: str | None = None,
    max_os_exclusive: str | None = None,
    os_requirements: str | None = None,
) -> list[str]:
    """Filter ``versions`` by bounds or a semver-style range.

    ``os_requirements`` (e.g. ``">=4.0 <6"`` or ``"^5.0.0 || 6.x"``) takes
    precedence over the individual bounds.

    Raises:
        NoVersionsAvailableError: If nothing remains
        ValueError: If a version or the range cannot be parsed
    """
    if os_requirements:
        ranges = parse_version_range(os_requirements)
        selected = [
            v
            for v in versions
            if any(r.contains(Version(v), prereleases=True) for r in ranges)
        ]
    else:
        lower = Version(min_os) if min_os else None
        upper = Version(max_os) if max_os else None
        upper_exclusive = Version(max_os_exclusive) if max_os_exclusive else None
        selected = []
        for v in versions:
            version = Version(v)
            if lower is not None and version < lower:
                continue
            if upper is not None and version > upper:
                continue
            if upper_exclusive is not None and version >= upper_exclusive:
                continue
            selected.append(v)
    if not selected:
        raise NoVersionsAvailableError("No version available")
    return selected
