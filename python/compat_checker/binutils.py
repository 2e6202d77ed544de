"""
Wrappers around the binutils programs used to inspect ELF files.

Three queries are made per binary file:

- ``nm --dynamic --extern-only --defined-only``: exported dynamic symbols
- ``objdump -p``: NEEDED libraries and RPATH/RUNPATH entries
- ``nm --dynamic --extern-only --undefined-only``: undefined references

The text output of each is parsed with a strict line grammar. A line that
does not fit the grammar raises ToolOutputError instead of being dropped.
"""

import argparse
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0

# Linker-provided section boundary and init/fini markers present in every
# shared object. They are not part of any library's ABI.
IGNORED_SYMBOLS = frozenset(
    {
        "__bss_end__",
        "_bss_end__",
        "__bss_start",
        "__bss_start__",
        "__end__",
        "_end",
        "_fini",
        "_init",
        "_edata",
    }
)

# "<address> <type> <name>"
_DEFINED_LINE = re.compile(r"^([0-9a-fA-F]+)\s+([A-Za-z])\s+(\S+)$")
# "U <name>" or weak "w <name>" / "v <name>"
_UNDEFINED_LINE = re.compile(r"^([Uwv])\s+(\S+)$")
# "TAG value" inside the objdump "Dynamic Section:" block
_DYNAMIC_LINE = re.compile(r"^([A-Z][A-Z0-9_]*)\s+(.+)$")

_NM_NOTICES = ("no symbols",)


class ToolMissingError(OSError):
    """Raised when an analysis executable cannot be found."""

    pass


class ToolExecutionError(RuntimeError):
    """Raised when a tool ran but failed (non-zero exit or timeout)."""

    def __init__(self, tool: str, returncode: int | None, output: str, path: Path):
        self.tool = tool
        self.returncode = returncode
        self.output = output
        self.path = path
        if returncode is None:
            summary = f"{tool} timed out on {path}"
        else:
            summary = f"{tool} failed on {path} (exit code {returncode})"
        if output.strip():
            summary = f"{summary}: {output.strip()}"
        super().__init__(summary)


class ToolOutputError(ToolExecutionError):
    """Raised when tool output contains a line outside the expected grammar."""

    def __init__(self, tool: str, line: str, path: Path):
        self.line = line
        super().__init__(tool, 0, f"unrecognized output line {line!r}", path)


@dataclass
class DynamicSection:
    """NEEDED and search path entries parsed from ``objdump -p``."""

    needed: list[str] = field(default_factory=list)
    rpath: list[str] = field(default_factory=list)
    runpath: list[str] = field(default_factory=list)

    @property
    def search_paths(self) -> list[str]:
        """RUNPATH entries followed by RPATH entries, in declaration order."""
        return [*self.runpath, *self.rpath]


def parse_defined_symbols(text: str, path: Path, tool: str = "nm") -> list[str]:
    """Parse ``nm --defined-only`` output into exported symbol names.

    Default version markers (``@@``) are folded into ``@`` so that
    ``foo@@V1`` and ``foo@V1`` compare equal.
    """
    symbols = []
    for line in text.splitlines():
        line = line.strip()
        if not line or any(n in line for n in _NM_NOTICES):
            continue
        m = _DEFINED_LINE.match(line)
        if m is None:
            raise ToolOutputError(tool, line, path)
        name = m.group(3).replace("@@", "@")
        if name in IGNORED_SYMBOLS:
            continue
        symbols.append(name)
    return symbols


def parse_undefined_symbols(text: str, path: Path, tool: str = "nm") -> list[str]:
    """Parse ``nm --undefined-only`` output into required symbol names.

    Weak references (``w``/``v``) are recognized but not returned; the
    loader does not require them to be satisfied.
    """
    symbols = []
    for line in text.splitlines():
        line = line.strip()
        if not line or any(n in line for n in _NM_NOTICES):
            continue
        m = _UNDEFINED_LINE.match(line)
        if m is None:
            raise ToolOutputError(tool, line, path)
        if m.group(1) == "U":
            symbols.append(m.group(2))
    return symbols


def parse_dynamic_section(
    text: str, path: Path, tool: str = "objdump"
) -> DynamicSection:
    """Parse the ``Dynamic Section:`` block of ``objdump -p`` output.

    Only that block is held to the ``TAG value`` grammar. The rest of the
    private headers output (program headers, version references) is skipped.
    """
    result = DynamicSection()
    in_dynamic = False
    for raw in text.splitlines():
        line = raw.strip()
        if line == "Dynamic Section:":
            in_dynamic = True
            continue
        if not in_dynamic:
            continue
        if not line:
            # Blank line terminates the block
            break
        m = _DYNAMIC_LINE.match(line)
        if m is None:
            raise ToolOutputError(tool, line, path)
        tag, value = m.group(1), m.group(2).strip()
        if tag in ("NEEDED", "RPATH", "RUNPATH") and len(value.split()) != 1:
            raise ToolOutputError(tool, line, path)
        if tag == "NEEDED":
            result.needed.append(value)
        elif tag == "RPATH":
            result.rpath.extend(p for p in value.split(":") if p)
        elif tag == "RUNPATH":
            result.runpath.extend(p for p in value.split(":") if p)
    return result


class Toolchain:
    """Manages configuration of the binutils locations.

    Tools are lazily found and cached on first access, so construction never fails.
    Only when a specific tool is accessed will it be searched for and validated.
    """

    def __init__(
        self,
        *,
        nm: Path | None = None,
        objdump: Path | None = None,
        cxxfilt: Path | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
    ):
        # Store explicit paths (may be None)
        self._nm_path = nm
        self._objdump_path = objdump
        self._cxxfilt_path = cxxfilt
        self.timeout = timeout

        # Cached resolved paths
        self._nm_cached: Path | None = None
        self._objdump_cached: Path | None = None
        self._cxxfilt_cached: Path | None = None

    @staticmethod
    def configure_argparse(p: argparse.ArgumentParser):
        p.add_argument("--nm", type=Path, help="Path to nm")
        p.add_argument("--objdump", type=Path, help="Path to objdump")
        p.add_argument("--cxxfilt", type=Path, help="Path to c++filt")
        p.add_argument(
            "--tool-timeout",
            type=float,
            default=DEFAULT_TIMEOUT,
            help="Seconds to wait for each binutils invocation",
        )

    @staticmethod
    def from_args(args: argparse.Namespace) -> "Toolchain":
        return Toolchain(
            nm=args.nm,
            objdump=args.objdump,
            cxxfilt=args.cxxfilt,
            timeout=args.tool_timeout,
        )

    def _validate_or_find_with_fallback(
        self,
        tool_file_name: str,
        fallback_name: str,
        explicit_path: Path | None,
    ) -> Path:
        """Find a tool, trying fallback name if primary not found.

        Args:
            tool_file_name: Primary tool name (e.g., "objdump")
            fallback_name: Fallback tool name (e.g., "llvm-objdump")
            explicit_path: Explicit path if provided by user

        Returns:
            Path to found tool

        Raises:
            ToolMissingError: If neither tool can be found
        """
        if explicit_path is not None:
            if not explicit_path.exists():
                raise ToolMissingError(
                    f"Tool '{tool_file_name}' at path {explicit_path} does not exist"
                )
            return explicit_path

        found_path = shutil.which(tool_file_name)
        if found_path is not None:
            return Path(found_path)

        found_path = shutil.which(fallback_name)
        if found_path is not None:
            return Path(found_path)

        raise ToolMissingError(
            f"Could not find tool '{tool_file_name}' or '{fallback_name}' on system path. "
            f"Install binutils or pass --{tool_file_name.replace('+', 'x')}."
        )

    @property
    def nm(self) -> Path:
        """Get nm path (lazy, cached)."""
        if self._nm_cached is None:
            self._nm_cached = self._validate_or_find_with_fallback(
                "nm", "llvm-nm", self._nm_path
            )
        return self._nm_cached

    @property
    def objdump(self) -> Path:
        """Get objdump path (lazy, cached)."""
        if self._objdump_cached is None:
            self._objdump_cached = self._validate_or_find_with_fallback(
                "objdump", "llvm-objdump", self._objdump_path
            )
        return self._objdump_cached

    @property
    def cxxfilt(self) -> Path:
        """Get c++filt path (lazy, cached)."""
        if self._cxxfilt_cached is None:
            self._cxxfilt_cached = self._validate_or_find_with_fallback(
                "c++filt", "llvm-cxxfilt", self._cxxfilt_path
            )
        return self._cxxfilt_cached

    def exec_capture_text(
        self, args: list[str | Path], *, path: Path, input: str | None = None
    ) -> str:
        """Run a tool and return its stdout.

        ``input`` is written to the tool's stdin when given.

        Raises:
            ToolMissingError: If the executable vanished between lookup and exec
            ToolExecutionError: On non-zero exit or timeout
        """
        cmd = [str(a) for a in args]
        tool = Path(cmd[0]).name
        logger.debug("exec: %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                input=input,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise ToolMissingError(f"Could not execute '{cmd[0]}': {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ToolExecutionError(tool, None, "", path) from e
        if proc.returncode != 0:
            raise ToolExecutionError(tool, proc.returncode, proc.stderr, path)
        return proc.stdout

    def defined_symbols(self, path: Path) -> list[str]:
        """List exported dynamic symbols of an ELF file."""
        text = self.exec_capture_text(
            [self.nm, "--dynamic", "--extern-only", "--defined-only", path], path=path
        )
        return parse_defined_symbols(text, path)

    def undefined_symbols(self, path: Path) -> list[str]:
        """List undefined (required) dynamic symbols of an ELF file."""
        text = self.exec_capture_text(
            [self.nm, "--dynamic", "--extern-only", "--undefined-only", path],
            path=path,
        )
        return parse_undefined_symbols(text, path)

    def dynamic_section(self, path: Path) -> DynamicSection:
        """List NEEDED libraries and search path entries of an ELF file."""
        text = self.exec_capture_text([self.objdump, "-p", path], path=path)
        return parse_dynamic_section(text, path)

    def demangle(self, names: list[str]) -> list[str]:
        """Demangle C++ symbol names with c++filt.

        Demangling is best effort. If c++filt is missing or fails, the raw
        names are returned unchanged.
        """
        if not names:
            return []
        try:
            text = self.exec_capture_text(
                [self.cxxfilt], path=Path(names[0]), input="\n".join(names) + "\n"
            )
        except (ToolMissingError, ToolExecutionError) as e:
            logger.warning("Demangling unavailable, using raw names: %s", e)
            return list(names)
        lines = text.splitlines()
        if len(lines) != len(names):
            logger.warning(
                "c++filt returned %d lines for %d names, using raw names",
                len(lines),
                len(names),
            )
            return list(names)
        return [line.strip() or raw for line, raw in zip(lines, names)]
