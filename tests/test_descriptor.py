"""Tests for binary descriptor extraction."""

from pathlib import Path

import pytest

from compat_checker.binutils import ToolExecutionError
from compat_checker.descriptor import (
    BinaryRole,
    DescriptorCache,
    extract_descriptor,
    resolve_rpath,
)


class TestResolveRpath:
    """Tests for resolve_rpath."""

    def test_origin_expanded(self, tmp_path: Path):
        binary = tmp_path / "app" / "bin" / "main"
        result = resolve_rpath(["$ORIGIN/../lib", "${ORIGIN}"], binary)
        assert result == [tmp_path / "app" / "lib", tmp_path / "app" / "bin"]

    def test_absolute_entries_dropped(self, tmp_path: Path):
        """Test that entries absolute as written are ignored."""
        binary = tmp_path / "app" / "main"
        assert resolve_rpath(["/usr/lib", "/opt/app/lib"], binary) == []

    def test_relative_to_base(self, tmp_path: Path):
        """Test that plain relative entries use the package root when given."""
        root = tmp_path / "app"
        binary = root / "bin" / "main"
        assert resolve_rpath(["lib"], binary, root) == [root / "lib"]
        assert resolve_rpath(["lib"], binary) == [root / "bin" / "lib"]

    def test_order_preserved_and_deduplicated(self, tmp_path: Path):
        binary = tmp_path / "main"
        result = resolve_rpath(["b", "a", "$ORIGIN/b", "/abs"], binary)
        assert result == [tmp_path / "b", tmp_path / "a"]


class TestExtractDescriptor:
    """Tests for extract_descriptor with canned tool output."""

    def test_main_descriptor(self, tmp_path: Path, toolchain):
        exe = toolchain.add(
            tmp_path / "app" / "main",
            needed=["libfoo.so", "libc.so.6"],
            exports=["_init", "main_hook", "_end"],
            undefined=["bar", "printf@GLIBC_2.4"],
            weak=["__gmon_start__"],
            rpath=["$ORIGIN/lib", "/usr/local/lib"],
        )
        desc = extract_descriptor(toolchain, exe, BinaryRole.MAIN)

        assert desc.name == "main"
        assert desc.role is BinaryRole.MAIN
        assert desc.important
        assert desc.needed == ("libfoo.so", "libc.so.6")
        assert desc.rpath == (tmp_path / "app" / "lib",)
        assert desc.exports == frozenset({"main_hook"})
        assert desc.undefined == ("bar", "printf@GLIBC_2.4")

    def test_library_not_important_by_default(self, tmp_path: Path, toolchain):
        lib = toolchain.add(tmp_path / "lib" / "libfoo.so", exports=["bar"])
        desc = extract_descriptor(toolchain, lib, BinaryRole.LIB)
        assert not desc.important
        assert desc.mark_important().important

    def test_tool_failure_propagates(self, tmp_path: Path, toolchain):
        lib = toolchain.add(tmp_path / "libbroken.so")
        toolchain.fail(lib)
        with pytest.raises(ToolExecutionError):
            extract_descriptor(toolchain, lib, BinaryRole.LIB)


class TestDescriptorCache:
    """Tests for DescriptorCache."""

    def test_extracted_once(self, tmp_path: Path, toolchain):
        """Test that a binary is analyzed once and reused."""
        lib = toolchain.add(tmp_path / "libfoo.so", exports=["bar"])
        cache = DescriptorCache(toolchain)
        first = cache.get(lib)
        second = cache.get(lib)
        assert first is second
        assert toolchain.extraction_count(lib) == 1

    def test_failure_cached(self, tmp_path: Path, toolchain):
        lib = toolchain.add(tmp_path / "libbroken.so")
        toolchain.fail(lib)
        cache = DescriptorCache(toolchain)
        for _ in range(2):
            with pytest.raises(ToolExecutionError):
                cache.get(lib)
        assert toolchain.extraction_count(lib) == 1

    def test_symlink_and_relative_paths_share_entry(
        self, tmp_path: Path, toolchain, monkeypatch
    ):
        """Test that every spelling of a library's path hits one cache entry."""
        lib = toolchain.add(tmp_path / "lib" / "libfoo.so.1.0", exports=["bar"])
        (tmp_path / "lib" / "libfoo.so.1").symlink_to("libfoo.so.1.0")
        monkeypatch.chdir(tmp_path)
        cache = DescriptorCache(toolchain)

        via_link = cache.get(tmp_path / "lib" / "libfoo.so.1")
        relative = cache.get(Path("lib") / "libfoo.so.1.0")

        assert via_link is relative is cache.get(lib)
        assert via_link.path == lib
        assert via_link.name == "libfoo.so.1.0"
        assert toolchain.extraction_count(lib) == 1

    def test_relative_base_resolved(self, tmp_path: Path, toolchain, monkeypatch):
        monkeypatch.chdir(tmp_path)
        exe = toolchain.add(tmp_path / "pkg" / "bin" / "app", rpath=["lib"])
        cache = DescriptorCache(toolchain, relative_base=Path("pkg"))
        assert cache.get(exe, BinaryRole.MAIN).rpath == (tmp_path / "pkg" / "lib",)
