"""Tests for package-level verification across versions."""

import os
from pathlib import Path

import pytest

from compat_checker.binutils import ToolMissingError
from compat_checker.descriptor import BinaryRole
from compat_checker.orchestrator import BinaryRow, Orchestrator, PackageReport
from compat_checker.package import MalformedPackageError, load_app
from compat_checker.verify import VerifyResult, VerifyStatus
from compat_test_utils import write_store

VERSIONS = ["1.0.0", "2.0.0"]


@pytest.fixture
def databases(data_dir: Path) -> Path:
    write_store(
        data_dir,
        "1.0.0",
        {"libc.so.6": {"symbols": ["printf@GLIBC_2.4", "malloc@GLIBC_2.4"]}},
    )
    write_store(
        data_dir,
        "2.0.0",
        {
            "libc.so.6": {"symbols": ["printf@GLIBC_2.4", "malloc@GLIBC_2.4"]},
            "libpng16.so.16": {"symbols": ["png_read"], "aliases": ["libpng16.so"]},
        },
    )
    return data_dir


@pytest.fixture
def orchestrator(toolchain, databases) -> Orchestrator:
    return Orchestrator(toolchain, databases, jobs=4)


class TestVerifyPackage:
    """Tests for whole-package verification."""

    def test_matrix(self, orchestrator, toolchain, app_root):
        toolchain.add(
            app_root / "app",
            needed=["libpng16.so", "libutil.so", "libc.so.6"],
            undefined=["png_read", "util_run", "printf"],
            exports=["app_hook"],
        )
        toolchain.add(
            app_root / "lib" / "libutil.so",
            needed=["libc.so.6"],
            exports=["util_run"],
            undefined=["malloc@GLIBC_2.4", "app_hook"],
        )
        toolchain.add(
            app_root / "lib" / "libextra.so",
            undefined=["frobnicate"],
        )

        report = orchestrator.verify_package(load_app(app_root), VERSIONS)

        assert report.main_name == "app"
        assert [r.name for r in report.ordered_rows()] == [
            "app",
            "libutil.so",
            "libextra.so",
        ]
        assert report.row("app").status("1.0.0") is VerifyStatus.FAIL
        assert report.row("app").results["1.0.0"].missing_libraries == (
            "libpng16.so",
        )
        assert report.row("app").status("2.0.0") is VerifyStatus.OK
        assert report.row("libutil.so").important
        assert report.row("libutil.so").status("1.0.0") is VerifyStatus.OK
        assert not report.row("libextra.so").important
        assert report.row("libextra.so").status("2.0.0") is VerifyStatus.FAIL

        assert report.version_status("1.0.0") is VerifyStatus.FAIL
        # Unimportant failures do not fail the package
        assert report.version_status("2.0.0") is VerifyStatus.OK
        assert report.failed

    def test_each_binary_extracted_once(self, orchestrator, toolchain, app_root):
        exe = toolchain.add(app_root / "app", needed=["libutil.so"])
        lib = toolchain.add(app_root / "lib" / "libutil.so")
        orchestrator.verify_package(load_app(app_root), VERSIONS)
        assert toolchain.extraction_count(exe) == 1
        assert toolchain.extraction_count(lib) == 1

    def test_symlinked_dependency_resolves_locally(
        self, orchestrator, toolchain, app_root
    ):
        toolchain.add(app_root / "app", needed=["libutil.so"], undefined=["util_run"])
        toolchain.add(app_root / "lib" / "libutil.so.2", exports=["util_run"])
        os.symlink("libutil.so.2", app_root / "lib" / "libutil.so")

        report = orchestrator.verify_package(load_app(app_root), VERSIONS)
        assert [r.name for r in report.ordered_rows()] == ["app", "libutil.so.2"]
        assert report.row("libutil.so.2").important
        assert not report.failed

    def test_relative_package_root(
        self, orchestrator, toolchain, app_root, tmp_path, monkeypatch
    ):
        """Libraries reached through an alias are analyzed once per run."""
        toolchain.add(app_root / "app", needed=["libfoo.so.1"], undefined=["foo"])
        lib = toolchain.add(app_root / "lib" / "libfoo.so.1.0", exports=["foo"])
        os.symlink("libfoo.so.1.0", app_root / "lib" / "libfoo.so.1")
        monkeypatch.chdir(tmp_path)

        report = orchestrator.verify_package(
            load_app(app_root.relative_to(tmp_path)), VERSIONS
        )

        assert [r.name for r in report.ordered_rows()] == ["app", "libfoo.so.1.0"]
        assert report.row("app").status("1.0.0") is VerifyStatus.OK
        assert toolchain.extraction_count(lib) == 1
        assert not report.failed

    def test_broken_main_fails_package(self, orchestrator, toolchain, app_root):
        toolchain.add(app_root / "app")
        toolchain.fail(app_root / "app")
        report = orchestrator.verify_package(load_app(app_root), VERSIONS)
        assert [r.name for r in report.rows] == ["app"]
        assert all(
            report.version_status(v) is VerifyStatus.FAIL for v in VERSIONS
        )

    def test_broken_library_fails_its_own_row(self, orchestrator, toolchain, app_root):
        toolchain.add(app_root / "app")
        toolchain.add(app_root / "lib" / "libbad.so")
        toolchain.fail(app_root / "lib" / "libbad.so")
        report = orchestrator.verify_package(load_app(app_root), VERSIONS)
        assert report.row("app").status("1.0.0") is VerifyStatus.OK
        assert report.row("libbad.so").status("1.0.0") is VerifyStatus.FAIL
        assert report.row("libbad.so").results["1.0.0"].error
        assert not report.failed

    def test_missing_version_fails_every_cell(self, orchestrator, toolchain, app_root):
        toolchain.add(app_root / "app")
        report = orchestrator.verify_package(load_app(app_root), ["1.0.0", "7.0.0"])
        assert report.row("app").status("1.0.0") is VerifyStatus.OK
        assert report.row("app").status("7.0.0") is VerifyStatus.FAIL

    @pytest.mark.parametrize(
        "damaged, content",
        [
            ("index.json", b"{not json"),
            ("index.json", b'["libc.so.6"]'),
            ("libc.so.6.json", b"\x89garbage"),
        ],
    )
    def test_unreadable_database_fails_only_its_version(
        self, orchestrator, toolchain, app_root, databases, damaged, content
    ):
        """A damaged database fails only the cells of its own version."""
        toolchain.add(app_root / "app", needed=["libc.so.6"], undefined=["printf"])
        (databases / "2.0.0" / damaged).write_bytes(content)

        report = orchestrator.verify_package(load_app(app_root), VERSIONS)

        assert report.row("app").status("1.0.0") is VerifyStatus.OK
        assert report.row("app").status("2.0.0") is VerifyStatus.FAIL
        assert "Corrupt symbol database" in report.row("app").results["2.0.0"].error
        assert report.failed

    def test_missing_main(self, orchestrator, app_root):
        with pytest.raises(MalformedPackageError):
            orchestrator.verify_package(load_app(app_root), VERSIONS)

    def test_tool_missing_aborts(self, orchestrator, toolchain, app_root, monkeypatch):
        toolchain.add(app_root / "app")

        def missing(path):
            raise ToolMissingError("nm not found")

        monkeypatch.setattr(toolchain, "defined_symbols", missing)
        with pytest.raises(ToolMissingError):
            orchestrator.verify_package(load_app(app_root), VERSIONS)


class TestVerifyFiles:
    def test_standalone_files(self, orchestrator, toolchain, tmp_path):
        libdir = tmp_path / "libs"
        toolchain.add(libdir / "libutil.so", exports=["util_run"])
        good = toolchain.add(
            tmp_path / "bin" / "good", needed=["libutil.so"], undefined=["util_run"]
        )
        bad = toolchain.add(tmp_path / "bin" / "bad", needed=["libnothere.so"])
        broken = toolchain.add(tmp_path / "bin" / "broken")
        toolchain.fail(broken)

        results = orchestrator.verify_files([good, bad, broken], VERSIONS, [libdir])

        assert list(results) == [good, bad, broken]
        assert all(results[good][v].status is VerifyStatus.OK for v in VERSIONS)
        assert results[bad]["2.0.0"].missing_libraries == ("libnothere.so",)
        assert results[broken]["1.0.0"].error


class TestPackageReport:
    def _row(self, name, role, important, status_by_version):
        results = {}
        for version, status in status_by_version.items():
            if status is VerifyStatus.FAIL:
                results[version] = VerifyResult.failed(name, version, "x")
            elif status is VerifyStatus.WARN:
                results[version] = VerifyResult(
                    name, version, indirect_references=("s",)
                )
            else:
                results[version] = VerifyResult(name, version)
        return BinaryRow(name, role, important, results)

    def test_version_status_takes_worst_important(self, app_root):
        report = PackageReport(
            entry=load_app(app_root),
            versions=["1"],
            main_name="app",
            rows=[
                self._row("app", BinaryRole.MAIN, True, {"1": VerifyStatus.OK}),
                self._row("liba.so", BinaryRole.LIB, True, {"1": VerifyStatus.WARN}),
                self._row("libz.so", BinaryRole.LIB, False, {"1": VerifyStatus.FAIL}),
            ],
        )
        assert report.version_status("1") is VerifyStatus.WARN
        assert not report.failed

    def test_ordered_rows(self, app_root):
        ok = {"1": VerifyStatus.OK}
        report = PackageReport(
            entry=load_app(app_root),
            versions=["1"],
            rows=[
                self._row("libz.so", BinaryRole.LIB, False, ok),
                self._row("libb.so", BinaryRole.LIB, True, ok),
                self._row("app", BinaryRole.MAIN, True, ok),
                self._row("liba.so", BinaryRole.LIB, False, ok),
            ],
        )
        assert [r.name for r in report.ordered_rows()] == [
            "app",
            "libb.so",
            "liba.so",
            "libz.so",
        ]

    def test_row_lookup(self, app_root):
        report = PackageReport(entry=load_app(app_root), versions=[])
        with pytest.raises(KeyError):
            report.row("nope")
