#!/usr/bin/env python3
"""
Package compatibility CLI tool.

Unpacks each package, finds its native applications and services, and
prints a status matrix of every binary against every selected OS version.

Usage:
    python -m compat_checker.tools.ipk_verify <package.ipk|dir> [...] [--markdown]
"""

import argparse
import sys
import tempfile
from pathlib import Path

from compat_checker.binutils import ToolMissingError
from compat_checker.config import RunConfig, setup_logging
from compat_checker.ipk import ArchiveFormatError, extract_ipk
from compat_checker.orchestrator import Orchestrator
from compat_checker.package import MalformedPackageError, find_entries
from compat_checker.report import Printer, print_package_report, print_package_summary
from compat_checker.symbol_store import DataStoreMissingError, NoVersionsAvailableError


def verify_packages(
    config: RunConfig,
    packages: list[Path],
    printer: Printer,
    *,
    details: bool = False,
    summary: bool = False,
) -> int:
    """Verify each package, returning the process exit code.

    Raises:
        ToolMissingError: If binutils are not installed
    """
    orchestrator = Orchestrator(config.toolchain, config.data_dir, config.jobs)
    exit_code = 0
    with tempfile.TemporaryDirectory(prefix="compat-checker-") as tmp:
        for n, package in enumerate(packages):
            printer.heading(f"Package {package.name}", 1)
            try:
                if package.is_dir():
                    root = package
                else:
                    root = extract_ipk(package, Path(tmp) / str(n)).root
                entries = find_entries(root)
            except (ArchiveFormatError, MalformedPackageError, OSError) as e:
                printer.body(f"Error: {e}", style="bold red")
                exit_code = 1
                continue

            if not entries:
                printer.body("No native applications or services found")
                continue

            for entry in entries:
                try:
                    report = orchestrator.verify_package(entry, config.versions)
                except MalformedPackageError as e:
                    printer.body(f"Error: {e}", style="bold red")
                    exit_code = 1
                    continue
                if summary:
                    print_package_summary(printer, report)
                else:
                    print_package_report(printer, report, details=details)
                if report.failed:
                    exit_code = 1
    return exit_code


def main():
    parser = argparse.ArgumentParser(
        description="Check native binaries in packages against OS firmware baselines"
    )
    parser.add_argument(
        "packages", type=Path, nargs="+", help="Package files or unpacked directories"
    )
    parser.add_argument(
        "--markdown",
        "-m",
        action="store_true",
        help="Print validation result in Markdown format, useful for automation",
    )
    parser.add_argument(
        "--details",
        "-d",
        action="store_true",
        help="List missing libraries and symbols per version",
    )
    parser.add_argument(
        "--summary",
        "-s",
        action="store_true",
        help="Print one status line per package instead of the full matrix",
    )
    RunConfig.configure_argparse(parser)
    args = parser.parse_args()
    setup_logging(args.verbose)

    try:
        config = RunConfig.from_args(args)
    except (DataStoreMissingError, NoVersionsAvailableError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    printer = Printer(markdown=args.markdown)
    try:
        exit_code = verify_packages(
            config, args.packages, printer, details=args.details, summary=args.summary
        )
    except ToolMissingError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
