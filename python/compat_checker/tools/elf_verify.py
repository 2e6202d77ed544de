#!/usr/bin/env python3
"""
ELF compatibility CLI tool.

Checks standalone ELF files against every selected OS version, listing
missing libraries and symbols.

Usage:
    python -m compat_checker.tools.elf_verify <binary> [...] [--libdirs DIR ...]
"""

import argparse
import sys
from pathlib import Path

from compat_checker.binutils import ToolMissingError
from compat_checker.config import RunConfig, setup_logging
from compat_checker.orchestrator import Orchestrator
from compat_checker.report import Printer, print_result_details
from compat_checker.symbol_store import DataStoreMissingError, NoVersionsAvailableError
from compat_checker.verify import VerifyStatus


def verify_elf_files(
    config: RunConfig, files: list[Path], libdirs: list[Path], printer: Printer
) -> int:
    """Verify ``files`` and print per-version results, returning the exit code."""
    orchestrator = Orchestrator(config.toolchain, config.data_dir, config.jobs)
    results = orchestrator.verify_files(files, config.versions, libdirs)

    exit_code = 0
    for version in config.versions:
        printer.heading(f"On version {version}", 2)
        for path, per_version in results.items():
            result = per_version[version]
            printer.body(f"File {path.name}: {result.status.value}")
            print_result_details(printer, result)
            if result.status is VerifyStatus.FAIL:
                exit_code = 1
    return exit_code


def main():
    parser = argparse.ArgumentParser(
        description="Check ELF binaries against OS firmware baselines"
    )
    parser.add_argument("files", type=Path, nargs="+", help="ELF binaries to verify")
    parser.add_argument(
        "--libdirs",
        "-l",
        type=Path,
        nargs="+",
        default=[],
        help="Extra library paths",
    )
    parser.add_argument(
        "--markdown",
        "-m",
        action="store_true",
        help="Print validation result in Markdown format",
    )
    RunConfig.configure_argparse(parser)
    args = parser.parse_args()
    setup_logging(args.verbose)

    for f in args.files:
        if not f.is_file():
            print(f"Error: {f} does not exist", file=sys.stderr)
            sys.exit(2)

    try:
        config = RunConfig.from_args(args)
    except (DataStoreMissingError, NoVersionsAvailableError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        exit_code = verify_elf_files(
            config, args.files, args.libdirs, Printer(markdown=args.markdown)
        )
    except ToolMissingError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
