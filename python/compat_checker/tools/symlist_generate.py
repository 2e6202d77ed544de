#!/usr/bin/env python3
"""
Symbol database generation CLI tool.

Indexes the system libraries of an extracted firmware root filesystem into
``<output>/<version>/`` and registers the version in ``versions.json``.

Usage:
    python -m compat_checker.tools.symlist_generate -i <rootfs> -o <data dir>
"""

import argparse
import sys
from pathlib import Path

from compat_checker.binutils import Toolchain, ToolMissingError
from compat_checker.config import setup_logging
from compat_checker.indexer import index_rootfs, register_version


def main():
    parser = argparse.ArgumentParser(
        description="Generate a symbol database from a firmware root filesystem"
    )
    parser.add_argument(
        "-i", "--input", type=Path, required=True, help="Firmware root filesystem"
    )
    parser.add_argument(
        "-o", "--output", type=Path, required=True, help="Data directory to write"
    )
    parser.add_argument(
        "--format",
        choices=["json", "msgpack", "msgpack.zst"],
        default="msgpack.zst",
        help="Record file format",
    )
    parser.add_argument(
        "--no-register",
        action="store_true",
        help="Do not add the version to versions.json",
    )
    parser.add_argument("--verbose", "-v", action="store_true")
    Toolchain.configure_argparse(parser)
    args = parser.parse_args()
    setup_logging(args.verbose)

    try:
        version = index_rootfs(
            args.input, args.output, Toolchain.from_args(args), fmt=args.format
        )
    except ToolMissingError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except (OSError, ValueError) as e:
        print(f"Error: failed to read firmware file system: {e}", file=sys.stderr)
        sys.exit(1)

    if not args.no_register:
        register_version(args.output, version)
    print(f"Wrote symbol database for version {version}")


if __name__ == "__main__":
    main()
