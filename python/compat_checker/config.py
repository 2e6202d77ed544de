"""
Command line configuration shared by the tools.
"""

import argparse
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .binutils import Toolchain
from .symbol_store import DATA_DIR_ENV, default_data_dir, list_versions, select_versions


@dataclass
class RunConfig:
    """Settings for one verification run."""

    toolchain: Toolchain
    data_dir: Path
    versions: list[str]
    jobs: int | None = None
    verbose: bool = False

    @staticmethod
    def configure_argparse(p: argparse.ArgumentParser):
        p.add_argument(
            "--data-dir",
            type=Path,
            default=None,
            help=f"Symbol database directory (default: ${DATA_DIR_ENV} or ./data)",
        )
        p.add_argument("--min-os", dest="min_os", help="Lowest OS version to check")
        p.add_argument("--max-os", dest="max_os", help="Highest OS version to check")
        p.add_argument(
            "--max-os-exclusive",
            dest="max_os_exclusive",
            help="Check OS versions below this one",
        )
        p.add_argument(
            "--os",
            dest="os_requirements",
            help="Version comparators that must all hold, e.g. '>=4.0 <6'",
        )
        p.add_argument(
            "--jobs",
            "-j",
            type=int,
            default=os.cpu_count(),
            help="Number of parallel workers",
        )
        p.add_argument(
            "--verbose",
            "-v",
            action="store_true",
            help="Show debug logging",
        )
        Toolchain.configure_argparse(p)

    @staticmethod
    def from_args(args: argparse.Namespace) -> "RunConfig":
        """Build the config, resolving the version list from the data directory.

        Raises:
            DataStoreMissingError: If the data directory does not exist
            NoVersionsAvailableError: If the filters leave no versions
        """
        data_dir = args.data_dir or default_data_dir()
        versions = select_versions(
            list_versions(data_dir),
            min_os=args.min_os,
            max_os=args.max_os,
            max_os_exclusive=args.max_os_exclusive,
            os_requirements=args.os_requirements,
        )
        return RunConfig(
            toolchain=Toolchain.from_args(args),
            data_dir=data_dir,
            versions=versions,
            jobs=args.jobs,
            verbose=args.verbose,
        )


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
