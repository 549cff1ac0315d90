"""CLI command for extracting embedded web-app bundles."""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from .config import BundleExtractorConfig
from .errors import ArchiveError, ContainerError
from .pipeline import PLATFORMS, BundleExtractor
from webbundle_dump.common import BundleDumpError, ConfigLoader, setup_logging

# Application name derived from the top-level package name
_package = __package__ or "webbundle_dump.bundle_extractor"
APP_NAME = _package.split('.')[0].replace('_', '-')

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 3


def progress_callback(logger: logging.Logger, current: int, total: int, name: str) -> None:
    """Log extraction progress.

    Args:
        logger: Logger instance
        current: Current entry number (1-based)
        total: Total number of entries
        name: Path of current entry
    """
    percent = (current / total) * 100 if total > 0 else 0
    logger.debug(f"Entry {current}/{total} ({percent:.1f}%): {name}")
    if current == total:
        logger.info(f"Processed {total} entries")


def extract_command(
    config: BundleExtractorConfig,
    input_override: Optional[Path] = None,
    output_override: Optional[Path] = None,
    arch_override: Optional[str] = None,
    platform_override: Optional[str] = None,
    asset_table_override: Optional[bool] = None,
    verify_override: Optional[bool] = None,
    workers_override: Optional[int] = None,
    fail_on_partial_override: Optional[bool] = None,
) -> int:
    """Extract the embedded bundle of one executable.

    Args:
        config: Configuration object
        input_override: Optional override for the input executable
        output_override: Optional override for the output directory
        arch_override: Optional override for the fat Mach-O slice
        platform_override: Optional override for the expected platform
        asset_table_override: Optional override for the asset-table fallback
        verify_override: Optional override for write verification
        workers_override: Optional override for writer threads
        fail_on_partial_override: Optional override for partial-success exit code

    Returns:
        Exit code (0 for success or partial success, 1 for fatal errors,
        3 for partial success when fail_on_partial is set)
    """
    # Use __package__ to avoid __main__ when run as module
    logger_name = __package__ or __name__
    logger = logging.getLogger(logger_name)

    extraction = config.extraction
    input_path = input_override if input_override else extraction.input_path
    output_dir = output_override if output_override else Path(extraction.output_dir)
    arch_hint = arch_override if arch_override else extraction.arch_hint
    platform = platform_override if platform_override else extraction.platform
    asset_table = asset_table_override if asset_table_override is not None else extraction.asset_table_fallback
    verify = verify_override if verify_override is not None else extraction.verify_written
    workers = workers_override if workers_override else extraction.write_workers
    fail_on_partial = (fail_on_partial_override if fail_on_partial_override is not None
                       else extraction.fail_on_partial)

    if not input_path:
        logger.error("No input executable given (use --input or extraction.input_path)")
        return EXIT_FATAL
    input_path = Path(input_path)
    if not input_path.is_file():
        logger.error(f"Input file does not exist: {input_path}")
        return EXIT_FATAL

    try:
        extractor = BundleExtractor(
            input_path=input_path,
            output_dir=output_dir,
            arch_hint=arch_hint,
            platform=platform,
            asset_table_fallback=asset_table,
            max_entry_size=extraction.max_entry_size,
            verify_written=verify,
            write_workers=workers,
        )
        summary = extractor.run(
            progress_callback=lambda c, t, n: progress_callback(logger, c, t, n)
        )
    except (ContainerError, ArchiveError) as e:
        logger.error(f"Extraction failed: {e.message}")
        for key, value in e.context.items():
            logger.debug(f"  {key}: {value}")
        return EXIT_FATAL
    except BundleDumpError as e:
        logger.error(f"Extraction failed: {e.message}")
        return EXIT_FATAL
    except Exception as e:
        logger.exception(f"Extraction failed: {e}")
        return EXIT_FATAL

    if summary.status == "partial":
        logger.warning(f"{len(summary.failed)} of {len(summary.results)} entries failed")
        return EXIT_PARTIAL if fail_on_partial else EXIT_OK
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Extract the embedded web-app resource archive from an executable"
    )
    parser.add_argument(
        "--input",
        type=Path,
        required=False,
        help="Executable to extract from (overrides config)"
    )
    parser.add_argument(
        "--output",
        type=Path,
        required=False,
        help="Directory to extract files into (overrides config)"
    )
    parser.add_argument(
        "--arch",
        help="Architecture slice for fat Mach-O files, e.g. arm64 or x86_64"
    )
    parser.add_argument(
        "--platform",
        choices=PLATFORMS,
        help="Expected target platform of the executable"
    )
    parser.add_argument(
        "--asset-table",
        action="store_true",
        help="Fall back to scanning for an asset table when no archive is found"
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Verify each written file with CRC32"
    )
    parser.add_argument(
        "--workers",
        type=int,
        help="Number of threads writing files"
    )
    parser.add_argument(
        "--fail-on-partial",
        action="store_true",
        help=f"Exit with code {EXIT_PARTIAL} when some entries could not be extracted"
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (defaults.toml)"
    )
    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the extract command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be at least 1")

    # Load config
    loader = ConfigLoader(
        app_name=APP_NAME,
        config_class=BundleExtractorConfig
    )

    config = loader.load(defaults_path=args.config)

    # Setup logging with config values
    setup_logging(
        level=config.logging.level,
        format=config.logging.format,
        log_file=Path(config.logging.file) if config.logging.file else None,
    )

    return extract_command(
        config=config,
        input_override=args.input,
        output_override=args.output,
        arch_override=args.arch,
        platform_override=args.platform,
        asset_table_override=True if args.asset_table else None,
        verify_override=True if args.verify else None,
        workers_override=args.workers,
        fail_on_partial_override=True if args.fail_on_partial else None,
    )


if __name__ == "__main__":
    sys.exit(main())
