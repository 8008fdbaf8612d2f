"""
Command-line interface for bad-channel quality control.

Usage:
    python -m chanqc --input data/sub-01_eeg.set \\
        --config configs/chanqc.yml \\
        --output derivatives/chanqc
"""

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

import mne

from chanqc import __version__
from chanqc.config import QCConfig
from chanqc.dataset import Dataset
from chanqc.pipeline import apply_to_raw, run_quality_control

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Argument parser of the chanqc command."""
    parser = argparse.ArgumentParser(
        prog="chanqc",
        description="Detect bad EEG channels (flatline, noise, variance, correlation, Hurst)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the default detectors and print the summary
  python -m chanqc --input data/sub-01_eeg.fif

  # Run detectors from a YAML file and save TSV/JSON reports
  python -m chanqc --input data/sub-01_eeg.set \\
      --config configs/chanqc.yml --output derivatives/chanqc

  # Also write the recording with bad channels marked
  python -m chanqc --input data/sub-01_eeg.fif --output out --save-raw
        """,
    )
    parser.add_argument(
        "--input",
        type=Path,
        required=True,
        help="Recording in any format readable by mne.io.read_raw",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML quality-control configuration (uses defaults if not provided)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Output directory for reports (overrides output_dir of the config)",
    )
    parser.add_argument(
        "--save-raw",
        action="store_true",
        help="Write the recording with the configured action applied (requires --output)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"chanqc {__version__}",
        help="Show version and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Run quality control on one recording; exits 0 on success, 1 on failure."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if args.verbose:
        logger.debug("Verbose logging enabled")

    if not args.input.exists():
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)
    if args.save_raw and args.output is None:
        logger.error("--save-raw requires --output")
        sys.exit(1)

    try:
        if args.config:
            logger.info(f"Loading configuration from: {args.config}")
            config = QCConfig.from_yaml(args.config)
        else:
            logger.info("Using default configuration")
            config = QCConfig.default()
        if args.output is not None:
            config = replace(config, output_dir=args.output)

        logger.info(f"Reading recording: {args.input}")
        raw = mne.io.read_raw(args.input, preload=True, verbose=False)
        dataset = Dataset.from_raw(raw)

        report = run_quality_control(dataset, config)

        logger.info("=" * 70)
        logger.info("BAD-CHANNEL SUMMARY")
        logger.info("=" * 70)
        for name, count in report.summary.items():
            logger.info(f"  {name}: {count}")
        logger.info(f"  Bad channels: {', '.join(report.bad_labels) or 'none'}")
        if report.rank_after_removal is not None:
            logger.info(f"  Rank after removal: {report.rank_after_removal.rank}")
        logger.info("=" * 70)

        if args.save_raw:
            cleaned = apply_to_raw(raw, report)
            out_path = args.output / f"{args.input.stem}_chanqc_raw.fif"
            cleaned.save(out_path, overwrite=True, verbose=False)
            logger.info(f"Saved recording to {out_path}")

    except Exception as e:
        logger.error(f"Quality control failed: {e}", exc_info=True)
        sys.exit(1)

    sys.exit(0)
