"""Command-line interface for CADENCE.

Replays a recorded feature stream through the engine: the first N rows build
the baseline, the remaining rows are scored live.

Usage:
    cadence replay stream.csv
    cadence replay stream.parquet --baseline-samples 240 --format json
    cadence replay stream.csv --export exports --session s1 --attribute
"""

import argparse
import asyncio
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from cadence import __version__
from cadence.config import Settings
from cadence.features import FEATURE_COUNTS, MODALITIES, FeatureVector, feature_key
from cadence.pipeline import Monitor, TickOutcome
from cadence.store import HistoryStore

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=1)


def create_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser.

    Returns:
        Configured ArgumentParser with all commands and arguments.
    """
    parser = argparse.ArgumentParser(
        prog="cadence",
        description="CADENCE: single-subject behavioral telemetry engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cadence replay stream.csv
  cadence replay stream.parquet --baseline-samples 240 --format json
  cadence replay stream.csv --export exports --session s1 --attribute

Input columns: 'timestamp' plus one column per feature, named
'<modality>.<feature>' (e.g. typing.mean_dwell_ms). A modality with no
columns is treated as not collected.
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    replay_parser = subparsers.add_parser(
        "replay",
        help="Replay a recorded feature stream",
        description="Build a baseline from the leading rows and score the rest",
    )
    replay_parser.add_argument(
        "file",
        type=Path,
        help="CSV or Parquet file with one row per sample",
    )
    replay_parser.add_argument(
        "--baseline-samples",
        type=int,
        default=None,
        help="Rows used for the baseline (default: configured minimum, 200)",
    )
    replay_parser.add_argument(
        "--format",
        type=str,
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )
    replay_parser.add_argument(
        "--export",
        type=Path,
        default=None,
        help="Directory for Parquet export of histories and baseline",
    )
    replay_parser.add_argument(
        "--session",
        type=str,
        default="replay",
        help="Session name used in reports and export paths (default: replay)",
    )
    replay_parser.add_argument(
        "--attribute",
        action="store_true",
        help="Attribute the last sample's deviation to modality groups",
    )
    replay_parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace existing export files",
    )

    subparsers.add_parser(
        "version",
        help="Show version information",
    )

    return parser


def _run_async(coro):
    """Run an async coroutine from synchronous CLI context.

    Spins up a new event loop in a dedicated thread to avoid conflicts
    with any existing event loop.
    """
    def _target():
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(coro)
        finally:
            loop.close()

    future = _executor.submit(_target)
    return future.result()


def load_stream(path: Path) -> list[FeatureVector]:
    """Read a recorded stream into feature vectors.

    Args:
        path: CSV or Parquet file

    Returns:
        Vectors in file order

    Raises:
        ValueError: Missing 'timestamp' column or no known feature columns
    """
    if path.suffix.lower() in (".parquet", ".pq"):
        frame = pd.read_parquet(path)
    else:
        frame = pd.read_csv(path)

    if "timestamp" not in frame.columns:
        raise ValueError(f"{path}: missing 'timestamp' column")

    timestamps = pd.to_datetime(frame["timestamp"], utc=True)
    columns = {
        m: [feature_key(m, i) for i in range(FEATURE_COUNTS[m])] for m in MODALITIES
    }
    present = [m for m in MODALITIES if any(c in frame.columns for c in columns[m])]
    if not present:
        raise ValueError(f"{path}: no feature columns found")

    blocks = {
        m: frame.reindex(columns=columns[m]).to_numpy(dtype=float, na_value=np.nan)
        for m in present
    }
    vectors = []
    for row, ts in enumerate(timestamps):
        values = {m: tuple(blocks[m][row]) for m in present}
        vectors.append(FeatureVector(values=values, timestamp=ts.to_pydatetime()))

    logger.info("Loaded %d samples (%s) from %s", len(vectors), ", ".join(present), path)
    return vectors


async def _export(
    store: HistoryStore,
    session: str,
    monitor: Monitor,
    overwrite: bool,
) -> list[Path]:
    paths = []
    if monitor.baseline is not None:
        paths.append(await store.write_baseline(session, monitor.baseline, overwrite))
    results = monitor.similarity_history()
    if results:
        paths.append(await store.write_similarity(session, results, overwrite))
    events = monitor.drift_history()
    if events:
        paths.append(await store.write_drift(session, events, overwrite))
    return paths


def cmd_replay(args: argparse.Namespace) -> int:
    """Execute the replay command.

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success, 2 if no baseline could be built, 1 on error)
    """
    monitor: Optional[Monitor] = None
    try:
        if args.baseline_samples is not None:
            settings = Settings(baseline_min_samples=args.baseline_samples)
        else:
            settings = Settings()
        logging.getLogger().setLevel(settings.log_level)
        n_baseline = settings.baseline_min_samples

        vectors = load_stream(args.file)
        monitor = Monitor.from_settings(settings)
        monitor.start_baseline()
        for vector in vectors[:n_baseline]:
            monitor.ingest(vector)

        profile = monitor.finalize_baseline()
        if profile is None:
            reasons = "; ".join(monitor.baseline_shortfalls())
            print(f"Error: baseline not ready ({reasons})", file=sys.stderr)
            return 2

        outcomes = [monitor.ingest(vector) for vector in vectors[n_baseline:]]
        last = outcomes[-1] if outcomes else TickOutcome(timestamp=profile.created_at)
        attributions = monitor.attribute(vectors[-1]) if args.attribute else []
        report = monitor.report(last, attributions, label=args.session)

        if args.format == "json":
            payload = {
                "report": report.to_dict(),
                "events": [e.to_dict() for e in monitor.drift_history()],
                "snapshot": monitor.snapshot(attributions).model_dump(mode="json"),
                "rejected": monitor.rejected_count,
            }
            print(json.dumps(payload, indent=2))
        else:
            print(report.format_full())
            events = monitor.drift_history()
            print("")
            print(f"Drift events: {len(events)}")
            for e in events:
                print(
                    f"  {e.detected_at.isoformat()} {e.state.value} "
                    f"{e.drift_severity.value} magnitude={e.drift_magnitude:.2f}"
                )
            if monitor.rejected_count:
                print(f"Rejected samples: {monitor.rejected_count}")

        if args.export is not None:
            store = HistoryStore(base_path=args.export)
            paths = _run_async(_export(store, args.session, monitor, args.overwrite))
            logger.info("Exported %d files to %s", len(paths), args.export)

        return 0

    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.error("Replay failed: %s", e, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if monitor is not None:
            monitor.close()


def cmd_version(args: argparse.Namespace) -> int:
    """Execute the version command."""
    print(f"CADENCE v{__version__}")
    print("Single-subject behavioral telemetry engine")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command == "replay":
        return cmd_replay(args)
    elif args.command == "version":
        return cmd_version(args)
    else:
        parser.print_help()
        return 0


def cli_entry() -> None:
    """Console script entry point for setuptools."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entry()
