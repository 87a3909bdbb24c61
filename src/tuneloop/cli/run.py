"""Pipeline run command."""

from __future__ import annotations

import argparse
import asyncio
import signal
from pathlib import Path

from ..logging_config import get_logger
from ._utils import load_pipeline_config

logger = get_logger(__name__)


async def _replay_events(pipeline, path: Path) -> int:
    from ..events import DomainEvent
    from ..storage import iter_jsonl

    count = 0
    for record in iter_jsonl(path):
        try:
            event = DomainEvent.from_dict(record)
        except (KeyError, ValueError) as e:
            logger.warning(f"Skipping unreadable event in {path}: {e}")
            continue
        await pipeline.publish(event)
        count += 1
    await pipeline.drain()
    return count


async def _run(args: argparse.Namespace) -> int:
    from ..pipeline import Pipeline

    events_path = Path(args.events).expanduser() if args.events else None
    if events_path is not None and not events_path.exists():
        print(f"Events file not found: {events_path}")
        return 1

    try:
        pipeline = Pipeline(load_pipeline_config(args))
    except RuntimeError as e:
        print(f"Error: {e}")
        return 1

    if events_path is not None:
        count = await _replay_events(pipeline, events_path)
        print(f"Replayed {count} events from {events_path}")
        if args.once:
            await pipeline.stop()
            return 0

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.request_stop)
        except NotImplementedError:
            pass

    print(f"Pipeline running (data dir: {pipeline.data_dir}). Ctrl+C to stop.")
    await pipeline.run_forever()
    return 0


def run_command(args: argparse.Namespace) -> int:
    """Run the pipeline until interrupted."""
    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("\nStopped")
        return 0


def status_command(args: argparse.Namespace) -> int:
    from ._utils import open_pipeline, print_json

    print_json(open_pipeline(args).get_status())
    return 0


def register_parsers(subparsers: argparse._SubParsersAction) -> None:
    """Register run/status command parsers."""
    run_parser = subparsers.add_parser("run", help="Run the improvement pipeline.")
    run_parser.add_argument(
        "--events",
        help="JSONL file of domain events to publish before running.",
    )
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Exit after publishing --events instead of running timers.",
    )
    run_parser.set_defaults(func=run_command)

    status_parser = subparsers.add_parser("status", help="Show persisted pipeline state.")
    status_parser.set_defaults(func=status_command)
