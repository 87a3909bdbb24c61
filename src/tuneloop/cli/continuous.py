"""Continuous fine-tuning CLI commands: status, trigger."""

from __future__ import annotations

import argparse
import asyncio

from ._utils import open_pipeline, open_writable_pipeline, print_json, send_to_running


def continuous_status_command(args: argparse.Namespace) -> int:
    stats = open_pipeline(args).continuous.get_statistics()
    if args.json:
        print_json(stats)
        return 0

    print(f"Enabled: {stats['enabled']}")
    print(f"Updates completed: {stats['total_updates']}")
    print(f"Current model: {stats['current_model']}")
    if stats["update_in_progress"]:
        print("Update in progress")
    print(f"Last update: {stats['last_update_time'] or 'never'}")
    print(f"Replay buffer: {stats['replay_buffer_size']} examples")
    print(f"Learning rate: {stats['current_learning_rate']:.2e}")
    if stats["updates"]:
        print("\nRecent updates:")
        for update in stats["updates"]:
            change = update["metrics"].get("performance_change")
            change_text = f"{change:+.1%}" if change is not None else "-"
            print(f"  {update['model_name']:<32} {update['status']:<12} {change_text}")
    return 0


def continuous_trigger_command(args: argparse.Namespace) -> int:
    """Run one incremental update now."""
    if send_to_running(args, "trigger_update"):
        return 0
    pipeline = open_writable_pipeline(args)
    if pipeline is None:
        return 1

    async def _trigger():
        try:
            return await pipeline.continuous.trigger_update()
        finally:
            await pipeline.stop()

    try:
        update = asyncio.run(_trigger())
    except RuntimeError as e:
        print(f"No update applied: {e}")
        return 1

    print(f"Update {update.model_name}: {update.status.value}")
    if update.error:
        print(f"  Error: {update.error}")
        return 1
    return 0


def register_parsers(subparsers: argparse._SubParsersAction) -> None:
    """Register continuous fine-tuning command parsers."""
    cont_parser = subparsers.add_parser("continuous", help="Continuous fine-tuning.")
    cont_sub = cont_parser.add_subparsers(dest="continuous_command")

    status = cont_sub.add_parser("status", help="Show update history and replay buffer.")
    status.add_argument("--json", action="store_true", help="Output JSON.")
    status.set_defaults(func=continuous_status_command)

    trigger = cont_sub.add_parser("trigger", help="Run one incremental update now.")
    trigger.set_defaults(func=continuous_trigger_command)
