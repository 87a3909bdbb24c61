"""Labeling queue CLI commands: list, label, skip, stats."""

from __future__ import annotations

import argparse
import asyncio

from ._utils import (
    format_percent,
    open_pipeline,
    open_writable_pipeline,
    print_json,
    send_to_running,
)


def labels_list_command(args: argparse.Namespace) -> int:
    """List pending labeling requests, most uncertain first."""
    queue = open_pipeline(args).labeling_queue
    pending = queue.pending()[: args.limit]
    if args.json:
        print_json([example.to_dict() for example in pending])
        return 0
    if not pending:
        print("Labeling queue is empty")
        return 0

    for example in pending:
        print(f"{example.id}  [{example.category.value}]")
        print(
            f"  confidence {format_percent(example.confidence)}  "
            f"uncertainty {format_percent(example.uncertainty)}  ({example.strategy.value})"
        )
        print(f"  input:      {example.input[:120]}")
        print(f"  prediction: {example.predicted_output[:120]}")
    return 0


def labels_label_command(args: argparse.Namespace) -> int:
    """Record a human verdict for a queued example."""
    if not args.correct and not args.label:
        print(f"Error: A correct_label is required when marking {args.example_id} incorrect")
        return 1
    if send_to_running(
        args,
        "label",
        example_id=args.example_id,
        labeled_by=args.by,
        was_correct=args.correct,
        correct_label=args.label,
        feedback=args.feedback,
    ):
        return 0

    pipeline = open_writable_pipeline(args)
    if pipeline is None:
        return 1

    async def _submit():
        try:
            return await pipeline.labeling_queue.submit_label(
                args.example_id,
                args.by,
                was_correct=args.correct,
                correct_label=args.label,
                feedback=args.feedback,
            )
        finally:
            await pipeline.stop()

    try:
        example = asyncio.run(_submit())
    except KeyError as e:
        print(f"Error: {e.args[0]}")
        return 1
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    print(f"Labeled {args.example_id}; gold example {example.id} added to {example.category.value}")
    return 0


def labels_skip_command(args: argparse.Namespace) -> int:
    if send_to_running(args, "skip", example_id=args.example_id, labeled_by=args.by):
        return 0
    pipeline = open_writable_pipeline(args)
    if pipeline is None:
        return 1
    try:
        pipeline.labeling_queue.skip(args.example_id, args.by)
    except KeyError as e:
        print(f"Error: {e.args[0]}")
        return 1
    finally:
        asyncio.run(pipeline.stop())
    print(f"Skipped {args.example_id}")
    return 0


def labels_stats_command(args: argparse.Namespace) -> int:
    print_json(open_pipeline(args).labeling_queue.stats())
    return 0


def register_parsers(subparsers: argparse._SubParsersAction) -> None:
    """Register labeling queue command parsers."""
    labels_parser = subparsers.add_parser("labels", help="Human labeling queue.")
    labels_sub = labels_parser.add_subparsers(dest="labels_command")

    labels_list = labels_sub.add_parser("list", help="List pending labeling requests.")
    labels_list.add_argument("--limit", type=int, default=20, help="Maximum entries (default: 20).")
    labels_list.add_argument("--json", action="store_true", help="Output JSON.")
    labels_list.set_defaults(func=labels_list_command)

    label = labels_sub.add_parser("label", help="Label a queued example.")
    label.add_argument("example_id", help="Queued example id.")
    verdict = label.add_mutually_exclusive_group(required=True)
    verdict.add_argument(
        "--correct", dest="correct", action="store_true", help="The prediction was right."
    )
    verdict.add_argument(
        "--incorrect", dest="correct", action="store_false", help="The prediction was wrong."
    )
    label.add_argument("--label", help="Correct output (required with --incorrect).")
    label.add_argument("--by", default="cli", help="Labeler name (default: cli).")
    label.add_argument("--feedback", help="Free-text feedback.")
    label.set_defaults(func=labels_label_command)

    skip = labels_sub.add_parser("skip", help="Skip a queued example.")
    skip.add_argument("example_id", help="Queued example id.")
    skip.add_argument("--by", default="cli", help="Labeler name (default: cli).")
    skip.set_defaults(func=labels_skip_command)

    stats = labels_sub.add_parser("stats", help="Labeling statistics.")
    stats.set_defaults(func=labels_stats_command)
