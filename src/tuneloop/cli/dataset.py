"""Dataset CLI commands: export, stats."""

from __future__ import annotations

import argparse

from ._utils import format_percent, open_pipeline, print_json


def dataset_export_command(args: argparse.Namespace) -> int:
    """Export a filtered, optionally balanced dataset."""
    from ..dataset import ExportFilter

    exporter = open_pipeline(args, seed=args.seed).exporter
    try:
        filters = ExportFilter.from_config(
            exporter.config,
            category=args.category,
            model_target=args.model_target,
            min_quality=args.min_quality,
            min_tier=args.min_tier,
            max_examples=args.max,
            balance=args.balance,
        )
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    result = exporter.select(filters)
    path = exporter.export(args.name, filters)
    print(f"Exported {result.total_selected} of {result.total_candidates} examples")
    for outcome, count in sorted(result.group_counts_out.items()):
        print(f"  {outcome}: {count}")
    print(f"Saved to {path}")
    return 0


def dataset_stats_command(args: argparse.Namespace) -> int:
    """Show pool statistics and outcome balance."""
    from ..dataset import balancing_info, dataset_stats

    pipeline = open_pipeline(args)
    try:
        examples = pipeline.collector.get_examples(args.category)
    except ValueError:
        print(f"Unknown category: {args.category}")
        return 1
    stats = dataset_stats(examples)
    balance = balancing_info(examples)

    if args.json:
        print_json({"stats": stats, "balance": balance})
        return 0

    print(f"Total examples: {stats['total']}")
    print(f"  gold: {stats['gold']}  silver: {stats['silver']}  bronze: {stats['bronze']}")
    print(f"  avg quality: {format_percent(stats['avg_quality'])}")
    if stats["by_category"]:
        print("\nBy category:")
        for category, count in sorted(stats["by_category"].items()):
            print(f"  {category:<28} {count:>8}")
    if balance["outcomes"]:
        print(f"\nOutcome balance ({'balanced' if balance['is_balanced'] else 'imbalanced'}):")
        for outcome, count in sorted(balance["outcomes"].items()):
            print(f"  {outcome:<28} {count:>8}")
    return 0


def register_parsers(subparsers: argparse._SubParsersAction) -> None:
    """Register dataset command parsers."""
    dataset_parser = subparsers.add_parser("dataset", help="Training dataset utilities.")
    dataset_sub = dataset_parser.add_subparsers(dest="dataset_command")

    export = dataset_sub.add_parser("export", help="Export a JSONL training dataset.")
    export.add_argument("name", help="Dataset name (file prefix).")
    export.add_argument("--category", help="Training category to export.")
    export.add_argument("--model-target", help="Model family (qwen, llama, general).")
    export.add_argument("--min-quality", type=float, help="Minimum quality score.")
    export.add_argument("--min-tier", help="Minimum tier (gold, silver, bronze).")
    export.add_argument("--max", type=int, help="Maximum examples, best tiers first.")
    export.add_argument(
        "--balance", action="store_true", help="Down-sample outcomes to equal size."
    )
    export.add_argument("--seed", type=int, help="Random seed for balancing.")
    export.set_defaults(func=dataset_export_command)

    stats = dataset_sub.add_parser("stats", help="Show collected example statistics.")
    stats.add_argument("--category", help="Limit to one training category.")
    stats.add_argument("--json", action="store_true", help="Output JSON.")
    stats.set_defaults(func=dataset_stats_command)
