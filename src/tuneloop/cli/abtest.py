"""A/B testing CLI commands: report, export, stats."""

from __future__ import annotations

import argparse

from ._utils import format_percent, open_pipeline, print_json


def abtest_report_command(args: argparse.Namespace) -> int:
    """Compare two models over the recorded results."""
    engine = open_pipeline(args).ab_engine
    try:
        report = engine.comparison_report(args.model_a, args.model_b)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    if args.json:
        print_json(report.to_dict())
        return 0

    print(f"{report.model_a} (A) vs {report.model_b} (B)")
    print(f"  Tests: {report.total_tests}")
    print(f"  B win rate: {format_percent(report.win_rate)}")
    print(f"  Winner: {report.overall_winner.value}  (confidence {format_percent(report.confidence)})")
    for task_type, summary in report.by_task_type.items():
        print(
            f"    {task_type:<24} winner={summary['winner']:<4} "
            f"win_rate={format_percent(summary['win_rate'])} n={summary['sample_size']}"
        )
    print(f"\nRecommendation: {report.recommendation}")
    print(f"  {report.reasoning}")
    return 0


def abtest_export_command(args: argparse.Namespace) -> int:
    engine = open_pipeline(args).ab_engine
    try:
        path = engine.export_results(args.filename)
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    print(f"Exported {len(engine.results())} results to {path}")
    return 0


def abtest_stats_command(args: argparse.Namespace) -> int:
    stats = open_pipeline(args).ab_engine.get_stats()
    if args.json:
        print_json(stats)
        return 0

    print(f"Total tests: {stats['total_tests']}")
    if stats["by_task_type"]:
        print("\nBy task type:")
        for task_type, count in sorted(stats["by_task_type"].items()):
            print(f"  {task_type:<28} {count:>8}")
    if stats["by_model"]:
        print("\nBy model:")
        for model, summary in sorted(stats["by_model"].items()):
            print(
                f"  {model:<40} tests={summary['tests']:<6} "
                f"avg_win_rate={format_percent(summary['avg_win_rate'])}"
            )
    return 0


def register_parsers(subparsers: argparse._SubParsersAction) -> None:
    """Register A/B testing command parsers."""
    ab_parser = subparsers.add_parser("abtest", help="A/B test results.")
    ab_sub = ab_parser.add_subparsers(dest="abtest_command")

    report = ab_sub.add_parser("report", help="Comparison report for two models.")
    report.add_argument("model_a", help="Baseline model name.")
    report.add_argument("model_b", help="Candidate model name.")
    report.add_argument("--json", action="store_true", help="Output JSON.")
    report.set_defaults(func=abtest_report_command)

    export = ab_sub.add_parser("export", help="Export all results as JSON.")
    export.add_argument("filename", help="File name inside the results directory.")
    export.set_defaults(func=abtest_export_command)

    stats = ab_sub.add_parser("stats", help="Aggregate A/B statistics.")
    stats.add_argument("--json", action="store_true", help="Output JSON.")
    stats.set_defaults(func=abtest_stats_command)
