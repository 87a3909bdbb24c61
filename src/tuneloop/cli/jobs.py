"""Fine-tuning job CLI commands: list, show, promote, rollback."""

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


def jobs_list_command(args: argparse.Namespace) -> int:
    """List persisted fine-tuning jobs."""
    from ..collector import TrainingCategory

    pipeline = open_pipeline(args)
    try:
        category = TrainingCategory(args.category) if args.category else None
    except ValueError:
        print(f"Unknown category: {args.category}")
        return 1

    jobs = pipeline.orchestrator.list_jobs(category)
    if args.json:
        print_json([job.to_dict() for job in jobs])
        return 0
    if not jobs:
        print("No fine-tuning jobs")
        return 0

    print(f"{'Job':<32} {'Target':<44} {'Stage':<11} {'Tests':>6} {'Win':>7}")
    print("-" * 104)
    for job in jobs:
        print(
            f"{job.id:<32} {job.target_model:<44} {job.stage.value:<11} "
            f"{job.ab_tests_completed:>6} {format_percent(job.win_rate):>7}"
        )
        if job.rolled_back:
            print(f"  rolled back {job.rolled_back_at:%Y-%m-%d %H:%M}: {job.rollback_reason}")
    deployed = pipeline.orchestrator.deployed_models()
    if deployed:
        print("\nDeployed:")
        for category_name, model in sorted(deployed.items()):
            print(f"  {category_name}: {model}")
    return 0


def jobs_show_command(args: argparse.Namespace) -> int:
    pipeline = open_pipeline(args)
    try:
        job = pipeline.orchestrator.get_job(args.job_id)
    except KeyError as e:
        print(f"Error: {e.args[0]}")
        return 1
    print_json(job.to_dict())
    return 0


def jobs_promote_command(args: argparse.Namespace) -> int:
    """Promote a tested candidate to deployed."""
    if send_to_running(args, "promote", job_id=args.job_id):
        return 0
    pipeline = open_writable_pipeline(args)
    if pipeline is None:
        return 1

    async def _promote():
        try:
            return await pipeline.orchestrator.promote(args.job_id)
        finally:
            await pipeline.stop()

    try:
        job = asyncio.run(_promote())
    except KeyError as e:
        print(f"Error: {e.args[0]}")
        return 1
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    print(f"Promoted {job.target_model} for {job.category.value}")
    if job.previous_version:
        print(f"  Previous: {job.previous_version}")
    return 0


def jobs_rollback_command(args: argparse.Namespace) -> int:
    """Redeploy the previous model version for a category."""
    from ..collector import TrainingCategory

    try:
        category = TrainingCategory(args.category)
    except ValueError:
        print(f"Unknown category: {args.category}")
        return 1
    if send_to_running(args, "rollback", category=category.value, reason=args.reason):
        return 0
    pipeline = open_writable_pipeline(args)
    if pipeline is None:
        return 1

    async def _rollback():
        try:
            return await pipeline.orchestrator.rollback(category, args.reason)
        finally:
            await pipeline.stop()

    result = asyncio.run(_rollback())
    if not result.ok:
        print(f"Rollback failed: {result.error}")
        return 1
    print(f"Rolled back {category.value}: {result.from_model} -> {result.to_model}")
    return 0


def register_parsers(subparsers: argparse._SubParsersAction) -> None:
    """Register jobs command parsers."""
    jobs_parser = subparsers.add_parser("jobs", help="Fine-tuning job management.")
    jobs_sub = jobs_parser.add_subparsers(dest="jobs_command")

    jobs_list = jobs_sub.add_parser("list", help="List fine-tuning jobs.")
    jobs_list.add_argument("--category", help="Limit to one training category.")
    jobs_list.add_argument("--json", action="store_true", help="Output JSON.")
    jobs_list.set_defaults(func=jobs_list_command)

    jobs_show = jobs_sub.add_parser("show", help="Show one job as JSON.")
    jobs_show.add_argument("job_id", help="Job id.")
    jobs_show.set_defaults(func=jobs_show_command)

    jobs_promote = jobs_sub.add_parser("promote", help="Promote a candidate model.")
    jobs_promote.add_argument("job_id", help="Job id (testing or evaluating).")
    jobs_promote.set_defaults(func=jobs_promote_command)

    jobs_rollback = jobs_sub.add_parser("rollback", help="Roll back a category's model.")
    jobs_rollback.add_argument("category", help="Training category.")
    jobs_rollback.add_argument(
        "--reason", default="Manual rollback", help="Reason recorded on the job."
    )
    jobs_rollback.set_defaults(func=jobs_rollback_command)
