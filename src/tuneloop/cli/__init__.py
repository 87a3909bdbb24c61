"""tuneloop command-line interface package.

Commands are organized into groups:
- run: run, status
- dataset: export, stats
- jobs: list, show, promote, rollback
- abtest: report, export, stats
- continuous: status, trigger
- labels: list, label, skip, stats
"""

from __future__ import annotations

import argparse
import logging
from typing import Iterable

from . import abtest, continuous, dataset, jobs, labels, run


def build_parser() -> argparse.ArgumentParser:
    """Build the main argument parser."""
    parser = argparse.ArgumentParser(
        prog="tuneloop",
        description="Continuous model-improvement pipeline.",
    )
    parser.add_argument("--config", help="Config file (default: tuneloop.toml lookup).")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    subparsers = parser.add_subparsers(dest="command")

    # Register pipeline commands (run, status)
    run.register_parsers(subparsers)

    # Register dataset commands
    dataset.register_parsers(subparsers)

    # Register fine-tuning job commands
    jobs.register_parsers(subparsers)

    # Register A/B testing commands
    abtest.register_parsers(subparsers)

    # Register continuous fine-tuning commands
    continuous.register_parsers(subparsers)

    # Register labeling queue commands
    labels.register_parsers(subparsers)

    return parser


def _get_subparser_action(
    parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction | None:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return action
    return None


def _get_command_parser(
    parser: argparse.ArgumentParser, command: str
) -> argparse.ArgumentParser | None:
    sub_action = _get_subparser_action(parser)
    if not sub_action:
        return None
    return sub_action.choices.get(command)


def _requires_subcommand(
    parser: argparse.ArgumentParser, args: argparse.Namespace
) -> bool:
    command = getattr(args, "command", None)
    if not command:
        return False
    command_parser = _get_command_parser(parser, command)
    if not command_parser:
        return False
    sub_action = _get_subparser_action(command_parser)
    if not sub_action:
        return False
    return not getattr(args, sub_action.dest, None)


def _configure_logging(args: argparse.Namespace) -> None:
    from ..logging_config import setup_logging

    level = logging.DEBUG if args.verbose else logging.INFO
    if args.command == "run":
        from ._utils import load_pipeline_config

        general = load_pipeline_config(args).general
        setup_logging(
            level=level if args.verbose else getattr(logging, general.log_level.upper(), logging.INFO),
            log_dir=general.log_dir,
            enable_json=general.json_logs,
        )
    else:
        # One-shot commands log warnings to the console only
        setup_logging(
            level=level if args.verbose else logging.WARNING,
            enable_json=False,
            enable_rotation=False,
        )


def main(argv: Iterable[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "command", None):
        parser.print_help()
        return 1

    if _requires_subcommand(parser, args):
        command_parser = _get_command_parser(parser, args.command)
        if command_parser:
            command_parser.print_help()
        else:
            parser.print_help()
        return 1

    try:
        _configure_logging(args)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1
    try:
        return args.func(args)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1


__all__ = ["build_parser", "main"]
