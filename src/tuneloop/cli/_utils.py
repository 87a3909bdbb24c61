"""Shared CLI utilities and helpers."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..pipeline import Pipeline
    from ..schema import PipelineConfig


def load_pipeline_config(args: argparse.Namespace) -> PipelineConfig:
    from ..config import load_config_model

    config_path = Path(args.config).expanduser() if getattr(args, "config", None) else None
    return load_config_model(config_path=config_path)


def open_pipeline(args: argparse.Namespace, read_only: bool = True, **kwargs: Any) -> Pipeline:
    """Build the pipeline over the persisted state, without timers.

    The default view never rewrites state, so it is safe next to a running
    pipeline. Pass ``read_only=False`` to take the data directory's run lock.
    """
    from ..pipeline import Pipeline

    return Pipeline(load_pipeline_config(args), read_only=read_only, **kwargs)


def send_to_running(args: argparse.Namespace, name: str, **command_args: Any) -> bool:
    """Queue a mutating command for the pipeline that owns the data directory.

    Returns False when no pipeline is running; the caller then applies the
    command itself.
    """
    from ..control import INBOX_DIR, CommandInbox, running_pid

    data_dir = load_pipeline_config(args).general.data_dir
    pid = running_pid(data_dir)
    if pid is None:
        return False
    command = CommandInbox(data_dir / INBOX_DIR).submit(name, **command_args)
    print(f"Sent {name} to the running pipeline (pid {pid}) as {command.id}")
    return True


def open_writable_pipeline(args: argparse.Namespace) -> Pipeline | None:
    """Take ownership of the data directory, or report who holds it."""
    try:
        return open_pipeline(args, read_only=False)
    except RuntimeError as e:
        print(f"Error: {e}")
        return None


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def format_percent(value: float) -> str:
    return f"{value * 100:.1f}%"
