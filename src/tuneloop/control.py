"""Ownership of a data directory and commands sent to its owner.

Only one process may write a data directory: the pipeline that holds
``{data_dir}/run.pid``. Every other invocation reads the persisted state
without rewriting it, and hands mutating requests to the owner through
``{data_dir}/inbox/``, one JSON file per command, applied on the owner's
next sweep.
"""

from __future__ import annotations

import os
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .logging_config import get_logger
from .storage import read_json, write_json

logger = get_logger(__name__)

PID_FILE = "run.pid"
INBOX_DIR = "inbox"

# name -> required argument keys
COMMANDS: dict[str, tuple[str, ...]] = {
    "label": ("example_id", "was_correct"),
    "skip": ("example_id",),
    "promote": ("job_id",),
    "rollback": ("category",),
    "trigger_update": (),
}


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by another user
        return True
    return True


def running_pid(data_dir: Path) -> int | None:
    """Pid of the live process owning ``data_dir``, if any."""
    try:
        pid = int((data_dir / PID_FILE).read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None
    return pid if pid_alive(pid) else None


class RunLock:
    """The pid file marking the owner of a data directory.

    A pid file left by a dead process is taken over. Acquiring twice from the
    same process is a no-op.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.path = data_dir / PID_FILE

    @property
    def held(self) -> bool:
        return running_pid(self.data_dir) == os.getpid()

    def acquire(self) -> None:
        owner = running_pid(self.data_dir)
        if owner == os.getpid():
            return
        if owner is not None:
            raise RuntimeError(f"Pipeline already running for {self.data_dir} (pid {owner})")
        self.data_dir.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            logger.warning(f"Taking over stale run lock {self.path}")
            self.path.unlink(missing_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise RuntimeError(f"Pipeline already running for {self.data_dir}") from None
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{os.getpid()}\n")
        logger.debug(f"Acquired {self.path}")

    def release(self) -> None:
        if self.held:
            self.path.unlink(missing_ok=True)
            logger.debug(f"Released {self.path}")


@dataclass
class Command:
    """A mutating request queued for the owning process."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"cmd_{int(time.time() * 1000)}_{secrets.token_hex(5)}")
    submitted_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        if self.name not in COMMANDS:
            raise ValueError(f"Unknown command: {self.name}")
        missing = [key for key in COMMANDS[self.name] if key not in self.args]
        if missing:
            raise ValueError(f"Command {self.name} is missing: {', '.join(missing)}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "args": self.args,
            "submitted_at": self.submitted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Command:
        return cls(
            name=data["name"],
            args=dict(data.get("args") or {}),
            id=data["id"],
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
        )


class CommandInbox:
    """Directory of pending commands, oldest first."""

    def __init__(self, inbox_dir: Path):
        self.inbox_dir = inbox_dir

    def _path(self, command: Command) -> Path:
        return self.inbox_dir / f"{command.id}.json"

    def submit(self, name: str, **args: Any) -> Command:
        command = Command(name=name, args=args)
        write_json(self._path(command), command.to_dict())
        logger.info(f"Queued command {command.name} ({command.id})")
        return command

    def pending(self) -> list[Command]:
        if not self.inbox_dir.exists():
            return []
        commands = []
        for path in sorted(self.inbox_dir.glob("cmd_*.json")):
            data = read_json(path)
            try:
                commands.append(Command.from_dict(data))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Discarding unreadable command {path.name}: {e}")
                path.unlink(missing_ok=True)
        return commands

    def done(self, command: Command) -> None:
        self._path(command).unlink(missing_ok=True)

    def count(self) -> int:
        if not self.inbox_dir.exists():
            return 0
        return sum(1 for _ in self.inbox_dir.glob("cmd_*.json"))
