"""Durable JSON storage helpers.

Every record (one job, one checkpoint, one queue snapshot) is written to a
temporary file in the target directory and moved into place with
``os.replace``, so a crash mid-write leaves the previous version intact.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from .logging_config import get_logger

logger = get_logger(__name__)


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_json(path: Path, data: Any) -> None:
    """Atomically write ``data`` as indented JSON."""
    _atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False, default=str))


def read_json(path: Path, default: Any = None) -> Any:
    """Read a JSON record, returning ``default`` when missing or corrupt."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_bytes().decode("utf-8"))
    except (OSError, ValueError) as e:
        # ValueError covers both JSONDecodeError and UnicodeDecodeError
        logger.warning(f"Ignoring unreadable state file {path}: {e}")
        return default


def write_jsonl(path: Path, records: Iterable[dict[str, Any]]) -> int:
    """Atomically write records as JSON lines. Returns the record count."""
    lines = [json.dumps(record, ensure_ascii=False, default=str) for record in records]
    _atomic_write_text(path, "".join(line + "\n" for line in lines))
    return len(lines)


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    """Append one record to a JSON-lines journal.

    A torn last line from an interrupted append is closed off first, so only
    that line is lost.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
    with open(path, "a+b") as handle:
        size = handle.seek(0, os.SEEK_END)
        if size:
            handle.seek(size - 1)
            if handle.read(1) != b"\n":
                handle.write(b"\n")
        handle.write(line.encode("utf-8"))


def iter_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    """Yield records from a JSON-lines journal, skipping corrupt lines.

    Lines are decoded one at a time, so a truncated multibyte sequence left
    by an interrupted append only costs that line.
    """
    if not path.exists():
        return
    try:
        handle = open(path, "rb")
    except OSError as e:
        logger.warning(f"Ignoring unreadable journal {path}: {e}")
        return
    with handle:
        for line_no, raw in enumerate(handle, start=1):
            try:
                line = raw.decode("utf-8").strip()
                if not line:
                    continue
                record = json.loads(line)
            except ValueError:
                logger.warning(f"Skipping corrupt line {line_no} in {path}")
                continue
            if not isinstance(record, dict):
                logger.warning(f"Skipping non-object line {line_no} in {path}")
                continue
            yield record
