"""Modelfile rendering and the external model-training command."""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from ..logging_config import get_logger
from ..schema import TrainerConfig

logger = get_logger(__name__)


def render_modelfile(
    base_model: str,
    system: str,
    adapter: str | None = None,
    parameters: Mapping[str, Any] | None = None,
    header: list[str] | None = None,
) -> str:
    """Render an Ollama Modelfile."""
    lines = [f"# {line}" for line in header or []]
    if lines:
        lines.append("")
    lines.append(f"FROM {base_model}")
    lines.append("")
    lines.append(f'SYSTEM """\n{system.strip()}\n"""')
    if adapter:
        lines.append("")
        lines.append(f"ADAPTER {adapter}")
    if parameters:
        lines.append("")
        lines.extend(f"PARAMETER {key} {value}" for key, value in parameters.items())
    return "\n".join(lines) + "\n"


class TrainerRunner:
    """Writes Modelfiles and runs the configured trainer command.

    The command is a template list; ``{target}`` and ``{modelfile}`` are
    substituted per run. Non-zero exit, timeout and a missing executable all
    raise ``RuntimeError``.
    """

    def __init__(self, config: TrainerConfig | None = None, modelfiles_dir: Path | None = None):
        self.config = config or TrainerConfig()
        self.modelfiles_dir = modelfiles_dir or Path.cwd() / "modelfiles"

    def write_modelfile(self, target: str, content: str) -> Path:
        self.modelfiles_dir.mkdir(parents=True, exist_ok=True)
        path = self.modelfiles_dir / f"{target}.modelfile"
        path.write_text(content, encoding="utf-8")
        logger.info(f"Modelfile created: {path}")
        return path

    def stage_dataset(self, dataset: Path) -> Path:
        """Copy ``dataset`` next to the Modelfiles so ADAPTER can name it."""
        self.modelfiles_dir.mkdir(parents=True, exist_ok=True)
        staged = self.modelfiles_dir / dataset.name
        if staged.resolve() != dataset.resolve():
            shutil.copy2(dataset, staged)
        return staged

    def build_command(self, target: str, modelfile: Path) -> list[str]:
        return [
            part.format(target=target, modelfile=str(modelfile)) for part in self.config.command
        ]

    def _run(self, cmd: list[str]) -> str:
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.config.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            raise RuntimeError(
                f"Trainer timed out after {self.config.timeout_seconds:.0f}s"
            ) from None
        except FileNotFoundError:
            raise RuntimeError(f"Trainer executable not found: {cmd[0]}") from None

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise RuntimeError(f"Trainer exited with code {result.returncode}: {stderr[:500]}")
        if result.stderr:
            logger.warning(f"Trainer warnings: {result.stderr.strip()[:500]}")
        return result.stdout

    async def create(self, target: str, modelfile: Path, dataset: Path | None = None) -> str:
        """Build ``target`` from ``modelfile``. Returns the trainer's stdout."""
        if dataset is not None:
            self.stage_dataset(dataset)
        cmd = self.build_command(target, modelfile)
        logger.info(f"Running trainer: {' '.join(cmd)}")
        output = await asyncio.to_thread(self._run, cmd)
        logger.info(f"Model created: {target}")
        return output
