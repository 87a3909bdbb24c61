from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

import pytest

from conftest import violation_event
from tuneloop.cli import build_parser, main
from tuneloop.collector import QualityTier, TrainingCategory
from tuneloop.config import load_config_model
from tuneloop.control import PID_FILE
from tuneloop.orchestrator import FineTuningJob, JobStore, PipelineStage
from tuneloop.pipeline import Pipeline


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    logger = logging.getLogger("tuneloop")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("TUNELOOP_CONFIG_PATH", raising=False)
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)
    path = tmp_path / "cli.toml"
    path.write_text(
        "[general]\n"
        f"data_dir = \"{tmp_path / 'data'}\"\n"
        f"log_dir = \"{tmp_path / 'logs'}\"\n"
        "json_logs = false\n\n"
        "[orchestrator]\nauto_fine_tune = false\n\n"
        "[continuous]\nenabled = false\n",
        encoding="utf-8",
    )
    return str(path)


def _events_file(tmp_path, *events):
    path = tmp_path / "events.jsonl"
    path.write_text("".join(json.dumps(e.to_dict()) + "\n" for e in events), encoding="utf-8")
    return str(path)


def test_parser_commands() -> None:
    parser = build_parser()

    args = parser.parse_args(["jobs", "promote", "job_1"])
    assert args.command == "jobs"
    assert args.job_id == "job_1"

    args = parser.parse_args(["labels", "label", "ex1", "--incorrect", "--label", "Type: none"])
    assert args.correct is False
    assert args.label == "Type: none"

    args = parser.parse_args(["dataset", "export", "scam_v1", "--balance", "--max", "100"])
    assert args.balance is True
    assert args.max == 100


def test_missing_command_prints_help(capsys) -> None:
    assert main([]) == 1
    assert main(["jobs"]) == 1
    assert "usage" in capsys.readouterr().out


def test_missing_config_file(tmp_path, capsys) -> None:
    assert main(["--config", str(tmp_path / "missing.toml"), "status"]) == 1
    assert "Config file not found" in capsys.readouterr().out


def test_replay_events_then_stats(config_path, tmp_path, capsys) -> None:
    events = _events_file(tmp_path, violation_event(confidence=0.95), violation_event(confidence=0.4))

    assert main(["--config", config_path, "run", "--events", events, "--once"]) == 0
    assert "Replayed 2 events" in capsys.readouterr().out

    assert main(["--config", config_path, "dataset", "stats", "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["stats"]["total"] == 1
    assert data["stats"]["bronze"] == 1

    assert main(["--config", config_path, "labels", "list", "--json"]) == 0
    pending = json.loads(capsys.readouterr().out)
    assert len(pending) == 1
    assert pending[0]["confidence"] == 0.4


def test_label_and_export(config_path, tmp_path, capsys) -> None:
    events = _events_file(tmp_path, violation_event(confidence=0.4))
    main(["--config", config_path, "run", "--events", events, "--once"])
    capsys.readouterr()
    main(["--config", config_path, "labels", "list", "--json"])
    example_id = json.loads(capsys.readouterr().out)[0]["id"]

    assert main(
        [
            "--config",
            config_path,
            "labels",
            "label",
            example_id,
            "--incorrect",
            "--label",
            "Type: none, Severity: none",
        ]
    ) == 0
    assert "gold example" in capsys.readouterr().out

    assert main(["--config", config_path, "dataset", "export", "violations", "--min-tier", "gold"]) == 0
    out = capsys.readouterr().out
    assert "Exported 1 of 1 examples" in out


def test_incorrect_label_requires_correction(config_path, tmp_path, capsys) -> None:
    events = _events_file(tmp_path, violation_event(confidence=0.4))
    main(["--config", config_path, "run", "--events", events, "--once"])
    capsys.readouterr()
    main(["--config", config_path, "labels", "list", "--json"])
    example_id = json.loads(capsys.readouterr().out)[0]["id"]

    assert main(["--config", config_path, "labels", "label", example_id, "--incorrect"]) == 1
    assert "correct_label is required" in capsys.readouterr().out


def test_errors_return_nonzero(config_path, capsys) -> None:
    assert main(["--config", config_path, "jobs", "show", "job_missing"]) == 1
    assert main(["--config", config_path, "jobs", "promote", "job_missing"]) == 1
    assert main(["--config", config_path, "jobs", "rollback", "scam_detection"]) == 1
    assert main(["--config", config_path, "labels", "skip", "missing"]) == 1
    assert main(["--config", config_path, "abtest", "report", "qwen3-base", "llama-base"]) == 1
    assert main(["--config", config_path, "continuous", "trigger"]) == 1
    assert main(["--config", config_path, "dataset", "export", "x", "--min-tier", "platinum"]) == 1
    out = capsys.readouterr().out
    assert "Unknown job: job_missing" in out
    assert "No previous version" in out or "No deployed model" in out


def test_empty_listings(config_path, capsys) -> None:
    assert main(["--config", config_path, "jobs", "list"]) == 0
    assert main(["--config", config_path, "labels", "list"]) == 0
    assert main(["--config", config_path, "continuous", "status"]) == 0
    out = capsys.readouterr().out
    assert "No fine-tuning jobs" in out
    assert "Labeling queue is empty" in out
    assert "Updates completed: 0" in out


def _queued_example(config_path, tmp_path, capsys):
    events = _events_file(tmp_path, violation_event(confidence=0.4))
    main(["--config", config_path, "run", "--events", events, "--once"])
    capsys.readouterr()
    main(["--config", config_path, "labels", "list", "--json"])
    return json.loads(capsys.readouterr().out)[0]["id"]


def test_inspection_leaves_training_job_alone(config_path, tmp_path, capsys) -> None:
    store = JobStore(tmp_path / "data" / "jobs")
    store.save(
        FineTuningJob(
            id="job_live",
            category=TrainingCategory.SCAM_DETECTION,
            base_model="qwen3:1.7b",
            target_model="becas-qwen3-scam_detection-v1",
            version=1,
            stage=PipelineStage.TRAINING,
        )
    )

    assert main(["--config", config_path, "jobs", "list"]) == 0
    assert main(["--config", config_path, "status"]) == 0
    assert main(["--config", config_path, "jobs", "show", "job_live"]) == 0
    out = capsys.readouterr().out

    assert "training" in out
    [job] = store.load_all()
    assert job.stage == PipelineStage.TRAINING
    assert job.error is None
    assert not (tmp_path / "data" / PID_FILE).exists()


def test_label_goes_to_running_pipeline(config_path, tmp_path, capsys) -> None:
    example_id = _queued_example(config_path, tmp_path, capsys)
    # this test process stands in for the running pipeline
    (tmp_path / "data" / PID_FILE).write_text(f"{os.getpid()}\n")

    assert main(
        ["--config", config_path, "labels", "label", example_id, "--correct", "--by", "alice"]
    ) == 0
    assert f"Sent label to the running pipeline (pid {os.getpid()})" in capsys.readouterr().out

    # the snapshot on disk is untouched until the owner applies the command
    main(["--config", config_path, "labels", "list", "--json"])
    assert [e["id"] for e in json.loads(capsys.readouterr().out)] == [example_id]

    owner = Pipeline(load_config_model(config_path=Path(config_path)))

    async def apply():
        handled = await owner.process_commands()
        await owner.stop()
        return handled

    assert asyncio.run(apply()) == 1
    assert len(owner.labeling_queue) == 0
    [example] = owner.collector.get_examples(TrainingCategory.VIOLATION_DETECTION)
    assert example.tier == QualityTier.GOLD
    assert example.metadata["labeled_by"] == "alice"


def test_commands_refused_while_another_process_owns_data(config_path, tmp_path, capsys) -> None:
    events = _events_file(tmp_path, violation_event(confidence=0.95))
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / PID_FILE).write_text(f"{os.getppid()}\n")

    assert main(["--config", config_path, "run", "--events", events, "--once"]) == 1
    assert main(["--config", config_path, "jobs", "promote", "job_1"]) == 0
    out = capsys.readouterr().out

    assert "Pipeline already running for" in out
    assert f"(pid {os.getppid()})" in out
    assert "Sent promote to the running pipeline" in out
    assert len(list((data_dir / "inbox").glob("cmd_*.json"))) == 1
