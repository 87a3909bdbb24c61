"""Configuration schema for tuneloop.

Each TOML section maps to one dataclass. Defaults are the production
calibration; unknown keys are ignored and invalid enum values fall back to
the default.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any


def _as_path(value: str | Path) -> Path:
    return value if isinstance(value, Path) else Path(value).expanduser().resolve()


def _section_kwargs(cls: type, data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in data.items() if key in names and value is not None}


class LearningRateSchedule(str, Enum):
    CONSTANT = "constant"
    DECAY = "decay"
    ADAPTIVE = "adaptive"


@dataclass
class GeneralConfig:
    data_dir: Path = field(default_factory=lambda: Path.home() / ".context" / "tuneloop")
    log_dir: Path | None = None
    log_level: str = "INFO"
    json_logs: bool = True
    # how often a running pipeline applies commands queued by other invocations
    command_poll_seconds: float = 2.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GeneralConfig":
        kwargs = _section_kwargs(cls, data)
        if "data_dir" in kwargs:
            kwargs["data_dir"] = _as_path(kwargs["data_dir"])
        if "log_dir" in kwargs:
            kwargs["log_dir"] = _as_path(kwargs["log_dir"])
        return cls(**kwargs)


@dataclass
class QualityWeights:
    """Additive weights of the quality factors."""

    confidence: float = 0.35
    detailed_reasoning: float = 0.15
    clear_outcome: float = 0.15
    human_validation: float = 0.20
    rag_enhanced: float = 0.10
    multiple_precedents: float = 0.05
    contextual_data: float = 0.10
    edge_case: float = 0.10
    common_pattern: float = 0.05

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, float]) -> "QualityWeights":
        return cls(**{k: float(v) for k, v in _section_kwargs(cls, data).items()})


@dataclass
class QualityConfig:
    weights: QualityWeights = field(default_factory=QualityWeights)
    gold_threshold: float = 0.90
    silver_threshold: float = 0.75
    bronze_threshold: float = 0.60
    max_examples_per_category: int = 50_000
    min_confidence_for_training: float = 0.80

    def __post_init__(self) -> None:
        if not 0.0 <= self.bronze_threshold <= self.silver_threshold <= self.gold_threshold <= 1.0:
            raise ValueError(
                "Tier thresholds must satisfy 0 <= bronze <= silver <= gold <= 1, got "
                f"{self.bronze_threshold}/{self.silver_threshold}/{self.gold_threshold}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QualityConfig":
        kwargs = _section_kwargs(cls, data)
        kwargs["weights"] = QualityWeights.from_dict(kwargs.get("weights", {}))
        return cls(**kwargs)


@dataclass
class ExportConfig:
    min_quality: float = 0.75
    min_tier: str = "bronze"
    export_dir: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExportConfig":
        kwargs = _section_kwargs(cls, data)
        if "export_dir" in kwargs:
            kwargs["export_dir"] = _as_path(kwargs["export_dir"])
        return cls(**kwargs)


@dataclass
class OrchestratorConfig:
    # Readiness thresholds
    min_gold_examples: int = 500
    min_total_examples: int = 2000
    min_quality_score: float = 0.85

    # Promotion gate, shared with the A/B comparison report
    min_tests_before_promotion: int = 100
    min_win_rate_for_promotion: float = 0.65

    # Automation
    auto_fine_tune: bool = True
    auto_promote: bool = False
    auto_rollback: bool = True

    poll_interval_seconds: float = 3600.0
    initial_check_delay_seconds: float = 5.0
    model_prefix: str = "becas"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrchestratorConfig":
        return cls(**_section_kwargs(cls, data))


@dataclass
class ABTestingConfig:
    enabled: bool = True
    sample_rate: float = 0.2
    accuracy_margin: float = 0.10
    quality_margin: float = 0.05
    latency_budget_ms: float = 2000.0
    min_reasoning_chars: int = 50
    default_confidence: float = 0.8
    max_results: int = 10_000

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ABTestingConfig":
        return cls(**_section_kwargs(cls, data))


@dataclass
class ContinuousConfig:
    enabled: bool = True
    update_interval_seconds: float = 4 * 3600.0
    batch_size: int = 50
    min_examples_for_update: int = 25

    # Catastrophic forgetting defense
    replay_buffer_size: int = 1000
    replay_ratio: float = 0.3

    learning_rate_schedule: LearningRateSchedule = LearningRateSchedule.ADAPTIVE
    base_learning_rate: float = 1e-4
    performance_window_size: int = 100

    drift_threshold: float = 0.10
    auto_rollback: bool = True
    checkpoint_interval: int = 10

    validation_task_type: str = "violation_detection"
    validation_cases: int = 50
    base_model: str = "llama3.2:latest"
    model_prefix: str = "becas"

    def __post_init__(self) -> None:
        if not 0.0 <= self.replay_ratio < 1.0:
            raise ValueError(f"replay_ratio must be in [0.0, 1.0), got {self.replay_ratio}")
        if self.checkpoint_interval < 1:
            raise ValueError("checkpoint_interval must be >= 1")
        if self.replay_buffer_size < 0:
            raise ValueError("replay_buffer_size must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["learning_rate_schedule"] = self.learning_rate_schedule.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContinuousConfig":
        kwargs = _section_kwargs(cls, data)
        schedule = kwargs.get("learning_rate_schedule")
        if schedule is not None:
            try:
                kwargs["learning_rate_schedule"] = LearningRateSchedule(schedule)
            except ValueError:
                kwargs.pop("learning_rate_schedule")
        return cls(**kwargs)


@dataclass
class ActiveLearningConfig:
    enabled: bool = True
    uncertainty_threshold: float = 0.65
    max_queue_size: int = 100
    labeling_timeout_seconds: float = 24 * 3600.0
    committee_disagreement_threshold: float = 0.3
    expiry_sweep_seconds: float = 3600.0
    low_uncertainty_eviction: float = 0.5

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActiveLearningConfig":
        return cls(**_section_kwargs(cls, data))


@dataclass
class InferenceConfig:
    base_url: str = "http://localhost:11434"
    timeout_seconds: float = 60.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InferenceConfig":
        return cls(**_section_kwargs(cls, data))


def default_trainer_command() -> list[str]:
    return ["ollama", "create", "{target}", "-f", "{modelfile}"]


@dataclass
class TrainerConfig:
    command: list[str] = field(default_factory=default_trainer_command)
    timeout_seconds: float = 3600.0
    temperature: float = 0.3
    top_p: float = 0.9
    top_k: int = 40
    num_ctx: int = 4096

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrainerConfig":
        kwargs = _section_kwargs(cls, data)
        command = kwargs.get("command")
        if isinstance(command, str):
            kwargs["command"] = command.split()
        elif command is not None and not isinstance(command, list):
            kwargs.pop("command")
        return cls(**kwargs)


@dataclass
class NotificationsConfig:
    discord_webhook_url: str | None = None
    username: str = "tuneloop"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NotificationsConfig":
        return cls(**_section_kwargs(cls, data))


@dataclass
class PipelineConfig:
    general: GeneralConfig = field(default_factory=GeneralConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    ab_testing: ABTestingConfig = field(default_factory=ABTestingConfig)
    continuous: ContinuousConfig = field(default_factory=ContinuousConfig)
    active_learning: ActiveLearningConfig = field(default_factory=ActiveLearningConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    trainer: TrainerConfig = field(default_factory=TrainerConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PipelineConfig":
        data = data or {}
        return cls(
            general=GeneralConfig.from_dict(data.get("general", {})),
            quality=QualityConfig.from_dict(data.get("quality", {})),
            export=ExportConfig.from_dict(data.get("export", {})),
            orchestrator=OrchestratorConfig.from_dict(data.get("orchestrator", {})),
            ab_testing=ABTestingConfig.from_dict(data.get("ab_testing", {})),
            continuous=ContinuousConfig.from_dict(data.get("continuous", {})),
            active_learning=ActiveLearningConfig.from_dict(data.get("active_learning", {})),
            inference=InferenceConfig.from_dict(data.get("inference", {})),
            trainer=TrainerConfig.from_dict(data.get("trainer", {})),
            notifications=NotificationsConfig.from_dict(data.get("notifications", {})),
        )
