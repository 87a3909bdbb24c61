"""Dataset export: filter, balance and serialize training examples."""

from __future__ import annotations

import random
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..collector.example import ModelTarget, QualityTier, TrainingCategory, TrainingExample
from ..logging_config import get_logger
from ..schema import ExportConfig
from ..storage import write_jsonl

if TYPE_CHECKING:
    from ..collector.collector import ExampleCollector

logger = get_logger(__name__)


def _parse_enum(enum_cls: type, value: Any, label: str) -> Any:
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Invalid {label} '{value}' (expected one of: {allowed})") from None


@dataclass
class ExportFilter:
    """Selection criteria for an export. Invalid values raise ``ValueError``."""

    category: TrainingCategory | None = None
    model_target: ModelTarget | None = None
    min_quality: float = 0.75
    min_tier: QualityTier = QualityTier.BRONZE
    max_examples: int | None = None
    balance: bool = False

    def __post_init__(self) -> None:
        self.category = _parse_enum(TrainingCategory, self.category, "category")
        self.model_target = _parse_enum(ModelTarget, self.model_target, "model target")
        self.min_tier = _parse_enum(QualityTier, self.min_tier, "tier")
        if self.min_tier == QualityTier.REJECT:
            raise ValueError("min_tier cannot be 'reject'")
        if not 0.0 <= float(self.min_quality) <= 1.0:
            raise ValueError(f"min_quality must be in [0.0, 1.0], got {self.min_quality}")
        if self.max_examples is not None and self.max_examples < 1:
            raise ValueError(f"max_examples must be >= 1, got {self.max_examples}")

    @classmethod
    def from_config(cls, config: ExportConfig, **overrides: Any) -> ExportFilter:
        values: dict[str, Any] = {"min_quality": config.min_quality, "min_tier": config.min_tier}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def matches(self, example: TrainingExample) -> bool:
        if self.category is not None and example.category != self.category:
            return False
        if self.model_target is not None and example.model_target not in (
            self.model_target,
            ModelTarget.GENERAL,
        ):
            return False
        if example.score < self.min_quality:
            return False
        return example.tier.at_least(self.min_tier)


@dataclass
class ExportResult:
    """Summary of an export run."""

    path: Path | None = None
    total_candidates: int = 0
    total_selected: int = 0
    group_counts_in: dict[str, int] = field(default_factory=dict)
    group_counts_out: dict[str, int] = field(default_factory=dict)
    examples: list[TrainingExample] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"candidates={self.total_candidates} selected={self.total_selected} "
            f"groups={len(self.group_counts_out)} path={self.path}"
        )


def group_by_outcome(examples: Iterable[TrainingExample]) -> dict[str, list[TrainingExample]]:
    groups: dict[str, list[TrainingExample]] = {}
    for example in examples:
        groups.setdefault(example.outcome, []).append(example)
    return groups


def balance_by_outcome(
    examples: list[TrainingExample],
    rng: random.Random,
) -> list[TrainingExample]:
    """Down-sample every outcome group to the size of the smallest group."""
    groups = group_by_outcome(examples)
    if len(groups) < 2:
        return list(examples)
    target = min(len(items) for items in groups.values())
    balanced: list[TrainingExample] = []
    for items in groups.values():
        balanced.extend(rng.sample(items, target))
    return balanced


def cap_by_tier(examples: list[TrainingExample], max_examples: int) -> list[TrainingExample]:
    """Keep the best ``max_examples`` by tier, gold first."""
    ordered = sorted(examples, key=lambda ex: ex.tier.rank)
    return ordered[:max_examples]


def to_record(example: TrainingExample) -> dict[str, Any]:
    record: dict[str, Any] = {"input": example.input, "output": example.output}
    if example.system_prompt:
        record["system"] = example.system_prompt
    record["metadata"] = example.metadata
    record["quality_tier"] = example.tier.value
    return record


def dataset_stats(examples: Iterable[TrainingExample]) -> dict[str, Any]:
    examples = list(examples)
    by_tier = {tier: 0 for tier in (QualityTier.GOLD, QualityTier.SILVER, QualityTier.BRONZE)}
    by_category: dict[str, int] = {}
    by_outcome: dict[str, int] = {}
    for example in examples:
        if example.tier in by_tier:
            by_tier[example.tier] += 1
        by_category[example.category.value] = by_category.get(example.category.value, 0) + 1
        by_outcome[example.outcome] = by_outcome.get(example.outcome, 0) + 1

    return {
        "total": len(examples),
        "gold": by_tier[QualityTier.GOLD],
        "silver": by_tier[QualityTier.SILVER],
        "bronze": by_tier[QualityTier.BRONZE],
        "by_category": by_category,
        "by_outcome": by_outcome,
        "avg_quality": sum(ex.score for ex in examples) / len(examples) if examples else 0.0,
    }


def balancing_info(examples: Iterable[TrainingExample]) -> dict[str, Any]:
    counts = {name: len(items) for name, items in group_by_outcome(examples).items()}
    if not counts:
        return {"outcomes": {}, "min": 0, "max": 0, "is_balanced": True}
    largest = max(counts.values())
    smallest = min(counts.values())
    return {
        "outcomes": counts,
        "min": smallest,
        "max": largest,
        "is_balanced": (largest - smallest) / largest < 0.2,
    }


class DatasetExporter:
    """Exports collector pools as JSONL training files.

    Example:
        ```python
        exporter = DatasetExporter(collector, export_dir=Path("datasets"))
        path = exporter.export(
            "scam_v1",
            ExportFilter(category="scam_detection", balance=True),
        )
        ```
    """

    def __init__(
        self,
        collector: ExampleCollector,
        export_dir: Path,
        config: ExportConfig | None = None,
        seed: int | None = None,
    ):
        self.collector = collector
        self.export_dir = export_dir
        self.config = config or ExportConfig()
        self._rng = random.Random(seed)

    def default_filter(self, **overrides: Any) -> ExportFilter:
        return ExportFilter.from_config(self.config, **overrides)

    def select(self, filters: ExportFilter) -> ExportResult:
        """Apply filter, balancing and cap without writing anything."""
        candidates = [
            ex for ex in self.collector.get_examples(filters.category) if filters.matches(ex)
        ]
        result = ExportResult(total_candidates=len(candidates))
        result.group_counts_in = {k: len(v) for k, v in group_by_outcome(candidates).items()}

        selected = candidates
        if filters.balance:
            selected = balance_by_outcome(selected, self._rng)
        if filters.max_examples is not None:
            selected = cap_by_tier(selected, filters.max_examples)

        result.examples = selected
        result.total_selected = len(selected)
        result.group_counts_out = {k: len(v) for k, v in group_by_outcome(selected).items()}
        return result

    def export(self, name: str, filters: ExportFilter | None = None) -> Path:
        """Write the selected examples and return the artifact path.

        I/O errors propagate to the caller.
        """
        if not name or "/" in name or "\\" in name:
            raise ValueError(f"Invalid export name: {name!r}")
        filters = filters or self.default_filter()
        result = self.select(filters)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        path = self.export_dir / f"{name}_{timestamp}.jsonl"
        write_jsonl(path, (to_record(ex) for ex in result.examples))
        result.path = path

        if result.total_selected == 0:
            logger.warning(f"Export {name} matched no examples")
        logger.info(f"Exported dataset {name}: {result.summary()}")
        return path
