"""Example collector: grades domain events into per-category pools."""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any

from ..events import DomainEvent, EventBus, EventType
from ..logging_config import get_logger
from ..schema import QualityConfig
from ..storage import append_jsonl, iter_jsonl
from .example import QualityTier, TrainingCategory, TrainingExample, new_example_id
from .mappers import MAPPERS, ExampleDraft
from .scoring import QualityScorer

logger = get_logger(__name__)


class ExampleCollector:
    """Turns domain events into graded training examples.

    Pools are keyed by category and bounded by
    ``QualityConfig.max_examples_per_category``; a full pool refuses new
    examples rather than evicting stored ones. Reject-tier examples are
    never stored. With a ``data_dir`` every stored example is appended to
    ``{data_dir}/{category}.jsonl`` and pools are reloaded on construction.

    Every stored example is announced as ``training_example.collected`` with
    ``stored=True``. Examples produced elsewhere (human labels) arrive on the
    same event with ``stored=False`` and are added to their pool.
    """

    def __init__(
        self,
        config: QualityConfig | None = None,
        data_dir: Path | None = None,
        bus: EventBus | None = None,
    ):
        self.config = config or QualityConfig()
        self.scorer = QualityScorer(self.config)
        self.data_dir = data_dir
        self.bus = bus

        self._pools: dict[TrainingCategory, dict[str, TrainingExample]] = defaultdict(dict)
        self._rejected = 0
        self._refused = 0
        self._malformed = 0
        self._skipped = 0

        if self.data_dir is not None:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._load()

        if bus is not None:
            self.attach(bus)

    def attach(self, bus: EventBus) -> None:
        self.bus = bus
        for event_type in MAPPERS:
            bus.subscribe(event_type, self.on_event)
        bus.subscribe(EventType.TRAINING_EXAMPLE_COLLECTED, self.on_event)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def on_event(self, event: DomainEvent) -> None:
        """Bus entry point. Never raises for a bad payload."""
        example = self.ingest(event)
        if example is None or self.bus is None:
            return
        await self.bus.publish(
            event.create_child(
                EventType.TRAINING_EXAMPLE_COLLECTED,
                {
                    "example": example.to_dict(),
                    "stored": True,
                    "source": event.payload.get("source", event.event_type.value),
                },
            )
        )

    def ingest(self, event: DomainEvent) -> TrainingExample | None:
        """Grade one event and store the result. Returns the stored example."""
        if event.event_type == EventType.TRAINING_EXAMPLE_COLLECTED:
            if event.payload.get("stored", False):
                return None
            try:
                example = TrainingExample.from_dict(event.payload["example"])
            except (KeyError, TypeError, ValueError) as e:
                self._malformed += 1
                logger.warning(f"Malformed training example in {event.event_id}: {e}")
                return None
            return example if self.add_example(example) else None

        mapper = MAPPERS.get(event.event_type)
        if mapper is None:
            return None

        try:
            draft = mapper(event, self.config)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            self._malformed += 1
            logger.warning(
                f"Malformed {event.event_type.value} payload ({event.event_id}): {e!r}"
            )
            return None

        if draft is None:
            self._skipped += 1
            return None

        example = self.build_example(draft)
        return example if self.add_example(example) else None

    def build_example(self, draft: ExampleDraft) -> TrainingExample:
        return TrainingExample(
            id=new_example_id(draft.category),
            category=draft.category,
            model_target=draft.model_target,
            input=draft.input,
            output=draft.output,
            quality=self.scorer.assess(draft.factors),
            metadata=draft.metadata,
            system_prompt=draft.system_prompt,
        )

    def add_example(self, example: TrainingExample) -> bool:
        """Store ``example`` in its category pool.

        Returns False when the example is reject-tier, a duplicate, or the
        pool is full.
        """
        if example.tier == QualityTier.REJECT:
            self._rejected += 1
            logger.debug(f"Rejecting low-quality example {example.id} (score {example.score:.2f})")
            return False

        pool = self._pools[example.category]
        if example.id in pool:
            return False
        if len(pool) >= self.config.max_examples_per_category:
            self._refused += 1
            logger.warning(
                f"Category {example.category.value} at max capacity "
                f"({self.config.max_examples_per_category}), refusing {example.id}"
            )
            return False

        if self.data_dir is not None:
            append_jsonl(self._pool_path(example.category), example.to_dict())
        pool[example.id] = example
        logger.debug(f"Collected {example.category.value} example {example.id} ({example.tier.value})")
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_examples(
        self,
        category: TrainingCategory | None = None,
        since: datetime | None = None,
        tiers: set[QualityTier] | None = None,
    ) -> list[TrainingExample]:
        """Examples in insertion order, optionally filtered."""
        if category is not None:
            pools = [self._pools.get(TrainingCategory(category), {})]
        else:
            pools = [self._pools[c] for c in TrainingCategory if c in self._pools]

        examples = []
        for pool in pools:
            for example in pool.values():
                if since is not None and example.timestamp <= since:
                    continue
                if tiers is not None and example.tier not in tiers:
                    continue
                examples.append(example)
        return examples

    def count(self, category: TrainingCategory | None = None) -> int:
        if category is not None:
            return len(self._pools.get(TrainingCategory(category), {}))
        return sum(len(pool) for pool in self._pools.values())

    def get_stats(self) -> dict[str, Any]:
        by_category: dict[str, int] = {}
        gold_per_category: dict[str, int] = {}
        avg_quality: dict[str, float] = {}
        by_tier: Counter[str] = Counter()
        by_model: Counter[str] = Counter()
        human = 0
        rag = 0

        for category, pool in self._pools.items():
            if not pool:
                continue
            by_category[category.value] = len(pool)
            gold = 0
            total_score = 0.0
            for example in pool.values():
                by_tier[example.tier.value] += 1
                by_model[example.model_target.value] += 1
                total_score += example.score
                if example.tier == QualityTier.GOLD:
                    gold += 1
                if example.metadata.get("human_feedback"):
                    human += 1
                if example.metadata.get("rag_enhanced"):
                    rag += 1
            gold_per_category[category.value] = gold
            avg_quality[category.value] = total_score / len(pool)

        return {
            "total_examples": sum(by_category.values()),
            "by_category": by_category,
            "by_tier": {tier.value: by_tier.get(tier.value, 0) for tier in QualityTier if tier != QualityTier.REJECT},
            "by_model": dict(by_model),
            "avg_quality_per_category": avg_quality,
            "gold_per_category": gold_per_category,
            "human_correction_count": human,
            "rag_enhanced_count": rag,
            "rejected": self._rejected,
            "refused": self._refused,
            "malformed": self._malformed,
            "skipped": self._skipped,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _pool_path(self, category: TrainingCategory) -> Path:
        assert self.data_dir is not None
        return self.data_dir / f"{category.value}.jsonl"

    def _load(self) -> None:
        loaded = 0
        for category in TrainingCategory:
            pool = self._pools[category]
            for record in iter_jsonl(self._pool_path(category)):
                try:
                    example = TrainingExample.from_dict(record)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping unreadable {category.value} example: {e}")
                    continue
                if example.tier == QualityTier.REJECT:
                    continue
                if len(pool) >= self.config.max_examples_per_category:
                    break
                pool[example.id] = example
                loaded += 1
        if loaded:
            logger.info(f"Loaded {loaded} training examples from {self.data_dir}")
