"""Replay buffer of past high-quality examples.

Incremental updates mix a share of older examples back into every batch so
the model keeps what earlier updates taught it. The buffer is a bounded FIFO
with a per-category index; sampling spreads evenly across categories.
"""

from __future__ import annotations

import math
import random
from collections import deque
from typing import Any

from ..collector.example import TrainingCategory, TrainingExample
from ..logging_config import get_logger

logger = get_logger(__name__)


class ReplayBuffer:
    """Bounded FIFO of training examples indexed by category.

    Example:
        ```python
        buffer = ReplayBuffer(capacity=1000)
        buffer.add(example)
        replay = buffer.sample(30, random.Random(0))
        ```
    """

    def __init__(self, capacity: int = 1000):
        if capacity < 0:
            raise ValueError(f"capacity must be >= 0, got {capacity}")
        self.capacity = capacity
        self._examples: deque[TrainingExample] = deque()
        self._by_category: dict[TrainingCategory, list[TrainingExample]] = {}

    def __len__(self) -> int:
        return len(self._examples)

    def __contains__(self, example_id: str) -> bool:
        return any(ex.id == example_id for ex in self._examples)

    @property
    def examples(self) -> list[TrainingExample]:
        return list(self._examples)

    def categories(self) -> list[TrainingCategory]:
        return [category for category, items in self._by_category.items() if items]

    def add(self, example: TrainingExample) -> None:
        if self.capacity == 0:
            return
        self._examples.append(example)
        self._by_category.setdefault(example.category, []).append(example)
        while len(self._examples) > self.capacity:
            self._evict_oldest()

    def _evict_oldest(self) -> None:
        evicted = self._examples.popleft()
        items = self._by_category.get(evicted.category, [])
        for i, item in enumerate(items):
            if item is evicted:
                del items[i]
                break
        if not items:
            self._by_category.pop(evicted.category, None)

    def resize(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError(f"capacity must be >= 0, got {capacity}")
        self.capacity = capacity
        while len(self._examples) > self.capacity:
            self._evict_oldest()

    def sample(self, count: int, rng: random.Random | None = None) -> list[TrainingExample]:
        """Draw up to ``count`` examples spread evenly across categories.

        Each category contributes ``ceil(count / categories)`` examples
        without replacement; the result is truncated to ``count``.
        """
        categories = self.categories()
        if count <= 0 or not categories:
            return []
        rng = rng or random.Random()
        per_category = math.ceil(count / len(categories))

        samples: list[TrainingExample] = []
        for category in categories:
            items = self._by_category[category]
            samples.extend(rng.sample(items, min(per_category, len(items))))
        return samples[:count]

    def snapshot(self, last: int | None = None) -> list[dict[str, Any]]:
        items = list(self._examples)
        if last is not None:
            items = items[-last:] if last > 0 else []
        return [example.to_dict() for example in items]

    def to_dict(self) -> dict[str, Any]:
        return {"capacity": self.capacity, "examples": self.snapshot()}

    @classmethod
    def from_examples(cls, capacity: int, records: list[dict[str, Any]]) -> ReplayBuffer:
        buffer = cls(capacity)
        for record in records:
            try:
                buffer.add(TrainingExample.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable replay example: {e}")
        return buffer

    @classmethod
    def from_dict(cls, data: dict[str, Any], capacity: int | None = None) -> ReplayBuffer:
        size = capacity if capacity is not None else int(data.get("capacity", 1000))
        return cls.from_examples(size, data.get("examples", []))
