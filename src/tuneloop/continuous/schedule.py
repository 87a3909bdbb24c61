"""Learning-rate schedules for incremental updates."""

from __future__ import annotations

from collections.abc import Sequence

from ..schema import LearningRateSchedule

MAX_LEARNING_RATE = 1e-3
MIN_LEARNING_RATE = 1e-5


def constant_rate(base: float) -> float:
    return base


def decay_rate(base: float, update_number: int) -> float:
    """Exponential decay: ``base * 0.95 ** update_number``."""
    return base * 0.95**update_number


def adaptive_rate(base: float, accuracies: Sequence[float], window: int) -> float:
    """Raise the rate while accuracy improves, lower it otherwise.

    The mean of the latest ``window`` accuracies is compared with the mean of
    the window before it (an empty prior window counts as 0.0).
    """
    if len(accuracies) < 2:
        return base
    recent = accuracies[-window:]
    previous = accuracies[-2 * window : -window] if len(accuracies) > window else []
    avg_recent = sum(recent) / len(recent)
    avg_previous = sum(previous) / len(previous) if previous else 0.0

    if avg_recent > avg_previous:
        return min(base * 1.1, MAX_LEARNING_RATE)
    return max(base * 0.9, MIN_LEARNING_RATE)


def learning_rate(
    schedule: LearningRateSchedule,
    base: float,
    update_number: int,
    accuracies: Sequence[float],
    window: int,
) -> float:
    if schedule == LearningRateSchedule.CONSTANT:
        return constant_rate(base)
    if schedule == LearningRateSchedule.DECAY:
        return decay_rate(base, update_number)
    return adaptive_rate(base, accuracies, window)
