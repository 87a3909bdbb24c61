"""Continuous model-improvement pipeline for moderation models."""

__version__ = "0.1.0"

from .config import load_config, load_config_model
from .events import DomainEvent, EventBus, EventType
from .pipeline import Pipeline

__all__ = [
    "load_config",
    "load_config_model",
    "DomainEvent",
    "EventBus",
    "EventType",
    "Pipeline",
]
