"""Dataset export and balancing."""

from .export import (
    DatasetExporter,
    ExportFilter,
    ExportResult,
    balance_by_outcome,
    balancing_info,
    cap_by_tier,
    dataset_stats,
    to_record,
)

__all__ = [
    "DatasetExporter",
    "ExportFilter",
    "ExportResult",
    "balance_by_outcome",
    "balancing_info",
    "cap_by_tier",
    "dataset_stats",
    "to_record",
]
