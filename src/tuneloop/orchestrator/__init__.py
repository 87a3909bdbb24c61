"""Fine-tuning orchestration: jobs, training runs, promotion and rollback."""

from .jobs import IN_FLIGHT_STAGES, FineTuningJob, JobStore, PipelineStage, new_job_id
from .orchestrator import (
    LLAMA_BASE,
    QWEN_BASE,
    FineTuningOrchestrator,
    RollbackResult,
    base_model_for,
    base_model_name,
)
from .trainer import TrainerRunner, render_modelfile

__all__ = [
    # Orchestrator
    "FineTuningOrchestrator",
    "RollbackResult",
    "base_model_for",
    "base_model_name",
    "QWEN_BASE",
    "LLAMA_BASE",
    # Jobs
    "FineTuningJob",
    "JobStore",
    "PipelineStage",
    "IN_FLIGHT_STAGES",
    "new_job_id",
    # Training
    "TrainerRunner",
    "render_modelfile",
]
