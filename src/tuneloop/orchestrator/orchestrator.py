"""Per-category fine-tuning lifecycle.

collecting -> ready -> training -> testing -> evaluating -> promoting -> deployed

Any failure while training moves the job to ``failed``; there is no retry.
A category has at most one job in ``training`` or ``testing`` at a time. The
stage itself marks the category busy: the in-flight check and the move to
``training`` happen with no await in between, and the trainer call runs
without any lock held.

A rolled-back job keeps its ``deployed`` stage and is flagged with
``rolled_back_at``; it no longer counts as the category's deployment.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..abtest.engine import ABTestEngine, ModelConfig, Winner, task_type_for
from ..collector.collector import ExampleCollector
from ..collector.example import QualityTier, TrainingCategory
from ..dataset.export import DatasetExporter, ExportFilter
from ..events import DomainEvent, EventBus, EventType
from ..logging_config import LogContext, get_logger
from ..schema import OrchestratorConfig
from .jobs import IN_FLIGHT_STAGES, FineTuningJob, JobStore, PipelineStage, new_job_id
from .trainer import TrainerRunner, render_modelfile

logger = get_logger(__name__)

QWEN_BASE = "qwen3:1.7b"
LLAMA_BASE = "llama3.2:3b"

_QWEN_CATEGORIES = {
    TrainingCategory.VIOLATION_DETECTION,
    TrainingCategory.SCAM_DETECTION,
    TrainingCategory.INTENT_CLASSIFICATION,
    TrainingCategory.SENTIMENT_ANALYSIS,
}
_LLAMA_CATEGORIES = {
    TrainingCategory.TOOL_SELECTION,
    TrainingCategory.WORKFLOW_PARSING,
    TrainingCategory.POLICY_INTERPRETATION,
}


def base_model_for(category: TrainingCategory) -> str:
    if category in _LLAMA_CATEGORIES:
        return LLAMA_BASE
    return QWEN_BASE


def base_model_name(base_model: str) -> str:
    """Name the base model is registered under for A/B testing."""
    return "llama-base" if base_model == LLAMA_BASE else "qwen3-base"


@dataclass
class RollbackResult:
    ok: bool
    error: str | None = None
    from_model: str | None = None
    to_model: str | None = None


class FineTuningOrchestrator:
    """Drives fine-tuning jobs from readiness to deployment.

    Example:
        ```python
        orchestrator = FineTuningOrchestrator(collector, exporter, engine, trainer, store)
        jobs = await orchestrator.check_readiness()
        ```
    """

    def __init__(
        self,
        collector: ExampleCollector,
        exporter: DatasetExporter,
        ab_engine: ABTestEngine,
        trainer: TrainerRunner,
        store: JobStore,
        config: OrchestratorConfig | None = None,
        bus: EventBus | None = None,
        recover_interrupted: bool = True,
    ):
        self.collector = collector
        self.exporter = exporter
        self.ab_engine = ab_engine
        self.trainer = trainer
        self.store = store
        self.config = config or OrchestratorConfig()
        self.bus = bus

        self._jobs: dict[str, FineTuningJob] = {}
        self._deployed: dict[TrainingCategory, str] = {}

        self._load(recover_interrupted)

        if bus is not None:
            self.attach(bus)

    def attach(self, bus: EventBus) -> None:
        self.bus = bus
        bus.subscribe(EventType.AB_TEST_COMPLETED, self.on_ab_test_completed)

    async def _publish(self, event_type: EventType, payload: dict[str, Any]) -> None:
        if self.bus is not None:
            await self.bus.publish(DomainEvent(event_type=event_type, payload=payload))

    def _save(self, job: FineTuningJob) -> None:
        job.updated_at = datetime.now()
        self.store.save(job)

    # ------------------------------------------------------------------
    # Readiness and job creation
    # ------------------------------------------------------------------

    def in_flight_job(self, category: TrainingCategory) -> FineTuningJob | None:
        for job in self._jobs.values():
            if job.category == category and job.stage in IN_FLIGHT_STAGES:
                return job
        return None

    def is_ready(self, category: TrainingCategory, stats: dict[str, Any]) -> bool:
        total = stats["by_category"].get(category.value, 0)
        gold = stats["gold_per_category"].get(category.value, 0)
        avg_quality = stats["avg_quality_per_category"].get(category.value, 0.0)
        return (
            gold >= self.config.min_gold_examples
            and total >= self.config.min_total_examples
            and avg_quality >= self.config.min_quality_score
        )

    async def check_readiness(self) -> list[FineTuningJob]:
        """Create a job for every category that meets the thresholds."""
        stats = self.collector.get_stats()
        created = []
        for category in TrainingCategory:
            if not self.is_ready(category, stats):
                continue
            existing = self.in_flight_job(category)
            if existing is not None:
                logger.debug(f"Job already in progress for {category.value}: {existing.id}")
                continue
            logger.info(f"Category {category.value} ready for fine-tuning")
            try:
                created.append(await self.create_job(category))
            except ValueError as e:
                logger.debug(str(e))
        return created

    def next_version(self, category: TrainingCategory) -> int:
        versions = [job.version for job in self._jobs.values() if job.category == category]
        return max(versions, default=0) + 1

    async def create_job(self, category: TrainingCategory) -> FineTuningJob:
        """Create a job for ``category`` and run its training.

        Raises ``ValueError`` when the category already has a job in flight.
        """
        category = TrainingCategory(category)
        existing = self.in_flight_job(category)
        if existing is not None:
            raise ValueError(f"Job {existing.id} already in progress for {category.value}")

        base_model = base_model_for(category)
        version = self.next_version(category)
        family = base_model.split(":")[0]
        tiers = Counter(ex.tier for ex in self.collector.get_examples(category))
        job = FineTuningJob(
            id=new_job_id(),
            category=category,
            base_model=base_model,
            target_model=f"{self.config.model_prefix}-{family}-{category.value}-v{version}",
            version=version,
            training_examples=sum(tiers.values()),
            gold_examples=tiers.get(QualityTier.GOLD, 0),
            silver_examples=tiers.get(QualityTier.SILVER, 0),
            bronze_examples=tiers.get(QualityTier.BRONZE, 0),
        )
        self._jobs[job.id] = job
        self._save(job)
        logger.info(f"Created fine-tuning job {job.id} for {category.value} -> {job.target_model}")

        job.transition(PipelineStage.READY)
        self._save(job)
        job.transition(PipelineStage.TRAINING)
        job.fine_tuning_started = datetime.now()
        self._save(job)

        await self._execute(job)
        return job

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def modelfile_for(self, job: FineTuningJob) -> str:
        assert job.dataset_path is not None
        params = self.trainer.config
        return render_modelfile(
            base_model=job.base_model,
            system=(
                "You are Becas, an advanced AI moderation assistant specialized in "
                f"{job.category.value}.\nYou provide accurate, context-aware analysis "
                "with high confidence and detailed reasoning."
            ),
            adapter=job.dataset_path.name,
            parameters={
                "temperature": params.temperature,
                "top_p": params.top_p,
                "top_k": params.top_k,
                "num_ctx": params.num_ctx,
            },
            header=[
                f"Modelfile for {job.target_model}",
                f"Fine-tuned for {job.category.value}",
                f"Base model: {job.base_model}",
                f"Version: {job.version}",
            ],
        )

    async def _execute(self, job: FineTuningJob) -> None:
        with LogContext(job_id=job.id, category=job.category.value):
            logger.info(f"Starting fine-tuning: {job.base_model} -> {job.target_model}")

            try:
                logger.info("Step 1/4: exporting training dataset")
                job.dataset_path = self.exporter.export(
                    f"{job.category.value}_v{job.version}",
                    ExportFilter(category=job.category, min_tier=QualityTier.BRONZE, balance=True),
                )
                self._save(job)

                logger.info("Step 2/4: writing Modelfile")
                job.modelfile_path = self.trainer.write_modelfile(
                    job.target_model, self.modelfile_for(job)
                )
                self._save(job)

                logger.info("Step 3/4: running trainer")
                await self.trainer.create(job.target_model, job.modelfile_path, job.dataset_path)

                logger.info("Step 4/4: registering model for A/B testing")
                self._register_candidate(job)
            except Exception as e:
                logger.error(f"Fine-tuning failed: {e}")
                job.error = str(e)
                job.transition(PipelineStage.FAILED)
                self._save(job)
                await self._publish(
                    EventType.FINE_TUNING_FAILED,
                    {"job_id": job.id, "category": job.category.value, "error": job.error},
                )
                return

            job.fine_tuning_completed = datetime.now()
            job.transition(PipelineStage.TESTING)
            self._save(job)
            logger.info(f"Fine-tuning completed: {job.target_model}")
            await self._publish(
                EventType.FINE_TUNING_COMPLETED,
                {
                    "job_id": job.id,
                    "category": job.category.value,
                    "target_model": job.target_model,
                },
            )

    def _register_candidate(self, job: FineTuningJob) -> None:
        self.ab_engine.register_model(
            ModelConfig(
                name=job.target_model,
                type="fine_tuned",
                model_id=job.target_model,
                description=f"Fine-tuned model for {job.category.value} (v{job.version})",
                trained_on=job.dataset_path.name if job.dataset_path else None,
                fine_tuned_at=datetime.now(),
            )
        )
        baseline = base_model_name(job.base_model)
        self.ab_engine.setup_test(task_type_for(job.category), baseline, job.target_model)

    # ------------------------------------------------------------------
    # Evaluation and promotion
    # ------------------------------------------------------------------

    async def on_ab_test_completed(self, event: DomainEvent) -> None:
        p = event.payload
        model_b = p.get("model_b")
        job = next(
            (
                j
                for j in self._jobs.values()
                if j.target_model == model_b and j.stage == PipelineStage.TESTING
            ),
            None,
        )
        if job is None:
            return
        if p.get("winner") == Winner.UNKNOWN:
            logger.debug(f"Ignoring undecided A/B result for {model_b}")
            return

        won = 1.0 if p.get("winner") == "B" else 0.0
        job.ab_tests_completed += 1
        n = job.ab_tests_completed
        job.win_rate = (job.win_rate * (n - 1) + won) / n
        metrics = p.get("metrics") or {}
        if "quality_delta" in metrics:
            job.average_quality_improvement = float(metrics["quality_delta"])
        self._save(job)
        logger.debug(f"A/B update for {job.target_model}: {n} tests, {job.win_rate:.1%} win rate")

        if (
            n >= self.config.min_tests_before_promotion
            and job.win_rate >= self.config.min_win_rate_for_promotion
        ):
            logger.info(f"Model {job.target_model} ready for promotion")
            if self.config.auto_promote:
                await self.promote(job.id)
                return
            job.transition(PipelineStage.EVALUATING)
            self._save(job)
            await self._publish(
                EventType.FINE_TUNING_READY_FOR_PROMOTION,
                {
                    "job_id": job.id,
                    "model": job.target_model,
                    "win_rate": job.win_rate,
                    "tests_completed": job.ab_tests_completed,
                },
            )

    async def promote(self, job_id: str) -> FineTuningJob:
        """Deploy the job's model. Only evaluating or testing jobs qualify."""
        job = self.get_job(job_id)
        if job.stage not in (PipelineStage.EVALUATING, PipelineStage.TESTING):
            raise ValueError(f"Job {job_id} is {job.stage.value}, cannot promote")

        with LogContext(job_id=job.id, category=job.category.value):
            logger.info(f"Promoting model to production: {job.target_model}")
            job.transition(PipelineStage.PROMOTING)
            self._save(job)

            previous = self._deployed.get(job.category)
            if previous is not None:
                job.previous_version = previous
                logger.info(f"Replacing deployed model {previous}")
            self._deployed[job.category] = job.target_model

            job.promoted = True
            job.promoted_at = datetime.now()
            job.promotion_reason = (
                f"Win rate: {job.win_rate:.1%} over {job.ab_tests_completed} tests"
            )
            job.transition(PipelineStage.DEPLOYED)
            self._save(job)

            task_type = task_type_for(job.category)
            active = self.ab_engine.active_tests().get(task_type)
            if active is not None and active[1] == job.target_model:
                self.ab_engine.clear_test(task_type)

        await self._publish(
            EventType.FINE_TUNING_PROMOTED,
            {
                "job_id": job.id,
                "model": job.target_model,
                "category": job.category.value,
                "version": job.version,
                "previous_model": previous,
                "win_rate": job.win_rate,
            },
        )
        return job

    async def rollback(self, category: TrainingCategory, reason: str) -> RollbackResult:
        """Redeploy the model that the current deployment replaced."""
        category = TrainingCategory(category)
        logger.warning(f"Rolling back model for {category.value}: {reason}")

        current_model = self._deployed.get(category)
        if current_model is None:
            return self._rollback_failed(f"No deployed model for category: {category.value}")

        current = next(
            (j for j in self._jobs.values() if j.target_model == current_model and j.promoted and not j.rolled_back),
            None,
        )
        if current is None or not current.previous_version:
            return self._rollback_failed("No previous version to rollback to")

        previous = next(
            (j for j in self._jobs.values() if j.target_model == current.previous_version),
            None,
        )
        if previous is None:
            return self._rollback_failed(f"Previous job not found: {current.previous_version}")

        self._deployed[category] = previous.target_model
        current.rolled_back_at = datetime.now()
        current.rollback_reason = reason
        self._save(current)
        logger.info(f"Rolled back {current.target_model} -> {previous.target_model}")

        await self._publish(
            EventType.FINE_TUNING_ROLLED_BACK,
            {
                "category": category.value,
                "from": current.target_model,
                "to": previous.target_model,
                "reason": reason,
            },
        )
        return RollbackResult(ok=True, from_model=current.target_model, to_model=previous.target_model)

    def _rollback_failed(self, error: str) -> RollbackResult:
        logger.error(f"Rollback failed: {error}")
        return RollbackResult(ok=False, error=error)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> FineTuningJob:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise KeyError(f"Unknown job: {job_id}") from None

    def list_jobs(self, category: TrainingCategory | None = None) -> list[FineTuningJob]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at)
        if category is not None:
            category = TrainingCategory(category)
            jobs = [j for j in jobs if j.category == category]
        return jobs

    def deployed_models(self) -> dict[str, str]:
        return {category.value: model for category, model in self._deployed.items()}

    def get_stats(self) -> dict[str, Any]:
        by_stage = Counter(job.stage.value for job in self._jobs.values())
        by_category = Counter(job.category.value for job in self._jobs.values())
        tested = [job.win_rate for job in self._jobs.values() if job.ab_tests_completed]
        return {
            "total_jobs": len(self._jobs),
            "by_stage": dict(by_stage),
            "by_category": dict(by_category),
            "deployed_models": self.deployed_models(),
            "average_win_rate": sum(tested) / len(tested) if tested else 0.0,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self, recover_interrupted: bool) -> None:
        for job in self.store.load_all():
            # Training cannot resume across restarts. Only the process that owns
            # the data directory may decide a job was interrupted.
            if recover_interrupted and job.stage in (PipelineStage.TRAINING, PipelineStage.READY, PipelineStage.COLLECTING):
                logger.warning(f"Job {job.id} was interrupted in {job.stage.value}, marking failed")
                job.error = f"Interrupted during {job.stage.value}"
                job.transition(PipelineStage.FAILED)
                self.store.save(job)
            self._jobs[job.id] = job

        latest: dict[TrainingCategory, FineTuningJob] = {}
        for job in self._jobs.values():
            if job.stage != PipelineStage.DEPLOYED or job.rolled_back:
                continue
            current = latest.get(job.category)
            if current is None or (job.promoted_at or job.created_at) > (
                current.promoted_at or current.created_at
            ):
                latest[job.category] = job
        self._deployed = {category: job.target_model for category, job in latest.items()}

        for job in self._jobs.values():
            if job.stage == PipelineStage.TESTING:
                self._restore_candidate(job)

        if self._jobs:
            logger.info(f"Loaded {len(self._jobs)} fine-tuning jobs")

    def _restore_candidate(self, job: FineTuningJob) -> None:
        if not self.ab_engine.has_model(job.target_model):
            self.ab_engine.register_model(
                ModelConfig(
                    name=job.target_model,
                    type="fine_tuned",
                    model_id=job.target_model,
                    description=f"Fine-tuned model for {job.category.value} (v{job.version})",
                    trained_on=job.dataset_path.name if job.dataset_path else None,
                    fine_tuned_at=job.fine_tuning_completed,
                )
            )
        self.ab_engine.setup_test(
            task_type_for(job.category), base_model_name(job.base_model), job.target_model
        )
