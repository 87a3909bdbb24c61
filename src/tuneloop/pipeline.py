"""Pipeline wiring: builds every component, owns the timers.

Components are constructed in dependency order (``graphlib``), each one
subscribing itself to the shared bus. ``start`` launches the periodic
timers:

1. command inbox sweep, applying commands queued by other invocations
2. readiness poll (fine-tuning orchestrator), when ``auto_fine_tune`` is on
3. continuous update tick, when continuous fine-tuning is enabled
4. labeling expiry sweep, when active learning is enabled

Every timer body is idempotent; an iteration that raises is logged and the
timer keeps running.

A writable pipeline holds the data directory's run lock from construction
until ``stop``. ``read_only=True`` builds a view for inspection that never
rewrites persisted state and cannot be started.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from graphlib import TopologicalSorter
from pathlib import Path
from typing import Any

from .abtest import ABTestEngine, InferenceClient, TextGenerator
from .active_learning import LabelingQueue
from .collector import ExampleCollector
from .continuous import ContinuousFineTuner
from .control import INBOX_DIR, Command, CommandInbox, RunLock, running_pid
from .dataset import DatasetExporter
from .events import DomainEvent, EventBus
from .logging_config import get_logger
from .notifications import DiscordNotifier, NotificationManager
from .orchestrator import FineTuningOrchestrator, JobStore, TrainerRunner
from .schema import PipelineConfig

logger = get_logger(__name__)

# component -> components it needs at construction
COMPONENT_GRAPH: dict[str, tuple[str, ...]] = {
    "collector": (),
    "exporter": ("collector",),
    "notifications": (),
    "ab_engine": (),
    "orchestrator": ("collector", "exporter", "ab_engine"),
    "continuous": ("collector", "ab_engine"),
    "active_learning": ("notifications",),
}


def build_order(graph: dict[str, tuple[str, ...]] = COMPONENT_GRAPH) -> list[str]:
    """Construction order; raises ``graphlib.CycleError`` on a cycle."""
    return list(TopologicalSorter(graph).static_order())


class Pipeline:
    """The whole improvement loop in one process.

    Example:
        pipeline = Pipeline(load_config_model())
        await pipeline.start()
        await pipeline.publish(DomainEvent(EventType.VIOLATION_DETECTED, payload))
        await pipeline.stop()
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        bus: EventBus | None = None,
        client: TextGenerator | None = None,
        trainer: TrainerRunner | None = None,
        seed: int | None = None,
        read_only: bool = False,
    ):
        self.config = config or PipelineConfig()
        self.bus = bus or EventBus()
        self.data_dir = self.config.general.data_dir
        self.read_only = read_only
        self._client = client
        self._trainer = trainer
        self._seed = seed

        self.run_lock = RunLock(self.data_dir)
        if not read_only:
            self.run_lock.acquire()
        self.inbox = CommandInbox(self.path(INBOX_DIR))

        self.components: dict[str, Any] = {}
        for name in build_order():
            self.components[name] = getattr(self, f"_build_{name}")()
            logger.debug(f"Built component: {name}")

        self._timers: list[asyncio.Task] = []
        self._stopped = asyncio.Event()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def path(self, name: str) -> Path:
        return self.data_dir / name

    def _build_collector(self) -> ExampleCollector:
        return ExampleCollector(self.config.quality, data_dir=self.path("examples"), bus=self.bus)

    def _build_exporter(self) -> DatasetExporter:
        export_dir = self.config.export.export_dir or self.path("datasets")
        return DatasetExporter(self.collector, export_dir, self.config.export, seed=self._seed)

    def _build_notifications(self) -> NotificationManager:
        manager = NotificationManager()
        settings = self.config.notifications
        if settings.discord_webhook_url:
            manager.register_handler(
                "discord", DiscordNotifier(settings.discord_webhook_url, settings.username)
            )
        manager.attach(self.bus)
        return manager

    def _build_ab_engine(self) -> ABTestEngine:
        client = self._client or InferenceClient(
            self.config.inference.base_url, self.config.inference.timeout_seconds
        )
        return ABTestEngine(
            client,
            self.config.ab_testing,
            promotion=self.config.orchestrator,
            results_dir=self.path("ab_tests"),
            bus=self.bus,
            inference_timeout=self.config.inference.timeout_seconds,
            rng=random.Random(self._seed),
            compact_journal=not self.read_only,
        )

    def _trainer_runner(self) -> TrainerRunner:
        if self._trainer is None:
            self._trainer = TrainerRunner(self.config.trainer, modelfiles_dir=self.path("modelfiles"))
        return self._trainer

    def _build_orchestrator(self) -> FineTuningOrchestrator:
        return FineTuningOrchestrator(
            self.collector,
            self.exporter,
            self.ab_engine,
            self._trainer_runner(),
            JobStore(self.path("jobs")),
            self.config.orchestrator,
            bus=self.bus,
            recover_interrupted=not self.read_only,
        )

    def _build_continuous(self) -> ContinuousFineTuner:
        return ContinuousFineTuner(
            self.collector,
            self.ab_engine,
            self._trainer_runner(),
            self.path("continuous"),
            self.config.continuous,
            bus=self.bus,
            rng=random.Random(self._seed),
        )

    def _build_active_learning(self) -> LabelingQueue:
        return LabelingQueue(
            self.config.active_learning,
            notifier=self.notifications,
            bus=self.bus,
            data_dir=self.path("active_learning"),
        )

    @property
    def collector(self) -> ExampleCollector:
        return self.components["collector"]

    @property
    def exporter(self) -> DatasetExporter:
        return self.components["exporter"]

    @property
    def notifications(self) -> NotificationManager:
        return self.components["notifications"]

    @property
    def ab_engine(self) -> ABTestEngine:
        return self.components["ab_engine"]

    @property
    def orchestrator(self) -> FineTuningOrchestrator:
        return self.components["orchestrator"]

    @property
    def continuous(self) -> ContinuousFineTuner:
        return self.components["continuous"]

    @property
    def labeling_queue(self) -> LabelingQueue:
        return self.components["active_learning"]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._timers)

    async def start(self) -> None:
        if self.read_only:
            raise RuntimeError("A read-only pipeline cannot be started")
        if self.running:
            return
        self.run_lock.acquire()
        self._stopped.clear()

        general = self.config.general
        self._add_timer(
            "command_inbox",
            self.process_commands,
            general.command_poll_seconds,
            0,
        )

        orchestrator = self.config.orchestrator
        if orchestrator.auto_fine_tune:
            self._add_timer(
                "readiness_poll",
                self.orchestrator.check_readiness,
                orchestrator.poll_interval_seconds,
                orchestrator.initial_check_delay_seconds,
            )
        continuous = self.config.continuous
        if continuous.enabled:
            self._add_timer(
                "continuous_tick",
                self.continuous.check_and_apply,
                continuous.update_interval_seconds,
                continuous.update_interval_seconds,
            )
        active_learning = self.config.active_learning
        if active_learning.enabled:
            self._add_timer(
                "labeling_expiry",
                self._expire_labels,
                active_learning.expiry_sweep_seconds,
                active_learning.expiry_sweep_seconds,
            )
        logger.info(f"Pipeline started with timers: {[t.get_name() for t in self._timers]}")

    async def stop(self) -> None:
        for task in self._timers:
            task.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers.clear()

        await self.bus.drain()
        close = getattr(self.ab_engine.client, "close", None)
        if close is not None:
            await close()
        self._stopped.set()
        if not self.read_only:
            self.run_lock.release()
        logger.info("Pipeline stopped")

    def request_stop(self) -> None:
        """Ask ``run_forever`` to return; safe from a signal handler."""
        self._stopped.set()

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self._stopped.wait()
        finally:
            await self.stop()

    async def publish(self, event: DomainEvent) -> None:
        await self.bus.publish(event)

    async def drain(self) -> None:
        await self.bus.drain()

    def _add_timer(
        self,
        name: str,
        tick: Callable[[], Awaitable[Any]],
        interval: float,
        initial_delay: float,
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run_timer(name, tick, interval, initial_delay), name=name
        )
        self._timers.append(task)

    async def _run_timer(
        self,
        name: str,
        tick: Callable[[], Awaitable[Any]],
        interval: float,
        initial_delay: float,
    ) -> None:
        await asyncio.sleep(initial_delay)
        while True:
            try:
                await tick()
            except Exception:
                logger.exception(f"Timer {name} iteration failed")
            await asyncio.sleep(interval)

    async def _expire_labels(self) -> int:
        return self.labeling_queue.expire_stale()

    # ------------------------------------------------------------------
    # Commands from other invocations
    # ------------------------------------------------------------------

    async def process_commands(self) -> int:
        """Apply queued commands in submission order. Returns how many ran.

        A command that fails is logged and dropped; it is never retried.
        """
        handled = 0
        for command in self.inbox.pending():
            try:
                await self.apply_command(command)
            except (KeyError, ValueError, RuntimeError) as e:
                logger.error(f"Command {command.name} ({command.id}) failed: {e}")
            else:
                logger.info(f"Applied command {command.name} ({command.id})")
            self.inbox.done(command)
            handled += 1
        return handled

    async def apply_command(self, command: Command) -> Any:
        args = command.args
        if command.name == "label":
            return await self.labeling_queue.submit_label(
                args["example_id"],
                args.get("labeled_by", "cli"),
                was_correct=bool(args["was_correct"]),
                correct_label=args.get("correct_label"),
                feedback=args.get("feedback"),
            )
        if command.name == "skip":
            return self.labeling_queue.skip(args["example_id"], args.get("labeled_by", "cli"))
        if command.name == "promote":
            return await self.orchestrator.promote(args["job_id"])
        if command.name == "rollback":
            result = await self.orchestrator.rollback(
                args["category"], args.get("reason", "Manual rollback")
            )
            if not result.ok:
                raise RuntimeError(result.error)
            return result
        if command.name == "trigger_update":
            return await self.continuous.trigger_update()
        raise ValueError(f"Unknown command: {command.name}")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        return {
            "data_dir": str(self.data_dir),
            "running": self.running,
            "owner_pid": running_pid(self.data_dir),
            "pending_commands": self.inbox.count(),
            "collector": self.collector.get_stats(),
            "orchestrator": self.orchestrator.get_stats(),
            "ab_testing": self.ab_engine.get_stats(),
            "continuous": self.continuous.get_statistics(),
            "active_learning": self.labeling_queue.stats(),
            "notifications": self.notifications.get_status(),
            "bus": self.bus.stats(),
        }
