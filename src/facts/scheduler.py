"""Job scheduling for fact retrievers."""

import asyncio
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

import structlog
import structlog.contextvars
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MAX_INSTANCES
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from observability import metrics
from shared_types import RetrieverState, RunStatus

from .coordination import RunCoordinator, StaticCoordinator
from .errors import CoordinationDeniedError, StorageError
from .executor import RetrievalExecutor, RunReport
from .models import utcnow
from .registry import RegistrationRegistry, parse_cadence

logger = structlog.get_logger().bind(source="scheduler")

JOB_PREFIX = "fact_retriever:"
SWEEP_JOB_ID = "retention_sweep"


class FactRetrieverScheduler:
    """One cron job per registration on a shared worker pool.

    Each registration moves IDLE -> TRIGGERED -> RUNNING -> IDLE. A fire that finds
    it not IDLE is skipped, so a registration never overlaps itself in this process.
    Whether another instance may run it is left to the injected coordinator.
    """

    def __init__(
        self,
        registry: RegistrationRegistry,
        executor: RetrievalExecutor,
        coordinator: Optional[RunCoordinator] = None,
        max_workers: int = 10,
        misfire_grace_seconds: int = 60,
        retention_sweep_cadence: Optional[str] = "17 * * * *",
        on_error: Optional[Callable[[RunReport], None]] = None,
    ):
        self.registry = registry
        self.executor = executor
        self.coordinator = coordinator or StaticCoordinator(is_main_instance=True)
        self.misfire_grace_seconds = misfire_grace_seconds
        self.retention_sweep_cadence = retention_sweep_cadence
        self.on_error = on_error
        self.scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers)},
            timezone=registry.timezone,
        )
        self._states = {reg.id: RetrieverState.IDLE for reg in registry}
        self._state_lock = threading.Lock()

    # --- state machine ---

    def state(self, registration_id: str) -> RetrieverState:
        self.registry.get(registration_id)
        with self._state_lock:
            return self._states[registration_id]

    def _claim(self, registration_id: str) -> bool:
        with self._state_lock:
            if self._states[registration_id] is not RetrieverState.IDLE:
                return False
            self._states[registration_id] = RetrieverState.TRIGGERED
            return True

    def _set_state(self, registration_id: str, state: RetrieverState):
        with self._state_lock:
            self._states[registration_id] = state

    def _lease_for(self, registration_id: str) -> timedelta:
        reg = self.registry.get(registration_id)
        return self.executor.timeout_for(reg) + timedelta(minutes=1)

    def _fire(self, registration_id: str) -> Optional[RunReport]:
        """Job body. Never raises: the scheduler loop must survive every run."""
        if not self._claim(registration_id):
            metrics.counter("retriever_run_skipped", fact_source_id=registration_id)
            logger.info("retriever_skipped_overlap", fact_source_id=registration_id)
            return None

        try:
            try:
                self.coordinator.acquire(registration_id, self._lease_for(registration_id))
            except CoordinationDeniedError as e:
                metrics.counter("retriever_run_skipped", fact_source_id=registration_id)
                logger.info("retriever_skipped_coordination", fact_source_id=registration_id, reason=str(e))
                return None
            except StorageError as e:
                metrics.counter("retriever_run_skipped", fact_source_id=registration_id)
                logger.error("coordination_unavailable", fact_source_id=registration_id, error=str(e))
                return None

            self._set_state(registration_id, RetrieverState.RUNNING)
            try:
                report = self._run(registration_id)
            finally:
                try:
                    self.coordinator.release(registration_id)
                except Exception as e:
                    logger.warning("lease_release_failed", fact_source_id=registration_id, error=str(e))

            if report.status is RunStatus.FAILED and self.on_error:
                try:
                    self.on_error(report)
                except Exception as e:
                    logger.error("on_error_callback_failed", error=str(e))
            return report
        finally:
            self._set_state(registration_id, RetrieverState.IDLE)

    def _run(self, registration_id: str) -> RunReport:
        # Correlation ID for every log line of this run
        run_id = uuid.uuid4().hex[:8]
        structlog.contextvars.bind_contextvars(run_id=run_id, fact_source_id=registration_id)
        registration = self.registry.get(registration_id)
        started = utcnow()
        try:
            with metrics.timer("retriever_run_duration"):
                return asyncio.run(self.executor.run(registration))
        except Exception as e:
            logger.exception("retriever_run_crashed", error=str(e))
            metrics.counter("retriever_run_failure", fact_source_id=registration_id)
            return RunReport(
                registration_id,
                RunStatus.FAILED,
                started,
                finished_at=utcnow(),
                error=f"{type(e).__name__}: {e}",
            )
        finally:
            structlog.contextvars.unbind_contextvars("run_id", "fact_source_id")

    # --- public API ---

    def run_now(self, registration_id: str) -> Optional[RunReport]:
        """Run one registration synchronously. Returns None when the run was skipped."""
        self.registry.get(registration_id)
        return self._fire(registration_id)

    def sweep_retention(self) -> dict[str, int]:
        """Prune every stored key under its registration's policy."""
        try:
            return self.executor.retention.sweep(self.registry)
        except Exception as e:
            logger.error("retention_sweep_crashed", error=str(e))
            return {}

    def next_fire_time(self, registration_id: str, after: Optional[datetime] = None) -> Optional[datetime]:
        """Next fire time strictly after ``after`` (defaults to now)."""
        trigger = self.registry.trigger_for(registration_id)
        after = after or utcnow()
        return trigger.get_next_fire_time(None, after + timedelta(microseconds=1))

    def _job_event_listener(self, event):
        """Log anything APScheduler itself reports about a job."""
        if event.code == EVENT_JOB_MAX_INSTANCES:
            metrics.counter("retriever_run_skipped")
            logger.info("job_skipped_max_instances", job_id=event.job_id)
            return
        logger.error(
            "job_error",
            job_id=event.job_id,
            exception=str(event.exception),
            traceback=event.traceback,
        )

    def start(self):
        """Register one job per retriever (plus the retention sweep) and start."""
        for reg in self.registry:
            self.scheduler.add_job(
                self._fire,
                trigger=self.registry.trigger_for(reg.id),
                args=[reg.id],
                id=f"{JOB_PREFIX}{reg.id}",
                name=reg.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=self.misfire_grace_seconds,
            )
            logger.info("retriever_scheduled", fact_source_id=reg.id, cadence=reg.cadence)

        if self.retention_sweep_cadence:
            self.scheduler.add_job(
                self.sweep_retention,
                trigger=parse_cadence(self.retention_sweep_cadence, self.registry.timezone),
                id=SWEEP_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("retention_sweep_scheduled", cadence=self.retention_sweep_cadence)

        self.scheduler.add_listener(
            self._job_event_listener, EVENT_JOB_ERROR | EVENT_JOB_MAX_INSTANCES
        )
        self.scheduler.start()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def jobs(self) -> list:
        return self.scheduler.get_jobs()

    def stop(self, wait: bool = True):
        """Stop scheduler. With wait=True in-flight runs finish or hit their timeout."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
