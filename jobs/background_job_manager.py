"""
Background Job Manager
Schedules each escrow job as an APScheduler interval job, with manual
triggering, live reconfiguration and a graceful stop.

Lifecycle is forward-only: not started -> running -> shutting down -> stopped.
After stop() returns no job body is executing and none will start.
"""

import asyncio
import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Union

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from jobs.job_status_tracker import JobHealth, JobStatus, JobStatusTracker
from models import utc_now

logger = logging.getLogger(__name__)


class JobManagerNotStartedError(Exception):
    """Raised by trigger and config operations when the manager is not running"""

    pass


class UnknownJobError(ValueError):
    """Raised when a job name is not one of the known job kinds"""

    pass


class InvalidJobConfigError(ValueError):
    pass


class JobKind(Enum):
    """The closed set of recurring escrow jobs"""

    RATING_REMINDER = "rating_reminder"
    AUTO_RELEASE = "auto_release"
    DISPUTE_ESCALATION = "dispute_escalation"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    def interval(self, config: "JobConfig") -> timedelta:
        if self is JobKind.RATING_REMINDER:
            return config.rating_reminder_interval
        if self is JobKind.AUTO_RELEASE:
            return config.auto_release_interval
        return config.dispute_escalation_interval

    @classmethod
    def from_name(cls, name: str) -> "JobKind":
        """Accept "auto-release", "auto_release" or "AUTO_RELEASE" """
        normalized = (name or "").strip().lower().replace("-", "_")
        for kind in cls:
            if kind.value == normalized:
                return kind
        valid = ", ".join(kind.value.replace("_", "-") for kind in cls)
        raise UnknownJobError(f"Unknown job '{name}'. Valid jobs: {valid}")


_DISPLAY_NAMES = {
    JobKind.RATING_REMINDER: "Rating Reminder",
    JobKind.AUTO_RELEASE: "Auto Release",
    JobKind.DISPUTE_ESCALATION: "Dispute Escalation",
}


@dataclass(frozen=True)
class JobConfig:
    """Fully specified job settings; replaced whole, never patched in place"""

    rating_reminder_interval: timedelta = timedelta(hours=24)
    auto_release_interval: timedelta = timedelta(hours=1)
    dispute_escalation_interval: timedelta = timedelta(hours=24)
    rating_deadline_days: int = 7
    min_rating_for_auto_release: float = 3.0
    dispute_escalation_hours: int = 72

    def validate(self) -> "JobConfig":
        for name in ("rating_reminder_interval", "auto_release_interval", "dispute_escalation_interval"):
            value = getattr(self, name)
            if not isinstance(value, timedelta) or value <= timedelta(0):
                raise InvalidJobConfigError(f"{name} must be a positive duration, got {value!r}")
        if not 0.0 <= self.min_rating_for_auto_release <= 5.0:
            raise InvalidJobConfigError(
                f"min_rating_for_auto_release must be between 0 and 5, got {self.min_rating_for_auto_release}"
            )
        if self.rating_deadline_days <= 0:
            raise InvalidJobConfigError(f"rating_deadline_days must be positive, got {self.rating_deadline_days}")
        if self.dispute_escalation_hours <= 0:
            raise InvalidJobConfigError(
                f"dispute_escalation_hours must be positive, got {self.dispute_escalation_hours}"
            )
        return self

    def replace(self, **changes: Any) -> "JobConfig":
        try:
            updated = dataclasses.replace(self, **changes)
        except TypeError as e:
            raise InvalidJobConfigError(str(e)) from e
        return updated.validate()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rating_reminder_interval": self.rating_reminder_interval.total_seconds(),
            "auto_release_interval": self.auto_release_interval.total_seconds(),
            "dispute_escalation_interval": self.dispute_escalation_interval.total_seconds(),
            "rating_deadline_days": self.rating_deadline_days,
            "min_rating_for_auto_release": self.min_rating_for_auto_release,
            "dispute_escalation_hours": self.dispute_escalation_hours,
        }


@dataclass(frozen=True)
class JobResult:
    message: str
    has_error: bool = False


JobBody = Callable[[JobConfig], Awaitable[JobResult]]


class ManagerState(Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"

class BackgroundJobManager:
    """APScheduler interval job per job kind; in-flight runs are joined on stop"""

    def __init__(
        self,
        jobs: Mapping[JobKind, JobBody],
        config: Optional[JobConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._jobs: Dict[JobKind, JobBody] = dict(jobs)
        self._config = (config or JobConfig()).validate()
        self._config_lock = threading.Lock()
        self._state = ManagerState.NOT_STARTED
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._stopping: Optional[asyncio.Future] = None
        self.tracker = JobStatusTracker(self._interval_for, clock=clock)

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def config(self) -> JobConfig:
        """Current configuration, readable in any state"""
        with self._config_lock:
            return self._config

    def _interval_for(self, job_name: str) -> timedelta:
        return JobKind(job_name).interval(self.config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _build_scheduler(self) -> AsyncIOScheduler:
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,
            'misfire_grace_time': 120
        }
        return AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC',
            event_loop=asyncio.get_running_loop(),
        )

    async def start(self, config: Optional[JobConfig] = None) -> None:
        if self._state == ManagerState.RUNNING:
            logger.warning("Background job manager already running")
            return
        if self._state != ManagerState.NOT_STARTED:
            raise RuntimeError(f"Background job manager cannot start from state {self._state.value}")

        if config is not None:
            with self._config_lock:
                self._config = config.validate()

        self.tracker.initialize(kind.value for kind in self._jobs)
        self.scheduler = self._build_scheduler()
        current = self.config
        for kind in self._jobs:
            self.scheduler.add_job(
                self._run_scheduled,
                trigger=IntervalTrigger(seconds=kind.interval(current).total_seconds()),
                args=[kind],
                id=kind.value,
                name=kind.display_name,
                replace_existing=True,
            )
            logger.info(f"⏰ {kind.display_name} scheduled every {kind.interval(current)}")

        self._state = ManagerState.RUNNING
        self.scheduler.start()
        logger.info(f"✅ Background job manager started with {len(self._jobs)} job(s)")

    async def stop(self) -> None:
        """
        Stop scheduling and wait for every in-flight run to finish.

        Concurrent callers share one shutdown; each returns only once no job
        body is executing.
        """
        if self._state == ManagerState.NOT_STARTED:
            self._state = ManagerState.STOPPED
            return
        if self._state == ManagerState.STOPPED:
            return

        if self._stopping is None:
            self._state = ManagerState.SHUTTING_DOWN
            self._stopping = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._stopping)

    async def _shutdown(self) -> None:
        logger.info("🛑 Stopping background job manager...")
        self.scheduler.shutdown(wait=False)

        while self._in_flight:
            pending = list(self._in_flight)
            results = await asyncio.gather(*pending, return_exceptions=True)
            for task, result in zip(pending, results):
                if isinstance(result, BaseException):
                    logger.error(f"❌ Job task {task.get_name()} ended with error: {result}")
            self._in_flight.difference_update(pending)

        self._state = ManagerState.STOPPED
        logger.info("✅ Background job manager stopped")

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def trigger(self, job: Union[JobKind, str]) -> asyncio.Task:
        """Run one job now, alongside its recurring schedule"""
        self._require_running()
        kind = job if isinstance(job, JobKind) else JobKind.from_name(job)
        if kind not in self._jobs:
            raise UnknownJobError(f"Job '{kind.value}' is not registered with this manager")

        task = self._spawn(kind, "manual")
        logger.info(f"🔄 Manually triggered {kind.display_name}")
        return task

    def update_config(self, config: JobConfig) -> JobConfig:
        """Swap in a new configuration and reschedule jobs whose interval changed"""
        if self._state == ManagerState.NOT_STARTED:
            raise JobManagerNotStartedError("Background job manager has not been started")
        config.validate()
        with self._config_lock:
            previous = self._config
            self._config = config

        if self._state == ManagerState.RUNNING:
            for kind in self._jobs:
                interval = kind.interval(config)
                if interval != kind.interval(previous):
                    self.scheduler.reschedule_job(kind.value, trigger=IntervalTrigger(seconds=interval.total_seconds()))
                    logger.info(f"⏰ {kind.display_name} rescheduled every {interval}")
        self.tracker.reschedule()
        logger.info(f"🔧 Job configuration updated: {previous.to_dict()} -> {config.to_dict()}")
        return config

    def get_config(self) -> JobConfig:
        if self._state == ManagerState.NOT_STARTED:
            raise JobManagerNotStartedError("Background job manager has not been started")
        return self.config

    def get_job_statuses(self) -> Dict[str, JobStatus]:
        if self._state == ManagerState.NOT_STARTED:
            raise JobManagerNotStartedError("Background job manager has not been started")
        return self.tracker.snapshot()

    def get_job_health(self) -> JobHealth:
        if self._state == ManagerState.NOT_STARTED:
            raise JobManagerNotStartedError("Background job manager has not been started")
        return self.tracker.health()

    def _require_running(self) -> None:
        if self._state == ManagerState.NOT_STARTED:
            raise JobManagerNotStartedError("Background job manager has not been started")
        if self._state != ManagerState.RUNNING:
            raise JobManagerNotStartedError(f"Background job manager is {self._state.value}")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _spawn(self, kind: JobKind, trigger: str) -> asyncio.Task:
        task = asyncio.create_task(self._execute(kind, trigger), name=f"escrow-job-{trigger}:{kind.value}")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _run_scheduled(self, kind: JobKind) -> None:
        """APScheduler entry point"""
        if self._state != ManagerState.RUNNING:
            return
        # Scheduler shutdown cancels this wrapper; the shielded run carries on and stop() joins it
        await asyncio.shield(self._spawn(kind, "scheduled"))

    async def _execute(self, kind: JobKind, trigger: str) -> None:
        body = self._jobs[kind]
        config = self.config
        message = "Interrupted"
        is_error = True

        self.tracker.mark_running(kind.value)
        started = time.monotonic()
        logger.info(f"🔄 Running {kind.display_name} ({trigger})")
        try:
            result = await body(config)
            message = result.message
            is_error = result.has_error
        except Exception as e:
            logger.error(f"❌ {kind.display_name} job failed: {e}", exc_info=True)
            message = f"Error: {e}"
        finally:
            duration = timedelta(seconds=time.monotonic() - started)
            self.tracker.record_outcome(kind.value, message, duration, is_error)

        if is_error:
            logger.warning(f"⚠️ {kind.display_name} finished with errors: {message}")
        else:
            logger.info(f"✅ {kind.display_name}: {message}")
