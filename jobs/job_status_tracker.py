"""
Job Status Tracker
Per-job run statistics and aggregate health for the background job manager
"""

import copy
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from models import utc_now

logger = logging.getLogger(__name__)

NOT_RUN_YET = "Not run yet"


@dataclass
class JobStatus:
    """Runtime telemetry for one recurring job"""

    job_name: str
    next_scheduled: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_result: str = NOT_RUN_YET
    run_count: int = 0
    error_count: int = 0
    average_runtime: timedelta = timedelta(0)  # duration of the most recent run
    is_running: bool = False
    enabled: bool = True

    @property
    def is_failing(self) -> bool:
        """More than half of all runs errored"""
        return self.error_count * 2 > self.run_count

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_run"] = self.last_run.isoformat() if self.last_run else None
        data["next_scheduled"] = self.next_scheduled.isoformat() if self.next_scheduled else None
        data["average_runtime"] = self.average_runtime.total_seconds()
        return data


@dataclass
class JobHealth:
    healthy: bool
    total_jobs: int
    running_jobs: int
    failed_jobs: int
    jobs: Dict[str, JobStatus] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "total_jobs": self.total_jobs,
            "running_jobs": self.running_jobs,
            "failed_jobs": self.failed_jobs,
            "jobs": {name: status.to_dict() for name, status in self.jobs.items()},
        }


class JobStatusTracker:
    """
    Thread-safe registry of JobStatus records keyed by job name.

    Readers always get deep copies, so a snapshot taken mid-update is either
    entirely before or entirely after that update and callers can never
    mutate tracker-owned records.
    """

    def __init__(
        self,
        interval_provider: Callable[[str], timedelta],
        clock: Callable[[], datetime] = utc_now,
    ):
        self._interval_provider = interval_provider
        self._clock = clock
        self._statuses: Dict[str, JobStatus] = {}
        self._lock = threading.Lock()

    def initialize(self, job_names: Iterable[str]) -> None:
        now = self._clock()
        with self._lock:
            self._statuses = {
                name: JobStatus(job_name=name, next_scheduled=now + self._interval_provider(name))
                for name in job_names
            }
        logger.info(f"📋 Tracking jobs: {', '.join(self._statuses)}")

    def mark_running(self, job_name: str) -> None:
        with self._lock:
            status = self._require(job_name)
            status.is_running = True

    def record_outcome(self, job_name: str, result: str, duration: timedelta, is_error: bool) -> None:
        """Record one finished invocation, successful or not"""
        interval = self._interval_provider(job_name)
        now = self._clock()
        with self._lock:
            status = self._require(job_name)
            status.last_run = now
            status.last_result = result
            status.run_count += 1
            if is_error:
                status.error_count += 1
            status.average_runtime = duration
            status.is_running = False
            status.next_scheduled = now + interval

    def reschedule(self, job_name: Optional[str] = None) -> None:
        """Recompute next_scheduled from the current intervals, e.g. after a config swap"""
        now = self._clock()
        with self._lock:
            names = [job_name] if job_name else list(self._statuses)
            for name in names:
                status = self._require(name)
                base = status.last_run or now
                status.next_scheduled = base + self._interval_provider(name)

    def get(self, job_name: str) -> JobStatus:
        with self._lock:
            return copy.deepcopy(self._require(job_name))

    def snapshot(self) -> Dict[str, JobStatus]:
        with self._lock:
            return copy.deepcopy(self._statuses)

    def health(self) -> JobHealth:
        statuses = self.snapshot()
        failed: List[str] = [name for name, status in statuses.items() if status.is_failing]
        running = sum(1 for status in statuses.values() if status.is_running)
        return JobHealth(
            healthy=not failed,
            total_jobs=len(statuses),
            running_jobs=running,
            failed_jobs=len(failed),
            jobs=statuses,
        )

    def _require(self, job_name: str) -> JobStatus:
        status = self._statuses.get(job_name)
        if status is None:
            raise KeyError(f"Unknown job: {job_name}")
        return status
