"""In-process scheduler for recurring department metric runs.

Each job owns one ``threading.Timer`` armed for its next wall-clock fire time.
A tick runs the department batch driver on a fresh session and re-arms the
job if it is still running. A failing tick is logged and counted; it never
stops the job or touches other jobs.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from app.config import settings
from app.models.metrics import PeriodType
from app.services.common import utc_now
from app.services.metrics.department import DepartmentMetricsService, department_metrics
from app.services.metrics.observability import SCHEDULED_RUNS
from app.services.metrics.periods import (
    DEFAULT_TRIGGERS,
    TriggerSpec,
    coerce_period,
    next_fire_time,
    safe_zoneinfo,
)

logger = logging.getLogger(__name__)


ALL_JOBS = "all"


def job_name(period: PeriodType) -> str:
    return period.value


@dataclass
class ScheduledJob:
    name: str
    period: PeriodType
    trigger: TriggerSpec
    timezone: ZoneInfo
    running: bool = False
    next_run_at: datetime | None = None
    generation: int = 0
    timer: Any = field(default=None, repr=False)


class MetricsScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        calculator: DepartmentMetricsService | None = None,
        clock: Callable[[], datetime] | None = None,
        timezone: str | None = None,
        triggers: dict[PeriodType, TriggerSpec] | None = None,
        timer_factory: Callable[..., Any] | None = None,
        enabled: bool | None = None,
    ):
        self._session_factory = session_factory
        self._calculator = calculator or department_metrics
        self._clock = clock or utc_now
        self._timezone = safe_zoneinfo(timezone or settings.metrics_timezone)
        self._triggers = dict(triggers or DEFAULT_TRIGGERS)
        self._timer_factory = timer_factory or threading.Timer
        self._enabled = settings.metrics_scheduler_enabled if enabled is None else enabled
        self._jobs: dict[str, ScheduledJob] = {}
        self._lock = threading.RLock()

    # -- internals ---------------------------------------------------------

    def _run(self, period: PeriodType) -> dict[str, Any]:
        session = self._session_factory()
        try:
            return self._calculator.calculate_metrics_for_all_departments(session, period)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _arm(self, job: ScheduledJob) -> None:
        # Only the timer carrying the current generation may run or re-arm.
        if job.timer is not None:
            job.timer.cancel()
        job.generation += 1
        now = self._clock()
        fire_at = next_fire_time(job.trigger, now, job.timezone)
        delay = max((fire_at - now).total_seconds(), 0.0)
        timer = self._timer_factory(delay, self._tick, args=(job.name, job.generation))
        timer.daemon = True
        timer.start()
        job.timer = timer
        job.next_run_at = fire_at

    @staticmethod
    def _disarm(job: ScheduledJob) -> None:
        if job.timer is not None:
            job.timer.cancel()
        job.timer = None
        job.next_run_at = None

    def _tick(self, name: str, generation: int) -> None:
        with self._lock:
            job = self._jobs.get(name)
            if job is None or not job.running or job.generation != generation:
                return
        logger.info("METRICS_JOB_START job=%s period=%s", name, job.period.value)
        try:
            result = self._run(job.period)
        except Exception:
            SCHEDULED_RUNS.labels(job=name, status="error").inc()
            logger.exception("METRICS_JOB_FAILED job=%s period=%s", name, job.period.value)
        else:
            SCHEDULED_RUNS.labels(job=name, status="success").inc()
            logger.info(
                "METRICS_JOB_COMPLETE job=%s period=%s processed=%s failed=%s",
                name,
                job.period.value,
                result.get("processed"),
                result.get("failed"),
            )
        finally:
            with self._lock:
                if job.running and job.generation == generation:
                    self._arm(job)

    # -- public API --------------------------------------------------------

    def initialize(self) -> None:
        if not self._enabled:
            logger.info("METRICS_SCHEDULER_DISABLED")
            return
        with self._lock:
            for period, trigger in self._triggers.items():
                name = job_name(period)
                if name in self._jobs:
                    continue
                job = ScheduledJob(name=name, period=period, trigger=trigger, timezone=self._timezone)
                self._jobs[name] = job
                job.running = True
                self._arm(job)
                logger.info(
                    "METRICS_JOB_REGISTERED job=%s trigger=%s timezone=%s next_run_at=%s",
                    name,
                    trigger.describe(),
                    self._timezone.key,
                    job.next_run_at.isoformat(),
                )
        logger.info("METRICS_SCHEDULER_READY jobs=%s", len(self._jobs))

    def trigger_immediate_calculation(self, period: PeriodType | str) -> dict[str, Any]:
        period = coerce_period(period)
        logger.info("METRICS_MANUAL_RUN_START period=%s", period.value)
        try:
            result = self._run(period)
        except Exception:
            logger.exception("METRICS_MANUAL_RUN_FAILED period=%s", period.value)
            raise
        logger.info(
            "METRICS_MANUAL_RUN_COMPLETE period=%s processed=%s failed=%s",
            period.value,
            result.get("processed"),
            result.get("failed"),
        )
        return result

    def get_job_status(self) -> dict[str, bool]:
        with self._lock:
            return {name: job.running for name, job in self._jobs.items()}

    def stop_job(self, name: str) -> bool:
        if name == ALL_JOBS:
            self.stop_all_jobs()
            return True
        with self._lock:
            job = self._jobs.get(name)
            if job is None:
                return False
            job.running = False
            self._disarm(job)
        logger.info("METRICS_JOB_STOPPED job=%s", name)
        return True

    def start_job(self, name: str) -> bool:
        if name == ALL_JOBS:
            for registered in list(self._jobs):
                self.start_job(registered)
            return True
        with self._lock:
            job = self._jobs.get(name)
            if job is None:
                return False
            if not job.running:
                job.running = True
                self._arm(job)
        logger.info("METRICS_JOB_STARTED job=%s", name)
        return True

    def restart_job(self, name: str) -> bool:
        if name == ALL_JOBS:
            self.restart_all_jobs()
            return True
        if not self.stop_job(name):
            return False
        return self.start_job(name)

    def stop_all_jobs(self) -> None:
        for name in list(self._jobs):
            self.stop_job(name)

    def restart_all_jobs(self) -> None:
        for name in list(self._jobs):
            self.restart_job(name)

    def describe_jobs(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                name: {
                    "running": job.running,
                    "period": job.period.value,
                    "timezone": job.timezone.key,
                    "trigger": job.trigger.describe(),
                    "next_run_at": job.next_run_at.isoformat() if job.next_run_at else None,
                }
                for name, job in self._jobs.items()
            }
