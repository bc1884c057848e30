"""Department KPI calculation.

A department report is built in two phases: the request, assignment and staff
rows the KPIs depend on are read through the caller's session, then every KPI
is computed on a worker pool from those rows and joined before anything is
written. Persisting a report is one transaction covering all metric types.
"""

from __future__ import annotations

import concurrent.futures
import logging
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.models.city import Assignment, Department, RequestPriority, RequestStatus, ServiceRequest, User, UserRole
from app.models.metrics import MetricType, PeriodType
from app.services.common import coerce_uuid, ensure_utc, hours_between, safe_div, utc_now
from app.services.metrics.errors import MetricsNotFoundError, MetricsPersistenceError
from app.services.metrics.observability import BATCH_DURATION, BATCH_ITEMS
from app.services.metrics.periods import PeriodWindow, resolve_lookback_window
from app.services.metrics.snapshots import SnapshotStore, snapshot_store

logger = logging.getLogger(__name__)

RESOLVED_STATUSES = frozenset({RequestStatus.resolved, RequestStatus.closed})
TERMINAL_STATUSES = RESOLVED_STATUSES | {RequestStatus.cancelled}
STAFF_ROLES = (UserRole.clerk, UserRole.field_agent, UserRole.supervisor)

PRIORITY_WEIGHTS = {
    RequestPriority.urgent: 4,
    RequestPriority.high: 3,
    RequestPriority.medium: 2,
    RequestPriority.low: 1,
}
DEFAULT_PRIORITY_WEIGHT = 2
MAX_AGE_WEIGHT = 2.0
WEEKLY_CAPACITY_HOURS = 40.0
DEFAULT_HANDLING_HOURS = 2.0
MAX_UTILIZATION_RATE = 150.0
OVERLOADED_THRESHOLD = 100.0
UNDERUTILIZED_THRESHOLD = 50.0


@dataclass(frozen=True)
class RequestFacts:
    id: str
    status: RequestStatus
    priority: RequestPriority | None
    category: str
    created_at: datetime
    closed_at: datetime | None = None
    sla_due_at: datetime | None = None
    satisfaction_rating: int | None = None
    assignment_count: int = 0


@dataclass
class AgentWorkloadReport:
    user_id: str
    name: str
    email: str
    active_requests: int
    completed_requests: int
    average_handling_time: float
    workload_score: float
    utilization_rate: float


@dataclass
class DepartmentReport:
    department_id: str
    department_name: str
    period: PeriodType
    period_start: datetime
    period_end: datetime
    average_resolution_time: float
    sla_compliance_rate: float
    first_call_resolution_rate: float
    citizen_satisfaction_score: float
    request_volume: int
    escalation_rate: float
    staff_utilization: float
    agent_workloads: list[AgentWorkloadReport] = field(default_factory=list)
    category_breakdown: dict[str, int] = field(default_factory=dict)
    priority_breakdown: dict[str, int] = field(default_factory=dict)
    calculated_at: datetime | None = None

    @property
    def window(self) -> PeriodWindow:
        return PeriodWindow(period=self.period, start_at=self.period_start, end_at=self.period_end)

    def metric_values(self) -> dict[MetricType, float]:
        return {
            MetricType.average_resolution_time: self.average_resolution_time,
            MetricType.sla_compliance_rate: self.sla_compliance_rate,
            MetricType.first_call_resolution_rate: self.first_call_resolution_rate,
            MetricType.citizen_satisfaction_score: self.citizen_satisfaction_score,
            MetricType.request_volume: float(self.request_volume),
            MetricType.escalation_rate: self.escalation_rate,
            MetricType.staff_utilization: self.staff_utilization,
        }


# ---------------------------------------------------------------------------
# KPI formulas
# ---------------------------------------------------------------------------


def _mean(values: list[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def average_resolution_time(closed: Iterable[RequestFacts]) -> float:
    """Mean hours from creation to closure; 0 when nothing closed."""
    hours = [
        hours_between(r.created_at, r.closed_at)
        for r in closed
        if r.status in RESOLVED_STATUSES and r.closed_at is not None
    ]
    return _mean(hours)


def sla_compliance_rate(created: Iterable[RequestFacts]) -> float:
    requests = list(created)
    if not requests:
        return 100.0
    compliant = 0
    for request in requests:
        if request.closed_at is None:
            continue
        if request.sla_due_at is None or ensure_utc(request.closed_at) <= ensure_utc(request.sla_due_at):
            compliant += 1
    return compliant / len(requests) * 100


def first_call_resolution_rate(closed: Iterable[RequestFacts]) -> float:
    resolved = [r for r in closed if r.status in RESOLVED_STATUSES]
    first_call = sum(1 for r in resolved if r.assignment_count <= 1)
    return safe_div(float(first_call), float(len(resolved))) * 100


def citizen_satisfaction_score(closed: Iterable[RequestFacts]) -> float:
    return _mean([float(r.satisfaction_rating) for r in closed if r.satisfaction_rating is not None])


def request_volume(created: Iterable[RequestFacts]) -> int:
    return sum(1 for _ in created)


def escalation_rate(created: Iterable[RequestFacts]) -> float:
    requests = list(created)
    escalated = sum(1 for r in requests if r.assignment_count > 1)
    return safe_div(float(escalated), float(len(requests))) * 100


def staff_utilization(workloads: Iterable[AgentWorkloadReport]) -> float:
    return _mean([w.utilization_rate for w in workloads])


def category_breakdown(created: Iterable[RequestFacts]) -> dict[str, int]:
    return dict(Counter(r.category for r in created))


def priority_breakdown(created: Iterable[RequestFacts]) -> dict[str, int]:
    return dict(Counter((r.priority.value if r.priority else "unknown") for r in created))


def priority_weight(priority: RequestPriority | None) -> int:
    return PRIORITY_WEIGHTS.get(priority, DEFAULT_PRIORITY_WEIGHT)


def age_weight(age_days: float) -> float:
    return min(max(age_days, 0.0) / 7, MAX_AGE_WEIGHT)


def request_workload_score(priority: RequestPriority | None, age_days: float) -> float:
    return priority_weight(priority) * (1 + age_weight(age_days))


def utilization_rate(active_count: int, average_handling_time: float) -> float:
    needed_hours = active_count * (average_handling_time or DEFAULT_HANDLING_HOURS)
    return min(needed_hours / WEEKLY_CAPACITY_HOURS * 100, MAX_UTILIZATION_RATE)


def build_workload_report(
    user_id: str, name: str, email: str, assigned: Iterable[RequestFacts], now: datetime
) -> AgentWorkloadReport:
    requests = list(assigned)
    active = [r for r in requests if r.status not in TERMINAL_STATUSES]
    completed = [r for r in requests if r.status in RESOLVED_STATUSES]

    handling_hours = [hours_between(r.created_at, r.closed_at) for r in completed if r.closed_at is not None]
    average_handling_time = sum(handling_hours) / len(completed) if completed else 0.0

    workload_score = 0.0
    for request in active:
        age_days = hours_between(request.created_at, now) / 24
        workload_score += request_workload_score(request.priority, age_days)

    return AgentWorkloadReport(
        user_id=user_id,
        name=name,
        email=email,
        active_requests=len(active),
        completed_requests=len(completed),
        average_handling_time=average_handling_time,
        workload_score=workload_score,
        utilization_rate=utilization_rate(len(active), average_handling_time),
    )


def summarize_workloads(workloads: list[AgentWorkloadReport]) -> dict[str, Any]:
    return {
        "total_staff": len(workloads),
        "average_workload_score": _mean([w.workload_score for w in workloads]),
        "average_utilization": _mean([w.utilization_rate for w in workloads]),
        "overloaded_staff": sum(1 for w in workloads if w.utilization_rate > OVERLOADED_THRESHOLD),
        "underutilized_staff": sum(1 for w in workloads if w.utilization_rate < UNDERUTILIZED_THRESHOLD),
    }


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def _assignment_counts(db: Session, request_ids: list) -> dict[str, int]:
    if not request_ids:
        return {}
    rows = (
        db.query(Assignment.request_id, func.count(Assignment.id))
        .filter(Assignment.request_id.in_(request_ids))
        .group_by(Assignment.request_id)
        .all()
    )
    return {str(request_id): int(count) for request_id, count in rows}


def _to_facts(db: Session, requests: list[ServiceRequest]) -> list[RequestFacts]:
    counts = _assignment_counts(db, [r.id for r in requests])
    return [
        RequestFacts(
            id=str(r.id),
            status=r.status,
            priority=r.priority,
            category=r.category,
            created_at=ensure_utc(r.created_at),
            closed_at=ensure_utc(r.closed_at),
            sla_due_at=ensure_utc(r.sla_due_at),
            satisfaction_rating=r.satisfaction_rating,
            assignment_count=counts.get(str(r.id), 0),
        )
        for r in requests
    ]


def _created_in_window(db: Session, department_id: str, window: PeriodWindow) -> list[RequestFacts]:
    requests = (
        db.query(ServiceRequest)
        .filter(
            ServiceRequest.department_id == coerce_uuid(department_id),
            ServiceRequest.created_at >= window.start_at,
            ServiceRequest.created_at <= window.end_at,
        )
        .all()
    )
    return _to_facts(db, requests)


def _closed_in_window(db: Session, department_id: str, window: PeriodWindow) -> list[RequestFacts]:
    requests = (
        db.query(ServiceRequest)
        .filter(
            ServiceRequest.department_id == coerce_uuid(department_id),
            ServiceRequest.closed_at.isnot(None),
            ServiceRequest.closed_at >= window.start_at,
            ServiceRequest.closed_at <= window.end_at,
        )
        .all()
    )
    return _to_facts(db, requests)


def _staff_assignments(db: Session, department_id: str) -> list[tuple[User, list[RequestFacts]]]:
    staff = (
        db.query(User)
        .filter(User.department_id == coerce_uuid(department_id), User.role.in_(STAFF_ROLES))
        .order_by(User.name.asc())
        .all()
    )
    if not staff:
        return []
    assigned = (
        db.query(ServiceRequest)
        .filter(ServiceRequest.assigned_to.in_([member.id for member in staff]))
        .all()
    )
    by_assignee: dict[str, list[ServiceRequest]] = {}
    for request in assigned:
        by_assignee.setdefault(str(request.assigned_to), []).append(request)

    out: list[tuple[User, list[RequestFacts]]] = []
    for member in staff:
        requests = by_assignee.get(str(member.id), [])
        out.append(
            (
                member,
                [
                    RequestFacts(
                        id=str(r.id),
                        status=r.status,
                        priority=r.priority,
                        category=r.category,
                        created_at=ensure_utc(r.created_at),
                        closed_at=ensure_utc(r.closed_at),
                    )
                    for r in requests
                ],
            )
        )
    return out


def _workloads_from_staff(
    staff: list[tuple[User, list[RequestFacts]]], now: datetime
) -> list[AgentWorkloadReport]:
    workloads = [
        build_workload_report(str(member.id), member.name, member.email, requests, now)
        for member, requests in staff
    ]
    return sorted(workloads, key=lambda w: w.workload_score, reverse=True)


class DepartmentMetricsService:
    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        max_workers: int | None = None,
        store: SnapshotStore | None = None,
    ):
        self._clock = clock or utc_now
        self._max_workers = max(1, max_workers or settings.metrics_max_workers)
        self._store = store or snapshot_store

    def _get_department(self, db: Session, department_id: str) -> Department:
        try:
            department = db.get(Department, coerce_uuid(department_id))
        except ValueError:
            department = None
        if not department:
            raise MetricsNotFoundError("department_not_found", f"Department not found: {department_id}")
        return department

    def calculate_staff_workloads(self, db: Session, department_id: str) -> list[AgentWorkloadReport]:
        self._get_department(db, department_id)
        return _workloads_from_staff(_staff_assignments(db, department_id), self._clock())

    def generate_department_report(
        self, db: Session, department_id: str, period: PeriodType | str
    ) -> DepartmentReport:
        now = self._clock()
        window = resolve_lookback_window(period, now)
        department = self._get_department(db, department_id)

        created = _created_in_window(db, department_id, window)
        closed = _closed_in_window(db, department_id, window)
        staff = _staff_assignments(db, department_id)

        with concurrent.futures.ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures = {
                "average_resolution_time": executor.submit(average_resolution_time, closed),
                "sla_compliance_rate": executor.submit(sla_compliance_rate, created),
                "first_call_resolution_rate": executor.submit(first_call_resolution_rate, closed),
                "citizen_satisfaction_score": executor.submit(citizen_satisfaction_score, closed),
                "request_volume": executor.submit(request_volume, created),
                "escalation_rate": executor.submit(escalation_rate, created),
                "agent_workloads": executor.submit(_workloads_from_staff, staff, now),
                "category_breakdown": executor.submit(category_breakdown, created),
                "priority_breakdown": executor.submit(priority_breakdown, created),
            }
            results = {name: future.result() for name, future in futures.items()}

        return DepartmentReport(
            department_id=str(department.id),
            department_name=department.name,
            period=window.period,
            period_start=window.start_at,
            period_end=window.end_at,
            staff_utilization=staff_utilization(results["agent_workloads"]),
            calculated_at=self._clock(),
            **results,
        )

    def store_department_metrics(self, db: Session, report: DepartmentReport) -> None:
        calculated_at = report.calculated_at or self._clock()
        window = report.window
        try:
            for metric_type, value in report.metric_values().items():
                self._store.upsert_metric_snapshot(
                    db,
                    department_id=report.department_id,
                    metric_type=metric_type,
                    window=window,
                    value=float(value),
                    calculated_at=calculated_at,
                )
            db.commit()
        except Exception as exc:
            db.rollback()
            raise MetricsPersistenceError(
                "department_metrics_write_failed",
                f"Failed to store {window.period.value} metrics for department {report.department_id}",
            ) from exc

    def calculate_metrics_for_all_departments(self, db: Session, period: PeriodType | str) -> dict[str, Any]:
        # Validates the period before touching any department.
        window_period = resolve_lookback_window(period, self._clock()).period
        department_ids = [str(row[0]) for row in db.query(Department.id).order_by(Department.name.asc()).all()]
        logger.info(
            "METRICS_DEPARTMENT_BATCH_START period=%s departments=%s", window_period.value, len(department_ids)
        )

        processed: list[str] = []
        failed: list[str] = []
        with BATCH_DURATION.labels(kind="department", period=window_period.value).time():
            for department_id in department_ids:
                try:
                    report = self.generate_department_report(db, department_id, window_period)
                    self.store_department_metrics(db, report)
                except Exception:
                    db.rollback()
                    failed.append(department_id)
                    BATCH_ITEMS.labels(kind="department", period=window_period.value, status="error").inc()
                    logger.exception(
                        "METRICS_DEPARTMENT_FAILED department_id=%s period=%s", department_id, window_period.value
                    )
                    continue
                processed.append(department_id)
                BATCH_ITEMS.labels(kind="department", period=window_period.value, status="success").inc()
                logger.info("METRICS_DEPARTMENT_OK department_id=%s period=%s", department_id, window_period.value)

        logger.info(
            "METRICS_DEPARTMENT_BATCH_DONE period=%s processed=%s failed=%s",
            window_period.value,
            len(processed),
            len(failed),
        )
        return {
            "period": window_period.value,
            "processed": len(processed),
            "failed": len(failed),
            "department_ids": processed,
            "failed_department_ids": failed,
        }


department_metrics = DepartmentMetricsService()
