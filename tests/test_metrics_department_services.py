import dataclasses
from datetime import UTC, datetime, timedelta

import pytest

from app.models.city import Department, RequestPriority, RequestStatus, UserRole
from app.models.metrics import DepartmentMetricSnapshot, MetricType, PeriodType
from app.schemas.metrics import DepartmentReportRead, WorkloadSummaryRead
from app.services.metrics.department import (
    AgentWorkloadReport,
    DepartmentMetricsService,
    request_workload_score,
    summarize_workloads,
    utilization_rate,
)
from app.services.metrics.errors import MetricsNotFoundError, MetricsPersistenceError, UnsupportedPeriodError
from app.services.metrics.snapshots import SnapshotStore

FIXED_NOW = datetime(2026, 3, 18, 12, 0, tzinfo=UTC)


@pytest.fixture()
def service(fixed_clock):
    return DepartmentMetricsService(clock=fixed_clock, max_workers=4)


class _FailingStore(SnapshotStore):
    def __init__(self, fail_on: MetricType):
        self.fail_on = fail_on

    def upsert_metric_snapshot(self, db, **kwargs):
        if kwargs["metric_type"] == self.fail_on:
            raise RuntimeError("disk full")
        return super().upsert_metric_snapshot(db, **kwargs)


# ---------------------------------------------------------------------------
# Report generation
# ---------------------------------------------------------------------------


def test_empty_window_defaults(db_session, department, service):
    report = service.generate_department_report(db_session, str(department.id), "daily")
    assert report.request_volume == 0
    assert report.sla_compliance_rate == 100.0
    assert report.average_resolution_time == 0.0
    assert report.first_call_resolution_rate == 0.0
    assert report.citizen_satisfaction_score == 0.0
    assert report.escalation_rate == 0.0
    assert report.staff_utilization == 0.0
    assert report.agent_workloads == []
    assert report.period == PeriodType.daily
    assert report.period_end == FIXED_NOW
    assert report.period_start == FIXED_NOW - timedelta(days=1)


def test_average_resolution_time_over_closed_requests(db_session, department, citizen, make_request, service):
    created_at = FIXED_NOW - timedelta(hours=10)
    for hours in (2, 4, 6):
        make_request(
            citizen,
            department,
            status=RequestStatus.resolved,
            created_at=created_at,
            closed_at=created_at + timedelta(hours=hours),
        )

    report = service.generate_department_report(db_session, department.id, "daily")
    assert report.average_resolution_time == pytest.approx(4.0)
    assert report.request_volume == 3


def test_sla_compliance_counts_open_requests_as_missed(db_session, department, citizen, make_request, service):
    created_at = FIXED_NOW - timedelta(hours=8)
    make_request(
        citizen,
        department,
        status=RequestStatus.closed,
        created_at=created_at,
        closed_at=created_at + timedelta(hours=1),
        sla_due_at=created_at + timedelta(hours=4),
    )
    make_request(
        citizen,
        department,
        status=RequestStatus.closed,
        created_at=created_at,
        closed_at=created_at + timedelta(hours=2),
    )
    make_request(
        citizen,
        department,
        status=RequestStatus.resolved,
        created_at=created_at,
        closed_at=created_at + timedelta(hours=6),
        sla_due_at=created_at + timedelta(hours=4),
    )
    make_request(citizen, department, status=RequestStatus.in_progress, created_at=created_at)

    report = service.generate_department_report(db_session, department.id, "daily")
    assert report.sla_compliance_rate == pytest.approx(50.0)


def test_first_call_resolution_and_escalation(
    db_session, department, citizen, clerk, make_request, add_assignments, service
):
    created_at = FIXED_NOW - timedelta(hours=8)
    first_call = make_request(
        citizen, department, status=RequestStatus.resolved, created_at=created_at, closed_at=FIXED_NOW
    )
    escalated = make_request(
        citizen, department, status=RequestStatus.closed, created_at=created_at, closed_at=FIXED_NOW
    )
    add_assignments(first_call, clerk, clerk, count=1)
    add_assignments(escalated, clerk, clerk, count=2)

    report = service.generate_department_report(db_session, department.id, "daily")
    assert report.first_call_resolution_rate == pytest.approx(50.0)
    assert report.escalation_rate == pytest.approx(50.0)


def test_satisfaction_averages_rated_closed_requests(db_session, department, citizen, make_request, service):
    created_at = FIXED_NOW - timedelta(hours=8)
    make_request(
        citizen,
        department,
        status=RequestStatus.resolved,
        created_at=created_at,
        closed_at=FIXED_NOW,
        satisfaction_rating=4,
    )
    make_request(
        citizen,
        department,
        status=RequestStatus.closed,
        created_at=created_at,
        closed_at=FIXED_NOW,
        satisfaction_rating=2,
    )
    make_request(citizen, department, status=RequestStatus.closed, created_at=created_at, closed_at=FIXED_NOW)

    report = service.generate_department_report(db_session, department.id, "daily")
    assert report.citizen_satisfaction_score == pytest.approx(3.0)


def test_breakdowns_only_count_requests_in_window(db_session, department, citizen, make_request, service):
    make_request(citizen, department, category="roads", priority=RequestPriority.high)
    make_request(citizen, department, category="roads", priority=RequestPriority.low)
    make_request(citizen, department, category="lighting", priority=RequestPriority.high)
    make_request(citizen, department, category="parks", created_at=FIXED_NOW - timedelta(days=3))

    report = service.generate_department_report(db_session, department.id, "daily")
    assert report.category_breakdown == {"roads": 2, "lighting": 1}
    assert report.priority_breakdown == {"high": 2, "low": 1}


def test_unknown_department_raises(db_session, service):
    with pytest.raises(MetricsNotFoundError) as exc_info:
        service.generate_department_report(db_session, "00000000-0000-0000-0000-000000000000", "daily")
    assert exc_info.value.status_code == 404


def test_community_period_is_rejected(db_session, department, service):
    with pytest.raises(UnsupportedPeriodError):
        service.generate_department_report(db_session, department.id, "yearly")


def test_report_validates_against_read_schema(db_session, department, clerk, service):
    report = service.generate_department_report(db_session, department.id, "weekly")
    payload = DepartmentReportRead.model_validate(report)
    assert payload.period == PeriodType.weekly
    assert payload.agent_workloads[0].name == "Bo Clerk"


# ---------------------------------------------------------------------------
# Workloads
# ---------------------------------------------------------------------------


def test_workload_score_monotonic_in_priority_and_age():
    priorities = [RequestPriority.low, RequestPriority.medium, RequestPriority.high, RequestPriority.urgent]
    by_priority = [request_workload_score(priority, 3) for priority in priorities]
    assert by_priority == sorted(by_priority)

    by_age = [request_workload_score(RequestPriority.high, days) for days in (0, 1, 7, 14, 30, 365)]
    assert by_age == sorted(by_age)
    assert by_age[-1] == pytest.approx(3 * (1 + 2))
    assert request_workload_score(None, 0) == 2


def test_utilization_rate_is_capped():
    assert utilization_rate(0, 0) == 0
    assert utilization_rate(10, 0) == pytest.approx(50.0)
    assert utilization_rate(100, 8) == 150.0


def test_staff_workloads(db_session, department, citizen, clerk, make_user, make_request, service):
    agent = make_user(UserRole.field_agent, department=department, name="Cy Agent")
    make_user(UserRole.citizen, department=department, name="Not Staff")

    make_request(
        citizen,
        department,
        status=RequestStatus.in_progress,
        priority=RequestPriority.medium,
        created_at=FIXED_NOW - timedelta(days=7),
        assignee=clerk,
    )
    make_request(
        citizen,
        department,
        status=RequestStatus.resolved,
        created_at=FIXED_NOW - timedelta(hours=10),
        closed_at=FIXED_NOW - timedelta(hours=6),
        assignee=clerk,
    )
    make_request(citizen, department, status=RequestStatus.cancelled, assignee=clerk)
    make_request(citizen, department, status=RequestStatus.assigned, priority=RequestPriority.low, assignee=agent)

    workloads = service.calculate_staff_workloads(db_session, department.id)
    assert [w.name for w in workloads] == ["Bo Clerk", "Cy Agent"]

    clerk_load = workloads[0]
    assert clerk_load.active_requests == 1
    assert clerk_load.completed_requests == 1
    assert clerk_load.average_handling_time == pytest.approx(4.0)
    assert clerk_load.workload_score == pytest.approx(4.0)
    assert clerk_load.utilization_rate == pytest.approx(10.0)

    agent_load = workloads[1]
    assert agent_load.average_handling_time == 0.0
    assert agent_load.utilization_rate == pytest.approx(5.0)

    report = service.generate_department_report(db_session, department.id, "daily")
    assert report.staff_utilization == pytest.approx(7.5)


def test_summarize_workloads():
    workloads = [
        AgentWorkloadReport("1", "A", "a@example.com", 30, 0, 4.0, 60.0, 150.0),
        AgentWorkloadReport("2", "B", "b@example.com", 1, 3, 2.0, 2.0, 5.0),
        AgentWorkloadReport("3", "C", "c@example.com", 15, 1, 2.0, 30.0, 75.0),
    ]
    summary = summarize_workloads(workloads)
    assert summary["total_staff"] == 3
    assert summary["overloaded_staff"] == 1
    assert summary["underutilized_staff"] == 1
    assert summary["average_workload_score"] == pytest.approx(92.0 / 3)
    assert WorkloadSummaryRead(**summary).average_utilization == pytest.approx(230.0 / 3)

    empty = summarize_workloads([])
    assert empty["average_utilization"] == 0.0


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def test_store_upserts_one_row_per_metric(db_session, department, citizen, make_request, service):
    make_request(citizen, department)
    report = service.generate_department_report(db_session, department.id, "daily")
    service.store_department_metrics(db_session, report)
    service.store_department_metrics(db_session, dataclasses.replace(report, request_volume=9))

    rows = db_session.query(DepartmentMetricSnapshot).all()
    assert len(rows) == len(MetricType)
    volume = next(row for row in rows if row.metric_type == MetricType.request_volume)
    assert volume.value == 9.0
    assert volume.period_type == PeriodType.daily


def test_store_is_all_or_nothing(db_session, department, fixed_clock, service):
    report = service.generate_department_report(db_session, department.id, "daily")
    service.store_department_metrics(db_session, report)

    failing = DepartmentMetricsService(clock=fixed_clock, store=_FailingStore(MetricType.escalation_rate))
    changed = dataclasses.replace(report, average_resolution_time=99.0, sla_compliance_rate=1.0, request_volume=42)
    with pytest.raises(MetricsPersistenceError) as exc_info:
        failing.store_department_metrics(db_session, changed)
    assert exc_info.value.retryable is True

    values = {row.metric_type: row.value for row in db_session.query(DepartmentMetricSnapshot).all()}
    assert values[MetricType.average_resolution_time] == 0.0
    assert values[MetricType.sla_compliance_rate] == 100.0
    assert values[MetricType.request_volume] == 0.0


def test_failed_first_store_leaves_no_rows(db_session, department, fixed_clock):
    failing = DepartmentMetricsService(clock=fixed_clock, store=_FailingStore(MetricType.staff_utilization))
    report = failing.generate_department_report(db_session, department.id, "monthly")
    with pytest.raises(MetricsPersistenceError):
        failing.store_department_metrics(db_session, report)
    assert db_session.query(DepartmentMetricSnapshot).count() == 0


# ---------------------------------------------------------------------------
# Batch driver
# ---------------------------------------------------------------------------


def test_batch_isolates_department_failures(db_session, department, fixed_clock, monkeypatch):
    broken = Department(name="Zoning", slug="zoning")
    db_session.add(broken)
    db_session.commit()

    service = DepartmentMetricsService(clock=fixed_clock)
    original = service.generate_department_report

    def _generate(db, department_id, period):
        if department_id == str(broken.id):
            raise RuntimeError("boom")
        return original(db, department_id, period)

    monkeypatch.setattr(service, "generate_department_report", _generate)

    result = service.calculate_metrics_for_all_departments(db_session, "weekly")
    assert result["period"] == "weekly"
    assert result["processed"] == 1
    assert result["failed"] == 1
    assert result["department_ids"] == [str(department.id)]
    assert db_session.query(DepartmentMetricSnapshot).count() == len(MetricType)


def test_batch_rejects_unsupported_period_before_running(db_session, department, service):
    with pytest.raises(UnsupportedPeriodError):
        service.calculate_metrics_for_all_departments(db_session, "all-time")
