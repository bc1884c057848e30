from datetime import UTC, datetime

import pytest

from app.models.metrics import PeriodType
from app.services.metrics.scheduler import MetricsScheduler

FIXED_NOW = datetime(2026, 3, 18, 12, 0, tzinfo=UTC)


class _FakeTimer:
    created: list["_FakeTimer"] = []

    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False
        _FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args)


class _FakeSession:
    def __init__(self):
        self.closed = False
        self.rolled_back = False

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


class _RecordingCalculator:
    def __init__(self, fail_periods=()):
        self.calls = []
        self.fail_periods = set(fail_periods)

    def calculate_metrics_for_all_departments(self, db, period):
        self.calls.append(period)
        if period in self.fail_periods:
            raise RuntimeError("database unavailable")
        return {"period": period.value, "processed": 2, "failed": 0, "department_ids": ["a", "b"]}


@pytest.fixture(autouse=True)
def _reset_timers():
    _FakeTimer.created = []
    yield
    _FakeTimer.created = []


@pytest.fixture()
def sessions():
    return []


def _build(sessions, calculator, **kwargs):
    def _factory():
        session = _FakeSession()
        sessions.append(session)
        return session

    return MetricsScheduler(
        _factory,
        calculator=calculator,
        clock=lambda: FIXED_NOW,
        timezone="America/New_York",
        timer_factory=_FakeTimer,
        enabled=True,
        **kwargs,
    )


def _timer_for(name):
    matches = [t for t in _FakeTimer.created if t.args[0] == name and not t.cancelled]
    return matches[-1]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def test_initialize_registers_four_running_jobs(sessions):
    scheduler = _build(sessions, _RecordingCalculator())
    scheduler.initialize()

    assert scheduler.get_job_status() == {
        "daily": True,
        "weekly": True,
        "monthly": True,
        "quarterly": True,
    }
    assert len(_FakeTimer.created) == 4
    assert all(timer.started and timer.daemon for timer in _FakeTimer.created)

    daily = _timer_for("daily")
    # 08:00 New York to 02:00 the next day.
    assert daily.interval == pytest.approx(18 * 3600)


def test_initialize_twice_is_a_noop(sessions):
    scheduler = _build(sessions, _RecordingCalculator())
    scheduler.initialize()
    scheduler.initialize()
    assert len(_FakeTimer.created) == 4
    assert len(scheduler.get_job_status()) == 4


def test_disabled_scheduler_registers_nothing(sessions):
    scheduler = MetricsScheduler(
        lambda: _FakeSession(),
        calculator=_RecordingCalculator(),
        clock=lambda: FIXED_NOW,
        timer_factory=_FakeTimer,
        enabled=False,
    )
    scheduler.initialize()
    assert scheduler.get_job_status() == {}
    assert _FakeTimer.created == []


def test_describe_jobs(sessions):
    scheduler = _build(sessions, _RecordingCalculator())
    scheduler.initialize()
    described = scheduler.describe_jobs()

    assert described["weekly"] == {
        "running": True,
        "period": "weekly",
        "timezone": "America/New_York",
        "trigger": "03:00 on Monday",
        "next_run_at": "2026-03-23T03:00:00-04:00",
    }
    assert described["quarterly"]["next_run_at"] == "2026-04-01T05:00:00-04:00"


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------


def test_tick_runs_calculation_and_rearms(sessions):
    calculator = _RecordingCalculator()
    scheduler = _build(sessions, calculator)
    scheduler.initialize()

    _timer_for("monthly").fire()

    assert calculator.calls == [PeriodType.monthly]
    assert sessions[0].closed is True
    assert len(_FakeTimer.created) == 5
    assert _FakeTimer.created[-1].args[0] == "monthly"


def test_failing_tick_is_isolated(sessions):
    calculator = _RecordingCalculator(fail_periods={PeriodType.daily})
    scheduler = _build(sessions, calculator)
    scheduler.initialize()

    _timer_for("daily").fire()
    _timer_for("daily").fire()
    _timer_for("weekly").fire()

    assert calculator.calls == [PeriodType.daily, PeriodType.daily, PeriodType.weekly]
    assert scheduler.get_job_status()["daily"] is True
    assert all(session.closed for session in sessions)
    assert sessions[0].rolled_back is True
    assert sessions[2].rolled_back is False


def test_tick_for_stopped_job_does_nothing(sessions):
    calculator = _RecordingCalculator()
    scheduler = _build(sessions, calculator)
    scheduler.initialize()
    timer = _timer_for("daily")

    scheduler.stop_job("daily")
    timer.fire()

    assert calculator.calls == []
    assert timer.cancelled is True


# ---------------------------------------------------------------------------
# Manual trigger
# ---------------------------------------------------------------------------


def test_trigger_immediate_calculation_returns_result(sessions):
    calculator = _RecordingCalculator()
    scheduler = _build(sessions, calculator)

    result = scheduler.trigger_immediate_calculation("quarterly")

    assert result["processed"] == 2
    assert calculator.calls == [PeriodType.quarterly]
    assert sessions[0].closed is True


def test_trigger_immediate_calculation_propagates_errors(sessions):
    scheduler = _build(sessions, _RecordingCalculator(fail_periods={PeriodType.weekly}))

    with pytest.raises(RuntimeError, match="database unavailable"):
        scheduler.trigger_immediate_calculation(PeriodType.weekly)
    assert sessions[0].rolled_back is True
    assert sessions[0].closed is True


# ---------------------------------------------------------------------------
# Job control
# ---------------------------------------------------------------------------


def test_stop_and_start_job(sessions):
    scheduler = _build(sessions, _RecordingCalculator())
    scheduler.initialize()

    assert scheduler.stop_job("weekly") is True
    assert scheduler.get_job_status()["weekly"] is False
    assert scheduler.describe_jobs()["weekly"]["next_run_at"] is None

    assert scheduler.start_job("weekly") is True
    assert scheduler.get_job_status()["weekly"] is True
    assert len(_FakeTimer.created) == 5


def test_unknown_job_names_are_noops(sessions):
    scheduler = _build(sessions, _RecordingCalculator())
    scheduler.initialize()

    assert scheduler.stop_job("hourly") is False
    assert scheduler.start_job("hourly") is False
    assert scheduler.restart_job("hourly") is False
    assert all(scheduler.get_job_status().values())


def test_stop_all_and_restart_all(sessions):
    scheduler = _build(sessions, _RecordingCalculator())
    scheduler.initialize()

    scheduler.stop_all_jobs()
    assert not any(scheduler.get_job_status().values())
    assert all(timer.cancelled for timer in _FakeTimer.created)

    scheduler.restart_all_jobs()
    assert all(scheduler.get_job_status().values())
    assert len(_FakeTimer.created) == 8


def test_restart_job_rearms_timer(sessions):
    scheduler = _build(sessions, _RecordingCalculator())
    scheduler.initialize()
    original = _timer_for("monthly")

    assert scheduler.restart_job("monthly") is True
    assert original.cancelled is True
    assert _timer_for("monthly") is not original


def test_jobs_are_keyed_by_period_name(sessions):
    scheduler = _build(sessions, _RecordingCalculator())
    scheduler.initialize()

    assert scheduler.stop_job("daily") is True
    assert scheduler.get_job_status()["daily"] is False
    assert scheduler.stop_job("daily-metrics") is False


def test_all_controls_every_job(sessions):
    scheduler = _build(sessions, _RecordingCalculator())
    scheduler.initialize()

    assert scheduler.stop_job("all") is True
    assert not any(scheduler.get_job_status().values())

    assert scheduler.start_job("all") is True
    assert all(scheduler.get_job_status().values())

    assert scheduler.restart_job("all") is True
    assert all(scheduler.get_job_status().values())
    live = [t for t in _FakeTimer.created if not t.cancelled]
    assert sorted(t.args[0] for t in live) == ["daily", "monthly", "quarterly", "weekly"]


class _RestartingCalculator(_RecordingCalculator):
    def __init__(self):
        super().__init__()
        self.scheduler = None

    def calculate_metrics_for_all_departments(self, db, period):
        result = super().calculate_metrics_for_all_departments(db, period)
        if len(self.calls) == 1:
            self.scheduler.restart_job(period.value)
        return result


def test_restart_during_tick_leaves_one_live_timer(sessions):
    calculator = _RestartingCalculator()
    scheduler = _build(sessions, calculator)
    calculator.scheduler = scheduler
    scheduler.initialize()
    first = _timer_for("daily")

    first.fire()

    live = [t for t in _FakeTimer.created if t.args[0] == "daily" and not t.cancelled]
    assert len(live) == 1
    assert calculator.calls == [PeriodType.daily]

    # The superseded timer cannot run the batch again.
    first.fire()
    assert calculator.calls == [PeriodType.daily]

    live[0].fire()
    assert calculator.calls == [PeriodType.daily, PeriodType.daily]
    assert len([t for t in _FakeTimer.created if t.args[0] == "daily" and not t.cancelled]) == 1


def test_stale_timer_after_stop_and_start_is_ignored(sessions):
    calculator = _RecordingCalculator()
    scheduler = _build(sessions, calculator)
    scheduler.initialize()
    stale = _timer_for("weekly")

    scheduler.stop_job("weekly")
    scheduler.start_job("weekly")
    stale.fire()

    assert calculator.calls == []
