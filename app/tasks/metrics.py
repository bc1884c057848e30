from __future__ import annotations

import logging
from datetime import UTC, datetime

from app.celery_app import celery_app
from app.db import SessionLocal
from app.services.metrics.community import community_stats
from app.services.metrics.department import department_metrics

logger = logging.getLogger(__name__)


def _parse_iso_datetime(value: object | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    except (TypeError, ValueError):
        return None


@celery_app.task(name="app.tasks.metrics.calculate_department_metrics")
def calculate_department_metrics(period: str, department_id: str | None = None) -> dict:
    session = SessionLocal()
    try:
        if not department_id:
            return department_metrics.calculate_metrics_for_all_departments(session, period)
        report = department_metrics.generate_department_report(session, department_id, period)
        department_metrics.store_department_metrics(session, report)
        return {
            "period": report.period.value,
            "processed": 1,
            "failed": 0,
            "department_ids": [report.department_id],
        }
    except Exception:
        session.rollback()
        logger.exception("Failed to calculate department metrics period=%s department_id=%s", period, department_id)
        raise
    finally:
        session.close()


@celery_app.task(name="app.tasks.metrics.calculate_community_stats")
def calculate_community_stats(
    period: str, user_id: str | None = None, reference_iso: str | None = None
) -> dict:
    session = SessionLocal()
    try:
        reference = _parse_iso_datetime(reference_iso)
        if reference_iso and reference is None:
            raise ValueError(f"Invalid reference timestamp: {reference_iso}")
        if not user_id:
            return community_stats.calculate_stats_for_all_users(session, period, reference=reference)
        snapshot = community_stats.calculate_current_user_stats(session, user_id, period, reference=reference)
        return {
            "period": snapshot.period_type.value,
            "processed": 1,
            "failed": 0,
            "user_ids": [str(snapshot.user_id)],
            "rank": snapshot.rank,
            "overall_score": snapshot.overall_score,
        }
    except Exception:
        session.rollback()
        logger.exception("Failed to calculate community stats period=%s user_id=%s", period, user_id)
        raise
    finally:
        session.close()
