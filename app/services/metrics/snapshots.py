from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.models.metrics import CommunityStatsSnapshot, DepartmentMetricSnapshot, MetricType, PeriodType
from app.services.common import coerce_uuid
from app.services.metrics.periods import PeriodWindow

COMMUNITY_VALUE_FIELDS = (
    "requests_submitted",
    "requests_approved",
    "requests_resolved",
    "comments_posted",
    "upvotes_received",
    "upvotes_given",
    "approval_rate",
    "resolution_rate",
    "satisfaction_score",
    "contribution_score",
    "engagement_score",
    "quality_score",
    "overall_score",
)


def _rank_sort_key(snapshot: CommunityStatsSnapshot) -> tuple[float, str]:
    return (-float(snapshot.overall_score or 0.0), str(snapshot.user_id))


class SnapshotStore:
    """Upserts and rank bookkeeping for metric and community snapshots.

    Nothing here commits; callers own the transaction boundary.
    """

    def upsert_metric_snapshot(
        self,
        db: Session,
        *,
        department_id: str,
        metric_type: MetricType,
        window: PeriodWindow,
        value: float,
        calculated_at: datetime,
    ) -> DepartmentMetricSnapshot:
        existing = (
            db.query(DepartmentMetricSnapshot)
            .filter(
                DepartmentMetricSnapshot.department_id == coerce_uuid(department_id),
                DepartmentMetricSnapshot.metric_type == metric_type,
                DepartmentMetricSnapshot.period_type == window.period,
                DepartmentMetricSnapshot.period_start == window.start_at,
            )
            .first()
        )
        if existing:
            existing.value = value
            existing.period_end = window.end_at
            existing.calculated_at = calculated_at
            return existing

        snapshot = DepartmentMetricSnapshot(
            department_id=coerce_uuid(department_id),
            metric_type=metric_type,
            period_type=window.period,
            period_start=window.start_at,
            period_end=window.end_at,
            value=value,
            calculated_at=calculated_at,
        )
        db.add(snapshot)
        return snapshot

    def upsert_community_snapshot(
        self,
        db: Session,
        *,
        user_id: str,
        window: PeriodWindow,
        values: dict[str, Any],
        calculated_at: datetime,
    ) -> CommunityStatsSnapshot:
        existing = (
            db.query(CommunityStatsSnapshot)
            .filter(
                CommunityStatsSnapshot.user_id == coerce_uuid(user_id),
                CommunityStatsSnapshot.period_type == window.period,
                CommunityStatsSnapshot.period_start == window.start_at,
            )
            .first()
        )
        if existing:
            for field in COMMUNITY_VALUE_FIELDS:
                setattr(existing, field, values[field])
            existing.period_end = window.end_at
            existing.calculated_at = calculated_at
            return existing

        snapshot = CommunityStatsSnapshot(
            user_id=coerce_uuid(user_id),
            period_type=window.period,
            period_start=window.start_at,
            period_end=window.end_at,
            calculated_at=calculated_at,
            **{field: values[field] for field in COMMUNITY_VALUE_FIELDS},
        )
        db.add(snapshot)
        return snapshot

    def recompute_ranks(
        self, db: Session, period: PeriodType, period_start: datetime
    ) -> list[CommunityStatsSnapshot]:
        """Re-rank every snapshot sharing ``(period, period_start)``.

        Each snapshot's current rank moves to ``previous_rank`` before the new
        1-based position is written. Pending rows must be flushed first.
        """
        snapshots = (
            db.query(CommunityStatsSnapshot)
            .filter(
                CommunityStatsSnapshot.period_type == period,
                CommunityStatsSnapshot.period_start == period_start,
            )
            .all()
        )
        ordered = sorted(snapshots, key=_rank_sort_key)
        for position, snapshot in enumerate(ordered, start=1):
            snapshot.previous_rank = snapshot.rank
            snapshot.rank = position
        return ordered


snapshot_store = SnapshotStore()
