from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.city import Comment, RequestStatus, ServiceRequest, Upvote, User, UserRole
from app.models.metrics import CommunityStatsSnapshot, PeriodType
from app.services.common import coerce_uuid, ensure_utc, safe_div, utc_now
from app.services.metrics.errors import MetricsNotFoundError, MetricsPersistenceError
from app.services.metrics.observability import BATCH_DURATION, BATCH_ITEMS
from app.services.metrics.periods import (
    COMMUNITY_PERIODS,
    PeriodWindow,
    require_period,
    resolve_calendar_window,
)
from app.services.metrics.snapshots import SnapshotStore, snapshot_store

logger = logging.getLogger(__name__)

APPROVED_STATUSES = frozenset(
    {RequestStatus.approved, RequestStatus.in_progress, RequestStatus.resolved, RequestStatus.closed}
)
RESOLVED_STATUSES = frozenset({RequestStatus.resolved, RequestStatus.closed})

CONTRIBUTION_WEIGHTS = {"submitted": 10, "approved": 20, "resolved": 30, "comments": 5}
ENGAGEMENT_WEIGHTS = {"comments": 5, "upvotes_given": 2, "upvotes_received": 3}
QUALITY_WEIGHTS = {"approval_rate": 0.5, "resolution_rate": 0.3, "satisfaction": 0.2}
OVERALL_WEIGHTS = {"contribution": 0.4, "engagement": 0.3, "quality": 0.3}


@dataclass(frozen=True)
class CommunityActivity:
    """Raw activity of one user inside one window."""

    statuses: tuple[RequestStatus, ...]
    ratings: tuple[int, ...]
    comments_posted: int
    upvotes_received: int
    upvotes_given: int


def build_stats_values(activity: CommunityActivity) -> dict[str, Any]:
    submitted = len(activity.statuses)
    approved = sum(1 for status in activity.statuses if status in APPROVED_STATUSES)
    resolved = sum(1 for status in activity.statuses if status in RESOLVED_STATUSES)

    approval_rate = safe_div(float(approved), float(submitted)) * 100
    resolution_rate = safe_div(float(resolved), float(approved)) * 100
    rated = [rating for rating in activity.ratings if rating]
    satisfaction_score = sum(rated) / len(rated) * 20 if rated else 0.0

    contribution_score = (
        submitted * CONTRIBUTION_WEIGHTS["submitted"]
        + approved * CONTRIBUTION_WEIGHTS["approved"]
        + resolved * CONTRIBUTION_WEIGHTS["resolved"]
        + activity.comments_posted * CONTRIBUTION_WEIGHTS["comments"]
    )
    engagement_score = (
        activity.comments_posted * ENGAGEMENT_WEIGHTS["comments"]
        + activity.upvotes_given * ENGAGEMENT_WEIGHTS["upvotes_given"]
        + activity.upvotes_received * ENGAGEMENT_WEIGHTS["upvotes_received"]
    )
    quality_score = (
        approval_rate * QUALITY_WEIGHTS["approval_rate"]
        + resolution_rate * QUALITY_WEIGHTS["resolution_rate"]
        + satisfaction_score * QUALITY_WEIGHTS["satisfaction"]
    )
    overall_score = (
        contribution_score * OVERALL_WEIGHTS["contribution"]
        + engagement_score * OVERALL_WEIGHTS["engagement"]
        + quality_score * OVERALL_WEIGHTS["quality"]
    )

    return {
        "requests_submitted": submitted,
        "requests_approved": approved,
        "requests_resolved": resolved,
        "comments_posted": activity.comments_posted,
        "upvotes_received": activity.upvotes_received,
        "upvotes_given": activity.upvotes_given,
        "approval_rate": approval_rate,
        "resolution_rate": resolution_rate,
        "satisfaction_score": satisfaction_score,
        "contribution_score": float(contribution_score),
        "engagement_score": float(engagement_score),
        "quality_score": quality_score,
        "overall_score": overall_score,
    }


def _load_activity(db: Session, user_id, window: PeriodWindow) -> CommunityActivity:
    requests = (
        db.query(ServiceRequest.status, ServiceRequest.satisfaction_rating)
        .filter(
            ServiceRequest.created_by == user_id,
            ServiceRequest.created_at >= window.start_at,
            ServiceRequest.created_at <= window.end_at,
        )
        .all()
    )

    comments_posted = (
        db.query(func.count(Comment.id))
        .filter(
            Comment.author_id == user_id,
            Comment.created_at >= window.start_at,
            Comment.created_at <= window.end_at,
        )
        .scalar()
    )
    # Upvotes count against the user's requests created in the window.
    upvotes_received = (
        db.query(func.count(Upvote.id))
        .join(ServiceRequest, ServiceRequest.id == Upvote.request_id)
        .filter(
            ServiceRequest.created_by == user_id,
            ServiceRequest.created_at >= window.start_at,
            ServiceRequest.created_at <= window.end_at,
        )
        .scalar()
    )
    upvotes_given = (
        db.query(func.count(Upvote.id))
        .filter(
            Upvote.user_id == user_id,
            Upvote.created_at >= window.start_at,
            Upvote.created_at <= window.end_at,
        )
        .scalar()
    )

    return CommunityActivity(
        statuses=tuple(status for status, _ in requests),
        ratings=tuple(rating for _, rating in requests if rating is not None),
        comments_posted=int(comments_posted or 0),
        upvotes_received=int(upvotes_received or 0),
        upvotes_given=int(upvotes_given or 0),
    )


class CommunityStatsService:
    def __init__(self, clock: Callable[[], datetime] | None = None, store: SnapshotStore | None = None):
        self._clock = clock or utc_now
        self._store = store or snapshot_store

    def calculate_user_stats(
        self,
        db: Session,
        user_id: str,
        period: PeriodType | str,
        period_start: datetime,
        period_end: datetime,
    ) -> CommunityStatsSnapshot:
        """Recalculate one user's snapshot and re-rank the whole period.

        The upsert and the rank rewrite for every snapshot sharing the
        period and window start are committed together.
        """
        period = require_period(period, COMMUNITY_PERIODS, "Community stats")
        window = PeriodWindow(period=period, start_at=ensure_utc(period_start), end_at=ensure_utc(period_end))

        try:
            user = db.get(User, coerce_uuid(user_id))
        except ValueError:
            user = None
        if not user:
            raise MetricsNotFoundError("user_not_found", f"User not found: {user_id}")

        values = build_stats_values(_load_activity(db, user.id, window))

        try:
            snapshot = self._store.upsert_community_snapshot(
                db,
                user_id=str(user.id),
                window=window,
                values=values,
                calculated_at=self._clock(),
            )
            db.flush()
            self._store.recompute_ranks(db, window.period, window.start_at)
            db.commit()
        except Exception as exc:
            db.rollback()
            raise MetricsPersistenceError(
                "community_stats_write_failed",
                f"Failed to store {period.value} community stats for user {user_id}",
            ) from exc

        db.refresh(snapshot)
        return snapshot

    def calculate_current_user_stats(
        self,
        db: Session,
        user_id: str,
        period: PeriodType | str,
        reference: datetime | None = None,
    ) -> CommunityStatsSnapshot:
        window = resolve_calendar_window(period, reference or self._clock())
        return self.calculate_user_stats(db, user_id, window.period, window.start_at, window.end_at)

    def calculate_stats_for_all_users(
        self, db: Session, period: PeriodType | str, reference: datetime | None = None
    ) -> dict[str, Any]:
        window = resolve_calendar_window(period, reference or self._clock())
        user_ids = [
            str(row[0])
            for row in db.query(User.id).filter(User.role == UserRole.citizen).order_by(User.created_at.asc()).all()
        ]
        logger.info(
            "METRICS_COMMUNITY_BATCH_START period=%s period_start=%s users=%s",
            window.period.value,
            window.start_at.isoformat(),
            len(user_ids),
        )

        processed: list[str] = []
        failed: list[str] = []
        with BATCH_DURATION.labels(kind="community", period=window.period.value).time():
            for user_id in user_ids:
                try:
                    self.calculate_user_stats(db, user_id, window.period, window.start_at, window.end_at)
                except Exception:
                    db.rollback()
                    failed.append(user_id)
                    BATCH_ITEMS.labels(kind="community", period=window.period.value, status="error").inc()
                    logger.exception(
                        "METRICS_COMMUNITY_FAILED user_id=%s period=%s", user_id, window.period.value
                    )
                    continue
                processed.append(user_id)
                BATCH_ITEMS.labels(kind="community", period=window.period.value, status="success").inc()

        logger.info(
            "METRICS_COMMUNITY_BATCH_DONE period=%s processed=%s failed=%s",
            window.period.value,
            len(processed),
            len(failed),
        )
        return {
            "period": window.period.value,
            "processed": len(processed),
            "failed": len(failed),
            "user_ids": processed,
            "failed_user_ids": failed,
        }


community_stats = CommunityStatsService()
