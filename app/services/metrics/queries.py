from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from app.config import settings
from app.models.city import Comment, RequestStatus, ServiceRequest, Upvote
from app.models.metrics import (
    Achievement,
    CommunityStatsSnapshot,
    CommunityTrend,
    DepartmentMetricSnapshot,
    MetricType,
    PeriodType,
    UserAchievement,
)
from app.services.common import coerce_uuid, ensure_utc, hours_between, safe_div, to_float, utc_now
from app.services.metrics.periods import coerce_period

APPROVED_STATUSES = (RequestStatus.approved, RequestStatus.in_progress, RequestStatus.resolved, RequestStatus.closed)
HISTORICAL_SORT_FIELDS = {
    "metric_type": DepartmentMetricSnapshot.metric_type,
    "value": DepartmentMetricSnapshot.value,
    "period": DepartmentMetricSnapshot.period_type,
    "period_start": DepartmentMetricSnapshot.period_start,
    "calculated_at": DepartmentMetricSnapshot.calculated_at,
}
HISTORICAL_MAX_LIMIT = 1000
TOP_CONTRIBUTOR_COUNT = 10
CATEGORY_TREND_COUNT = 12
OVERVIEW_LEADERBOARD_SIZE = 10
OVERVIEW_TREND_COUNT = 10
OVERVIEW_CATEGORY_COUNT = 5
OVERVIEW_ACHIEVEMENT_COUNT = 10
# (bucket count, bucket unit) for the overview chart series.
TIME_SERIES_BUCKETS = {
    PeriodType.daily: (24, "hour"),
    PeriodType.weekly: (7, "day"),
    PeriodType.monthly: (30, "day"),
}
DEFAULT_TIME_SERIES_BUCKETS = (12, "month")
SUMMARY_AVERAGE_FIELDS = ("contribution_score", "engagement_score", "quality_score", "overall_score")
SUMMARY_TOTAL_FIELDS = (
    "requests_submitted",
    "requests_approved",
    "requests_resolved",
    "comments_posted",
    "upvotes_received",
    "upvotes_given",
)


@dataclass
class CommunityStatsFilters:
    user_ids: list[str] = field(default_factory=list)
    start_date: datetime | None = None
    end_date: datetime | None = None
    min_score: float | None = None
    category: str | None = None


def _iso(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def _badge(achievement: Achievement) -> dict[str, Any]:
    return {
        "id": str(achievement.id),
        "name": achievement.name,
        "description": achievement.description,
        "icon": achievement.icon,
        "category": achievement.category,
        "tier": achievement.tier,
        "points": achievement.points,
    }


def _badges_by_user(db: Session, user_ids: list) -> dict[str, list[dict[str, Any]]]:
    if not user_ids:
        return {}
    rows = (
        db.query(UserAchievement)
        .options(joinedload(UserAchievement.achievement))
        .filter(UserAchievement.user_id.in_(user_ids))
        .order_by(UserAchievement.unlocked_at.asc())
        .all()
    )
    badges: dict[str, list[dict[str, Any]]] = {}
    for row in rows:
        badges.setdefault(str(row.user_id), []).append(_badge(row.achievement))
    return badges


def _bucket_starts(now: datetime, count: int, unit: str) -> list[datetime]:
    now = ensure_utc(now)
    if unit == "hour":
        anchor = now.replace(minute=0, second=0, microsecond=0)
        return [anchor - timedelta(hours=back) for back in range(count - 1, -1, -1)]
    if unit == "day":
        anchor = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return [anchor - timedelta(days=back) for back in range(count - 1, -1, -1)]
    month_index = now.year * 12 + now.month - 1
    return [
        datetime((month_index - back) // 12, (month_index - back) % 12 + 1, 1, tzinfo=UTC)
        for back in range(count - 1, -1, -1)
    ]


def _bucket_end(start: datetime, unit: str) -> datetime:
    if unit == "hour":
        return start + timedelta(hours=1)
    if unit == "day":
        return start + timedelta(days=1)
    month_index = start.year * 12 + start.month
    return datetime(month_index // 12, month_index % 12 + 1, 1, tzinfo=UTC)


def _bucket_index(value: datetime, starts: list[datetime], end: datetime) -> int | None:
    value = ensure_utc(value)
    if value < starts[0] or value >= end:
        return None
    index = None
    for position, start in enumerate(starts):
        if value >= start:
            index = position
    return index


def _leaderboard_entry(
    snapshot: CommunityStatsSnapshot, rank: int, badges: list[dict[str, Any]] | None = None
) -> dict[str, Any]:
    change = 0
    if snapshot.rank and snapshot.previous_rank:
        change = snapshot.previous_rank - snapshot.rank
    return {
        "rank": rank,
        "snapshot_rank": snapshot.rank,
        "change": change,
        "user_id": str(snapshot.user_id),
        "user_name": snapshot.user.name if snapshot.user else None,
        "user_email": snapshot.user.email if snapshot.user else None,
        "period": snapshot.period_type.value,
        "period_start": ensure_utc(snapshot.period_start),
        "overall_score": snapshot.overall_score,
        "contribution_score": snapshot.contribution_score,
        "engagement_score": snapshot.engagement_score,
        "quality_score": snapshot.quality_score,
        "requests_submitted": snapshot.requests_submitted,
        "requests_approved": snapshot.requests_approved,
        "comments_posted": snapshot.comments_posted,
        "upvotes_received": snapshot.upvotes_received,
        "badges": badges or [],
    }


def _metric_row(snapshot: DepartmentMetricSnapshot) -> dict[str, Any]:
    department = snapshot.department
    return {
        "id": str(snapshot.id),
        "department_id": str(snapshot.department_id),
        "department_name": department.name if department else None,
        "department_slug": department.slug if department else None,
        "metric_type": snapshot.metric_type.value,
        "period": snapshot.period_type.value,
        "period_start": ensure_utc(snapshot.period_start),
        "period_end": ensure_utc(snapshot.period_end),
        "value": snapshot.value,
        "calculated_at": ensure_utc(snapshot.calculated_at),
    }


def _parse_sort(sort: str | None):
    field_name, _, direction = (sort or "").partition(":")
    column = HISTORICAL_SORT_FIELDS.get(field_name)
    if column is None:
        return DepartmentMetricSnapshot.calculated_at.desc()
    return column.desc() if direction == "desc" else column.asc()


class MetricsQueryService:
    """Read-only projections over the metric and community snapshots."""

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or utc_now

    def get_leaderboard(
        self,
        db: Session,
        period: PeriodType | str = "monthly",
        limit: int = 100,
        offset: int = 0,
        filters: CommunityStatsFilters | None = None,
    ) -> list[dict[str, Any]]:
        """Entries for every snapshot with the period label, best score first.

        ``rank`` is positional within the returned page. The rank persisted by
        the last recomputation is exposed as ``snapshot_rank``. A limit of 0
        yields an empty page.
        """
        limit = max(0, min(int(limit), settings.leaderboard_max_limit))
        offset = max(0, int(offset))
        if limit == 0:
            return []
        query = (
            db.query(CommunityStatsSnapshot)
            .options(joinedload(CommunityStatsSnapshot.user))
            .filter(CommunityStatsSnapshot.period_type == coerce_period(period))
        )
        if filters:
            if filters.user_ids:
                query = query.filter(
                    CommunityStatsSnapshot.user_id.in_([coerce_uuid(uid) for uid in filters.user_ids])
                )
            if filters.start_date:
                query = query.filter(CommunityStatsSnapshot.period_start >= filters.start_date)
            if filters.end_date:
                query = query.filter(CommunityStatsSnapshot.period_start <= filters.end_date)
            if filters.min_score is not None:
                query = query.filter(CommunityStatsSnapshot.overall_score >= filters.min_score)
            if filters.category:
                creators = select(ServiceRequest.created_by).where(ServiceRequest.category == filters.category)
                query = query.filter(CommunityStatsSnapshot.user_id.in_(creators))

        snapshots = (
            query.order_by(CommunityStatsSnapshot.overall_score.desc(), CommunityStatsSnapshot.user_id.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        badges = _badges_by_user(db, [snapshot.user_id for snapshot in snapshots])
        return [
            _leaderboard_entry(snapshot, offset + index + 1, badges.get(str(snapshot.user_id)))
            for index, snapshot in enumerate(snapshots)
        ]

    def get_user_stats(
        self, db: Session, user_id: str, period: PeriodType | str | None = None
    ) -> CommunityStatsSnapshot | None:
        query = db.query(CommunityStatsSnapshot).filter(CommunityStatsSnapshot.user_id == coerce_uuid(user_id))
        if period:
            query = query.filter(CommunityStatsSnapshot.period_type == coerce_period(period))
        return query.order_by(CommunityStatsSnapshot.period_start.desc()).first()

    def get_stats_by_category(
        self, db: Session, category: str, period: PeriodType | str = "monthly"
    ) -> dict[str, Any]:
        requests = (
            db.query(ServiceRequest.created_by, ServiceRequest.status, ServiceRequest.created_at, ServiceRequest.closed_at)
            .filter(ServiceRequest.category == category)
            .all()
        )
        approved = sum(1 for row in requests if row.status in APPROVED_STATUSES)
        resolution_hours = [hours_between(row.created_at, row.closed_at) for row in requests if row.closed_at]
        average_resolution_time = sum(resolution_hours) / len(resolution_hours) if resolution_hours else 0.0

        creators = Counter(str(row.created_by) for row in requests)
        top_ids = [uid for uid, _ in sorted(creators.items(), key=lambda item: (-item[1], item[0]))]
        top_ids = top_ids[:TOP_CONTRIBUTOR_COUNT]
        top_contributors = (
            self.get_leaderboard(
                db, period, limit=TOP_CONTRIBUTOR_COUNT, filters=CommunityStatsFilters(user_ids=top_ids)
            )
            if top_ids
            else []
        )

        trends = (
            db.query(CommunityTrend)
            .filter(CommunityTrend.category == category)
            .order_by(CommunityTrend.period_start.desc())
            .limit(CATEGORY_TREND_COUNT)
            .all()
        )
        return {
            "category": category,
            "total_requests": len(requests),
            "approved_requests": approved,
            "average_resolution_time": average_resolution_time,
            "top_contributors": top_contributors,
            "trends": trends,
        }

    def get_trending_stats(
        self, db: Session, period: PeriodType | str = "weekly", limit: int = 10
    ) -> list[CommunityTrend]:
        return (
            db.query(CommunityTrend)
            .filter(CommunityTrend.period_type == coerce_period(period))
            .order_by(CommunityTrend.period_start.desc(), CommunityTrend.change.desc())
            .limit(max(1, int(limit)))
            .all()
        )

    def get_stats_summary(self, db: Session, period: PeriodType | str = "monthly") -> dict[str, Any]:
        period = coerce_period(period)
        columns = [func.count(CommunityStatsSnapshot.id)]
        columns += [func.avg(getattr(CommunityStatsSnapshot, name)) for name in SUMMARY_AVERAGE_FIELDS]
        columns += [func.sum(getattr(CommunityStatsSnapshot, name)) for name in SUMMARY_TOTAL_FIELDS]
        row = tuple(db.query(*columns).filter(CommunityStatsSnapshot.period_type == period).one())

        averages = row[1 : 1 + len(SUMMARY_AVERAGE_FIELDS)]
        totals = row[1 + len(SUMMARY_AVERAGE_FIELDS) :]
        return {
            "period": period.value,
            "total_users": int(row[0] or 0),
            "average_scores": {name: to_float(value) for name, value in zip(SUMMARY_AVERAGE_FIELDS, averages)},
            "totals": {name: int(value or 0) for name, value in zip(SUMMARY_TOTAL_FIELDS, totals)},
        }

    def get_achievements(
        self, db: Session, category: str | None = None, tier: str | None = None
    ) -> list[Achievement]:
        query = db.query(Achievement).filter(Achievement.is_active.is_(True))
        if category:
            query = query.filter(Achievement.category == category)
        if tier:
            query = query.filter(Achievement.tier == tier)
        return query.order_by(Achievement.category.asc(), Achievement.points.asc()).all()

    def get_user_achievements(self, db: Session, user_id: str) -> list[dict[str, Any]]:
        rows = (
            db.query(UserAchievement)
            .options(joinedload(UserAchievement.achievement))
            .filter(UserAchievement.user_id == coerce_uuid(user_id))
            .order_by(UserAchievement.unlocked_at.desc())
            .all()
        )
        return [
            {**_badge(row.achievement), "unlocked_at": ensure_utc(row.unlocked_at), "progress": row.progress}
            for row in rows
        ]

    def get_time_series(self, db: Session, period: PeriodType | str = "monthly") -> dict[str, list[dict[str, Any]]]:
        """Per-bucket activity ending at the current bucket.

        Contribution counts requests created, engagement counts comments and
        upvotes, quality is the share of created requests that were approved.
        """
        count, unit = TIME_SERIES_BUCKETS.get(coerce_period(period), DEFAULT_TIME_SERIES_BUCKETS)
        starts = _bucket_starts(self._clock(), count, unit)
        end = _bucket_end(starts[-1], unit)

        created = [0] * count
        approved = [0] * count
        engagement = [0] * count
        requests = (
            db.query(ServiceRequest.created_at, ServiceRequest.status)
            .filter(ServiceRequest.created_at >= starts[0], ServiceRequest.created_at < end)
            .all()
        )
        for created_at, status in requests:
            index = _bucket_index(created_at, starts, end)
            if index is None:
                continue
            created[index] += 1
            if status in APPROVED_STATUSES:
                approved[index] += 1
        for model in (Comment, Upvote):
            rows = db.query(model.created_at).filter(model.created_at >= starts[0], model.created_at < end).all()
            for (created_at,) in rows:
                index = _bucket_index(created_at, starts, end)
                if index is not None:
                    engagement[index] += 1

        dates = [start.isoformat() for start in starts]
        return {
            "contributions": [{"date": date, "value": value} for date, value in zip(dates, created)],
            "engagement": [{"date": date, "value": value} for date, value in zip(dates, engagement)],
            "quality": [
                {"date": date, "value": safe_div(float(ok), float(total)) * 100}
                for date, ok, total in zip(dates, approved, created)
            ],
        }

    def get_statistics_overview(
        self, db: Session, period: PeriodType | str = "monthly", category: str | None = None
    ) -> dict[str, Any]:
        period = coerce_period(period)
        leaderboard = self.get_leaderboard(
            db,
            period,
            limit=OVERVIEW_LEADERBOARD_SIZE,
            filters=CommunityStatsFilters(category=category) if category else None,
        )
        count = func.count(ServiceRequest.id)
        top_categories = [
            {"category": name, "count": int(total)}
            for name, total in db.query(ServiceRequest.category, count)
            .group_by(ServiceRequest.category)
            .order_by(count.desc(), ServiceRequest.category.asc())
            .limit(OVERVIEW_CATEGORY_COUNT)
            .all()
        ]
        recent = (
            db.query(UserAchievement)
            .options(joinedload(UserAchievement.user), joinedload(UserAchievement.achievement))
            .order_by(UserAchievement.unlocked_at.desc())
            .limit(OVERVIEW_ACHIEVEMENT_COUNT)
            .all()
        )
        series = self.get_time_series(db, period)
        return {
            "period": period.value,
            "leaderboard": leaderboard,
            "summary": self.get_stats_summary(db, period),
            "trends": self.get_trending_stats(db, period, limit=OVERVIEW_TREND_COUNT),
            "top_categories": top_categories,
            "recent_achievements": [
                {
                    "user_id": str(row.user_id),
                    "user_name": row.user.name if row.user else None,
                    "achievement": row.achievement.name,
                    "tier": row.achievement.tier,
                    "unlocked_at": ensure_utc(row.unlocked_at),
                }
                for row in recent
            ],
            "charts": {
                "contribution_trend": series["contributions"],
                "engagement_trend": series["engagement"],
                "quality_trend": series["quality"],
                "category_distribution": [
                    {"name": item["category"], "value": item["count"]} for item in top_categories
                ],
            },
        }

    def get_metric_trends(
        self,
        db: Session,
        start: datetime,
        end: datetime,
        department_id: str | None = None,
        metric_type: MetricType | str | None = None,
        period: PeriodType | str | None = None,
    ) -> dict[str, dict[str, Any]]:
        query = db.query(DepartmentMetricSnapshot).filter(
            DepartmentMetricSnapshot.period_start >= start,
            DepartmentMetricSnapshot.period_start <= end,
        )
        if department_id:
            query = query.filter(DepartmentMetricSnapshot.department_id == coerce_uuid(department_id))
        if metric_type:
            query = query.filter(DepartmentMetricSnapshot.metric_type == MetricType(metric_type))
        if period:
            query = query.filter(DepartmentMetricSnapshot.period_type == coerce_period(period))
        rows = query.order_by(DepartmentMetricSnapshot.period_start.asc()).all()

        trends: dict[str, dict[str, Any]] = {}
        for row in rows:
            bucket = trends.setdefault(row.metric_type.value, {"series": []})
            bucket["series"].append({"period_start": ensure_utc(row.period_start), "value": row.value})
        for bucket in trends.values():
            values = [point["value"] for point in bucket["series"]]
            bucket["min"] = min(values)
            bucket["max"] = max(values)
            bucket["average"] = sum(values) / len(values)
            bucket["count"] = len(values)
        return trends

    def get_historical_metrics(
        self,
        db: Session,
        department_id: str | None = None,
        metric_type: MetricType | str | None = None,
        period: PeriodType | str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        sort: str = "calculated_at:desc",
    ) -> dict[str, Any]:
        query = db.query(DepartmentMetricSnapshot).options(joinedload(DepartmentMetricSnapshot.department))
        if department_id:
            query = query.filter(DepartmentMetricSnapshot.department_id == coerce_uuid(department_id))
        if metric_type:
            query = query.filter(DepartmentMetricSnapshot.metric_type == MetricType(metric_type))
        if period:
            query = query.filter(DepartmentMetricSnapshot.period_type == coerce_period(period))
        if start:
            query = query.filter(DepartmentMetricSnapshot.calculated_at >= start)
        if end:
            query = query.filter(DepartmentMetricSnapshot.calculated_at <= end)
        limit = max(1, min(int(limit), HISTORICAL_MAX_LIMIT))
        rows = [_metric_row(snapshot) for snapshot in query.order_by(_parse_sort(sort)).limit(limit).all()]

        trend_analysis: dict[str, dict[str, list[dict[str, Any]]]] = {}
        for row in rows:
            by_metric = trend_analysis.setdefault(row["department_name"] or row["department_id"], {})
            by_metric.setdefault(row["metric_type"], []).append(
                {
                    "value": row["value"],
                    "period": row["period"],
                    "period_start": row["period_start"],
                    "calculated_at": row["calculated_at"],
                }
            )

        calculated = [row["calculated_at"] for row in rows if row["calculated_at"]]
        return {
            "metrics": rows,
            "trend_analysis": trend_analysis,
            "summary": {
                "total_records": len(rows),
                "departments": len(trend_analysis),
                "date_range": {
                    "earliest": _iso(min(calculated)) if calculated else None,
                    "latest": _iso(max(calculated)) if calculated else None,
                },
            },
        }

    def get_recent_calculations(self, db: Session, limit: int = 10) -> list[dict[str, Any]]:
        rows = (
            db.query(DepartmentMetricSnapshot)
            .options(joinedload(DepartmentMetricSnapshot.department))
            .order_by(DepartmentMetricSnapshot.calculated_at.desc())
            .limit(max(1, int(limit)))
            .all()
        )
        return [_metric_row(row) for row in rows]


metrics_queries = MetricsQueryService()
