import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class PeriodType(enum.Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"
    all_time = "all-time"


class MetricType(enum.Enum):
    average_resolution_time = "average_resolution_time"
    sla_compliance_rate = "sla_compliance_rate"
    first_call_resolution_rate = "first_call_resolution_rate"
    citizen_satisfaction_score = "citizen_satisfaction_score"
    request_volume = "request_volume"
    escalation_rate = "escalation_rate"
    staff_utilization = "staff_utilization"


class DepartmentMetricSnapshot(Base):
    __tablename__ = "department_metric_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "department_id",
            "metric_type",
            "period_type",
            "period_start",
            name="uq_dept_metric_snapshot_key",
        ),
        Index("ix_dept_metric_snapshot_calculated", "calculated_at"),
        Index("ix_dept_metric_snapshot_period", "period_type", "period_start"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    department_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("departments.id"), nullable=False
    )
    metric_type: Mapped[MetricType] = mapped_column(Enum(MetricType), nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(Enum(PeriodType), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))

    department = relationship("Department")


class CommunityStatsSnapshot(Base):
    __tablename__ = "community_stats_snapshots"
    __table_args__ = (
        UniqueConstraint("user_id", "period_type", "period_start", name="uq_community_stats_user_period"),
        Index("ix_community_stats_period", "period_type", "period_start"),
        Index("ix_community_stats_overall", "overall_score"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(Enum(PeriodType), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    requests_submitted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requests_approved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requests_resolved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comments_posted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    upvotes_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    upvotes_given: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    approval_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    resolution_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    satisfaction_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    contribution_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    engagement_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    quality_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    overall_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    rank: Mapped[int | None] = mapped_column(Integer)
    previous_rank: Mapped[int | None] = mapped_column(Integer)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )

    user = relationship("User")


class CommunityTrend(Base):
    __tablename__ = "community_trends"
    __table_args__ = (
        UniqueConstraint("category", "metric", "period_type", "period_start", name="uq_community_trend_key"),
        Index("ix_community_trend_category_period", "category", "period_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    category: Mapped[str] = mapped_column(String(120), nullable=False)
    metric: Mapped[str] = mapped_column(String(80), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    change: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    period_type: Mapped[PeriodType] = mapped_column(Enum(PeriodType), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))


class Achievement(Base):
    __tablename__ = "achievements"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[str | None] = mapped_column(String(120))
    category: Mapped[str] = mapped_column(String(80), nullable=False)
    tier: Mapped[str] = mapped_column(String(40), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requirement: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))


class UserAchievement(Base):
    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", name="uq_user_achievement"),
        Index("ix_user_achievements_unlocked", "unlocked_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    achievement_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("achievements.id"), nullable=False
    )
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    user = relationship("User")
    achievement = relationship("Achievement")
