from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.metrics import MetricType, PeriodType


class DepartmentMetricSnapshotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    department_id: UUID
    metric_type: MetricType
    period_type: PeriodType
    period_start: datetime
    period_end: datetime
    value: float
    calculated_at: datetime


class AgentWorkloadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    name: str
    email: str
    active_requests: int
    completed_requests: int
    average_handling_time: float
    workload_score: float
    utilization_rate: float


class DepartmentReportRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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
    agent_workloads: list[AgentWorkloadRead] = Field(default_factory=list)
    category_breakdown: dict[str, int] = Field(default_factory=dict)
    priority_breakdown: dict[str, int] = Field(default_factory=dict)
    calculated_at: datetime | None = None


class WorkloadSummaryRead(BaseModel):
    total_staff: int
    average_workload_score: float
    average_utilization: float
    overloaded_staff: int
    underutilized_staff: int


class CommunityStatsSnapshotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    period_type: PeriodType
    period_start: datetime
    period_end: datetime
    requests_submitted: int
    requests_approved: int
    requests_resolved: int
    comments_posted: int
    upvotes_received: int
    upvotes_given: int
    approval_rate: float
    resolution_rate: float
    satisfaction_score: float
    contribution_score: float
    engagement_score: float
    quality_score: float
    overall_score: float
    rank: int | None = None
    previous_rank: int | None = None
    calculated_at: datetime


class AchievementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str
    icon: str | None = None
    category: str
    tier: str
    points: int


class LeaderboardEntryRead(BaseModel):
    rank: int
    snapshot_rank: int | None = None
    change: int = 0
    user_id: str
    user_name: str | None = None
    user_email: str | None = None
    period: PeriodType
    period_start: datetime
    overall_score: float
    contribution_score: float
    engagement_score: float
    quality_score: float
    requests_submitted: int
    requests_approved: int
    comments_posted: int
    upvotes_received: int
    badges: list[AchievementRead] = Field(default_factory=list)


class CommunityTrendRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    category: str
    metric: str
    value: float
    change: float
    period_type: PeriodType
    period_start: datetime
    period_end: datetime
    metadata_: dict | None = None


class StatsSummaryRead(BaseModel):
    period: PeriodType
    total_users: int
    average_scores: dict[str, float]
    totals: dict[str, int]
