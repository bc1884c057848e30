from app.models.city import (  # noqa: F401
    Assignment,
    Comment,
    Department,
    RequestPriority,
    RequestStatus,
    ServiceRequest,
    Upvote,
    User,
    UserRole,
)
from app.models.metrics import (  # noqa: F401
    Achievement,
    CommunityStatsSnapshot,
    CommunityTrend,
    DepartmentMetricSnapshot,
    MetricType,
    PeriodType,
    UserAchievement,
)
