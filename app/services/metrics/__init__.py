from app.services.metrics.community import community_stats
from app.services.metrics.department import department_metrics
from app.services.metrics.queries import metrics_queries
from app.services.metrics.snapshots import snapshot_store

__all__ = ["community_stats", "department_metrics", "metrics_queries", "snapshot_store"]
