from app.tasks.metrics import calculate_community_stats, calculate_department_metrics

__all__ = [
    "calculate_community_stats",
    "calculate_department_metrics",
]
