"""add city services and metrics snapshot tables

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "a1c2e3f4b5d6"
down_revision = None
branch_labels = None
depends_on = None


def _enum(name: str, *values: str) -> postgresql.ENUM:
    enum_type = postgresql.ENUM(*values, name=name, create_type=False)
    enum_type.create(op.get_bind(), checkfirst=True)
    return enum_type


def upgrade() -> None:
    user_role = _enum("userrole", "citizen", "clerk", "field_agent", "supervisor", "admin")
    request_status = _enum(
        "requeststatus",
        "draft",
        "submitted",
        "triaged",
        "in_review",
        "approved",
        "assigned",
        "in_progress",
        "waiting_on_citizen",
        "resolved",
        "closed",
        "rejected",
        "cancelled",
    )
    request_priority = _enum("requestpriority", "low", "medium", "high", "urgent")
    period_type = _enum("periodtype", "daily", "weekly", "monthly", "quarterly", "yearly", "all_time")
    metric_type = _enum(
        "metrictype",
        "average_resolution_time",
        "sla_compliance_rate",
        "first_call_resolution_rate",
        "citizen_satisfaction_score",
        "request_volume",
        "escalation_rate",
        "staff_utilization",
    )

    op.create_table(
        "departments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("slug", sa.String(160), nullable=False, unique=True),
    )

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("role", user_role, nullable=False, server_default=sa.text("'citizen'")),
        sa.Column("department_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
    )
    op.create_index("ix_users_department_role", "users", ["department_id", "role"])

    op.create_table(
        "service_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("code", sa.String(40), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(120), nullable=False),
        sa.Column("priority", request_priority, nullable=False, server_default=sa.text("'medium'")),
        sa.Column("status", request_status, nullable=False, server_default=sa.text("'draft'")),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("assigned_to", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("department_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("sla_due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("satisfaction_rating", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"]),
        sa.ForeignKeyConstraint(["assigned_to"], ["users.id"]),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
    )
    op.create_index("ix_service_requests_department_created", "service_requests", ["department_id", "created_at"])
    op.create_index("ix_service_requests_department_closed", "service_requests", ["department_id", "closed_at"])
    op.create_index("ix_service_requests_created_by", "service_requests", ["created_by", "created_at"])
    op.create_index("ix_service_requests_assigned_to", "service_requests", ["assigned_to"])
    op.create_index("ix_service_requests_category", "service_requests", ["category"])

    op.create_table(
        "assignments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("assignee_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("assigned_by_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["request_id"], ["service_requests.id"]),
        sa.ForeignKeyConstraint(["assignee_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["assigned_by_id"], ["users.id"]),
    )
    op.create_index("ix_assignments_request", "assignments", ["request_id"])

    op.create_table(
        "comments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("author_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("visibility", sa.String(20), nullable=False, server_default=sa.text("'public'")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["request_id"], ["service_requests.id"]),
        sa.ForeignKeyConstraint(["author_id"], ["users.id"]),
    )
    op.create_index("ix_comments_author_created", "comments", ["author_id", "created_at"])

    op.create_table(
        "upvotes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("request_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["request_id"], ["service_requests.id"]),
    )
    op.create_index("ix_upvotes_user_created", "upvotes", ["user_id", "created_at"])
    op.create_index("ix_upvotes_request", "upvotes", ["request_id"])

    op.create_table(
        "department_metric_snapshots",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("department_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("metric_type", metric_type, nullable=False),
        sa.Column("period_type", period_type, nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
        sa.UniqueConstraint(
            "department_id", "metric_type", "period_type", "period_start", name="uq_dept_metric_snapshot_key"
        ),
    )
    op.create_index("ix_dept_metric_snapshot_calculated", "department_metric_snapshots", ["calculated_at"])
    op.create_index("ix_dept_metric_snapshot_period", "department_metric_snapshots", ["period_type", "period_start"])

    op.create_table(
        "community_stats_snapshots",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("period_type", period_type, nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("requests_submitted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("requests_approved", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("requests_resolved", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("comments_posted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("upvotes_received", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("upvotes_given", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("approval_rate", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("resolution_rate", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("satisfaction_score", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("contribution_score", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("engagement_score", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("quality_score", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("overall_score", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("rank", sa.Integer(), nullable=True),
        sa.Column("previous_rank", sa.Integer(), nullable=True),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.UniqueConstraint("user_id", "period_type", "period_start", name="uq_community_stats_user_period"),
    )
    op.create_index("ix_community_stats_period", "community_stats_snapshots", ["period_type", "period_start"])
    op.create_index("ix_community_stats_overall", "community_stats_snapshots", ["overall_score"])

    op.create_table(
        "community_trends",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("category", sa.String(120), nullable=False),
        sa.Column("metric", sa.String(80), nullable=False),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("change", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("period_type", period_type, nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("category", "metric", "period_type", "period_start", name="uq_community_trend_key"),
    )
    op.create_index("ix_community_trend_category_period", "community_trends", ["category", "period_type"])


def downgrade() -> None:
    op.drop_index("ix_community_trend_category_period", table_name="community_trends")
    op.drop_table("community_trends")

    op.drop_index("ix_community_stats_overall", table_name="community_stats_snapshots")
    op.drop_index("ix_community_stats_period", table_name="community_stats_snapshots")
    op.drop_table("community_stats_snapshots")

    op.drop_index("ix_dept_metric_snapshot_period", table_name="department_metric_snapshots")
    op.drop_index("ix_dept_metric_snapshot_calculated", table_name="department_metric_snapshots")
    op.drop_table("department_metric_snapshots")

    op.drop_index("ix_upvotes_request", table_name="upvotes")
    op.drop_index("ix_upvotes_user_created", table_name="upvotes")
    op.drop_table("upvotes")

    op.drop_index("ix_comments_author_created", table_name="comments")
    op.drop_table("comments")

    op.drop_index("ix_assignments_request", table_name="assignments")
    op.drop_table("assignments")

    op.drop_index("ix_service_requests_category", table_name="service_requests")
    op.drop_index("ix_service_requests_assigned_to", table_name="service_requests")
    op.drop_index("ix_service_requests_created_by", table_name="service_requests")
    op.drop_index("ix_service_requests_department_closed", table_name="service_requests")
    op.drop_index("ix_service_requests_department_created", table_name="service_requests")
    op.drop_table("service_requests")

    op.drop_index("ix_users_department_role", table_name="users")
    op.drop_table("users")
    op.drop_table("departments")

    op.execute("DROP TYPE IF EXISTS metrictype")
    op.execute("DROP TYPE IF EXISTS periodtype")
    op.execute("DROP TYPE IF EXISTS requestpriority")
    op.execute("DROP TYPE IF EXISTS requeststatus")
    op.execute("DROP TYPE IF EXISTS userrole")
