"""Initial schema

Creates the six tables of the training load core:
- workout_records, workout_links (deduplicated workouts and source identifiers)
- daily_metrics (Performance Management Chart)
- calibration_data_points, scaling_profiles (stress-score calibration)
- ingest_logs (ingestion audit trail)

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1b2c3d4e5f6"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _user_id() -> sa.Column:
    return sa.Column(
        "user_id",
        sa.String(255),
        nullable=False,
        index=True,
        comment="Athlete identifier supplied by the calling application",
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        "workout_records",
        sa.Column("id", sa.String(36), primary_key=True),
        _user_id(),
        # Origin
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column(
            "detail_source",
            sa.String(32),
            nullable=False,
            comment="Source whose timing and route the record currently carries",
        ),
        # Timing
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "activity_date",
            sa.Date(),
            nullable=False,
            comment="Calendar day in the athlete timezone",
        ),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        # Classification
        sa.Column("distance_meters", sa.Float(), nullable=True),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("indoor", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("title", sa.String(255), nullable=True),
        # Stress score
        sa.Column("stress", sa.Float(), nullable=False, server_default="0"),
        sa.Column("stress_type", sa.String(32), nullable=False, server_default="estimated"),
        sa.Column("calculated_stress", sa.Float(), nullable=True),
        sa.Column("user_entered_stress", sa.Float(), nullable=True),
        sa.Column(
            "verification_status", sa.String(20), nullable=False, server_default="pending"
        ),
        # Route
        sa.Column("route", sa.Text(), nullable=True),
        sa.Column("has_route", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("route_point_count", sa.Integer(), nullable=True),
        # Telemetry
        sa.Column("avg_heart_rate", sa.Float(), nullable=True),
        sa.Column("max_heart_rate", sa.Float(), nullable=True),
        sa.Column("avg_power", sa.Float(), nullable=True),
        sa.Column("max_power", sa.Float(), nullable=True),
        sa.Column("normalized_power", sa.Float(), nullable=True),
        sa.Column("avg_cadence", sa.Float(), nullable=True),
        sa.Column("max_cadence", sa.Float(), nullable=True),
        sa.Column("avg_pace_seconds_per_km", sa.Float(), nullable=True),
        sa.Column("ascent_meters", sa.Float(), nullable=True),
        sa.Column("calories", sa.Float(), nullable=True),
        # Manual review
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("review_reason", sa.String(100), nullable=True),
        *_timestamps(),
        comment="Deduplicated workouts merged across all sources",
    )
    op.create_index(
        "ix_workout_records_user_date", "workout_records", ["user_id", "activity_date"]
    )

    op.create_table(
        "workout_links",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "workout_id",
            sa.String(36),
            sa.ForeignKey("workout_records.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "source", "external_id", name="uq_workout_link_external"),
        sa.UniqueConstraint("workout_id", "source", name="uq_workout_link_source"),
    )

    op.create_table(
        "daily_metrics",
        sa.Column("id", sa.String(36), primary_key=True),
        _user_id(),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("total_stress", sa.Float(), nullable=False, server_default="0"),
        sa.Column("ctl", sa.Float(), nullable=False, server_default="0"),
        sa.Column("atl", sa.Float(), nullable=False, server_default="0"),
        sa.Column("tsb", sa.Float(), nullable=False, server_default="0"),
        sa.Column("anchored", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("provenance", sa.String(20), nullable=False, server_default="calculated"),
        sa.Column("calculated_ctl", sa.Float(), nullable=True),
        sa.Column("calculated_atl", sa.Float(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "date", name="uq_daily_metrics_user_date"),
        comment="Performance Management Chart, one row per athlete per day",
    )

    op.create_table(
        "calibration_data_points",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _user_id(),
        sa.Column("event_key", sa.String(255), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("signal", sa.String(20), nullable=False),
        sa.Column("calculated", sa.Float(), nullable=False),
        sa.Column("ground_truth", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("pmc_ctl_delta", sa.Float(), nullable=True),
        sa.Column("pmc_atl_delta", sa.Float(), nullable=True),
        sa.Column("anchor_date", sa.Date(), nullable=True),
        sa.Column(
            "workout_id",
            sa.String(36),
            sa.ForeignKey("workout_records.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("user_id", "event_key", name="uq_calibration_event"),
    )
    op.create_index(
        "ix_calibration_points_user_category",
        "calibration_data_points",
        ["user_id", "category", "id"],
    )

    op.create_table(
        "scaling_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _user_id(),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("scale_factor", sa.Float(), nullable=False, server_default="1"),
        sa.Column(
            "bias",
            sa.Float(),
            nullable=False,
            server_default="0",
            comment="Mean of ground_truth - calculated",
        ),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("sample_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("weight_sum", sa.Float(), nullable=False, server_default="0"),
        sa.Column("ratio_variance", sa.Float(), nullable=False, server_default="0"),
        sa.Column("interval_width", sa.Float(), nullable=True),
        sa.Column(
            "calibration_complete", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("learning_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_point_id", sa.Integer(), nullable=True),
        sa.Column("recalculated_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "category", name="uq_scaling_profile_category"),
    )

    op.create_table(
        "ingest_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(255), nullable=False, index=True),
        sa.Column(
            "job_id",
            sa.String(36),
            nullable=False,
            index=True,
            comment="UUID for correlating logs of one batch",
        ),
        sa.Column("source", sa.String(32), nullable=False),
        # Timing
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            index=True,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        # Status
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default="started",
            index=True,
            comment="Status: started, success, partial, failed, cancelled",
        ),
        # Errors
        sa.Column("error_type", sa.String(50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", sa.JSON(), nullable=True),
        # Results
        sa.Column("activities_received", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("counts", sa.JSON(), nullable=True),
        # PMC follow-up
        sa.Column(
            "recompute_from",
            sa.Date(),
            nullable=True,
            comment="Earliest day whose stress total changed",
        ),
        sa.Column("pmc_recomputed", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_ingest_logs_user_started", "ingest_logs", ["user_id", "started_at"])
    op.create_index("ix_ingest_logs_pending", "ingest_logs", ["pmc_recomputed", "recompute_from"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("ix_ingest_logs_pending", table_name="ingest_logs")
    op.drop_index("ix_ingest_logs_user_started", table_name="ingest_logs")
    op.drop_table("ingest_logs")
    op.drop_table("scaling_profiles")
    op.drop_index("ix_calibration_points_user_category", table_name="calibration_data_points")
    op.drop_table("calibration_data_points")
    op.drop_table("daily_metrics")
    op.drop_table("workout_links")
    op.drop_index("ix_workout_records_user_date", table_name="workout_records")
    op.drop_table("workout_records")
