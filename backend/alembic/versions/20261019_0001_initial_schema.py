"""Initial transcription schema: profiles, jobs, usage ledger and top-up purchases.

Revision ID: 20261019_0001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = "20261019_0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    existing = set(inspect(bind).get_table_names())

    if "profiles" not in existing:
        op.create_table(
            "profiles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("username", sa.String(length=50), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("subscription_tier", sa.String(length=20), nullable=False, server_default="free"),
            sa.Column("subscription_current_period_start", sa.DateTime(), nullable=True),
            sa.Column("subscription_current_period_end", sa.DateTime(), nullable=True),
            sa.Column(
                "transcription_minutes_topup",
                sa.Integer(),
                nullable=False,
                server_default=sa.text("0"),
            ),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint(
                "transcription_minutes_topup >= 0", name="ck_profiles_topup_nonnegative"
            ),
            sa.UniqueConstraint("username"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("ix_profiles_id", "profiles", ["id"])
        op.create_index("ix_profiles_username", "profiles", ["username"])
        op.create_index("ix_profiles_subscription_tier", "profiles", ["subscription_tier"])

    if "transcription_jobs" not in existing:
        op.create_table(
            "transcription_jobs",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column(
                "user_id",
                sa.Integer(),
                sa.ForeignKey("profiles.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("video_id", sa.String(length=64), nullable=False),
            sa.Column("video_analysis_id", sa.String(length=36), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("current_stage", sa.String(length=100), nullable=True),
            sa.Column("total_chunks", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("completed_chunks", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("duration_seconds", sa.Integer(), nullable=True),
            sa.Column("estimated_cost_cents", sa.Integer(), nullable=True),
            sa.Column("audio_storage_path", sa.String(length=512), nullable=True),
            sa.Column("transcript_data", sa.JSON(), nullable=True),
            sa.Column("language", sa.String(length=16), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
            sa.CheckConstraint(
                "progress >= 0 AND progress <= 100", name="ck_transcription_jobs_progress"
            ),
            sa.CheckConstraint(
                "status IN ('pending', 'downloading', 'transcribing', 'completed', 'failed', 'cancelled')",
                name="ck_transcription_jobs_status",
            ),
        )
        op.create_index("ix_transcription_jobs_user_id", "transcription_jobs", ["user_id"])
        op.create_index("ix_transcription_jobs_video_id", "transcription_jobs", ["video_id"])
        op.create_index("ix_transcription_jobs_status", "transcription_jobs", ["status"])
        op.create_index("ix_transcription_jobs_created_at", "transcription_jobs", ["created_at"])
        op.create_index(
            "ix_transcription_jobs_lease_expires_at", "transcription_jobs", ["lease_expires_at"]
        )

    if "transcription_usage" not in existing:
        op.create_table(
            "transcription_usage",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "user_id",
                sa.Integer(),
                sa.ForeignKey("profiles.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column(
                "job_id",
                sa.String(length=36),
                sa.ForeignKey("transcription_jobs.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("minutes_used", sa.Integer(), nullable=False),
            sa.Column("source", sa.String(length=20), nullable=False),
            sa.Column("period_start", sa.DateTime(), nullable=True),
            sa.Column("period_end", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint("minutes_used > 0", name="ck_transcription_usage_minutes"),
            sa.CheckConstraint(
                "source IN ('subscription', 'topup')", name="ck_transcription_usage_source"
            ),
        )
        op.create_index("ix_transcription_usage_id", "transcription_usage", ["id"])
        op.create_index("ix_transcription_usage_user_id", "transcription_usage", ["user_id"])
        op.create_index("ix_transcription_usage_job_id", "transcription_usage", ["job_id"])
        op.create_index(
            "idx_transcription_usage_period",
            "transcription_usage",
            ["user_id", "period_start", "period_end"],
        )

    if "transcription_topup_purchases" not in existing:
        op.create_table(
            "transcription_topup_purchases",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "user_id",
                sa.Integer(),
                sa.ForeignKey("profiles.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("payment_intent_id", sa.String(length=255), nullable=False),
            sa.Column("minutes_purchased", sa.Integer(), nullable=False),
            sa.Column("amount_paid", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint("minutes_purchased > 0", name="ck_topup_minutes_positive"),
            sa.CheckConstraint("amount_paid >= 0", name="ck_topup_amount_nonnegative"),
            sa.UniqueConstraint("payment_intent_id"),
        )
        op.create_index(
            "ix_transcription_topup_purchases_id", "transcription_topup_purchases", ["id"]
        )
        op.create_index(
            "ix_transcription_topup_purchases_user_id",
            "transcription_topup_purchases",
            ["user_id"],
        )


def downgrade() -> None:
    bind = op.get_bind()
    existing = set(inspect(bind).get_table_names())
    for table in (
        "transcription_topup_purchases",
        "transcription_usage",
        "transcription_jobs",
        "profiles",
    ):
        if table in existing:
            op.drop_table(table)
