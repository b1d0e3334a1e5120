"""Usage ledger model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String
from vidscribe.database import Base


class UsageSource(str, Enum):
    SUBSCRIPTION = "subscription"
    TOPUP = "topup"


class UsageRecord(Base):
    """Append-only record of minutes charged to a job.

    Rows are written only by the atomic consume operation and removed only by
    the refund of the same job.
    """

    __tablename__ = "transcription_usage"
    __table_args__ = (
        CheckConstraint("minutes_used > 0", name="ck_transcription_usage_minutes"),
        CheckConstraint("source IN ('subscription', 'topup')", name="ck_transcription_usage_source"),
        Index("idx_transcription_usage_period", "user_id", "period_start", "period_end"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    job_id = Column(
        String(36),
        ForeignKey("transcription_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    minutes_used = Column(Integer, nullable=False)
    source = Column(String(20), nullable=False)
    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<UsageRecord(job_id='{self.job_id}', minutes={self.minutes_used}, "
            f"source='{self.source}')>"
        )
