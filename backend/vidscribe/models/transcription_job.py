"""Transcription job model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from vidscribe.database import Base


class JobStatus(str, Enum):
    """Lifecycle states of a transcription job.

    pending      - Recorded, waiting for its processing invocation
    downloading  - Audio is being extracted from the remote video
    transcribing - Audio is being converted to timestamped segments
    completed    - Transcript persisted and minutes charged
    failed       - Processing ended with an error; minutes refunded
    cancelled    - Cancelled on request; minutes refunded
    """

    PENDING = "pending"
    DOWNLOADING = "downloading"
    TRANSCRIBING = "transcribing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({JobStatus.PENDING.value, JobStatus.DOWNLOADING.value, JobStatus.TRANSCRIBING.value})
CANCELLABLE_STATUSES = ACTIVE_STATUSES
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value})


class TranscriptionJob(Base):
    """One user-initiated transcription request tracked through its lifecycle."""

    __tablename__ = "transcription_jobs"
    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_transcription_jobs_progress"),
        CheckConstraint(
            "status IN ('pending', 'downloading', 'transcribing', 'completed', 'failed', 'cancelled')",
            name="ck_transcription_jobs_status",
        ),
    )

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(
        Integer, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    video_id = Column(String(64), nullable=False, index=True)
    video_analysis_id = Column(String(36), nullable=True)

    status = Column(String(20), default=JobStatus.PENDING.value, nullable=False, index=True)
    progress = Column(Integer, default=0, nullable=False)
    current_stage = Column(String(100), nullable=True)
    total_chunks = Column(Integer, default=1, nullable=False)
    completed_chunks = Column(Integer, default=0, nullable=False)

    duration_seconds = Column(Integer, nullable=True)
    estimated_cost_cents = Column(Integer, nullable=True)
    audio_storage_path = Column(String(512), nullable=True)
    transcript_data = Column(JSON, nullable=True)  # [{text, start, duration}, ...]
    language = Column(String(16), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    lease_expires_at = Column(DateTime, nullable=True, index=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<TranscriptionJob(id='{self.id}', video='{self.video_id}', status='{self.status}')>"
