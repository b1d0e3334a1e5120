"""Database models package."""

from vidscribe.models.profile import Profile
from vidscribe.models.transcription_job import (
    ACTIVE_STATUSES,
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    JobStatus,
    TranscriptionJob,
)
from vidscribe.models.transcription_usage import UsageRecord, UsageSource
from vidscribe.models.topup_purchase import TopupPurchase

__all__ = [
    "Profile",
    "TranscriptionJob",
    "JobStatus",
    "ACTIVE_STATUSES",
    "CANCELLABLE_STATUSES",
    "TERMINAL_STATUSES",
    "UsageRecord",
    "UsageSource",
    "TopupPurchase",
]
