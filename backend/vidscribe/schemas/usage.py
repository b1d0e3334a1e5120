"""Pydantic schemas for the transcription usage summary."""

from datetime import datetime
from typing import Optional

from vidscribe.schemas.transcription import CamelModel


class SubscriptionMinutes(CamelModel):
    used: int
    limit: int
    remaining: int


class UsageSummary(CamelModel):
    subscription_minutes: SubscriptionMinutes
    topup_minutes: int
    total_remaining: int
    period_start: datetime
    period_end: datetime
    reset_at: datetime


class UsageLimits(CamelModel):
    subscription: int
    topup_package: int


class UsageResponse(CamelModel):
    is_entitled: bool
    usage: Optional[UsageSummary] = None
    limits: UsageLimits
