"""Transcription minute usage route."""

from fastapi import APIRouter, Depends

from vidscribe.config import settings
from vidscribe.models.profile import Profile
from vidscribe.routes.auth import get_current_user
from vidscribe.schemas.usage import SubscriptionMinutes, UsageLimits, UsageResponse, UsageSummary
from vidscribe.services.credit_ledger import ledger

router = APIRouter(prefix="/transcription-usage", tags=["usage"])


@router.get("", response_model=UsageResponse)
async def get_transcription_usage(current_user: Profile = Depends(get_current_user)):
    """Summarize the caller's subscription and top-up minutes for the current period."""
    limits = UsageLimits(
        subscription=settings.pro_transcription_minutes,
        topup_package=settings.topup_package_minutes,
    )
    stats = await ledger.usage_stats(current_user.id)
    if stats is None:
        return UsageResponse(is_entitled=False, usage=None, limits=limits)

    return UsageResponse(
        is_entitled=stats.is_entitled,
        usage=UsageSummary(
            subscription_minutes=SubscriptionMinutes(
                used=stats.subscription_used,
                limit=stats.subscription_limit,
                remaining=stats.subscription_remaining,
            ),
            topup_minutes=stats.topup_minutes,
            total_remaining=stats.total_remaining,
            period_start=stats.period_start,
            period_end=stats.period_end,
            reset_at=stats.period_end,
        ),
        limits=limits,
    )
