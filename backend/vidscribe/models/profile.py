"""Profile model."""

from datetime import datetime
from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from vidscribe.database import Base


class Profile(Base):
    """Account profile holding the subscription tier and the top-up minute balance.

    The subscription allowance is not stored here: it is derived from the tier
    and the usage rows recorded inside the current billing period.
    """

    __tablename__ = "profiles"
    __table_args__ = (
        CheckConstraint("transcription_minutes_topup >= 0", name="ck_profiles_topup_nonnegative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=True)
    subscription_tier = Column(String(20), default="free", nullable=False, index=True)
    subscription_current_period_start = Column(DateTime, nullable=True)
    subscription_current_period_end = Column(DateTime, nullable=True)
    transcription_minutes_topup = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, username='{self.username}', tier='{self.subscription_tier}')>"
