"""Top-up purchase model."""

from datetime import datetime
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from vidscribe.database import Base


class TopupPurchase(Base):
    """Idempotency record for a completed top-up purchase, keyed by payment intent."""

    __tablename__ = "transcription_topup_purchases"
    __table_args__ = (
        CheckConstraint("minutes_purchased > 0", name="ck_topup_minutes_positive"),
        CheckConstraint("amount_paid >= 0", name="ck_topup_amount_nonnegative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payment_intent_id = Column(String(255), unique=True, nullable=False)
    minutes_purchased = Column(Integer, nullable=False)
    amount_paid = Column(Integer, nullable=False)  # cents
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<TopupPurchase(intent='{self.payment_intent_id}', minutes={self.minutes_purchased})>"
