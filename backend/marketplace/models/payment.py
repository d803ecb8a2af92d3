import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Float, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from marketplace.db import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Payment(Base):
    __tablename__ = "payments"
    id = Column(Integer, primary_key=True, autoincrement=True)
    # one payment per match; a failed attempt is retried on the same row
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False, unique=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    currency = Column(String(8), nullable=False, default="EUR")
    status = Column(
        Enum(PaymentStatus, name="payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_method = Column(String(32), nullable=False, default="CARD")  # CARD, PLATFORM
    transaction_id = Column(String(128), nullable=True)
    attempt = Column(Integer, nullable=False, default=1)
    failure_reason = Column(String(512), nullable=True)
    refund_amount = Column(Float, nullable=True)
    refund_reason = Column(String(512), nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    # start of the current charge attempt; the reconciliation window runs from here
    attempted_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    completed_at = Column(DateTime, nullable=True)

    match = relationship("Match", back_populates="payment")

    @property
    def idempotency_key(self) -> str:
        return f"match-payment:{self.match_id}:{self.attempt}"
