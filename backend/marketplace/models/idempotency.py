import enum

from marketplace.db import Base
from marketplace.utils.clock import utcnow
from sqlalchemy import JSON, Column, DateTime, Enum, Integer, String


class IdempotencyStatus(enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class IdempotencyRecord(Base):
    """Gateway-side record of a charge, keyed by the payment's idempotency key."""

    __tablename__ = "idempotency_records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(128), unique=True, nullable=False, index=True)
    operation = Column(String(64), nullable=False)
    status = Column(Enum(IdempotencyStatus), nullable=False, default=IdempotencyStatus.IN_PROGRESS)
    # gateway transaction the key resolved to; refunds find the record through it
    transaction_id = Column(String(64), nullable=True, index=True)
    response_body = Column(JSON, nullable=True)
    last_error = Column(String(1024), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
