from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import Field

from marketplace.models.payment import PaymentStatus
from marketplace.schemas.common import CamelModel


class PaymentOut(CamelModel):
    id: int
    match_id: int
    user_id: int
    amount: float
    currency: str
    status: PaymentStatus
    payment_method: str
    transaction_id: Optional[str] = None
    attempt: int = 1
    failure_reason: Optional[str] = None
    refund_amount: Optional[float] = None
    refund_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PayIn(CamelModel):
    match_id: int
    # card fields keep their wire names (cardNumber, expiryDate, cvv, ...)
    payment_data: Dict[str, Any] = Field(default_factory=dict)
    accept_match: bool = True


class PaymentActionIn(CamelModel):
    match_id: int
    action: str
    delivery_confirmation: Optional[Dict[str, Any]] = None


class RefundIn(CamelModel):
    amount: Optional[float] = Field(None, gt=0)
    reason: Optional[str] = None
