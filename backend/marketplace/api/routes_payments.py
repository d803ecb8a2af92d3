from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from marketplace.adapters.mock_payment import MockPaymentAdapter
from marketplace.api.deps import Caller, get_current_user, get_payment_gateway, require_roles
from marketplace.db import get_db
from marketplace.errors import ValidationError
from marketplace.models.user import UserRole
from marketplace.schemas.match_schema import MatchOut
from marketplace.schemas.payment_schema import PayIn, PaymentActionIn, PaymentOut, RefundIn
from marketplace.services.payment_service import PaymentService

router = APIRouter(prefix="/api/match-payments", tags=["payments"])


@router.post("", status_code=201, summary="Pay for a match")
def pay_match(
    payload: PayIn,
    caller: Caller = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: MockPaymentAdapter = Depends(get_payment_gateway),
):
    result = PaymentService(db, gateway).pay(
        payload.match_id, caller.id, payload.payment_data, accept_match=payload.accept_match
    )
    payment = PaymentOut.model_validate(result.payment).dump()
    if result.outcome == "declined":
        return JSONResponse(status_code=400, content={"error": result.error, "payment": payment})
    return {
        "success": result.success,
        "payment": payment,
        "match": MatchOut.model_validate(result.match).dump(),
        "message": "Payment completed successfully" if result.success else "Payment created but processing",
    }


@router.put("", summary="Confirm delivery")
def payment_action(
    payload: PaymentActionIn,
    caller: Caller = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: MockPaymentAdapter = Depends(get_payment_gateway),
):
    if payload.action != "confirm_delivery":
        raise ValidationError("Invalid action")
    match = PaymentService(db, gateway).confirm_delivery(payload.match_id, caller.id)
    return {"message": "Delivery confirmed successfully", "match": MatchOut.model_validate(match).dump()}


@router.get("")
def get_payment(
    match_id: int = Query(..., alias="matchId"),
    caller: Caller = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: MockPaymentAdapter = Depends(get_payment_gateway),
):
    return PaymentOut.model_validate(PaymentService(db, gateway).get_for_user(match_id, caller.id)).dump()


@router.post("/{match_id}/refund")
def refund_payment(
    match_id: int,
    payload: RefundIn,
    caller: Caller = Depends(require_roles([UserRole.ADMIN])),
    db: Session = Depends(get_db),
    gateway: MockPaymentAdapter = Depends(get_payment_gateway),
):
    payment = PaymentService(db, gateway).refund(match_id, caller.role, payload.reason, amount=payload.amount)
    return PaymentOut.model_validate(payment).dump()
