import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session, joinedload, sessionmaker

from marketplace.adapters.mock_payment import (
    MockPaymentAdapter,
    PaymentDeclined,
    PaymentTransientError,
)
from marketplace.config import settings
from marketplace.errors import Forbidden, GatewayFailure, InvalidState, NotFound, ValidationError
from marketplace.models.match import Match
from marketplace.models.payment import Payment, PaymentStatus
from marketplace.models.status import MatchStatus, PackageStatus, package_status_for
from marketplace.models.user import UserRole
from marketplace.repositories.idempotency_repo import IdempotencyRepository
from marketplace.repositories.match_repo import MatchRepository
from marketplace.services.events import DeliveryConfirmed, MatchPaid, PaymentSucceeded
from marketplace.services.match_service import ACTIVE_CONFLICT, MatchService
from marketplace.services.notification_service import NotificationOutbox
from marketplace.utils.clock import as_utc, utcnow
from marketplace.utils.locks import package_lock
from marketplace.utils.transactions import smart_transaction

log = logging.getLogger(__name__)

PAYMENT_METHODS = ("CARD",)
_EXPIRY = re.compile(r"^(0[1-9]|1[0-2])\s*/\s*(\d{2}|\d{4})$")


def build_gateway(session_factory: sessionmaker) -> MockPaymentAdapter:
    """Configured gateway keeping its idempotency records through `session_factory`."""
    return MockPaymentAdapter(
        IdempotencyRepository(session_factory),
        delay_ms=settings.PAYMENT_MOCK_DELAY_MS,
        transient_rate=settings.PAYMENT_MOCK_TRANSIENT_RATE,
        timeout_ms=settings.PAYMENT_TIMEOUT_MS,
    )


@dataclass
class PaymentResult:
    payment: Payment
    match: Match
    # "captured", "declined" or "pending"
    outcome: str
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome == "captured"


class PaymentService:
    def __init__(self, db: Session, gateway: Optional[MockPaymentAdapter] = None):
        self.db = db
        self.gateway = gateway or build_gateway(sessionmaker(bind=db.get_bind(), autoflush=False))
        self.matches = MatchRepository(db)
        self.match_service = MatchService(db)
        self.outbox = NotificationOutbox(db)

    @staticmethod
    def validate_payment_data(payment_data: Dict) -> str:
        method = str(payment_data.get("paymentMethod") or "CARD").upper()
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {method}")
        if payment_data.get("cardToken"):
            return method
        required = ("cardNumber", "expiryDate", "cvv", "cardholderName")
        if not all(payment_data.get(f) for f in required):
            raise ValidationError("Card information is incomplete")
        number = str(payment_data["cardNumber"]).replace(" ", "")
        if not number.isdigit() or not 12 <= len(number) <= 19:
            raise ValidationError("Invalid card number")
        if not _EXPIRY.match(str(payment_data["expiryDate"]).strip()):
            raise ValidationError("Invalid expiry date, expected MM/YY")
        cvv = str(payment_data["cvv"])
        if not cvv.isdigit() or len(cvv) not in (3, 4):
            raise ValidationError("Invalid CVV")
        return method

    def _charge(self, amount: float, currency: str, payment_data: Dict, key: str):
        """
        Charge with bounded retries on transient errors. Runs outside any
        database transaction. Returns (outcome, transaction, error).
        """
        cents = int(round(amount * 100))
        last_error = None
        for attempt in range(1 + settings.PAYMENT_MAX_RETRIES):
            try:
                txn = self.gateway.charge(cents, currency, payment_data, idempotency_key=key)
                return "captured", txn, None
            except PaymentDeclined as e:
                log.info("charge %s declined: %s", key, e)
                return "declined", None, str(e)
            except PaymentTransientError as e:
                last_error = str(e)
                log.warning("charge %s attempt %s failed: %s", key, attempt + 1, e)
        return "pending", None, last_error

    def _record_success(self, match: Match, payment: Payment, txn: Dict, accept_match: bool):
        package = match.package
        payment.status = PaymentStatus.COMPLETED
        payment.transaction_id = txn.get("transaction_id")
        payment.failure_reason = None
        payment.completed_at = utcnow()
        # the charge stands even if another segment became active meanwhile
        if (
            accept_match
            and match.status in (MatchStatus.PENDING, MatchStatus.CONFIRMED)
            and self.matches.active_for_package(match.package_id, exclude_id=match.id) is None
        ):
            match.status = MatchStatus.ACCEPTED_BY_SENDER
            if match.accepted_at is None:
                match.accepted_at = utcnow()
            package.status = package_status_for(MatchStatus.ACCEPTED_BY_SENDER, match.is_relay_segment)
        self.outbox.emit(
            MatchPaid(
                user_id=match.ride.user_id,
                related_entity_id=match.id,
                package_id=package.id,
                package_description=package.description,
            )
        )
        self.outbox.emit(
            PaymentSucceeded(
                user_id=package.user_id,
                related_entity_id=match.id,
                package_id=package.id,
                amount=payment.amount,
                currency=payment.currency,
                package_description=package.description,
            )
        )
        log.info("payment %s for match %s completed (%s)", payment.id, match.id, payment.transaction_id)

    def pay(
        self,
        match_id: int,
        customer_id: int,
        payment_data: Optional[Dict] = None,
        accept_match: bool = True,
    ) -> PaymentResult:
        payment_data = payment_data or {}
        package_id = self.matches.package_id_for(match_id)
        if package_id is None:
            raise NotFound("Match not found or unauthorized")

        with package_lock(package_id):
            # reserve the payment row before talking to the gateway
            with smart_transaction(self.db, "Payment already exists for this match"):
                match = self.matches.get(match_id, for_update=True)
                if match is None or match.package.user_id != customer_id:
                    raise NotFound("Match not found or unauthorized")
                package = match.package
                if package.owner.role != UserRole.CUSTOMER:
                    raise Forbidden("Only customers can make payments")
                if package.status == PackageStatus.DELIVERED:
                    raise InvalidState("Package already delivered")
                payment = match.payment
                if payment is not None and payment.status != PaymentStatus.FAILED:
                    raise InvalidState("Payment already exists for this match")
                amount = match.price or package.price or 0
                if amount <= 0:
                    raise ValidationError("Invalid amount")
                method = self.validate_payment_data(payment_data)
                if accept_match and match.status == MatchStatus.PENDING:
                    self.match_service.ensure_no_other_active(match)

                if payment is None:
                    payment = Payment(
                        match_id=match.id,
                        user_id=customer_id,
                        amount=amount,
                        currency=settings.PAYMENT_CURRENCY,
                        payment_method=method,
                    )
                    self.db.add(payment)
                else:
                    payment.attempt = (payment.attempt or 1) + 1
                    payment.amount = amount
                    payment.payment_method = method
                    payment.transaction_id = None
                payment.status = PaymentStatus.PENDING
                payment.failure_reason = None
                payment.attempted_at = utcnow()
                self.db.flush()
                key = payment.idempotency_key
                currency = payment.currency

            outcome, txn, error = self._charge(amount, currency, payment_data, key)

            try:
                with smart_transaction(self.db, ACTIVE_CONFLICT):
                    match = self.matches.get(match_id, for_update=True)
                    payment = match.payment
                    if outcome == "captured":
                        self._record_success(match, payment, txn, accept_match)
                    elif outcome == "declined":
                        payment.status = PaymentStatus.FAILED
                        payment.failure_reason = error
                    else:
                        log.warning("payment %s for match %s left pending: %s", payment.id, match_id, error)
            except Exception:
                if txn is not None:
                    self._compensate(txn, match_id)
                raise
        return PaymentResult(payment=payment, match=match, outcome=outcome, error=error)

    def _compensate(self, txn: Dict, match_id: int):
        """Refund a captured charge whose outcome could not be recorded."""
        log.error("recording charge %s for match %s failed; refunding", txn.get("transaction_id"), match_id)
        try:
            self.gateway.refund(txn["transaction_id"], txn.get("amount_cents"), reason="refunded after failed write")
        except Exception:
            log.exception("compensating refund for %s failed", txn.get("transaction_id"))
            return
        with Session(bind=self.db.get_bind()) as s:
            payment = s.query(Payment).filter(Payment.match_id == match_id).first()
            if payment is not None and payment.status == PaymentStatus.PENDING:
                payment.status = PaymentStatus.FAILED
                payment.failure_reason = "Charge refunded: payment could not be recorded"
                s.commit()

    def confirm_delivery(self, match_id: int, customer_id: int) -> Match:
        package_id = self.matches.package_id_for(match_id)
        if package_id is None:
            raise NotFound("Match or payment not found")

        with package_lock(package_id), smart_transaction(self.db, ACTIVE_CONFLICT):
            match = self.matches.get(match_id, for_update=True)
            if match is None:
                raise NotFound("Match or payment not found")
            package = match.package
            if package.user_id != customer_id:
                raise Forbidden("Only the package owner can confirm delivery")
            if match.payment is None:
                raise NotFound("Match or payment not found")
            if match.payment.status != PaymentStatus.COMPLETED:
                raise InvalidState("Payment must be completed first")
            if match.delivery_confirmed_at is not None and package.status == PackageStatus.DELIVERED:
                return match
            self.match_service.ensure_no_other_active(match)

            match.status = MatchStatus.CONFIRMED
            match.delivery_confirmed_at = utcnow()
            package.status = PackageStatus.DELIVERED
            self.outbox.emit(
                DeliveryConfirmed(
                    user_id=match.ride.user_id,
                    related_entity_id=match.id,
                    package_id=package.id,
                    package_description=package.description,
                )
            )
            log.info("delivery of package %s confirmed by owner (match %s)", package.id, match.id)
        return match

    def get_for_user(self, match_id: int, user_id: int) -> Payment:
        match = self.matches.get_visible(match_id, user_id)
        if match is None or match.payment is None:
            raise NotFound("Payment not found")
        return match.payment

    def refund(
        self,
        match_id: int,
        role: UserRole,
        reason: Optional[str],
        amount: Optional[float] = None,
    ) -> Payment:
        if role != UserRole.ADMIN:
            raise Forbidden("Admin role required")
        if not reason or not reason.strip():
            raise ValidationError("reason is required")
        package_id = self.matches.package_id_for(match_id)
        if package_id is None:
            raise NotFound("Payment not found")

        with package_lock(package_id):
            with smart_transaction(self.db):
                payment = self.db.query(Payment).filter(Payment.match_id == match_id).first()
                if payment is None:
                    raise NotFound("Payment not found")
                if payment.status != PaymentStatus.COMPLETED:
                    raise InvalidState(f"Payment is {payment.status.value}, only COMPLETED payments can be refunded")
                refund_amount = payment.amount if amount is None else amount
                if refund_amount <= 0 or refund_amount > payment.amount:
                    raise ValidationError("Refund amount must be positive and at most the paid amount")
                transaction_id = payment.transaction_id

            if transaction_id:
                try:
                    self.gateway.refund(transaction_id, int(round(refund_amount * 100)), reason=reason.strip())
                except Exception as e:
                    log.exception("gateway refund failed for match %s", match_id)
                    raise GatewayFailure(f"Refund failed: {e}")

            with smart_transaction(self.db):
                payment = self.db.query(Payment).filter(Payment.match_id == match_id).first()
                payment.status = PaymentStatus.REFUNDED
                payment.refund_amount = refund_amount
                payment.refund_reason = reason.strip()
            log.info("payment for match %s refunded (%.2f): %s", match_id, refund_amount, reason)
        return payment

    def reconcile_pending(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Settle payments left PENDING by an ambiguous gateway answer. A charge
        found under the payment's idempotency key completes it; one still
        missing after PAYMENT_RECONCILE_AFTER_SECONDS fails it.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.PAYMENT_RECONCILE_AFTER_SECONDS)
        with Session(bind=self.db.get_bind()) as s:
            rows = [
                (p.id, p.match_id, p.match.package_id, p.idempotency_key, as_utc(p.attempted_at or p.created_at))
                for p in s.query(Payment)
                .options(joinedload(Payment.match))
                .filter(Payment.status == PaymentStatus.PENDING)
                .order_by(Payment.id)
                .all()
            ]

        counts = {"completed": 0, "failed": 0, "pending": 0}
        for payment_id, match_id, package_id, key, attempted_at in rows:
            try:
                txn = self.gateway.lookup(key)
                with package_lock(package_id), smart_transaction(self.db, ACTIVE_CONFLICT):
                    payment = self.db.get(Payment, payment_id)
                    if payment is None or payment.status != PaymentStatus.PENDING:
                        continue
                    if txn is not None:
                        match = self.matches.get(match_id, for_update=True)
                        self._record_success(match, payment, txn, accept_match=True)
                        counts["completed"] += 1
                    elif attempted_at is not None and attempted_at <= cutoff:
                        payment.status = PaymentStatus.FAILED
                        payment.failure_reason = "Payment could not be confirmed by the gateway"
                        counts["failed"] += 1
                        log.warning("payment %s for match %s failed reconciliation", payment_id, match_id)
                    else:
                        counts["pending"] += 1
            except Exception:
                log.exception("reconciling payment %s failed", payment_id)
        if rows:
            log.info("payment reconciliation: %s", counts)
        return counts
