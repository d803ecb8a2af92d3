import logging
import random
import time
from typing import Dict, Optional
from uuid import uuid4

from marketplace.repositories.idempotency_repo import IdempotencyRepository

log = logging.getLogger(__name__)

# test cards, same numbers the checkout page documents
DECLINED_CARDS = {
    "4000000000000002": "Your card was declined",
    "4000000000000341": "Insufficient funds",
}
# charge goes through at the gateway but the answer never comes back
TIMEOUT_CARD = "4000000000000119"


class PaymentDeclined(Exception):
    """Raised for a non-retryable payment failure (e.g., insufficient funds)."""
    pass


class PaymentTransientError(Exception):
    """Raised for a temporary gateway error, suggesting a retry is appropriate."""
    pass


class PaymentTimeout(PaymentTransientError):
    """The gateway did not answer in time; the charge may or may not exist."""
    pass


def card_number(payment_method: Optional[Dict]) -> str:
    if not payment_method:
        return ""
    return str(payment_method.get("cardNumber") or "").replace(" ", "")


class MockPaymentAdapter:
    """
    Mock card gateway with durable idempotency.

    A successful charge is recorded under its idempotency key, so a retried call
    with the same key returns the original transaction instead of charging twice,
    and `lookup` can answer reconciliation queries after an ambiguous timeout.
    """

    def __init__(
        self,
        idempotency_repo: IdempotencyRepository,
        delay_ms: int = 200,
        transient_rate: float = 0.01,
        timeout_ms: int = 5000,
    ):
        self.idempotency_repo = idempotency_repo
        self.delay_seconds = delay_ms / 1000.0
        self.timeout_seconds = timeout_ms / 1000.0
        self.transient_rate = transient_rate

    def charge(
        self,
        amount_cents: int,
        currency: str,
        payment_method: Dict,
        idempotency_key: Optional[str] = None,
    ) -> Dict:
        """
        Simulates a card charge.

        Returns a dict {transaction_id, status, amount_cents, currency}.

        Raises:
            PaymentDeclined: deterministic decline (test card or "force_decline").
            PaymentTransientError: random temporary gateway error.
            PaymentTimeout: no answer within the timeout.
        """
        payment_method = payment_method or {}
        card = card_number(payment_method)

        if idempotency_key and card != TIMEOUT_CARD:
            prior = self.lookup(idempotency_key)
            if prior:
                log.info("charge replayed from idempotency key=%s", idempotency_key)
                return prior

        if self.delay_seconds > self.timeout_seconds:
            raise PaymentTimeout("Payment gateway timed out")
        time.sleep(self.delay_seconds)

        if payment_method.get("force_decline"):
            raise PaymentDeclined("Simulated forced decline")
        if card in DECLINED_CARDS:
            raise PaymentDeclined(DECLINED_CARDS[card])

        if random.random() < self.transient_rate:
            raise PaymentTransientError("Simulated transient gateway error")

        txn = None
        if idempotency_key:
            txn = self.lookup(idempotency_key)
        if txn is None:
            txn = {
                "transaction_id": f"mock-{uuid4().hex}",
                "status": "captured",
                "amount_cents": amount_cents,
                "currency": currency,
            }
            if idempotency_key:
                self.idempotency_repo.store(idempotency_key, "charge", {"charge": txn})

        if card == TIMEOUT_CARD:
            raise PaymentTimeout("Payment gateway did not answer in time")
        return txn

    def lookup(self, idempotency_key: str) -> Optional[Dict]:
        """Return the captured transaction recorded for `idempotency_key`, if any."""
        body = self.idempotency_repo.completed_response(idempotency_key)
        if body:
            return body.get("charge")
        return None

    def refund(self, transaction_id: str, amount_cents: Optional[int] = None, reason: Optional[str] = None) -> Dict:
        """Simulates a refund; the charge stops answering reconciliation lookups."""
        time.sleep(self.delay_seconds)
        self.idempotency_repo.mark_refunded(transaction_id, reason)
        return {
            "refund_id": f"refund-{uuid4().hex}",
            "status": "refunded",
            "transaction_id": transaction_id,
            "amount_cents": amount_cents,
        }

    def health_check(self) -> bool:
        return True
