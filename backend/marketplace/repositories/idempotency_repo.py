import logging
from typing import Optional

from sqlalchemy.orm import sessionmaker

from marketplace.models.idempotency import IdempotencyRecord, IdempotencyStatus

log = logging.getLogger(__name__)


class IdempotencyRepository:
    """
    Durable idempotency records keyed by operation key.

    Every write uses its own short-lived session and commits immediately so the
    record is visible to other requests (and to payment reconciliation) even if
    the caller's transaction later rolls back.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        with self.session_factory() as s:
            rec = s.query(IdempotencyRecord).filter(IdempotencyRecord.key == key).first()
            if rec:
                s.expunge(rec)
            return rec

    def completed_response(self, key: str) -> Optional[dict]:
        rec = self.get(key)
        if rec and rec.status == IdempotencyStatus.COMPLETED and isinstance(rec.response_body, dict):
            return rec.response_body
        return None

    def store(self, key: str, operation: str, response_body: dict, completed: bool = True):
        """Upsert the response for `key`, merging into any existing body."""
        with self.session_factory() as s:
            rec = s.query(IdempotencyRecord).filter(IdempotencyRecord.key == key).first()
            if not rec:
                rec = IdempotencyRecord(key=key, operation=operation, response_body=response_body)
                s.add(rec)
            else:
                existing = dict(rec.response_body or {})
                existing.update(response_body)
                rec.response_body = existing
            charge = (rec.response_body or {}).get("charge") or {}
            if charge.get("transaction_id"):
                rec.transaction_id = charge["transaction_id"]
            if completed:
                rec.status = IdempotencyStatus.COMPLETED
            s.commit()
            log.debug("stored idempotency record key=%r completed=%s", key, completed)

    def mark_refunded(self, transaction_id: str, reason: Optional[str] = None) -> bool:
        """Flag the charge behind `transaction_id` as refunded so lookups stop returning it."""
        with self.session_factory() as s:
            rec = s.query(IdempotencyRecord).filter(IdempotencyRecord.transaction_id == transaction_id).first()
            if rec is None:
                return False
            rec.status = IdempotencyStatus.REFUNDED
            if reason:
                rec.last_error = reason[:1024]
            s.commit()
            return True
