import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from marketplace.adapters.mock_notifier import MockNotificationAdapter
from marketplace.config import settings
from marketplace.models.notification import DeliveryStatus, Notification
from marketplace.services.events import DomainEvent
from marketplace.utils.clock import utcnow

log = logging.getLogger(__name__)


class NotificationOutbox:
    """Writes domain events as notification rows inside the caller's transaction."""

    def __init__(self, db: Session):
        self.db = db

    def emit(self, event: DomainEvent) -> Notification:
        n = Notification(
            user_id=event.user_id,
            type=event.notification_type,
            title=event.title(),
            message=event.message(),
            related_entity_id=event.related_entity_id,
            data=event.payload(),
            delivery_status=DeliveryStatus.PENDING,
        )
        self.db.add(n)
        log.debug("queued %s for user %s", n.type, n.user_id)
        return n


class NotificationDispatcher:
    """
    Drains pending outbox rows through the notification provider.

    Provider failures are recorded on the row and retried on the next run until
    NOTIFY_MAX_ATTEMPTS; they never reach the request that produced the event.
    """

    def __init__(
        self,
        db: Session,
        adapter: Optional[MockNotificationAdapter] = None,
        max_attempts: Optional[int] = None,
    ):
        self.db = db
        self.adapter = adapter or MockNotificationAdapter(delay_ms=settings.NOTIFY_MOCK_DELAY_MS)
        self.max_attempts = max_attempts or settings.NOTIFY_MAX_ATTEMPTS

    def _deliver(self, n: Notification):
        user = n.user
        channels = []
        if user and user.email:
            channels.append(("email", user.email))
        if user and user.phone_number:
            channels.append(("sms", user.phone_number))
        for channel, address in channels:
            self.adapter.send(channel, address, n.title, n.message, data=n.data)

    def dispatch_pending(self, limit: Optional[int] = None) -> Dict[str, int]:
        limit = limit or settings.NOTIFY_BATCH_SIZE
        pending = (
            self.db.query(Notification)
            .filter(Notification.delivery_status == DeliveryStatus.PENDING)
            .order_by(Notification.id)
            .limit(limit)
            .all()
        )
        counts = {"sent": 0, "retry": 0, "failed": 0}
        for n in pending:
            n.attempts = (n.attempts or 0) + 1
            try:
                self._deliver(n)
                n.delivery_status = DeliveryStatus.SENT
                n.sent_at = utcnow()
                n.last_error = None
                counts["sent"] += 1
            except Exception as e:
                n.last_error = str(e)[:1024]
                if n.attempts >= self.max_attempts:
                    n.delivery_status = DeliveryStatus.FAILED
                    counts["failed"] += 1
                    log.error("notification %s dropped after %s attempts: %s", n.id, n.attempts, e)
                else:
                    counts["retry"] += 1
                    log.warning("notification %s failed (attempt %s): %s", n.id, n.attempts, e)
            self.db.commit()
        if pending:
            log.info("notification dispatch: %s", counts)
        return counts
