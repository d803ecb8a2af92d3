import logging
import time
from typing import Dict, Optional
from uuid import uuid4

log = logging.getLogger(__name__)


class NotificationError(Exception):
    pass


class MockNotificationAdapter:
    """
    Simple synchronous mock email/SMS provider.
    send returns a dict {channel, message_id, status}
    """

    CHANNELS = ("email", "sms")

    def __init__(self, delay_ms: int = 50):
        self.delay = delay_ms / 1000.0
        self.sent = []

    def send(self, channel: str, to: str, subject: str, body: str, data: Optional[Dict] = None) -> Dict:
        if channel not in self.CHANNELS:
            raise NotificationError(f"Unsupported channel: {channel}")
        if not to:
            raise NotificationError(f"No {channel} address")
        time.sleep(self.delay)
        message_id = f"MSG-{uuid4().hex[:12].upper()}"
        self.sent.append({"channel": channel, "to": to, "subject": subject, "body": body, "data": data})
        log.debug("%s sent to %s: %s", channel, to, subject)
        return {"channel": channel, "message_id": message_id, "status": "sent"}

    def health_check(self) -> bool:
        return True
