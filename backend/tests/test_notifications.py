from marketplace.adapters.mock_notifier import MockNotificationAdapter, NotificationError
from marketplace.models.match import Match
from marketplace.models.notification import DeliveryStatus, Notification
from marketplace.models.status import MatchStatus
from marketplace.services.notification_service import NotificationDispatcher


class BrokenNotifier(MockNotificationAdapter):
    def send(self, channel, to, subject, body, data=None):
        raise NotificationError("provider down")


def test_accept_queues_notifications_for_sender(flow, actors, database):
    match = flow.propose(actors.c1, actors.package)
    flow.accept(actors.c1, match["id"])
    with database.session() as s:
        rows = s.query(Notification).filter(Notification.user_id == actors.customer).order_by(Notification.id).all()
        assert [n.type for n in rows] == ["MATCH_UPDATE", "MATCH_ACCEPTED", "PAYMENT_REQUIRED"]
        assert all(n.delivery_status == DeliveryStatus.PENDING for n in rows)
        assert rows[1].related_entity_id == match["id"]
        assert rows[1].data["package_id"] == actors.package


def test_dispatcher_sends_email_and_sms(flow, actors, database, notifier):
    match = flow.propose(actors.c1, actors.package)
    flow.accept(actors.c1, match["id"])
    with database.session() as db:
        counts = NotificationDispatcher(db, notifier).dispatch_pending()
    assert counts == {"sent": 3, "retry": 0, "failed": 0}
    channels = {(m["channel"], m["subject"]) for m in notifier.sent}
    assert ("email", "Proposal accepted!") in channels
    assert ("sms", "Payment required") in channels

    with database.session() as s:
        assert s.query(Notification).filter(Notification.delivery_status == DeliveryStatus.SENT).count() == 3

    # nothing left to send
    with database.session() as db:
        assert NotificationDispatcher(db, notifier).dispatch_pending()["sent"] == 0


def test_provider_failures_do_not_touch_core_state(flow, actors, database):
    match = flow.propose(actors.c1, actors.package)
    flow.accept(actors.c1, match["id"])
    broken = BrokenNotifier(delay_ms=0)

    with database.session() as db:
        first = NotificationDispatcher(db, broken, max_attempts=2).dispatch_pending()
    assert first == {"sent": 0, "retry": 3, "failed": 0}
    with database.session() as db:
        second = NotificationDispatcher(db, broken, max_attempts=2).dispatch_pending()
    assert second == {"sent": 0, "retry": 0, "failed": 3}

    with database.session() as s:
        rows = s.query(Notification).all()
        assert all(n.delivery_status == DeliveryStatus.FAILED for n in rows)
        assert all(n.attempts == 2 and n.last_error == "provider down" for n in rows)
        assert s.get(Match, match["id"]).status == MatchStatus.CONFIRMED
