from datetime import timedelta

import pytest

from marketplace.adapters.mock_payment import TIMEOUT_CARD, MockPaymentAdapter
from marketplace.config import settings
from marketplace.models.match import Match
from marketplace.models.package import Package
from marketplace.models.payment import Payment, PaymentStatus
from marketplace.models.status import MatchStatus, PackageStatus
from marketplace.models.user import UserRole
from marketplace.repositories.idempotency_repo import IdempotencyRepository
from marketplace.services.payment_service import PaymentService
from marketplace.utils.clock import utcnow

from conftest import GOOD_CARD

DECLINED_CARD = dict(GOOD_CARD, cardNumber="4000000000000002")


def confirmed_match(flow, actors):
    match = flow.propose(actors.c1, actors.package)
    flow.accept(actors.c1, match["id"])
    return match["id"]


def test_successful_payment_accepts_match(flow, actors, database):
    match_id = confirmed_match(flow, actors)
    r = flow.pay(actors.customer, match_id)
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    assert body["payment"]["status"] == "COMPLETED"
    assert body["payment"]["amount"] == 25.0
    assert body["payment"]["transactionId"].startswith("mock-")
    assert body["match"]["status"] == "ACCEPTED_BY_SENDER"
    with database.session() as s:
        assert s.get(Package, actors.package).status == PackageStatus.CONFIRMED


def test_pay_without_accepting(flow, actors, database):
    match_id = confirmed_match(flow, actors)
    r = flow.pay(actors.customer, match_id, acceptMatch=False)
    assert r.status_code == 201
    assert r.json()["match"]["status"] == "CONFIRMED"


def test_decline_leaves_state_untouched_and_can_be_retried(flow, actors, database):
    match_id = confirmed_match(flow, actors)
    r = flow.pay(actors.customer, match_id, card=DECLINED_CARD)
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "Your card was declined"
    assert body["payment"]["status"] == "FAILED"
    with database.session() as s:
        assert s.get(Match, match_id).status == MatchStatus.CONFIRMED
        assert s.get(Package, actors.package).status == PackageStatus.CONFIRMED

    r = flow.pay(actors.customer, match_id)
    assert r.status_code == 201
    assert r.json()["payment"]["attempt"] == 2
    with database.session() as s:
        assert s.query(Payment).filter(Payment.match_id == match_id).count() == 1


def test_second_payment_is_rejected(flow, actors):
    match_id = confirmed_match(flow, actors)
    assert flow.pay(actors.customer, match_id).status_code == 201
    r = flow.pay(actors.customer, match_id)
    assert r.status_code == 400
    assert r.json()["error"] == "Payment already exists for this match"


def test_only_the_owner_can_pay(flow, actors, make_user):
    match_id = confirmed_match(flow, actors)
    other = make_user(UserRole.CUSTOMER)
    assert flow.pay(other, match_id).status_code == 404
    assert flow.pay(actors.c1, match_id).status_code == 404


def test_incomplete_card_is_rejected(flow, actors, database):
    match_id = confirmed_match(flow, actors)
    r = flow.pay(actors.customer, match_id, card={"paymentMethod": "CARD", "cardNumber": "4242424242424242"})
    assert r.status_code == 400
    assert r.json()["error"] == "Card information is incomplete"
    r = flow.pay(actors.customer, match_id, card={"paymentMethod": "CASH"})
    assert r.status_code == 400
    with database.session() as s:
        assert s.query(Payment).count() == 0


def test_zero_amount_is_rejected(flow, actors, make_package):
    package_id = make_package(actors.customer, price=None)
    match = flow.propose(actors.c1, package_id)
    flow.accept(actors.c1, match["id"])
    r = flow.pay(actors.customer, match["id"])
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid amount"


def test_timeout_stays_pending_until_reconciled(flow, actors, database, gateway):
    match_id = confirmed_match(flow, actors)
    r = flow.pay(actors.customer, match_id, card=dict(GOOD_CARD, cardNumber=TIMEOUT_CARD))
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is False
    assert body["payment"]["status"] == "PENDING"
    assert body["match"]["status"] == "CONFIRMED"

    with database.session() as db:
        counts = PaymentService(db, gateway).reconcile_pending()
    assert counts["completed"] == 1

    with database.session() as s:
        payment = s.query(Payment).filter(Payment.match_id == match_id).one()
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.transaction_id.startswith("mock-")
        assert s.get(Match, match_id).status == MatchStatus.ACCEPTED_BY_SENDER


def test_unconfirmed_pending_payment_fails_after_window(flow, actors, database):
    match_id = confirmed_match(flow, actors)
    flaky = MockPaymentAdapter(IdempotencyRepository(database.SessionLocal), delay_ms=0, transient_rate=1.0)
    with database.session() as db:
        result = PaymentService(db, flaky).pay(match_id, actors.customer, GOOD_CARD)
        assert result.outcome == "pending"

    with database.session() as db:
        assert PaymentService(db, flaky).reconcile_pending()["pending"] == 1
        later = utcnow() + timedelta(seconds=settings.PAYMENT_RECONCILE_AFTER_SECONDS + 5)
        assert PaymentService(db, flaky).reconcile_pending(now=later)["failed"] == 1

    with database.session() as s:
        payment = s.query(Payment).filter(Payment.match_id == match_id).one()
        assert payment.status == PaymentStatus.FAILED
        assert s.get(Match, match_id).status == MatchStatus.CONFIRMED


def test_confirm_delivery(client, flow, actors, headers, database):
    match_id = confirmed_match(flow, actors)
    body = {"matchId": match_id, "action": "confirm_delivery"}

    r = client.put("/api/match-payments", json=body, headers=headers(actors.customer))
    assert r.status_code == 404

    flow.pay(actors.customer, match_id)
    r = client.put("/api/match-payments", json=body, headers=headers(actors.c1))
    assert r.status_code == 403
    r = client.put("/api/match-payments", json=dict(body, action="nope"), headers=headers(actors.customer))
    assert r.status_code == 400

    r = client.put("/api/match-payments", json=body, headers=headers(actors.customer))
    assert r.status_code == 200
    assert r.json()["match"]["status"] == "CONFIRMED"
    with database.session() as s:
        assert s.get(Package, actors.package).status == PackageStatus.DELIVERED
        assert s.get(Match, match_id).delivery_confirmed_at is not None

    # no further movement once delivered
    assert flow.status(actors.c1, match_id, "IN_TRANSIT").status_code == 400


def test_get_payment(client, flow, actors, headers, make_user):
    match_id = confirmed_match(flow, actors)
    assert client.get(f"/api/match-payments?matchId={match_id}", headers=headers(actors.customer)).status_code == 404
    flow.pay(actors.customer, match_id)

    r = client.get(f"/api/match-payments?matchId={match_id}", headers=headers(actors.c1))
    assert r.status_code == 200
    assert r.json()["matchId"] == match_id
    stranger = make_user(UserRole.CUSTOMER)
    assert client.get(f"/api/match-payments?matchId={match_id}", headers=headers(stranger)).status_code == 404


def test_admin_refund(client, flow, actors, headers):
    match_id = confirmed_match(flow, actors)
    flow.pay(actors.customer, match_id)

    r = client.post(f"/api/match-payments/{match_id}/refund", json={"reason": "damaged"}, headers=headers(actors.customer))
    assert r.status_code == 403
    r = client.post(f"/api/match-payments/{match_id}/refund", json={}, headers=headers(actors.admin))
    assert r.status_code == 400

    r = client.post(
        f"/api/match-payments/{match_id}/refund", json={"reason": "damaged", "amount": 10}, headers=headers(actors.admin)
    )
    assert r.status_code == 200
    assert r.json()["status"] == "REFUNDED"
    assert r.json()["refundAmount"] == 10

    r = client.post(f"/api/match-payments/{match_id}/refund", json={"reason": "again"}, headers=headers(actors.admin))
    assert r.status_code == 400


def test_failed_write_refunds_the_charge(flow, actors, database, gateway, monkeypatch):
    match_id = confirmed_match(flow, actors)

    def broken_record(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(PaymentService, "_record_success", broken_record)
    with database.session() as s:
        with pytest.raises(RuntimeError):
            PaymentService(s, gateway).pay(match_id, actors.customer, GOOD_CARD)

    with database.session() as s:
        payment = s.query(Payment).filter(Payment.match_id == match_id).one()
        assert payment.status == PaymentStatus.FAILED
        assert "refunded" in payment.failure_reason
        assert gateway.lookup(payment.idempotency_key) is None
        assert s.get(Match, match_id).status == MatchStatus.CONFIRMED


def test_retried_payment_gets_a_fresh_reconcile_window(flow, actors, database):
    match_id = confirmed_match(flow, actors)
    assert flow.pay(actors.customer, match_id, card=DECLINED_CARD).status_code == 400
    # the first attempt happened long ago
    with database.session() as s:
        payment = s.query(Payment).filter(Payment.match_id == match_id).one()
        payment.created_at = utcnow() - timedelta(hours=2)
        payment.attempted_at = utcnow() - timedelta(hours=2)
        s.commit()

    flaky = MockPaymentAdapter(IdempotencyRepository(database.SessionLocal), delay_ms=0, transient_rate=1.0)
    with database.session() as db:
        assert PaymentService(db, flaky).pay(match_id, actors.customer, GOOD_CARD).outcome == "pending"
    with database.session() as db:
        counts = PaymentService(db, flaky).reconcile_pending()
    assert counts == {"completed": 0, "failed": 0, "pending": 1}

    with database.session() as s:
        payment = s.query(Payment).filter(Payment.match_id == match_id).one()
        assert payment.status == PaymentStatus.PENDING
        assert payment.attempt == 2
