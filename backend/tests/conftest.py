import itertools
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from marketplace.adapters.mock_notifier import MockNotificationAdapter
from marketplace.adapters.mock_payment import MockPaymentAdapter
from marketplace.db import Database
from marketplace.main import create_app
from marketplace.models.package import Package
from marketplace.models.ride import Ride
from marketplace.models.user import User, UserRole
from marketplace.repositories.idempotency_repo import IdempotencyRepository
from marketplace.security import AuthService

GOOD_CARD = {
    "paymentMethod": "CARD",
    "cardNumber": "4242 4242 4242 4242",
    "expiryDate": "12/30",
    "cvv": "123",
    "cardholderName": "Alice Martin",
}


@pytest.fixture
def database(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'test.db'}")
    database.init(reset=True)
    yield database
    database.dispose()


@pytest.fixture
def gateway(database):
    return MockPaymentAdapter(IdempotencyRepository(database.SessionLocal), delay_ms=0, transient_rate=0.0)


@pytest.fixture
def notifier():
    return MockNotificationAdapter(delay_ms=0)


@pytest.fixture
def client(database, gateway, notifier):
    app = create_app(database=database, payment_gateway=gateway, notifier=notifier, start_scheduler=False)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(database):
    counter = itertools.count(1)

    def _make(role=UserRole.CUSTOMER, **fields):
        n = next(counter)
        fields.setdefault("email", f"{role.value.lower()}{n}@example.com")
        fields.setdefault("first_name", f"{role.value.title()}{n}")
        fields.setdefault("last_name", "Test")
        fields.setdefault("is_verified", True)
        with database.session() as s:
            user = User(role=role, **fields)
            s.add(user)
            s.commit()
            return user.id

    return _make


@pytest.fixture
def make_package(database):
    def _make(owner_id, **fields):
        fields.setdefault("description", "Box of books")
        fields.setdefault("sender_address", "1 Rue de Rivoli, Paris")
        fields.setdefault("recipient_address", "10 Quai du Port, Marseille")
        fields.setdefault("price", 25.0)
        fields.setdefault("weight", 4.0)
        with database.session() as s:
            package = Package(user_id=owner_id, **fields)
            s.add(package)
            s.commit()
            return package.id

    return _make


@pytest.fixture
def make_ride(database):
    def _make(carrier_id, **fields):
        fields.setdefault("origin", "Paris")
        fields.setdefault("destination", "Marseille")
        with database.session() as s:
            ride = Ride(user_id=carrier_id, **fields)
            s.add(ride)
            s.commit()
            return ride.id

    return _make


def auth_headers(user_id):
    return {"Authorization": f"Bearer {AuthService.create_access_token({'user_id': user_id})}"}


@pytest.fixture
def actors(make_user, make_package):
    customer = make_user(UserRole.CUSTOMER, phone_number="+33600000001")
    c1 = make_user(UserRole.CARRIER)
    c2 = make_user(UserRole.CARRIER)
    c3 = make_user(UserRole.CARRIER)
    admin = make_user(UserRole.ADMIN)
    package = make_package(customer)
    return SimpleNamespace(customer=customer, c1=c1, c2=c2, c3=c3, admin=admin, package=package)


class Flow:
    """Drives the HTTP API through the usual delivery steps."""

    def __init__(self, client):
        self.client = client

    def propose(self, carrier, package_id, **body):
        r = self.client.post("/api/matches", json={"packageId": package_id, **body}, headers=auth_headers(carrier))
        assert r.status_code == 201, r.text
        return r.json()["match"]

    def accept(self, carrier, match_id):
        r = self.client.post(f"/api/matches/{match_id}/accept", headers=auth_headers(carrier))
        assert r.status_code == 200, r.text
        return r.json()["match"]

    def pay(self, customer, match_id, card=None, **body):
        payload = {"matchId": match_id, "paymentData": card or GOOD_CARD, **body}
        return self.client.post("/api/match-payments", json=payload, headers=auth_headers(customer))

    def status(self, carrier, match_id, status):
        return self.client.post(
            f"/api/matches/{match_id}/status", json={"status": status}, headers=auth_headers(carrier)
        )

    def relay(self, carrier, package_id, next_carrier, dropoff="Lyon", **body):
        payload = {"dropoffLocation": dropoff, "nextCarrierId": next_carrier, **body}
        return self.client.post(
            f"/api/packages/{package_id}/create-relay", json=payload, headers=auth_headers(carrier)
        )

    def accept_relay(self, carrier, match_id, **body):
        return self.client.post(
            f"/api/matches/{match_id}/accept-relay", json=body or None, headers=auth_headers(carrier)
        )

    def in_transit(self, customer, carrier, package_id):
        """Propose, accept, pay and start a delivery; returns the match id."""
        match = self.propose(carrier, package_id)
        self.accept(carrier, match["id"])
        r = self.pay(customer, match["id"])
        assert r.status_code == 201, r.text
        r = self.status(carrier, match["id"], "IN_TRANSIT")
        assert r.status_code == 200, r.text
        return match["id"]


@pytest.fixture
def flow(client):
    return Flow(client)


@pytest.fixture
def headers():
    return auth_headers
