from datetime import datetime, timedelta, timezone

from marketplace.models.package import Package
from marketplace.models.status import PackageStatus
from marketplace.models.tracking_event import TrackingEvent, TrackingEventType
from marketplace.models.user import UserRole
from marketplace.services.tracking_service import build_timeline, estimate_delivery

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def checkpoint(client, headers, user, package_id, **body):
    return client.post(f"/api/packages/{package_id}/checkpoints", json=body, headers=headers(user))


def test_active_carrier_adds_checkpoint(client, flow, actors, headers, database):
    flow.in_transit(actors.customer, actors.c1, actors.package)
    r = checkpoint(client, headers, actors.c1, actors.package, location="Dijon", notes="fuel stop", lat=47.3, lng=5.0)
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["eventType"] == "CHECKPOINT"
    assert body["location"] == "Dijon"
    assert body["carrierId"] == actors.c1

    with database.session() as s:
        package = s.get(Package, actors.package)
        assert package.current_location == "Dijon"
        assert package.status == PackageStatus.IN_TRANSIT


def test_checkpoint_needs_an_active_match(client, flow, actors, headers, database):
    flow.in_transit(actors.customer, actors.c1, actors.package)
    assert checkpoint(client, headers, actors.c3, actors.package, location="Dijon").status_code == 403
    assert checkpoint(client, headers, actors.customer, actors.package, location="Dijon").status_code == 403
    assert checkpoint(client, headers, actors.c1, actors.package, location="  ").status_code == 400
    assert checkpoint(client, headers, actors.c1, 9999, location="Dijon").status_code == 404
    with database.session() as s:
        assert s.query(TrackingEvent).count() == 0


def test_pending_proposal_cannot_add_checkpoint(client, flow, actors, headers):
    flow.propose(actors.c1, actors.package)
    assert checkpoint(client, headers, actors.c1, actors.package, location="Dijon").status_code == 403


def test_list_checkpoints(client, flow, actors, headers, make_user):
    flow.in_transit(actors.customer, actors.c1, actors.package)
    checkpoint(client, headers, actors.c1, actors.package, location="Dijon")
    checkpoint(client, headers, actors.c1, actors.package, location="Valence")

    r = client.get(f"/api/packages/{actors.package}/checkpoints", headers=headers(actors.customer))
    assert r.status_code == 200
    assert [e["location"] for e in r.json()] == ["Dijon", "Valence"]
    stranger = make_user(UserRole.CUSTOMER)
    r = client.get(f"/api/packages/{actors.package}/checkpoints", headers=headers(stranger))
    assert r.status_code == 404


def test_tracking_view(client, flow, actors, headers):
    match_id = flow.in_transit(actors.customer, actors.c1, actors.package)
    checkpoint(client, headers, actors.c1, actors.package, location="Dijon")

    r = client.get(f"/api/packages/{actors.package}/tracking", headers=headers(actors.customer))
    assert r.status_code == 200
    body = r.json()
    assert body["package"]["status"] == "IN_TRANSIT"
    assert body["activeMatch"]["id"] == match_id
    assert body["checkpointsCount"] == 1
    assert body["estimatedDelivery"] is not None

    by_status = {e["status"]: e for e in body["timeline"]}
    assert by_status["CREATED"]["completed"] is True
    assert by_status["CONFIRMED"]["completed"] is True
    assert by_status["IN_TRANSIT"]["completed"] is True
    assert by_status["DELIVERED"]["completed"] is False
    assert by_status["DELIVERED"]["timestamp"] is None
    assert by_status["CHECKPOINT"]["location"] == "Dijon"
    # undated milestones sort last
    assert body["timeline"][-1]["timestamp"] is None

    assert client.get(f"/api/packages/{actors.package}/tracking", headers=headers(actors.c1)).status_code == 200
    assert client.get(f"/api/packages/{actors.package}/tracking", headers=headers(actors.c3)).status_code == 404


def make_package(status):
    return Package(
        id=1,
        user_id=1,
        sender_address="Paris",
        recipient_address="Marseille",
        status=status,
        created_at=NOW - timedelta(days=2),
        updated_at=NOW - timedelta(hours=3),
    )


def test_timeline_orders_by_timestamp_with_undated_last():
    package = make_package(PackageStatus.CONFIRMED)
    events = [
        TrackingEvent(location="Dijon", event_type=TrackingEventType.CHECKPOINT, timestamp=NOW - timedelta(hours=1)),
        TrackingEvent(location="Paris", event_type=TrackingEventType.PICKUP, timestamp=NOW - timedelta(days=1)),
    ]
    timeline = build_timeline(package, events)

    assert [e["status"] for e in timeline] == ["CREATED", "PICKUP", "CONFIRMED", "CHECKPOINT", "IN_TRANSIT", "DELIVERED"]
    completed = {e["status"]: e["completed"] for e in timeline}
    assert completed["CONFIRMED"] is True
    assert completed["IN_TRANSIT"] is False
    assert completed["DELIVERED"] is False


def test_relay_statuses_count_as_in_transit():
    timeline = build_timeline(make_package(PackageStatus.AWAITING_RELAY), [])
    completed = {e["status"]: e["completed"] for e in timeline}
    assert completed == {"CREATED": True, "CONFIRMED": True, "IN_TRANSIT": True, "DELIVERED": False}


def test_estimate_delivery():
    assert estimate_delivery(make_package(PackageStatus.PENDING), now=NOW) == NOW + timedelta(hours=24)
    assert estimate_delivery(make_package(PackageStatus.CONFIRMED), now=NOW) == NOW + timedelta(hours=6)
    assert estimate_delivery(make_package(PackageStatus.IN_TRANSIT), now=NOW) == NOW + timedelta(hours=2)
    assert estimate_delivery(make_package(PackageStatus.DELIVERED), now=NOW) is None
    assert estimate_delivery(make_package(PackageStatus.AWAITING_RELAY), now=NOW) is None
