import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from marketplace.errors import Forbidden, NotFound, ValidationError
from marketplace.models.match import Match
from marketplace.models.package import Package
from marketplace.models.status import PackageStatus
from marketplace.models.tracking_event import TrackingEvent, TrackingEventType
from marketplace.repositories.match_repo import MatchRepository
from marketplace.repositories.package_repo import PackageRepository
from marketplace.repositories.tracking_repo import TrackingRepository
from marketplace.services.events import CheckpointAdded
from marketplace.services.notification_service import NotificationOutbox
from marketplace.utils.clock import as_utc, utcnow
from marketplace.utils.locks import package_lock
from marketplace.utils.transactions import smart_transaction

log = logging.getLogger(__name__)

# how far along the delivery each package status is
PROGRESS_RANK = {
    PackageStatus.PENDING: 0,
    PackageStatus.CONFIRMED: 1,
    PackageStatus.ACCEPTED_BY_CARRIER: 1,
    PackageStatus.IN_TRANSIT: 2,
    PackageStatus.AWAITING_RELAY: 2,
    PackageStatus.RELAY_IN_PROGRESS: 2,
    PackageStatus.DELIVERED: 3,
    PackageStatus.CANCELLED: 0,
}

# (milestone, label, rank); CREATED is always reached
MILESTONES = (
    ("CREATED", "Package created", 0),
    ("CONFIRMED", "Picked up", 1),
    ("IN_TRANSIT", "In transit", 2),
    ("DELIVERED", "Delivered", 3),
)

ESTIMATE_OFFSETS = {
    PackageStatus.PENDING: timedelta(hours=24),
    PackageStatus.CONFIRMED: timedelta(hours=6),
    PackageStatus.IN_TRANSIT: timedelta(hours=2),
}


def estimate_delivery(package: Package, active_match: Optional[Match] = None, now: Optional[datetime] = None) -> Optional[datetime]:
    """Rough ETA from the package status alone; None once delivered or when unknown."""
    if package.status == PackageStatus.DELIVERED:
        return None
    offset = ESTIMATE_OFFSETS.get(package.status)
    if offset is None:
        return None
    return (now or utcnow()) + offset


def build_timeline(package: Package, events: List[TrackingEvent], active_match: Optional[Match] = None) -> List[Dict]:
    rank = PROGRESS_RANK[package.status]
    carrier = active_match.ride.carrier if active_match is not None and active_match.ride else None
    locations = {"CREATED": package.sender_address, "CONFIRMED": package.sender_address, "DELIVERED": package.recipient_address}

    timeline = []
    for name, label, milestone_rank in MILESTONES:
        if name == "CREATED":
            timestamp = package.created_at
        else:
            timestamp = package.updated_at if package.status.value == name else None
        timeline.append(
            {
                "status": name,
                "label": label,
                "timestamp": as_utc(timestamp),
                "completed": name == "CREATED" or rank >= milestone_rank,
                "location": locations.get(name),
                "carrier": carrier if name != "CREATED" else None,
            }
        )
    for ev in events:
        timeline.append(
            {
                "status": ev.event_type.value,
                "label": ev.location,
                "timestamp": as_utc(ev.timestamp),
                "completed": True,
                "location": ev.location,
                "notes": ev.notes,
                "carrier": ev.carrier,
                "lat": ev.lat,
                "lng": ev.lng,
            }
        )
    # stable: entries without a timestamp keep their order at the end
    timeline.sort(key=lambda e: (e["timestamp"] is None, e["timestamp"] or datetime.min))
    return timeline


@dataclass
class TrackingView:
    package: Package
    timeline: List[Dict]
    active_match: Optional[Match]
    checkpoints_count: int
    estimated_delivery: Optional[datetime]


class TrackingService:
    def __init__(self, db: Session):
        self.db = db
        self.matches = MatchRepository(db)
        self.packages = PackageRepository(db)
        self.tracking = TrackingRepository(db)
        self.outbox = NotificationOutbox(db)

    def _visible_package(self, package_id: int, user_id: int) -> Package:
        package = self.packages.get_visible(package_id, user_id)
        if package is None:
            raise NotFound("Package not found")
        return package

    def add_checkpoint(
        self,
        package_id: int,
        carrier_id: int,
        location: Optional[str],
        notes: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> TrackingEvent:
        location = (location or "").strip()
        if not location:
            raise ValidationError("location is required")

        with package_lock(package_id), smart_transaction(self.db):
            package = self.packages.get(package_id)
            if package is None:
                raise NotFound("Package not found")
            match = self.matches.active_held_by(package_id, carrier_id)
            if match is None:
                raise Forbidden("Only the carrier currently delivering this package can add checkpoints")

            event = self.tracking.add(
                package_id=package.id,
                carrier_id=carrier_id,
                location=location,
                lat=lat,
                lng=lng,
                notes=notes,
                status=package.status.value,
                event_type=TrackingEventType.CHECKPOINT,
                timestamp=utcnow(),
                match_id=match.id,
            )
            package.current_location = location
            self.outbox.emit(
                CheckpointAdded(
                    user_id=package.user_id,
                    related_entity_id=package.id,
                    package_id=package.id,
                    checkpoint_id=event.id,
                    location=location,
                )
            )
            log.info("checkpoint %s added to package %s at %r", event.id, package.id, location)
        return event

    def list_checkpoints(self, package_id: int, user_id: int) -> List[TrackingEvent]:
        self._visible_package(package_id, user_id)
        return self.tracking.for_package(package_id)

    def get_tracking(self, package_id: int, user_id: int, now: Optional[datetime] = None) -> TrackingView:
        package = self._visible_package(package_id, user_id)
        events = self.tracking.for_package(package_id)
        active = self.matches.active_for_package(package_id)
        return TrackingView(
            package=package,
            timeline=build_timeline(package, events, active),
            active_match=active,
            checkpoints_count=len(events),
            estimated_delivery=estimate_delivery(package, active, now=now),
        )
