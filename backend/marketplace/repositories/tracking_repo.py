from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from marketplace.models.match import Match
from marketplace.models.tracking_event import TrackingEvent, TrackingEventType


class TrackingRepository:
    """Append-only access to a package's tracking events."""

    def __init__(self, db: Session):
        self.db = db

    def add(self, **fields) -> TrackingEvent:
        ev = TrackingEvent(**fields)
        self.db.add(ev)
        self.db.flush()
        return ev

    def for_package(self, package_id: int) -> List[TrackingEvent]:
        return (
            self.db.query(TrackingEvent)
            .options(joinedload(TrackingEvent.carrier))
            .filter(TrackingEvent.package_id == package_id)
            .order_by(TrackingEvent.timestamp, TrackingEvent.id)
            .all()
        )

    def transfers_for_package(self, package_id: int) -> List[TrackingEvent]:
        """TRANSFER events with their relay match, in segment order."""
        return (
            self.db.query(TrackingEvent)
            .outerjoin(Match, TrackingEvent.match_id == Match.id)
            .options(
                joinedload(TrackingEvent.carrier),
                joinedload(TrackingEvent.next_carrier),
                joinedload(TrackingEvent.match).joinedload(Match.ride),
            )
            .filter(
                TrackingEvent.package_id == package_id,
                TrackingEvent.event_type == TrackingEventType.TRANSFER,
            )
            .order_by(Match.segment_order, TrackingEvent.timestamp, TrackingEvent.id)
            .all()
        )

    def latest_transfer_for(self, match_id: int, next_carrier_id: int) -> Optional[TrackingEvent]:
        return (
            self.db.query(TrackingEvent)
            .filter(
                TrackingEvent.event_type == TrackingEventType.TRANSFER,
                TrackingEvent.match_id == match_id,
                TrackingEvent.next_carrier_id == next_carrier_id,
            )
            .order_by(TrackingEvent.timestamp.desc(), TrackingEvent.id.desc())
            .first()
        )

    def relay_experience(self, carrier_id: int) -> int:
        return (
            self.db.query(TrackingEvent)
            .filter(
                TrackingEvent.event_type == TrackingEventType.TRANSFER,
                TrackingEvent.next_carrier_id == carrier_id,
            )
            .count()
        )
