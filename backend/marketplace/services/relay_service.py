import logging
import re
import secrets
import string
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from marketplace.config import settings
from marketplace.errors import Forbidden, InvalidState, NotFound, ValidationError
from marketplace.models.match import Match
from marketplace.models.ride import Ride
from marketplace.models.status import MatchStatus, PackageStatus, package_status_for
from marketplace.models.tracking_event import TrackingEvent, TrackingEventType
from marketplace.models.user import User, UserRole
from marketplace.repositories.match_repo import MatchRepository
from marketplace.repositories.package_repo import PackageRepository
from marketplace.repositories.tracking_repo import TrackingRepository
from marketplace.services.events import RelayAccepted, RelayConfirmed, RelayCreated, RelayProposed
from marketplace.services.match_service import ACTIVE_CONFLICT, MatchService
from marketplace.services.notification_service import NotificationOutbox
from marketplace.utils.clock import utcnow
from marketplace.utils.locks import package_lock
from marketplace.utils.transactions import smart_transaction

log = logging.getLogger(__name__)

TRANSFER_CODE_PATTERN = re.compile(r"^[A-Z0-9]{4,12}$")
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_transfer_code(length: Optional[int] = None) -> str:
    length = length or settings.TRANSFER_CODE_LENGTH
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def normalize_transfer_code(code: Optional[str]) -> Optional[str]:
    if code is None or not str(code).strip():
        return None
    code = str(code).strip().upper()
    if not TRANSFER_CODE_PATTERN.match(code):
        raise ValidationError("transferCode must be 4 to 12 letters or digits")
    return code


class RelayService:
    """Hand-over of a package between carriers as a chain of match segments."""

    def __init__(self, db: Session):
        self.db = db
        self.matches = MatchRepository(db)
        self.packages = PackageRepository(db)
        self.tracking = TrackingRepository(db)
        self.match_service = MatchService(db)
        self.outbox = NotificationOutbox(db)

    def create_relay(
        self,
        package_id: int,
        carrier_id: int,
        dropoff_location: Optional[str],
        next_carrier_id: Optional[int],
        transfer_code: Optional[str] = None,
        estimated_arrival: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> TrackingEvent:
        """
        Close the caller's active segment at `dropoff_location` and propose the
        next one to `next_carrier_id`. Returns the TRANSFER event.
        """
        dropoff_location = (dropoff_location or "").strip()
        if not dropoff_location or not next_carrier_id:
            raise ValidationError("dropoffLocation and nextCarrierId are required")
        if next_carrier_id == carrier_id:
            raise ValidationError("You cannot hand a package over to yourself")
        transfer_code = normalize_transfer_code(transfer_code) or generate_transfer_code()

        with package_lock(package_id), smart_transaction(self.db, ACTIVE_CONFLICT):
            package = self.packages.get(package_id, for_update=True)
            if package is None:
                raise NotFound("Package not found")
            current = self.matches.active_held_by(package_id, carrier_id)
            if current is None:
                raise Forbidden("You are not the active carrier of this package")
            next_carrier = self.db.get(User, next_carrier_id)
            if next_carrier is None or next_carrier.role != UserRole.CARRIER:
                raise NotFound("Next carrier not found")
            if package.status == PackageStatus.DELIVERED:
                raise InvalidState("Package already delivered")
            if settings.REQUIRE_PAYMENT_BEFORE_TRANSIT and not self.match_service.is_paid(current):
                raise InvalidState("Payment must be completed before the package can be handed over")

            now = utcnow()
            current.status = MatchStatus.AWAITING_TRANSFER
            current.is_partial_delivery = True
            current.dropoff_location = dropoff_location
            if notes:
                current.notes = notes

            ride = Ride(
                user_id=next_carrier_id,
                origin=dropoff_location,
                destination=package.destination,
                departure_time=estimated_arrival or now,
                price_per_kg=current.ride.price_per_kg or settings.RELAY_RIDE_PRICE_PER_KG,
                available_space="MEDIUM",
                status="PENDING",
                allows_relay_pickup=True,
                description=f"Relay for package #{package.id} from {dropoff_location}",
            )
            self.db.add(ride)
            self.db.flush()

            order = (current.segment_order or 1) + 1
            relay = Match(
                package_id=package.id,
                ride_id=ride.id,
                status=MatchStatus.PENDING,
                is_relay_segment=True,
                segment_order=order,
                notes=notes,
            )
            self.db.add(relay)
            self.db.flush()

            package.status = package_status_for(MatchStatus.AWAITING_TRANSFER)
            package.current_location = dropoff_location
            package.is_multi_segment = True
            package.segment_number = order
            package.total_segments = max(package.total_segments or 1, order)

            transfer = self.tracking.add(
                package_id=package.id,
                carrier_id=carrier_id,
                location=dropoff_location,
                notes=notes,
                status=MatchStatus.AWAITING_TRANSFER.value,
                event_type=TrackingEventType.TRANSFER,
                timestamp=now,
                next_carrier_id=next_carrier_id,
                transfer_code=transfer_code,
                match_id=relay.id,
            )

            self.outbox.emit(
                RelayCreated(
                    user_id=package.user_id,
                    related_entity_id=package.id,
                    package_id=package.id,
                    dropoff_location=dropoff_location,
                    next_carrier_id=next_carrier_id,
                )
            )
            self.outbox.emit(
                RelayProposed(
                    user_id=next_carrier_id,
                    related_entity_id=relay.id,
                    package_id=package.id,
                    match_id=relay.id,
                    dropoff_location=dropoff_location,
                )
            )
            log.info(
                "package %s: segment %s handed over at %r, relay match %s proposed to carrier %s",
                package.id, current.id, dropoff_location, relay.id, next_carrier_id,
            )
        return transfer

    def accept_relay(self, match_id: int, carrier_id: int, transfer_code: Optional[str] = None) -> Match:
        presented = normalize_transfer_code(transfer_code)
        if presented is None and settings.REQUIRE_TRANSFER_CODE_ON_ACCEPT:
            raise ValidationError("transferCode is required")
        package_id = self.matches.package_id_for(match_id)
        if package_id is None:
            raise NotFound("Relay not found")

        with package_lock(package_id), smart_transaction(self.db, ACTIVE_CONFLICT):
            match = self.matches.get(match_id, for_update=True)
            if match is None or not match.is_relay_segment or match.ride.user_id != carrier_id:
                raise NotFound("Relay not found")
            if match.status != MatchStatus.PENDING:
                raise InvalidState(f"Relay is {match.status.value}, only PENDING relays can be accepted")
            package = match.package
            if package.status == PackageStatus.DELIVERED:
                raise InvalidState("Package already delivered")

            transfer = self.tracking.latest_transfer_for(match.id, carrier_id)
            if presented is not None and (transfer is None or transfer.transfer_code != presented):
                raise Forbidden("Invalid transfer code")

            now = utcnow()
            previous = self.matches.awaiting_transfer_before(package.id, match.segment_order)
            if previous is not None:
                previous.status = MatchStatus.COMPLETED
                previous.delivered_at = now
            self.match_service.ensure_no_other_active(match)

            match.status = MatchStatus.CONFIRMED
            match.accepted_at = now
            package.status = package_status_for(MatchStatus.CONFIRMED, relay_segment=True)
            package.current_location = match.ride.origin

            self.tracking.add(
                package_id=package.id,
                carrier_id=carrier_id,
                location=match.ride.origin,
                status="RELAY_ACCEPTED",
                event_type=TrackingEventType.PICKUP,
                timestamp=now,
                match_id=match.id,
            )

            carrier_name = match.ride.carrier.full_name
            self.outbox.emit(
                RelayAccepted(
                    user_id=package.user_id,
                    related_entity_id=package.id,
                    package_id=package.id,
                    carrier_id=carrier_id,
                    carrier_name=carrier_name,
                    pickup_location=match.ride.origin,
                )
            )
            if transfer is not None and transfer.carrier_id:
                self.outbox.emit(
                    RelayConfirmed(
                        user_id=transfer.carrier_id,
                        related_entity_id=match.id,
                        package_id=package.id,
                        new_carrier_id=carrier_id,
                        carrier_name=carrier_name,
                        pickup_location=match.ride.origin,
                    )
                )
            log.info("relay match %s accepted by carrier %s", match.id, carrier_id)
        return match

    def relay_history(self, package_id: int, user_id: int) -> List[TrackingEvent]:
        if self.packages.get_visible(package_id, user_id) is None:
            raise NotFound("Package not found")
        return self.tracking.transfers_for_package(package_id)

    def relay_proposals(self, carrier_id: int, role: UserRole) -> List[Dict]:
        """
        The carrier's inbox of relay segments waiting for pickup, each paired with
        the TRANSFER event that proposed it. Transfer codes stay with the handing
        carrier and are not part of the inbox.
        """
        if role != UserRole.CARRIER:
            raise Forbidden("Access denied. Carrier role required.")
        return [
            {"match": match, "transfer": self.tracking.latest_transfer_for(match.id, carrier_id)}
            for match in self.matches.relay_proposals_for(carrier_id)
        ]

    def available_carriers(self, user_id: int, role: UserRole) -> List[Dict]:
        """Verified carriers worth proposing a relay to, with their track record."""
        if role != UserRole.CARRIER:
            raise Forbidden("Access denied. Carrier role required.")
        now = utcnow()
        carriers = (
            self.db.query(User)
            .filter(User.role == UserRole.CARRIER, User.is_verified == True, User.id != user_id)
            .order_by(User.id)
            .all()
        )
        result = []
        for carrier in carriers:
            counts = dict(
                self.db.query(Match.status, func.count(Match.id))
                .join(Match.ride)
                .filter(Ride.user_id == carrier.id)
                .group_by(Match.status)
                .all()
            )
            total = sum(counts.values())
            completed = counts.get(MatchStatus.COMPLETED, 0)
            relay_experience = self.tracking.relay_experience(carrier.id)
            upcoming = (
                self.db.query(Ride)
                .filter(
                    Ride.user_id == carrier.id,
                    Ride.status.in_(("PENDING", "CONFIRMED")),
                    Ride.departure_time > now,
                )
                .order_by(Ride.departure_time)
                .limit(3)
                .all()
            )
            if not (upcoming or completed >= 5 or relay_experience > 0):
                continue
            result.append(
                {
                    "carrier": carrier,
                    "stats": {
                        "completed_deliveries": completed,
                        "total_deliveries": total,
                        "success_rate": round(completed / total * 100) if total else 0,
                        "relay_experience": relay_experience,
                    },
                    "upcoming_rides": upcoming,
                }
            )
        return result
