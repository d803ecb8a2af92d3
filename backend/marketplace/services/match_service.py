import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from marketplace.config import settings
from marketplace.errors import Forbidden, InvalidState, NotFound, ValidationError
from marketplace.models.match import Match
from marketplace.models.payment import Payment, PaymentStatus
from marketplace.models.ride import Ride
from marketplace.models.status import (
    ACTIVE_MATCH_STATUSES,
    CANCELLABLE_FROM,
    UPDATABLE_FROM,
    MatchStatus,
    PackageStatus,
    package_status_for,
    parse_carrier_status,
)
from marketplace.models.user import User, UserRole
from marketplace.repositories.match_repo import MatchRepository
from marketplace.repositories.package_repo import PackageRepository
from marketplace.services.events import (
    DeliveryStatusChanged,
    MatchAccepted,
    MatchProposed,
    PaymentRequired,
    RelayCancelled,
)
from marketplace.services.notification_service import NotificationOutbox
from marketplace.utils.clock import utcnow
from marketplace.utils.locks import package_lock
from marketplace.utils.transactions import smart_transaction

log = logging.getLogger(__name__)

ACTIVE_CONFLICT = "Another delivery is already active for this package"
RELAY_ACCEPT_HINT = "Relay segments are taken over through accept-relay"

# segments whose cancellation frees the package
HOLDING_STATUSES = ACTIVE_MATCH_STATUSES | {MatchStatus.AWAITING_TRANSFER}

# package-vocabulary statuses accepted by UpdatePackageStatus
PACKAGE_TARGET_STATUSES = {
    PackageStatus.ACCEPTED_BY_CARRIER.value: MatchStatus.ACCEPTED_BY_CARRIER,
    PackageStatus.IN_TRANSIT.value: MatchStatus.IN_PROGRESS,
    PackageStatus.DELIVERED.value: MatchStatus.COMPLETED,
    PackageStatus.CANCELLED.value: MatchStatus.CANCELLED,
}


class MatchService:
    def __init__(self, db: Session):
        self.db = db
        self.matches = MatchRepository(db)
        self.packages = PackageRepository(db)
        self.outbox = NotificationOutbox(db)

    # --- shared checks -------------------------------------------------

    def is_paid(self, match: Match) -> bool:
        """
        True when the segment's own payment is completed. A relay segment is
        covered by any completed payment on the same package.
        """
        if match.payment is not None and match.payment.status == PaymentStatus.COMPLETED:
            return True
        if not match.is_relay_segment:
            return False
        hit = (
            self.db.query(Payment.id)
            .join(Payment.match)
            .filter(Match.package_id == match.package_id, Payment.status == PaymentStatus.COMPLETED)
            .first()
        )
        return hit is not None

    def ensure_no_other_active(self, match: Match):
        if self.matches.active_for_package(match.package_id, exclude_id=match.id) is not None:
            raise InvalidState(ACTIVE_CONFLICT)

    def _require_match(self, match_id: int) -> int:
        package_id = self.matches.package_id_for(match_id)
        if package_id is None:
            raise NotFound("Match not found")
        return package_id

    # --- operations ----------------------------------------------------

    def create(
        self,
        carrier_id: int,
        role: UserRole,
        package_id: int,
        ride_id: Optional[int] = None,
        price: Optional[float] = None,
    ) -> Match:
        if role != UserRole.CARRIER:
            raise Forbidden("Access denied. Carrier role required.")
        if price is not None and price < 0:
            raise ValidationError("price must not be negative")

        with package_lock(package_id), smart_transaction(self.db):
            package = self.packages.get(package_id)
            if package is None:
                raise NotFound("Package not found")
            if package.status in (PackageStatus.DELIVERED, PackageStatus.CANCELLED):
                raise InvalidState(f"Package is {package.status.value.lower()}")
            carrier = self.db.get(User, carrier_id)

            if ride_id is not None:
                ride = self.db.get(Ride, ride_id)
                if ride is None or ride.user_id != carrier_id:
                    raise NotFound("Ride not found or unauthorized")
            else:
                ride = Ride(
                    user_id=carrier_id,
                    origin=package.origin,
                    destination=package.recipient_address,
                    departure_time=utcnow(),
                    price_per_kg=settings.DEFAULT_RIDE_PRICE_PER_KG,
                    available_space="50kg",
                    status="PENDING",
                    description=f"Ride created for package #{package.id}",
                )
                self.db.add(ride)
                self.db.flush()

            match = Match(
                package_id=package.id,
                ride_id=ride.id,
                status=MatchStatus.PENDING,
                price=price if price is not None else package.price,
            )
            self.db.add(match)
            self.db.flush()

            self.outbox.emit(
                MatchProposed(
                    user_id=package.user_id,
                    related_entity_id=match.id,
                    package_id=package.id,
                    carrier_id=carrier_id,
                    carrier_name=carrier.full_name,
                    package_description=package.description,
                    price=match.price,
                    route=f"{ride.origin} -> {ride.destination}",
                )
            )
            log.info("match %s proposed by carrier %s for package %s", match.id, carrier_id, package.id)
        return match

    def accept(self, match_id: int, carrier_id: int, role: UserRole) -> Match:
        if role != UserRole.CARRIER:
            raise Forbidden("Access denied. Carrier role required.")
        package_id = self._require_match(match_id)

        with package_lock(package_id), smart_transaction(self.db, ACTIVE_CONFLICT):
            match = self.matches.get(match_id, for_update=True)
            if match is None:
                raise NotFound("Match not found")
            if match.ride.user_id != carrier_id:
                raise Forbidden("You can only accept your own proposals")
            if match.status != MatchStatus.PENDING:
                raise InvalidState(f"Match is {match.status.value}, only PENDING matches can be accepted")
            if match.is_relay_segment:
                raise InvalidState(RELAY_ACCEPT_HINT)
            package = match.package
            if package.status in (PackageStatus.DELIVERED, PackageStatus.CANCELLED):
                raise InvalidState(f"Package is {package.status.value.lower()}")
            self.ensure_no_other_active(match)

            match.status = MatchStatus.CONFIRMED
            match.accepted_at = utcnow()
            package.status = package_status_for(MatchStatus.CONFIRMED, match.is_relay_segment)

            carrier_name = match.ride.carrier.full_name
            self.outbox.emit(
                MatchAccepted(
                    user_id=package.user_id,
                    related_entity_id=match.id,
                    package_id=package.id,
                    carrier_name=carrier_name,
                )
            )
            self.outbox.emit(
                PaymentRequired(
                    user_id=package.user_id,
                    related_entity_id=match.id,
                    package_id=package.id,
                    amount=match.price or package.price,
                )
            )
            log.info("match %s accepted by carrier %s", match.id, carrier_id)
        return match

    def update_status(self, match_id: int, carrier_id: int, role: UserRole, requested: str) -> Match:
        if role != UserRole.CARRIER:
            raise Forbidden("Access denied. Carrier role required.")
        try:
            new_status = parse_carrier_status(requested)
        except ValueError as e:
            raise ValidationError(str(e))
        package_id = self._require_match(match_id)

        with package_lock(package_id), smart_transaction(self.db, ACTIVE_CONFLICT):
            match = self.matches.get(match_id, for_update=True)
            if match is None:
                raise NotFound("Match not found")
            if match.ride.user_id != carrier_id:
                raise Forbidden("Access denied. You can only update your own deliveries.")
            self.transition(match, new_status)
        return match

    def update_package_status(self, package_id: int, carrier_id: int, role: UserRole, requested: str) -> Match:
        """Package-vocabulary entry point; resolves the caller's current segment."""
        if role != UserRole.CARRIER:
            raise Forbidden("Access denied. Carrier role required.")
        key = (requested or "").strip().upper()
        if key not in PACKAGE_TARGET_STATUSES:
            raise ValidationError(f"Invalid status: {requested!r}")
        new_status = PACKAGE_TARGET_STATUSES[key]

        with package_lock(package_id), smart_transaction(self.db, ACTIVE_CONFLICT):
            package = self.packages.get(package_id)
            if package is None:
                raise NotFound("Package not found")
            match = self.matches.current_for_carrier(package_id, carrier_id)
            if match is None:
                raise Forbidden("You have no delivery in progress for this package")
            self.transition(match, new_status)
        return match

    def transition(self, match: Match, new_status: MatchStatus) -> bool:
        """
        Move `match` to `new_status` and mirror the package. Must run inside the
        package lock and a transaction. Returns False when nothing changed.
        """
        package = match.package
        if match.status == new_status:
            return False
        allowed = CANCELLABLE_FROM if new_status == MatchStatus.CANCELLED else UPDATABLE_FROM
        if match.status not in allowed:
            raise InvalidState(f"Cannot change status from {match.status.value} to {new_status.value}")
        if package.status == PackageStatus.DELIVERED:
            raise InvalidState("Package already delivered")
        if match.is_relay_segment and match.status == MatchStatus.PENDING and new_status != MatchStatus.CANCELLED:
            raise InvalidState(RELAY_ACCEPT_HINT)
        # a proposal has to be taken on before it can be delivered
        if new_status == MatchStatus.COMPLETED and match.status not in ACTIVE_MATCH_STATUSES:
            raise InvalidState(f"Cannot change status from {match.status.value} to {new_status.value}")
        if new_status in ACTIVE_MATCH_STATUSES or new_status == MatchStatus.COMPLETED:
            self.ensure_no_other_active(match)
        if (
            new_status == MatchStatus.IN_PROGRESS
            and settings.REQUIRE_PAYMENT_BEFORE_TRANSIT
            and not self.is_paid(match)
        ):
            raise InvalidState("Payment must be completed before the delivery can start")

        now = utcnow()
        previous = match.status
        match.status = new_status
        if new_status == MatchStatus.ACCEPTED_BY_CARRIER and match.accepted_at is None:
            match.accepted_at = now
        elif new_status == MatchStatus.IN_PROGRESS:
            match.started_at = now
        elif new_status == MatchStatus.COMPLETED:
            match.delivered_at = now
            self._settle_platform_payment(match)
        if new_status != MatchStatus.CANCELLED:
            package.status = package_status_for(new_status, match.is_relay_segment)
        elif previous in HOLDING_STATUSES:
            # withdrawing a bare proposal leaves the package and its relay chain alone
            package.status = package_status_for(new_status, match.is_relay_segment)
            self._cancel_following_relays(match)

        self.outbox.emit(
            DeliveryStatusChanged(
                user_id=package.user_id,
                related_entity_id=match.id,
                package_id=package.id,
                carrier_id=match.ride.user_id,
                carrier_name=match.ride.carrier.full_name,
                status=new_status,
                package_description=package.description,
            )
        )
        log.info(
            "match %s: %s -> %s (package %s now %s)",
            match.id, previous.value, new_status.value, package.id, package.status.value,
        )
        return True

    def _settle_platform_payment(self, match: Match):
        payment = match.payment
        # only a missing or failed payment is settled here; a PENDING card charge
        # belongs to reconcile_pending
        if payment is not None and payment.status != PaymentStatus.FAILED:
            if payment.status == PaymentStatus.PENDING:
                log.info("match %s completed while payment %s awaits reconciliation", match.id, payment.id)
            return
        package = match.package
        if match.is_relay_segment:
            amount = match.price or 0
        else:
            amount = match.price or package.price or 0
        if payment is None:
            payment = Payment(
                match_id=match.id,
                user_id=package.user_id,
                amount=amount,
                currency=settings.PAYMENT_CURRENCY,
            )
            self.db.add(payment)
            match.payment = payment
        payment.status = PaymentStatus.COMPLETED
        payment.payment_method = "PLATFORM"
        payment.failure_reason = None
        payment.completed_at = utcnow()
        log.info("platform payment settled for match %s (%.2f)", match.id, amount)

    def _cancel_following_relays(self, match: Match):
        for seg in self.matches.pending_relays_after(match.package_id, match.segment_order or 1):
            seg.status = MatchStatus.CANCELLED
            self.outbox.emit(
                RelayCancelled(
                    user_id=seg.ride.user_id,
                    related_entity_id=seg.id,
                    package_id=seg.package_id,
                    match_id=seg.id,
                    pickup_location=seg.ride.origin,
                )
            )
            log.info("relay segment %s cancelled with match %s", seg.id, match.id)

    # --- reads ---------------------------------------------------------

    def list_for_user(self, user_id: int, status: Optional[str] = None) -> List[Match]:
        if status and status != "all":
            try:
                MatchStatus(status)
            except ValueError:
                raise ValidationError(f"Invalid status filter: {status!r}")
        return self.matches.visible_to(user_id, status)

    def get_for_user(self, match_id: int, user_id: int) -> Match:
        match = self.matches.get_visible(match_id, user_id)
        if match is None:
            raise NotFound("Match not found or unauthorized")
        return match
