from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from marketplace.models.match import Match
from marketplace.models.package import Package
from marketplace.models.ride import Ride
from marketplace.models.status import ACTIVE_MATCH_STATUSES, MatchStatus


class MatchRepository:
    def __init__(self, db: Session):
        self.db = db

    def _query(self):
        return self.db.query(Match).options(
            joinedload(Match.ride).joinedload(Ride.carrier),
            joinedload(Match.package).joinedload(Package.owner),
            joinedload(Match.payment),
        )

    def get(self, match_id: int, for_update: bool = False) -> Optional[Match]:
        qry = self._query().filter(Match.id == match_id)
        if for_update:
            qry = qry.with_for_update(of=Match)
        return qry.first()

    def package_id_for(self, match_id: int) -> Optional[int]:
        """
        Look up a match's package without opening a transaction on the caller's
        session, so the caller can take the package lock first.
        """
        with Session(bind=self.db.get_bind()) as s:
            return s.query(Match.package_id).filter(Match.id == match_id).scalar()

    def active_for_package(self, package_id: int, exclude_id: Optional[int] = None) -> Optional[Match]:
        qry = self.db.query(Match).filter(
            Match.package_id == package_id,
            Match.status.in_(ACTIVE_MATCH_STATUSES),
        )
        if exclude_id is not None:
            qry = qry.filter(Match.id != exclude_id)
        return qry.first()

    def active_held_by(self, package_id: int, carrier_id: int) -> Optional[Match]:
        return (
            self._query()
            .join(Match.ride)
            .filter(
                Match.package_id == package_id,
                Ride.user_id == carrier_id,
                Match.status.in_(ACTIVE_MATCH_STATUSES),
            )
            .first()
        )

    def current_for_carrier(self, package_id: int, carrier_id: int) -> Optional[Match]:
        """The carrier's most recent non-terminal segment on the package."""
        return (
            self._query()
            .join(Match.ride)
            .filter(
                Match.package_id == package_id,
                Ride.user_id == carrier_id,
                Match.status.notin_([MatchStatus.COMPLETED, MatchStatus.CANCELLED]),
            )
            .order_by(Match.segment_order.desc(), Match.id.desc())
            .first()
        )

    def relay_proposals_for(self, carrier_id: int) -> List[Match]:
        """PENDING relay segments offered to `carrier_id`, newest first."""
        return (
            self._query()
            .join(Match.ride)
            .filter(
                Ride.user_id == carrier_id,
                Match.is_relay_segment == True,
                Match.status == MatchStatus.PENDING,
            )
            .order_by(Match.created_at.desc(), Match.id.desc())
            .all()
        )

    def pending_relays_after(self, package_id: int, segment_order: int) -> List[Match]:
        return (
            self._query()
            .filter(
                Match.package_id == package_id,
                Match.is_relay_segment == True,
                Match.status == MatchStatus.PENDING,
                Match.segment_order > segment_order,
            )
            .all()
        )

    def awaiting_transfer_before(self, package_id: int, segment_order: int) -> Optional[Match]:
        return (
            self.db.query(Match)
            .filter(
                Match.package_id == package_id,
                Match.status == MatchStatus.AWAITING_TRANSFER,
                Match.segment_order < segment_order,
            )
            .order_by(Match.segment_order.desc())
            .first()
        )

    def visible_to(self, user_id: int, status: Optional[str] = None) -> List[Match]:
        qry = (
            self._query()
            .join(Match.ride)
            .join(Match.package)
            .filter(or_(Package.user_id == user_id, Ride.user_id == user_id))
        )
        if status and status != "all":
            qry = qry.filter(Match.status == MatchStatus(status))
        return qry.order_by(Match.created_at.desc(), Match.id.desc()).all()

    def get_visible(self, match_id: int, user_id: int) -> Optional[Match]:
        return (
            self._query()
            .join(Match.ride)
            .join(Match.package)
            .filter(
                Match.id == match_id,
                or_(Package.user_id == user_id, Ride.user_id == user_id),
            )
            .first()
        )
