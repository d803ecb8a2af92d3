from typing import Optional

from sqlalchemy.orm import Session, joinedload

from marketplace.models.match import Match
from marketplace.models.package import Package
from marketplace.models.ride import Ride


class PackageRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, package_id: int, for_update: bool = False) -> Optional[Package]:
        qry = self.db.query(Package).options(joinedload(Package.owner)).filter(Package.id == package_id)
        if for_update:
            qry = qry.with_for_update(of=Package)
        return qry.first()

    def is_involved(self, package: Package, user_id: int) -> bool:
        """Owner, or a carrier with any match (any segment, any status) on the package."""
        if package.user_id == user_id:
            return True
        hit = (
            self.db.query(Match.id)
            .join(Match.ride)
            .filter(Match.package_id == package.id, Ride.user_id == user_id)
            .first()
        )
        return hit is not None

    def get_visible(self, package_id: int, user_id: int) -> Optional[Package]:
        package = self.get(package_id)
        if package is None or not self.is_involved(package, user_id):
            return None
        return package
