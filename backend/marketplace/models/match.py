from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from marketplace.db import Base
from marketplace.models.status import ACTIVE_MATCH_STATUSES, MatchStatus

_ACTIVE_STATUS_SQL = "status IN ({})".format(
    ", ".join(f"'{s.name}'" for s in sorted(ACTIVE_MATCH_STATUSES, key=lambda s: s.name))
)


class Match(Base):
    __tablename__ = "matches"
    __table_args__ = (
        # at most one active match per package; relay segments are sequential
        Index(
            "uq_matches_active_package",
            "package_id",
            unique=True,
            sqlite_where=text(_ACTIVE_STATUS_SQL),
            postgresql_where=text(_ACTIVE_STATUS_SQL),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=False, index=True)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=False, index=True)
    status = Column(
        Enum(MatchStatus, name="match_status"),
        nullable=False,
        default=MatchStatus.PENDING,
    )
    price = Column(Float, nullable=True)
    is_relay_segment = Column(Boolean, nullable=False, default=False)
    segment_order = Column(Integer, nullable=False, default=1)
    is_partial_delivery = Column(Boolean, nullable=False, default=False)
    dropoff_location = Column(String(512), nullable=True)
    notes = Column(Text, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    delivery_confirmed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    package = relationship("Package", back_populates="matches")
    ride = relationship("Ride", back_populates="matches")
    payment = relationship("Payment", back_populates="match", uselist=False)

    @property
    def carrier_id(self):
        return self.ride.user_id if self.ride else None

    def __repr__(self):
        return f"<Match id={self.id} package={self.package_id} status={self.status} segment={self.segment_order}>"
