import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from marketplace.db import Base


class TrackingEventType(str, enum.Enum):
    PICKUP = "PICKUP"
    CHECKPOINT = "CHECKPOINT"
    TRANSFER = "TRANSFER"


class TrackingEvent(Base):
    """Append-only provenance entry for a package. Rows are never updated."""

    __tablename__ = "tracking_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    package_id = Column(Integer, ForeignKey("packages.id"), nullable=False, index=True)
    carrier_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    location = Column(String(512), nullable=False)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String(32), nullable=True)
    event_type = Column(Enum(TrackingEventType, name="tracking_event_type"), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    # TRANSFER only
    next_carrier_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    transfer_code = Column(String(16), nullable=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=True, index=True)

    package = relationship("Package", back_populates="tracking_events")
    carrier = relationship("User", foreign_keys=[carrier_id])
    next_carrier = relationship("User", foreign_keys=[next_carrier_id])
    match = relationship("Match")
