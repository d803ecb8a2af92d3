from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from marketplace.db import Base


class Ride(Base):
    __tablename__ = "rides"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    origin = Column(String(512), nullable=False, default="")
    destination = Column(String(512), nullable=False, default="")
    departure_time = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    price_per_kg = Column(Float, nullable=True)
    available_space = Column(String(32), nullable=True)
    status = Column(String(32), nullable=False, default="PENDING")  # PENDING, CONFIRMED, COMPLETED, CANCELLED
    allows_relay_pickup = Column(Boolean, nullable=False, default=False)
    allows_relay_dropoff = Column(Boolean, nullable=False, default=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    carrier = relationship("User")
    matches = relationship("Match", back_populates="ride")
