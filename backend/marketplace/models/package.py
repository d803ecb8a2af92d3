from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Enum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from marketplace.db import Base
from marketplace.models.status import PackageStatus


class Package(Base):
    __tablename__ = "packages"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    description = Column(Text, nullable=True)
    sender_address = Column(String(512), nullable=False)
    pickup_address = Column(String(512), nullable=True)
    recipient_address = Column(String(512), nullable=False)
    final_destination = Column(String(512), nullable=True)
    current_location = Column(String(512), nullable=True)
    status = Column(
        Enum(PackageStatus, name="package_status"),
        nullable=False,
        default=PackageStatus.PENDING,
    )
    is_multi_segment = Column(Boolean, nullable=False, default=False)
    segment_number = Column(Integer, nullable=False, default=1)
    total_segments = Column(Integer, nullable=False, default=1)
    price = Column(Float, nullable=True)
    weight = Column(Float, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    owner = relationship("User")
    matches = relationship("Match", back_populates="package", order_by="Match.segment_order")
    tracking_events = relationship(
        "TrackingEvent", back_populates="package", order_by="TrackingEvent.timestamp"
    )

    @property
    def destination(self) -> str:
        return self.final_destination or self.recipient_address

    @property
    def origin(self) -> str:
        return self.pickup_address or self.sender_address
