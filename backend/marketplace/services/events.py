"""
Domain events emitted by the matching/relay state machine.

Each event names its recipient and renders into an outbox notification; the
dispatcher turns those into email/SMS without the core knowing about channels.
"""

from dataclasses import asdict, dataclass
from typing import ClassVar, Optional

from marketplace.models.status import MatchStatus


@dataclass(kw_only=True)
class DomainEvent:
    user_id: int
    related_entity_id: Optional[int] = None

    TYPE: ClassVar[str] = "GENERIC"

    @property
    def notification_type(self) -> str:
        return self.TYPE

    def title(self) -> str:
        raise NotImplementedError

    def message(self) -> str:
        raise NotImplementedError

    def payload(self) -> dict:
        data = asdict(self)
        data.pop("user_id")
        data.pop("related_entity_id")
        return {k: (v.value if isinstance(v, MatchStatus) else v) for k, v in data.items()}


@dataclass(kw_only=True)
class MatchProposed(DomainEvent):
    TYPE: ClassVar[str] = "MATCH_UPDATE"
    package_id: int
    carrier_id: int
    carrier_name: str
    package_description: Optional[str] = None
    price: Optional[float] = None
    route: Optional[str] = None

    def title(self):
        return "New transport proposal!"

    def message(self):
        offer = f" for {self.price:.2f}€" if self.price else ""
        return f'{self.carrier_name} offered to carry your package "{self.package_description}"{offer}.'


@dataclass(kw_only=True)
class MatchAccepted(DomainEvent):
    TYPE: ClassVar[str] = "MATCH_ACCEPTED"
    package_id: int
    carrier_name: str

    def title(self):
        return "Proposal accepted!"

    def message(self):
        return (
            f"Your package was accepted by {self.carrier_name}. "
            "Please proceed to payment to confirm the delivery."
        )


@dataclass(kw_only=True)
class PaymentRequired(DomainEvent):
    TYPE: ClassVar[str] = "PAYMENT_REQUIRED"
    package_id: int
    amount: Optional[float] = None

    def title(self):
        return "Payment required"

    def message(self):
        return "Your delivery was accepted! Please proceed to payment to confirm your order."


@dataclass(kw_only=True)
class PaymentSucceeded(DomainEvent):
    TYPE: ClassVar[str] = "PAYMENT_SUCCESS"
    package_id: int
    amount: float
    currency: str
    package_description: Optional[str] = None

    def title(self):
        return "Payment successful"

    def message(self):
        return (
            f'Your payment of {self.amount:.2f} {self.currency} for "{self.package_description}" '
            "went through. The carrier will pick up your package."
        )


@dataclass(kw_only=True)
class MatchPaid(DomainEvent):
    TYPE: ClassVar[str] = "MATCH_UPDATE"
    package_id: int
    package_description: Optional[str] = None

    def title(self):
        return "Match accepted and paid!"

    def message(self):
        return (
            f'The customer accepted your proposal for "{self.package_description}" and paid. '
            "You can now pick up the package."
        )


@dataclass(kw_only=True)
class DeliveryStatusChanged(DomainEvent):
    package_id: int
    carrier_id: int
    carrier_name: str
    status: MatchStatus
    package_description: Optional[str] = None

    _TYPES: ClassVar[dict] = {
        MatchStatus.ACCEPTED_BY_CARRIER: ("DELIVERY_ACCEPTED", "Package picked up"),
        MatchStatus.IN_PROGRESS: ("DELIVERY_STARTED", "Delivery started"),
        MatchStatus.COMPLETED: ("DELIVERY_COMPLETED", "Package delivered!"),
        MatchStatus.CANCELLED: ("DELIVERY_CANCELLED", "Delivery cancelled"),
    }

    @property
    def notification_type(self):
        return self._TYPES[self.status][0]

    def title(self):
        return self._TYPES[self.status][1]

    def message(self):
        if self.status == MatchStatus.ACCEPTED_BY_CARRIER:
            return f'{self.carrier_name} has taken charge of your package "{self.package_description}".'
        if self.status == MatchStatus.IN_PROGRESS:
            return f"Your package is now in transit with {self.carrier_name}."
        if self.status == MatchStatus.COMPLETED:
            return f"Your package has been successfully delivered by {self.carrier_name}."
        return "Your delivery has been cancelled. We'll help you find another carrier."


@dataclass(kw_only=True)
class DeliveryConfirmed(DomainEvent):
    TYPE: ClassVar[str] = "PACKAGE_DELIVERED"
    package_id: int
    package_description: Optional[str] = None

    def title(self):
        return "Delivery confirmed - payout on its way"

    def message(self):
        return (
            f'Delivery of "{self.package_description}" was confirmed. '
            "Your payout will be processed shortly."
        )


@dataclass(kw_only=True)
class RelayCreated(DomainEvent):
    TYPE: ClassVar[str] = "PACKAGE_UPDATE"
    package_id: int
    dropoff_location: str
    next_carrier_id: int

    def title(self):
        return "Relay created"

    def message(self):
        return f"Your package will be handed over to a new carrier at {self.dropoff_location}."


@dataclass(kw_only=True)
class RelayProposed(DomainEvent):
    TYPE: ClassVar[str] = "NEW_RELAY_PROPOSAL"
    package_id: int
    match_id: int
    dropoff_location: str

    def title(self):
        return "New relay proposed"

    def message(self):
        return f"You have been offered a relay to pick up a package at {self.dropoff_location}."


@dataclass(kw_only=True)
class RelayAccepted(DomainEvent):
    TYPE: ClassVar[str] = "PACKAGE_UPDATE"
    package_id: int
    carrier_id: int
    carrier_name: str
    pickup_location: str

    def title(self):
        return "Relay accepted"

    def message(self):
        return f"Your package will be picked up by {self.carrier_name} at {self.pickup_location}."


@dataclass(kw_only=True)
class RelayConfirmed(DomainEvent):
    TYPE: ClassVar[str] = "RELAY_CONFIRMED"
    package_id: int
    new_carrier_id: int
    carrier_name: str
    pickup_location: str

    def title(self):
        return "Relay confirmed"

    def message(self):
        return f"{self.carrier_name} agreed to take over the package at {self.pickup_location}."


@dataclass(kw_only=True)
class RelayCancelled(DomainEvent):
    TYPE: ClassVar[str] = "RELAY_CANCELLED"
    package_id: int
    match_id: int
    pickup_location: Optional[str] = None

    def title(self):
        return "Relay cancelled"

    def message(self):
        return f"The relay pickup at {self.pickup_location} was cancelled by the previous carrier."


@dataclass(kw_only=True)
class CheckpointAdded(DomainEvent):
    TYPE: ClassVar[str] = "PACKAGE_UPDATE"
    package_id: int
    checkpoint_id: int
    location: str

    def title(self):
        return "New checkpoint"

    def message(self):
        return f"Your package is now at: {self.location}"
