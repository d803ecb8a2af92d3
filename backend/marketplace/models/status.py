"""
Match and Package status vocabularies and the single mapping between them.

Match status flow:
    PENDING -> CONFIRMED | ACCEPTED_BY_CARRIER | ACCEPTED_BY_SENDER -> IN_PROGRESS -> COMPLETED
    AWAITING_TRANSFER is entered when the carrier hands the package to a relay.
    CANCELLED is reachable from any non-terminal state.
"""

import enum


class MatchStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    ACCEPTED_BY_SENDER = "ACCEPTED_BY_SENDER"
    ACCEPTED_BY_CARRIER = "ACCEPTED_BY_CARRIER"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_TRANSFER = "AWAITING_TRANSFER"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PackageStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    ACCEPTED_BY_CARRIER = "ACCEPTED_BY_CARRIER"
    IN_TRANSIT = "IN_TRANSIT"
    AWAITING_RELAY = "AWAITING_RELAY"
    RELAY_IN_PROGRESS = "RELAY_IN_PROGRESS"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


ACTIVE_MATCH_STATUSES = frozenset(
    {
        MatchStatus.CONFIRMED,
        MatchStatus.IN_PROGRESS,
        MatchStatus.ACCEPTED_BY_SENDER,
        MatchStatus.ACCEPTED_BY_CARRIER,
    }
)

TERMINAL_MATCH_STATUSES = frozenset({MatchStatus.COMPLETED, MatchStatus.CANCELLED})

# statuses a carrier may request through UpdateStatus
CARRIER_TARGET_STATUSES = frozenset(
    {
        MatchStatus.ACCEPTED_BY_CARRIER,
        MatchStatus.IN_PROGRESS,
        MatchStatus.COMPLETED,
        MatchStatus.CANCELLED,
    }
)

UPDATABLE_FROM = frozenset(
    {
        MatchStatus.PENDING,
        MatchStatus.CONFIRMED,
        MatchStatus.ACCEPTED_BY_SENDER,
        MatchStatus.ACCEPTED_BY_CARRIER,
        MatchStatus.IN_PROGRESS,
    }
)

CANCELLABLE_FROM = UPDATABLE_FROM | {MatchStatus.AWAITING_TRANSFER}

_PACKAGE_STATUS_FOR = {
    MatchStatus.PENDING: PackageStatus.PENDING,
    MatchStatus.CONFIRMED: PackageStatus.CONFIRMED,
    MatchStatus.ACCEPTED_BY_SENDER: PackageStatus.CONFIRMED,
    MatchStatus.ACCEPTED_BY_CARRIER: PackageStatus.ACCEPTED_BY_CARRIER,
    MatchStatus.IN_PROGRESS: PackageStatus.IN_TRANSIT,
    MatchStatus.AWAITING_TRANSFER: PackageStatus.AWAITING_RELAY,
    MatchStatus.COMPLETED: PackageStatus.DELIVERED,
    MatchStatus.CANCELLED: PackageStatus.PENDING,
}

# a relay segment that has been taken over but is not yet moving
_RELAY_SEGMENT_OVERRIDES = {
    MatchStatus.CONFIRMED: PackageStatus.RELAY_IN_PROGRESS,
    MatchStatus.ACCEPTED_BY_SENDER: PackageStatus.RELAY_IN_PROGRESS,
    MatchStatus.ACCEPTED_BY_CARRIER: PackageStatus.RELAY_IN_PROGRESS,
}

_missing = set(MatchStatus) - set(_PACKAGE_STATUS_FOR)
if _missing:
    raise RuntimeError(
        f"MatchStatus values without a package mapping: {sorted(m.value for m in _missing)}"
    )

# carrier-facing names used by the delivery screens
STATUS_ALIASES = {
    "IN_TRANSIT": MatchStatus.IN_PROGRESS,
    "DELIVERED": MatchStatus.COMPLETED,
}


def package_status_for(status: MatchStatus, relay_segment: bool = False) -> PackageStatus:
    if relay_segment and status in _RELAY_SEGMENT_OVERRIDES:
        return _RELAY_SEGMENT_OVERRIDES[status]
    return _PACKAGE_STATUS_FOR[status]


def parse_carrier_status(value: str) -> MatchStatus:
    """Resolve a requested delivery status (either vocabulary) to a MatchStatus.

    Raises ValueError for anything a carrier is not allowed to request.
    """
    key = (value or "").strip().upper()
    status = STATUS_ALIASES.get(key)
    if status is None:
        try:
            status = MatchStatus(key)
        except ValueError:
            raise ValueError(f"Invalid status: {value!r}")
    if status not in CARRIER_TARGET_STATUSES:
        raise ValueError(f"Invalid status: {value!r}")
    return status
