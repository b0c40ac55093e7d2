from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class EscrowStatus(str, Enum):
    HELD = "HELD"
    RELEASED = "RELEASED"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @classmethod
    def parse(cls, value) -> "DeliveryStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            raise ValueError(f"unknown_delivery_status {value!r}") from None

    def can_transition_to(self, target: "DeliveryStatus") -> bool:
        return target in DELIVERY_TRANSITIONS.get(self, frozenset())

    @property
    def is_terminal(self) -> bool:
        return not DELIVERY_TRANSITIONS.get(self)

    @property
    def holds_rider(self) -> bool:
        return self in ACTIVE_DELIVERY_STATUSES


# ASSIGNED -> ASSIGNED is a reassignment to a different rider.
DELIVERY_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.ASSIGNED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.ASSIGNED: frozenset(
        {DeliveryStatus.ASSIGNED, DeliveryStatus.PICKED_UP, DeliveryStatus.CANCELLED}
    ),
    DeliveryStatus.PICKED_UP: frozenset(
        {DeliveryStatus.IN_TRANSIT, DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED}
    ),
    DeliveryStatus.IN_TRANSIT: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
}

ACTIVE_DELIVERY_STATUSES = frozenset(
    {DeliveryStatus.ASSIGNED, DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT}
)


class RiderStatus(str, Enum):
    OFFLINE = "OFFLINE"
    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"


class RiderApproval(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class WalletOwner(str, Enum):
    MERCHANT = "merchant"
    RIDER = "rider"
    PLATFORM = "platform"

    @classmethod
    def parse(cls, value) -> "WalletOwner":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            raise ValueError(f"unknown_wallet_owner {value!r}") from None


class WalletTxnType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    WITHDRAWAL = "WITHDRAWAL"

    @property
    def sign(self) -> int:
        return 1 if self is WalletTxnType.CREDIT else -1


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class FeeTransactionStatus(str, Enum):
    COMPLETED = "COMPLETED"


class WithdrawalStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Severity(str, Enum):
    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def alerts(self) -> bool:
        return self in (Severity.HIGH, Severity.CRITICAL)
