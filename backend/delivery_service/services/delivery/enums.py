"""Delivery status enums and transition rules for the reconciler.

This module defines the order statuses the marketplace stores, the lifecycle
of a delivery assignment, claim priorities and the fixed set of
cancellation reasons, together with the transition tables used to validate
assignment state changes.
"""

from enum import Enum
from typing import Dict, Optional, Set


class OrderStatus(str, Enum):
    """Order status as stored by the marketplace.

    The set is ordered by convention only; the store does not enforce
    transitions. Delivery-related moves made by the reconciler:
    - PENDING / CONFIRMED / PROCESSING / PACKED -> ASSIGNED_TO_DELIVERY, READY_FOR_PICKUP
    - READY_FOR_PICKUP -> ASSIGNED_TO_DELIVERY (partner claim)
    - ASSIGNED_TO_DELIVERY -> OUT_FOR_DELIVERY (pickup OTP)
    - OUT_FOR_DELIVERY -> DELIVERED (delivery OTP)
    - ASSIGNED_TO_DELIVERY / PICKED_UP / SHIPPED / OUT_FOR_DELIVERY -> CANCELLED
      (partner cancellation)
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    PACKED = "packed"
    READY_FOR_PICKUP = "ready_for_pickup"
    ASSIGNED_TO_DELIVERY = "assigned_to_delivery"
    PICKED_UP = "picked_up"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid order status: {value}. "
                f"Valid values are: {valid_values}"
            )

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["OrderStatus"]:
        """Lenient variant of ``from_string`` returning None for unknown values."""
        if not value:
            return None
        try:
            return cls.from_string(value)
        except ValueError:
            return None

    def is_terminal(self) -> bool:
        """Check if status is a terminal state.

        Returns:
            True if status is DELIVERED, CANCELLED or RETURNED
        """
        return self in {
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
            OrderStatus.RETURNED,
        }

    def can_allocate(self) -> bool:
        """Check if a delivery partner may be allocated from this status."""
        return self in ALLOCATABLE_ORDER_STATUSES

    @property
    def display_name(self) -> str:
        """Get human-readable display name for status."""
        return self.value.replace("_", " ").title()


class AssignmentStatus(str, Enum):
    """Delivery assignment lifecycle.

    Valid transitions:
    - ASSIGNED -> ACCEPTED, PICKED_UP, CANCELLED, FAILED
    - ACCEPTED -> PICKED_UP, CANCELLED, FAILED
    - PICKED_UP -> DELIVERED, CANCELLED, FAILED
    - DELIVERED, CANCELLED, FAILED -> (terminal)
    """

    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @classmethod
    def from_string(cls, value: str) -> "AssignmentStatus":
        """Convert string to AssignmentStatus enum.

        Raises:
            ValueError: If value is not a valid assignment status
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid assignment status: {value}. "
                f"Valid values are: {valid_values}"
            )

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["AssignmentStatus"]:
        if not value:
            return None
        try:
            return cls.from_string(value)
        except ValueError:
            return None

    def is_terminal(self) -> bool:
        return self in {
            AssignmentStatus.DELIVERED,
            AssignmentStatus.CANCELLED,
            AssignmentStatus.FAILED,
        }

    def is_active(self) -> bool:
        """Active assignments count towards the one-per-order limit."""
        return self not in INACTIVE_ASSIGNMENT_STATUSES

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


class ClaimPriority(str, Enum):
    """Urgency of a delivery request, used for fees and list ordering."""

    NORMAL = "normal"
    URGENT = "urgent"

    @classmethod
    def from_string(cls, value: str) -> "ClaimPriority":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid priority: {value}. Valid values are: normal, urgent"
            )


class CancellationReason(str, Enum):
    """Fixed reasons a delivery partner can give for cancelling an order."""

    CUSTOMER_UNAVAILABLE = "customer_unavailable"
    INCORRECT_ADDRESS = "incorrect_address"
    DAMAGED_PRODUCT = "damaged_product"
    CUSTOMER_REFUSED = "customer_refused"
    DELIVERY_ISSUES = "delivery_issues"
    PAYMENT_ISSUES = "payment_issues"
    VENDOR_ISSUES = "vendor_issues"
    WEATHER_CONDITIONS = "weather_conditions"
    VEHICLE_BREAKDOWN = "vehicle_breakdown"
    OTHER = "other"

    @classmethod
    def from_string(cls, value: str) -> "CancellationReason":
        """Parse either the stored value or the display label.

        Raises:
            ValueError: If value matches no reason
        """
        normalized = value.strip().lower()
        for reason in cls:
            if normalized in (reason.value, reason.display_name.lower()):
                return reason
        valid_values = ", ".join([r.value for r in cls])
        raise ValueError(
            f"Invalid cancellation reason: {value}. "
            f"Valid values are: {valid_values}"
        )

    @property
    def display_name(self) -> str:
        return _CANCELLATION_LABELS[self]


_CANCELLATION_LABELS: Dict[CancellationReason, str] = {
    CancellationReason.CUSTOMER_UNAVAILABLE: "Customer unavailable",
    CancellationReason.INCORRECT_ADDRESS: "Incorrect address",
    CancellationReason.DAMAGED_PRODUCT: "Damaged product",
    CancellationReason.CUSTOMER_REFUSED: "Customer refused delivery",
    CancellationReason.DELIVERY_ISSUES: "Delivery issues",
    CancellationReason.PAYMENT_ISSUES: "Payment issues",
    CancellationReason.VENDOR_ISSUES: "Vendor issues",
    CancellationReason.WEATHER_CONDITIONS: "Weather conditions",
    CancellationReason.VEHICLE_BREAKDOWN: "Vehicle breakdown",
    CancellationReason.OTHER: "Other",
}


# Statuses from which the allocator may attach a partner
ALLOCATABLE_ORDER_STATUSES: Set[OrderStatus] = {
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.PACKED,
    OrderStatus.READY_FOR_PICKUP,
}

# Orders listed to partners as open work
AVAILABLE_ORDER_STATUSES: Set[OrderStatus] = {
    OrderStatus.CONFIRMED,
    OrderStatus.READY_FOR_PICKUP,
}

# Order statuses a partner cancellation may start from
CANCELLABLE_ORDER_STATUSES: Set[OrderStatus] = {
    OrderStatus.ASSIGNED_TO_DELIVERY,
    OrderStatus.PICKED_UP,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
}

INACTIVE_ASSIGNMENT_STATUSES: Set[AssignmentStatus] = {
    AssignmentStatus.CANCELLED,
    AssignmentStatus.FAILED,
}

# Assignment states that still hold a pickup OTP check
PICKUP_PENDING_STATUSES: Set[AssignmentStatus] = {
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.ACCEPTED,
}

ASSIGNMENT_STATUS_TRANSITIONS: Dict[AssignmentStatus, Set[AssignmentStatus]] = {
    AssignmentStatus.ASSIGNED: {
        AssignmentStatus.ACCEPTED,
        AssignmentStatus.PICKED_UP,
        AssignmentStatus.CANCELLED,
        AssignmentStatus.FAILED,
    },
    AssignmentStatus.ACCEPTED: {
        AssignmentStatus.PICKED_UP,
        AssignmentStatus.CANCELLED,
        AssignmentStatus.FAILED,
    },
    AssignmentStatus.PICKED_UP: {
        AssignmentStatus.DELIVERED,
        AssignmentStatus.CANCELLED,
        AssignmentStatus.FAILED,
    },
    AssignmentStatus.DELIVERED: set(),  # Terminal
    AssignmentStatus.CANCELLED: set(),  # Terminal
    AssignmentStatus.FAILED: set(),  # Terminal
}


def validate_assignment_status_transition(
    current: AssignmentStatus,
    new: AssignmentStatus,
) -> bool:
    """Validate if an assignment status transition is allowed.

    Args:
        current: Current assignment status
        new: Desired new status

    Returns:
        True if transition is valid
    """
    return new in ASSIGNMENT_STATUS_TRANSITIONS.get(current, set())


def statuses_leading_to(target: AssignmentStatus) -> Set[AssignmentStatus]:
    """All assignment statuses from which ``target`` may be reached directly.

    Used to build the ``WHERE status IN (...)`` guard of conditional updates.
    """
    return {
        source
        for source, targets in ASSIGNMENT_STATUS_TRANSITIONS.items()
        if target in targets
    }
