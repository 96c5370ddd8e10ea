"""
Canonical delivery status derived from an order and its assignment.

The marketplace stores an order status and, separately, the status of the
order's delivery assignment. The two drift: checkout and vendors write
``processing`` or ``shipped`` while partners move the assignment forward.
``map_delivery_status`` reconciles them into the single status shown to
customers, vendors and partners. It is pure and total: every input yields
a non-empty string and unknown order statuses come back unchanged.
"""

from typing import Optional

from delivery_service.services.delivery.enums import AssignmentStatus, OrderStatus

# Display progression; index is the step number
DELIVERY_PROGRESSION: tuple[str, ...] = (
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.READY_FOR_PICKUP.value,
    OrderStatus.ASSIGNED_TO_DELIVERY.value,
    OrderStatus.PICKED_UP.value,
    OrderStatus.OUT_FOR_DELIVERY.value,
    OrderStatus.DELIVERED.value,
)

_STEP = {status: index for index, status in enumerate(DELIVERY_PROGRESSION)}

# Stored statuses folded onto a step of the progression
_ORDER_ALIASES: dict[OrderStatus, OrderStatus] = {
    OrderStatus.PROCESSING: OrderStatus.CONFIRMED,
    OrderStatus.PACKED: OrderStatus.CONFIRMED,
    OrderStatus.SHIPPED: OrderStatus.OUT_FOR_DELIVERY,
}

_ASSIGNMENT_TO_ORDER: dict[AssignmentStatus, OrderStatus] = {
    AssignmentStatus.ASSIGNED: OrderStatus.ASSIGNED_TO_DELIVERY,
    AssignmentStatus.ACCEPTED: OrderStatus.ASSIGNED_TO_DELIVERY,
    AssignmentStatus.PICKED_UP: OrderStatus.PICKED_UP,
    AssignmentStatus.DELIVERED: OrderStatus.DELIVERED,
}

_TERMINAL = {
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELLED.value,
    OrderStatus.RETURNED.value,
}


def normalize_order_status(order_status: Optional[str]) -> Optional[str]:
    """
    Fold a stored order status onto the display vocabulary.

    Returns None for an empty status and the input unchanged for a status
    outside the known set.
    """
    if not order_status:
        return None
    parsed = OrderStatus.parse(order_status)
    if parsed is None:
        return order_status
    return _ORDER_ALIASES.get(parsed, parsed).value


def map_delivery_status(
    order_status: Optional[str],
    assignment_status: Optional[str] = None,
) -> str:
    """
    Derive the canonical delivery status for display.

    Args:
        order_status: Status stored on the order
        assignment_status: Status of the order's current assignment, if any

    Returns:
        The further-advanced of the order-derived and assignment-derived
        statuses. Terminal order statuses always win; cancelled and failed
        assignments are ignored; unknown order statuses pass through.
    """
    from_order = normalize_order_status(order_status)

    if from_order in _TERMINAL:
        return from_order

    assignment = AssignmentStatus.parse(assignment_status)
    from_assignment = (
        _ASSIGNMENT_TO_ORDER[assignment].value
        if assignment in _ASSIGNMENT_TO_ORDER
        else None
    )

    if from_order is None:
        return from_assignment or OrderStatus.PENDING.value

    if from_assignment is None or from_order not in _STEP:
        return from_order

    if _STEP[from_assignment] > _STEP[from_order]:
        return from_assignment
    return from_order


def delivery_progress(status: Optional[str]) -> int:
    """
    Percentage of the delivery progression reached by a mapped status.

    Statuses off the progression (cancelled, returned, unknown) report 0.
    """
    if status not in _STEP:
        return 0
    return round(_STEP[status] * 100 / (len(DELIVERY_PROGRESSION) - 1))
