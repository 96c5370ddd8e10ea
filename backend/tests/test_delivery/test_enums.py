"""
Tests for delivery enums and the assignment state machine.
"""

import pytest

from delivery_service.services.delivery.enums import (
    ASSIGNMENT_STATUS_TRANSITIONS,
    AssignmentStatus,
    CancellationReason,
    ClaimPriority,
    OrderStatus,
    statuses_leading_to,
    validate_assignment_status_transition,
)


# ============================================================================
# OrderStatus
# ============================================================================


def test_order_status_from_string_is_case_insensitive():
    assert OrderStatus.from_string(" Ready_For_Pickup ") == OrderStatus.READY_FOR_PICKUP


def test_order_status_from_string_rejects_unknown():
    with pytest.raises(ValueError, match="Invalid order status"):
        OrderStatus.from_string("lost")


def test_order_status_parse_is_lenient():
    assert OrderStatus.parse("lost") is None
    assert OrderStatus.parse(None) is None
    assert OrderStatus.parse("shipped") == OrderStatus.SHIPPED


@pytest.mark.parametrize(
    "status,terminal",
    [
        (OrderStatus.DELIVERED, True),
        (OrderStatus.CANCELLED, True),
        (OrderStatus.RETURNED, True),
        (OrderStatus.OUT_FOR_DELIVERY, False),
        (OrderStatus.PENDING, False),
    ],
)
def test_order_status_is_terminal(status, terminal):
    assert status.is_terminal() is terminal


def test_can_allocate():
    assert OrderStatus.CONFIRMED.can_allocate()
    assert OrderStatus.READY_FOR_PICKUP.can_allocate()
    assert not OrderStatus.ASSIGNED_TO_DELIVERY.can_allocate()
    assert not OrderStatus.DELIVERED.can_allocate()


def test_order_status_display_name():
    assert OrderStatus.OUT_FOR_DELIVERY.display_name == "Out For Delivery"


# ============================================================================
# AssignmentStatus state machine
# ============================================================================


class TestAssignmentTransitions:
    """Tests for the assignment transition table."""

    def test_happy_path(self):
        path = [
            AssignmentStatus.ASSIGNED,
            AssignmentStatus.ACCEPTED,
            AssignmentStatus.PICKED_UP,
            AssignmentStatus.DELIVERED,
        ]
        for current, new in zip(path, path[1:]):
            assert validate_assignment_status_transition(current, new)

    def test_terminal_states_have_no_exits(self):
        for status in AssignmentStatus:
            if status.is_terminal():
                assert ASSIGNMENT_STATUS_TRANSITIONS[status] == set()

    def test_cannot_go_backwards(self):
        assert not validate_assignment_status_transition(
            AssignmentStatus.PICKED_UP, AssignmentStatus.ACCEPTED
        )

    def test_delivered_cannot_be_cancelled(self):
        assert not validate_assignment_status_transition(
            AssignmentStatus.DELIVERED, AssignmentStatus.CANCELLED
        )

    def test_statuses_leading_to_cancelled(self):
        assert statuses_leading_to(AssignmentStatus.CANCELLED) == {
            AssignmentStatus.ASSIGNED,
            AssignmentStatus.ACCEPTED,
            AssignmentStatus.PICKED_UP,
        }

    def test_statuses_leading_to_delivered(self):
        assert statuses_leading_to(AssignmentStatus.DELIVERED) == {
            AssignmentStatus.PICKED_UP
        }


def test_assignment_is_active():
    assert AssignmentStatus.DELIVERED.is_active()
    assert not AssignmentStatus.CANCELLED.is_active()
    assert not AssignmentStatus.FAILED.is_active()


# ============================================================================
# ClaimPriority / CancellationReason
# ============================================================================


def test_claim_priority_from_string():
    assert ClaimPriority.from_string("URGENT") == ClaimPriority.URGENT
    with pytest.raises(ValueError, match="Invalid priority"):
        ClaimPriority.from_string("asap")


@pytest.mark.parametrize(
    "raw",
    ["customer_refused", "Customer refused delivery", "CUSTOMER REFUSED DELIVERY"],
)
def test_cancellation_reason_accepts_value_or_label(raw):
    assert CancellationReason.from_string(raw) == CancellationReason.CUSTOMER_REFUSED


def test_cancellation_reason_rejects_unknown():
    with pytest.raises(ValueError, match="Invalid cancellation reason"):
        CancellationReason.from_string("bored")


def test_every_reason_has_a_label():
    for reason in CancellationReason:
        assert reason.display_name
