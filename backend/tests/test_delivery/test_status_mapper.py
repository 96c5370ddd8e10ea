"""
Tests for canonical delivery status mapping.

Covers alias folding, the more-advanced-wins rule between order and
assignment, terminal precedence, pass-through of unknown statuses and
progress percentages.
"""

import pytest

from delivery_service.services.delivery.status_mapper import (
    DELIVERY_PROGRESSION,
    delivery_progress,
    map_delivery_status,
    normalize_order_status,
)


# ============================================================================
# Normalization
# ============================================================================


@pytest.mark.parametrize(
    "stored,expected",
    [
        ("processing", "confirmed"),
        ("packed", "confirmed"),
        ("shipped", "out_for_delivery"),
        ("PROCESSING", "confirmed"),
        ("ready_for_pickup", "ready_for_pickup"),
    ],
)
def test_normalize_folds_aliases(stored, expected):
    assert normalize_order_status(stored) == expected


def test_normalize_empty_is_none():
    assert normalize_order_status(None) is None
    assert normalize_order_status("") is None


def test_normalize_unknown_passes_through():
    assert normalize_order_status("awaiting_customs") == "awaiting_customs"


# ============================================================================
# Mapping
# ============================================================================


class TestMapDeliveryStatus:
    """Tests for map_delivery_status."""

    def test_order_only(self):
        assert map_delivery_status("confirmed") == "confirmed"

    def test_assignment_ahead_of_order_wins(self):
        # Vendor still says processing, partner already picked up
        assert map_delivery_status("processing", "picked_up") == "picked_up"

    def test_order_ahead_of_assignment_wins(self):
        assert map_delivery_status("out_for_delivery", "accepted") == "out_for_delivery"

    def test_assigned_and_accepted_map_to_assigned_to_delivery(self):
        assert map_delivery_status("confirmed", "assigned") == "assigned_to_delivery"
        assert map_delivery_status("confirmed", "accepted") == "assigned_to_delivery"

    def test_shipped_alias_against_picked_up(self):
        assert map_delivery_status("shipped", "picked_up") == "out_for_delivery"

    @pytest.mark.parametrize("terminal", ["delivered", "cancelled", "returned"])
    def test_terminal_order_status_wins(self, terminal):
        assert map_delivery_status(terminal, "picked_up") == terminal

    def test_cancelled_assignment_is_ignored(self):
        assert map_delivery_status("ready_for_pickup", "cancelled") == "ready_for_pickup"

    def test_missing_order_status_falls_back_to_assignment(self):
        assert map_delivery_status(None, "picked_up") == "picked_up"

    def test_missing_everything_is_pending(self):
        assert map_delivery_status(None, None) == "pending"

    def test_unknown_order_status_passes_through(self):
        assert map_delivery_status("on_hold", "picked_up") == "on_hold"

    def test_unknown_assignment_status_is_ignored(self):
        assert map_delivery_status("confirmed", "teleported") == "confirmed"

    def test_delivered_assignment_over_open_order(self):
        assert map_delivery_status("out_for_delivery", "delivered") == "delivered"


# ============================================================================
# Progress
# ============================================================================


def test_progress_bounds():
    assert delivery_progress(DELIVERY_PROGRESSION[0]) == 0
    assert delivery_progress("delivered") == 100


def test_progress_is_monotonic():
    values = [delivery_progress(status) for status in DELIVERY_PROGRESSION]
    assert values == sorted(values)
    assert len(set(values)) == len(values)


@pytest.mark.parametrize("status", ["cancelled", "returned", "on_hold", None])
def test_progress_off_track_is_zero(status):
    assert delivery_progress(status) == 0
