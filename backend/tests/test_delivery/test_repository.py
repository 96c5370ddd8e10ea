"""
Tests for DeliveryRepository against a real database.

Focus is on the rules that settle concurrent callers: the one-active-
assignment index, compare-and-swap status updates and one-shot claims.
"""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from delivery_service.database.models.delivery import DeliveryAssignment
from delivery_service.database.models.order import Order
from delivery_service.services.delivery.enums import AssignmentStatus
from delivery_service.services.delivery.repository import (
    AssignmentConflictError,
    DeliveryRepository,
    DeliveryRepositoryError,
    DuplicateRecordError,
    utcnow,
)


@pytest.fixture
def repository(session) -> DeliveryRepository:
    return DeliveryRepository(session)


def assignment_fields(order_id, partner_id, status="assigned"):
    return dict(
        order_id=order_id,
        delivery_partner_id=partner_id,
        status=status,
        priority="normal",
        pickup_otp="111111",
        delivery_otp="222222",
        assigned_at=utcnow(),
        delivery_fee=Decimal("30.00"),
    )


# ============================================================================
# Active assignment uniqueness
# ============================================================================


class TestActiveAssignmentUniqueness:
    """At most one active assignment per order."""

    async def test_second_active_assignment_rejected(self, repository, seed, session):
        # Arrange
        order, _ = await seed.order()
        first = await seed.partner()
        second = await seed.partner(full_name="Second")
        await repository.insert_assignment(**assignment_fields(order.id, first.id))

        # Act / Assert
        with pytest.raises(AssignmentConflictError):
            await repository.insert_assignment(**assignment_fields(order.id, second.id))

        # Outer transaction is still usable after the rejected insert
        active = await repository.get_active_assignment(order.id)
        assert active.delivery_partner_id == first.id
        await session.commit()

    async def test_cancelled_assignment_does_not_block(self, repository, seed):
        order, _ = await seed.order()
        partner = await seed.partner()
        await repository.insert_assignment(
            **assignment_fields(order.id, partner.id, status="cancelled")
        )

        created = await repository.insert_assignment(**assignment_fields(order.id, partner.id))

        assert created.status == "assigned"
        assert (await repository.get_active_assignment(order.id)).id == created.id


# ============================================================================
# Compare-and-swap updates
# ============================================================================


class TestTransitions:
    """Conditional status updates."""

    async def test_transition_order_matches_expected(self, repository, seed):
        order, _ = await seed.order(status="ready_for_pickup")

        moved = await repository.transition_order(
            order.id, ["ready_for_pickup"], "assigned_to_delivery"
        )

        assert moved is True
        assert (await repository.get_order(order.id)).status == "assigned_to_delivery"

    async def test_second_claim_loses(self, repository, seed):
        # Two claims racing for the same ready order; the second sees 0 rows
        order, _ = await seed.order(status="ready_for_pickup")

        first = await repository.transition_order(
            order.id, ["ready_for_pickup"], "assigned_to_delivery"
        )
        second = await repository.transition_order(
            order.id, ["ready_for_pickup"], "assigned_to_delivery"
        )

        assert (first, second) == (True, False)

    async def test_transition_assignment_guard(self, repository, seed):
        order, _ = await seed.order()
        partner = await seed.partner()
        assignment = await repository.insert_assignment(
            **assignment_fields(order.id, partner.id, status="picked_up")
        )

        moved = await repository.transition_assignment(
            assignment.id, [AssignmentStatus.ASSIGNED], AssignmentStatus.ACCEPTED
        )

        assert moved is False


# ============================================================================
# Claims and cancellations
# ============================================================================


async def test_claim_can_only_be_taken_once(repository, seed):
    order, item = await seed.order(status="ready_for_pickup")
    partner = await seed.partner()
    claim = await repository.insert_pending_claim(
        order_id=order.id,
        order_item_id=item.id,
        pickup_otp="123456",
        delivery_otp="654321",
    )

    assert await repository.mark_claim_claimed(claim.id, partner.id) is True
    assert await repository.mark_claim_claimed(claim.id, partner.id) is False


async def test_duplicate_pending_claim_rejected(repository, seed):
    order, _ = await seed.order(status="ready_for_pickup")
    fields = dict(order_id=order.id, pickup_otp="123456", delivery_otp="654321")
    await repository.insert_pending_claim(**fields)

    with pytest.raises(DuplicateRecordError):
        await repository.insert_pending_claim(**fields)


async def test_reopen_only_touches_claimed_claims(repository, seed):
    order, _ = await seed.order(status="ready_for_pickup")
    partner = await seed.partner()
    claim = await repository.insert_pending_claim(
        order_id=order.id, pickup_otp="123456", delivery_otp="654321"
    )

    assert await repository.reopen_pending_claim(claim.id, pickup_otp="000000") is False

    await repository.mark_claim_claimed(claim.id, partner.id)
    assert await repository.reopen_pending_claim(claim.id, pickup_otp="000000") is True

    reopened = await repository.get_pending_claim(order.id)
    assert reopened.claimed_at is None
    assert reopened.pickup_otp == "000000"


async def test_duplicate_cancellation_rejected(repository, seed):
    order, _ = await seed.order()
    fields = dict(order_id=order.id, reason="other", cancelled_at=utcnow())
    await repository.insert_cancellation(**fields)

    with pytest.raises(DuplicateRecordError):
        await repository.insert_cancellation(**fields)


# ============================================================================
# Queries
# ============================================================================


async def test_available_orders_exclude_assigned_and_wrong_status(repository, seed):
    # Arrange
    open_order, _ = await seed.order(status="confirmed")
    ready_order, _ = await seed.order(status="ready_for_pickup")
    await seed.order(status="delivered")
    taken, _ = await seed.order(status="confirmed")
    partner = await seed.partner()
    await repository.insert_assignment(**assignment_fields(taken.id, partner.id))

    # Act
    orders = await repository.list_available_orders()

    # Assert
    assert {o.id for o in orders} == {open_order.id, ready_order.id}


async def test_dispatchable_partners_filter(repository, seed):
    ready = await seed.partner()
    await seed.partner(is_available=False)
    await seed.partner(is_active=False)

    partners = await repository.list_dispatchable_partners()

    assert [p.id for p in partners] == [ready.id]


async def test_display_names(repository, seed):
    customer = await seed.customer()
    vendor = await seed.vendor()

    customers, vendors = await repository.get_display_names(
        [customer.id, None, uuid.uuid4()], [vendor.id]
    )

    assert customers[customer.id].full_name == "Asha Rao"
    assert vendors[vendor.id].business_name == "Green Grocers"


async def test_store_error_is_wrapped(repository, monkeypatch):
    order_id = uuid.uuid4()
    monkeypatch.setattr(
        repository.session,
        "execute",
        AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("db down"))),
    )

    with pytest.raises(DeliveryRepositoryError) as exc_info:
        await repository.get_order(order_id)

    assert exc_info.value.context["order_id"] == str(order_id)
    assert exc_info.value.context["operation"] == "get_order"


async def test_record_completed_delivery(repository, seed):
    partner = await seed.partner(total_deliveries=4)

    await repository.record_completed_delivery(partner.id)

    refreshed = await repository.get_partner(partner.id)
    assert refreshed.total_deliveries == 5
    assert refreshed.successful_deliveries == 5


async def test_latest_assignment_includes_cancelled(repository, seed, session):
    order, _ = await seed.order()
    partner = await seed.partner()
    await repository.insert_assignment(
        **assignment_fields(order.id, partner.id, status="cancelled")
    )

    latest = await repository.get_latest_assignment(order.id)

    assert isinstance(latest, DeliveryAssignment)
    assert latest.status == "cancelled"
    assert await repository.get_active_assignment(order.id) is None
    assert await session.get(Order, order.id) is not None
