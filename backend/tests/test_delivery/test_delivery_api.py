"""
Integration tests for the delivery API endpoints.

Requests go through the full application (authentication, validation,
envelope rendering) against the test database. Rows are seeded before
the first request and checked through the API or a fresh reload.
"""

import uuid
from types import SimpleNamespace

from fastapi import status

from delivery_service.core.security import Role
from delivery_service.database.models.delivery_partner import DeliveryPartner
from delivery_service.database.models.order import Order

BASE = "/api/v1/delivery"


async def seed_order(seed, **kwargs) -> SimpleNamespace:
    vendor = await seed.vendor()
    order, item = await seed.order(customer=await seed.customer(), vendor=vendor, **kwargs)
    return SimpleNamespace(order_id=order.id, item_id=item.id, vendor_id=vendor.id)


def assignment_body(ids, **overrides) -> dict:
    body = {
        "order_item_id": str(ids.item_id),
        "order_id": str(ids.order_id),
        "vendor_id": str(ids.vendor_id),
        "pincode": "560001",
    }
    body.update(overrides)
    return body


def wrong_code(code: str) -> str:
    return ("1" if code[0] != "1" else "2") + code[1:]


# ============================================================================
# Authentication and authorization
# ============================================================================


class TestAccessControl:
    """Tests for bearer token and role checks."""

    async def test_missing_token(self, async_client):
        response = await async_client.get(f"{BASE}/my-orders")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json() == {
            "success": False,
            "error": "Could not validate credentials",
        }

    async def test_garbage_token(self, async_client):
        response = await async_client.get(
            f"{BASE}/my-orders", headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_vendor_cannot_use_partner_endpoints(self, async_client, headers):
        response = await async_client.get(
            f"{BASE}/my-orders", headers=headers(uuid.uuid4(), Role.VENDOR)
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json() == {"success": False, "error": "Insufficient permissions"}

    async def test_partner_cannot_allocate(self, async_client, headers, seed):
        ids = await seed_order(seed)

        response = await async_client.post(
            f"{BASE}/assignments",
            json=assignment_body(ids),
            headers=headers(uuid.uuid4(), Role.DELIVERY_PARTNER),
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN

    async def test_any_role_can_read_status(self, async_client, headers, seed):
        ids = await seed_order(seed)

        response = await async_client.get(
            f"{BASE}/orders/{ids.order_id}/status",
            headers=headers(uuid.uuid4(), Role.CUSTOMER),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"]["delivery_status"] == "confirmed"


# ============================================================================
# Allocation endpoint
# ============================================================================


class TestCreateAssignmentEndpoint:
    """Tests for POST /assignments."""

    async def test_assigns_partner(self, async_client, headers, seed):
        # Arrange
        ids = await seed_order(seed)
        partner_id = (await seed.partner()).id

        # Act
        response = await async_client.post(
            f"{BASE}/assignments",
            json=assignment_body(ids, priority="URGENT"),
            headers=headers(ids.vendor_id, Role.VENDOR),
        )

        # Assert
        assert response.status_code == status.HTTP_201_CREATED
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Delivery partner assigned"
        assert "error" not in body
        assert body["data"]["delivery_partner_id"] == str(partner_id)
        assert body["data"]["priority"] == "urgent"
        assert body["data"]["delivery_fee"] == "50.00"

    async def test_already_assigned_is_conflict(self, async_client, headers, seed):
        ids = await seed_order(seed)
        await seed.partner()
        vendor_headers = headers(ids.vendor_id, Role.VENDOR)
        await async_client.post(
            f"{BASE}/assignments", json=assignment_body(ids), headers=vendor_headers
        )

        response = await async_client.post(
            f"{BASE}/assignments", json=assignment_body(ids), headers=vendor_headers
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        body = response.json()
        assert body == {
            "success": False,
            "error": "Order is already assigned to a delivery partner",
            "error_code": "already_assigned",
        }

    async def test_unknown_order(self, async_client, headers):
        ids = SimpleNamespace(order_id=uuid.uuid4(), item_id=uuid.uuid4(), vendor_id=uuid.uuid4())

        response = await async_client.post(
            f"{BASE}/assignments",
            json=assignment_body(ids),
            headers=headers(uuid.uuid4(), Role.ADMIN),
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "not_found"

    async def test_malformed_body(self, async_client, headers):
        response = await async_client.post(
            f"{BASE}/assignments",
            json={"order_item_id": "x", "order_id": str(uuid.uuid4())},
            headers=headers(uuid.uuid4(), Role.VENDOR),
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "validation"
        assert body["message"] == "Request validation failed"
        assert body["error"].startswith("order_item_id")

    async def test_unknown_priority(self, async_client, headers, seed):
        ids = await seed_order(seed)

        response = await async_client.post(
            f"{BASE}/assignments",
            json=assignment_body(ids, priority="asap"),
            headers=headers(ids.vendor_id, Role.VENDOR),
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST


# ============================================================================
# Partner workflow
# ============================================================================


async def test_assigned_delivery_end_to_end(async_client, headers, seed):
    # Arrange
    ids = await seed_order(seed)
    partner_id = (await seed.partner()).id
    partner = headers(partner_id, Role.DELIVERY_PARTNER)

    allocated = await async_client.post(
        f"{BASE}/assignments",
        json=assignment_body(ids),
        headers=headers(ids.vendor_id, Role.VENDOR),
    )
    codes = allocated.json()["data"]

    # Act / Assert: accept
    response = await async_client.post(f"{BASE}/orders/{ids.order_id}/accept", headers=partner)
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["data"]["assignment_status"] == "accepted"

    # wrong pickup code
    response = await async_client.post(
        f"{BASE}/orders/{ids.order_id}/pickup",
        json={"otp": wrong_code(codes["pickup_otp"])},
        headers=partner,
    )
    assert response.status_code == 422
    assert response.json()["error_code"] == "invalid_otp"

    # pickup
    response = await async_client.post(
        f"{BASE}/orders/{ids.order_id}/pickup",
        json={"otp": codes["pickup_otp"]},
        headers=partner,
    )
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["data"]["status"] == "out_for_delivery"

    my_orders = await async_client.get(f"{BASE}/my-orders", headers=partner)
    (row,) = my_orders.json()["data"]
    assert row["awaiting_pickup"] is False

    # deliver
    response = await async_client.post(
        f"{BASE}/orders/{ids.order_id}/deliver",
        json={"otp": codes["delivery_otp"]},
        headers=partner,
    )
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["message"] == "Order delivered successfully"

    history = await async_client.get(f"{BASE}/history?page=1&limit=10", headers=partner)
    assert history.json()["data"]["total"] == 1

    order = await seed.reload(Order, ids.order_id)
    assert order.status == "delivered"


async def test_claim_ready_order(async_client, headers, seed):
    # Arrange: nobody is online when the vendor marks the order ready
    ids = await seed_order(seed)
    parked = await async_client.post(
        f"{BASE}/assignments",
        json=assignment_body(ids),
        headers=headers(ids.vendor_id, Role.VENDOR),
    )
    first_id = (await seed.partner(full_name="First")).id
    second_id = (await seed.partner(full_name="Second")).id

    # Act
    available = await async_client.get(
        f"{BASE}/available-orders", headers=headers(first_id, Role.DELIVERY_PARTNER)
    )
    first = await async_client.post(
        f"{BASE}/orders/{ids.order_id}/claim",
        headers=headers(first_id, Role.DELIVERY_PARTNER),
    )
    second = await async_client.post(
        f"{BASE}/orders/{ids.order_id}/claim",
        headers=headers(second_id, Role.DELIVERY_PARTNER),
    )

    # Assert
    assert parked.status_code == status.HTTP_201_CREATED
    assert parked.json()["data"]["pending_assignment"] is True
    (row,) = available.json()["data"]
    assert row["pending_assignment"] is True
    assert row["in_service_area"] is True
    assert first.status_code == status.HTTP_200_OK
    assert first.json()["data"]["otp_source"] == "pending_claim"
    assert second.status_code == status.HTTP_409_CONFLICT
    assert second.json()["error_code"] == "invalid_state"

    pickup = await async_client.post(
        f"{BASE}/orders/{ids.order_id}/pickup",
        json={"otp": parked.json()["data"]["pickup_otp"]},
        headers=headers(first_id, Role.DELIVERY_PARTNER),
    )
    assert pickup.status_code == status.HTTP_200_OK


async def test_claim_while_offline(async_client, headers, seed):
    ids = await seed_order(seed, status="ready_for_pickup")
    partner_id = (await seed.partner(is_available=False)).id

    response = await async_client.post(
        f"{BASE}/orders/{ids.order_id}/claim",
        headers=headers(partner_id, Role.DELIVERY_PARTNER),
    )

    assert response.status_code == status.HTTP_409_CONFLICT
    assert response.json()["error_code"] == "partner_unavailable"


async def test_cancel(async_client, headers, seed):
    ids = await seed_order(seed)
    partner_id = (await seed.partner()).id
    await async_client.post(
        f"{BASE}/assignments",
        json=assignment_body(ids),
        headers=headers(ids.vendor_id, Role.VENDOR),
    )

    response = await async_client.post(
        f"{BASE}/orders/{ids.order_id}/cancel",
        json={"reason": "Other", "additional_details": "Road closed"},
        headers=headers(partner_id, Role.DELIVERY_PARTNER),
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["data"]["reason"] == "other"
    status_response = await async_client.get(
        f"{BASE}/orders/{ids.order_id}/status",
        headers=headers(partner_id, Role.DELIVERY_PARTNER),
    )
    assert status_response.json()["data"]["cancellation_reason"] == "Other: Road closed"


async def test_cancel_other_without_details(async_client, headers, seed):
    ids = await seed_order(seed)
    partner_id = (await seed.partner()).id
    await async_client.post(
        f"{BASE}/assignments",
        json=assignment_body(ids),
        headers=headers(ids.vendor_id, Role.VENDOR),
    )

    response = await async_client.post(
        f"{BASE}/orders/{ids.order_id}/cancel",
        json={"reason": "other"},
        headers=headers(partner_id, Role.DELIVERY_PARTNER),
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error_code"] == "validation"


# ============================================================================
# Point updates
# ============================================================================


async def test_availability_and_location(async_client, headers, seed):
    partner_id = (await seed.partner()).id
    partner = headers(partner_id, Role.DELIVERY_PARTNER)

    offline = await async_client.patch(
        f"{BASE}/partners/me/availability", json={"is_available": False}, headers=partner
    )
    located = await async_client.patch(
        f"{BASE}/partners/me/location",
        json={"latitude": 12.9716, "longitude": 77.5946},
        headers=partner,
    )
    out_of_range = await async_client.patch(
        f"{BASE}/partners/me/location",
        json={"latitude": 120, "longitude": 77.5},
        headers=partner,
    )

    assert offline.status_code == status.HTTP_200_OK
    assert located.json()["data"]["latitude"] == "12.971600"
    assert out_of_range.status_code == status.HTTP_400_BAD_REQUEST
    refreshed = await seed.reload(DeliveryPartner, partner_id)
    assert refreshed.is_available is False


async def test_non_finite_location_is_rejected(async_client, headers, seed):
    partner_id = (await seed.partner()).id

    response = await async_client.patch(
        f"{BASE}/partners/me/location",
        content='{"latitude": NaN, "longitude": 10}',
        headers={
            **headers(partner_id, Role.DELIVERY_PARTNER),
            "Content-Type": "application/json",
        },
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "validation"


async def test_update_order_item_status(async_client, headers, seed):
    ids = await seed_order(seed)

    response = await async_client.patch(
        f"{BASE}/order-items/{ids.item_id}/status",
        json={"status": "packed"},
        headers=headers(ids.vendor_id, Role.VENDOR),
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["data"]["item_status"] == "packed"


async def test_history_rejects_bad_paging(async_client, headers):
    response = await async_client.get(
        f"{BASE}/history?page=0",
        headers=headers(uuid.uuid4(), Role.DELIVERY_PARTNER),
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error_code"] == "validation"
