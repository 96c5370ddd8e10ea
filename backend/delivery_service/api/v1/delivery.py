"""
Delivery API endpoints.

Vendors (or admins) ask for a partner when an order item is ready; delivery
partners claim, accept, pick up, deliver and cancel orders and manage their
availability. Every response uses the ``{success, data, error, message,
error_code}`` envelope with an HTTP status matching the outcome.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from delivery_service.api.deps import (
    CurrentIdentity,
    CurrentPartnerId,
    DatabaseSession,
    VendorOrAdmin,
)
from delivery_service.core.logging import get_logger
from delivery_service.core.result import Result, http_status_for, to_envelope
from delivery_service.schemas.delivery import (
    AssignmentCreateRequest,
    AvailabilityUpdate,
    CancellationRequest,
    Envelope,
    ItemStatusUpdateRequest,
    LocationUpdate,
    OtpConfirmRequest,
)
from delivery_service.services.delivery.service import DeliveryService

logger = get_logger(__name__)

router = APIRouter(prefix="/delivery", tags=["delivery"])


def _respond(result: Result, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(
        status_code=http_status_for(result, success_status),
        content=to_envelope(result).model_dump(mode="json", exclude_none=True),
    )


def get_delivery_service(db: DatabaseSession) -> DeliveryService:
    return DeliveryService(db)


Service = Annotated[DeliveryService, Depends(get_delivery_service)]


# ============================================================================
# Allocation
# ============================================================================


@router.post(
    "/assignments",
    response_model=Envelope,
    status_code=status.HTTP_201_CREATED,
    summary="Allocate a delivery partner",
    description=(
        "Assign the best available partner to a ready order, or leave it "
        "ready for pickup when nobody is available"
    ),
)
async def create_assignment(
    request: AssignmentCreateRequest,
    identity: VendorOrAdmin,
    service: Service,
) -> JSONResponse:
    logger.info(
        "Allocating delivery partner",
        order_id=str(request.order_id),
        order_item_id=str(request.order_item_id),
        requested_by=str(identity.user_id),
    )
    result = await service.create_assignment_from_order(
        order_item_id=request.order_item_id,
        order_id=request.order_id,
        vendor_id=request.vendor_id,
        pincode=request.pincode,
        priority=request.priority.value,
    )
    return _respond(result, status.HTTP_201_CREATED)


@router.post(
    "/orders/{order_id}/claim",
    response_model=Envelope,
    summary="Claim a ready order",
)
async def claim_order(
    order_id: UUID,
    partner_id: CurrentPartnerId,
    service: Service,
) -> JSONResponse:
    """Claim an order waiting for a partner. Of concurrent claims one wins."""
    return _respond(await service.pickup_ready_order(order_id, partner_id))


@router.post(
    "/orders/{order_id}/accept",
    response_model=Envelope,
    summary="Accept an assigned order",
)
async def accept_order(
    order_id: UUID,
    partner_id: CurrentPartnerId,
    service: Service,
) -> JSONResponse:
    return _respond(await service.accept_order(order_id, partner_id))


# ============================================================================
# OTP gate
# ============================================================================


@router.post(
    "/orders/{order_id}/pickup",
    response_model=Envelope,
    summary="Confirm pickup with the vendor's OTP",
)
async def confirm_pickup(
    order_id: UUID,
    request: OtpConfirmRequest,
    partner_id: CurrentPartnerId,
    service: Service,
) -> JSONResponse:
    return _respond(await service.mark_picked_up(order_id, partner_id, request.otp))


@router.post(
    "/orders/{order_id}/deliver",
    response_model=Envelope,
    summary="Confirm delivery with the customer's OTP",
)
async def confirm_delivery(
    order_id: UUID,
    request: OtpConfirmRequest,
    partner_id: CurrentPartnerId,
    service: Service,
) -> JSONResponse:
    return _respond(await service.mark_delivered(order_id, partner_id, request.otp))


@router.post(
    "/orders/{order_id}/cancel",
    response_model=Envelope,
    summary="Cancel an order in delivery",
)
async def cancel_order(
    order_id: UUID,
    request: CancellationRequest,
    partner_id: CurrentPartnerId,
    service: Service,
) -> JSONResponse:
    logger.info(
        "Partner cancelling order",
        order_id=str(order_id),
        partner_id=str(partner_id),
        reason=request.reason,
    )
    result = await service.cancel_order(
        order_id,
        partner_id,
        request.reason,
        request.additional_details,
    )
    return _respond(result)


# ============================================================================
# Views
# ============================================================================


@router.get(
    "/orders/{order_id}/status",
    response_model=Envelope,
    summary="Delivery status of an order",
)
async def get_order_status(
    order_id: UUID,
    identity: CurrentIdentity,
    service: Service,
) -> JSONResponse:
    return _respond(await service.get_order_delivery_status(order_id))


@router.get(
    "/available-orders",
    response_model=Envelope,
    summary="Orders open for delivery",
)
async def list_available_orders(
    partner_id: CurrentPartnerId,
    service: Service,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
) -> JSONResponse:
    return _respond(await service.get_available_orders(partner_id, limit=limit))


@router.get(
    "/my-orders",
    response_model=Envelope,
    summary="Caller's open assignments",
)
async def list_my_orders(
    partner_id: CurrentPartnerId,
    service: Service,
) -> JSONResponse:
    return _respond(await service.get_my_orders(partner_id))


@router.get(
    "/history",
    response_model=Envelope,
    summary="Caller's completed deliveries",
)
async def delivery_history(
    partner_id: CurrentPartnerId,
    service: Service,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> JSONResponse:
    return _respond(await service.get_delivery_history(partner_id, page=page, limit=limit))


# ============================================================================
# Point updates
# ============================================================================


@router.patch(
    "/order-items/{order_item_id}/status",
    response_model=Envelope,
    summary="Update an order item's status",
)
async def update_order_item_status(
    order_item_id: UUID,
    request: ItemStatusUpdateRequest,
    identity: VendorOrAdmin,
    service: Service,
) -> JSONResponse:
    return _respond(await service.update_order_item_status(order_item_id, request.status))


@router.patch(
    "/partners/me/availability",
    response_model=Envelope,
    summary="Go online or offline",
)
async def update_availability(
    request: AvailabilityUpdate,
    partner_id: CurrentPartnerId,
    service: Service,
) -> JSONResponse:
    return _respond(await service.update_availability(partner_id, request.is_available))


@router.patch(
    "/partners/me/location",
    response_model=Envelope,
    summary="Report current location",
)
async def update_location(
    request: LocationUpdate,
    partner_id: CurrentPartnerId,
    service: Service,
) -> JSONResponse:
    return _respond(
        await service.update_location(partner_id, request.latitude, request.longitude)
    )
