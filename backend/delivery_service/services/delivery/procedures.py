"""
Named store procedures for the OTP-gated and fallback write paths.

Each procedure is a single conditional statement, so the check and the
write are atomic: an OTP confirmation matches order, partner, expected
assignment status and the stored code in one ``UPDATE ... WHERE`` and the
row count decides the outcome. Procedures are looked up by name so the
fallback writer can route a write through an alternate path without
knowing its implementation.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_service.core.logging import get_logger
from delivery_service.database.models.delivery import DeliveryAssignment
from delivery_service.database.models.order import OrderItem
from delivery_service.services.delivery.enums import (
    PICKUP_PENDING_STATUSES,
    AssignmentStatus,
)

logger = get_logger(__name__)

Procedure = Callable[..., Awaitable[Any]]


class ProcedureNotFoundError(LookupError):
    """Raised when a procedure name is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Unknown store procedure: {name}")
        self.name = name


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _load_assignment(
    session: AsyncSession,
    order_id: uuid.UUID,
    delivery_partner_id: uuid.UUID,
    status: AssignmentStatus,
) -> Optional[DeliveryAssignment]:
    result = await session.execute(
        select(DeliveryAssignment)
        .where(
            DeliveryAssignment.order_id == order_id,
            DeliveryAssignment.delivery_partner_id == delivery_partner_id,
            DeliveryAssignment.status == status.value,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def update_order_item_status(
    session: AsyncSession,
    order_item_id: uuid.UUID,
    status: str,
) -> bool:
    """
    Set an order item's status by id.

    Returns:
        True if the item exists and was updated
    """
    values: Dict[str, Any] = {"item_status": status}
    if status == "confirmed":
        values["vendor_confirmed_at"] = _utcnow()

    result = await session.execute(
        update(OrderItem)
        .where(OrderItem.id == order_item_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def verify_pickup_otp(
    session: AsyncSession,
    order_id: uuid.UUID,
    delivery_partner_id: uuid.UUID,
    otp: str,
) -> Optional[DeliveryAssignment]:
    """
    Confirm pickup if the code matches an assignment awaiting pickup.

    Returns:
        The updated assignment, or None when nothing matched. A wrong code
        and a missing assignment are deliberately indistinguishable.
    """
    now = _utcnow()
    result = await session.execute(
        update(DeliveryAssignment)
        .where(
            DeliveryAssignment.order_id == order_id,
            DeliveryAssignment.delivery_partner_id == delivery_partner_id,
            DeliveryAssignment.status.in_([s.value for s in PICKUP_PENDING_STATUSES]),
            DeliveryAssignment.pickup_otp == otp,
        )
        .values(
            status=AssignmentStatus.PICKED_UP.value,
            pickup_otp_verified=True,
            pickup_otp_verified_at=now,
            picked_up_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return await _load_assignment(
        session, order_id, delivery_partner_id, AssignmentStatus.PICKED_UP
    )


async def verify_delivery_otp(
    session: AsyncSession,
    order_id: uuid.UUID,
    delivery_partner_id: uuid.UUID,
    otp: str,
) -> Optional[DeliveryAssignment]:
    """Confirm delivery if the code matches a picked-up assignment."""
    now = _utcnow()
    result = await session.execute(
        update(DeliveryAssignment)
        .where(
            DeliveryAssignment.order_id == order_id,
            DeliveryAssignment.delivery_partner_id == delivery_partner_id,
            DeliveryAssignment.status == AssignmentStatus.PICKED_UP.value,
            DeliveryAssignment.delivery_otp == otp,
        )
        .values(
            status=AssignmentStatus.DELIVERED.value,
            delivery_otp_verified=True,
            delivery_otp_verified_at=now,
            delivered_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return await _load_assignment(
        session, order_id, delivery_partner_id, AssignmentStatus.DELIVERED
    )


PROCEDURES: Dict[str, Procedure] = {
    "update_order_item_status": update_order_item_status,
    "verify_pickup_otp": verify_pickup_otp,
    "verify_delivery_otp": verify_delivery_otp,
}


async def call_procedure(session: AsyncSession, name: str, **params: Any) -> Any:
    """
    Invoke a registered procedure by name.

    Args:
        session: Session whose transaction the procedure joins
        name: Registered procedure name
        **params: Procedure arguments

    Raises:
        ProcedureNotFoundError: If no procedure has that name
    """
    procedure = PROCEDURES.get(name)
    if procedure is None:
        raise ProcedureNotFoundError(name)

    logger.debug("Calling store procedure", procedure=name, params=sorted(params))
    return await procedure(session, **params)
