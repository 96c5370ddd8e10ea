"""
Delivery service orchestrating order-to-partner reconciliation.

This module implements the DeliveryService class: allocating a delivery
partner when an order becomes ready, letting partners claim orders nobody
was free to take, OTP-gated pickup and delivery confirmation, partner
cancellations, and the read views partners work from.

Every public method returns ``Ok`` or ``Err`` and never raises. Each call
runs in one transaction on the injected session: committed when the
operation succeeds, rolled back when it fails. Races between concurrent
callers are settled by the database (unique indexes and conditional
updates), never by in-process locks.
"""

import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_service.core.config import Settings, get_settings
from delivery_service.core.logging import get_logger, log_performance
from delivery_service.core.result import Err, ErrorKind, Ok, ReconcilerError, Result
from delivery_service.database.models.delivery import (
    DeliveryAssignment,
    PendingDeliveryClaim,
)
from delivery_service.database.models.marketplace import Customer, Vendor
from delivery_service.database.models.order import Order, OrderItem
from delivery_service.services.delivery.allocation import (
    compute_delivery_fee,
    rank_candidates,
)
from delivery_service.services.delivery.enums import (
    ALLOCATABLE_ORDER_STATUSES,
    CANCELLABLE_ORDER_STATUSES,
    PICKUP_PENDING_STATUSES,
    AssignmentStatus,
    CancellationReason,
    ClaimPriority,
    OrderStatus,
    statuses_leading_to,
    validate_assignment_status_transition,
)
from delivery_service.services.delivery.fallback import FallbackWriter, ProcedureCall
from delivery_service.services.delivery.otp import (
    OtpPair,
    generate_otp_pair,
    is_well_formed_otp,
    parse_legacy_notes,
)
from delivery_service.services.delivery.procedures import call_procedure
from delivery_service.services.delivery.repository import (
    AssignmentConflictError,
    DeliveryRepository,
    DeliveryRepositoryError,
    DuplicateRecordError,
    utcnow,
)
from delivery_service.services.delivery.status_mapper import (
    delivery_progress,
    map_delivery_status,
)

logger = get_logger(__name__)

IdLike = Union[uuid.UUID, str, None]

MISSING_PARAMETERS = "Missing required parameters"
INVALID_OTP_MESSAGE = "Invalid OTP or no active assignment for this order"

OTP_SOURCE_CLAIM = "pending_claim"
OTP_SOURCE_LEGACY = "legacy_notes"
OTP_SOURCE_GENERATED = "generated"

# Order statuses a confirmed pickup may advance from
_PICKUP_ORDER_STATUSES = [s.value for s in ALLOCATABLE_ORDER_STATUSES] + [
    OrderStatus.ASSIGNED_TO_DELIVERY.value,
    OrderStatus.PICKED_UP.value,
    OrderStatus.SHIPPED.value,
]

_DELIVERY_ORDER_STATUSES = [
    OrderStatus.ASSIGNED_TO_DELIVERY.value,
    OrderStatus.PICKED_UP.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.OUT_FOR_DELIVERY.value,
]

_OPEN_ASSIGNMENT_STATUSES = [
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.ACCEPTED,
    AssignmentStatus.PICKED_UP,
]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _item_count(order: Order) -> int:
    return sum(item.quantity or 0 for item in order.items)


def _require_id(value: IdLike, name: str) -> uuid.UUID:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ReconcilerError(ErrorKind.VALIDATION, MISSING_PARAMETERS, missing=name)
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except ValueError as e:
        raise ReconcilerError(
            ErrorKind.VALIDATION, f"Invalid {name}", **{name: str(value)}
        ) from e


class DeliveryService:
    """
    Delivery reconciliation service.

    Attributes:
        session: Session whose transaction every operation runs in
        settings: Application settings (OTP length, fees, placeholders)
        repository: Delivery data access
        writer: Fallback writer for order item status updates
    """

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        """
        Initialize delivery service.

        Args:
            session: Async database session
            settings: Optional settings override
        """
        self.session = session
        self.settings = settings or get_settings()
        self.repository = DeliveryRepository(session)
        self.writer = FallbackWriter(session, self.settings)

    # ------------------------------------------------------------------
    # Operation boundary
    # ------------------------------------------------------------------

    async def _execute(
        self,
        operation: str,
        work: Callable[[], Awaitable[Ok]],
        write: bool = True,
        **context: Any,
    ) -> Result:
        """
        Run one operation and convert every failure into ``Err``.

        Args:
            operation: Operation name for logs
            work: Coroutine factory producing the ``Ok`` result
            write: Commit on success when True
            **context: Identifiers logged with every event
        """
        try:
            with log_performance(logger, operation, **context):
                result = await work()
                if write:
                    await self.session.commit()
            return result
        except ReconcilerError as e:
            await self._rollback(operation)
            logger.warning(
                "Delivery operation rejected",
                operation=operation,
                error_kind=e.kind.value,
                error=e.message,
                **context,
                **{f"ctx_{k}": v for k, v in e.context.items()},
            )
            return e.to_err()
        except DeliveryRepositoryError as e:
            await self._rollback(operation)
            logger.error(
                "Delivery operation failed - store error",
                operation=operation,
                error=str(e),
                **context,
            )
            return Err(ErrorKind.TRANSIENT, str(e), context=e.context)
        except SQLAlchemyError as e:
            await self._rollback(operation)
            logger.error(
                "Delivery operation failed - database error",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            return Err(ErrorKind.TRANSIENT, "Database error, please retry")
        except Exception as e:
            await self._rollback(operation)
            logger.error(
                "Delivery operation failed - unexpected error",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
                **context,
            )
            return Err(ErrorKind.TRANSIENT, "An unexpected error occurred")

    async def _rollback(self, operation: str) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as e:
            logger.error("Rollback failed", operation=operation, error=str(e))

    async def _set_item_status(self, order_item_id: Optional[uuid.UUID], status: str) -> None:
        if order_item_id is None:
            return
        await self.writer.write(
            OrderItem,
            order_item_id,
            {"item_status": status},
            procedure=ProcedureCall(
                "update_order_item_status",
                {"order_item_id": order_item_id, "status": status},
            ),
        )

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    async def create_assignment_from_order(
        self,
        order_item_id: IdLike,
        order_id: IdLike,
        vendor_id: IdLike,
        pincode: Optional[str],
        priority: str = ClaimPriority.NORMAL.value,
    ) -> Result:
        """
        Attach a delivery partner to an order that is ready to ship.

        With an available partner the best-ranked one gets an ``assigned``
        assignment and the order moves to ``assigned_to_delivery``. Without
        one the order moves to ``ready_for_pickup`` and a pending claim keeps
        the generated OTPs for whichever partner claims it. Repeating the
        call while the claim is open returns the same pending result.

        Args:
            order_item_id: Line item that became ready
            order_id: Order to deliver
            vendor_id: Vendor the partner collects from
            pincode: Delivery postal code, defaults to the order's address
            priority: ``normal`` or ``urgent``

        Returns:
            Ok with the allocation payload, or Err (validation, not_found,
            already_assigned, invalid_state, transient)
        """

        async def work() -> Ok:
            item_id = _require_id(order_item_id, "order_item_id")
            oid = _require_id(order_id, "order_id")
            vid = _require_id(vendor_id, "vendor_id")
            try:
                claim_priority = ClaimPriority.from_string(priority or "normal")
            except ValueError as e:
                raise ReconcilerError(ErrorKind.VALIDATION, str(e)) from e

            if await self.repository.get_active_assignment(oid) is not None:
                raise ReconcilerError(
                    ErrorKind.ALREADY_ASSIGNED,
                    "Order is already assigned to a delivery partner",
                    order_id=str(oid),
                )

            order = await self.repository.get_order(oid)
            if order is None:
                raise ReconcilerError(ErrorKind.NOT_FOUND, "Order not found", order_id=str(oid))

            item = await self.repository.get_order_item(item_id)
            if item is None or item.order_id != oid:
                raise ReconcilerError(
                    ErrorKind.NOT_FOUND,
                    "Order item not found for this order",
                    order_item_id=str(item_id),
                )

            claim = await self.repository.get_pending_claim(oid)
            if claim is not None and not claim.is_claimed:
                logger.info("Replaying open pending claim", order_id=str(oid))
                return Ok(
                    self._pending_payload(order.id, claim),
                    message="Order is already waiting for a delivery partner",
                )

            status = OrderStatus.parse(order.status)
            if status is None or not status.can_allocate():
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE,
                    f"Order cannot be assigned from status '{order.status}'",
                    order_id=str(oid),
                )

            otps = None
            if claim is None and order.status == OrderStatus.READY_FOR_PICKUP.value:
                # Parked by an older allocation; its codes were already sent out
                otps = self._legacy_otps(order)
            if otps is None:
                otps = generate_otp_pair(self.settings.otp_length)
            delivery_pincode = pincode or order.pincode
            candidates = rank_candidates(
                await self.repository.list_dispatchable_partners(), delivery_pincode
            )
            now = utcnow()

            if not candidates:
                return await self._park_for_claim(
                    order, item_id, vid, delivery_pincode, claim_priority, otps, claim
                )

            partner = candidates[0]
            moved = await self.repository.transition_order(
                oid,
                [s.value for s in ALLOCATABLE_ORDER_STATUSES],
                OrderStatus.ASSIGNED_TO_DELIVERY.value,
                delivery_assigned_at=now,
            )
            if not moved:
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE,
                    "Order status changed while assigning a delivery partner",
                    order_id=str(oid),
                )

            try:
                assignment = await self.repository.insert_assignment(
                    order_id=oid,
                    delivery_partner_id=partner.id,
                    order_item_id=item_id,
                    vendor_id=vid,
                    status=AssignmentStatus.ASSIGNED.value,
                    priority=claim_priority.value,
                    pickup_otp=otps.pickup_otp,
                    delivery_otp=otps.delivery_otp,
                    assigned_at=now,
                    delivery_fee=compute_delivery_fee(claim_priority, self.settings),
                )
            except AssignmentConflictError as e:
                raise ReconcilerError(
                    ErrorKind.ALREADY_ASSIGNED,
                    "Order is already assigned to a delivery partner",
                    order_id=str(oid),
                ) from e

            await self._set_item_status(item_id, OrderStatus.ASSIGNED_TO_DELIVERY.value)

            return Ok(
                {
                    "order_id": str(oid),
                    "status": OrderStatus.ASSIGNED_TO_DELIVERY.value,
                    "pending_assignment": False,
                    "assignment_id": str(assignment.id),
                    "assignment_status": assignment.status,
                    "delivery_partner_id": str(partner.id),
                    "pickup_otp": otps.pickup_otp,
                    "delivery_otp": otps.delivery_otp,
                    "delivery_fee": _money(assignment.delivery_fee),
                    "priority": claim_priority.value,
                },
                message="Delivery partner assigned",
            )

        return await self._execute(
            "create_assignment_from_order",
            work,
            order_id=str(order_id),
            order_item_id=str(order_item_id),
        )

    async def _park_for_claim(
        self,
        order: Order,
        order_item_id: uuid.UUID,
        vendor_id: uuid.UUID,
        pincode: Optional[str],
        priority: ClaimPriority,
        otps: OtpPair,
        previous_claim: Optional[PendingDeliveryClaim],
    ) -> Ok:
        moved = await self.repository.transition_order(
            order.id,
            [s.value for s in ALLOCATABLE_ORDER_STATUSES],
            OrderStatus.READY_FOR_PICKUP.value,
        )
        if not moved:
            raise ReconcilerError(
                ErrorKind.INVALID_STATE,
                "Order status changed while waiting for a delivery partner",
                order_id=str(order.id),
            )

        claim_fields = dict(
            order_item_id=order_item_id,
            vendor_id=vendor_id,
            customer_pincode=pincode,
            priority=priority.value,
            pickup_otp=otps.pickup_otp,
            delivery_otp=otps.delivery_otp,
        )
        if previous_claim is not None:
            # Earlier claim was taken and its assignment later cancelled
            reopened = await self.repository.reopen_pending_claim(
                previous_claim.id, **claim_fields
            )
            if not reopened:
                raise ReconcilerError(
                    ErrorKind.ALREADY_ASSIGNED,
                    "Order is already waiting for a delivery partner",
                    order_id=str(order.id),
                )
            claim = await self.repository.get_pending_claim(order.id)
        else:
            try:
                claim = await self.repository.insert_pending_claim(
                    order_id=order.id, **claim_fields
                )
            except DuplicateRecordError as e:
                raise ReconcilerError(
                    ErrorKind.ALREADY_ASSIGNED,
                    "Order is already waiting for a delivery partner",
                    order_id=str(order.id),
                ) from e

        await self._set_item_status(order_item_id, OrderStatus.READY_FOR_PICKUP.value)

        logger.info(
            "No delivery partner available, order parked for claim",
            order_id=str(order.id),
            pincode=pincode,
        )
        return Ok(
            self._pending_payload(order.id, claim),
            message="No delivery partner available; order is ready for pickup",
        )

    @staticmethod
    def _pending_payload(order_id: uuid.UUID, claim: PendingDeliveryClaim) -> dict[str, Any]:
        return {
            "order_id": str(order_id),
            "status": OrderStatus.READY_FOR_PICKUP.value,
            "pending_assignment": True,
            "pickup_otp": claim.pickup_otp,
            "delivery_otp": claim.delivery_otp,
            "priority": claim.priority,
        }

    async def pickup_ready_order(
        self,
        order_id: IdLike,
        delivery_partner_id: IdLike,
    ) -> Result:
        """
        Let a partner claim an order waiting in ``ready_for_pickup``.

        The claim is a conditional update: it only succeeds if the order is
        still ready for pickup at write time, so of two partners racing for
        the same order exactly one wins. The assignment is created directly
        as ``accepted`` with the OTPs issued at allocation time.

        Args:
            order_id: Order to claim
            delivery_partner_id: Partner claiming it

        Returns:
            Ok with the new assignment, or Err (validation, not_found,
            partner_unavailable, invalid_state, already_assigned, transient)
        """

        async def work() -> Ok:
            oid = _require_id(order_id, "order_id")
            pid = _require_id(delivery_partner_id, "delivery_partner_id")

            partner = await self.repository.get_partner(pid)
            if partner is None:
                raise ReconcilerError(
                    ErrorKind.NOT_FOUND, "Delivery partner not found", partner_id=str(pid)
                )
            if not partner.is_dispatchable:
                raise ReconcilerError(
                    ErrorKind.PARTNER_UNAVAILABLE,
                    "Delivery partner is not available",
                    partner_id=str(pid),
                )

            order = await self.repository.get_order(oid)
            if order is None:
                raise ReconcilerError(ErrorKind.NOT_FOUND, "Order not found", order_id=str(oid))
            if order.status != OrderStatus.READY_FOR_PICKUP.value:
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE,
                    "Order is not ready for pickup",
                    order_id=str(oid),
                    status=order.status,
                )

            claim = await self.repository.get_pending_claim(oid)
            otps, source = self._recover_otps(order, claim)

            now = utcnow()
            moved = await self.repository.transition_order(
                oid,
                [OrderStatus.READY_FOR_PICKUP.value],
                OrderStatus.ASSIGNED_TO_DELIVERY.value,
                delivery_assigned_at=now,
            )
            if not moved:
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE,
                    "Order was claimed by another delivery partner",
                    order_id=str(oid),
                )

            open_claim = claim if claim is not None and not claim.is_claimed else None
            order_item_id = (
                open_claim.order_item_id
                if open_claim
                else (order.items[0].id if order.items else None)
            )
            vendor_id = (
                open_claim.vendor_id
                if open_claim
                else (order.items[0].vendor_id if order.items else None)
            )
            priority = ClaimPriority(open_claim.priority) if open_claim else ClaimPriority.NORMAL

            try:
                assignment = await self.repository.insert_assignment(
                    order_id=oid,
                    delivery_partner_id=pid,
                    order_item_id=order_item_id,
                    vendor_id=vendor_id,
                    status=AssignmentStatus.ACCEPTED.value,
                    priority=priority.value,
                    pickup_otp=otps.pickup_otp,
                    delivery_otp=otps.delivery_otp,
                    assigned_at=now,
                    accepted_at=now,
                    delivery_fee=compute_delivery_fee(priority, self.settings),
                )
            except AssignmentConflictError as e:
                raise ReconcilerError(
                    ErrorKind.ALREADY_ASSIGNED,
                    "Order is already assigned to a delivery partner",
                    order_id=str(oid),
                ) from e

            if open_claim is not None:
                if not await self.repository.mark_claim_claimed(open_claim.id, pid):
                    raise ReconcilerError(
                        ErrorKind.ALREADY_ASSIGNED,
                        "Order was claimed by another delivery partner",
                        order_id=str(oid),
                    )

            await self._set_item_status(order_item_id, OrderStatus.ASSIGNED_TO_DELIVERY.value)

            return Ok(
                {
                    "order_id": str(oid),
                    "status": OrderStatus.ASSIGNED_TO_DELIVERY.value,
                    "assignment_id": str(assignment.id),
                    "assignment_status": assignment.status,
                    "delivery_partner_id": str(pid),
                    "delivery_fee": _money(assignment.delivery_fee),
                    "otp_source": source,
                },
                message="Order claimed successfully",
            )

        return await self._execute(
            "pickup_ready_order",
            work,
            order_id=str(order_id),
            partner_id=str(delivery_partner_id),
        )

    def _recover_otps(
        self, order: Order, claim: Optional[PendingDeliveryClaim]
    ) -> tuple[OtpPair, str]:
        """OTPs issued at allocation time, or fresh ones if none survive."""
        if claim is not None and not claim.is_claimed:
            return OtpPair(claim.pickup_otp, claim.delivery_otp), OTP_SOURCE_CLAIM

        legacy = self._legacy_otps(order)
        if legacy is not None:
            return legacy, OTP_SOURCE_LEGACY

        logger.warning(
            "No stored OTPs for ready order, issuing new ones",
            order_id=str(order.id),
        )
        return generate_otp_pair(self.settings.otp_length), OTP_SOURCE_GENERATED

    def _legacy_otps(self, order: Order) -> Optional[OtpPair]:
        for item in order.items:
            legacy = parse_legacy_notes(item.notes, self.settings.otp_length)
            if legacy is not None:
                return legacy
        return None

    async def accept_order(
        self,
        order_id: IdLike,
        delivery_partner_id: IdLike,
    ) -> Result:
        """Partner acknowledges an ``assigned`` assignment; repeat calls are no-ops."""

        async def work() -> Ok:
            oid = _require_id(order_id, "order_id")
            pid = _require_id(delivery_partner_id, "delivery_partner_id")

            assignment = await self.repository.get_partner_assignment(oid, pid)
            if assignment is None:
                raise ReconcilerError(
                    ErrorKind.NOT_FOUND,
                    "No active assignment for this order",
                    order_id=str(oid),
                )

            if assignment.status == AssignmentStatus.ACCEPTED.value:
                return Ok(self._assignment_payload(assignment), message="Order already accepted")

            if assignment.status != AssignmentStatus.ASSIGNED.value:
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE,
                    f"Assignment cannot be accepted from status '{assignment.status}'",
                    order_id=str(oid),
                )

            moved = await self.repository.transition_assignment(
                assignment.id,
                [AssignmentStatus.ASSIGNED],
                AssignmentStatus.ACCEPTED,
                accepted_at=utcnow(),
            )
            if not moved:
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE,
                    "Assignment changed while accepting",
                    order_id=str(oid),
                )

            assignment = await self.repository.get_partner_assignment(oid, pid)
            return Ok(self._assignment_payload(assignment), message="Order accepted")

        return await self._execute(
            "accept_order", work, order_id=str(order_id), partner_id=str(delivery_partner_id)
        )

    # ------------------------------------------------------------------
    # OTP gate
    # ------------------------------------------------------------------

    async def mark_picked_up(
        self,
        order_id: IdLike,
        delivery_partner_id: IdLike,
        pickup_otp: Optional[str],
    ) -> Result:
        """
        Confirm pickup from the vendor with the pickup OTP.

        A wrong code and a missing assignment produce the same
        ``invalid_otp`` error; the caller should ask for the code again.
        A second call after a successful one fails the same way and never
        rewrites the pickup timestamps.
        """

        async def work() -> Ok:
            oid = _require_id(order_id, "order_id")
            pid = _require_id(delivery_partner_id, "delivery_partner_id")
            if not is_well_formed_otp(pickup_otp, self.settings.otp_length):
                raise ReconcilerError(ErrorKind.INVALID_OTP, INVALID_OTP_MESSAGE, order_id=str(oid))

            assignment = await call_procedure(
                self.session,
                "verify_pickup_otp",
                order_id=oid,
                delivery_partner_id=pid,
                otp=pickup_otp,
            )
            if assignment is None:
                raise ReconcilerError(ErrorKind.INVALID_OTP, INVALID_OTP_MESSAGE, order_id=str(oid))

            moved = await self.repository.transition_order(
                oid,
                _PICKUP_ORDER_STATUSES,
                OrderStatus.OUT_FOR_DELIVERY.value,
                picked_up_at=assignment.picked_up_at,
                shipped_at=assignment.picked_up_at,
            )
            if not moved:
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE,
                    "Order can no longer be picked up",
                    order_id=str(oid),
                )

            await self._set_item_status(assignment.order_item_id, OrderStatus.PICKED_UP.value)

            payload = self._assignment_payload(assignment)
            payload["status"] = OrderStatus.OUT_FOR_DELIVERY.value
            return Ok(payload, message="Order picked up successfully")

        return await self._execute(
            "mark_picked_up", work, order_id=str(order_id), partner_id=str(delivery_partner_id)
        )

    async def mark_delivered(
        self,
        order_id: IdLike,
        delivery_partner_id: IdLike,
        delivery_otp: Optional[str],
    ) -> Result:
        """
        Confirm delivery to the customer with the delivery OTP.

        Also credits the delivery to the partner's counters.
        """

        async def work() -> Ok:
            oid = _require_id(order_id, "order_id")
            pid = _require_id(delivery_partner_id, "delivery_partner_id")
            if not is_well_formed_otp(delivery_otp, self.settings.otp_length):
                raise ReconcilerError(ErrorKind.INVALID_OTP, INVALID_OTP_MESSAGE, order_id=str(oid))

            assignment = await call_procedure(
                self.session,
                "verify_delivery_otp",
                order_id=oid,
                delivery_partner_id=pid,
                otp=delivery_otp,
            )
            if assignment is None:
                raise ReconcilerError(ErrorKind.INVALID_OTP, INVALID_OTP_MESSAGE, order_id=str(oid))

            moved = await self.repository.transition_order(
                oid,
                _DELIVERY_ORDER_STATUSES,
                OrderStatus.DELIVERED.value,
                delivered_at=assignment.delivered_at,
            )
            if not moved:
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE,
                    "Order can no longer be delivered",
                    order_id=str(oid),
                )

            await self.repository.record_completed_delivery(pid)
            await self._set_item_status(assignment.order_item_id, OrderStatus.DELIVERED.value)

            payload = self._assignment_payload(assignment)
            payload["status"] = OrderStatus.DELIVERED.value
            return Ok(payload, message="Order delivered successfully")

        return await self._execute(
            "mark_delivered", work, order_id=str(order_id), partner_id=str(delivery_partner_id)
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_order(
        self,
        order_id: IdLike,
        delivery_partner_id: IdLike,
        reason: Optional[str],
        additional_details: Optional[str] = None,
    ) -> Result:
        """
        Cancel an order the partner is delivering.

        Writes the cancellation record (once per order), cancels the
        partner's assignment and marks the order cancelled.

        Args:
            order_id: Order to cancel
            delivery_partner_id: Partner holding the assignment
            reason: One of the fixed cancellation reasons (value or label)
            additional_details: Free text, required when the reason is "Other"
        """

        async def work() -> Ok:
            if not reason:
                raise ReconcilerError(ErrorKind.VALIDATION, MISSING_PARAMETERS, missing="reason")
            oid = _require_id(order_id, "order_id")
            pid = _require_id(delivery_partner_id, "delivery_partner_id")
            try:
                cancellation_reason = CancellationReason.from_string(reason)
            except ValueError as e:
                raise ReconcilerError(ErrorKind.VALIDATION, str(e)) from e

            details = (additional_details or "").strip() or None
            if cancellation_reason == CancellationReason.OTHER and not details:
                raise ReconcilerError(
                    ErrorKind.VALIDATION,
                    "Additional details are required when the reason is 'Other'",
                )

            order = await self.repository.get_order(oid)
            if order is None:
                raise ReconcilerError(ErrorKind.NOT_FOUND, "Order not found", order_id=str(oid))
            if order.status == OrderStatus.CANCELLED.value:
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE, "Order is already cancelled", order_id=str(oid)
                )

            assignment = await self.repository.get_partner_assignment(oid, pid)
            if assignment is None:
                raise ReconcilerError(
                    ErrorKind.NOT_FOUND,
                    "No active assignment for this order",
                    order_id=str(oid),
                )
            current = AssignmentStatus(assignment.status)
            if not validate_assignment_status_transition(current, AssignmentStatus.CANCELLED):
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE,
                    "Delivered orders cannot be cancelled"
                    if current == AssignmentStatus.DELIVERED
                    else f"Assignment cannot be cancelled from status '{current.value}'",
                    order_id=str(oid),
                )

            now = utcnow()
            try:
                await self.repository.insert_cancellation(
                    order_id=oid,
                    delivery_partner_id=pid,
                    reason=cancellation_reason.value,
                    additional_details=details,
                    cancelled_at=now,
                )
            except DuplicateRecordError as e:
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE, "Order is already cancelled", order_id=str(oid)
                ) from e

            reason_text = cancellation_reason.display_name
            if details:
                reason_text = f"{reason_text}: {details}"

            moved = await self.repository.transition_assignment(
                assignment.id,
                statuses_leading_to(AssignmentStatus.CANCELLED),
                AssignmentStatus.CANCELLED,
                cancelled_at=now,
                failure_reason=reason_text,
            )
            if not moved:
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE,
                    "Assignment changed while cancelling",
                    order_id=str(oid),
                )

            moved = await self.repository.transition_order(
                oid,
                [s.value for s in CANCELLABLE_ORDER_STATUSES],
                OrderStatus.CANCELLED.value,
                cancelled_at=now,
                cancellation_reason=reason_text,
            )
            if not moved:
                raise ReconcilerError(
                    ErrorKind.INVALID_STATE,
                    "Order can no longer be cancelled",
                    order_id=str(oid),
                )

            return Ok(
                {
                    "order_id": str(oid),
                    "status": OrderStatus.CANCELLED.value,
                    "reason": cancellation_reason.value,
                    "reason_label": cancellation_reason.display_name,
                    "additional_details": details,
                    "cancelled_at": _iso(now),
                },
                message="Order cancelled successfully",
            )

        return await self._execute(
            "cancel_order", work, order_id=str(order_id), partner_id=str(delivery_partner_id)
        )

    # ------------------------------------------------------------------
    # Point updates
    # ------------------------------------------------------------------

    async def update_order_item_status(self, order_item_id: IdLike, status: Optional[str]) -> Result:
        """Set an order item's status through the fallback writer."""

        async def work() -> Ok:
            item_id = _require_id(order_item_id, "order_item_id")
            new_status = (status or "").strip().lower()
            if not new_status:
                raise ReconcilerError(ErrorKind.VALIDATION, MISSING_PARAMETERS, missing="status")
            if len(new_status) > 32:
                raise ReconcilerError(ErrorKind.VALIDATION, "Status is too long")

            outcome = await self.writer.write(
                OrderItem,
                item_id,
                {"item_status": new_status},
                procedure=ProcedureCall(
                    "update_order_item_status",
                    {"order_item_id": item_id, "status": new_status},
                ),
            )
            return Ok(
                {
                    "order_item_id": str(item_id),
                    "item_status": new_status,
                    "write_path": outcome.stage,
                },
                message="Order item status updated",
            )

        return await self._execute(
            "update_order_item_status", work, order_item_id=str(order_item_id)
        )

    async def update_availability(self, delivery_partner_id: IdLike, is_available: bool) -> Result:
        """Partner goes online or offline."""

        async def work() -> Ok:
            pid = _require_id(delivery_partner_id, "delivery_partner_id")
            if not await self.repository.update_partner(pid, is_available=bool(is_available)):
                raise ReconcilerError(
                    ErrorKind.NOT_FOUND, "Delivery partner not found", partner_id=str(pid)
                )
            return Ok(
                {"delivery_partner_id": str(pid), "is_available": bool(is_available)},
                message="Availability updated",
            )

        return await self._execute(
            "update_availability", work, partner_id=str(delivery_partner_id)
        )

    async def update_location(
        self,
        delivery_partner_id: IdLike,
        latitude: Any,
        longitude: Any,
    ) -> Result:
        """Record the partner's current coordinates."""

        async def work() -> Ok:
            pid = _require_id(delivery_partner_id, "delivery_partner_id")
            try:
                lat = Decimal(str(latitude))
                lon = Decimal(str(longitude))
            except (InvalidOperation, ValueError) as e:
                raise ReconcilerError(ErrorKind.VALIDATION, "Invalid coordinates") from e
            if not (lat.is_finite() and lon.is_finite()):
                raise ReconcilerError(ErrorKind.VALIDATION, "Invalid coordinates")
            if not (-90 <= lat <= 90 and -180 <= lon <= 180):
                raise ReconcilerError(ErrorKind.VALIDATION, "Coordinates out of range")

            lat = lat.quantize(Decimal("0.000001"))
            lon = lon.quantize(Decimal("0.000001"))
            if not await self.repository.update_partner(
                pid, current_latitude=lat, current_longitude=lon
            ):
                raise ReconcilerError(
                    ErrorKind.NOT_FOUND, "Delivery partner not found", partner_id=str(pid)
                )
            return Ok(
                {
                    "delivery_partner_id": str(pid),
                    "latitude": str(lat),
                    "longitude": str(lon),
                },
                message="Location updated",
            )

        return await self._execute("update_location", work, partner_id=str(delivery_partner_id))

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    async def _display_lookup(
        self,
        customer_ids: list[Optional[uuid.UUID]],
        vendor_ids: list[Optional[uuid.UUID]],
    ) -> tuple[dict[uuid.UUID, Customer], dict[uuid.UUID, Vendor], bool]:
        """Customer and vendor records, or empty maps if the lookup fails."""
        try:
            customers, vendors = await self.repository.get_display_names(
                customer_ids, vendor_ids
            )
            return customers, vendors, False
        except DeliveryRepositoryError as e:
            logger.warning(
                "Display lookup failed, using placeholders",
                error=str(e),
                context=e.context,
            )
            return {}, {}, True

    def _display_fields(
        self,
        customer: Optional[Customer],
        vendor: Optional[Vendor],
    ) -> dict[str, Any]:
        return {
            "customer_name": customer.full_name if customer else self.settings.placeholder_customer_name,
            "customer_phone": customer.phone if customer else None,
            "vendor_name": vendor.business_name if vendor else self.settings.placeholder_vendor_name,
            "vendor_phone": vendor.phone if vendor else None,
            "vendor_address": vendor.address if vendor else None,
        }

    async def get_available_orders(
        self,
        delivery_partner_id: IdLike = None,
        limit: int = 50,
    ) -> Result:
        """
        Orders open for delivery that no partner holds yet.

        Lists confirmed and ready-for-pickup orders without an active
        assignment, newest first. Display fields fall back to placeholders
        if they cannot be loaded.

        Args:
            delivery_partner_id: Optional caller, used to flag orders in
                their service area
            limit: Maximum number of orders
        """

        async def work() -> Ok:
            partner = None
            if delivery_partner_id:
                partner = await self.repository.get_partner(
                    _require_id(delivery_partner_id, "delivery_partner_id")
                )

            orders = await self.repository.list_available_orders(limit=max(1, min(limit, 100)))
            claims = await self.repository.get_pending_claims([o.id for o in orders])

            vendor_of = {
                o.id: (o.items[0].vendor_id if o.items else None) for o in orders
            }
            customers, vendors, degraded = await self._display_lookup(
                [o.customer_id for o in orders], list(vendor_of.values())
            )

            rows = []
            for order in orders:
                claim = claims.get(order.id)
                row = {
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "status": order.status,
                    "delivery_status": map_delivery_status(order.status),
                    "total_amount": _money(order.total_amount),
                    "payment_method": order.payment_method,
                    "collection_required": order.collection_required,
                    "delivery_address": order.delivery_address,
                    "delivery_pincode": order.pincode,
                    "item_count": _item_count(order),
                    "pending_assignment": claim is not None,
                    "priority": claim.priority if claim else ClaimPriority.NORMAL.value,
                    "created_at": _iso(order.created_at),
                    "in_service_area": partner.serves(order.pincode) if partner else None,
                }
                row.update(
                    self._display_fields(
                        customers.get(order.customer_id), vendors.get(vendor_of[order.id])
                    )
                )
                rows.append(row)

            return Ok(
                rows,
                message="Some details are unavailable" if degraded and rows else None,
            )

        return await self._execute("get_available_orders", work, write=False)

    async def get_my_orders(self, delivery_partner_id: IdLike) -> Result:
        """
        The partner's open assignments with order and display details.

        Degrades to placeholder names if customer or vendor details cannot
        be loaded.
        """

        async def work() -> Ok:
            pid = _require_id(delivery_partner_id, "delivery_partner_id")
            pairs = await self.repository.list_partner_assignments(pid, _OPEN_ASSIGNMENT_STATUSES)

            customers, vendors, degraded = await self._display_lookup(
                [order.customer_id for _, order in pairs],
                [assignment.vendor_id for assignment, _ in pairs],
            )

            rows = []
            for assignment, order in pairs:
                row = self._assignment_payload(assignment)
                row.update(
                    {
                        "order_number": order.order_number,
                        "order_status": order.status,
                        "delivery_status": map_delivery_status(order.status, assignment.status),
                        "total_amount": _money(order.total_amount),
                        "payment_method": order.payment_method,
                        "collection_required": order.collection_required,
                        "delivery_address": order.delivery_address,
                        "item_count": _item_count(order),
                        "awaiting_pickup": AssignmentStatus(assignment.status)
                        in PICKUP_PENDING_STATUSES,
                    }
                )
                row.update(
                    self._display_fields(
                        customers.get(order.customer_id), vendors.get(assignment.vendor_id)
                    )
                )
                rows.append(row)

            return Ok(
                rows,
                message="Some details are unavailable" if degraded and rows else None,
            )

        return await self._execute(
            "get_my_orders", work, write=False, partner_id=str(delivery_partner_id)
        )

    async def get_delivery_history(
        self,
        delivery_partner_id: IdLike,
        page: int = 1,
        limit: int = 20,
    ) -> Result:
        """Page through the partner's completed deliveries, newest first."""

        async def work() -> Ok:
            pid = _require_id(delivery_partner_id, "delivery_partner_id")
            if page < 1 or not 1 <= limit <= 100:
                raise ReconcilerError(
                    ErrorKind.VALIDATION, "Page must be >= 1 and limit between 1 and 100"
                )

            pairs, total = await self.repository.list_delivery_history(
                pid, offset=(page - 1) * limit, limit=limit
            )
            items = []
            for assignment, order in pairs:
                item = self._assignment_payload(assignment)
                item.update(
                    {
                        "order_number": order.order_number,
                        "total_amount": _money(order.total_amount),
                        "delivery_status": map_delivery_status(order.status, assignment.status),
                    }
                )
                items.append(item)

            return Ok(
                {
                    "items": items,
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "total_pages": (total + limit - 1) // limit,
                }
            )

        return await self._execute(
            "get_delivery_history", work, write=False, partner_id=str(delivery_partner_id)
        )

    async def get_order_delivery_status(self, order_id: IdLike) -> Result:
        """Canonical delivery status of an order with its progress."""

        async def work() -> Ok:
            oid = _require_id(order_id, "order_id")
            order = await self.repository.get_order(oid)
            if order is None:
                raise ReconcilerError(ErrorKind.NOT_FOUND, "Order not found", order_id=str(oid))

            assignment = await self.repository.get_active_assignment(oid)
            if assignment is None:
                assignment = await self.repository.get_latest_assignment(oid)

            delivery_status = map_delivery_status(
                order.status, assignment.status if assignment else None
            )
            return Ok(
                {
                    "order_id": str(oid),
                    "order_number": order.order_number,
                    "order_status": order.status,
                    "assignment_status": assignment.status if assignment else None,
                    "delivery_status": delivery_status,
                    "progress": delivery_progress(delivery_status),
                    "delivery_partner_id": str(assignment.delivery_partner_id)
                    if assignment
                    else None,
                    "delivery_assigned_at": _iso(order.delivery_assigned_at),
                    "picked_up_at": _iso(order.picked_up_at),
                    "delivered_at": _iso(order.delivered_at),
                    "cancelled_at": _iso(order.cancelled_at),
                    "cancellation_reason": order.cancellation_reason,
                }
            )

        return await self._execute(
            "get_order_delivery_status", work, write=False, order_id=str(order_id)
        )

    @staticmethod
    def _assignment_payload(assignment: DeliveryAssignment) -> dict[str, Any]:
        return {
            "assignment_id": str(assignment.id),
            "order_id": str(assignment.order_id),
            "delivery_partner_id": str(assignment.delivery_partner_id),
            "assignment_status": assignment.status,
            "priority": assignment.priority,
            "delivery_fee": _money(assignment.delivery_fee),
            "assigned_at": _iso(assignment.assigned_at),
            "accepted_at": _iso(assignment.accepted_at),
            "picked_up_at": _iso(assignment.picked_up_at),
            "delivered_at": _iso(assignment.delivered_at),
        }
