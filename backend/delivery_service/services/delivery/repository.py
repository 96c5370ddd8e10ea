"""
Delivery data access repository.

This module implements the DeliveryRepository class providing async methods
for every read and write the reconciler performs: point lookups, conditional
(compare-and-swap) status updates, inserts guarded by unique constraints,
and the list queries behind the partner views. Writes never commit; the
service owns the transaction.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from delivery_service.core.logging import get_logger
from delivery_service.database.models.delivery import (
    DeliveryAssignment,
    OrderCancellation,
    PendingDeliveryClaim,
)
from delivery_service.database.models.delivery_partner import DeliveryPartner
from delivery_service.database.models.marketplace import Customer, Vendor
from delivery_service.database.models.order import Order, OrderItem
from delivery_service.services.delivery.enums import (
    AVAILABLE_ORDER_STATUSES,
    INACTIVE_ASSIGNMENT_STATUSES,
    AssignmentStatus,
)

logger = get_logger(__name__)

_INACTIVE = [s.value for s in INACTIVE_ASSIGNMENT_STATUSES]


class DeliveryRepositoryError(Exception):
    """Base exception for delivery repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class DuplicateRecordError(DeliveryRepositoryError):
    """Raised when an insert violates a uniqueness rule."""

    pass


class AssignmentConflictError(DuplicateRecordError):
    """Raised when an order already has an active assignment."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryRepository:
    """
    Repository for delivery data access operations.

    Every method joins the caller's transaction. Store failures are logged
    and re-raised as DeliveryRepositoryError with the identifiers involved.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize delivery repository.

        Args:
            session: Async database session
        """
        self.session = session

    @asynccontextmanager
    async def _guard(self, operation: str, **context: Any) -> AsyncIterator[None]:
        try:
            yield
        except DeliveryRepositoryError:
            raise
        except SQLAlchemyError as e:
            logger.error(
                "Delivery repository operation failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise DeliveryRepositoryError(
                f"Database error during {operation}",
                operation=operation,
                error=str(e),
                **context,
            ) from e

    # ------------------------------------------------------------------
    # Point reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        async with self._guard("get_order", order_id=str(order_id)):
            result = await self.session.execute(
                select(Order)
                .where(Order.id == order_id)
                .execution_options(populate_existing=True)
            )
            return result.scalars().first()

    async def get_order_item(self, order_item_id: uuid.UUID) -> Optional[OrderItem]:
        async with self._guard("get_order_item", order_item_id=str(order_item_id)):
            return await self.session.get(
                OrderItem, order_item_id, populate_existing=True
            )

    async def get_partner(self, partner_id: uuid.UUID) -> Optional[DeliveryPartner]:
        async with self._guard("get_partner", partner_id=str(partner_id)):
            return await self.session.get(
                DeliveryPartner, partner_id, populate_existing=True
            )

    async def get_active_assignment(
        self, order_id: uuid.UUID
    ) -> Optional[DeliveryAssignment]:
        """
        Get the order's active (not cancelled or failed) assignment.

        Args:
            order_id: Order identifier

        Returns:
            The assignment if one exists, None otherwise
        """
        async with self._guard("get_active_assignment", order_id=str(order_id)):
            result = await self.session.execute(
                select(DeliveryAssignment)
                .where(
                    DeliveryAssignment.order_id == order_id,
                    DeliveryAssignment.status.not_in(_INACTIVE),
                )
                .execution_options(populate_existing=True)
            )
            return result.scalars().first()

    async def get_partner_assignment(
        self, order_id: uuid.UUID, partner_id: uuid.UUID
    ) -> Optional[DeliveryAssignment]:
        """Get the active assignment of ``order_id`` held by ``partner_id``."""
        async with self._guard(
            "get_partner_assignment",
            order_id=str(order_id),
            partner_id=str(partner_id),
        ):
            result = await self.session.execute(
                select(DeliveryAssignment)
                .where(
                    DeliveryAssignment.order_id == order_id,
                    DeliveryAssignment.delivery_partner_id == partner_id,
                    DeliveryAssignment.status.not_in(_INACTIVE),
                )
                .execution_options(populate_existing=True)
            )
            return result.scalars().first()

    async def get_latest_assignment(
        self, order_id: uuid.UUID
    ) -> Optional[DeliveryAssignment]:
        """Most recent assignment of an order regardless of status."""
        async with self._guard("get_latest_assignment", order_id=str(order_id)):
            result = await self.session.execute(
                select(DeliveryAssignment)
                .where(DeliveryAssignment.order_id == order_id)
                .order_by(DeliveryAssignment.assigned_at.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            )
            return result.scalars().first()

    async def get_pending_claim(
        self, order_id: uuid.UUID
    ) -> Optional[PendingDeliveryClaim]:
        async with self._guard("get_pending_claim", order_id=str(order_id)):
            result = await self.session.execute(
                select(PendingDeliveryClaim)
                .where(PendingDeliveryClaim.order_id == order_id)
                .execution_options(populate_existing=True)
            )
            return result.scalars().first()

    async def get_cancellation(
        self, order_id: uuid.UUID
    ) -> Optional[OrderCancellation]:
        async with self._guard("get_cancellation", order_id=str(order_id)):
            result = await self.session.execute(
                select(OrderCancellation).where(OrderCancellation.order_id == order_id)
            )
            return result.scalars().first()

    async def list_dispatchable_partners(self) -> list[DeliveryPartner]:
        """
        List partners that are available and active.

        Returned unordered; ranking is applied by the allocator.
        """
        async with self._guard("list_dispatchable_partners"):
            result = await self.session.execute(
                select(DeliveryPartner).where(
                    DeliveryPartner.is_available.is_(True),
                    DeliveryPartner.is_active.is_(True),
                ).execution_options(populate_existing=True)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    async def transition_order(
        self,
        order_id: uuid.UUID,
        expected: Iterable[str],
        new_status: str,
        **values: Any,
    ) -> bool:
        """
        Move an order to ``new_status`` only if its status is still expected.

        Args:
            order_id: Order identifier
            expected: Statuses the order must be in at write time
            new_status: Status to write
            **values: Extra columns to set (milestone timestamps, reason)

        Returns:
            True if the order matched and was updated
        """
        expected = list(expected)
        async with self._guard(
            "transition_order",
            order_id=str(order_id),
            new_status=new_status,
        ):
            result = await self.session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status.in_(expected))
                .values(status=new_status, **values)
                .execution_options(synchronize_session=False)
            )
            matched = result.rowcount > 0

        logger.debug(
            "Order transition attempted",
            order_id=str(order_id),
            expected=expected,
            new_status=new_status,
            matched=matched,
        )
        return matched

    async def transition_assignment(
        self,
        assignment_id: uuid.UUID,
        expected: Iterable[AssignmentStatus],
        new_status: AssignmentStatus,
        **values: Any,
    ) -> bool:
        """Compare-and-swap an assignment's status; True if it matched."""
        async with self._guard(
            "transition_assignment",
            assignment_id=str(assignment_id),
            new_status=new_status.value,
        ):
            result = await self.session.execute(
                update(DeliveryAssignment)
                .where(
                    DeliveryAssignment.id == assignment_id,
                    DeliveryAssignment.status.in_([s.value for s in expected]),
                )
                .values(status=new_status.value, **values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def insert_assignment(self, **fields: Any) -> DeliveryAssignment:
        """
        Insert a delivery assignment.

        The insert runs in a savepoint so a uniqueness violation leaves the
        surrounding transaction usable.

        Raises:
            AssignmentConflictError: If the order already has an active assignment
        """
        assignment = DeliveryAssignment(**fields)
        order_id = str(fields.get("order_id"))

        try:
            async with self.session.begin_nested():
                self.session.add(assignment)
                await self.session.flush()
        except IntegrityError as e:
            logger.warning(
                "Assignment insert rejected by uniqueness rule",
                order_id=order_id,
                error=str(e.orig),
            )
            raise AssignmentConflictError(
                "Order already has an active delivery assignment",
                order_id=order_id,
            ) from e
        except SQLAlchemyError as e:
            logger.error(
                "Assignment insert failed",
                order_id=order_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise DeliveryRepositoryError(
                "Database error during insert_assignment",
                order_id=order_id,
                error=str(e),
            ) from e

        logger.info(
            "Delivery assignment created",
            assignment_id=str(assignment.id),
            order_id=order_id,
            partner_id=str(assignment.delivery_partner_id),
            status=assignment.status,
        )
        return assignment

    async def insert_pending_claim(self, **fields: Any) -> PendingDeliveryClaim:
        """
        Record an order waiting for a partner to claim it.

        Raises:
            DuplicateRecordError: If the order already has a pending claim
        """
        claim = PendingDeliveryClaim(**fields)
        order_id = str(fields.get("order_id"))

        try:
            async with self.session.begin_nested():
                self.session.add(claim)
                await self.session.flush()
        except IntegrityError as e:
            raise DuplicateRecordError(
                "Order already has a pending delivery claim",
                order_id=order_id,
            ) from e
        except SQLAlchemyError as e:
            raise DeliveryRepositoryError(
                "Database error during insert_pending_claim",
                order_id=order_id,
                error=str(e),
            ) from e

        logger.info("Pending delivery claim recorded", order_id=order_id)
        return claim

    async def mark_claim_claimed(
        self, claim_id: uuid.UUID, partner_id: uuid.UUID
    ) -> bool:
        """Stamp a pending claim as taken; False if someone took it first."""
        async with self._guard("mark_claim_claimed", claim_id=str(claim_id)):
            result = await self.session.execute(
                update(PendingDeliveryClaim)
                .where(
                    PendingDeliveryClaim.id == claim_id,
                    PendingDeliveryClaim.claimed_at.is_(None),
                )
                .values(claimed_at=utcnow(), claimed_by_partner_id=partner_id)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def reopen_pending_claim(self, claim_id: uuid.UUID, **fields: Any) -> bool:
        """
        Put a taken claim back up for grabs with fresh values.

        Only matches a claim that has been claimed, so an open claim is never
        overwritten.
        """
        async with self._guard("reopen_pending_claim", claim_id=str(claim_id)):
            result = await self.session.execute(
                update(PendingDeliveryClaim)
                .where(
                    PendingDeliveryClaim.id == claim_id,
                    PendingDeliveryClaim.claimed_at.is_not(None),
                )
                .values(claimed_at=None, claimed_by_partner_id=None, **fields)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def insert_cancellation(self, **fields: Any) -> OrderCancellation:
        """
        Write the cancellation record of an order.

        Raises:
            DuplicateRecordError: If the order was already cancelled
        """
        cancellation = OrderCancellation(**fields)
        order_id = str(fields.get("order_id"))

        try:
            async with self.session.begin_nested():
                self.session.add(cancellation)
                await self.session.flush()
        except IntegrityError as e:
            raise DuplicateRecordError(
                "Order already has a cancellation record",
                order_id=order_id,
            ) from e
        except SQLAlchemyError as e:
            raise DeliveryRepositoryError(
                "Database error during insert_cancellation",
                order_id=order_id,
                error=str(e),
            ) from e

        return cancellation

    async def update_partner(self, partner_id: uuid.UUID, **values: Any) -> bool:
        """Set partner columns by id; False if the partner does not exist."""
        async with self._guard(
            "update_partner", partner_id=str(partner_id), fields=sorted(values)
        ):
            result = await self.session.execute(
                update(DeliveryPartner)
                .where(DeliveryPartner.id == partner_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def record_completed_delivery(self, partner_id: uuid.UUID) -> None:
        """Increment the partner's delivery counters in place."""
        async with self._guard("record_completed_delivery", partner_id=str(partner_id)):
            await self.session.execute(
                update(DeliveryPartner)
                .where(DeliveryPartner.id == partner_id)
                .values(
                    total_deliveries=DeliveryPartner.total_deliveries + 1,
                    successful_deliveries=DeliveryPartner.successful_deliveries + 1,
                )
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # List queries
    # ------------------------------------------------------------------

    async def list_available_orders(self, limit: int = 50) -> list[Order]:
        """
        Orders open for delivery with no active assignment, newest first.

        Args:
            limit: Maximum number of orders to return
        """
        active_assignment = exists().where(
            and_(
                DeliveryAssignment.order_id == Order.id,
                DeliveryAssignment.status.not_in(_INACTIVE),
            )
        )
        async with self._guard("list_available_orders", limit=limit):
            result = await self.session.execute(
                select(Order)
                .where(
                    Order.status.in_([s.value for s in AVAILABLE_ORDER_STATUSES]),
                    ~active_assignment,
                )
                .order_by(Order.created_at.desc())
                .limit(limit)
                .execution_options(populate_existing=True)
            )
            return list(result.scalars().all())

    async def list_partner_assignments(
        self,
        partner_id: uuid.UUID,
        statuses: Iterable[AssignmentStatus],
    ) -> list[tuple[DeliveryAssignment, Order]]:
        """Partner's assignments in ``statuses`` with their orders, newest first."""
        async with self._guard("list_partner_assignments", partner_id=str(partner_id)):
            result = await self.session.execute(
                select(DeliveryAssignment, Order)
                .join(Order, Order.id == DeliveryAssignment.order_id)
                .where(
                    DeliveryAssignment.delivery_partner_id == partner_id,
                    DeliveryAssignment.status.in_([s.value for s in statuses]),
                )
                .order_by(DeliveryAssignment.assigned_at.desc())
                .execution_options(populate_existing=True)
            )
            return [(row[0], row[1]) for row in result.all()]

    async def list_delivery_history(
        self,
        partner_id: uuid.UUID,
        offset: int,
        limit: int,
    ) -> tuple[list[tuple[DeliveryAssignment, Order]], int]:
        """
        Page through a partner's delivered assignments, newest first.

        Returns:
            Tuple of (rows, total delivered count)
        """
        delivered = and_(
            DeliveryAssignment.delivery_partner_id == partner_id,
            DeliveryAssignment.status == AssignmentStatus.DELIVERED.value,
        )
        async with self._guard("list_delivery_history", partner_id=str(partner_id)):
            total = await self.session.scalar(
                select(func.count()).select_from(DeliveryAssignment).where(delivered)
            )
            result = await self.session.execute(
                select(DeliveryAssignment, Order)
                .join(Order, Order.id == DeliveryAssignment.order_id)
                .where(delivered)
                .order_by(DeliveryAssignment.delivered_at.desc())
                .offset(offset)
                .limit(limit)
                .execution_options(populate_existing=True)
            )
            rows = [(row[0], row[1]) for row in result.all()]
        return rows, int(total or 0)

    async def get_pending_claims(
        self, order_ids: Sequence[uuid.UUID]
    ) -> dict[uuid.UUID, PendingDeliveryClaim]:
        if not order_ids:
            return {}
        async with self._guard("get_pending_claims", order_count=len(order_ids)):
            result = await self.session.execute(
                select(PendingDeliveryClaim).where(
                    PendingDeliveryClaim.order_id.in_(list(order_ids)),
                    PendingDeliveryClaim.claimed_at.is_(None),
                ).execution_options(populate_existing=True)
            )
            return {claim.order_id: claim for claim in result.scalars().all()}

    async def get_display_names(
        self,
        customer_ids: Iterable[Optional[uuid.UUID]],
        vendor_ids: Iterable[Optional[uuid.UUID]],
    ) -> tuple[dict[uuid.UUID, Customer], dict[uuid.UUID, Vendor]]:
        """
        Load customer and vendor display records.

        Runs in a savepoint: a failed lookup raises DeliveryRepositoryError
        but leaves the caller's transaction usable, so list views can fall
        back to placeholders.
        """
        customer_ids = {cid for cid in customer_ids if cid}
        vendor_ids = {vid for vid in vendor_ids if vid}

        async with self._guard(
            "get_display_names",
            customer_count=len(customer_ids),
            vendor_count=len(vendor_ids),
        ):
            async with self.session.begin_nested():
                customers: dict[uuid.UUID, Customer] = {}
                vendors: dict[uuid.UUID, Vendor] = {}
                if customer_ids:
                    result = await self.session.execute(
                        select(Customer).where(Customer.id.in_(customer_ids))
                    )
                    customers = {c.id: c for c in result.scalars().all()}
                if vendor_ids:
                    result = await self.session.execute(
                        select(Vendor).where(Vendor.id.in_(vendor_ids))
                    )
                    vendors = {v.id: v for v in result.scalars().all()}
        return customers, vendors
