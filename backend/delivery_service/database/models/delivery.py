"""
Delivery assignment, pending claim and cancellation models.

Uniqueness rules that keep concurrent callers from corrupting delivery state
are declared here and enforced by the database:

- at most one active (not cancelled or failed) assignment per order, through
  a partial unique index;
- at most one pending claim per order;
- at most one cancellation record per order.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from delivery_service.database.base import BaseModel

ACTIVE_ASSIGNMENT_PREDICATE = "status NOT IN ('cancelled', 'failed')"


class DeliveryAssignment(BaseModel):
    """
    Link between one order and the delivery partner fulfilling it.

    Created with both OTPs already generated. Pickup and delivery are
    confirmed by conditional updates that match the stored OTP, so the
    verification flags and timestamps are written at most once.

    Attributes:
        order_id: Order being delivered
        delivery_partner_id: Partner holding the assignment
        order_item_id: Line item that triggered the allocation
        vendor_id: Vendor the partner collects from
        status: Assignment lifecycle status
        priority: normal or urgent
        pickup_otp: Code the vendor reads out at handover
        delivery_otp: Code the customer reads out at the door
        delivery_fee: Fee paid to the partner for this delivery
        failure_reason: Reason recorded on cancellation or failure
    """

    __tablename__ = "delivery_assignments"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    delivery_partner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("delivery_partners.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    order_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("order_items.id", ondelete="SET NULL"),
        nullable=True,
    )

    vendor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("vendors.id", ondelete="SET NULL"),
        nullable=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="assigned",
        index=True,
    )

    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="normal")

    pickup_otp: Mapped[str] = mapped_column(String(10), nullable=False)
    delivery_otp: Mapped[str] = mapped_column(String(10), nullable=False)

    pickup_otp_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    pickup_otp_verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivery_otp_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    delivery_otp_verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    accepted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    delivery_fee: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    __table_args__ = (
        Index(
            "uq_delivery_assignments_active_order",
            "order_id",
            unique=True,
            postgresql_where=text(ACTIVE_ASSIGNMENT_PREDICATE),
            sqlite_where=text(ACTIVE_ASSIGNMENT_PREDICATE),
        ),
        Index(
            "ix_delivery_assignments_partner_status",
            "delivery_partner_id",
            "status",
        ),
        CheckConstraint(
            "status IN ('assigned', 'accepted', 'picked_up', 'delivered', "
            "'cancelled', 'failed')",
            name="ck_delivery_assignments_status",
        ),
        CheckConstraint(
            "priority IN ('normal', 'urgent')",
            name="ck_delivery_assignments_priority",
        ),
    )


class PendingDeliveryClaim(BaseModel):
    """
    Order waiting for a partner to claim it.

    Written when allocation finds no available partner. Holds the OTPs that
    were generated at allocation time so that a later claim, or a repeated
    allocation request, reuses them instead of issuing new ones.
    """

    __tablename__ = "pending_delivery_claims"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    order_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("order_items.id", ondelete="SET NULL"),
        nullable=True,
    )

    vendor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("vendors.id", ondelete="SET NULL"),
        nullable=True,
    )

    customer_pincode: Mapped[Optional[str]] = mapped_column(String(12), nullable=True)

    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="normal")

    pickup_otp: Mapped[str] = mapped_column(String(10), nullable=False)
    delivery_otp: Mapped[str] = mapped_column(String(10), nullable=False)

    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    claimed_by_partner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("delivery_partners.id", ondelete="SET NULL"),
        nullable=True,
    )

    @property
    def is_claimed(self) -> bool:
        return self.claimed_at is not None


class OrderCancellation(BaseModel):
    """Cancellation record written once per cancelled order; never updated."""

    __tablename__ = "order_cancellations"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    delivery_partner_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("delivery_partners.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    reason: Mapped[str] = mapped_column(String(40), nullable=False)

    additional_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    cancelled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
