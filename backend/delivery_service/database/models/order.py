"""
Order and order item models consumed by the delivery reconciler.

Orders are created by checkout, which this service does not own. The
reconciler only moves an order through its delivery-related statuses and
stamps the matching milestone timestamps; orders are never deleted.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from delivery_service.database.base import BaseModel, JSONType


class Order(BaseModel):
    """
    Customer order as stored by the marketplace.

    ``status`` is kept as plain text: the store accepts any value from the
    marketplace's order status set, and values outside that set must still
    load so the status mapper can pass them through.

    Attributes:
        order_number: Human-readable order number
        customer_id: Customer who placed the order
        total_amount: Monetary total of the order
        status: Current order status
        payment_method: Payment method chosen at checkout
        delivery_address: Structured address, carries ``pincode``
        delivery_assigned_at: When a partner was attached to the order
        shipped_at: When the order left the vendor
        picked_up_at: When the partner confirmed pickup with the OTP
        delivered_at: When the partner confirmed delivery with the OTP
        cancelled_at: When the order was cancelled
        cancellation_reason: Reason recorded at cancellation
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Human-readable order number",
    )

    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Customer who placed the order",
    )

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Total order amount",
    )

    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="Current order status",
    )

    payment_method: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Payment method chosen at checkout",
    )

    delivery_address: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Structured delivery address",
    )

    delivery_assigned_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    shipped_at: Mapped[Optional[datetime]] = mapped_column(
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

    cancellation_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Reason recorded at cancellation",
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.created_at",
    )

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
    )

    @property
    def pincode(self) -> Optional[str]:
        """Postal code of the delivery address, if recorded."""
        value = (self.delivery_address or {}).get("pincode")
        return str(value) if value else None

    @property
    def collection_required(self) -> bool:
        """Whether the partner must collect payment at the door."""
        return (self.payment_method or "").lower() in ("cash on delivery", "cod")


class OrderItem(BaseModel):
    """
    Line item of an order, fulfilled by a single vendor.

    ``notes`` is a free-text field; older deployments parked pending
    pickup OTPs in it as JSON, which the reconciler can still read.
    """

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    vendor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("vendors.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    product_name: Mapped[str] = mapped_column(String(255), nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    line_total: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    item_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="pending",
        comment="Fulfilment status of this line item",
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    vendor_confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")
