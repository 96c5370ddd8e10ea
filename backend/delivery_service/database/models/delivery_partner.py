"""
Delivery partner model.

Partners are read by the allocator to find candidates and update their own
availability and location. Delivery counters are bumped when the partner
confirms a delivery with the customer's OTP.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from delivery_service.database.base import BaseModel, JSONType


class DeliveryPartner(BaseModel):
    """
    Delivery partner profile and dispatch state.

    Attributes:
        full_name: Partner display name
        phone: Contact number shown to vendors and customers
        is_available: Partner is online and accepting work
        is_active: Account is enabled
        is_verified: Documents verified by operations
        current_latitude: Last reported latitude
        current_longitude: Last reported longitude
        service_pincodes: Postal codes the partner serves
        rating: Average customer rating (0-5)
        total_deliveries: Completed deliveries count
        successful_deliveries: Deliveries confirmed with OTP
    """

    __tablename__ = "delivery_partners"

    full_name: Mapped[str] = mapped_column(String(200), nullable=False)

    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    current_latitude: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=9, scale=6), nullable=True
    )
    current_longitude: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=9, scale=6), nullable=True
    )

    service_pincodes: Mapped[list[str]] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Postal codes this partner serves",
    )

    rating: Mapped[Decimal] = mapped_column(
        Numeric(precision=3, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    total_deliveries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_deliveries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    __table_args__ = (
        CheckConstraint("rating >= 0 AND rating <= 5", name="ck_partner_rating_range"),
        Index(
            "ix_delivery_partners_dispatchable",
            "is_available",
            "is_active",
        ),
    )

    @property
    def is_dispatchable(self) -> bool:
        """Whether the partner may receive or claim a new assignment."""
        return self.is_available and self.is_active

    def serves(self, pincode: Optional[str]) -> bool:
        """Whether ``pincode`` is in the partner's service area."""
        return bool(pincode) and str(pincode) in {
            str(code) for code in (self.service_pincodes or [])
        }
