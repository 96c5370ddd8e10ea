"""
Customer and vendor profiles used for delivery list display fields.
"""

from typing import Any, Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from delivery_service.database.base import BaseModel, JSONType


class Customer(BaseModel):
    """Customer profile; only the fields a delivery partner needs to see."""

    __tablename__ = "customers"

    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)


class Vendor(BaseModel):
    """Vendor storefront; the pickup location for its order items."""

    __tablename__ = "vendors"

    business_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    address: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
