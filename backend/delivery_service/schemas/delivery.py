"""
Delivery API Pydantic schemas for request validation.

Responses use the shared ``Envelope``; only request bodies are modelled
here. Business rules (allowed reasons, OTP shape, coordinate ranges) are
enforced by the service so every caller sees the same errors.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from delivery_service.core.result import Envelope
from delivery_service.services.delivery.enums import ClaimPriority

__all__ = [
    "AssignmentCreateRequest",
    "AvailabilityUpdate",
    "CancellationRequest",
    "Envelope",
    "ItemStatusUpdateRequest",
    "LocationUpdate",
    "OtpConfirmRequest",
]


class AssignmentCreateRequest(BaseModel):
    """Request to allocate a delivery partner for a ready order item."""

    model_config = ConfigDict(str_strip_whitespace=True)

    order_item_id: UUID = Field(..., description="Line item that became ready")
    order_id: UUID = Field(..., description="Order to deliver")
    vendor_id: UUID = Field(..., description="Vendor the partner collects from")
    pincode: Optional[str] = Field(
        None,
        max_length=12,
        description="Delivery postal code; defaults to the order address",
    )
    priority: ClaimPriority = Field(
        default=ClaimPriority.NORMAL,
        description="Delivery urgency",
    )

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, v):
        """Accept priority in any case."""
        if isinstance(v, str):
            return v.strip().lower()
        return v


class OtpConfirmRequest(BaseModel):
    """One-time code read out by the vendor or the customer."""

    model_config = ConfigDict(str_strip_whitespace=True)

    otp: str = Field(..., min_length=1, max_length=16, description="One-time code")


class CancellationRequest(BaseModel):
    """Partner cancellation of an order in delivery."""

    model_config = ConfigDict(str_strip_whitespace=True)

    reason: str = Field(
        ...,
        min_length=1,
        max_length=60,
        description="Cancellation reason value or label",
    )
    additional_details: Optional[str] = Field(
        None,
        max_length=1000,
        description="Free text; required when the reason is 'Other'",
    )


class ItemStatusUpdateRequest(BaseModel):
    """New status for a single order item."""

    model_config = ConfigDict(str_strip_whitespace=True)

    status: str = Field(..., min_length=1, max_length=32, description="New item status")


class AvailabilityUpdate(BaseModel):
    is_available: bool = Field(..., description="Whether the partner takes new orders")


class LocationUpdate(BaseModel):
    """Partner's current coordinates."""

    latitude: float = Field(..., allow_inf_nan=False, description="Latitude in degrees")
    longitude: float = Field(..., allow_inf_nan=False, description="Longitude in degrees")
