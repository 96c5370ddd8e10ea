"""
One-time codes gating pickup and delivery confirmation.

Codes are short numeric strings drawn uniformly from ``secrets``. They are
scoped to a single order and partner, so collisions across orders are
harmless. Verification happens in the database (see ``procedures``); this
module only generates codes, checks their shape before a round trip, and
reads codes parked in the legacy order-item notes field.
"""

import json
import secrets
from dataclasses import dataclass
from typing import Optional

from delivery_service.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_OTP_LENGTH = 6


@dataclass(frozen=True)
class OtpPair:
    """Pickup and delivery codes issued together for one order."""

    pickup_otp: str
    delivery_otp: str


def generate_otp(length: int = DEFAULT_OTP_LENGTH) -> str:
    """
    Generate a uniformly random numeric code.

    Args:
        length: Number of digits

    Returns:
        Zero-padded string of exactly ``length`` digits

    Raises:
        ValueError: If length is not positive
    """
    if length < 1:
        raise ValueError("OTP length must be positive")
    return str(secrets.randbelow(10**length)).zfill(length)


def generate_otp_pair(length: int = DEFAULT_OTP_LENGTH) -> OtpPair:
    """Issue two independent codes for pickup and delivery."""
    return OtpPair(pickup_otp=generate_otp(length), delivery_otp=generate_otp(length))


def is_well_formed_otp(candidate: Optional[str], length: int = DEFAULT_OTP_LENGTH) -> bool:
    """Check that a code entered by a user could possibly match."""
    return (
        isinstance(candidate, str)
        and len(candidate) == length
        and candidate.isascii()
        and candidate.isdigit()
    )


def parse_legacy_notes(
    notes: Optional[str], length: int = DEFAULT_OTP_LENGTH
) -> Optional[OtpPair]:
    """
    Recover codes from an order item's legacy notes field.

    Older allocations stored ``{"pending_assignment": true, "pickup_otp":
    "...", "delivery_otp": "..."}`` in the notes text. Anything else,
    including a corrupt payload, yields None.
    """
    if not notes:
        return None

    try:
        payload = json.loads(notes)
    except (TypeError, ValueError):
        logger.debug("Order item notes are not JSON", notes_length=len(notes))
        return None

    if not isinstance(payload, dict) or not payload.get("pending_assignment"):
        return None

    pickup = payload.get("pickup_otp")
    delivery = payload.get("delivery_otp")
    if not (is_well_formed_otp(pickup, length) and is_well_formed_otp(delivery, length)):
        logger.warning("Legacy notes carry malformed OTPs")
        return None

    return OtpPair(pickup_otp=pickup, delivery_otp=delivery)
