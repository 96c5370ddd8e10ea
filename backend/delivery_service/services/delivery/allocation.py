"""
Partner ranking and fee rules used when allocating a delivery.

Ranking order:
1. partners whose service pincodes include the delivery pincode;
2. higher rating;
3. fewer completed deliveries (spreads work across partners);
4. partner id, so equal candidates always sort the same way.
"""

from decimal import Decimal
from typing import Optional, Sequence

from delivery_service.core.config import Settings
from delivery_service.database.models.delivery_partner import DeliveryPartner
from delivery_service.services.delivery.enums import ClaimPriority


def rank_candidates(
    partners: Sequence[DeliveryPartner],
    pincode: Optional[str],
) -> list[DeliveryPartner]:
    """
    Order dispatchable partners from best to worst fit.

    Args:
        partners: Available, active partners
        pincode: Delivery postal code of the order

    Returns:
        New list, best candidate first
    """

    def sort_key(partner: DeliveryPartner):
        return (
            0 if partner.serves(pincode) else 1,
            -(partner.rating or Decimal("0")),
            partner.total_deliveries or 0,
            str(partner.id),
        )

    return sorted(partners, key=sort_key)


def compute_delivery_fee(priority: ClaimPriority, settings: Settings) -> Decimal:
    """Fee paid to the partner: base fee plus the urgent surcharge."""
    fee = settings.delivery_base_fee
    if priority == ClaimPriority.URGENT:
        fee += settings.urgent_delivery_surcharge
    return fee.quantize(Decimal("0.01"))
