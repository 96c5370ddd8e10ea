"""
Tests for partner ranking and delivery fees.
"""

import uuid
from decimal import Decimal

from delivery_service.core.config import Settings
from delivery_service.database.models.delivery_partner import DeliveryPartner
from delivery_service.services.delivery.allocation import (
    compute_delivery_fee,
    rank_candidates,
)
from delivery_service.services.delivery.enums import ClaimPriority


def make_partner(
    rating: str = "4.00",
    total_deliveries: int = 0,
    service_pincodes=None,
    partner_id: uuid.UUID = None,
) -> DeliveryPartner:
    return DeliveryPartner(
        id=partner_id or uuid.uuid4(),
        full_name="Partner",
        is_available=True,
        is_active=True,
        rating=Decimal(rating),
        total_deliveries=total_deliveries,
        service_pincodes=service_pincodes or [],
    )


class TestRankCandidates:
    """Tests for rank_candidates."""

    def test_service_area_beats_rating(self):
        local = make_partner(rating="3.00", service_pincodes=["560001"])
        remote = make_partner(rating="5.00", service_pincodes=["110001"])

        ranked = rank_candidates([remote, local], "560001")

        assert ranked[0] is local

    def test_higher_rating_first(self):
        low = make_partner(rating="3.50")
        high = make_partner(rating="4.90")

        assert rank_candidates([low, high], None) == [high, low]

    def test_fewer_deliveries_breaks_rating_tie(self):
        busy = make_partner(rating="4.50", total_deliveries=300)
        fresh = make_partner(rating="4.50", total_deliveries=3)

        assert rank_candidates([busy, fresh], "560001")[0] is fresh

    def test_full_tie_is_deterministic(self):
        a = make_partner(partner_id=uuid.UUID(int=1))
        b = make_partner(partner_id=uuid.UUID(int=2))

        assert rank_candidates([b, a], None) == [a, b]
        assert rank_candidates([a, b], None) == [a, b]

    def test_empty(self):
        assert rank_candidates([], "560001") == []

    def test_input_not_mutated(self):
        partners = [make_partner(rating="1.00"), make_partner(rating="5.00")]
        original = list(partners)

        rank_candidates(partners, None)

        assert partners == original


def test_normal_fee_is_base_fee():
    settings = Settings(delivery_base_fee=Decimal("30"), urgent_delivery_surcharge=Decimal("20"))
    assert compute_delivery_fee(ClaimPriority.NORMAL, settings) == Decimal("30.00")


def test_urgent_fee_adds_surcharge():
    settings = Settings(delivery_base_fee=Decimal("30"), urgent_delivery_surcharge=Decimal("20"))
    assert compute_delivery_fee(ClaimPriority.URGENT, settings) == Decimal("50.00")
