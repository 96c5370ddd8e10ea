"""
Delivery reconciliation: partner allocation, claims, OTP-gated handoffs
and cancellations.
"""

from delivery_service.services.delivery.service import DeliveryService

__all__ = ["DeliveryService"]
