"""
ORM models for the tables the delivery service reads and writes.

Importing this package registers every model on ``Base.metadata``.
"""

from delivery_service.database.models.delivery import (
    DeliveryAssignment,
    OrderCancellation,
    PendingDeliveryClaim,
)
from delivery_service.database.models.delivery_partner import DeliveryPartner
from delivery_service.database.models.marketplace import Customer, Vendor
from delivery_service.database.models.order import Order, OrderItem

__all__ = [
    "Customer",
    "DeliveryAssignment",
    "DeliveryPartner",
    "Order",
    "OrderCancellation",
    "OrderItem",
    "PendingDeliveryClaim",
    "Vendor",
]
