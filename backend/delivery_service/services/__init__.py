"""Business logic services for the delivery service."""
