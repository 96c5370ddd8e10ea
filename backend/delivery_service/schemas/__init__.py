"""Pydantic request and response schemas for the delivery API."""
