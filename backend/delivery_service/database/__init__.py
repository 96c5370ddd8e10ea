"""
Database package: declarative base, connection management and models.

Import submodules explicitly when needed to avoid circular imports.
"""
