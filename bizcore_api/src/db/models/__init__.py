"""
ORM models for the entities served by the listing endpoints.

Importing this package registers every mapped class with the Base metadata
for Alembic and runtime usage.
"""

from .inventory import (  # noqa: F401
    Location,
    Lot,
    InventoryTransaction,
)
