"""
Repository layer for data access.

Repositories declare the entities the API lists and delegate every listing to
the shared query engine (src.query). ENTITIES and ENTITY_MODELS are the
registries used to wire the engine to the SQLAlchemy models.
"""

from .inventory import (  # noqa: F401
    ENTITIES,
    ENTITY_MODELS,
    InventoryTransactionRepository,
    LocationRepository,
    LotRepository,
)
