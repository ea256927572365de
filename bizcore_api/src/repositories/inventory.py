from __future__ import annotations

from typing import Any, Mapping, Optional

from src.db.models.inventory import InventoryTransaction, Location, Lot
from src.query.context import EntityDescriptor, QueryOptions, RelationDescriptor, SecurityContext
from src.query.ordering import SortKey
from src.query.pipeline import GroupStage, SortStage
from src.query.result import QueryResult
from .base import BaseRepository

LOCATION = EntityDescriptor(
    name="location",
    soft_delete_field="is_deleted",
    default_sort="code",
    search_fields=("code", "name"),
    allowed_sort_fields=("code", "name", "type", "created_at", "updated_at"),
    allowed_select_fields=("code", "name", "type", "parent_id"),
    relations={
        "parent": RelationDescriptor(entity="location", local_field="parent_id", select=("code", "name", "type")),
    },
)

LOT = EntityDescriptor(
    name="lot",
    soft_delete_field="is_deleted",
    search_fields=("lot_no", "item_sku"),
    allowed_sort_fields=(
        "lot_no",
        "item_sku",
        "status",
        "quantity_on_hand",
        "expiration_date",
        "created_at",
        "updated_at",
    ),
    allowed_select_fields=(
        "lot_no",
        "item_sku",
        "uom",
        "quantity_on_hand",
        "expiration_date",
        "status",
        "location_id",
        "attributes",
    ),
    relations={
        "location": RelationDescriptor(
            entity="location", local_field="location_id", select=("code", "name", "type", "parent_id")
        ),
    },
)

TRANSACTION = EntityDescriptor(
    name="inventory_transaction",
    soft_delete_field="is_deleted",
    search_fields=("reason_code", "ref_type"),
    allowed_sort_fields=("quantity", "reason_code", "ref_type", "created_at", "updated_at"),
    allowed_select_fields=(
        "lot_id",
        "from_location_id",
        "to_location_id",
        "quantity",
        "uom",
        "reason_code",
        "ref_type",
        "ref_id",
        "attributes",
    ),
    relations={
        "lot": RelationDescriptor(
            entity="lot", local_field="lot_id", select=("lot_no", "item_sku", "status", "location_id")
        ),
        "from_location": RelationDescriptor(entity="location", local_field="from_location_id", select=("code", "name")),
        "to_location": RelationDescriptor(entity="location", local_field="to_location_id", select=("code", "name")),
    },
)

# Entity registry shared by the engine, the field-type provider and the SQL backend.
ENTITIES: Mapping[str, EntityDescriptor] = {d.name: d for d in (LOCATION, LOT, TRANSACTION)}
ENTITY_MODELS: Mapping[str, type] = {
    LOCATION.name: Location,
    LOT.name: Lot,
    TRANSACTION.name: InventoryTransaction,
}

# Lots per status with the quantity they hold, largest groups first.
LOT_STATUS_PIPELINE = [
    GroupStage(
        by=("status",),
        accumulators={"count": ("count", None), "total_quantity": ("sum", "quantity_on_hand")},
    ),
    SortStage((SortKey("count", descending=True), SortKey("status"))),
]


class LocationRepository(BaseRepository):
    """Inventory locations (warehouses, shelves, bins)."""

    descriptor = LOCATION


class LotRepository(BaseRepository):
    """Repository for Lots (batches)."""

    descriptor = LOT

    # PUBLIC_INTERFACE
    async def status_breakdown(
        self,
        params: Optional[Mapping[str, Any]],
        security: SecurityContext,
        request_id: Optional[str] = None,
    ) -> QueryResult:
        """
        Count lots and sum quantity on hand per status.

        Client filters (e.g. item_sku, expiration_date[lt]) narrow the lots that
        are grouped; tenant and soft-delete scoping apply as for listings.
        """
        options = QueryOptions(pipeline=list(LOT_STATUS_PIPELINE), request_id=request_id)
        return await self.list(params, security, options)


class InventoryTransactionRepository(BaseRepository):
    """Repository for inventory transactions."""

    descriptor = TRANSACTION
