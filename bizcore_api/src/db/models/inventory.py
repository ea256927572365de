from __future__ import annotations

from datetime import date
from typing import Optional
from uuid import UUID as PyUUID

from sqlalchemy import Date, ForeignKey, Index, Numeric, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.db.base import Base, SoftDeleteMixin, TenantMixin, TimestampMixin, UUIDPkMixin


class Location(UUIDPkMixin, TenantMixin, TimestampMixin, SoftDeleteMixin, Base):
    """Inventory storage location (e.g., warehouse, shelf, bin)."""
    __tablename__ = "locations"

    code: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parent_id: Mapped[Optional[PyUUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("locations.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (Index("ix_locations_tenant_code", "tenant_id", "code"),)


class Lot(UUIDPkMixin, TenantMixin, TimestampMixin, SoftDeleteMixin, Base):
    """Inventory lot/batch representing a quantity of an item at a location."""
    __tablename__ = "lots"

    lot_no: Mapped[str] = mapped_column(Text, nullable=False)
    item_sku: Mapped[str] = mapped_column(Text, nullable=False)
    uom: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quantity_on_hand: Mapped[Optional[float]] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    expiration_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    status: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location_id: Mapped[Optional[PyUUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("locations.id", ondelete="SET NULL"), nullable=True
    )
    attributes: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict, server_default="{}")

    __table_args__ = (
        Index("ix_lots_tenant_status", "tenant_id", "status"),
        Index("ix_lots_tenant_created", "tenant_id", "created_at", "id"),
    )


class InventoryTransaction(UUIDPkMixin, TenantMixin, TimestampMixin, SoftDeleteMixin, Base):
    """Movement of inventory quantity between locations/lots with a reason."""
    __tablename__ = "inventory_transactions"

    lot_id: Mapped[Optional[PyUUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("lots.id", ondelete="SET NULL"), nullable=True
    )
    from_location_id: Mapped[Optional[PyUUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("locations.id", ondelete="SET NULL"), nullable=True
    )
    to_location_id: Mapped[Optional[PyUUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("locations.id", ondelete="SET NULL"), nullable=True
    )
    quantity: Mapped[float] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=False)
    uom: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reason_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ref_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # e.g., WO/PO/SO
    ref_id: Mapped[Optional[PyUUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    attributes: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict, server_default="{}")

    __table_args__ = (Index("ix_inventory_transactions_tenant_created", "tenant_id", "created_at", "id"),)
