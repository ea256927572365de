"""Inventory schema with multi-tenancy, soft delete and RLS.

- locations
- lots
- inventory_transactions

Every table carries tenant_id (defaulting to the app.tenant_id GUC), is_deleted
and deleted_at, and a tenant isolation policy. Composite (tenant_id, created_at, id)
indexes back the default listing order and keyset pagination.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3c5d9e1a7b20"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TENANT_DEFAULT = sa.text("current_setting('app.tenant_id', true)::uuid")
UUID_DEFAULT = sa.text("uuid_generate_v4()")
NOW = sa.text("now()")
JSONB_EMPTY = sa.text("'{}'::jsonb")

TABLES = ("locations", "lots", "inventory_transactions")


def _common_columns() -> list:
    return [
        sa.Column("id", sa.UUID(), primary_key=True, server_default=UUID_DEFAULT),
        sa.Column("tenant_id", sa.UUID(), nullable=False, server_default=TENANT_DEFAULT),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("is_deleted", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    ]


def _enable_rls_with_policy(table: str) -> None:
    op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;")
    op.execute(
        f"""
        CREATE POLICY {table}_tenant_isolation ON {table}
        USING (tenant_id = current_setting('app.tenant_id', true)::uuid)
        WITH CHECK (tenant_id = current_setting('app.tenant_id', true)::uuid);
        """
    )


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp";')

    op.create_table(
        "locations",
        *_common_columns(),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("type", sa.Text(), nullable=True),
        sa.Column("parent_id", sa.UUID(), nullable=True),
        sa.ForeignKeyConstraint(["parent_id"], ["locations.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_locations_tenant_code", "locations", ["tenant_id", "code"])

    op.create_table(
        "lots",
        *_common_columns(),
        sa.Column("lot_no", sa.Text(), nullable=False),
        sa.Column("item_sku", sa.Text(), nullable=False),
        sa.Column("uom", sa.Text(), nullable=True),
        sa.Column("quantity_on_hand", sa.Numeric(18, 6), nullable=True),
        sa.Column("expiration_date", sa.Date(), nullable=True),
        sa.Column("status", sa.Text(), nullable=True),
        sa.Column("location_id", sa.UUID(), nullable=True),
        sa.Column("attributes", postgresql.JSONB(), server_default=JSONB_EMPTY, nullable=False),
        sa.ForeignKeyConstraint(["location_id"], ["locations.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_lots_tenant_status", "lots", ["tenant_id", "status"])
    op.create_index("ix_lots_tenant_created", "lots", ["tenant_id", "created_at", "id"])

    op.create_table(
        "inventory_transactions",
        *_common_columns(),
        sa.Column("lot_id", sa.UUID(), nullable=True),
        sa.Column("from_location_id", sa.UUID(), nullable=True),
        sa.Column("to_location_id", sa.UUID(), nullable=True),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("uom", sa.Text(), nullable=True),
        sa.Column("reason_code", sa.Text(), nullable=True),
        sa.Column("ref_type", sa.Text(), nullable=True),
        sa.Column("ref_id", sa.UUID(), nullable=True),
        sa.Column("attributes", postgresql.JSONB(), server_default=JSONB_EMPTY, nullable=False),
        sa.ForeignKeyConstraint(["lot_id"], ["lots.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["from_location_id"], ["locations.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["to_location_id"], ["locations.id"], ondelete="SET NULL"),
    )
    op.create_index(
        "ix_inventory_transactions_tenant_created",
        "inventory_transactions",
        ["tenant_id", "created_at", "id"],
    )

    for tbl in TABLES:
        op.execute(f"CREATE INDEX IF NOT EXISTS ix_{tbl}_tenant_id ON {tbl} (tenant_id);")
        _enable_rls_with_policy(tbl)


def downgrade() -> None:
    for tbl in reversed(TABLES):
        op.execute(f"DROP POLICY IF EXISTS {tbl}_tenant_isolation ON {tbl};")
        op.execute(f"ALTER TABLE {tbl} DISABLE ROW LEVEL SECURITY;")

    op.drop_index("ix_inventory_transactions_tenant_created", table_name="inventory_transactions")
    op.drop_table("inventory_transactions")
    op.drop_index("ix_lots_tenant_created", table_name="lots")
    op.drop_index("ix_lots_tenant_status", table_name="lots")
    op.drop_table("lots")
    op.drop_index("ix_locations_tenant_code", table_name="locations")
    op.drop_table("locations")
