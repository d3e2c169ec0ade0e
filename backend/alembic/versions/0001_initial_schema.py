"""initial schema: master data, stock ledger, loans, transfers, audit

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy persiste le NOM des membres d'enum (pas la valeur)
ENUMS = {
    "role": ("admin", "operator", "viewer"),
    "movement_kind": ("entry", "adjustment", "loan_out", "loan_return", "transfer_out", "transfer_in"),
    "loan_status": ("open", "partially_returned", "returned", "overdue", "lost"),
    "transfer_status": ("pending", "approved", "in_transit", "completed", "cancelled"),
    "entry_status": ("pending", "completed"),
    "item_condition": ("new", "used", "damaged"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    for name, labels in ENUMS.items():
        postgresql.ENUM(*labels, name=name).create(bind, checkfirst=True)

    # ---------- MASTER DATA ----------
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("role", _enum("role"), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
    )
    op.create_table(
        "product_groups",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "products",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("code", sa.String(64), nullable=False, unique=True),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("unit", sa.String(16), nullable=False, server_default="UN"),
        sa.Column("group_id", sa.BigInteger(), sa.ForeignKey("product_groups.id", ondelete="SET NULL")),
        sa.Column("stock_current", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_requested", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_minimum", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_maximum", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost_price", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        sa.CheckConstraint("stock_current >= 0", name="ck_product_stock_current_nonneg"),
        sa.CheckConstraint("stock_requested >= 0", name="ck_product_stock_requested_nonneg"),
        sa.CheckConstraint("stock_minimum >= 0", name="ck_product_stock_minimum_nonneg"),
        sa.CheckConstraint("stock_maximum >= 0", name="ck_product_stock_maximum_nonneg"),
        sa.CheckConstraint("cost_price >= 0", name="ck_product_cost_price_nonneg"),
    )
    op.create_table(
        "suppliers",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("document", sa.String(32)),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(32)),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "collaborators",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("registration", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("department", sa.String(120)),
        sa.Column("manager", sa.String(200)),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_table(
        "locations",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("address", sa.String(255)),
        sa.Column("responsible", sa.String(200)),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    # ---------- INVENTORY ----------
    op.create_table(
        "stock_levels",
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quantity_reserved", sa.Integer(), nullable=False, server_default="0"),
        _ts("updated_at"),
        sa.CheckConstraint("quantity >= 0", name="ck_stock_quantity_nonneg"),
        sa.CheckConstraint("quantity_reserved >= 0", name="ck_stock_reserved_nonneg"),
        sa.CheckConstraint("quantity_reserved <= quantity", name="ck_stock_reserved_le_quantity"),
    )
    op.create_table(
        "stock_movements",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT")),
        sa.Column("kind", _enum("movement_kind"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("document_id", sa.BigInteger()),
        sa.Column("reference", sa.String(255)),
        _ts("created_at"),
        sa.CheckConstraint("quantity <> 0", name="ck_stock_movement_qty_nonzero"),
    )
    op.create_index("ix_stock_movements_product_id", "stock_movements", ["product_id"])
    op.create_index("ix_stock_movements_product_time", "stock_movements", ["product_id", "created_at"])
    op.create_index("ix_stock_movements_document", "stock_movements", ["document_id"])

    op.create_table(
        "stock_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("supplier_id", sa.BigInteger(), sa.ForeignKey("suppliers.id", ondelete="RESTRICT")),
        sa.Column("document_number", sa.String(64)),
        sa.Column("document_type", sa.String(32), nullable=False, server_default="INTERNAL"),
        sa.Column("location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("status", _enum("entry_status"), nullable=False),
        _ts("created_at"),
    )
    op.create_table(
        "stock_entry_items",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("entry_id", sa.BigInteger(), sa.ForeignKey("stock_entries.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity_requested", sa.Integer(), nullable=False),
        sa.Column("quantity_received", sa.Integer(), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("lot", sa.String(64)),
        sa.Column("expiry_date", sa.Date()),
        sa.CheckConstraint("quantity_received > 0", name="ck_entry_item_qty_pos"),
        sa.CheckConstraint("unit_cost >= 0", name="ck_entry_item_unit_cost_nonneg"),
    )
    op.create_index("ix_stock_entry_items_entry_id", "stock_entry_items", ["entry_id"])

    # ---------- LOANS ----------
    op.create_table(
        "loans",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column(
            "collaborator_id",
            sa.BigInteger(),
            sa.ForeignKey("collaborators.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("requested_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("authorized_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        _ts("issued_at"),
        sa.Column("due_date", sa.Date(), nullable=False),
        _ts("returned_at", nullable=True),
        sa.Column("status", _enum("loan_status"), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("responsibility_term", sa.Text()),
    )
    op.create_index("ix_loans_collaborator_id", "loans", ["collaborator_id"])
    op.create_index("ix_loans_status", "loans", ["status"])

    op.create_table(
        "loan_items",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("loan_id", sa.BigInteger(), sa.ForeignKey("loans.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("source_location_id", sa.BigInteger(), sa.ForeignKey("locations.id", ondelete="RESTRICT")),
        sa.Column("quantity_issued", sa.Integer(), nullable=False),
        sa.Column("quantity_returned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quantity_lost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("condition_out", _enum("item_condition"), nullable=False),
        sa.Column("condition_in", _enum("item_condition")),
        sa.Column("note_out", sa.Text()),
        sa.Column("note_in", sa.Text()),
        _ts("returned_at", nullable=True),
        sa.CheckConstraint("quantity_issued > 0", name="ck_loan_item_qty_pos"),
        sa.CheckConstraint("quantity_returned >= 0", name="ck_loan_item_returned_nonneg"),
        sa.CheckConstraint("quantity_lost >= 0", name="ck_loan_item_lost_nonneg"),
        sa.CheckConstraint(
            "quantity_returned + quantity_lost <= quantity_issued",
            name="ck_loan_item_settled_le_issued",
        ),
    )
    op.create_index("ix_loan_items_loan_id", "loan_items", ["loan_id"])

    # ---------- TRANSFERS ----------
    op.create_table(
        "transfers",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column(
            "source_location_id",
            sa.BigInteger(),
            sa.ForeignKey("locations.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "destination_location_id",
            sa.BigInteger(),
            sa.ForeignKey("locations.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("requested_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("approved_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("status", _enum("transfer_status"), nullable=False),
        _ts("requested_at"),
        _ts("approved_at", nullable=True),
        _ts("dispatched_at", nullable=True),
        _ts("completed_at", nullable=True),
        sa.Column("cancel_reason", sa.Text()),
        sa.Column("note", sa.Text()),
        sa.CheckConstraint(
            "source_location_id <> destination_location_id",
            name="ck_transfer_distinct_locations",
        ),
    )
    op.create_index("ix_transfers_status", "transfers", ["status"])

    op.create_table(
        "transfer_items",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("transfer_id", sa.BigInteger(), sa.ForeignKey("transfers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity_requested", sa.Integer(), nullable=False),
        sa.Column("quantity_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quantity_received", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("quantity_requested > 0", name="ck_transfer_item_qty_pos"),
        sa.UniqueConstraint("transfer_id", "product_id", name="uq_transfer_item_product"),
    )
    op.create_index("ix_transfer_items_transfer_id", "transfer_items", ["transfer_id"])

    # ---------- AUDIT ----------
    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("actor_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("affected_table", sa.String(64), nullable=False),
        sa.Column("affected_id", sa.String(64)),
        sa.Column("details", sa.JSON()),
        _ts("created_at"),
    )
    op.create_index("ix_audit_log_created_at", "audit_log", ["created_at"])
    op.create_index("ix_audit_affected", "audit_log", ["affected_table", "affected_id"])


def downgrade() -> None:
    for table in (
        "audit_log",
        "transfer_items",
        "transfers",
        "loan_items",
        "loans",
        "stock_entry_items",
        "stock_entries",
        "stock_movements",
        "stock_levels",
        "locations",
        "collaborators",
        "suppliers",
        "products",
        "product_groups",
        "users",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
