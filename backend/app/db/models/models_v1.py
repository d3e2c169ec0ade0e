from __future__ import annotations

from datetime import datetime, date
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    JSON,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.db.base import Base, BigIntPK, utcnow
from backend.app.db.models.core_types import (
    Role,
    MovementKind,
    LoanStatus,
    TransferStatus,
    EntryStatus,
    ItemCondition,
)

# ---------- MASTER DATA ----------
class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role, name="role"), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class ProductGroup(Base):
    __tablename__ = "product_groups"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(16), default="UN", nullable=False)
    group_id: Mapped[int | None] = mapped_column(ForeignKey("product_groups.id", ondelete="SET NULL"))

    # Cache dénormalisé, écrit uniquement par backend.services.inventory
    stock_current: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stock_requested: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stock_minimum: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stock_maximum: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    cost_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    group: Mapped[ProductGroup | None] = relationship()

    __table_args__ = (
        CheckConstraint("stock_current >= 0", name="ck_product_stock_current_nonneg"),
        CheckConstraint("stock_requested >= 0", name="ck_product_stock_requested_nonneg"),
        CheckConstraint("stock_minimum >= 0", name="ck_product_stock_minimum_nonneg"),
        CheckConstraint("stock_maximum >= 0", name="ck_product_stock_maximum_nonneg"),
        CheckConstraint("cost_price >= 0", name="ck_product_cost_price_nonneg"),
    )


class Supplier(Base):
    __tablename__ = "suppliers"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    document: Mapped[str | None] = mapped_column(String(32))  # CNPJ / CPF
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(32))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Collaborator(Base):
    __tablename__ = "collaborators"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    registration: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    department: Mapped[str | None] = mapped_column(String(120))
    manager: Mapped[str | None] = mapped_column(String(200))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Location(Base):
    __tablename__ = "locations"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    address: Mapped[str | None] = mapped_column(String(255))
    responsible: Mapped[str | None] = mapped_column(String(200))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ---------- INVENTORY ----------
class StockLevel(Base):
    __tablename__ = "stock_levels"
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), primary_key=True)

    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quantity_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    product: Mapped[Product] = relationship()
    location: Mapped[Location] = relationship()

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_stock_quantity_nonneg"),
        CheckConstraint("quantity_reserved >= 0", name="ck_stock_reserved_nonneg"),
        CheckConstraint("quantity_reserved <= quantity", name="ck_stock_reserved_le_quantity"),
    )

    @property
    def available(self) -> int:
        return self.quantity - self.quantity_reserved


class StockMovement(Base):
    """Ledger append-only : une ligne par delta signé appliqué au stock."""

    __tablename__ = "stock_movements"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    location_id: Mapped[int | None] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"))

    kind: Mapped[MovementKind] = mapped_column(Enum(MovementKind, name="movement_kind"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    document_id: Mapped[int | None] = mapped_column(BigInteger)
    reference: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    product: Mapped[Product] = relationship()
    location: Mapped[Location | None] = relationship()
    user: Mapped[User] = relationship()

    __table_args__ = (
        CheckConstraint("quantity <> 0", name="ck_stock_movement_qty_nonzero"),
        Index("ix_stock_movements_product_time", "product_id", "created_at"),
        Index("ix_stock_movements_document", "document_id"),
    )


class StockEntry(Base):
    __tablename__ = "stock_entries"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    supplier_id: Mapped[int | None] = mapped_column(ForeignKey("suppliers.id", ondelete="RESTRICT"))
    document_number: Mapped[str | None] = mapped_column(String(64))
    document_type: Mapped[str] = mapped_column(String(32), default="INTERNAL", nullable=False)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    note: Mapped[str | None] = mapped_column(Text)
    status: Mapped[EntryStatus] = mapped_column(
        Enum(EntryStatus, name="entry_status"),
        default=EntryStatus.pending,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    supplier: Mapped[Supplier | None] = relationship()
    location: Mapped[Location] = relationship()
    items: Mapped[list["StockEntryItem"]] = relationship(
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="StockEntryItem.id",
    )


class StockEntryItem(Base):
    __tablename__ = "stock_entry_items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    entry_id: Mapped[int] = mapped_column(ForeignKey("stock_entries.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    quantity_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_received: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    lot: Mapped[str | None] = mapped_column(String(64))
    expiry_date: Mapped[date | None] = mapped_column(Date)

    entry: Mapped[StockEntry] = relationship(back_populates="items")
    product: Mapped[Product] = relationship()

    __table_args__ = (
        CheckConstraint("quantity_received > 0", name="ck_entry_item_qty_pos"),
        CheckConstraint("unit_cost >= 0", name="ck_entry_item_unit_cost_nonneg"),
    )


# ---------- LOANS ----------
class Loan(Base):
    __tablename__ = "loans"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    collaborator_id: Mapped[int] = mapped_column(
        ForeignKey("collaborators.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    requested_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    authorized_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))

    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    status: Mapped[LoanStatus] = mapped_column(
        Enum(LoanStatus, name="loan_status"),
        default=LoanStatus.open,
        nullable=False,
        index=True,
    )
    note: Mapped[str | None] = mapped_column(Text)
    responsibility_term: Mapped[str | None] = mapped_column(Text)

    collaborator: Mapped[Collaborator] = relationship()
    items: Mapped[list["LoanItem"]] = relationship(
        back_populates="loan",
        cascade="all, delete-orphan",
        order_by="LoanItem.id",
    )


class LoanItem(Base):
    __tablename__ = "loan_items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    loan_id: Mapped[int] = mapped_column(ForeignKey("loans.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    source_location_id: Mapped[int | None] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"))

    quantity_issued: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_returned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quantity_lost: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    condition_out: Mapped[ItemCondition] = mapped_column(
        Enum(ItemCondition, name="item_condition"),
        default=ItemCondition.used,
        nullable=False,
    )
    condition_in: Mapped[ItemCondition | None] = mapped_column(Enum(ItemCondition, name="item_condition"))
    note_out: Mapped[str | None] = mapped_column(Text)
    note_in: Mapped[str | None] = mapped_column(Text)
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    loan: Mapped[Loan] = relationship(back_populates="items")
    product: Mapped[Product] = relationship()

    __table_args__ = (
        CheckConstraint("quantity_issued > 0", name="ck_loan_item_qty_pos"),
        CheckConstraint("quantity_returned >= 0", name="ck_loan_item_returned_nonneg"),
        CheckConstraint("quantity_lost >= 0", name="ck_loan_item_lost_nonneg"),
        CheckConstraint(
            "quantity_returned + quantity_lost <= quantity_issued",
            name="ck_loan_item_settled_le_issued",
        ),
    )

    @property
    def quantity_pending(self) -> int:
        return self.quantity_issued - self.quantity_returned - self.quantity_lost


# ---------- TRANSFERS ----------
class Transfer(Base):
    __tablename__ = "transfers"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    source_location_id: Mapped[int] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    destination_location_id: Mapped[int] = mapped_column(
        ForeignKey("locations.id", ondelete="RESTRICT"),
        nullable=False,
    )
    requested_by: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    approved_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))

    status: Mapped[TransferStatus] = mapped_column(
        Enum(TransferStatus, name="transfer_status"),
        default=TransferStatus.pending,
        nullable=False,
        index=True,
    )
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[str | None] = mapped_column(Text)
    note: Mapped[str | None] = mapped_column(Text)

    source_location: Mapped[Location] = relationship(foreign_keys=[source_location_id])
    destination_location: Mapped[Location] = relationship(foreign_keys=[destination_location_id])
    items: Mapped[list["TransferItem"]] = relationship(
        back_populates="transfer",
        cascade="all, delete-orphan",
        order_by="TransferItem.id",
    )

    __table_args__ = (
        CheckConstraint("source_location_id <> destination_location_id", name="ck_transfer_distinct_locations"),
    )


class TransferItem(Base):
    __tablename__ = "transfer_items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    transfer_id: Mapped[int] = mapped_column(ForeignKey("transfers.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    quantity_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quantity_received: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    transfer: Mapped[Transfer] = relationship(back_populates="items")
    product: Mapped[Product] = relationship()

    __table_args__ = (
        CheckConstraint("quantity_requested > 0", name="ck_transfer_item_qty_pos"),
        UniqueConstraint("transfer_id", "product_id", name="uq_transfer_item_product"),
    )


# ---------- AUDIT ----------
class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"))
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    affected_table: Mapped[str] = mapped_column(String(64), nullable=False)
    affected_id: Mapped[str | None] = mapped_column(String(64))
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    __table_args__ = (Index("ix_audit_affected", "affected_table", "affected_id"),)
