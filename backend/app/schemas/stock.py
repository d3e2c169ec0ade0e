from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from backend.app.db.models.core_types import EntryStatus


class ReceiveStockRequest(BaseModel):
    product_id: int
    location_id: int
    quantity: int = Field(gt=0)
    unit_cost: Decimal | None = Field(default=None, ge=0)
    reference: str | None = Field(default=None, max_length=255)


class AdjustStockRequest(BaseModel):
    product_id: int
    location_id: int
    delta: int  # signé, != 0 (vérifié par le moteur)
    reason: str = Field(min_length=1, max_length=255)


class EntryItemIn(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    quantity_requested: int | None = Field(default=None, gt=0)
    unit_cost: Decimal = Field(default=Decimal("0"), ge=0)
    lot: str | None = Field(default=None, max_length=64)
    expiry_date: date | None = None


class CreateEntryRequest(BaseModel):
    location_id: int
    supplier_id: int | None = None
    document_number: str | None = Field(default=None, max_length=64)
    document_type: str = Field(default="INTERNAL", max_length=32)
    note: str | None = None
    items: list[EntryItemIn] = Field(min_length=1)


class EntryItemRead(BaseModel):
    id: int
    product_id: int
    quantity_requested: int
    quantity_received: int
    unit_cost: Decimal
    lot: str | None
    expiry_date: date | None

    class Config:
        from_attributes = True


class StockEntryRead(BaseModel):
    id: int
    code: str
    supplier_id: int | None
    document_number: str | None
    document_type: str
    location_id: int
    user_id: int
    note: str | None
    status: EntryStatus
    created_at: datetime
    items: list[EntryItemRead]

    class Config:
        from_attributes = True
