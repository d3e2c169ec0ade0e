from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from backend.app.db.models.core_types import TransferStatus


class TransferItemIn(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class CreateTransferRequest(BaseModel):
    source_location_id: int
    destination_location_id: int
    items: list[TransferItemIn] = Field(min_length=1)
    note: str | None = None


class CancelTransferRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class TransferItemRead(BaseModel):
    id: int
    product_id: int
    quantity_requested: int
    quantity_sent: int
    quantity_received: int

    class Config:
        from_attributes = True


class TransferRead(BaseModel):
    id: int
    code: str
    source_location_id: int
    destination_location_id: int
    requested_by: int
    approved_by: int | None
    status: TransferStatus
    requested_at: datetime
    approved_at: datetime | None
    dispatched_at: datetime | None
    completed_at: datetime | None
    cancel_reason: str | None
    note: str | None
    items: list[TransferItemRead]

    class Config:
        from_attributes = True
