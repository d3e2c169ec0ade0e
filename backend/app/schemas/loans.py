from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field

from backend.app.db.models.core_types import ItemCondition, LoanStatus


class LoanItemIn(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)
    location_id: int | None = None
    condition: ItemCondition = ItemCondition.used
    note: str | None = None


class CreateLoanRequest(BaseModel):
    collaborator_id: int
    due_date: date
    items: list[LoanItemIn] = Field(min_length=1)
    authorized_by: int | None = None
    note: str | None = None
    responsibility_term: str | None = None


class ReturnItemIn(BaseModel):
    item_id: int
    quantity: int = Field(gt=0)
    condition: ItemCondition = ItemCondition.used
    note: str | None = None


class ReturnItemsRequest(BaseModel):
    items: list[ReturnItemIn] = Field(min_length=1)


class MarkLostRequest(BaseModel):
    note: str | None = None


class LoanItemRead(BaseModel):
    id: int
    product_id: int
    source_location_id: int | None
    quantity_issued: int
    quantity_returned: int
    quantity_lost: int
    quantity_pending: int
    condition_out: ItemCondition
    condition_in: ItemCondition | None
    note_out: str | None
    note_in: str | None
    returned_at: datetime | None

    class Config:
        from_attributes = True


class LoanRead(BaseModel):
    id: int
    code: str
    collaborator_id: int
    requested_by: int
    authorized_by: int | None
    issued_at: datetime
    due_date: date
    returned_at: datetime | None
    status: LoanStatus
    note: str | None
    responsibility_term: str | None
    items: list[LoanItemRead]

    class Config:
        from_attributes = True
