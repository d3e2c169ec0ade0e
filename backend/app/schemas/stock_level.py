from datetime import datetime

from pydantic import BaseModel

from backend.app.db.models.core_types import MovementKind


class StockLevelRead(BaseModel):
    product_id: int
    location_id: int

    quantity: int
    quantity_reserved: int
    available: int  # READ ONLY : quantity - quantity_reserved

    class Config:
        from_attributes = True


class StockMovementRead(BaseModel):
    id: int
    product_id: int
    location_id: int | None
    kind: MovementKind
    quantity: int
    user_id: int
    document_id: int | None
    reference: str | None
    created_at: datetime

    class Config:
        from_attributes = True
