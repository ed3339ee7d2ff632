from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel

from unitrack.app.db.models.core_types import ItemCondition, TransferStatus


class TransferReceiptRead(BaseModel):
    id: UUID
    item_id: UUID
    quantity: Decimal
    condition: ItemCondition
    notes: str | None
    received_by_user_id: UUID | None
    received_at: datetime

    class Config:
        from_attributes = True


class TransferItemRead(BaseModel):
    id: UUID
    product_id: UUID
    quantity: Decimal
    received_quantity: Decimal
    pending_quantity: Decimal
    is_fully_received: bool
    condition: ItemCondition | None
    condition_notes: str | None
    receipts: list[TransferReceiptRead] = []

    class Config:
        from_attributes = True


class TransferRead(BaseModel):
    id: UUID
    qr_code: str
    store_id: UUID
    transfer_number: str
    source_location_id: UUID
    destination_location_id: UUID
    status: TransferStatus
    notes: str | None
    tracking_number: str | None

    created_at: datetime
    approved_at: datetime | None
    shipped_at: datetime | None
    received_at: datetime | None
    cancelled_at: datetime | None

    created_by_user_id: UUID | None
    approved_by_user_id: UUID | None
    received_by_user_id: UUID | None
    cancelled_by_user_id: UUID | None

    is_fully_received: bool
    items: list[TransferItemRead] = []

    class Config:
        from_attributes = True


class StockTransactionRead(BaseModel):
    id: UUID
    location_id: UUID
    product_id: UUID
    transaction_type: str
    quantity_before: Decimal
    quantity_change: Decimal
    quantity_after: Decimal
    reason: str | None
    receipt_id: UUID | None
    performed_by_user_id: UUID | None
    created_at: datetime

    class Config:
        from_attributes = True
