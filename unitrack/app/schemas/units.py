from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel

from unitrack.app.db.models.core_types import OperationStatus, ScanOperation, UnitStatus


class UnitRead(BaseModel):
    id: UUID
    qr_code: str
    store_id: UUID
    template_id: UUID
    product_id: UUID

    tier_id: str
    tier_label: str | None
    quantity: Decimal
    base_unit: str
    generation: int

    status: UnitStatus
    status_changed_at: datetime | None
    current_location_id: UUID
    bin_location: str | None
    batch_number: str | None

    parent_unit_id: UUID | None
    parent_unit_index: int | None
    conversion_id: UUID | None

    received_at: datetime | None
    created_at: datetime
    updated_at: datetime
    version: int

    class Config:
        from_attributes = True


class ScanRecordRead(BaseModel):
    id: UUID
    unit_id: UUID
    qr_code: str
    sequence: int
    operation: ScanOperation
    operation_status: OperationStatus

    location_id: UUID
    location_name: str | None
    scanned_by_user_id: UUID | None
    scanned_by_name: str | None

    previous_status: UnitStatus | None
    new_status: UnitStatus
    previous_location_id: UUID | None
    new_location_id: UUID
    bin_location: str | None
    quantity_after: Decimal

    expected_quantity: Decimal | None
    actual_quantity: Decimal | None
    variance: Decimal | None

    notes: str | None
    scanned_at: datetime
    prev_hash: str | None
    record_hash: str

    class Config:
        from_attributes = True


class ConversionRead(BaseModel):
    id: UUID
    source_unit_id: UUID
    source_tier_id: str
    target_tier_id: str
    portions_created: int
    portion_size: Decimal
    total_consumed: Decimal
    remaining_quantity: Decimal
    variance: Decimal
    tracked_individually: bool
    created_at: datetime | None = None

    class Config:
        from_attributes = True
