"""Corps de ``POST /v1/scans`` : union discriminée par ``operation``."""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field

from unitrack.app.db.models.core_types import UnitStatus
from unitrack.services.scan_processor import (
    Adjust,
    Audit,
    BinMove,
    Convert,
    Damage,
    Receive,
    Reprint,
    Sale,
    ScanPayload,
    TransferIn,
    TransferOut,
)


class _ScanBase(BaseModel):
    qr_code: str = Field(min_length=1, max_length=64)
    store_id: UUID
    location_id: UUID
    user_id: UUID
    notes: str | None = None
    expected_version: int | None = None


class ReceiveScan(_ScanBase):
    operation: Literal["receiving"]
    new_bin_location: str | None = None

    def to_payload(self) -> ScanPayload:
        return Receive(bin_location=self.new_bin_location)


class TransferInScan(_ScanBase):
    operation: Literal["transfer_in"]
    new_bin_location: str | None = None

    def to_payload(self) -> ScanPayload:
        return TransferIn(bin_location=self.new_bin_location)


class TransferOutScan(_ScanBase):
    operation: Literal["transfer_out"]

    def to_payload(self) -> ScanPayload:
        return TransferOut()


class AuditScan(_ScanBase):
    operation: Literal["audit"]
    actual_quantity: Decimal = Field(ge=0)

    def to_payload(self) -> ScanPayload:
        return Audit(actual_quantity=self.actual_quantity)


class DamageScan(_ScanBase):
    operation: Literal["damage"]

    def to_payload(self) -> ScanPayload:
        return Damage()


class ReprintScan(_ScanBase):
    operation: Literal["reprint"]

    def to_payload(self) -> ScanPayload:
        return Reprint()


class ConvertScan(_ScanBase):
    operation: Literal["convert"]
    target_tier_id: str = Field(min_length=1)
    portions: int | None = Field(default=None, gt=0)
    new_bin_location: str | None = None
    new_bin_locations: list[Annotated[str, Field(max_length=64)]] = Field(default_factory=list)

    def to_payload(self) -> ScanPayload:
        return Convert(
            target_tier_id=self.target_tier_id,
            portions=self.portions,
            bin_location=self.new_bin_location,
            bin_locations=tuple(self.new_bin_locations),
        )


class SaleScan(_ScanBase):
    operation: Literal["sale"]
    quantity: Decimal | None = Field(default=None, gt=0)

    def to_payload(self) -> ScanPayload:
        return Sale(quantity=self.quantity)


class AdjustScan(_ScanBase):
    operation: Literal["adjustment"]
    new_status: UnitStatus
    override: bool = False

    def to_payload(self) -> ScanPayload:
        return Adjust(new_status=self.new_status, override=self.override)


class BinMoveScan(_ScanBase):
    operation: Literal["bin_move"]
    new_bin_location: str = Field(min_length=1, max_length=64)

    def to_payload(self) -> ScanPayload:
        return BinMove(bin_location=self.new_bin_location)


ScanCreate = Annotated[
    Union[
        ReceiveScan,
        TransferInScan,
        TransferOutScan,
        AuditScan,
        DamageScan,
        ReprintScan,
        ConvertScan,
        SaleScan,
        AdjustScan,
        BinMoveScan,
    ],
    Field(discriminator="operation"),
]
