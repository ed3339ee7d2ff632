from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    String,
    Integer,
    BigInteger,
    DateTime,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    Uuid,
    UniqueConstraint,
    Index,
    CheckConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, object_session

from unitrack.app.db.base import Base
from unitrack.app.db.models.core_types import (
    Role,
    LocationType,
    UnitStatus,
    ScanOperation,
    OperationStatus,
    ScanOutcome,
    TransferStatus,
    ItemCondition,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Longueur max. des clés d'idempotence (en-tête Idempotency-Key)
IDEMPOTENCY_KEY_LENGTH = 64


# ---------- MASTER DATA ----------
class Location(Base):
    __tablename__ = "locations"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[LocationType] = mapped_column(Enum(LocationType, name="location_type"), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (UniqueConstraint("store_id", "name", name="uq_location_store_name"),)


class StaffUser(Base):
    __tablename__ = "staff_users"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role, name="role"), default=Role.staff, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


# ---------- TIERS ----------
class TierTemplate(Base):
    """Gabarit de conversion (lb -> qp -> oz ...) par magasin / catégorie."""

    __tablename__ = "unit_conversion_tiers"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    category_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    # Liste ordonnée de tiers (dicts), lue telle quelle par TierCatalog
    tiers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    base_unit: Mapped[str] = mapped_column(String(16), default="g", nullable=False)

    track_individual_units: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    require_scan_on_receive: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    require_scan_on_transfer: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    allow_partial_conversion: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_tier_template_store_category", "store_id", "category_id"),
        UniqueConstraint("store_id", "slug", name="uq_tier_template_store_slug"),
    )


# ---------- UNITS ----------
class InventoryUnit(Base):
    __tablename__ = "inventory_units"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    qr_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    template_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("unit_conversion_tiers.id", ondelete="RESTRICT"),
        nullable=False,
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    tier_id: Mapped[str] = mapped_column(String(32), nullable=False)
    tier_label: Mapped[str | None] = mapped_column(String(128))
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    base_unit: Mapped[str] = mapped_column(String(16), nullable=False)
    generation: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    status: Mapped[UnitStatus] = mapped_column(
        Enum(UnitStatus, name="unit_status"),
        default=UnitStatus.available,
        nullable=False,
    )
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    current_location_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("locations.id", ondelete="RESTRICT"),
        nullable=False,
    )
    bin_location: Mapped[str | None] = mapped_column(String(64))
    batch_number: Mapped[str | None] = mapped_column(String(64), index=True)

    # Lignée (conversion)
    parent_unit_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("inventory_units.id", ondelete="RESTRICT"))
    parent_unit_index: Mapped[int | None] = mapped_column(Integer)
    conversion_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)

    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_by_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("staff_users.id", ondelete="SET NULL"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    current_location: Mapped[Location] = relationship(foreign_keys=[current_location_id])
    scans: Mapped[list["ScanRecord"]] = relationship(
        back_populates="unit",
        order_by="ScanRecord.sequence",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_unit_quantity_nonneg"),
        CheckConstraint("generation >= 0", name="ck_unit_generation_nonneg"),
        Index("ix_units_product_location_status", "product_id", "current_location_id", "status"),
    )


class ScanRecord(Base):
    """Trace d'audit immuable : jamais modifiée, jamais supprimée."""

    __tablename__ = "inventory_unit_scans"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    unit_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("inventory_units.id", ondelete="RESTRICT"),
        nullable=False,
    )
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    qr_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    operation: Mapped[ScanOperation] = mapped_column(Enum(ScanOperation, name="scan_operation"), nullable=False)
    operation_status: Mapped[OperationStatus] = mapped_column(
        Enum(OperationStatus, name="operation_status"),
        default=OperationStatus.success,
        nullable=False,
    )

    location_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    location_name: Mapped[str | None] = mapped_column(String(200))
    scanned_by_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("staff_users.id", ondelete="SET NULL"))
    scanned_by_name: Mapped[str | None] = mapped_column(String(200))

    previous_status: Mapped[UnitStatus | None] = mapped_column(Enum(UnitStatus, name="unit_status"))
    new_status: Mapped[UnitStatus] = mapped_column(Enum(UnitStatus, name="unit_status"), nullable=False)
    previous_location_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    new_location_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    bin_location: Mapped[str | None] = mapped_column(String(64))
    quantity_after: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)

    expected_quantity: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    actual_quantity: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))
    variance: Mapped[Decimal | None] = mapped_column(Numeric(14, 3))

    notes: Mapped[str | None] = mapped_column(Text)
    scanned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    prev_hash: Mapped[str | None] = mapped_column(String(64))
    record_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    unit: Mapped[InventoryUnit] = relationship(back_populates="scans")

    __table_args__ = (
        UniqueConstraint("unit_id", "sequence", name="uq_unit_scan_sequence"),
        Index("ix_unit_scans_store_time", "store_id", "scanned_at"),
    )


class ScanRequestLog(Base):
    """Résultat définitif d'une requête de scan, par clé d'idempotence."""

    __tablename__ = "scan_requests"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    idempotency_key: Mapped[str] = mapped_column(String(IDEMPOTENCY_KEY_LENGTH), unique=True, nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    qr_code: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[ScanOperation] = mapped_column(Enum(ScanOperation, name="scan_operation"), nullable=False)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    location_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    outcome: Mapped[ScanOutcome] = mapped_column(Enum(ScanOutcome, name="scan_outcome"), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(64))
    error_message: Mapped[str | None] = mapped_column(Text)
    scan_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    conversion_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_scan_requests_store_outcome", "store_id", "outcome"),)


class UnitRegistration(Base):
    """Enregistrement (simple ou en lot) rejouable par clé d'idempotence."""

    __tablename__ = "unit_registrations"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    idempotency_key: Mapped[str] = mapped_column(String(IDEMPOTENCY_KEY_LENGTH), unique=True, nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    unit_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class UnitConversion(Base):
    __tablename__ = "unit_conversions"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    source_unit_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("inventory_units.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    source_tier_id: Mapped[str] = mapped_column(String(32), nullable=False)
    target_tier_id: Mapped[str] = mapped_column(String(32), nullable=False)
    portions_created: Mapped[int] = mapped_column(Integer, nullable=False)
    portion_size: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    total_consumed: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    remaining_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    variance: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=Decimal("0"), nullable=False)
    tracked_individually: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("staff_users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (CheckConstraint("portions_created > 0", name="ck_conversion_portions_pos"),)


class TierStockLevel(Base):
    """Compteur agrégé pour les gabarits sans suivi unitaire."""

    __tablename__ = "tier_stock_levels"
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    location_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), primary_key=True)
    tier_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=Decimal("0"), nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (CheckConstraint("quantity >= 0", name="ck_tier_stock_quantity_nonneg"),)


# ---------- STOCK (agrégé, hors QR) ----------
class StockLevel(Base):
    __tablename__ = "stock_levels"
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    location_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), primary_key=True)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    qty_on_hand: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=Decimal("0"), nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (CheckConstraint("qty_on_hand >= 0", name="ck_stock_on_hand_nonneg"),)


class StockTransaction(Base):
    """Journal des mouvements de stock agrégé (avant / variation / après)."""

    __tablename__ = "stock_transactions"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    location_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity_before: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    quantity_change: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    quantity_after: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255))

    reference_type: Mapped[str] = mapped_column(String(64), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)
    receipt_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    performed_by_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("staff_users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_stock_txn_reference", "reference_type", "reference_id"),
        Index("ix_stock_txn_product_location", "product_id", "location_id"),
    )


# ---------- TRANSFERS ----------
class InventoryTransfer(Base):
    __tablename__ = "inventory_transfers"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    transfer_number: Mapped[str] = mapped_column(String(32), nullable=False)
    source_location_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False)
    destination_location_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("locations.id", ondelete="RESTRICT"),
        nullable=False,
    )
    status: Mapped[TransferStatus] = mapped_column(
        Enum(TransferStatus, name="transfer_status"),
        default=TransferStatus.draft,
        nullable=False,
    )
    notes: Mapped[str | None] = mapped_column(Text)
    tracking_number: Mapped[str | None] = mapped_column(String(128))

    # Idempotence création (clé unique, nullable OK)
    idempotency_key: Mapped[str | None] = mapped_column(String(IDEMPOTENCY_KEY_LENGTH), unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("staff_users.id", ondelete="SET NULL"))
    approved_by_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("staff_users.id", ondelete="SET NULL"))
    received_by_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("staff_users.id", ondelete="SET NULL"))
    cancelled_by_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("staff_users.id", ondelete="SET NULL"))

    items: Mapped[list["InventoryTransferItem"]] = relationship(
        back_populates="transfer",
        cascade="all, delete-orphan",
        order_by="InventoryTransferItem.created_at",
    )

    __table_args__ = (
        UniqueConstraint("store_id", "transfer_number", name="uq_transfer_store_number"),
        CheckConstraint("source_location_id <> destination_location_id", name="ck_transfer_distinct_locations"),
    )

    @property
    def qr_code(self) -> str:
        return f"P{self.id}"

    @property
    def is_fully_received(self) -> bool:
        return bool(self.items) and all(item.is_fully_received for item in self.items)


class InventoryTransferItem(Base):
    __tablename__ = "inventory_transfer_items"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transfer_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("inventory_transfers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    received_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=Decimal("0"), nullable=False)
    condition: Mapped[ItemCondition | None] = mapped_column(Enum(ItemCondition, name="item_condition"))
    condition_notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    transfer: Mapped[InventoryTransfer] = relationship(back_populates="items")
    receipts: Mapped[list["TransferReceipt"]] = relationship(
        back_populates="item",
        order_by="TransferReceipt.received_at",
    )

    __table_args__ = (
        UniqueConstraint("transfer_id", "product_id", name="uq_transfer_item_product"),
        CheckConstraint("quantity > 0", name="ck_transfer_item_qty_pos"),
        CheckConstraint("received_quantity >= 0", name="ck_transfer_item_received_nonneg"),
    )

    @property
    def pending_quantity(self) -> Decimal:
        return max(Decimal("0"), Decimal(self.quantity) - Decimal(self.received_quantity or 0))

    @property
    def is_fully_received(self) -> bool:
        return Decimal(self.received_quantity or 0) >= Decimal(self.quantity)


class TransferReceipt(Base):
    """Un lot reçu (session de réception) pour une ligne de transfert."""

    __tablename__ = "inventory_transfer_receipts"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transfer_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("inventory_transfers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    item_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("inventory_transfer_items.id", ondelete="RESTRICT"),
        nullable=False,
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    condition: Mapped[ItemCondition] = mapped_column(Enum(ItemCondition, name="item_condition"), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    received_by_user_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("staff_users.id", ondelete="SET NULL"))
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    idempotency_key: Mapped[str | None] = mapped_column(String(IDEMPOTENCY_KEY_LENGTH), unique=True)

    item: Mapped[InventoryTransferItem] = relationship(back_populates="receipts")

    __table_args__ = (CheckConstraint("quantity > 0", name="ck_transfer_receipt_qty_pos"),)


class TransferSequence(Base):
    """Compteur verrouillé (FOR UPDATE) pour les numéros de transfert par magasin."""

    __tablename__ = "transfer_sequences"
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    current_value: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)


# ---------- AUDIT ----------
class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("staff_users.id", ondelete="SET NULL"))
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    meta: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_entity", "entity_type", "entity_id"),)


# ---------- IMMUTABILITY ----------
@event.listens_for(ScanRecord, "before_update")
def _forbid_scan_update(mapper, connection, target):
    from unitrack.services.errors import ImmutabilityViolationError

    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise ImmutabilityViolationError("ScanRecord", str(target.id), "update")


@event.listens_for(ScanRecord, "before_delete")
def _forbid_scan_delete(mapper, connection, target):
    from unitrack.services.errors import ImmutabilityViolationError

    raise ImmutabilityViolationError("ScanRecord", str(target.id), "delete")


@event.listens_for(AuditLog, "before_update")
def _forbid_audit_update(mapper, connection, target):
    from unitrack.services.errors import ImmutabilityViolationError

    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise ImmutabilityViolationError("AuditLog", str(target.id), "update")
