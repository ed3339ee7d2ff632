"""
Registre des unités suivies (une unité = un QR code).

Ce module est le SEUL chemin d'écriture sur ``inventory_units`` :
    - create / register     : enregistrement (unitaire ou en lot, rejouable)
    - create_child         : portion issue d'une conversion
    - create_sold_portion  : portion vendue détachée d'une unité
    - apply_transition     : toute autre modification

Chaque écriture ajoute un ScanRecord chaîné (hash du précédent) et met à
jour la projection. Ne fait jamais de commit : l'appelant gère la transaction.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from unitrack.app.core.logging_config import get_logger
from unitrack.app.db.models.core_types import OperationStatus, ScanOperation, UnitStatus
from unitrack.app.db.models.models_v1 import (
    IDEMPOTENCY_KEY_LENGTH,
    InventoryUnit,
    Location,
    ScanRecord,
    StaffUser,
    UnitRegistration,
    utcnow,
)
from unitrack.services.errors import ConcurrencyConflictError, NotFoundError, ValidationError
from unitrack.services.tier_catalog import ConversionTier, TierTemplateSnapshot, make_qr_code, tracking_url
from unitrack.services.transitions import (
    UnitEvent,
    UnitState,
    apply_event,
    compute_record_hash,
)

logger = get_logger("services.unit_registry")

MAX_BULK_UNITS = 500


def registration_hash(**fields) -> str:
    raw = json.dumps({k: None if v is None else str(v) for k, v in fields.items()}, sort_keys=True)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ScanContext:
    """Qui scanne, où. Fourni explicitement par l'appelant (jamais global)."""

    location: Location
    user: StaffUser
    notes: str | None = None


@dataclass(frozen=True)
class AuditFigures:
    expected: Decimal
    actual: Decimal
    variance: Decimal


def label_data(unit: InventoryUnit, domain: str) -> dict[str, str | None]:
    """Données d'étiquette ; le rendu/impression est hors périmètre."""
    return {
        "tier_label": unit.tier_label,
        "qr_code": unit.qr_code,
        "tracking_url": tracking_url(unit.qr_code, domain),
        "product_id": str(unit.product_id),
        "batch_number": unit.batch_number,
    }


class UnitRegistry:
    def lookup(
        self,
        db: Session,
        qr_code: str,
        store_id: uuid.UUID | None = None,
        *,
        for_update: bool = False,
    ) -> InventoryUnit:
        stmt = select(InventoryUnit).where(InventoryUnit.qr_code == qr_code)
        if store_id is not None:
            stmt = stmt.where(InventoryUnit.store_id == store_id)
        if for_update:
            stmt = stmt.with_for_update()
        unit = db.execute(stmt).scalar_one_or_none()
        if not unit:
            raise NotFoundError("InventoryUnit", qr_code)
        return unit

    def get(self, db: Session, unit_id: uuid.UUID) -> InventoryUnit:
        unit = db.get(InventoryUnit, unit_id)
        if not unit:
            raise NotFoundError("InventoryUnit", unit_id)
        return unit

    @staticmethod
    def current_state(unit: InventoryUnit) -> UnitState:
        return UnitState(
            status=unit.status,
            location_id=unit.current_location_id,
            bin_location=unit.bin_location,
            quantity=Decimal(unit.quantity),
        )

    # ---------- Création ----------
    def create(
        self,
        db: Session,
        *,
        template: TierTemplateSnapshot,
        tier: ConversionTier,
        product_id: uuid.UUID,
        ctx: ScanContext,
        quantity: Decimal | None = None,
        batch_number: str | None = None,
        bin_location: str | None = None,
    ) -> InventoryUnit:
        """Enregistre une unité neuve : generation=0, available, à ``ctx.location``."""
        if ctx.location.store_id != template.store_id:
            raise ValidationError("Location and tier template belong to different stores")
        if not tier.allowed_at(ctx.location.type):
            raise ValidationError(
                f"Tier {tier.id} cannot reside at a {ctx.location.type.value} location"
            )
        quantity = tier.quantity if quantity is None else Decimal(quantity)
        if quantity <= 0:
            raise ValidationError(f"Unit quantity must be positive ({quantity})")

        unit = self._new_unit(
            db,
            template=template,
            tier=tier,
            product_id=product_id,
            ctx=ctx,
            event=UnitEvent(
                operation=ScanOperation.receiving,
                status=UnitStatus.available,
                location_id=ctx.location.id,
                bin_location=bin_location,
                quantity=quantity,
            ),
            batch_number=batch_number,
        )
        logger.info(
            "unit_registered",
            extra={"qr_code": unit.qr_code, "tier_id": tier.id, "location_id": ctx.location.id},
        )
        return unit

    def register(
        self,
        db: Session,
        *,
        template: TierTemplateSnapshot,
        tier: ConversionTier,
        product_id: uuid.UUID,
        ctx: ScanContext,
        count: int = 1,
        quantity: Decimal | None = None,
        batch_number: str | None = None,
        bin_location: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[list[InventoryUnit], bool]:
        """
        Enregistre ``count`` unités identiques (même tier, même lot).

        Avec une clé d'idempotence, un rejeu retourne les unités déjà créées
        (``replayed=True``) ; la même clé pour une autre demande est refusée.
        """
        if count < 1 or count > MAX_BULK_UNITS:
            raise ValidationError(f"Unit count must be between 1 and {MAX_BULK_UNITS} ({count})")
        if idempotency_key and len(idempotency_key) > IDEMPOTENCY_KEY_LENGTH:
            raise ValidationError(f"Idempotency-Key longer than {IDEMPOTENCY_KEY_LENGTH} characters")

        fingerprint = registration_hash(
            template_id=template.id,
            tier_id=tier.id,
            product_id=product_id,
            location_id=ctx.location.id,
            user_id=ctx.user.id,
            count=count,
            quantity=quantity,
            batch_number=batch_number,
            bin_location=bin_location,
        )
        if idempotency_key:
            existing = db.execute(
                select(UnitRegistration).where(UnitRegistration.idempotency_key == idempotency_key)
            ).scalar_one_or_none()
            if existing:
                if existing.request_hash != fingerprint:
                    raise ValidationError(
                        f"Idempotency-Key {idempotency_key} was already used for a different registration"
                    )
                logger.info("unit_registration_replayed", extra={"idempotency_key": idempotency_key})
                return self._registered_units(db, existing), True

        units = [
            self.create(
                db,
                template=template,
                tier=tier,
                product_id=product_id,
                ctx=ctx,
                quantity=quantity,
                batch_number=batch_number,
                bin_location=bin_location,
            )
            for _ in range(count)
        ]

        if idempotency_key:
            db.add(
                UnitRegistration(
                    idempotency_key=idempotency_key,
                    request_hash=fingerprint,
                    store_id=template.store_id,
                    unit_ids=[str(u.id) for u in units],
                )
            )
            try:
                db.flush()
            except IntegrityError as exc:
                raise ConcurrencyConflictError(
                    f"Idempotency-Key {idempotency_key} is being processed concurrently"
                ) from exc

        if count > 1:
            logger.info(
                "units_registered_bulk",
                extra={"tier_id": tier.id, "count": count, "batch_number": batch_number},
            )
        return units, False

    def _registered_units(self, db: Session, registration: UnitRegistration) -> list[InventoryUnit]:
        ids = [uuid.UUID(str(i)) for i in registration.unit_ids or []]
        by_id = {
            u.id: u for u in db.execute(select(InventoryUnit).where(InventoryUnit.id.in_(ids))).scalars()
        }
        return [by_id[i] for i in ids if i in by_id]

    def create_child(
        self,
        db: Session,
        *,
        parent: InventoryUnit,
        template: TierTemplateSnapshot,
        tier: ConversionTier,
        ctx: ScanContext,
        index: int,
        conversion_id: uuid.UUID,
        batch_number: str | None,
        bin_location: str | None = None,
    ) -> InventoryUnit:
        return self._new_unit(
            db,
            template=template,
            tier=tier,
            product_id=parent.product_id,
            ctx=ctx,
            event=UnitEvent(
                operation=ScanOperation.convert,
                status=UnitStatus.available,
                location_id=parent.current_location_id,
                bin_location=bin_location if bin_location is not None else parent.bin_location,
                quantity=tier.quantity,
            ),
            batch_number=batch_number,
            generation=parent.generation + 1,
            parent_unit_id=parent.id,
            parent_unit_index=index,
            conversion_id=conversion_id,
        )

    def create_sold_portion(
        self,
        db: Session,
        *,
        parent: InventoryUnit,
        template: TierTemplateSnapshot,
        tier: ConversionTier,
        ctx: ScanContext,
        quantity: Decimal,
    ) -> InventoryUnit:
        """Portion vendue détachée de ``parent`` : nouvelle unité, née ``sold``."""
        last_index = db.scalar(
            select(func.max(InventoryUnit.parent_unit_index)).where(InventoryUnit.parent_unit_id == parent.id)
        )
        quantity = Decimal(quantity)
        return self._new_unit(
            db,
            template=template,
            tier=tier,
            product_id=parent.product_id,
            ctx=ctx,
            event=UnitEvent(
                operation=ScanOperation.sale,
                status=UnitStatus.sold,
                location_id=parent.current_location_id,
                bin_location=parent.bin_location,
                quantity=quantity,
            ),
            batch_number=parent.batch_number or parent.qr_code,
            generation=parent.generation + 1,
            parent_unit_id=parent.id,
            parent_unit_index=(last_index or 0) + 1,
            tier_label=f"{format(quantity.normalize(), 'f')}{tier.base_unit} of {tier.label}",
        )

    def _new_unit(
        self,
        db: Session,
        *,
        template: TierTemplateSnapshot,
        tier: ConversionTier,
        product_id: uuid.UUID,
        ctx: ScanContext,
        event: UnitEvent,
        batch_number: str | None,
        generation: int = 0,
        parent_unit_id: uuid.UUID | None = None,
        parent_unit_index: int | None = None,
        conversion_id: uuid.UUID | None = None,
        tier_label: str | None = None,
    ) -> InventoryUnit:
        state = apply_event(None, event)
        now = utcnow()
        unit = InventoryUnit(
            id=uuid.uuid4(),
            qr_code=make_qr_code(tier.qr_prefix),
            store_id=template.store_id,
            template_id=template.id,
            product_id=product_id,
            tier_id=tier.id,
            tier_label=tier_label or tier.label,
            quantity=state.quantity,
            base_unit=tier.base_unit,
            generation=generation,
            status=state.status,
            status_changed_at=now,
            current_location_id=state.location_id,
            bin_location=state.bin_location,
            batch_number=batch_number,
            parent_unit_id=parent_unit_id,
            parent_unit_index=parent_unit_index,
            conversion_id=conversion_id,
            received_at=now,
            received_by_user_id=ctx.user.id,
        )
        db.add(unit)
        record = self._build_record(
            unit,
            previous=None,
            new_state=state,
            event=event,
            ctx=ctx,
            sequence=1,
            prev_hash=None,
            scanned_at=now,
        )
        db.add(record)
        db.flush()
        return unit

    # ---------- Transition ----------
    def apply_transition(
        self,
        db: Session,
        unit: InventoryUnit,
        event: UnitEvent,
        ctx: ScanContext,
        *,
        operation_status: OperationStatus = OperationStatus.success,
        audit: AuditFigures | None = None,
    ) -> ScanRecord:
        """
        Seul point d'écriture d'une unité existante.

        Lève InvalidTransitionError (table de transitions), ValidationError,
        ConcurrencyConflictError (version périmée / séquence déjà prise).
        """
        # lu avant le flush : après un échec, les attributs sont expirés
        qr_code = unit.qr_code
        previous = self.current_state(unit)
        new_state = apply_event(previous, event)

        last = self._last_record(db, unit.id)
        now = utcnow()
        record = self._build_record(
            unit,
            previous=previous,
            new_state=new_state,
            event=event,
            ctx=ctx,
            sequence=(last.sequence + 1) if last else 1,
            prev_hash=last.record_hash if last else None,
            scanned_at=now,
            operation_status=operation_status,
            audit=audit,
        )

        if new_state.status != previous.status:
            unit.status = new_state.status
            unit.status_changed_at = now
        if new_state.location_id != previous.location_id:
            unit.current_location_id = new_state.location_id
            unit.received_at = now
            unit.received_by_user_id = ctx.user.id
        unit.bin_location = new_state.bin_location
        unit.quantity = new_state.quantity
        # bump systématique : la version linéarise aussi les scans sans effet
        unit.updated_at = now

        db.add(record)
        try:
            db.flush()
        except StaleDataError as exc:
            raise ConcurrencyConflictError(
                f"Unit {qr_code} was modified concurrently",
                qr_code=qr_code,
            ) from exc
        except IntegrityError as exc:
            raise ConcurrencyConflictError(
                f"Scan sequence for {qr_code} already taken",
                qr_code=qr_code,
            ) from exc

        logger.info(
            "unit_transition_applied",
            extra={
                "qr_code": qr_code,
                "operation": event.operation.value,
                "from_status": previous.status.value,
                "to_status": new_state.status.value,
                "sequence": record.sequence,
            },
        )
        return record

    def _last_record(self, db: Session, unit_id: uuid.UUID) -> ScanRecord | None:
        return (
            db.execute(
                select(ScanRecord)
                .where(ScanRecord.unit_id == unit_id)
                .order_by(ScanRecord.sequence.desc())
                .limit(1)
            )
            .scalars()
            .first()
        )

    @staticmethod
    def _build_record(
        unit: InventoryUnit,
        *,
        previous: UnitState | None,
        new_state: UnitState,
        event: UnitEvent,
        ctx: ScanContext,
        sequence: int,
        prev_hash: str | None,
        scanned_at,
        operation_status: OperationStatus = OperationStatus.success,
        audit: AuditFigures | None = None,
    ) -> ScanRecord:
        record = ScanRecord(
            id=uuid.uuid4(),
            unit_id=unit.id,
            store_id=unit.store_id,
            qr_code=unit.qr_code,
            sequence=sequence,
            operation=event.operation,
            operation_status=operation_status,
            location_id=ctx.location.id,
            location_name=ctx.location.name,
            scanned_by_user_id=ctx.user.id,
            scanned_by_name=ctx.user.name,
            previous_status=previous.status if previous else None,
            new_status=new_state.status,
            previous_location_id=previous.location_id if previous else None,
            new_location_id=new_state.location_id,
            bin_location=new_state.bin_location,
            quantity_after=new_state.quantity,
            expected_quantity=audit.expected if audit else None,
            actual_quantity=audit.actual if audit else None,
            variance=audit.variance if audit else None,
            notes=ctx.notes,
            scanned_at=scanned_at,
            prev_hash=prev_hash,
        )
        record.record_hash = compute_record_hash(record, prev_hash)
        return record

    # ---------- Lecture ----------
    def history(self, db: Session, unit: InventoryUnit) -> list[ScanRecord]:
        return list(
            db.execute(
                select(ScanRecord)
                .where(ScanRecord.unit_id == unit.id)
                .order_by(ScanRecord.sequence.asc())
            )
            .scalars()
            .all()
        )

    def lineage(self, db: Session, unit: InventoryUnit) -> list[InventoryUnit]:
        """Ancêtres, du plus ancien au parent direct."""
        chain: list[InventoryUnit] = []
        seen = {unit.id}
        parent_id = unit.parent_unit_id
        while parent_id is not None and parent_id not in seen:
            parent = self.get(db, parent_id)
            chain.append(parent)
            seen.add(parent.id)
            parent_id = parent.parent_unit_id
        chain.reverse()
        return chain

    def children(self, db: Session, unit: InventoryUnit) -> list[InventoryUnit]:
        return list(
            db.execute(
                select(InventoryUnit)
                .where(InventoryUnit.parent_unit_id == unit.id)
                .order_by(InventoryUnit.parent_unit_index.asc())
            )
            .scalars()
            .all()
        )

    def available_units(
        self,
        db: Session,
        *,
        product_id: uuid.UUID,
        store_id: uuid.UUID,
        location_id: uuid.UUID | None = None,
        tier_ids: Iterable[str] | None = None,
    ) -> list[InventoryUnit]:
        stmt = (
            select(InventoryUnit)
            .where(InventoryUnit.product_id == product_id)
            .where(InventoryUnit.store_id == store_id)
            .where(InventoryUnit.status == UnitStatus.available)
        )
        if location_id is not None:
            stmt = stmt.where(InventoryUnit.current_location_id == location_id)
        tier_ids = list(tier_ids or [])
        if tier_ids:
            stmt = stmt.where(InventoryUnit.tier_id.in_(tier_ids))
        stmt = stmt.order_by(InventoryUnit.received_at.asc())
        return list(db.execute(stmt).scalars().all())
