"""
Scan processor : applique UNE opération de scan à UNE unité.

    ScanRequest(qr_code, payload, store_id, location_id, user_id, ...)
        -> lookup unité (verrouillée)
        -> handler du payload (Receive, TransferOut, ..., BinMove)
        -> UnitRegistry.apply_transition (ScanRecord chaîné)
        -> ScanResult

Le processor possède sa transaction : commit en cas de succès, rollback sur
erreur, nouvel essai sur conflit de version. Les refus métier portant une
clé d'idempotence sont mémorisés dans ``scan_requests``.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Callable, ClassVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from unitrack.app.core.config import Settings
from unitrack.app.core.logging_config import LogContext, get_logger
from unitrack.app.db.models.core_types import (
    OperationStatus,
    Role,
    ScanOperation,
    ScanOutcome,
    UnitStatus,
)
from unitrack.app.db.models.models_v1 import (
    IDEMPOTENCY_KEY_LENGTH,
    InventoryUnit,
    Location,
    ScanRecord,
    ScanRequestLog,
    StaffUser,
    TierStockLevel,
    UnitConversion,
)
from unitrack.services.errors import (
    ConcurrencyConflictError,
    ConversionNotAllowedError,
    InvalidTransitionError,
    LocationMismatchError,
    NetworkError,
    NotFoundError,
    OperationTimeoutError,
    TrackingError,
    ValidationError,
)
from unitrack.services.reconciliation import variance
from unitrack.services.tier_catalog import TierCatalog
from unitrack.services.transitions import UnitEvent
from unitrack.services.unit_registry import AuditFigures, ScanContext, UnitRegistry, label_data

logger = get_logger("services.scan_processor")

SUPERVISOR_ROLES = frozenset({Role.manager, Role.admin})


# ---------- Payloads (une classe par opération) ----------
@dataclass(frozen=True)
class Receive:
    operation: ClassVar[ScanOperation] = ScanOperation.receiving
    bin_location: str | None = None


@dataclass(frozen=True)
class TransferOut:
    operation: ClassVar[ScanOperation] = ScanOperation.transfer_out


@dataclass(frozen=True)
class TransferIn:
    operation: ClassVar[ScanOperation] = ScanOperation.transfer_in
    bin_location: str | None = None


@dataclass(frozen=True)
class Audit:
    operation: ClassVar[ScanOperation] = ScanOperation.audit
    actual_quantity: Decimal = Decimal("0")


@dataclass(frozen=True)
class Damage:
    operation: ClassVar[ScanOperation] = ScanOperation.damage


@dataclass(frozen=True)
class Reprint:
    operation: ClassVar[ScanOperation] = ScanOperation.reprint


@dataclass(frozen=True)
class Convert:
    operation: ClassVar[ScanOperation] = ScanOperation.convert
    target_tier_id: str = ""
    portions: int | None = None
    bin_location: str | None = None
    # un bin par portion (dans l'ordre) ; au-delà, ``bin_location``
    bin_locations: tuple[str, ...] = ()


@dataclass(frozen=True)
class Sale:
    operation: ClassVar[ScanOperation] = ScanOperation.sale
    # None = toute l'unité ; sinon portion détachée et vendue
    quantity: Decimal | None = None


@dataclass(frozen=True)
class Adjust:
    operation: ClassVar[ScanOperation] = ScanOperation.adjustment
    new_status: UnitStatus = UnitStatus.available
    override: bool = False


@dataclass(frozen=True)
class BinMove:
    operation: ClassVar[ScanOperation] = ScanOperation.bin_move
    bin_location: str = ""


ScanPayload = Receive | TransferOut | TransferIn | Audit | Damage | Reprint | Convert | Sale | Adjust | BinMove

PAYLOAD_TYPES: tuple[type, ...] = (
    Receive,
    TransferOut,
    TransferIn,
    Audit,
    Damage,
    Reprint,
    Convert,
    Sale,
    Adjust,
    BinMove,
)
PAYLOAD_BY_OPERATION: dict[ScanOperation, type] = {cls.operation: cls for cls in PAYLOAD_TYPES}


@dataclass(frozen=True)
class ScanRequest:
    qr_code: str
    payload: ScanPayload
    store_id: uuid.UUID
    location_id: uuid.UUID
    user_id: uuid.UUID
    notes: str | None = None
    idempotency_key: str | None = None
    expected_version: int | None = None


@dataclass
class ScanResult:
    success: bool
    unit: InventoryUnit | None = None
    scans: list[ScanRecord] = field(default_factory=list)
    conversion: UnitConversion | None = None
    children: list[InventoryUnit] = field(default_factory=list)
    label: dict[str, Any] | None = None
    error: str | None = None
    code: str | None = None
    retryable: bool = False
    replayed: bool = False

    @classmethod
    def failure(cls, exc: TrackingError, *, replayed: bool = False) -> "ScanResult":
        return cls(
            success=False,
            error=exc.message,
            code=exc.code,
            retryable=exc.retryable,
            replayed=replayed,
        )


@dataclass
class _Applied:
    scans: list[ScanRecord]
    conversion: UnitConversion | None = None
    children: list[InventoryUnit] = field(default_factory=list)
    label: dict[str, Any] | None = None


def payload_from_operation(
    operation: ScanOperation | str,
    *,
    new_bin_location: str | None = None,
    new_status: UnitStatus | str | None = None,
    actual_quantity: Decimal | None = None,
    target_tier_id: str | None = None,
    portions: int | None = None,
    override: bool = False,
    sale_quantity: Decimal | None = None,
    bin_locations: list[str] | tuple[str, ...] | None = None,
) -> ScanPayload:
    """Construit le payload typé depuis la forme plate (operation + champs optionnels)."""
    try:
        operation = ScanOperation(operation)
    except ValueError as exc:
        raise ValidationError(f"Unknown scan operation: {operation!r}") from exc

    if operation == ScanOperation.receiving:
        return Receive(bin_location=new_bin_location)
    if operation == ScanOperation.transfer_in:
        return TransferIn(bin_location=new_bin_location)
    if operation == ScanOperation.transfer_out:
        return TransferOut()
    if operation == ScanOperation.audit:
        if actual_quantity is None:
            raise ValidationError("audit requires actual_quantity")
        return Audit(actual_quantity=Decimal(str(actual_quantity)))
    if operation == ScanOperation.damage:
        return Damage()
    if operation == ScanOperation.reprint:
        return Reprint()
    if operation == ScanOperation.convert:
        if not target_tier_id:
            raise ValidationError("convert requires target_tier_id")
        return Convert(
            target_tier_id=target_tier_id,
            portions=portions,
            bin_location=new_bin_location,
            bin_locations=tuple(bin_locations or ()),
        )
    if operation == ScanOperation.sale:
        return Sale(quantity=None if sale_quantity is None else Decimal(str(sale_quantity)))
    if operation == ScanOperation.adjustment:
        if new_status is None:
            raise ValidationError("adjustment requires new_status")
        return Adjust(new_status=UnitStatus(new_status), override=override)
    if not new_bin_location:
        raise ValidationError("bin_move requires new_bin_location")
    return BinMove(bin_location=new_bin_location)


def request_hash(request: ScanRequest) -> str:
    body = {
        "qr_code": request.qr_code,
        "operation": request.payload.operation.value,
        "payload": asdict(request.payload),
        "store_id": str(request.store_id),
        "location_id": str(request.location_id),
        "user_id": str(request.user_id),
        "notes": request.notes,
    }
    raw = json.dumps(body, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ScanProcessor:
    def __init__(self, catalog: TierCatalog, registry: UnitRegistry, settings: Settings):
        self.catalog = catalog
        self.registry = registry
        self.settings = settings

    def scan(
        self,
        db: Session,
        qr_code: str,
        operation: ScanOperation | str,
        store_id: uuid.UUID,
        location_id: uuid.UUID,
        user_id: uuid.UUID,
        new_bin_location: str | None = None,
        new_status: UnitStatus | str | None = None,
        notes: str | None = None,
        *,
        actual_quantity: Decimal | None = None,
        target_tier_id: str | None = None,
        portions: int | None = None,
        override: bool = False,
        sale_quantity: Decimal | None = None,
        bin_locations: list[str] | None = None,
        idempotency_key: str | None = None,
    ) -> ScanResult:
        try:
            payload = payload_from_operation(
                operation,
                new_bin_location=new_bin_location,
                new_status=new_status,
                actual_quantity=actual_quantity,
                target_tier_id=target_tier_id,
                portions=portions,
                override=override,
                sale_quantity=sale_quantity,
                bin_locations=bin_locations,
            )
        except (TrackingError, ValueError) as exc:
            err = exc if isinstance(exc, TrackingError) else ValidationError(str(exc))
            return ScanResult.failure(err)

        return self.process(
            db,
            ScanRequest(
                qr_code=qr_code,
                payload=payload,
                store_id=store_id,
                location_id=location_id,
                user_id=user_id,
                notes=notes,
                idempotency_key=idempotency_key,
            ),
        )

    def process(self, db: Session, request: ScanRequest) -> ScanResult:
        if request.idempotency_key and len(request.idempotency_key) > IDEMPOTENCY_KEY_LENGTH:
            # la clé ne tiendrait pas dans scan_requests : refus sans rien mémoriser
            return ScanResult.failure(
                ValidationError(f"Idempotency-Key longer than {IDEMPOTENCY_KEY_LENGTH} characters")
            )
        fingerprint = request_hash(request)
        attempt = 0
        with LogContext.bind(actor_id=request.user_id, store_id=request.store_id, qr_code=request.qr_code):
            while True:
                attempt += 1
                try:
                    if request.idempotency_key:
                        existing = self._find_request(db, request.idempotency_key)
                        if existing:
                            try:
                                return self._replay(db, existing, fingerprint)
                            except TrackingError as exc:
                                return ScanResult.failure(exc, replayed=True)

                    result = self._apply(db, request)
                    if request.idempotency_key:
                        self._remember(db, request, fingerprint, result=result)
                    db.commit()
                    logger.info(
                        "scan_applied",
                        extra={"operation": request.payload.operation.value, "attempt": attempt},
                    )
                    return result

                except ConcurrencyConflictError as exc:
                    db.rollback()
                    if request.expected_version is not None or attempt > self.settings.scan_conflict_retries:
                        logger.warning("scan_conflict", extra={"attempt": attempt, "error_code": exc.code})
                        return ScanResult.failure(exc)
                    logger.info("scan_conflict_retry", extra={"attempt": attempt})

                except TrackingError as exc:
                    db.rollback()
                    logger.info(
                        "scan_rejected",
                        extra={"operation": request.payload.operation.value, "error_code": exc.code},
                    )
                    if request.idempotency_key and not exc.retryable:
                        try:
                            self._remember(db, request, fingerprint, error=exc)
                            db.commit()
                        except ConcurrencyConflictError:
                            db.rollback()
                    return ScanResult.failure(exc)

                except PoolTimeoutError as exc:
                    db.rollback()
                    logger.warning("scan_timeout", exc_info=True)
                    return ScanResult.failure(OperationTimeoutError(f"Database timeout: {exc}"))

                except OperationalError as exc:
                    db.rollback()
                    logger.warning("scan_storage_unavailable", exc_info=True)
                    return ScanResult.failure(NetworkError(f"Storage unavailable: {exc.orig}"))

    # ---------- Idempotence ----------
    def _find_request(self, db: Session, key: str) -> ScanRequestLog | None:
        return db.execute(
            select(ScanRequestLog).where(ScanRequestLog.idempotency_key == key)
        ).scalar_one_or_none()

    def _replay(self, db: Session, log: ScanRequestLog, fingerprint: str) -> ScanResult:
        if log.request_hash != fingerprint:
            raise ValidationError(
                f"Idempotency-Key {log.idempotency_key} was already used for a different scan"
            )
        logger.info("scan_replayed", extra={"idempotency_key": log.idempotency_key})

        if log.outcome == ScanOutcome.rejected:
            return ScanResult(
                success=False,
                error=log.error_message,
                code=log.error_code,
                retryable=False,
                replayed=True,
            )

        unit = self.registry.lookup(db, log.qr_code, log.store_id)
        scan_ids = [uuid.UUID(str(i)) for i in (log.scan_ids or [])]
        scans = []
        if scan_ids:
            scans = list(
                db.execute(
                    select(ScanRecord).where(ScanRecord.id.in_(scan_ids)).order_by(ScanRecord.scanned_at.asc())
                )
                .scalars()
                .all()
            )
        conversion = None
        children: list[InventoryUnit] = []
        if log.conversion_id:
            conversion = db.get(UnitConversion, log.conversion_id)
            children = list(
                db.execute(
                    select(InventoryUnit)
                    .where(InventoryUnit.conversion_id == log.conversion_id)
                    .order_by(InventoryUnit.parent_unit_index.asc())
                )
                .scalars()
                .all()
            )
        else:
            # vente partielle : la portion vendue a son propre scan de naissance
            portion_ids = [s.unit_id for s in scans if s.unit_id != unit.id]
            if portion_ids:
                children = list(
                    db.execute(select(InventoryUnit).where(InventoryUnit.id.in_(portion_ids))).scalars().all()
                )
        label = None
        if log.operation == ScanOperation.reprint:
            label = self.label_data(unit)
        elif log.operation == ScanOperation.sale and children:
            label = self.label_data(children[0])
        return ScanResult(
            success=True,
            unit=unit,
            scans=scans,
            conversion=conversion,
            children=children,
            label=label,
            replayed=True,
        )

    def _remember(
        self,
        db: Session,
        request: ScanRequest,
        fingerprint: str,
        *,
        result: ScanResult | None = None,
        error: TrackingError | None = None,
    ) -> None:
        entry = ScanRequestLog(
            idempotency_key=request.idempotency_key,
            request_hash=fingerprint,
            qr_code=request.qr_code,
            operation=request.payload.operation,
            store_id=request.store_id,
            location_id=request.location_id,
            user_id=request.user_id,
        )
        if result is not None:
            entry.outcome = ScanOutcome.succeeded
            entry.scan_ids = [str(s.id) for s in result.scans]
            entry.conversion_id = result.conversion.id if result.conversion else None
        else:
            entry.outcome = ScanOutcome.rejected
            entry.error_code = error.code
            entry.error_message = error.message
            entry.scan_ids = []
        db.add(entry)
        try:
            db.flush()
        except IntegrityError as exc:
            # même clé enregistrée en parallèle : le prochain essai rejoue
            raise ConcurrencyConflictError(
                f"Idempotency-Key {request.idempotency_key} is being processed concurrently"
            ) from exc

    # ---------- Application ----------
    def _apply(self, db: Session, request: ScanRequest) -> ScanResult:
        handler = _HANDLERS.get(type(request.payload))
        if handler is None:
            raise ValidationError(f"Unsupported scan payload: {type(request.payload).__name__}")

        ctx = self._context(db, request)
        unit = self.registry.lookup(db, request.qr_code, request.store_id, for_update=True)
        if request.expected_version is not None and unit.version != request.expected_version:
            raise ConcurrencyConflictError(
                f"Unit {unit.qr_code} changed (version {unit.version} != {request.expected_version})",
                qr_code=unit.qr_code,
            )

        applied = handler(self, db, unit, request.payload, ctx)
        return ScanResult(
            success=True,
            unit=unit,
            scans=applied.scans,
            conversion=applied.conversion,
            children=applied.children,
            label=applied.label,
        )

    def _context(self, db: Session, request: ScanRequest) -> ScanContext:
        location = db.get(Location, request.location_id)
        if not location or location.store_id != request.store_id:
            raise NotFoundError("Location", request.location_id)
        if not location.active:
            raise ValidationError(f"Location {location.name} is inactive")
        user = db.get(StaffUser, request.user_id)
        if not user or user.store_id != request.store_id:
            raise NotFoundError("StaffUser", request.user_id)
        if not user.active:
            raise ValidationError(f"User {user.name} is inactive")
        return ScanContext(location=location, user=user, notes=request.notes)

    def label_data(self, unit: InventoryUnit) -> dict[str, Any]:
        return label_data(unit, self.settings.qr_tracking_domain)

    def _unit_tier(self, db: Session, unit: InventoryUnit):
        template = self.catalog.get_template(db, unit.template_id)
        return template, self.catalog.tier_for_unit(template, unit.tier_id, unit.qr_code)

    def _check_tier_allowed(self, db: Session, unit: InventoryUnit, location: Location) -> None:
        _, tier = self._unit_tier(db, unit)
        if not tier.allowed_at(location.type):
            raise ValidationError(
                f"Tier {tier.id} cannot reside at a {location.type.value} location ({location.name})"
            )


def _require_at(unit: InventoryUnit, location: Location) -> None:
    if unit.current_location_id != location.id:
        raise LocationMismatchError(
            f"Unit {unit.qr_code} is not at {location.name}",
            expected_location_id=unit.current_location_id,
            actual_location_id=location.id,
        )


def _complete_transfer(
    proc: ScanProcessor,
    db: Session,
    unit: InventoryUnit,
    ctx: ScanContext,
    bin_location: str | None,
) -> _Applied:
    if unit.status not in (UnitStatus.in_transit, UnitStatus.available):
        raise InvalidTransitionError(
            f"Unit {unit.qr_code} is {unit.status.value}; cannot be received elsewhere",
            from_status=unit.status.value,
        )
    proc._check_tier_allowed(db, unit, ctx.location)
    record = proc.registry.apply_transition(
        db,
        unit,
        UnitEvent(
            operation=ScanOperation.transfer_in,
            status=UnitStatus.available,
            location_id=ctx.location.id,
            bin_location=bin_location,
        ),
        ctx,
    )
    return _Applied(scans=[record])


# ---------- Handlers ----------
def _handle_receive(proc: ScanProcessor, db: Session, unit: InventoryUnit, payload: Receive, ctx: ScanContext) -> _Applied:
    if unit.current_location_id != ctx.location.id:
        return _complete_transfer(proc, db, unit, ctx, payload.bin_location)

    # confirmation sur place
    record = proc.registry.apply_transition(
        db,
        unit,
        UnitEvent(
            operation=ScanOperation.receiving,
            status=UnitStatus.available,
            bin_location=payload.bin_location,
        ),
        ctx,
    )
    return _Applied(scans=[record])


def _handle_transfer_in(
    proc: ScanProcessor, db: Session, unit: InventoryUnit, payload: TransferIn, ctx: ScanContext
) -> _Applied:
    if unit.current_location_id == ctx.location.id:
        raise LocationMismatchError(
            f"Unit {unit.qr_code} is already at {ctx.location.name}",
            expected_location_id=None,
            actual_location_id=ctx.location.id,
        )
    return _complete_transfer(proc, db, unit, ctx, payload.bin_location)


def _handle_transfer_out(
    proc: ScanProcessor, db: Session, unit: InventoryUnit, payload: TransferOut, ctx: ScanContext
) -> _Applied:
    _require_at(unit, ctx.location)
    if unit.status != UnitStatus.available:
        raise InvalidTransitionError(
            f"Unit {unit.qr_code} is {unit.status.value}; only available units ship",
            from_status=unit.status.value,
            to_status=UnitStatus.in_transit.value,
        )
    record = proc.registry.apply_transition(
        db,
        unit,
        UnitEvent(operation=ScanOperation.transfer_out, status=UnitStatus.in_transit),
        ctx,
    )
    return _Applied(scans=[record])


def _handle_audit(proc: ScanProcessor, db: Session, unit: InventoryUnit, payload: Audit, ctx: ScanContext) -> _Applied:
    actual = Decimal(payload.actual_quantity)
    if actual < 0:
        raise ValidationError(f"Counted quantity cannot be negative ({actual})")

    result = variance(Decimal(unit.quantity), actual, proc.settings.audit_variance_tolerance)
    record = proc.registry.apply_transition(
        db,
        unit,
        UnitEvent(
            operation=ScanOperation.audit,
            quantity=actual if proc.settings.audit_auto_correct else None,
        ),
        ctx,
        operation_status=OperationStatus.discrepancy if result.is_discrepancy else OperationStatus.success,
        audit=AuditFigures(expected=result.expected, actual=actual, variance=result.delta),
    )
    if result.is_discrepancy:
        logger.warning(
            "audit_discrepancy",
            extra={"qr_code": unit.qr_code, "expected": result.expected, "actual": actual, "variance": result.delta},
        )
    return _Applied(scans=[record])


def _handle_damage(proc: ScanProcessor, db: Session, unit: InventoryUnit, payload: Damage, ctx: ScanContext) -> _Applied:
    record = proc.registry.apply_transition(
        db,
        unit,
        UnitEvent(operation=ScanOperation.damage, status=UnitStatus.damaged),
        ctx,
    )
    return _Applied(scans=[record])


def _handle_reprint(proc: ScanProcessor, db: Session, unit: InventoryUnit, payload: Reprint, ctx: ScanContext) -> _Applied:
    record = proc.registry.apply_transition(db, unit, UnitEvent(operation=ScanOperation.reprint), ctx)
    return _Applied(scans=[record], label=proc.label_data(unit))


def _handle_sale(proc: ScanProcessor, db: Session, unit: InventoryUnit, payload: Sale, ctx: ScanContext) -> _Applied:
    _require_at(unit, ctx.location)
    if payload.quantity is None or Decimal(payload.quantity) == Decimal(unit.quantity):
        record = proc.registry.apply_transition(
            db,
            unit,
            UnitEvent(operation=ScanOperation.sale, status=UnitStatus.sold),
            ctx,
        )
        return _Applied(scans=[record])
    return _sell_portion(proc, db, unit, Decimal(payload.quantity), ctx)


def _sell_portion(proc: ScanProcessor, db: Session, unit: InventoryUnit, quantity: Decimal, ctx: ScanContext) -> _Applied:
    """
    Vente d'une partie de l'unité : la source garde le reste (toujours
    disponible), la part vendue devient une unité ``sold`` avec son propre QR.
    """
    if quantity <= 0:
        raise ValidationError(f"Sold quantity must be positive ({quantity})")
    held = Decimal(unit.quantity)
    if quantity > held:
        raise ValidationError(
            f"Cannot sell {quantity}{unit.base_unit} from {unit.qr_code}: only {held}{unit.base_unit} left",
            requested=str(quantity),
            available=str(held),
        )
    if unit.status != UnitStatus.available:
        raise InvalidTransitionError(
            f"Unit {unit.qr_code} is {unit.status.value}; only available units sell by portion",
            from_status=unit.status.value,
        )

    template, tier = proc._unit_tier(db, unit)
    remaining = held - quantity
    # source d'abord : le conflit de version est détecté avant la création
    source_record = proc.registry.apply_transition(
        db,
        unit,
        UnitEvent(operation=ScanOperation.sale, quantity=remaining),
        ctx,
    )
    portion = proc.registry.create_sold_portion(
        db,
        parent=unit,
        template=template,
        tier=tier,
        ctx=ctx,
        quantity=quantity,
    )
    logger.info(
        "unit_portion_sold",
        extra={
            "qr_code": unit.qr_code,
            "sale_qr_code": portion.qr_code,
            "quantity": quantity,
            "remaining": remaining,
        },
    )
    return _Applied(
        scans=[source_record, proc.registry.history(db, portion)[0]],
        children=[portion],
        label=proc.label_data(portion),
    )


def _handle_adjust(proc: ScanProcessor, db: Session, unit: InventoryUnit, payload: Adjust, ctx: ScanContext) -> _Applied:
    _require_at(unit, ctx.location)
    if payload.override:
        if ctx.user.role not in SUPERVISOR_ROLES:
            raise ValidationError(f"Override requires a manager or admin (user {ctx.user.name} is {ctx.user.role.value})")
        if not (ctx.notes or "").strip():
            raise ValidationError("Override requires notes")
    record = proc.registry.apply_transition(
        db,
        unit,
        UnitEvent(operation=ScanOperation.adjustment, status=payload.new_status, override=payload.override),
        ctx,
    )
    if payload.override:
        logger.warning("unit_status_override", extra={"qr_code": unit.qr_code, "new_status": payload.new_status})
    return _Applied(scans=[record])


def _handle_bin_move(proc: ScanProcessor, db: Session, unit: InventoryUnit, payload: BinMove, ctx: ScanContext) -> _Applied:
    _require_at(unit, ctx.location)
    if not (payload.bin_location or "").strip():
        raise ValidationError("bin_move requires a bin location")
    record = proc.registry.apply_transition(
        db,
        unit,
        UnitEvent(operation=ScanOperation.bin_move, bin_location=payload.bin_location.strip()),
        ctx,
    )
    return _Applied(scans=[record])


def _handle_convert(proc: ScanProcessor, db: Session, unit: InventoryUnit, payload: Convert, ctx: ScanContext) -> _Applied:
    """
    Conversion d'une unité en portions d'un tier inférieur.

    Conservation : portions * taille + reste (+ perte tolérée) == quantité source.
    """
    _require_at(unit, ctx.location)
    if unit.status != UnitStatus.available:
        raise InvalidTransitionError(
            f"Unit {unit.qr_code} is {unit.status.value}; only available units convert",
            from_status=unit.status.value,
        )

    template, from_tier = proc._unit_tier(db, unit)
    to_tier = template.tier(payload.target_tier_id)
    plan = proc.catalog.validate_conversion(from_tier, to_tier)
    if not to_tier.allowed_at(ctx.location.type):
        raise ValidationError(
            f"Tier {to_tier.id} cannot reside at a {ctx.location.type.value} location ({ctx.location.name})"
        )

    quantity = Decimal(unit.quantity)
    max_portions = plan.portions_for(quantity)
    portions = max_portions if payload.portions is None else int(payload.portions)
    if portions <= 0:
        raise ConversionNotAllowedError(
            f"{quantity}{unit.base_unit} is not enough for one {to_tier.id} portion",
            portions=portions,
        )
    if portions > max_portions:
        raise ConversionNotAllowedError(
            f"Requested {portions} x {to_tier.id} but {unit.qr_code} holds only {max_portions}",
            portions=portions,
        )
    bins = [b.strip() for b in payload.bin_locations]
    if len(bins) > portions:
        raise ValidationError(f"{len(bins)} bin locations given for {portions} portions")
    if bins and not template.track_individual_units:
        raise ValidationError("Per-portion bins require individually tracked units")

    consumed = plan.portion_size * portions
    remainder = quantity - consumed
    keep_remainder = remainder > 0 and template.allow_partial_conversion
    if remainder > 0 and not keep_remainder and remainder > proc.settings.conversion_remainder_tolerance:
        raise ConversionNotAllowedError(
            f"Conversion would leave {remainder}{unit.base_unit}; partial conversion is disabled",
            remainder=str(remainder),
        )
    loss = Decimal("0") if keep_remainder else remainder

    conversion = UnitConversion(
        id=uuid.uuid4(),
        store_id=unit.store_id,
        source_unit_id=unit.id,
        source_tier_id=from_tier.id,
        target_tier_id=to_tier.id,
        portions_created=portions,
        portion_size=plan.portion_size,
        total_consumed=consumed,
        remaining_quantity=remainder if keep_remainder else Decimal("0"),
        variance=-loss,
        tracked_individually=template.track_individual_units,
        created_by_user_id=ctx.user.id,
    )
    db.add(conversion)

    # source d'abord : le conflit de version est détecté avant toute création
    if keep_remainder:
        source_event = UnitEvent(operation=ScanOperation.convert, quantity=remainder)
    else:
        source_event = UnitEvent(operation=ScanOperation.convert, status=UnitStatus.consumed, quantity=Decimal("0"))
    scans = [proc.registry.apply_transition(db, unit, source_event, ctx)]

    children: list[InventoryUnit] = []
    if template.track_individual_units:
        batch_number = unit.batch_number or unit.qr_code
        for index in range(1, portions + 1):
            child = proc.registry.create_child(
                db,
                parent=unit,
                template=template,
                tier=to_tier,
                ctx=ctx,
                index=index,
                conversion_id=conversion.id,
                batch_number=batch_number,
                bin_location=(bins[index - 1] or None) if index <= len(bins) else payload.bin_location,
            )
            children.append(child)
    else:
        _add_tier_stock(db, unit, ctx.location, to_tier.id, consumed)

    logger.info(
        "unit_converted",
        extra={
            "qr_code": unit.qr_code,
            "from_tier": from_tier.id,
            "to_tier": to_tier.id,
            "portions": portions,
            "remainder": conversion.remaining_quantity,
            "loss": loss,
        },
    )
    return _Applied(scans=scans, conversion=conversion, children=children)


def _add_tier_stock(db: Session, unit: InventoryUnit, location: Location, tier_id: str, quantity: Decimal) -> TierStockLevel:
    level = (
        db.execute(
            select(TierStockLevel)
            .where(TierStockLevel.product_id == unit.product_id)
            .where(TierStockLevel.location_id == location.id)
            .where(TierStockLevel.tier_id == tier_id)
            .with_for_update()
        )
        .scalar_one_or_none()
    )
    if level is None:
        level = TierStockLevel(
            product_id=unit.product_id,
            location_id=location.id,
            tier_id=tier_id,
            store_id=unit.store_id,
            quantity=Decimal("0"),
        )
        db.add(level)
    level.quantity = Decimal(level.quantity or 0) + quantity
    db.flush()
    return level


_HANDLERS: dict[type, Callable[..., _Applied]] = {
    Receive: _handle_receive,
    TransferOut: _handle_transfer_out,
    TransferIn: _handle_transfer_in,
    Audit: _handle_audit,
    Damage: _handle_damage,
    Reprint: _handle_reprint,
    Convert: _handle_convert,
    Sale: _handle_sale,
    Adjust: _handle_adjust,
    BinMove: _handle_bin_move,
}

_missing = [cls.__name__ for cls in PAYLOAD_TYPES if cls not in _HANDLERS]
if _missing or set(PAYLOAD_BY_OPERATION) != set(ScanOperation):
    raise RuntimeError(f"Scan handlers incomplete: missing={_missing}")
