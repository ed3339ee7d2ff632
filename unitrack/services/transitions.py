"""
Table de transitions des unités + état dérivé de l'historique de scans.

L'état d'une unité (statut, emplacement, bin, quantité) est le résultat
d'un fold sur ses ScanRecords. La ligne ``inventory_units`` n'est qu'une
projection de ce fold : toute écriture passe par ``apply_event``.
"""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from unitrack.app.db.models.core_types import ScanOperation, UnitStatus
from unitrack.services.errors import InvalidTransitionError, ValidationError

QUANTITY_STEP = Decimal("0.001")

ALLOWED_TRANSITIONS: dict[UnitStatus, frozenset[UnitStatus]] = {
    UnitStatus.available: frozenset(
        {
            UnitStatus.reserved,
            UnitStatus.in_transit,
            UnitStatus.consumed,
            UnitStatus.sold,
            UnitStatus.damaged,
            UnitStatus.expired,
            UnitStatus.sample,
            UnitStatus.adjustment,
        }
    ),
    UnitStatus.reserved: frozenset({UnitStatus.available, UnitStatus.sold, UnitStatus.in_transit}),
    UnitStatus.in_transit: frozenset({UnitStatus.available, UnitStatus.damaged}),
    UnitStatus.sample: frozenset({UnitStatus.available}),
    UnitStatus.adjustment: frozenset({UnitStatus.available}),
    UnitStatus.consumed: frozenset(),
    UnitStatus.sold: frozenset(),
    UnitStatus.damaged: frozenset(),
    UnitStatus.expired: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {UnitStatus.consumed, UnitStatus.sold, UnitStatus.damaged, UnitStatus.expired}
)

# Seule une réception termine un transfert (changement d'emplacement)
RECEIVE_OPERATIONS = frozenset({ScanOperation.receiving, ScanOperation.transfer_in})

# Opérations créant une unité (premier enregistrement de l'historique) ;
# ``sale`` : portion vendue détachée d'une unité, née déjà vendue
GENESIS_OPERATIONS = frozenset({ScanOperation.receiving, ScanOperation.convert, ScanOperation.sale})

# Acceptées sur une unité terminale tant que le statut ne change pas
TERMINAL_SAFE_OPERATIONS = frozenset({ScanOperation.reprint, ScanOperation.audit})


@dataclass(frozen=True)
class UnitState:
    status: UnitStatus
    location_id: uuid.UUID
    bin_location: str | None
    quantity: Decimal

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class UnitEvent:
    """Changement demandé ; ``None`` = inchangé."""

    operation: ScanOperation
    status: UnitStatus | None = None
    location_id: uuid.UUID | None = None
    bin_location: str | None = None
    quantity: Decimal | None = None
    override: bool = False


def is_transition_allowed(
    current: UnitStatus,
    target: UnitStatus,
    operation: ScanOperation,
    override: bool = False,
) -> bool:
    if current == target:
        return True
    if current in TERMINAL_STATUSES:
        # correction superviseur uniquement, et seulement vers available
        return override and operation == ScanOperation.adjustment and target == UnitStatus.available
    if target not in ALLOWED_TRANSITIONS[current]:
        return False
    if current == UnitStatus.in_transit and target == UnitStatus.available:
        return operation in RECEIVE_OPERATIONS
    return True


def check_transition(
    current: UnitStatus,
    target: UnitStatus,
    operation: ScanOperation,
    override: bool = False,
) -> None:
    if not is_transition_allowed(current, target, operation, override):
        raise InvalidTransitionError(
            f"Transition {current.value} -> {target.value} not allowed for {operation.value}",
            from_status=current.value,
            to_status=target.value,
            operation=operation.value,
        )


def apply_event(state: UnitState | None, event: UnitEvent) -> UnitState:
    """Applique un événement à un état ; lève si l'événement est illégal."""
    if state is None:
        if event.operation not in GENESIS_OPERATIONS:
            raise InvalidTransitionError(f"{event.operation.value} cannot start a unit history")
        if event.location_id is None or event.quantity is None:
            raise ValidationError("Unit creation requires a location and a quantity")
        return UnitState(
            status=event.status or UnitStatus.available,
            location_id=event.location_id,
            bin_location=event.bin_location,
            quantity=_check_quantity(event.quantity),
        )

    status_kept = event.status is None or event.status == state.status
    if (
        state.is_terminal
        and not event.override
        and not (event.operation in TERMINAL_SAFE_OPERATIONS and status_kept)
    ):
        raise InvalidTransitionError(
            f"Unit is {state.status.value} (terminal); {event.operation.value} refused",
            from_status=state.status.value,
            operation=event.operation.value,
        )

    status = event.status or state.status
    check_transition(state.status, status, event.operation, event.override)

    location_id = state.location_id
    if event.location_id is not None and event.location_id != state.location_id:
        if event.operation not in RECEIVE_OPERATIONS:
            raise InvalidTransitionError(
                f"Location only changes on receive completion, not on {event.operation.value}"
            )
        location_id = event.location_id

    quantity = state.quantity
    if event.quantity is not None:
        quantity = _check_quantity(event.quantity)

    bin_location = state.bin_location if event.bin_location is None else event.bin_location

    return replace(
        state,
        status=status,
        location_id=location_id,
        bin_location=bin_location,
        quantity=quantity,
    )


def _check_quantity(quantity: Decimal) -> Decimal:
    quantity = Decimal(quantity)
    if quantity < 0:
        raise ValidationError(f"Quantity cannot be negative ({quantity})")
    return quantity.quantize(QUANTITY_STEP)


def fold_scan_history(records: Iterable[Any]) -> UnitState | None:
    """
    Rejoue l'historique (ordonné par sequence) et retourne l'état final.

    Chaque enregistrement doit partir de l'état laissé par le précédent,
    sinon l'historique a été altéré.
    """
    state: UnitState | None = None
    for record in records:
        previous_status = state.status if state else None
        previous_location = state.location_id if state else None
        if record.previous_status != previous_status or record.previous_location_id != previous_location:
            raise InvalidTransitionError(
                f"Scan #{record.sequence} does not continue from the previous state",
                sequence=record.sequence,
            )
        if state is not None and record.new_status != state.status:
            check_transition(
                state.status,
                record.new_status,
                record.operation,
                override=record.operation == ScanOperation.adjustment,
            )
        state = UnitState(
            status=record.new_status,
            location_id=record.new_location_id,
            bin_location=record.bin_location,
            quantity=Decimal(record.quantity_after).quantize(QUANTITY_STEP),
        )
    return state


# ---------- Empreinte (chaîne de hachage) ----------
def _norm(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return format(value.quantize(QUANTITY_STEP), "f")
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat()
    if isinstance(value, (ScanOperation, UnitStatus)):
        return value.value
    if hasattr(value, "value"):
        return value.value
    return str(value)


HASHED_FIELDS = (
    "unit_id",
    "sequence",
    "operation",
    "operation_status",
    "location_id",
    "scanned_by_user_id",
    "previous_status",
    "new_status",
    "previous_location_id",
    "new_location_id",
    "bin_location",
    "quantity_after",
    "expected_quantity",
    "actual_quantity",
    "variance",
    "notes",
    "scanned_at",
)


def compute_record_hash(record: Any, prev_hash: str | None) -> str:
    payload = {name: _norm(getattr(record, name)) for name in HASHED_FIELDS}
    payload["prev_hash"] = prev_hash
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
