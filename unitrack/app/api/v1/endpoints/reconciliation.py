from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from unitrack.app.api.deps import get_db, get_reconciliation
from unitrack.app.schemas.units import ScanRecordRead
from unitrack.services.reconciliation import ReconciliationEngine

router = APIRouter(prefix="/reconciliation")


class VarianceCheck(BaseModel):
    expected: Decimal
    actual: Decimal
    tolerance: Decimal | None = None


@router.get("/units/{qr_code}/history")
def unit_history(
    qr_code: str,
    store_id: UUID | None = None,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    return [ScanRecordRead.model_validate(s) for s in engine.unit_history(db, qr_code, store_id)]


@router.get("/units/{qr_code}/verify")
def verify_unit(
    qr_code: str,
    store_id: UUID | None = None,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    result = engine.verify_unit(db, qr_code, store_id)
    return {
        "qr_code": result.qr_code,
        "valid": result.valid,
        "record_count": result.record_count,
        "head_hash": result.head_hash,
        "errors": result.errors,
    }


@router.get("/transfers/{transfer_id}/history")
def transfer_history(
    transfer_id: UUID,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    return engine.transfer_history(db, transfer_id)


@router.get("/transfers/{transfer_id}/discrepancies")
def transfer_discrepancies(
    transfer_id: UUID,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    return engine.transfer_discrepancies(db, transfer_id)


@router.get("/audits")
def audit_report(
    store_id: UUID,
    location_id: UUID | None = None,
    since: datetime | None = None,
    discrepancies_only: bool = False,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    rows = engine.audit_report(
        db,
        store_id,
        location_id=location_id,
        since=since,
        discrepancies_only=discrepancies_only,
    )
    return [ScanRecordRead.model_validate(s) for s in rows]


@router.post("/variance")
def check_variance(
    payload: VarianceCheck,
    engine: ReconciliationEngine = Depends(get_reconciliation),
):
    result = engine.variance(payload.expected, payload.actual, payload.tolerance)
    return {
        "expected": result.expected,
        "actual": result.actual,
        "delta": result.delta,
        "tolerance": result.tolerance,
        "is_discrepancy": result.is_discrepancy,
    }
