from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Header
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from unitrack.app.api.deps import get_db, get_scan_processor
from unitrack.app.api.errors import status_for
from unitrack.app.db.models.core_types import ScanOutcome
from unitrack.app.db.models.models_v1 import IDEMPOTENCY_KEY_LENGTH, ScanRequestLog
from unitrack.app.schemas.scans import ScanCreate
from unitrack.app.schemas.units import ConversionRead, ScanRecordRead, UnitRead
from unitrack.services.scan_processor import ScanProcessor, ScanRequest, ScanResult

router = APIRouter(prefix="/scans")


def scan_result_body(result: ScanResult) -> dict:
    return {
        "success": result.success,
        "error": result.error,
        "code": result.code,
        "retryable": result.retryable,
        "replayed": result.replayed,
        "unit": UnitRead.model_validate(result.unit) if result.unit else None,
        "scans": [ScanRecordRead.model_validate(s) for s in result.scans],
        "conversion": ConversionRead.model_validate(result.conversion) if result.conversion else None,
        "children": [UnitRead.model_validate(u) for u in result.children],
        "label": result.label,
    }


@router.post("")
def create_scan(
    payload: ScanCreate,
    db: Session = Depends(get_db),
    processor: ScanProcessor = Depends(get_scan_processor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=IDEMPOTENCY_KEY_LENGTH),
):
    result = processor.process(
        db,
        ScanRequest(
            qr_code=payload.qr_code.strip(),
            payload=payload.to_payload(),
            store_id=payload.store_id,
            location_id=payload.location_id,
            user_id=payload.user_id,
            notes=payload.notes,
            idempotency_key=idempotency_key.strip() if idempotency_key else None,
            expected_version=payload.expected_version,
        ),
    )
    body = scan_result_body(result)
    if not result.success:
        return JSONResponse(status_code=status_for(result.code), content=jsonable_encoder(body))
    return body


@router.get("/requests")
def list_scan_requests(
    store_id: UUID,
    outcome: ScanOutcome | None = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    stmt = select(ScanRequestLog).where(ScanRequestLog.store_id == store_id)
    if outcome is not None:
        stmt = stmt.where(ScanRequestLog.outcome == outcome)
    stmt = stmt.order_by(ScanRequestLog.created_at.desc()).limit(limit)

    rows = db.execute(stmt).scalars().all()
    return [
        {
            "idempotency_key": r.idempotency_key,
            "qr_code": r.qr_code,
            "operation": r.operation,
            "location_id": r.location_id,
            "user_id": r.user_id,
            "outcome": r.outcome,
            "error_code": r.error_code,
            "error_message": r.error_message,
            "scan_ids": r.scan_ids,
            "created_at": r.created_at,
        }
        for r in rows
    ]
