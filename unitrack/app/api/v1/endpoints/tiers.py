from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from unitrack.app.api.deps import get_catalog, get_db
from unitrack.services.tier_catalog import TierCatalog, TierTemplateSnapshot

router = APIRouter(prefix="/tiers")


def _template_body(template: TierTemplateSnapshot) -> dict:
    return {
        "id": template.id,
        "store_id": template.store_id,
        "category_id": template.category_id,
        "name": template.name,
        "base_unit": template.base_unit,
        "track_individual_units": template.track_individual_units,
        "require_scan_on_receive": template.require_scan_on_receive,
        "require_scan_on_transfer": template.require_scan_on_transfer,
        "allow_partial_conversion": template.allow_partial_conversion,
        "is_active": template.is_active,
        "tiers": [t.to_dict() for t in template.tiers],
    }


@router.get("/templates")
def template_for_category(
    store_id: UUID,
    category_id: UUID,
    db: Session = Depends(get_db),
    catalog: TierCatalog = Depends(get_catalog),
):
    return _template_body(catalog.template_for(db, category_id, store_id))


@router.get("/templates/{template_id}")
def get_template(
    template_id: UUID,
    db: Session = Depends(get_db),
    catalog: TierCatalog = Depends(get_catalog),
):
    return _template_body(catalog.get_template(db, template_id))


@router.get("/resolve")
def resolve_tier(
    template_id: UUID,
    qr_code: str,
    db: Session = Depends(get_db),
    catalog: TierCatalog = Depends(get_catalog),
):
    template = catalog.get_template(db, template_id)
    return catalog.resolve_code(template, qr_code).to_dict()


@router.get("/conversion")
def conversion_plan(
    template_id: UUID,
    from_tier: str,
    to_tier: str,
    quantity: Decimal | None = None,
    db: Session = Depends(get_db),
    catalog: TierCatalog = Depends(get_catalog),
):
    template = catalog.get_template(db, template_id)
    plan = catalog.validate_conversion(template.tier(from_tier), template.tier(to_tier))
    source_quantity = plan.from_tier.quantity if quantity is None else quantity
    return {
        "from_tier": plan.from_tier.id,
        "to_tier": plan.to_tier.id,
        "ratio": str(plan.ratio),
        "portion_size": str(plan.portion_size),
        "portions": plan.portions_for(source_quantity),
    }
