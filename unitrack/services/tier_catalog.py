"""
Catalogue des tiers de conditionnement.

Les gabarits sont gérés par l'admin catalogue (hors périmètre) ; ici on ne
fait que les lire, les mettre en cache et répondre aux questions du scan :
quel tier pour ce préfixe QR, cette conversion est-elle permise, combien de
portions produit-elle.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from unitrack.app.core.logging_config import get_logger
from unitrack.app.db.models.core_types import LocationType
from unitrack.app.db.models.models_v1 import TierTemplate
from unitrack.services.errors import ConversionNotAllowedError, NotFoundError, ValidationError

logger = get_logger("services.tier_catalog")

UUID_TEXT_LENGTH = 36


@dataclass(frozen=True)
class ConversionTier:
    id: str
    label: str
    quantity: Decimal
    base_unit: str
    tier_level: int
    location_types: tuple[str, ...]
    qr_prefix: str
    can_convert_to: tuple[str, ...]
    label_template: str
    icon: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversionTier":
        try:
            return cls(
                id=str(data["id"]),
                label=str(data["label"]),
                quantity=Decimal(str(data["quantity"])),
                base_unit=str(data["base_unit"]),
                tier_level=int(data["tier_level"]),
                location_types=tuple(data.get("location_types") or ()),
                qr_prefix=str(data["qr_prefix"]),
                can_convert_to=tuple(data.get("can_convert_to") or ()),
                label_template=str(data.get("label_template") or "default"),
                icon=data.get("icon"),
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise ValidationError(f"Malformed conversion tier: {data!r}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "quantity": str(self.quantity),
            "base_unit": self.base_unit,
            "tier_level": self.tier_level,
            "location_types": list(self.location_types),
            "qr_prefix": self.qr_prefix,
            "can_convert_to": list(self.can_convert_to),
            "label_template": self.label_template,
            "icon": self.icon,
        }

    def allowed_at(self, location_type: LocationType | str) -> bool:
        if not self.location_types:
            return True
        value = location_type.value if isinstance(location_type, LocationType) else str(location_type)
        return value in self.location_types


@dataclass(frozen=True)
class TierTemplateSnapshot:
    id: uuid.UUID
    store_id: uuid.UUID
    category_id: uuid.UUID
    name: str
    base_unit: str
    tiers: tuple[ConversionTier, ...]
    track_individual_units: bool
    require_scan_on_receive: bool
    require_scan_on_transfer: bool
    allow_partial_conversion: bool
    is_active: bool
    _by_id: dict[str, ConversionTier] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_row(cls, row: TierTemplate) -> "TierTemplateSnapshot":
        tiers = tuple(ConversionTier.from_dict(t) for t in (row.tiers or []))
        by_id = {t.id: t for t in tiers}
        if len(by_id) != len(tiers):
            raise ValidationError(f"Template {row.id} declares duplicate tier ids")
        return cls(
            id=row.id,
            store_id=row.store_id,
            category_id=row.category_id,
            name=row.name,
            base_unit=row.base_unit,
            tiers=tiers,
            track_individual_units=row.track_individual_units,
            require_scan_on_receive=row.require_scan_on_receive,
            require_scan_on_transfer=row.require_scan_on_transfer,
            allow_partial_conversion=row.allow_partial_conversion,
            is_active=row.is_active,
            _by_id=by_id,
        )

    def tier(self, tier_id: str) -> ConversionTier:
        tier = self._by_id.get(tier_id)
        if tier is None:
            raise NotFoundError("ConversionTier", tier_id)
        return tier


@dataclass(frozen=True)
class ConversionPlan:
    from_tier: ConversionTier
    to_tier: ConversionTier

    @property
    def ratio(self) -> Decimal:
        """Quantité cible / quantité source (ex: oz/lb = 28 / 453.6)."""
        return self.to_tier.quantity / self.from_tier.quantity

    @property
    def portion_size(self) -> Decimal:
        return self.to_tier.quantity

    def portions_for(self, quantity: Decimal) -> int:
        """Nombre maximal de portions entières tirées de ``quantity``."""
        return int((Decimal(quantity) / self.to_tier.quantity).to_integral_value(rounding=ROUND_FLOOR))


def parse_qr_code(code: str) -> tuple[str, uuid.UUID]:
    """``<prefix><uuid>`` -> (prefix, uuid)."""
    code = (code or "").strip()
    if len(code) <= UUID_TEXT_LENGTH:
        raise ValidationError(f"Malformed QR code: {code!r}")
    prefix, raw_uuid = code[:-UUID_TEXT_LENGTH], code[-UUID_TEXT_LENGTH:]
    try:
        return prefix, uuid.UUID(raw_uuid)
    except ValueError as exc:
        raise ValidationError(f"Malformed QR code: {code!r}") from exc


def make_qr_code(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4()}"


def tracking_url(code: str, domain: str) -> str:
    return f"https://{domain}/qr/{code}"


def validate_conversion(from_tier: ConversionTier, to_tier: ConversionTier) -> ConversionPlan:
    if to_tier.id not in from_tier.can_convert_to:
        raise ConversionNotAllowedError(
            f"Tier {from_tier.id} cannot convert to {to_tier.id}",
            from_tier=from_tier.id,
            to_tier=to_tier.id,
        )
    if to_tier.quantity <= 0 or from_tier.quantity <= 0:
        raise ConversionNotAllowedError(f"Tier quantities must be positive ({from_tier.id} -> {to_tier.id})")
    if to_tier.base_unit != from_tier.base_unit:
        raise ConversionNotAllowedError(
            f"Base unit mismatch: {from_tier.base_unit} -> {to_tier.base_unit}"
        )
    return ConversionPlan(from_tier=from_tier, to_tier=to_tier)


class TierCatalog:
    """Lecture + cache en mémoire des gabarits actifs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._templates: dict[uuid.UUID, TierTemplateSnapshot] = {}
        self._by_category: dict[tuple[uuid.UUID, uuid.UUID], uuid.UUID] = {}
        self._prefixes: dict[uuid.UUID, dict[str, list[ConversionTier]]] = {}

    def _remember(self, snapshot: TierTemplateSnapshot) -> TierTemplateSnapshot:
        index: dict[str, list[ConversionTier]] = {}
        for tier in snapshot.tiers:
            index.setdefault(tier.qr_prefix, []).append(tier)
        with self._lock:
            self._templates[snapshot.id] = snapshot
            self._by_category[(snapshot.store_id, snapshot.category_id)] = snapshot.id
            self._prefixes[snapshot.id] = index
        return snapshot

    def invalidate(self, template_id: uuid.UUID | None = None) -> None:
        with self._lock:
            if template_id is None:
                self._templates.clear()
                self._by_category.clear()
                self._prefixes.clear()
                return
            snapshot = self._templates.pop(template_id, None)
            self._prefixes.pop(template_id, None)
            if snapshot is not None:
                self._by_category.pop((snapshot.store_id, snapshot.category_id), None)

    def get_template(self, db: Session, template_id: uuid.UUID) -> TierTemplateSnapshot:
        cached = self._templates.get(template_id)
        if cached is not None:
            return cached
        row = db.get(TierTemplate, template_id)
        if not row:
            raise NotFoundError("TierTemplate", template_id)
        return self._remember(TierTemplateSnapshot.from_row(row))

    def template_for(self, db: Session, category_id: uuid.UUID, store_id: uuid.UUID) -> TierTemplateSnapshot:
        cached_id = self._by_category.get((store_id, category_id))
        if cached_id is not None and cached_id in self._templates:
            return self._templates[cached_id]

        row = (
            db.execute(
                select(TierTemplate)
                .where(TierTemplate.store_id == store_id)
                .where(TierTemplate.category_id == category_id)
                .where(TierTemplate.is_active.is_(True))
                .order_by(TierTemplate.display_order.asc())
            )
            .scalars()
            .first()
        )
        if not row:
            raise NotFoundError("TierTemplate", f"store={store_id} category={category_id}")

        logger.debug("tier_template_loaded", extra={"template_id": row.id, "tier_count": len(row.tiers or [])})
        return self._remember(TierTemplateSnapshot.from_row(row))

    def resolve_by_prefix(self, template: TierTemplateSnapshot, qr_prefix: str) -> ConversionTier:
        index = self._prefixes.get(template.id)
        if index is None:
            self._remember(template)
            index = self._prefixes[template.id]
        matches = index.get(qr_prefix, [])
        if not matches:
            raise NotFoundError("ConversionTier", f"prefix={qr_prefix}")
        if len(matches) > 1:
            raise ValidationError(
                f"QR prefix {qr_prefix!r} is shared by tiers {[t.id for t in matches]}",
                prefix=qr_prefix,
            )
        return matches[0]

    def resolve_code(self, template: TierTemplateSnapshot, qr_code: str) -> ConversionTier:
        prefix, _ = parse_qr_code(qr_code)
        return self.resolve_by_prefix(template, prefix)

    def tier_for_unit(self, template: TierTemplateSnapshot, tier_id: str, qr_code: str) -> ConversionTier:
        tier = template.tier(tier_id)
        if not qr_code.startswith(tier.qr_prefix):
            raise ValidationError(
                f"QR code {qr_code} does not carry the {tier.id} prefix {tier.qr_prefix!r}"
            )
        return tier

    def validate_conversion(self, from_tier: ConversionTier, to_tier: ConversionTier) -> ConversionPlan:
        return validate_conversion(from_tier, to_tier)


def default_flower_tiers() -> list[dict[str, Any]]:
    """Hiérarchie standard lb -> hp/qp -> oz -> 3.5g."""
    return [
        ConversionTier(
            id="lb",
            label="Pound (453.6g)",
            quantity=Decimal("453.6"),
            base_unit="g",
            tier_level=1,
            location_types=("warehouse",),
            qr_prefix="B",
            can_convert_to=("hp", "qp", "oz"),
            label_template="bulk",
            icon="cube.box.fill",
        ).to_dict(),
        ConversionTier(
            id="hp",
            label="Half Pound (226.8g)",
            quantity=Decimal("226.8"),
            base_unit="g",
            tier_level=2,
            location_types=("warehouse", "distribution"),
            qr_prefix="H",
            can_convert_to=("qp", "oz"),
            label_template="distribution",
            icon="shippingbox.fill",
        ).to_dict(),
        ConversionTier(
            id="qp",
            label="Quarter Pound (112g)",
            quantity=Decimal("112"),
            base_unit="g",
            tier_level=2,
            location_types=("warehouse", "distribution"),
            qr_prefix="Q",
            can_convert_to=("oz",),
            label_template="distribution",
            icon="shippingbox",
        ).to_dict(),
        ConversionTier(
            id="oz",
            label="Ounce (28g)",
            quantity=Decimal("28"),
            base_unit="g",
            tier_level=3,
            location_types=("distribution", "retail"),
            qr_prefix="D",
            can_convert_to=("eighth",),
            label_template="distribution_small",
            icon="leaf.fill",
        ).to_dict(),
        ConversionTier(
            id="eighth",
            label="Eighth (3.5g)",
            quantity=Decimal("3.5"),
            base_unit="g",
            tier_level=4,
            location_types=("retail",),
            qr_prefix="S",
            can_convert_to=(),
            label_template="retail",
            icon="bag.fill",
        ).to_dict(),
    ]
