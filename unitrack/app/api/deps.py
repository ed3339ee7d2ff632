from __future__ import annotations

from typing import Generator

from fastapi import Depends

from unitrack.app.core.config import Settings, settings
from unitrack.app.db.session import SessionLocal
from unitrack.services.reconciliation import ReconciliationEngine
from unitrack.services.scan_processor import ScanProcessor
from unitrack.services.tier_catalog import TierCatalog
from unitrack.services.transfer_orders import TransferOrderManager
from unitrack.services.unit_registry import UnitRegistry

# état partagé par process (cache des gabarits)
_catalog = TierCatalog()
_registry = UnitRegistry()


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings() -> Settings:
    return settings


def get_catalog() -> TierCatalog:
    return _catalog


def get_registry() -> UnitRegistry:
    return _registry


def get_scan_processor(
    settings: Settings = Depends(get_settings),
    catalog: TierCatalog = Depends(get_catalog),
    registry: UnitRegistry = Depends(get_registry),
) -> ScanProcessor:
    return ScanProcessor(catalog, registry, settings)


def get_transfer_manager(settings: Settings = Depends(get_settings)) -> TransferOrderManager:
    return TransferOrderManager(settings)


def get_reconciliation(
    settings: Settings = Depends(get_settings),
    registry: UnitRegistry = Depends(get_registry),
) -> ReconciliationEngine:
    return ReconciliationEngine(registry, settings)
