from fastapi import APIRouter

from unitrack.app.api.v1.endpoints.health import router as health_router
from unitrack.app.api.v1.endpoints.locations import router as locations_router
from unitrack.app.api.v1.endpoints.tiers import router as tiers_router
from unitrack.app.api.v1.endpoints.units import router as units_router
from unitrack.app.api.v1.endpoints.scans import router as scans_router
from unitrack.app.api.v1.endpoints.transfers import router as transfers_router
from unitrack.app.api.v1.endpoints.reconciliation import router as reconciliation_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(locations_router, tags=["locations"])
router.include_router(tiers_router, tags=["tiers"])
router.include_router(units_router, tags=["units"])
router.include_router(scans_router, tags=["scans"])
router.include_router(transfers_router, tags=["transfers"])
router.include_router(reconciliation_router, tags=["reconciliation"])
