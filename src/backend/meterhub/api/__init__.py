"""API Routes Module."""

from fastapi import APIRouter

from meterhub.api import (
    readings,
    relay_status,
    devices,
    dashboard,
)

router = APIRouter()

router.include_router(readings.router, prefix="/readings", tags=["Device Ingestion"])
router.include_router(relay_status.router, prefix="/relay-status", tags=["Device Relay Status"])
router.include_router(devices.router, prefix="/devices", tags=["Devices"])
router.include_router(dashboard.router, prefix="/dashboard", tags=["Dashboard"])
