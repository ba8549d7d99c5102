"""Tests for liveness and readiness reporting."""

from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import SQLAlchemyError

from meterhub.core.config import settings
from meterhub.services.device_monitor_service import DeviceMonitorService
from meterhub.services.health_service import (
    VERSION,
    Check,
    ReadinessReport,
    check_meter_registry,
    check_offline_sweeper,
    liveness,
    readiness,
)


@pytest.fixture
def sweeper_enabled(monkeypatch):
    monkeypatch.setattr(settings, "device_monitor_enabled", True)


class TestReadinessReport:
    """Tests for report aggregation."""

    def test_ready_when_all_checks_pass(self):
        report = ReadinessReport(checks={"a": Check(ok=True, detail="fine"), "b": Check(ok=True, detail="fine")})
        assert report.ready is True
        assert report.to_dict()["status"] == "ready"

    def test_one_failing_check_fails_readiness(self):
        report = ReadinessReport(checks={"a": Check(ok=True, detail="fine"), "b": Check(ok=False, detail="down")})

        assert report.ready is False
        data = report.to_dict()
        assert data["status"] == "not_ready"
        assert data["version"] == VERSION
        assert data["checks"]["b"] == {"ok": False, "detail": "down"}

    def test_elapsed_only_when_measured(self):
        assert Check(ok=True, detail="x", elapsed_ms=1.25).to_dict() == {"ok": True, "detail": "x", "elapsedMs": 1.25}


class TestMeterRegistryCheck:
    """Tests for check_meter_registry."""

    async def test_counts_registered_meters(self, db_session, test_device):
        check = await check_meter_registry(db_session)

        assert check.ok is True
        assert check.detail == "1 meters registered"
        assert check.elapsed_ms is not None

    async def test_database_error(self):
        session = AsyncMock()
        session.scalar.side_effect = SQLAlchemyError("connection refused")

        check = await check_meter_registry(session)

        assert check.ok is False
        assert "connection refused" in check.detail


class TestOfflineSweeperCheck:
    """Tests for check_offline_sweeper."""

    def test_disabled_sweeper_is_fine(self):
        assert settings.device_monitor_enabled is False
        assert check_offline_sweeper(None) == Check(ok=True, detail="disabled")

    def test_enabled_but_missing(self, sweeper_enabled):
        assert check_offline_sweeper(None).ok is False

    async def test_enabled_and_running(self, sweeper_enabled, session_factory):
        monitor = DeviceMonitorService(session_factory, poll_interval=30)
        await monitor.start()
        try:
            check = check_offline_sweeper(monitor)
        finally:
            await monitor.stop()

        assert check.ok is True
        assert check.detail == "sweeping every 30s"
        assert check_offline_sweeper(monitor).ok is False


class TestHealthEndpoints:
    """Tests for /health and /health/ready."""

    def test_liveness_payload(self):
        data = liveness()
        assert data["status"] == "alive"
        assert data["uptimeSeconds"] >= 0
        assert data["serverTime"].endswith("Z")

    async def test_liveness(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["version"] == VERSION

    async def test_readiness(self, client: AsyncClient, test_device):
        response = await client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["checks"]["meterRegistry"]["detail"] == "1 meters registered"
        assert data["checks"]["offlineSweeper"]["detail"] == "disabled"

    async def test_not_ready_without_sweeper(self, client: AsyncClient, sweeper_enabled):
        response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["offlineSweeper"] == {"ok": False, "detail": "not running"}

    async def test_readiness_helper_against_sqlite(self, db_session):
        report = await readiness(db_session, None)
        assert report.ready is True
