"""Liveness and readiness reporting for MeterHub.

Readiness means meters can be served: the database answers, the meter
registry table is reachable, and the offline sweeper runs when it is
configured to.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from meterhub.core.config import settings
from meterhub.models.device import Device
from meterhub.services.device_monitor_service import DeviceMonitorService
from meterhub.services.time_bucketing import to_iso

logger = structlog.get_logger()

VERSION = "0.1.0"

STARTED_AT = time.monotonic()


@dataclass
class Check:
    """Outcome of one readiness check."""

    ok: bool
    detail: str
    elapsed_ms: float | None = None

    def to_dict(self) -> dict:
        data = {"ok": self.ok, "detail": self.detail}
        if self.elapsed_ms is not None:
            data["elapsedMs"] = self.elapsed_ms
        return data


@dataclass
class ReadinessReport:
    """Named checks; ready only when every one passes."""

    checks: dict[str, Check] = field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return all(check.ok for check in self.checks.values())

    def to_dict(self) -> dict:
        return {
            "status": "ready" if self.ready else "not_ready",
            "version": VERSION,
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
        }


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


async def check_meter_registry(session: AsyncSession) -> Check:
    """Count registered meters; fails when the database or devices table is unavailable."""
    started = time.perf_counter()
    try:
        count = await session.scalar(select(func.count()).select_from(Device))
    except SQLAlchemyError as e:
        logger.error("Meter registry unavailable", error=str(e))
        return Check(ok=False, detail=f"query failed: {str(e)[:100]}", elapsed_ms=_elapsed_ms(started))
    return Check(ok=True, detail=f"{count} meters registered", elapsed_ms=_elapsed_ms(started))


def check_offline_sweeper(monitor: DeviceMonitorService | None) -> Check:
    """The sweeper must be running unless it is switched off in settings."""
    if not settings.device_monitor_enabled:
        return Check(ok=True, detail="disabled")
    if monitor is None or not monitor.running:
        return Check(ok=False, detail="not running")
    return Check(ok=True, detail=f"sweeping every {monitor.poll_interval:g}s")


async def readiness(session: AsyncSession, monitor: DeviceMonitorService | None) -> ReadinessReport:
    report = ReadinessReport(
        checks={
            "meterRegistry": await check_meter_registry(session),
            "offlineSweeper": check_offline_sweeper(monitor),
        }
    )
    if not report.ready:
        logger.warning("Service not ready", checks=report.to_dict()["checks"])
    return report


def liveness() -> dict:
    return {
        "status": "alive",
        "version": VERSION,
        "uptimeSeconds": round(time.monotonic() - STARTED_AT, 1),
        "serverTime": to_iso(datetime.now(timezone.utc)),
    }
