"""Tests for the device offline sweeper."""

import asyncio
from datetime import datetime, timezone, timedelta

from sqlalchemy import select

from meterhub.models.device import Device, DeviceStatus
from meterhub.services.device_monitor_service import DeviceMonitorService
from meterhub.services.device_service import DeviceService

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


async def status_of(session_factory, device_id: str) -> DeviceStatus:
    async with session_factory() as db:
        return await db.scalar(select(Device.status).where(Device.device_id == device_id))


class TestCheckDevices:
    """Tests for DeviceMonitorService.check_devices."""

    async def test_stale_active_device_goes_offline(self, session_factory, db_session, test_device):
        test_device.last_seen = NOW - timedelta(minutes=20)
        await db_session.commit()

        monitor = DeviceMonitorService(session_factory, offline_threshold_seconds=900)
        marked = await monitor.check_devices(NOW)

        assert marked == ["device_001"]
        assert await status_of(session_factory, "device_001") == DeviceStatus.OFFLINE

    async def test_recent_device_stays_active(self, session_factory, db_session, test_device):
        test_device.last_seen = NOW - timedelta(minutes=5)
        await db_session.commit()

        marked = await DeviceMonitorService(session_factory).check_devices(NOW)

        assert marked == []
        assert await status_of(session_factory, "device_001") == DeviceStatus.ACTIVE

    async def test_never_seen_device_untouched(self, session_factory, test_device):
        assert await DeviceMonitorService(session_factory).check_devices(NOW) == []

    async def test_maintenance_device_untouched(self, session_factory, db_session, test_user, test_device):
        test_device.last_seen = NOW - timedelta(hours=5)
        await db_session.commit()
        await DeviceService(db_session).update_device(
            test_user.id, "device_001", status=DeviceStatus.MAINTENANCE
        )

        marked = await DeviceMonitorService(session_factory).check_devices(NOW)

        assert marked == []
        assert await status_of(session_factory, "device_001") == DeviceStatus.MAINTENANCE

    async def test_already_offline_not_reported_again(self, session_factory, db_session, test_device):
        test_device.last_seen = NOW - timedelta(hours=1)
        await db_session.commit()
        monitor = DeviceMonitorService(session_factory)

        assert await monitor.check_devices(NOW) == ["device_001"]
        assert await monitor.check_devices(NOW) == []


class TestLifecycle:
    """Start/stop of the background loop."""

    async def test_start_and_stop(self, session_factory):
        monitor = DeviceMonitorService(session_factory, poll_interval=0.01)

        await monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()

        assert monitor._task.done()
