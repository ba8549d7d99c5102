"""Device liveness sweeper: marks silent meters offline."""

import asyncio
from datetime import datetime, timezone, timedelta

import structlog
from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meterhub.models.device import Device, DeviceStatus

logger = structlog.get_logger()


class DeviceMonitorService:
    """
    Periodically marks ACTIVE devices OFFLINE once last_seen is too old.

    Runs as a background task started by the application lifespan. Devices in
    MAINTENANCE or INACTIVE are never touched; the next ingestion call or
    relay heartbeat flips an offline device back to ACTIVE.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        poll_interval: float = 60.0,
        offline_threshold_seconds: int = 900,
    ):
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self.offline_threshold = timedelta(seconds=offline_threshold_seconds)
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        """True while the sweep loop task is alive."""
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the monitoring loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop(), name="device_monitor")
        logger.info("Device monitor service started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop the monitoring loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Device monitor service stopped")

    async def _monitor_loop(self) -> None:
        """Main monitoring loop."""
        while self._running:
            try:
                await self.check_devices()
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Device monitor error")
                await asyncio.sleep(5)

    async def check_devices(self, now: datetime | None = None) -> list[str]:
        """Mark stale ACTIVE devices OFFLINE. Returns the affected device ids."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.offline_threshold
        stale = and_(
            Device.status == DeviceStatus.ACTIVE,
            Device.last_seen.is_not(None),
            Device.last_seen < cutoff,
        )

        async with self.session_factory() as db:
            result = await db.execute(select(Device.device_id).where(stale))
            device_ids = list(result.scalars().all())
            if not device_ids:
                return []

            # Conditional bulk update so a heartbeat landing in between wins
            await db.execute(
                update(Device)
                .where(Device.device_id.in_(device_ids), stale)
                .values(status=DeviceStatus.OFFLINE)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        for device_id in device_ids:
            logger.warning("Device marked offline", device_id=device_id, cutoff=cutoff.isoformat())
        return device_ids
