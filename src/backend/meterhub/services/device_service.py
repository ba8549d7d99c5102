"""Energy meter device registry and relay configuration service."""

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

import structlog
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from meterhub.core.config import settings
from meterhub.core.security import generate_api_key
from meterhub.models.alarm import Alarm
from meterhub.models.billing import BillingProfile, MonthlyProfile
from meterhub.models.device import Device, DeviceRelay, DeviceStatus, DeviceType
from meterhub.models.load_profile import DailyLoadProfile
from meterhub.services.relay_reconciler import is_relay_verified, reported_pin

logger = structlog.get_logger()

THRESHOLD_FIELDS = ("min_voltage", "max_voltage", "max_current")
MUTABLE_FIELDS = ("device_name", "location", "status", "device_type")


class DeviceError(Exception):
    """Device-related errors."""
    pass


class DeviceNotFoundError(DeviceError):
    """No device with this id is visible to the caller."""
    pass


class DeviceAlreadyExistsError(DeviceError):
    """A device with this id is already registered."""
    pass


class RelayNotFoundError(DeviceError):
    """The device has no configured relay with this id."""
    pass


class DeviceService:
    """Service for device registration, thresholds and relay configuration.

    Operator-facing methods are scoped to the owning user; the device-facing
    lookup by API key is not.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def register_device(
        self,
        user_id: uuid.UUID,
        device_id: str,
        device_name: str,
        device_type: DeviceType = DeviceType.SINGLE_PHASE,
        location: str | None = None,
        firmware_version: str | None = None,
        min_voltage: float | None = None,
        max_voltage: float | None = None,
        max_current: float | None = None,
    ) -> Device:
        """Register a new device and generate its API key.

        Raises:
            DeviceAlreadyExistsError: If the device id is taken.
        """
        existing = await self.db.execute(select(Device.id).where(Device.device_id == device_id))
        if existing.scalar_one_or_none() is not None:
            raise DeviceAlreadyExistsError(f"Device {device_id} already exists")

        device = Device(
            id=uuid.uuid4(),
            device_id=device_id,
            user_id=user_id,
            device_name=device_name,
            device_type=device_type,
            location=location,
            firmware_version=firmware_version or "1.0.0",
            api_key=generate_api_key(),
            status=DeviceStatus.ACTIVE,
            min_voltage=settings.default_min_voltage if min_voltage is None else min_voltage,
            max_voltage=settings.default_max_voltage if max_voltage is None else max_voltage,
            max_current=settings.default_max_current if max_current is None else max_current,
            device_reported_count=0,
            device_reported_pins=[],
            relays=[],
        )

        self.db.add(device)
        await self.db.commit()
        await self.db.refresh(device)

        logger.info("Device registered", device_id=device_id, user_id=str(user_id))
        return device

    async def get_device_by_api_key(self, api_key: str) -> Device | None:
        """Look up the device presenting this API key."""
        if not api_key:
            return None
        result = await self.db.execute(select(Device).where(Device.api_key == api_key))
        return result.scalar_one_or_none()

    async def reload_device(self, device: Device) -> Device:
        """Re-read a device row, discarding any state loaded earlier in this session."""
        result = await self.db.execute(
            select(Device)
            .where(Device.id == device.id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def get_device(self, user_id: uuid.UUID, device_id: str) -> Device:
        """Get one of the user's devices.

        Raises:
            DeviceNotFoundError: If it does not exist or belongs to someone else.
        """
        result = await self.db.execute(
            select(Device).where(Device.device_id == device_id, Device.user_id == user_id)
        )
        device = result.scalar_one_or_none()
        if device is None:
            raise DeviceNotFoundError(f"Device {device_id} not found")
        return device

    async def list_devices(self, user_id: uuid.UUID) -> list[Device]:
        """All devices of a user, newest first."""
        result = await self.db.execute(
            select(Device)
            .where(Device.user_id == user_id)
            .order_by(Device.created_at.desc(), Device.device_id)
        )
        return list(result.scalars().all())

    async def update_device(self, user_id: uuid.UUID, device_id: str, **kwargs: Any) -> Device:
        """Update operator-owned fields; None values are left untouched.

        Identity and API key are never changed here.
        """
        device = await self.get_device(user_id, device_id)

        for key in (*MUTABLE_FIELDS, *THRESHOLD_FIELDS):
            value = kwargs.get(key)
            if value is not None:
                setattr(device, key, value)

        await self.db.commit()
        await self.db.refresh(device)

        logger.info("Device updated", device_id=device_id, fields=sorted(k for k, v in kwargs.items() if v is not None))
        return device

    async def delete_device(self, user_id: uuid.UUID, device_id: str, purge: bool = False) -> None:
        """Delete a device with its relays.

        Load profiles, billing rollups and alarms reference the device by id
        only and are kept unless `purge` is set.
        """
        device = await self.get_device(user_id, device_id)
        await self.db.delete(device)

        if purge:
            await self.db.execute(delete(Alarm).where(Alarm.device_id == device_id))
            await self.db.execute(delete(BillingProfile).where(BillingProfile.device_id == device_id))
            await self.db.execute(delete(MonthlyProfile).where(MonthlyProfile.device_id == device_id))
            profiles = await self.db.execute(
                select(DailyLoadProfile).where(DailyLoadProfile.device_id == device_id)
            )
            for profile in profiles.scalars().all():
                await self.db.delete(profile)

        await self.db.commit()
        logger.info("Device deleted", device_id=device_id, purge=purge)

    async def configure_relays(
        self,
        user_id: uuid.UUID,
        device_id: str,
        relays: Iterable[dict],
    ) -> Device:
        """Replace the configured relay list.

        Each item carries `id` and `name`. Relays whose id already existed keep
        their target/actual state; verified flag and pin are derived from the
        device's last self-description.

        Raises:
            DeviceError: If ids are not positive or not unique.
        """
        device = await self.get_device(user_id, device_id)
        requested = list(relays)

        ids = [int(item["id"]) for item in requested]
        if any(relay_id < 1 for relay_id in ids):
            raise DeviceError("Relay ids must be positive")
        if len(set(ids)) != len(ids):
            raise DeviceError("Relay ids must be unique")

        existing = {relay.relay_id: relay for relay in device.relays}
        configured: list[DeviceRelay] = []
        for item in requested:
            relay_id = int(item["id"])
            relay = existing.get(relay_id)
            if relay is None:
                relay = DeviceRelay(
                    relay_id=relay_id,
                    gpio_pin=0,
                    target_state=False,
                    actual_state=False,
                )
            relay.name = item.get("name") or f"Relay {relay_id}"
            relay.verified = is_relay_verified(relay_id, device.device_reported_count)
            relay.gpio_pin = reported_pin(relay_id, device.device_reported_pins or [], relay.gpio_pin or 0)
            configured.append(relay)

        device.relays = sorted(configured, key=lambda relay: relay.relay_id)
        await self.db.commit()
        await self.db.refresh(device)

        logger.info("Relays configured", device_id=device_id, relay_ids=sorted(ids))
        return device

    async def set_relay_target(
        self,
        user_id: uuid.UUID,
        device_id: str,
        relay_id: int,
        target_state: bool,
    ) -> DeviceRelay:
        """Record operator intent for one relay; the device picks it up on its next poll.

        Raises:
            RelayNotFoundError: If the relay is not configured.
        """
        device = await self.get_device(user_id, device_id)
        relay = device.get_relay(relay_id)
        if relay is None:
            raise RelayNotFoundError(f"Relay {relay_id} not found on device {device_id}")

        relay.target_state = target_state
        relay.last_state_change = datetime.now(timezone.utc)
        await self.db.commit()

        logger.info(
            "Relay target set",
            device_id=device_id,
            relay_id=relay_id,
            target_state=target_state,
            verified=relay.verified,
        )
        return relay
