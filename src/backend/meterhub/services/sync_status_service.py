"""Lightweight device polls: full sync status and the relay-status heartbeat.

The full sync GET is read-only over the current day profile. The relay-status
GET is a deliberate heartbeat and does touch device liveness; its POST
variant records relay acknowledgements without any readings.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from meterhub.core.config import settings
from meterhub.models.device import DeviceStatus
from meterhub.services.ingestion_service import (
    ReadingIngestionService,
    RelayStatePayload,
    device_locks,
)
from meterhub.services.load_profile_service import DailyLoadProfileService
from meterhub.services.relay_reconciler import RelayCommand, apply_relay_states, reconcile_relays
from meterhub.services.time_bucketing import (
    day_key,
    minutes_since_midnight,
    reference_timezone,
    to_iso,
)

logger = structlog.get_logger()


@dataclass
class SyncStatus:
    """What the server holds for the device's current day."""

    server_time: datetime
    current_day_profile_id: str
    last_received_entry_no: int
    missing_entries: list[int] = field(default_factory=list)
    relay_commands: list[RelayCommand] = field(default_factory=list)

    @property
    def expected_next_entry_no(self) -> int:
        return self.last_received_entry_no + 1

    def to_response(self) -> dict:
        response: dict[str, Any] = {
            "success": True,
            "serverTime": to_iso(self.server_time),
            "currentDayProfileId": self.current_day_profile_id,
            "lastReceivedEntryNo": self.last_received_entry_no,
            "expectedNextEntryNo": self.expected_next_entry_no,
            "missingEntries": self.missing_entries,
        }
        if self.relay_commands:
            response["relayCommands"] = [command.to_dict() for command in self.relay_commands]
        return response


def expected_entry_count(
    server_time: datetime,
    tz=None,
    interval_minutes: int | None = None,
    readings_per_day: int | None = None,
) -> int:
    """Coarse estimate of how many entries the device should have sent today."""
    interval = interval_minutes or settings.interval_minutes
    per_day = readings_per_day or settings.readings_per_day
    return min(minutes_since_midnight(server_time, tz) // interval, per_day)


def find_missing_entries(received: set[int], expected: int, limit: int | None = None) -> list[int]:
    """Entry numbers in [1, expected] not yet received, ascending, capped at `limit`."""
    limit = settings.missing_entries_limit if limit is None else limit
    missing: list[int] = []
    for entry_no in range(1, expected + 1):
        if entry_no not in received:
            missing.append(entry_no)
            if len(missing) >= limit:
                break
    return missing


class SyncStatusService:
    """Device polls that never carry readings."""

    def __init__(self, db: AsyncSession, tz_name: str | None = None):
        self.db = db
        self.tz = reference_timezone(tz_name)
        self.ingestion = ReadingIngestionService(db, tz_name)
        self.profiles = DailyLoadProfileService(db)

    async def sync_status(self, api_key: str, server_time: datetime) -> SyncStatus:
        """Full sync report for today's profile. Mutates nothing.

        Raises:
            InvalidApiKeyError: If no device matches.
        """
        device = await self.ingestion.authenticate(api_key)

        current_day_profile_id = day_key(server_time, self.tz)
        profile = await self.profiles.get_profile(device.device_id, current_day_profile_id)

        received = profile.entry_numbers if profile else set()
        expected = expected_entry_count(server_time, self.tz)

        return SyncStatus(
            server_time=server_time,
            current_day_profile_id=current_day_profile_id,
            last_received_entry_no=profile.last_entry_no if profile else 0,
            missing_entries=find_missing_entries(received, expected),
            relay_commands=reconcile_relays(device.relays),
        )

    async def relay_heartbeat(self, api_key: str, server_time: datetime) -> list[RelayCommand]:
        """Mark the device alive and return its pending relay commands."""
        device = await self.ingestion.authenticate(api_key)

        async with device_locks.lock_for(device.device_id):
            device = await self.ingestion.devices.reload_device(device)
            device.last_seen = server_time
            device.status = DeviceStatus.ACTIVE
            await self.db.commit()
            commands = reconcile_relays(device.relays)

        logger.debug("Relay heartbeat", device_id=device.device_id, commands=len(commands))
        return commands

    async def acknowledge_relays(
        self,
        api_key: str,
        relay_states: list[RelayStatePayload],
        server_time: datetime,
    ) -> int:
        """Record relay states reported by the device. Returns how many matched."""
        device = await self.ingestion.authenticate(api_key)

        async with device_locks.lock_for(device.device_id):
            device = await self.ingestion.devices.reload_device(device)
            device.last_seen = server_time
            device.status = DeviceStatus.ACTIVE
            updated = apply_relay_states(device, relay_states)
            await self.db.commit()

        logger.info(
            "Relay states acknowledged",
            device_id=device.device_id,
            reported=len(relay_states),
            updated=updated,
        )
        return updated
