"""Daily load profile store.

Owns the per-device, per-day entry collection. Entries are upserted by entry
number (1..288): a resubmitted entry replaces the stored one in place, and the
rollups are recomputed from the full entry set afterwards, so retries and
corrections never accumulate.
"""

from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from meterhub.core.config import settings
from meterhub.models.load_profile import DailyLoadProfile, LoadProfileEntry

logger = structlog.get_logger()

MIN_ENTRY_NO = 1
MAX_ENTRY_NO = 288


class LoadProfileError(Exception):
    """Invalid entry for a day profile."""
    pass


class DailyLoadProfileService:
    """Fetch-or-create, upsert and rollup of day profiles."""

    def __init__(self, db: AsyncSession, readings_per_day: int | None = None):
        self.db = db
        self.readings_per_day = readings_per_day or settings.readings_per_day

    async def get_profile(self, device_id: str, day_profile_id: str) -> DailyLoadProfile | None:
        """Get the day profile for a device, or None if nothing was recorded that day."""
        result = await self.db.execute(
            select(DailyLoadProfile)
            .where(
                DailyLoadProfile.device_id == device_id,
                DailyLoadProfile.day_profile_id == day_profile_id,
            )
            # Reload entries even if a rollback expired the cached instance
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create_profile(
        self,
        device_id: str,
        day_profile_id: str,
        day_start: datetime,
    ) -> DailyLoadProfile:
        """Get the day profile, creating an empty one when missing."""
        profile = await self.get_profile(device_id, day_profile_id)
        if profile is not None:
            return profile

        profile = DailyLoadProfile(
            device_id=device_id,
            day_profile_id=day_profile_id,
            date=day_start,
            entries=[],
            total_power_consumed_wh=0.0,
            entry_count=0,
            is_complete=False,
            last_entry_no=0,
        )
        self.db.add(profile)
        logger.debug("Created day profile", device_id=device_id, day_profile_id=day_profile_id)
        return profile

    @staticmethod
    def upsert_entry(
        profile: DailyLoadProfile,
        entry_no: int,
        timestamp: datetime,
        *,
        accumulated_avg_power: float,
        max_avg_current: float,
        max_avg_voltage: float,
        min_avg_voltage: float,
        avg_current: float | None = None,
        avg_voltage: float | None = None,
    ) -> LoadProfileEntry:
        """Replace the entry with this number in place, or append it."""
        if not MIN_ENTRY_NO <= entry_no <= MAX_ENTRY_NO:
            raise LoadProfileError(
                f"entryNo must be between {MIN_ENTRY_NO} and {MAX_ENTRY_NO}, got {entry_no}"
            )

        values = {
            "timestamp": timestamp,
            "accumulated_avg_power": accumulated_avg_power,
            "max_avg_current": max_avg_current,
            "max_avg_voltage": max_avg_voltage,
            "min_avg_voltage": min_avg_voltage,
            "avg_current": avg_current,
            "avg_voltage": avg_voltage,
        }

        for entry in profile.entries:
            if entry.entry_no == entry_no:
                for key, value in values.items():
                    setattr(entry, key, value)
                return entry

        next_seq = max((entry.arrival_seq for entry in profile.entries), default=0) + 1
        entry = LoadProfileEntry(entry_no=entry_no, arrival_seq=next_seq, **values)
        profile.entries.append(entry)
        return entry

    def recompute_rollups(self, profile: DailyLoadProfile) -> None:
        """Recompute totals from the full entry set."""
        entries = profile.entries
        profile.entry_count = len(entries)
        profile.total_power_consumed_wh = sum(entry.accumulated_avg_power for entry in entries)
        profile.last_entry_no = max(
            [profile.last_entry_no or 0, *(entry.entry_no for entry in entries)]
        )
        # Entries are never deleted, so completion is sticky
        profile.is_complete = bool(profile.is_complete) or profile.entry_count >= self.readings_per_day

    async def record_entry(
        self,
        device_id: str,
        day_profile_id: str,
        day_start: datetime,
        entry_no: int,
        timestamp: datetime,
        **values: float | None,
    ) -> DailyLoadProfile:
        """Fetch-or-create the day profile, upsert one entry, recompute and persist."""
        profile = await self.get_or_create_profile(device_id, day_profile_id, day_start)
        self.upsert_entry(profile, entry_no, timestamp, **values)
        self.recompute_rollups(profile)
        await self.db.commit()
        return profile

    async def next_entry_no(self, device_id: str, day_profile_id: str) -> int:
        """Entry number the device should send next for that day."""
        profile = await self.get_profile(device_id, day_profile_id)
        return (profile.last_entry_no if profile else 0) + 1

