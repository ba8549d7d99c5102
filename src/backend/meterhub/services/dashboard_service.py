"""Dashboard read models: consumption statistics and chart series.

Today's numbers come from the live day profile; finished days and months come
from the finalized BillingProfile / MonthlyProfile rollups.
"""

import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from meterhub.models.alarm import Alarm
from meterhub.models.billing import BillingProfile, MonthlyProfile
from meterhub.models.device import Device
from meterhub.models.load_profile import LoadProfileEntry
from meterhub.services.device_service import DeviceService
from meterhub.services.load_profile_service import DailyLoadProfileService
from meterhub.services.time_bucketing import (
    day_key,
    hour_of,
    month_key,
    previous_day_key,
    previous_month_key,
    reference_timezone,
    to_iso,
    to_local,
    utcnow,
)


class ChartType(str, Enum):
    """Chart series the dashboard can request."""

    REALTIME = "realtime"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


CHART_WINDOW_DAYS = {
    ChartType.WEEKLY: 7,
    ChartType.MONTHLY: 30,
}


def _device_summary(device: Device) -> dict[str, Any]:
    return {
        "deviceId": device.device_id,
        "deviceName": device.device_name,
        "status": device.status.value,
        "lastSeen": to_iso(device.last_seen) if device.last_seen else None,
        "thresholds": {
            "minVoltage": device.min_voltage,
            "maxVoltage": device.max_voltage,
            "maxCurrent": device.max_current,
        },
        "relayInfo": {
            "deviceReportedCount": device.device_reported_count,
            "deviceReportedPins": list(device.device_reported_pins or []),
            "lastVerified": to_iso(device.relay_last_verified) if device.relay_last_verified else None,
            "relays": [
                {
                    "id": relay.relay_id,
                    "name": relay.name,
                    "gpioPin": relay.gpio_pin,
                    "targetState": relay.target_state,
                    "actualState": relay.actual_state,
                    "verified": relay.verified,
                }
                for relay in device.relays
            ],
        },
    }


def _current_readings(entry: LoadProfileEntry | None) -> dict[str, Any]:
    if entry is None:
        return {"voltage": 0, "current": 0, "power": 0, "lastUpdated": None}
    return {
        "voltage": entry.avg_voltage or entry.max_avg_voltage or 0,
        "current": entry.avg_current or entry.max_avg_current or 0,
        "power": entry.accumulated_avg_power or 0,
        "lastUpdated": to_iso(entry.timestamp),
    }


def hourly_buckets(entries: list[LoadProfileEntry], tz=None) -> list[dict[str, Any]]:
    """Group a day's entries into hour-of-day buckets, ascending by hour."""
    buckets: dict[int, dict[str, float]] = defaultdict(
        lambda: {"power": 0.0, "count": 0, "max_v": 0.0, "min_v": float("inf"), "max_i": 0.0}
    )
    for entry in entries:
        bucket = buckets[hour_of(entry.timestamp, tz)]
        bucket["power"] += entry.accumulated_avg_power
        bucket["count"] += 1
        bucket["max_v"] = max(bucket["max_v"], entry.max_avg_voltage)
        bucket["min_v"] = min(bucket["min_v"], entry.min_avg_voltage)
        bucket["max_i"] = max(bucket["max_i"], entry.max_avg_current)

    return [
        {
            "hour": hour,
            "label": f"{hour:02d}:00",
            "power": data["power"],
            "avgPower": data["power"] / data["count"],
            "maxVoltage": data["max_v"],
            "minVoltage": 0 if data["min_v"] == float("inf") else data["min_v"],
            "maxCurrent": data["max_i"],
        }
        for hour, data in sorted(buckets.items())
    ]


class DashboardService:
    """Read-only views over one device's aggregates, scoped to its owner."""

    def __init__(self, db: AsyncSession, tz_name: str | None = None):
        self.db = db
        self.tz = reference_timezone(tz_name)
        self.devices = DeviceService(db)
        self.profiles = DailyLoadProfileService(db)

    async def get_stats(
        self,
        user_id: uuid.UUID,
        device_id: str,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Consumption summary for today, yesterday, this and last month."""
        now = now or utcnow()
        device = await self.devices.get_device(user_id, device_id)

        today = await self.profiles.get_profile(device_id, day_key(now, self.tz))
        yesterday = await self._billing_profile(device_id, previous_day_key(now, self.tz))
        this_month = await self._monthly_profile(device_id, month_key(now, self.tz))
        last_month = await self._monthly_profile(device_id, previous_month_key(now, self.tz))

        active_alarms = await self.db.scalar(
            select(func.count(Alarm.id)).where(
                Alarm.device_id == device_id,
                Alarm.acknowledged.is_(False),
            )
        )

        today_kwh = (today.total_power_consumed_wh if today else 0.0) / 1000

        return {
            "device": _device_summary(device),
            "consumption": {
                "today": {
                    "consumptionKwh": today_kwh,
                    "entryCount": today.entry_count if today else 0,
                },
                "yesterday": {
                    "consumptionKwh": yesterday.power_consumed_kwh if yesterday else 0,
                    "entryCount": yesterday.entry_count if yesterday else 0,
                },
                "thisMonth": {
                    "consumptionKwh": (this_month.total_consumption_kwh if this_month else 0) + today_kwh,
                    "daysRecorded": (this_month.days_recorded if this_month else 0) + (1 if today else 0),
                },
                "lastMonth": {
                    "consumptionKwh": last_month.total_consumption_kwh if last_month else 0,
                    "daysRecorded": last_month.days_recorded if last_month else 0,
                },
            },
            "current": _current_readings(today.latest_entry if today else None),
            "activeAlarms": active_alarms or 0,
        }

    async def get_chart(
        self,
        user_id: uuid.UUID,
        device_id: str,
        chart_type: ChartType = ChartType.REALTIME,
        date: str | None = None,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Chart series for one device."""
        now = now or utcnow()
        await self.devices.get_device(user_id, device_id)

        if chart_type == ChartType.REALTIME:
            profile = await self.profiles.get_profile(device_id, day_key(now, self.tz))
            entries = sorted(profile.entries, key=lambda entry: entry.entry_no) if profile else []
            return [self._realtime_point(entry) for entry in entries]

        if chart_type == ChartType.DAILY:
            profile = await self.profiles.get_profile(device_id, date or day_key(now, self.tz))
            return hourly_buckets(profile.entries, self.tz) if profile else []

        since = now - timedelta(days=CHART_WINDOW_DAYS[chart_type])
        result = await self.db.execute(
            select(BillingProfile)
            .where(BillingProfile.device_id == device_id, BillingProfile.date >= since)
            .order_by(BillingProfile.date)
        )
        return [
            {
                "date": billing.date_string,
                "consumptionKwh": billing.power_consumed_kwh,
                "maxVoltage": billing.max_voltage,
                "minVoltage": billing.min_voltage,
                "maxCurrent": billing.max_current,
                "avgVoltage": billing.avg_voltage,
                "avgCurrent": billing.avg_current,
            }
            for billing in result.scalars().all()
        ]

    def _realtime_point(self, entry: LoadProfileEntry) -> dict[str, Any]:
        return {
            "time": to_local(entry.timestamp, self.tz).strftime("%H:%M"),
            "entryNo": entry.entry_no,
            "power": entry.accumulated_avg_power,
            "voltage": entry.avg_voltage or (entry.max_avg_voltage + entry.min_avg_voltage) / 2,
            "current": entry.avg_current or entry.max_avg_current,
            "maxVoltage": entry.max_avg_voltage,
            "minVoltage": entry.min_avg_voltage,
        }

    async def _billing_profile(self, device_id: str, date_string: str) -> BillingProfile | None:
        result = await self.db.execute(
            select(BillingProfile).where(
                BillingProfile.device_id == device_id,
                BillingProfile.date_string == date_string,
            )
        )
        return result.scalar_one_or_none()

    async def _monthly_profile(self, device_id: str, month_string: str) -> MonthlyProfile | None:
        result = await self.db.execute(
            select(MonthlyProfile).where(
                MonthlyProfile.device_id == device_id,
                MonthlyProfile.month_string == month_string,
            )
        )
        return result.scalar_one_or_none()
