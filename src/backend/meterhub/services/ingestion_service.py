"""Reading ingestion pipeline for ESP32 energy meters.

One call handles one device request:

1. authenticate the device by API key,
2. mark it alive and merge its self-description and relay acknowledgements
   (single commit),
3. process every reading in array order: reconstruct the absolute timestamp
   from the offset, upsert the entry into its day profile, evaluate
   thresholds and persist alarms,
4. report the next expected entry number and the relay commands still
   pending for the device.

A failing reading never aborts the batch. It is rolled back to the last
per-reading commit and reported in `errors`; the device resends it later and
the upsert-by-entry-number makes that safe.
"""

import asyncio
import time
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from meterhub.core.config import settings
from meterhub.core.metrics import observe_ingestion, record_alarm, record_readings
from meterhub.models.alarm import Alarm
from meterhub.models.device import Device, DeviceStatus
from meterhub.services.device_service import DeviceService
from meterhub.services.load_profile_service import DailyLoadProfileService
from meterhub.services.relay_reconciler import (
    RelayCommand,
    apply_device_info,
    apply_relay_states,
    reconcile_relays,
)
from meterhub.services.threshold_evaluator import Thresholds, evaluate_thresholds
from meterhub.services.time_bucketing import (
    day_key,
    reading_timestamp,
    reference_timezone,
    start_of_day,
    to_iso,
)

logger = structlog.get_logger()


# ==================== Device wire protocol ====================

class DeviceMessage(BaseModel):
    """Base for device payloads: camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReadingPayload(DeviceMessage):
    """One 5-minute sample as sent by the device."""

    offset_seconds: float = 0.0
    entry_no: int = Field(..., ge=1, le=288)
    accumulated_avg_power: float
    max_avg_current: float
    max_avg_voltage: float
    min_avg_voltage: float
    avg_current: float | None = None
    avg_voltage: float | None = None

    def entry_values(self) -> dict[str, float | None]:
        return {
            "accumulated_avg_power": self.accumulated_avg_power,
            "max_avg_current": self.max_avg_current,
            "max_avg_voltage": self.max_avg_voltage,
            "min_avg_voltage": self.min_avg_voltage,
            "avg_current": self.avg_current,
            "avg_voltage": self.avg_voltage,
        }


class DeviceInfoPayload(DeviceMessage):
    """Device self-description: how many relays it drives and on which pins."""

    relay_count: int = Field(0, ge=0)
    relay_pins: list[int] = Field(default_factory=list)
    firmware_version: str | None = None


class RelayStatePayload(DeviceMessage):
    """Relay state acknowledged by the device."""

    id: int
    pin: int | None = None
    state: bool


class ReadingsPayload(DeviceMessage):
    """Body of the ingestion POST.

    Readings stay raw here and are validated one at a time during
    processing, so a single malformed sample cannot reject the batch.
    """

    api_key: str = Field(..., min_length=1)
    is_batch_sync: bool = False
    readings: list[Any]
    device_info: DeviceInfoPayload | None = None
    relay_states: list[RelayStatePayload] | None = None

    @field_validator("readings")
    @classmethod
    def check_batch_size(cls, v: list[Any]) -> list[Any]:
        if len(v) > settings.max_readings_per_request:
            raise ValueError(
                f"at most {settings.max_readings_per_request} readings per request"
            )
        return v


# ==================== Errors ====================

class IngestionError(Exception):
    """Base exception for ingestion failures."""
    pass


class InvalidPayloadError(IngestionError):
    """Request body does not have the expected shape."""
    pass


class InvalidApiKeyError(IngestionError):
    """No device is registered with the presented API key."""
    pass


# ==================== Per-device serialisation ====================

class DeviceLockRegistry:
    """One asyncio.Lock per device, dropped once nobody holds or awaits it."""

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[device_id] = lock
        return lock


device_locks = DeviceLockRegistry()


# ==================== Result ====================

@dataclass
class IngestionResult:
    """Outcome of one ingestion request, rendered as the device response."""

    server_time: datetime
    current_day_profile_id: str
    next_entry_no: int
    readings_received: int
    readings_processed: int
    relay_commands: list[RelayCommand] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        # A heartbeat without readings is a successful call
        if self.readings_received == 0:
            return True
        return self.readings_processed > 0

    def to_response(self) -> dict:
        response: dict[str, Any] = {
            "success": self.success,
            "serverTime": to_iso(self.server_time),
            "currentDayProfileId": self.current_day_profile_id,
            "nextEntryNo": self.next_entry_no,
            "readingsProcessed": self.readings_processed,
        }
        if self.relay_commands:
            response["relayCommands"] = [command.to_dict() for command in self.relay_commands]
        if self.errors:
            response["errors"] = self.errors
        return response


def parse_payload(body: Any) -> ReadingsPayload:
    """Validate the request body shape.

    Raises:
        InvalidPayloadError: If required fields are missing or mistyped.
    """
    try:
        return ReadingsPayload.model_validate(body)
    except ValidationError as e:
        raise InvalidPayloadError(_describe_validation_error(e)) from e


def _describe_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "body"
    return f"{location}: {first.get('msg', 'invalid value')}"


def _entry_label(raw: Any) -> str:
    if isinstance(raw, dict) and raw.get("entryNo") is not None:
        return str(raw["entryNo"])
    return "?"


class ReadingIngestionService:
    """Runs the ingestion pipeline for one request."""

    def __init__(self, db: AsyncSession, tz_name: str | None = None):
        self.db = db
        self.tz = reference_timezone(tz_name)
        self.devices = DeviceService(db)
        self.profiles = DailyLoadProfileService(db)

    async def authenticate(self, api_key: str) -> Device:
        """Resolve the device presenting this API key.

        Raises:
            InvalidApiKeyError: If no device matches.
        """
        device = await self.devices.get_device_by_api_key(api_key)
        if device is None:
            raise InvalidApiKeyError("Invalid API key")
        return device

    async def ingest(self, payload: ReadingsPayload, server_time: datetime) -> IngestionResult:
        """Run the full pipeline. Device-level failures propagate, reading failures do not."""
        started = time.perf_counter()
        device = await self.authenticate(payload.api_key)

        async with device_locks.lock_for(device.device_id):
            device = await self.devices.reload_device(device)
            self._merge_device_state(device, payload, server_time)
            await self.db.commit()

            # Snapshot what the reading loop needs; a per-reading rollback expires the device
            device_id = device.device_id
            user_id = device.user_id
            thresholds = Thresholds.from_device(device)
            relay_commands = reconcile_relays(device.relays)

            processed, current_day_profile_id, errors = await self._process_readings(
                payload.readings, device_id, user_id, thresholds, server_time
            )
            next_entry_no = await self.profiles.next_entry_no(device_id, current_day_profile_id)

        result = IngestionResult(
            server_time=server_time,
            current_day_profile_id=current_day_profile_id,
            next_entry_no=next_entry_no,
            readings_received=len(payload.readings),
            readings_processed=processed,
            relay_commands=relay_commands,
            errors=errors,
        )

        record_readings(processed, len(errors))
        observe_ingestion(time.perf_counter() - started)
        logger.info(
            "Readings ingested",
            device_id=device_id,
            batch_sync=payload.is_batch_sync,
            received=result.readings_received,
            processed=processed,
            errors=len(errors),
            relay_commands=len(relay_commands),
            next_entry_no=next_entry_no,
        )
        return result

    def _merge_device_state(
        self,
        device: Device,
        payload: ReadingsPayload,
        server_time: datetime,
    ) -> None:
        """Liveness, self-description and relay acknowledgements (not yet committed)."""
        device.last_seen = server_time
        device.status = DeviceStatus.ACTIVE

        if payload.device_info is not None:
            info = payload.device_info
            apply_device_info(device, info.relay_count, info.relay_pins, server_time)
            if info.firmware_version:
                device.firmware_version = info.firmware_version

        if payload.relay_states:
            apply_relay_states(device, payload.relay_states)

    async def _process_readings(
        self,
        readings: list[Any],
        device_id: str,
        user_id: uuid.UUID,
        thresholds: Thresholds,
        server_time: datetime,
    ) -> tuple[int, str, list[str]]:
        """Process readings strictly in array order.

        Returns processed count, day key of the last processed reading (today
        when none succeeded) and the per-entry error strings.
        """
        processed = 0
        current_day_profile_id = day_key(server_time, self.tz)
        errors: list[str] = []

        for raw in readings:
            label = _entry_label(raw)
            try:
                reading = ReadingPayload.model_validate(raw)
            except ValidationError as e:
                errors.append(f"Entry {label}: {_describe_validation_error(e)}")
                logger.warning("Rejected malformed reading", device_id=device_id, entry=label)
                continue

            try:
                day_profile_id = await self._store_reading(
                    reading, device_id, user_id, thresholds, server_time
                )
            except Exception as e:
                await self.db.rollback()
                errors.append(f"Entry {reading.entry_no}: {e}")
                logger.warning(
                    "Failed to process reading",
                    device_id=device_id,
                    entry=reading.entry_no,
                    error=str(e),
                )
                continue

            processed += 1
            current_day_profile_id = day_profile_id

        return processed, current_day_profile_id, errors

    async def _store_reading(
        self,
        reading: ReadingPayload,
        device_id: str,
        user_id: uuid.UUID,
        thresholds: Thresholds,
        server_time: datetime,
    ) -> str:
        """Upsert one reading and raise its alarms. Returns the day key it landed in."""
        timestamp = reading_timestamp(server_time, reading.offset_seconds)
        day_profile_id = day_key(timestamp, self.tz)

        await self.profiles.record_entry(
            device_id,
            day_profile_id,
            start_of_day(timestamp, self.tz),
            reading.entry_no,
            timestamp,
            **reading.entry_values(),
        )

        drafts = evaluate_thresholds(reading, thresholds)
        if drafts:
            for draft in drafts:
                self.db.add(Alarm(
                    device_id=device_id,
                    user_id=user_id,
                    occurred_at=timestamp,
                    alarm_type=draft.alarm_type,
                    severity_code=int(draft.severity),
                    message=draft.message,
                    value=draft.value,
                    threshold=draft.threshold,
                    acknowledged=False,
                ))
            await self.db.commit()

            for draft in drafts:
                record_alarm(draft.alarm_type.value, int(draft.severity))
                logger.info(
                    "Threshold alarm raised",
                    device_id=device_id,
                    entry=reading.entry_no,
                    alarm_type=draft.alarm_type.value,
                    severity=int(draft.severity),
                    value=draft.value,
                    threshold=draft.threshold,
                )

        return day_profile_id
