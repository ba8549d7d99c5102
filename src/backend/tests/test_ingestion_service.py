"""Tests for the reading ingestion pipeline."""

import asyncio
from datetime import datetime, timezone, timedelta

import pytest
from sqlalchemy import select

from conftest import make_reading
from meterhub.models.alarm import Alarm, AlarmType, SeverityCode
from meterhub.models.device import Device, DeviceStatus
from meterhub.services.device_service import DeviceService
from meterhub.services.ingestion_service import (
    IngestionResult,
    InvalidApiKeyError,
    InvalidPayloadError,
    ReadingIngestionService,
    device_locks,
    parse_payload,
)
from meterhub.services.load_profile_service import DailyLoadProfileService
from meterhub.services.time_bucketing import ensure_utc

SERVER_TIME = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def payload(api_key: str, readings: list, **extra):
    body = {"apiKey": api_key, "readings": readings}
    body.update(extra)
    return parse_payload(body)


class TestParsePayload:
    """Tests for request shape validation."""

    def test_minimal_payload(self):
        parsed = parse_payload({"apiKey": "em_abc", "readings": []})
        assert parsed.api_key == "em_abc"
        assert parsed.readings == []
        assert parsed.is_batch_sync is False
        assert parsed.device_info is None

    def test_missing_api_key(self):
        with pytest.raises(InvalidPayloadError, match="apiKey"):
            parse_payload({"readings": []})

    def test_readings_must_be_a_list(self):
        with pytest.raises(InvalidPayloadError, match="readings"):
            parse_payload({"apiKey": "em_abc", "readings": "nope"})

    def test_body_must_be_an_object(self):
        with pytest.raises(InvalidPayloadError):
            parse_payload([1, 2, 3])

    def test_oversized_batch_rejected(self):
        with pytest.raises(InvalidPayloadError, match="at most 288"):
            parse_payload({"apiKey": "em_abc", "readings": [make_reading(1)] * 289})

    def test_device_info_and_relay_states(self):
        parsed = parse_payload({
            "apiKey": "em_abc",
            "isBatchSync": True,
            "readings": [],
            "deviceInfo": {"relayCount": 2, "relayPins": [16, 17]},
            "relayStates": [{"id": 1, "pin": 16, "state": True}],
        })
        assert parsed.is_batch_sync is True
        assert parsed.device_info.relay_pins == [16, 17]
        assert parsed.relay_states[0].state is True


class TestIngestionResult:
    """Tests for the device response."""

    def _result(self, **overrides):
        data = {
            "server_time": SERVER_TIME,
            "current_day_profile_id": "2024-01-15",
            "next_entry_no": 1,
            "readings_received": 0,
            "readings_processed": 0,
        }
        data.update(overrides)
        return IngestionResult(**data)

    def test_heartbeat_is_success(self):
        assert self._result().success is True

    def test_all_failed_is_not_success(self):
        assert self._result(readings_received=2, errors=["a", "b"]).success is False

    def test_response_omits_empty_optional_fields(self):
        response = self._result().to_response()

        assert response == {
            "success": True,
            "serverTime": "2024-01-15T10:00:00.000Z",
            "currentDayProfileId": "2024-01-15",
            "nextEntryNo": 1,
            "readingsProcessed": 0,
        }


class TestIngest:
    """Tests for ReadingIngestionService.ingest."""

    async def test_unknown_api_key(self, db_session):
        service = ReadingIngestionService(db_session)

        with pytest.raises(InvalidApiKeyError):
            await service.ingest(payload("em_unknown", []), SERVER_TIME)

    async def test_heartbeat_without_readings(self, db_session, test_device):
        service = ReadingIngestionService(db_session)

        result = await service.ingest(payload(test_device.api_key, []), SERVER_TIME)

        assert result.success is True
        assert result.readings_processed == 0
        assert result.current_day_profile_id == "2024-01-15"
        assert result.next_entry_no == 1
        assert test_device.last_seen == SERVER_TIME
        assert test_device.status == DeviceStatus.ACTIVE

    async def test_offline_device_comes_back_active(self, db_session, test_device):
        test_device.status = DeviceStatus.OFFLINE
        await db_session.commit()

        await ReadingIngestionService(db_session).ingest(payload(test_device.api_key, []), SERVER_TIME)

        assert test_device.status == DeviceStatus.ACTIVE

    async def test_offset_reconstructs_timestamp(self, db_session, test_device):
        service = ReadingIngestionService(db_session)

        result = await service.ingest(
            payload(test_device.api_key, [make_reading(120, offset_seconds=300)]),
            SERVER_TIME,
        )

        assert result.readings_processed == 1
        assert result.next_entry_no == 121
        profile = await DailyLoadProfileService(db_session).get_profile("device_001", "2024-01-15")
        assert ensure_utc(profile.entries[0].timestamp) == datetime(2024, 1, 15, 9, 55, tzinfo=timezone.utc)

    async def test_offset_crossing_midnight(self, db_session, test_device):
        """A reading taken before midnight lands in the previous day's profile."""
        server_time = datetime(2024, 1, 15, 0, 2, tzinfo=timezone.utc)
        service = ReadingIngestionService(db_session)

        result = await service.ingest(
            payload(test_device.api_key, [make_reading(288, offset_seconds=600)]),
            server_time,
        )

        assert result.current_day_profile_id == "2024-01-14"
        profiles = DailyLoadProfileService(db_session)
        assert await profiles.get_profile("device_001", "2024-01-14") is not None
        assert await profiles.get_profile("device_001", "2024-01-15") is None

    async def test_batch_partial_failure(self, db_session, test_device):
        """One malformed sample is reported and the rest of the batch is kept."""
        readings = [
            make_reading(1, offset_seconds=600),
            {"entryNo": 2, "offsetSeconds": 300, "accumulatedAvgPower": "lots"},
            make_reading(3, offset_seconds=0),
        ]

        result = await ReadingIngestionService(db_session).ingest(
            payload(test_device.api_key, readings, isBatchSync=True), SERVER_TIME
        )

        assert result.readings_processed == 2
        assert result.success is True
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Entry 2:")
        profile = await DailyLoadProfileService(db_session).get_profile("device_001", "2024-01-15")
        assert profile.entry_numbers == {1, 3}

    async def test_all_readings_invalid(self, db_session, test_device):
        readings = [{"entryNo": 0}, {"foo": "bar"}]

        result = await ReadingIngestionService(db_session).ingest(
            payload(test_device.api_key, readings), SERVER_TIME
        )

        assert result.success is False
        assert result.readings_processed == 0
        assert result.errors[0].startswith("Entry 0:")
        assert result.errors[1].startswith("Entry ?:")
        assert "errors" in result.to_response()

    async def test_duplicate_entry_in_batch_later_wins(self, db_session, test_device):
        readings = [
            make_reading(1, accumulatedAvgPower=10.0),
            make_reading(1, accumulatedAvgPower=15.0),
        ]

        result = await ReadingIngestionService(db_session).ingest(
            payload(test_device.api_key, readings), SERVER_TIME
        )

        assert result.readings_processed == 2
        profile = await DailyLoadProfileService(db_session).get_profile("device_001", "2024-01-15")
        assert profile.entry_count == 1
        assert profile.total_power_consumed_wh == pytest.approx(15.0)

    async def test_retransmission_does_not_double_count(self, db_session, test_device):
        service = ReadingIngestionService(db_session)
        body = payload(test_device.api_key, [make_reading(1), make_reading(2)])

        await service.ingest(body, SERVER_TIME)
        result = await service.ingest(body, SERVER_TIME + timedelta(seconds=5))

        assert result.next_entry_no == 3
        profile = await DailyLoadProfileService(db_session).get_profile("device_001", "2024-01-15")
        assert profile.entry_count == 2
        assert profile.total_power_consumed_wh == pytest.approx(20.0)

    async def test_alarm_persisted_with_reading_timestamp(self, db_session, test_device):
        result = await ReadingIngestionService(db_session).ingest(
            payload(test_device.api_key, [make_reading(5, offset_seconds=300, maxAvgVoltage=280.0)]),
            SERVER_TIME,
        )

        assert result.readings_processed == 1
        alarms = (await db_session.execute(select(Alarm))).scalars().all()
        assert len(alarms) == 1
        alarm = alarms[0]
        assert alarm.device_id == "device_001"
        assert alarm.user_id == test_device.user_id
        assert alarm.alarm_type == AlarmType.OVER_VOLTAGE
        assert alarm.severity_code == SeverityCode.CRITICAL
        assert alarm.acknowledged is False
        assert ensure_utc(alarm.occurred_at) == SERVER_TIME - timedelta(seconds=300)

    async def test_every_breaching_sample_raises_alarms(self, db_session, test_device):
        readings = [
            make_reading(1, maxAvgVoltage=300.0, minAvgVoltage=150.0, maxAvgCurrent=30.0),
            make_reading(2, maxAvgCurrent=25.0),
        ]

        await ReadingIngestionService(db_session).ingest(payload(test_device.api_key, readings), SERVER_TIME)

        alarms = (await db_session.execute(select(Alarm))).scalars().all()
        assert len(alarms) == 4

    async def test_device_info_verifies_relays(self, db_session, test_user, relay_device):
        """Reporting three relays verifies the previously unverified relay 3."""
        assert [r.verified for r in relay_device.relays] == [True, True, False]

        await ReadingIngestionService(db_session).ingest(
            payload(
                relay_device.api_key,
                [],
                deviceInfo={"relayCount": 3, "relayPins": [16, 17, 18], "firmwareVersion": "2.1.0"},
            ),
            SERVER_TIME,
        )

        device = await DeviceService(db_session).get_device(test_user.id, "device_001")
        assert device.device_reported_count == 3
        assert [(r.relay_id, r.verified, r.gpio_pin) for r in device.relays] == [
            (1, True, 16),
            (2, True, 17),
            (3, True, 18),
        ]
        assert device.firmware_version == "2.1.0"

    async def test_pending_relay_commands_returned(self, db_session, test_user, relay_device):
        devices = DeviceService(db_session)
        await devices.set_relay_target(test_user.id, "device_001", 1, True)
        # Unverified relays never receive commands
        await devices.set_relay_target(test_user.id, "device_001", 3, True)

        result = await ReadingIngestionService(db_session).ingest(
            payload(relay_device.api_key, [make_reading(1)]), SERVER_TIME
        )

        assert result.to_response()["relayCommands"] == [{"id": 1, "targetState": True}]

    async def test_acknowledged_relays_are_not_commanded(self, db_session, test_user, relay_device):
        await DeviceService(db_session).set_relay_target(test_user.id, "device_001", 1, True)

        result = await ReadingIngestionService(db_session).ingest(
            payload(
                relay_device.api_key,
                [],
                relayStates=[{"id": 1, "pin": 16, "state": True}],
            ),
            SERVER_TIME,
        )

        assert result.relay_commands == []
        assert "relayCommands" not in result.to_response()
        assert relay_device.get_relay(1).actual_state is True


class TestDeviceLocks:
    """Tests for the per-device lock registry."""

    def test_same_device_same_lock(self):
        lock = device_locks.lock_for("device_lock_test")
        assert device_locks.lock_for("device_lock_test") is lock

    def test_different_devices_different_locks(self):
        a = device_locks.lock_for("device_a")
        b = device_locks.lock_for("device_b")
        assert a is not b


class TestConcurrentIngestion:
    """Same-device requests arriving together, each on its own session."""

    async def _ingest(self, file_session_factory, body: dict):
        async with file_session_factory() as session:
            return await ReadingIngestionService(session).ingest(parse_payload(body), SERVER_TIME)

    async def test_simultaneous_heartbeats_both_succeed(self, file_session_factory, shared_device):
        body = {"apiKey": shared_device.api_key, "readings": []}

        results = await asyncio.gather(
            self._ingest(file_session_factory, body),
            self._ingest(file_session_factory, body),
        )

        assert [r.success for r in results] == [True, True]
        async with file_session_factory() as session:
            device = await session.scalar(select(Device).where(Device.device_id == "shared_001"))
            assert device.status == DeviceStatus.ACTIVE
            assert ensure_utc(device.last_seen) == SERVER_TIME

    async def test_simultaneous_batches_land_in_one_profile(self, file_session_factory, shared_device):
        results = await asyncio.gather(
            self._ingest(file_session_factory, {"apiKey": shared_device.api_key, "readings": [make_reading(1)]}),
            self._ingest(file_session_factory, {"apiKey": shared_device.api_key, "readings": [make_reading(2)]}),
        )

        assert [r.readings_processed for r in results] == [1, 1]
        assert all(r.errors == [] for r in results)
        async with file_session_factory() as session:
            profile = await DailyLoadProfileService(session).get_profile("shared_001", "2024-01-15")
            assert profile.entry_numbers == {1, 2}

    async def test_device_info_and_heartbeat_race(self, file_session_factory, shared_device):
        info = {
            "apiKey": shared_device.api_key,
            "readings": [],
            "deviceInfo": {"relayCount": 2, "relayPins": [16, 17]},
        }

        results = await asyncio.gather(
            self._ingest(file_session_factory, info),
            self._ingest(file_session_factory, {"apiKey": shared_device.api_key, "readings": []}),
        )

        assert [r.success for r in results] == [True, True]
        async with file_session_factory() as session:
            device = await session.scalar(select(Device).where(Device.device_id == "shared_001"))
            assert device.device_reported_pins == [16, 17]
