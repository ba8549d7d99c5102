"""Tests for the device registry service."""

import re

import pytest
from sqlalchemy import func, select

from conftest import make_reading
from meterhub.models.alarm import Alarm
from meterhub.models.device import Device, DeviceRelay, DeviceStatus
from meterhub.models.load_profile import DailyLoadProfile
from meterhub.services.device_service import (
    DeviceAlreadyExistsError,
    DeviceError,
    DeviceNotFoundError,
    DeviceService,
    RelayNotFoundError,
)
from meterhub.services.ingestion_service import ReadingIngestionService, parse_payload
from meterhub.services.time_bucketing import utcnow

API_KEY_PATTERN = re.compile(r"^em_[0-9a-f]{48}$")


class TestRegisterDevice:
    """Tests for device registration."""

    async def test_register_applies_defaults(self, db_session, test_user):
        device = await DeviceService(db_session).register_device(
            user_id=test_user.id,
            device_id="device_010",
            device_name="Garage",
        )

        assert device.user_id == test_user.id
        assert device.status == DeviceStatus.ACTIVE
        assert (device.min_voltage, device.max_voltage, device.max_current) == (207.0, 253.0, 20.0)
        assert device.firmware_version == "1.0.0"
        assert device.relays == []
        assert API_KEY_PATTERN.match(device.api_key)

    async def test_register_with_thresholds(self, db_session, test_user):
        device = await DeviceService(db_session).register_device(
            user_id=test_user.id,
            device_id="device_011",
            device_name="Workshop",
            min_voltage=210.0,
            max_voltage=250.0,
            max_current=32.0,
        )
        assert (device.min_voltage, device.max_voltage, device.max_current) == (210.0, 250.0, 32.0)

    async def test_duplicate_device_id(self, db_session, test_device, other_user):
        """Device ids are global, not per user."""
        with pytest.raises(DeviceAlreadyExistsError):
            await DeviceService(db_session).register_device(
                user_id=other_user.id,
                device_id="device_001",
                device_name="Copy",
            )

    async def test_api_keys_are_unique(self, db_session, test_user):
        service = DeviceService(db_session)
        a = await service.register_device(test_user.id, "device_a", "A")
        b = await service.register_device(test_user.id, "device_b", "B")
        assert a.api_key != b.api_key

    async def test_lookup_by_api_key(self, db_session, test_device):
        service = DeviceService(db_session)
        assert (await service.get_device_by_api_key(test_device.api_key)).device_id == "device_001"
        assert await service.get_device_by_api_key("em_nope") is None
        assert await service.get_device_by_api_key("") is None


class TestOwnership:
    """Operator access is scoped to the owner."""

    async def test_get_own_device(self, db_session, test_user, test_device):
        device = await DeviceService(db_session).get_device(test_user.id, "device_001")
        assert device.id == test_device.id

    async def test_other_user_cannot_see_device(self, db_session, other_user, test_device):
        with pytest.raises(DeviceNotFoundError):
            await DeviceService(db_session).get_device(other_user.id, "device_001")

    async def test_list_devices_only_own(self, db_session, test_user, other_user, test_device):
        service = DeviceService(db_session)
        await service.register_device(other_user.id, "device_002", "Other")

        mine = await service.list_devices(test_user.id)
        assert [d.device_id for d in mine] == ["device_001"]


class TestUpdateDevice:
    """Tests for update_device."""

    async def test_update_thresholds_and_name(self, db_session, test_user, test_device):
        device = await DeviceService(db_session).update_device(
            test_user.id,
            "device_001",
            device_name="Renamed",
            max_voltage=250.0,
            min_voltage=None,
        )

        assert device.device_name == "Renamed"
        assert device.max_voltage == 250.0
        assert device.min_voltage == 207.0

    async def test_api_key_cannot_be_changed(self, db_session, test_user, test_device):
        original = test_device.api_key

        device = await DeviceService(db_session).update_device(
            test_user.id, "device_001", api_key="em_hijack"
        )

        assert device.api_key == original
        assert device.device_id == "device_001"

    async def test_maintenance_status(self, db_session, test_user, test_device):
        device = await DeviceService(db_session).update_device(
            test_user.id, "device_001", status=DeviceStatus.MAINTENANCE
        )
        assert device.status == DeviceStatus.MAINTENANCE


class TestDeleteDevice:
    """Tests for delete_device."""

    async def _ingest_alarming_reading(self, db_session, device):
        await ReadingIngestionService(db_session).ingest(
            parse_payload({"apiKey": device.api_key, "readings": [make_reading(1, maxAvgVoltage=300.0)]}),
            utcnow(),
        )

    async def test_delete_keeps_history(self, db_session, test_user, relay_device):
        await self._ingest_alarming_reading(db_session, relay_device)

        await DeviceService(db_session).delete_device(test_user.id, "device_001")

        assert await db_session.scalar(select(func.count()).select_from(Device)) == 0
        assert await db_session.scalar(select(func.count()).select_from(DeviceRelay)) == 0
        assert await db_session.scalar(select(func.count()).select_from(DailyLoadProfile)) == 1
        assert await db_session.scalar(select(func.count()).select_from(Alarm)) == 1

    async def test_delete_with_purge(self, db_session, test_user, test_device):
        await self._ingest_alarming_reading(db_session, test_device)

        await DeviceService(db_session).delete_device(test_user.id, "device_001", purge=True)

        assert await db_session.scalar(select(func.count()).select_from(DailyLoadProfile)) == 0
        assert await db_session.scalar(select(func.count()).select_from(Alarm)) == 0

    async def test_delete_other_users_device(self, db_session, other_user, test_device):
        with pytest.raises(DeviceNotFoundError):
            await DeviceService(db_session).delete_device(other_user.id, "device_001")


class TestRelayConfiguration:
    """Tests for configure_relays / set_relay_target."""

    async def test_verification_follows_reported_count(self, relay_device):
        assert [(r.relay_id, r.name, r.verified, r.gpio_pin) for r in relay_device.relays] == [
            (1, "Light", True, 16),
            (2, "Fan", True, 17),
            (3, "Heater", False, 0),
        ]

    async def test_reconfigure_keeps_existing_state(self, db_session, test_user, relay_device):
        service = DeviceService(db_session)
        await service.set_relay_target(test_user.id, "device_001", 1, True)

        device = await service.configure_relays(
            test_user.id,
            "device_001",
            [{"id": 4, "name": "Pump"}, {"id": 1, "name": "Porch Light"}],
        )

        assert [r.relay_id for r in device.relays] == [1, 4]
        light = device.get_relay(1)
        assert light.name == "Porch Light"
        assert light.target_state is True
        assert device.get_relay(4).verified is False

    async def test_duplicate_relay_ids_rejected(self, db_session, test_user, test_device):
        with pytest.raises(DeviceError, match="unique"):
            await DeviceService(db_session).configure_relays(
                test_user.id, "device_001", [{"id": 1, "name": "A"}, {"id": 1, "name": "B"}]
            )

    async def test_non_positive_relay_id_rejected(self, db_session, test_user, test_device):
        with pytest.raises(DeviceError, match="positive"):
            await DeviceService(db_session).configure_relays(test_user.id, "device_001", [{"id": 0}])

    async def test_default_relay_name(self, db_session, test_user, test_device):
        device = await DeviceService(db_session).configure_relays(test_user.id, "device_001", [{"id": 2}])
        assert device.relays[0].name == "Relay 2"

    async def test_set_target_on_unknown_relay(self, db_session, test_user, relay_device):
        with pytest.raises(RelayNotFoundError):
            await DeviceService(db_session).set_relay_target(test_user.id, "device_001", 9, True)

    async def test_set_target_stamps_change(self, db_session, test_user, relay_device):
        relay = await DeviceService(db_session).set_relay_target(test_user.id, "device_001", 2, True)

        assert relay.target_state is True
        assert relay.actual_state is False
        assert relay.last_state_change is not None
