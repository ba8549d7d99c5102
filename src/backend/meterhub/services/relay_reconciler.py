"""Relay reconciliation between operator intent and device-reported state.

`reconcile_relays` is the single source of truth for which commands a device
receives; the ingestion response, the sync-status poll and the relay-status
heartbeat all call it.

Acknowledgements from the device overwrite `actual_state` unconditionally
(last write wins). Two interleaved requests from the same device can lose an
update here; devices poll serially and the ingestion path holds a per-device
lock, so this is not guarded further.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol, Sequence


class RelayLike(Protocol):
    relay_id: int
    target_state: bool
    actual_state: bool
    verified: bool


class RelayStateLike(Protocol):
    id: int
    pin: int | None
    state: bool


@dataclass(frozen=True)
class RelayCommand:
    """Instruction for the device to drive one relay to a state."""

    id: int
    target_state: bool

    def to_dict(self) -> dict:
        return {"id": self.id, "targetState": self.target_state}


def reconcile_relays(relays: Iterable[RelayLike]) -> list[RelayCommand]:
    """Commands for every verified relay whose target differs from its actual state."""
    return [
        RelayCommand(id=relay.relay_id, target_state=relay.target_state)
        for relay in relays
        if relay.verified and relay.target_state != relay.actual_state
    ]


def is_relay_verified(relay_id: int, reported_count: int) -> bool:
    """A relay exists on the device iff its id is within the reported count."""
    return 1 <= relay_id <= reported_count


def reported_pin(relay_id: int, reported_pins: Sequence[int], fallback: int) -> int:
    """GPIO pin the device reported for this relay id, or the fallback."""
    index = relay_id - 1
    if 0 <= index < len(reported_pins) and reported_pins[index] is not None:
        return int(reported_pins[index])
    return fallback


def apply_device_info(
    device,
    relay_count: int,
    relay_pins: Sequence[int],
    verified_at: datetime,
) -> None:
    """Overwrite the device self-description and re-derive every relay.

    Relay ids map to reported pin slots by id (id 1 -> first pin), so
    non-contiguous operator ids never shift onto another relay's pin.
    """
    device.device_reported_count = relay_count
    device.device_reported_pins = list(relay_pins)
    device.relay_last_verified = verified_at

    for relay in device.relays:
        relay.verified = is_relay_verified(relay.relay_id, relay_count)
        relay.gpio_pin = reported_pin(relay.relay_id, device.device_reported_pins, relay.gpio_pin)


def apply_relay_states(device, relay_states: Iterable[RelayStateLike]) -> int:
    """Record the device's reported relay states. Returns how many matched."""
    updated = 0
    for relay_state in relay_states:
        relay = device.get_relay(relay_state.id)
        if relay is None:
            continue
        relay.actual_state = relay_state.state
        if relay_state.pin is not None:
            relay.gpio_pin = relay_state.pin
        updated += 1
    return updated
