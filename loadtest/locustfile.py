"""Locust load test suite for the MeterHub backend.

Simulates a fleet of ESP32 energy meters:
- MeterDevice (90%): posts 5-minute batches, occasionally retransmits the
  previous batch unchanged (idempotent upsert under load), polls relay status
  and sync status
- DashboardOperator (10%): reads stats and charts, toggles relays

Run `python loadtest/seed_data.py` first; it writes the API keys this file
reads from `loadtest/fleet.json`.

Target metrics:
- p95 ingestion latency < 200ms
- zero 5xx responses on retransmitted batches
"""

import json
import os
import random
from itertools import count
from pathlib import Path

from locust import task, between, events
from locust.contrib.fasthttp import FastHttpUser

FLEET_FILE = Path(__file__).parent / "fleet.json"
FLEET: list[dict] = json.loads(FLEET_FILE.read_text()) if FLEET_FILE.exists() else []
_fleet_index = count()

OPERATOR_TOKEN_ENV = "METERHUB_OPERATOR_TOKEN"


# ==================== Test Data Generators ====================

def generate_reading(entry_no: int, offset_seconds: int = 0) -> dict:
    """Generate one realistic 5-minute reading around 230V."""
    voltage = random.gauss(231, 4)
    current = abs(random.gauss(6, 3))
    return {
        "offsetSeconds": offset_seconds,
        "entryNo": entry_no,
        "accumulatedAvgPower": round(voltage * current / 12, 2),  # Wh over 5 minutes
        "maxAvgCurrent": round(current * 1.1, 2),
        "maxAvgVoltage": round(voltage + abs(random.gauss(2, 1)), 1),
        "minAvgVoltage": round(voltage - abs(random.gauss(2, 1)), 1),
        "avgCurrent": round(current, 2),
        "avgVoltage": round(voltage, 1),
    }


def generate_batch(first_entry_no: int, size: int) -> list[dict]:
    """A batch of consecutive readings, newest last (offset 0)."""
    readings = []
    for index in range(size):
        entry_no = first_entry_no + index
        if entry_no > 288:
            break
        readings.append(generate_reading(entry_no, offset_seconds=(size - 1 - index) * 300))
    return readings


# ==================== User Classes ====================

class MeterDevice(FastHttpUser):
    """One physical meter.

    Weight: 90% of traffic
    Behavior:
    - Posts readings with the nextEntryNo the server last returned
    - Retransmits the previous batch now and then (network retry)
    - Polls relay status frequently, acknowledges commands it receives
    """

    weight = 9
    wait_time = between(0.5, 2)

    def on_start(self):
        """Claim a device from the seeded fleet."""
        if not FLEET:
            raise RuntimeError(f"{FLEET_FILE} not found, run loadtest/seed_data.py first")
        device = FLEET[next(_fleet_index) % len(FLEET)]
        self.device_id = device["deviceId"]
        self.api_key = device["apiKey"]
        self.next_entry_no = 1
        self.last_batch: list[dict] = []
        self.relay_states = {1: False, 2: False, 3: False}

    def _post_readings(self, readings: list[dict], name: str):
        payload = {
            "apiKey": self.api_key,
            "isBatchSync": len(readings) > 1,
            "readings": readings,
            "deviceInfo": {"relayCount": 3, "relayPins": [16, 17, 18]},
            "relayStates": [
                {"id": relay_id, "pin": 15 + relay_id, "state": state}
                for relay_id, state in self.relay_states.items()
            ],
        }
        with self.client.post("/api/v1/readings", json=payload, name=name, catch_response=True) as response:
            if response.status_code != 200:
                response.failure(f"status {response.status_code}")
                return
            data = response.json()
            self.next_entry_no = data.get("nextEntryNo", self.next_entry_no)
            for command in data.get("relayCommands", []):
                self.relay_states[command["id"]] = command["targetState"]

    @task(10)
    def upload_batch(self):
        """Upload the next batch of readings - primary task."""
        if self.next_entry_no > 288:
            self.next_entry_no = 1
        self.last_batch = generate_batch(self.next_entry_no, random.choice([1, 1, 1, 3, 6]))
        self._post_readings(self.last_batch, "POST /readings")

    @task(2)
    def retransmit_batch(self):
        """Resend the previous batch unchanged."""
        if self.last_batch:
            self._post_readings(self.last_batch, "POST /readings (retransmit)")

    @task(6)
    def poll_relay_status(self):
        """Heartbeat poll for relay commands."""
        with self.client.get(
            f"/api/v1/relay-status?apiKey={self.api_key}",
            name="GET /relay-status",
            catch_response=True,
        ) as response:
            if response.status_code != 200:
                response.failure(f"status {response.status_code}")
                return
            commands = response.json().get("commands", [])

        if commands:
            for command in commands:
                self.relay_states[command["id"]] = command["targetState"]
            self.client.post(
                "/api/v1/relay-status",
                json={
                    "apiKey": self.api_key,
                    "relayStates": [
                        {"id": command["id"], "state": command["targetState"]} for command in commands
                    ],
                },
                name="POST /relay-status",
            )

    @task(1)
    def sync_status(self):
        """Full sync check for missing entries."""
        self.client.get(f"/api/v1/readings?apiKey={self.api_key}", name="GET /readings (sync)")


class DashboardOperator(FastHttpUser):
    """Operator watching the dashboard.

    Weight: 10% of traffic
    Requires a bearer token in METERHUB_OPERATOR_TOKEN (see scripts/init_master.py).
    """

    weight = 1
    wait_time = between(2, 5)

    def on_start(self):
        token = os.getenv(OPERATOR_TOKEN_ENV, "")
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}

    def _device_id(self) -> str | None:
        return random.choice(FLEET)["deviceId"] if FLEET else None

    @task(5)
    def view_stats(self):
        device_id = self._device_id()
        if device_id:
            self.client.get(
                f"/api/v1/dashboard/stats?deviceId={device_id}",
                headers=self.headers,
                name="GET /dashboard/stats",
            )

    @task(3)
    def view_realtime_chart(self):
        device_id = self._device_id()
        if device_id:
            self.client.get(
                f"/api/v1/dashboard/chart?deviceId={device_id}&type=realtime",
                headers=self.headers,
                name="GET /dashboard/chart",
            )

    @task(1)
    def toggle_relay(self):
        device_id = self._device_id()
        if device_id:
            self.client.put(
                f"/api/v1/devices/{device_id}/relays",
                json={"relayId": random.randint(1, 3), "targetState": random.choice([True, False])},
                headers=self.headers,
                name="PUT /devices/{id}/relays",
            )


# ==================== Event Handlers ====================

@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    """Print test configuration at start."""
    print("\n" + "="*80)
    print("MeterHub Load Test Starting")
    print("="*80)
    print(f"Target host: {environment.host}")
    print(f"Fleet size: {len(FLEET)} devices")
    print(f"User classes: MeterDevice (90%), DashboardOperator (10%)")
    print("="*80 + "\n")


@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    """Print test summary at completion."""
    print("\n" + "="*80)
    print("MeterHub Load Test Complete")
    print("="*80)

    stats = environment.stats
    print(f"Total requests: {stats.total.num_requests}")
    print(f"Total failures: {stats.total.num_failures}")
    print(f"Average response time: {stats.total.avg_response_time:.2f}ms")
    print(f"Requests/sec: {stats.total.total_rps:.2f}")

    if stats.total.num_requests > 0:
        print(f"\nResponse Time Percentiles:")
        print(f"  50th: {stats.total.get_response_time_percentile(0.5):.2f}ms")
        print(f"  95th: {stats.total.get_response_time_percentile(0.95):.2f}ms")
        print(f"  99th: {stats.total.get_response_time_percentile(0.99):.2f}ms")

    print("="*80 + "\n")
