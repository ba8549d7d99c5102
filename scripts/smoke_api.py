#!/usr/bin/env python3
"""
MeterHub end-to-end smoke test against a running server.

Registers a throwaway device, plays the device side of the protocol (upload,
retransmit, relay poll, acknowledgement, sync status) and cleans up.

Run: python scripts/smoke_api.py <base_url> <operator_token>
Get a token with: python src/backend/scripts/init_master.py --token
"""

import json
import sys
import uuid
from dataclasses import dataclass

import httpx


@dataclass
class CheckResult:
    name: str
    passed: bool
    status_code: int
    message: str = ""


class SmokeTester:
    def __init__(self, base_url: str, token: str):
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}/api/v1"
        self.token = token
        self.results: list[CheckResult] = []
        self.client = httpx.Client(timeout=30.0)

    def _request(
        self,
        method: str,
        endpoint: str,
        data: dict | None = None,
        auth: bool = True,
    ) -> tuple[int, dict | str]:
        """Make API request and return (status_code, response_data)."""
        headers = {"Content-Type": "application/json"}
        if auth:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = self.client.request(method, f"{self.api_url}{endpoint}", json=data, headers=headers)
            try:
                return resp.status_code, resp.json()
            except json.JSONDecodeError:
                return resp.status_code, resp.text
        except httpx.RequestError as e:
            return 0, str(e)

    def check(
        self,
        name: str,
        method: str,
        endpoint: str,
        data: dict | None = None,
        expected_status: int = 200,
        auth: bool = True,
    ) -> dict | str | None:
        """Run one request and record the result."""
        status, response = self._request(method, endpoint, data, auth)
        passed = status == expected_status

        self.results.append(CheckResult(
            name=name,
            passed=passed,
            status_code=status,
            message=str(response)[:200] if not passed else "",
        ))

        symbol = "✓" if passed else "✗"
        print(f"  {symbol} {name} (HTTP {status})")
        if not passed:
            print(f"    Expected: {expected_status}, Got: {status}")
            print(f"    Response: {str(response)[:200]}")

        return response if passed else None

    def run_all(self) -> int:
        """Run the complete smoke sequence."""
        print("=" * 50)
        print("MeterHub Smoke Test")
        print(f"Base URL: {self.base_url}")
        print("=" * 50)

        print("\n[Health Check]")
        resp = self.client.get(f"{self.base_url}/health")
        self.results.append(CheckResult("Health", resp.status_code == 200, resp.status_code))
        print(f"  {'✓' if resp.status_code == 200 else '✗'} Health (HTTP {resp.status_code})")
        if resp.status_code != 200:
            return 1

        print("\n[Device Registry]")
        device_id = f"smoke_{uuid.uuid4().hex[:8]}"
        device = self.check(
            "Register device",
            "POST",
            "/devices",
            {"deviceId": device_id, "deviceName": "Smoke Test Meter"},
            expected_status=201,
        )
        if not isinstance(device, dict):
            return self.summary()
        api_key = device["apiKey"]

        self.check("Configure relays", "POST", f"/devices/{device_id}/relays",
                   {"relays": [{"id": 1, "name": "Light"}, {"id": 2, "name": "Fan"}]})

        print("\n[Device Protocol]")
        reading = {
            "offsetSeconds": 0,
            "entryNo": 1,
            "accumulatedAvgPower": 10.5,
            "maxAvgCurrent": 2.1,
            "maxAvgVoltage": 232.0,
            "minAvgVoltage": 228.0,
        }
        payload = {
            "apiKey": api_key,
            "readings": [reading],
            "deviceInfo": {"relayCount": 2, "relayPins": [16, 17]},
        }
        self.check("Upload reading", "POST", "/readings", payload, auth=False)
        self.check("Retransmit reading", "POST", "/readings", payload, auth=False)
        self.check("Reject unknown key", "POST", "/readings",
                   {"apiKey": "em_invalid", "readings": []}, expected_status=401, auth=False)

        self.check("Set relay target", "PUT", f"/devices/{device_id}/relays",
                   {"relayId": 1, "targetState": True})
        commands = self.check("Poll relay status", "GET", f"/relay-status?apiKey={api_key}", auth=False)
        if isinstance(commands, dict) and commands.get("commands") != [{"id": 1, "targetState": True}]:
            self.results.append(CheckResult("Relay command delivered", False, 200, str(commands)))
            print(f"  ✗ Relay command delivered: {commands}")
        self.check("Acknowledge relay", "POST", "/relay-status",
                   {"apiKey": api_key, "relayStates": [{"id": 1, "pin": 16, "state": True}]}, auth=False)
        self.check("Sync status", "GET", f"/readings?apiKey={api_key}", auth=False)

        print("\n[Dashboard]")
        self.check("Dashboard stats", "GET", f"/dashboard/stats?deviceId={device_id}")
        self.check("Realtime chart", "GET", f"/dashboard/chart?deviceId={device_id}&type=realtime")
        self.check("Alarm inbox", "GET", f"/dashboard/alarms?deviceId={device_id}")

        print("\n[Cleanup]")
        self.check("Delete device", "DELETE", f"/devices/{device_id}?purge=true", expected_status=204)

        return self.summary()

    def summary(self) -> int:
        print("\n" + "=" * 50)
        passed = sum(1 for r in self.results if r.passed)
        total = len(self.results)
        print(f"Results: {passed}/{total} checks passed")

        if passed == total:
            print("✓ All checks passed!")
            return 0
        print("✗ Some checks failed")
        for r in self.results:
            if not r.passed:
                print(f"  - {r.name}: HTTP {r.status_code}")
        return 1


def main():
    if len(sys.argv) < 3:
        print("Usage: python scripts/smoke_api.py <base_url> <operator_token>")
        sys.exit(2)
    tester = SmokeTester(sys.argv[1], sys.argv[2])
    sys.exit(tester.run_all())


if __name__ == "__main__":
    main()
