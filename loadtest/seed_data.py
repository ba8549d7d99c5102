#!/usr/bin/env python3
"""Seed a meter fleet for load testing.

Creates:
- The master operator (if missing)
- N devices owned by it, each with a generated API key and three relays

The API keys are written to `loadtest/fleet.json`, which the locustfile reads.
Run this script BEFORE the load test:

    python loadtest/seed_data.py --devices 200
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add backend to Python path
backend_path = Path(__file__).parent.parent / "src" / "backend"
sys.path.insert(0, str(backend_path))

from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from meterhub.core.config import get_settings
from meterhub.models.device import Device
from meterhub.services.bootstrap_service import create_schema, ensure_master_user
from meterhub.services.device_service import DeviceService

FLEET_FILE = Path(__file__).parent / "fleet.json"
DEVICE_PREFIX = "loadtest_meter_"


async def seed_fleet(session: AsyncSession, device_count: int) -> list[dict]:
    """Register the fleet, reusing devices that already exist."""
    master = await ensure_master_user(session)
    service = DeviceService(session)

    fleet = []
    for index in range(1, device_count + 1):
        device_id = f"{DEVICE_PREFIX}{index:04d}"
        result = await session.execute(select(Device).where(Device.device_id == device_id))
        device = result.scalar_one_or_none()

        if device is None:
            device = await service.register_device(
                user_id=master.id,
                device_id=device_id,
                device_name=f"Load Test Meter {index}",
                location="Load test rack",
            )
            await service.configure_relays(
                master.id,
                device_id,
                [{"id": relay_id, "name": f"Circuit {relay_id}"} for relay_id in (1, 2, 3)],
            )

        fleet.append({"deviceId": device.device_id, "apiKey": device.api_key})

    return fleet


async def main(device_count: int):
    """Main seeding function."""
    print("\n" + "="*80)
    print("MeterHub Load Test Fleet Seeding")
    print("="*80 + "\n")

    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    try:
        await create_schema(engine)
        async with async_session() as session:
            print(f"Registering {device_count} devices...")
            fleet = await seed_fleet(session, device_count)

        FLEET_FILE.write_text(json.dumps(fleet, indent=2))

        print("\n" + "="*80)
        print("Seeding Complete!")
        print("="*80)
        print(f"  - {len(fleet)} devices")
        print(f"  - API keys written to {FLEET_FILE}")
        print("="*80 + "\n")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed meter fleet for load testing")
    parser.add_argument("--devices", type=int, default=100, help="Number of meters to register")
    args = parser.parse_args()
    asyncio.run(main(args.devices))
