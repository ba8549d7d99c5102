#!/usr/bin/env python3
"""Initialize the MeterHub master operator.

The application creates the master user at startup; this script does the same
for manual setups and prints a short-lived bearer token for tooling:

    python scripts/init_master.py [--token]

Credentials come from MASTER_USERNAME / MASTER_PASSWORD / MASTER_FULL_NAME.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from meterhub.core.config import settings
from meterhub.core.security import create_access_token
from meterhub.services.bootstrap_service import create_schema, ensure_master_user


async def init_master(print_token: bool = False):
    """Create schema and master user if missing."""
    print("Connecting to database...")

    engine = create_async_engine(settings.database_url, echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    try:
        await create_schema(engine)
        async with async_session() as db:
            user = await ensure_master_user(db)

        print(f"\nUsername: {user.username}")
        print(f"Role: {user.role.value}")

        if print_token:
            print(f"Token: {create_access_token(str(user.id))}")
    finally:
        await engine.dispose()

    print("\nMaster initialization complete!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Initialize MeterHub master operator")
    parser.add_argument("--token", action="store_true", help="Print a bearer token for the master user")
    args = parser.parse_args()
    asyncio.run(init_master(args.token))
