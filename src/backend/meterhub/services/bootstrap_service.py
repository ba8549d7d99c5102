"""Startup initialisation: schema creation and the master operator.

Runs once from the application lifespan before any request is served, and
from `scripts/init_master.py` for manual setups.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from meterhub.core.config import settings
from meterhub.core.security import get_password_hash
from meterhub.models import Base
from meterhub.models.user import User, UserRole

logger = structlog.get_logger()


async def create_schema(engine: AsyncEngine) -> None:
    """Create every table that does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")


async def ensure_master_user(
    db: AsyncSession,
    username: str | None = None,
    password: str | None = None,
    full_name: str | None = None,
) -> User:
    """Create the master operator when missing. An existing one is left untouched."""
    username = username or settings.master_username

    result = await db.execute(select(User).where(User.username == username))
    user = result.scalar_one_or_none()
    if user is not None:
        logger.debug("Master user present", username=username)
        return user

    user = User(
        username=username,
        hashed_password=get_password_hash(password or settings.master_password),
        full_name=full_name or settings.master_full_name,
        role=UserRole.MASTER,
        can_create_users=True,
        is_active=True,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    logger.info("Master user created", username=username)
    return user
