"""Alarm inbox for operators: listing and acknowledgement."""

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, and_, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from meterhub.models.alarm import Alarm
from meterhub.models.user import User

logger = structlog.get_logger()


class AlarmError(Exception):
    """Alarm related errors."""
    pass


class AlarmNotFoundError(AlarmError):
    """No alarm with this id is visible to the caller."""
    pass


class AlarmService:
    """Service for the operator's alarm inbox.

    Alarms are created by the ingestion pipeline only; this service mutates
    nothing but the acknowledgement fields.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_alarm(self, user_id: uuid.UUID, alarm_id: uuid.UUID) -> Alarm:
        """Get one of the user's alarms."""
        result = await self.db.execute(
            select(Alarm).where(Alarm.id == alarm_id, Alarm.user_id == user_id)
        )
        alarm = result.scalar_one_or_none()
        if alarm is None:
            raise AlarmNotFoundError(f"Alarm {alarm_id} not found")
        return alarm

    async def list_alarms(
        self,
        user_id: uuid.UUID,
        device_id: str | None = None,
        unacknowledged_only: bool = False,
        limit: int = 50,
    ) -> list[Alarm]:
        """List alarms, newest reading time first."""
        conditions = [Alarm.user_id == user_id]
        if device_id:
            conditions.append(Alarm.device_id == device_id)
        if unacknowledged_only:
            conditions.append(Alarm.acknowledged.is_(False))

        query = (
            select(Alarm)
            .where(and_(*conditions))
            .order_by(Alarm.occurred_at.desc(), Alarm.created_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_alarms(self, user_id: uuid.UUID, device_id: str | None = None) -> tuple[int, int]:
        """Total and unacknowledged alarm counts."""
        conditions = [Alarm.user_id == user_id]
        if device_id:
            conditions.append(Alarm.device_id == device_id)

        total = await self.db.scalar(select(func.count(Alarm.id)).where(and_(*conditions)))
        unacknowledged = await self.db.scalar(
            select(func.count(Alarm.id)).where(and_(*conditions, Alarm.acknowledged.is_(False)))
        )
        return total or 0, unacknowledged or 0

    async def acknowledge_alarm(self, alarm_id: uuid.UUID, acknowledged_by: User) -> Alarm:
        """Acknowledge one alarm. Acknowledging twice keeps the first acknowledgement."""
        alarm = await self.get_alarm(acknowledged_by.id, alarm_id)
        if alarm.acknowledged:
            return alarm

        alarm.acknowledged = True
        alarm.acknowledged_at = datetime.now(timezone.utc)
        alarm.acknowledged_by_id = acknowledged_by.id

        await self.db.commit()
        await self.db.refresh(alarm)

        logger.info("Alarm acknowledged", alarm_id=str(alarm_id), user_id=str(acknowledged_by.id))
        return alarm

    async def acknowledge_device_alarms(self, device_id: str, acknowledged_by: User) -> int:
        """Acknowledge every open alarm of one device. Returns how many changed."""
        result = await self.db.execute(
            update(Alarm)
            .where(
                Alarm.user_id == acknowledged_by.id,
                Alarm.device_id == device_id,
                Alarm.acknowledged.is_(False),
            )
            .values(
                acknowledged=True,
                acknowledged_at=datetime.now(timezone.utc),
                acknowledged_by_id=acknowledged_by.id,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        count = result.rowcount or 0
        logger.info("Device alarms acknowledged", device_id=device_id, count=count)
        return count
