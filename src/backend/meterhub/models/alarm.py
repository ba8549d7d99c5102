"""Alarm model for threshold violations raised during ingestion."""

import uuid
from datetime import datetime
from enum import Enum, IntEnum

from sqlalchemy import String, Text, Float, Integer, Boolean, ForeignKey, DateTime, Index
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from meterhub.models.base import Base, TimestampMixin


class AlarmType(str, Enum):
    """Alarm classification."""

    OVER_VOLTAGE = "OVER_VOLTAGE"
    UNDER_VOLTAGE = "UNDER_VOLTAGE"
    OVER_CURRENT = "OVER_CURRENT"
    POWER_OUTAGE = "POWER_OUTAGE"
    DEVICE_OFFLINE = "DEVICE_OFFLINE"
    ANOMALY_DETECTED = "ANOMALY_DETECTED"


class SeverityCode(IntEnum):
    """Graded alarm urgency."""

    INFO = 1
    WARNING = 2
    CRITICAL = 3
    EMERGENCY = 4


class Alarm(Base, TimestampMixin):
    """Append-only alarm row; only acknowledgement fields are ever mutated."""

    __tablename__ = "alarms"
    __table_args__ = (
        Index("ix_alarms_device_datetime", "device_id", "datetime"),
        Index("ix_alarms_user_ack_datetime", "user_id", "acknowledged", "datetime"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Soft reference to Device.device_id (no cascade)
    device_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    # Timestamp of the reading that violated the threshold, not receipt time
    occurred_at: Mapped[datetime] = mapped_column(
        "datetime", DateTime(timezone=True), nullable=False, index=True
    )

    alarm_type: Mapped[AlarmType] = mapped_column(
        SQLEnum(AlarmType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        index=True,
    )
    severity_code: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold: Mapped[float] = mapped_column(Float, nullable=False)

    # Acknowledgement
    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Alarm(id={self.id}, device_id={self.device_id}, type={self.alarm_type})>"
