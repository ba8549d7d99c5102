"""Finalized daily and monthly consumption rollups.

Both tables are written by the nightly finalization job; this service only
reads them for dashboard statistics.
"""

import uuid
from datetime import datetime

from sqlalchemy import String, Float, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from meterhub.models.base import Base, TimestampMixin


class BillingProfile(Base, TimestampMixin):
    """Finalized consumption summary for one device and one day."""

    __tablename__ = "billing_profiles"
    __table_args__ = (
        UniqueConstraint("device_id", "date_string", name="uq_billing_profiles_device_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    device_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    date_string: Mapped[str] = mapped_column(String(10), nullable=False, index=True)

    power_consumed_wh: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    power_consumed_kwh: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    max_voltage: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    min_voltage: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    max_current: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_voltage: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_current: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    entry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<BillingProfile(device_id={self.device_id}, date={self.date_string})>"


class MonthlyProfile(Base, TimestampMixin):
    """Monthly aggregate built from BillingProfiles."""

    __tablename__ = "monthly_profiles"
    __table_args__ = (
        UniqueConstraint("device_id", "month_string", name="uq_monthly_profiles_device_month"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    device_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    month: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    month_string: Mapped[str] = mapped_column(String(7), nullable=False, index=True)

    total_consumption_wh: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_consumption_kwh: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    days_recorded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    peak_day_consumption_kwh: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    peak_day_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    avg_daily_consumption_kwh: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    def __repr__(self) -> str:
        return f"<MonthlyProfile(device_id={self.device_id}, month={self.month_string})>"
