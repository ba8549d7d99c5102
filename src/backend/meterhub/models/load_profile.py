"""Daily load profile: one row per device per day, entries keyed by entry number."""

import uuid
from datetime import datetime

from sqlalchemy import (
    String,
    Float,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meterhub.models.base import Base, TimestampMixin


class DailyLoadProfile(Base, TimestampMixin):
    """Aggregate of all 5-minute entries one device reported for one day.

    Rollups are always recomputed from the full entry set, so resubmitting
    an entry with corrected values never double counts.
    """

    __tablename__ = "daily_load_profiles"
    __table_args__ = (
        UniqueConstraint("device_id", "day_profile_id", name="uq_daily_load_profiles_device_day"),
        Index("ix_daily_load_profiles_device_date", "device_id", "date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Soft reference to Device.device_id (no cascade)
    device_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    day_profile_id: Mapped[str] = mapped_column(String(10), nullable=False, index=True)

    total_power_consumed_wh: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    entry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_entry_no: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    entries: Mapped[list["LoadProfileEntry"]] = relationship(
        "LoadProfileEntry",
        back_populates="profile",
        cascade="all, delete-orphan",
        order_by="LoadProfileEntry.arrival_seq",
        lazy="selectin",
    )

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<DailyLoadProfile(device_id={self.device_id}, day={self.day_profile_id}, "
            f"entries={self.entry_count})>"
        )

    @property
    def entry_numbers(self) -> set[int]:
        return {entry.entry_no for entry in self.entries}

    @property
    def latest_entry(self) -> "LoadProfileEntry | None":
        """Most recently arrived entry."""
        return self.entries[-1] if self.entries else None


class LoadProfileEntry(Base):
    """One 5-minute interval sample inside a day profile."""

    __tablename__ = "load_profile_entries"
    __table_args__ = (
        UniqueConstraint("profile_id", "entry_no", name="uq_load_profile_entries_profile_entry"),
        CheckConstraint("entry_no >= 1 AND entry_no <= 288", name="ck_load_profile_entries_entry_no"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    profile_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("daily_load_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    profile: Mapped["DailyLoadProfile"] = relationship("DailyLoadProfile", back_populates="entries")

    entry_no: Mapped[int] = mapped_column(Integer, nullable=False)
    arrival_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Wh consumed during the window, not instantaneous power
    accumulated_avg_power: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    max_avg_current: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    max_avg_voltage: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    min_avg_voltage: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    avg_current: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_voltage: Mapped[float | None] = mapped_column(Float, nullable=True)

    def __repr__(self) -> str:
        return f"<LoadProfileEntry(entry_no={self.entry_no}, wh={self.accumulated_avg_power})>"
