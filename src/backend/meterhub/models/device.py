"""Energy meter device model and its operator-configured relays."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import String, Float, Integer, Boolean, ForeignKey, UniqueConstraint, Index
from sqlalchemy import Enum as SQLEnum, DateTime, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meterhub.models.base import Base, TimestampMixin


class DeviceType(str, Enum):
    """Meter wiring type."""

    SINGLE_PHASE = "single_phase"
    THREE_PHASE = "three_phase"


class DeviceStatus(str, Enum):
    """Device operational status."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


class Device(Base, TimestampMixin):
    """ESP32 energy meter registered by an operator.

    The ingestion pipeline is the only writer of the liveness and relay
    actual-state fields; the operator API is the only writer of identity,
    threshold and relay target fields.
    """

    __tablename__ = "devices"
    __table_args__ = (
        Index("ix_devices_user_device", "user_id", "device_id"),
        Index("ix_devices_status_last_seen", "status", "last_seen"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Identity (device-chosen, e.g. "device_001")
    device_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    device_name: Mapped[str] = mapped_column(String(200), nullable=False)
    device_type: Mapped[DeviceType] = mapped_column(
        SQLEnum(DeviceType, values_callable=lambda x: [e.value for e in x]),
        default=DeviceType.SINGLE_PHASE,
        nullable=False,
    )
    firmware_version: Mapped[str] = mapped_column(String(50), default="1.0.0", nullable=False)
    location: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Sole device credential, generated once at registration
    api_key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)

    # Liveness
    status: Mapped[DeviceStatus] = mapped_column(
        SQLEnum(DeviceStatus, values_callable=lambda x: [e.value for e in x]),
        default=DeviceStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Thresholds
    min_voltage: Mapped[float] = mapped_column(Float, nullable=False)
    max_voltage: Mapped[float] = mapped_column(Float, nullable=False)
    max_current: Mapped[float] = mapped_column(Float, nullable=False)

    # Device self-description, overwritten wholesale on every deviceInfo payload
    device_reported_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    device_reported_pins: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    relay_last_verified: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    relays: Mapped[list["DeviceRelay"]] = relationship(
        "DeviceRelay",
        back_populates="device",
        cascade="all, delete-orphan",
        order_by="DeviceRelay.relay_id",
        lazy="selectin",
    )

    # Optimistic concurrency token
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Device(id={self.id}, device_id={self.device_id}, status={self.status})>"

    def get_relay(self, relay_id: int) -> "DeviceRelay | None":
        """Return the configured relay with the given operator id."""
        for relay in self.relays:
            if relay.relay_id == relay_id:
                return relay
        return None


class DeviceRelay(Base):
    """Operator-configured relay on a device (target vs reported state)."""

    __tablename__ = "device_relays"
    __table_args__ = (
        UniqueConstraint("device_pk", "relay_id", name="uq_device_relays_device_relay"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    device_pk: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    device: Mapped["Device"] = relationship("Device", back_populates="relays")

    # Operator-assigned, 1-based, stable across reconfiguration
    relay_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), default="Relay", nullable=False)
    gpio_pin: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    target_state: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    actual_state: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_state_change: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<DeviceRelay(relay_id={self.relay_id}, target={self.target_state}, "
            f"actual={self.actual_state}, verified={self.verified})>"
        )
