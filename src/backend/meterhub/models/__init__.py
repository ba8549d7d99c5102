"""MeterHub Database Models."""

from meterhub.models.base import Base, TimestampMixin
from meterhub.models.user import User, UserRole
from meterhub.models.device import Device, DeviceRelay, DeviceType, DeviceStatus
from meterhub.models.load_profile import DailyLoadProfile, LoadProfileEntry
from meterhub.models.alarm import Alarm, AlarmType, SeverityCode
from meterhub.models.billing import BillingProfile, MonthlyProfile

__all__ = [
    "Base",
    "TimestampMixin",
    "User",
    "UserRole",
    "Device",
    "DeviceRelay",
    "DeviceType",
    "DeviceStatus",
    "DailyLoadProfile",
    "LoadProfileEntry",
    "Alarm",
    "AlarmType",
    "SeverityCode",
    "BillingProfile",
    "MonthlyProfile",
]
