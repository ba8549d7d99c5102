"""MeterHub Services Module."""

from meterhub.services.device_service import DeviceService, DeviceError
from meterhub.services.load_profile_service import DailyLoadProfileService, LoadProfileError
from meterhub.services.ingestion_service import (
    ReadingIngestionService,
    IngestionError,
    InvalidApiKeyError,
    InvalidPayloadError,
)
from meterhub.services.sync_status_service import SyncStatusService
from meterhub.services.alarm_service import AlarmService, AlarmError
from meterhub.services.dashboard_service import DashboardService, ChartType
from meterhub.services.device_monitor_service import DeviceMonitorService

__all__ = [
    "DeviceService",
    "DeviceError",
    "DailyLoadProfileService",
    "LoadProfileError",
    "ReadingIngestionService",
    "IngestionError",
    "InvalidApiKeyError",
    "InvalidPayloadError",
    "SyncStatusService",
    "AlarmService",
    "AlarmError",
    "DashboardService",
    "ChartType",
    "DeviceMonitorService",
]
