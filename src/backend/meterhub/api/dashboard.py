"""Dashboard API endpoints: statistics, chart series and the alarm inbox."""

import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import Field, model_validator

from meterhub.api.devices import CamelModel
from meterhub.core.deps import CurrentUser, DbSession
from meterhub.models.alarm import Alarm
from meterhub.services.alarm_service import AlarmNotFoundError, AlarmService
from meterhub.services.dashboard_service import ChartType, DashboardService
from meterhub.services.device_service import DeviceNotFoundError, DeviceService

router = APIRouter()


class DashboardStatsResponse(CamelModel):
    """Dashboard statistics response."""
    success: bool = True
    stats: dict[str, Any]


class ChartResponse(CamelModel):
    """Chart series response."""
    success: bool = True
    chart_type: ChartType
    data: list[dict[str, Any]]


class AlarmResponse(CamelModel):
    id: str
    device_id: str
    occurred_at: datetime = Field(..., alias="datetime")
    alarm_type: str
    severity_code: int
    message: str
    value: float
    threshold: float
    acknowledged: bool
    acknowledged_at: datetime | None = None


class AlarmStats(CamelModel):
    total: int
    unacknowledged: int


class AlarmListResponse(CamelModel):
    """Alarm inbox page."""
    success: bool = True
    alarms: list[AlarmResponse]
    stats: AlarmStats


class AcknowledgeRequest(CamelModel):
    """Acknowledge one alarm, or every open alarm of one device."""
    alarm_id: uuid.UUID | None = None
    acknowledge_all: bool = False
    device_id: str | None = None

    @model_validator(mode="after")
    def check_target(self) -> "AcknowledgeRequest":
        if self.acknowledge_all and not self.device_id:
            raise ValueError("deviceId is required with acknowledgeAll")
        if not self.acknowledge_all and self.alarm_id is None:
            raise ValueError("alarmId is required")
        return self


class AcknowledgeResponse(CamelModel):
    success: bool = True
    acknowledged_count: int = Field(..., description="Number of alarms acknowledged by this call")


def alarm_to_response(alarm: Alarm) -> AlarmResponse:
    """Convert Alarm model to response."""
    return AlarmResponse(
        id=str(alarm.id),
        device_id=alarm.device_id,
        occurred_at=alarm.occurred_at,
        alarm_type=alarm.alarm_type.value,
        severity_code=alarm.severity_code,
        message=alarm.message,
        value=alarm.value,
        threshold=alarm.threshold,
        acknowledged=alarm.acknowledged,
        acknowledged_at=alarm.acknowledged_at,
    )


@router.get("/stats", response_model=DashboardStatsResponse)
async def get_dashboard_stats(
    db: DbSession,
    current_user: CurrentUser,
    device_id: str = Query(..., alias="deviceId"),
) -> DashboardStatsResponse:
    """Get consumption statistics for one device."""
    try:
        stats = await DashboardService(db).get_stats(current_user.id, device_id)
    except DeviceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return DashboardStatsResponse(stats=stats)


@router.get("/chart", response_model=ChartResponse)
async def get_chart(
    db: DbSession,
    current_user: CurrentUser,
    device_id: str = Query(..., alias="deviceId"),
    chart_type: ChartType = Query(ChartType.REALTIME, alias="type"),
    date: str | None = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}$", description="Day for the daily chart"),
) -> ChartResponse:
    """Get chart data for consumption visualisation."""
    try:
        data = await DashboardService(db).get_chart(current_user.id, device_id, chart_type, date=date)
    except DeviceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return ChartResponse(chart_type=chart_type, data=data)


@router.get("/alarms", response_model=AlarmListResponse)
async def list_alarms(
    db: DbSession,
    current_user: CurrentUser,
    device_id: str | None = Query(None, alias="deviceId"),
    unacknowledged: bool = False,
    limit: int = Query(50, ge=1, le=500),
) -> AlarmListResponse:
    """List alarms, newest first."""
    if device_id:
        try:
            await DeviceService(db).get_device(current_user.id, device_id)
        except DeviceNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    service = AlarmService(db)
    alarms = await service.list_alarms(
        current_user.id,
        device_id=device_id,
        unacknowledged_only=unacknowledged,
        limit=limit,
    )
    total, open_count = await service.count_alarms(current_user.id, device_id=device_id)

    return AlarmListResponse(
        alarms=[alarm_to_response(alarm) for alarm in alarms],
        stats=AlarmStats(total=total, unacknowledged=open_count),
    )


@router.post("/alarms", response_model=AcknowledgeResponse)
async def acknowledge_alarms(
    data: AcknowledgeRequest,
    db: DbSession,
    current_user: CurrentUser,
) -> AcknowledgeResponse:
    """Acknowledge a single alarm or all open alarms of a device."""
    service = AlarmService(db)

    if data.acknowledge_all:
        try:
            await DeviceService(db).get_device(current_user.id, data.device_id)
        except DeviceNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        count = await service.acknowledge_device_alarms(data.device_id, current_user)
        return AcknowledgeResponse(acknowledged_count=count)

    try:
        alarm = await service.get_alarm(current_user.id, data.alarm_id)
        already_acknowledged = alarm.acknowledged
        await service.acknowledge_alarm(data.alarm_id, current_user)
    except AlarmNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return AcknowledgeResponse(acknowledged_count=0 if already_acknowledged else 1)
