"""Device registry and relay control API endpoints (operator facing)."""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from meterhub.core.deps import CurrentUser, DbSession
from meterhub.models.device import Device, DeviceRelay, DeviceStatus, DeviceType
from meterhub.services.device_service import (
    DeviceAlreadyExistsError,
    DeviceError,
    DeviceNotFoundError,
    DeviceService,
    RelayNotFoundError,
)

router = APIRouter()


# ==================== Schemas ====================

class CamelModel(BaseModel):
    """Dashboard payloads use camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ThresholdsSchema(CamelModel):
    """Safe limits; on update every field is optional."""
    min_voltage: float | None = Field(None, gt=0)
    max_voltage: float | None = Field(None, gt=0)
    max_current: float | None = Field(None, gt=0)


class DeviceCreate(CamelModel):
    """Register device request."""
    device_id: str = Field(..., min_length=1, max_length=100)
    device_name: str = Field(..., min_length=1, max_length=200)
    device_type: DeviceType = DeviceType.SINGLE_PHASE
    location: str | None = Field(None, max_length=200)
    firmware_version: str | None = Field(None, max_length=50)
    thresholds: ThresholdsSchema | None = None


class DeviceUpdate(CamelModel):
    """Update device request. Identity and API key cannot be changed."""
    device_name: str | None = Field(None, min_length=1, max_length=200)
    device_type: DeviceType | None = None
    location: str | None = Field(None, max_length=200)
    status: DeviceStatus | None = None
    thresholds: ThresholdsSchema | None = None


class RelayResponse(CamelModel):
    """Configured relay."""
    id: int
    name: str
    gpio_pin: int
    target_state: bool
    actual_state: bool
    verified: bool
    last_state_change: datetime | None = None


class RelayInfoResponse(CamelModel):
    """Operator relay configuration plus the device self-description."""
    device_reported_count: int
    device_reported_pins: list[int]
    last_verified: datetime | None = None
    relays: list[RelayResponse]


class RelayConfigItem(CamelModel):
    id: int = Field(..., ge=1)
    name: str | None = Field(None, max_length=100)


class RelayConfigRequest(CamelModel):
    """Replace the configured relay list."""
    relays: list[RelayConfigItem]

    @field_validator("relays")
    @classmethod
    def unique_ids(cls, v: list[RelayConfigItem]) -> list[RelayConfigItem]:
        ids = [item.id for item in v]
        if len(set(ids)) != len(ids):
            raise ValueError("relay ids must be unique")
        return v


class RelayTargetRequest(CamelModel):
    """Set the desired state of one relay."""
    relay_id: int
    target_state: bool


class DeviceResponse(CamelModel):
    """Device response."""
    id: str
    device_id: str
    device_name: str
    device_type: str
    firmware_version: str
    location: str | None = None
    status: str
    api_key: str
    last_seen: datetime | None = None
    thresholds: ThresholdsSchema
    relay_info: RelayInfoResponse
    created_at: datetime | None = None


# ==================== Helpers ====================

def relay_to_response(relay: DeviceRelay) -> RelayResponse:
    """Convert DeviceRelay model to response."""
    return RelayResponse(
        id=relay.relay_id,
        name=relay.name,
        gpio_pin=relay.gpio_pin,
        target_state=relay.target_state,
        actual_state=relay.actual_state,
        verified=relay.verified,
        last_state_change=relay.last_state_change,
    )


def relay_info_to_response(device: Device) -> RelayInfoResponse:
    return RelayInfoResponse(
        device_reported_count=device.device_reported_count,
        device_reported_pins=list(device.device_reported_pins or []),
        last_verified=device.relay_last_verified,
        relays=[relay_to_response(relay) for relay in device.relays],
    )


def device_to_response(device: Device) -> DeviceResponse:
    """Convert device model to response."""
    return DeviceResponse(
        id=str(device.id),
        device_id=device.device_id,
        device_name=device.device_name,
        device_type=device.device_type.value,
        firmware_version=device.firmware_version,
        location=device.location,
        status=device.status.value,
        api_key=device.api_key,
        last_seen=device.last_seen,
        thresholds=ThresholdsSchema(
            min_voltage=device.min_voltage,
            max_voltage=device.max_voltage,
            max_current=device.max_current,
        ),
        relay_info=relay_info_to_response(device),
        created_at=device.created_at,
    )


def _not_found(e: DeviceError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# ==================== Endpoints ====================

@router.get("", response_model=list[DeviceResponse])
async def list_devices(db: DbSession, current_user: CurrentUser) -> list[DeviceResponse]:
    """List the current user's devices, newest first."""
    devices = await DeviceService(db).list_devices(current_user.id)
    return [device_to_response(device) for device in devices]


@router.post("", response_model=DeviceResponse, status_code=status.HTTP_201_CREATED)
async def register_device(
    data: DeviceCreate,
    db: DbSession,
    current_user: CurrentUser,
) -> DeviceResponse:
    """Register a new device. The API key in the response is the device's only credential."""
    thresholds = data.thresholds or ThresholdsSchema()
    try:
        device = await DeviceService(db).register_device(
            user_id=current_user.id,
            device_id=data.device_id,
            device_name=data.device_name,
            device_type=data.device_type,
            location=data.location,
            firmware_version=data.firmware_version,
            min_voltage=thresholds.min_voltage,
            max_voltage=thresholds.max_voltage,
            max_current=thresholds.max_current,
        )
    except DeviceAlreadyExistsError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Device ID already registered")

    return device_to_response(device)


@router.get("/{device_id}", response_model=DeviceResponse)
async def get_device(device_id: str, db: DbSession, current_user: CurrentUser) -> DeviceResponse:
    """Get one device."""
    try:
        device = await DeviceService(db).get_device(current_user.id, device_id)
    except DeviceNotFoundError as e:
        raise _not_found(e)
    return device_to_response(device)


@router.put("/{device_id}", response_model=DeviceResponse)
async def update_device(
    device_id: str,
    data: DeviceUpdate,
    db: DbSession,
    current_user: CurrentUser,
) -> DeviceResponse:
    """Update name, location, status or thresholds."""
    thresholds = data.thresholds or ThresholdsSchema()
    try:
        device = await DeviceService(db).update_device(
            current_user.id,
            device_id,
            device_name=data.device_name,
            device_type=data.device_type,
            location=data.location,
            status=data.status,
            min_voltage=thresholds.min_voltage,
            max_voltage=thresholds.max_voltage,
            max_current=thresholds.max_current,
        )
    except DeviceNotFoundError as e:
        raise _not_found(e)
    return device_to_response(device)


@router.delete("/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_device(
    device_id: str,
    db: DbSession,
    current_user: CurrentUser,
    purge: bool = Query(False, description="Also delete load profiles, billing rollups and alarms"),
) -> Response:
    """Delete a device."""
    try:
        await DeviceService(db).delete_device(current_user.id, device_id, purge=purge)
    except DeviceNotFoundError as e:
        raise _not_found(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{device_id}/relays", response_model=RelayInfoResponse)
async def get_relays(device_id: str, db: DbSession, current_user: CurrentUser) -> RelayInfoResponse:
    """Get relay configuration and the device's last self-description."""
    try:
        device = await DeviceService(db).get_device(current_user.id, device_id)
    except DeviceNotFoundError as e:
        raise _not_found(e)
    return relay_info_to_response(device)


@router.post("/{device_id}/relays", response_model=RelayInfoResponse)
async def configure_relays(
    device_id: str,
    data: RelayConfigRequest,
    db: DbSession,
    current_user: CurrentUser,
) -> RelayInfoResponse:
    """Replace the configured relays (ids and names)."""
    try:
        device = await DeviceService(db).configure_relays(
            current_user.id,
            device_id,
            [item.model_dump() for item in data.relays],
        )
    except DeviceNotFoundError as e:
        raise _not_found(e)
    except DeviceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return relay_info_to_response(device)


@router.put("/{device_id}/relays", response_model=RelayResponse)
async def set_relay_target(
    device_id: str,
    data: RelayTargetRequest,
    db: DbSession,
    current_user: CurrentUser,
) -> RelayResponse:
    """Set a relay's target state; the device receives the command on its next poll."""
    try:
        relay = await DeviceService(db).set_relay_target(
            current_user.id, device_id, data.relay_id, data.target_state
        )
    except (DeviceNotFoundError, RelayNotFoundError) as e:
        raise _not_found(e)
    return relay_to_response(relay)
