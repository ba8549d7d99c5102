"""Lightweight relay-status endpoints polled by devices every ~30 seconds.

GET is a heartbeat returning only pending relay commands; POST records relay
acknowledgements. Neither touches load profiles.
"""

import json

import structlog
from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import Field, ValidationError

from meterhub.api.readings import device_error
from meterhub.core.deps import DbSession
from meterhub.services.ingestion_service import (
    DeviceMessage,
    InvalidApiKeyError,
    RelayStatePayload,
)
from meterhub.services.sync_status_service import SyncStatusService
from meterhub.services.time_bucketing import utcnow

logger = structlog.get_logger()

router = APIRouter()


class RelayAcknowledgement(DeviceMessage):
    """Relay states reported outside of an ingestion call."""

    api_key: str = Field(..., min_length=1)
    relay_states: list[RelayStatePayload] = Field(default_factory=list)


@router.get("")
async def poll_relay_commands(
    db: DbSession,
    api_key: str | None = Query(None, alias="apiKey"),
) -> JSONResponse:
    """Heartbeat: mark the device alive and return its pending commands."""
    server_time = utcnow()

    if not api_key:
        return device_error(status.HTTP_400_BAD_REQUEST, "apiKey is required", server_time)

    try:
        commands = await SyncStatusService(db).relay_heartbeat(api_key, server_time)
    except InvalidApiKeyError:
        return device_error(status.HTTP_401_UNAUTHORIZED, "Invalid API key", server_time)
    except Exception:
        logger.exception("Relay heartbeat failed")
        await db.rollback()
        return device_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", server_time)

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"commands": [command.to_dict() for command in commands]},
    )


@router.post("")
async def acknowledge_relay_states(request: Request, db: DbSession) -> JSONResponse:
    """Record the relay states the device has applied."""
    server_time = utcnow()

    try:
        body = await request.json()
        payload = RelayAcknowledgement.model_validate(body)
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError):
        return device_error(status.HTTP_400_BAD_REQUEST, "Malformed relay state payload", server_time)

    try:
        updated = await SyncStatusService(db).acknowledge_relays(
            payload.api_key, payload.relay_states, server_time
        )
    except InvalidApiKeyError:
        return device_error(status.HTTP_401_UNAUTHORIZED, "Invalid API key", server_time)
    except Exception:
        logger.exception("Relay acknowledgement failed")
        await db.rollback()
        return device_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", server_time)

    return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True, "updated": updated})
