"""Device ingestion endpoints.

POST uploads readings (and optionally relay acknowledgements and the device
self-description); GET is the read-only full sync status. Every response,
including failures, carries `serverTime` so the device can keep its clock
estimate in sync.
"""

import json
from datetime import datetime

import structlog
from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse

from meterhub.core.deps import DbSession
from meterhub.services.ingestion_service import (
    InvalidApiKeyError,
    InvalidPayloadError,
    ReadingIngestionService,
    parse_payload,
)
from meterhub.services.sync_status_service import SyncStatusService
from meterhub.services.time_bucketing import to_iso, utcnow

logger = structlog.get_logger()

router = APIRouter()


def device_error(status_code: int, message: str, server_time: datetime) -> JSONResponse:
    """Failure response for a device; still carries the server clock."""
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, "serverTime": to_iso(server_time)},
    )


@router.post("")
async def upload_readings(request: Request, db: DbSession) -> JSONResponse:
    """Accept a batch of readings from a device."""
    server_time = utcnow()

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return device_error(status.HTTP_400_BAD_REQUEST, "Malformed JSON body", server_time)

    try:
        payload = parse_payload(body)
        result = await ReadingIngestionService(db).ingest(payload, server_time)
    except InvalidPayloadError as e:
        logger.warning("Rejected ingestion payload", error=str(e))
        return device_error(status.HTTP_400_BAD_REQUEST, f"Invalid payload: {e}", server_time)
    except InvalidApiKeyError:
        logger.warning("Ingestion with unknown API key", client=request.client.host if request.client else None)
        return device_error(status.HTTP_401_UNAUTHORIZED, "Invalid API key", server_time)
    except Exception:
        logger.exception("Ingestion failed")
        await db.rollback()
        return device_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", server_time)

    return JSONResponse(status_code=status.HTTP_200_OK, content=result.to_response())


@router.get("")
async def get_sync_status(
    db: DbSession,
    api_key: str | None = Query(None, alias="apiKey"),
) -> JSONResponse:
    """Report what the server holds for today so the device can fill gaps."""
    server_time = utcnow()

    if not api_key:
        return device_error(status.HTTP_400_BAD_REQUEST, "apiKey is required", server_time)

    try:
        sync_status = await SyncStatusService(db).sync_status(api_key, server_time)
    except InvalidApiKeyError:
        return device_error(status.HTTP_401_UNAUTHORIZED, "Invalid API key", server_time)
    except Exception:
        logger.exception("Sync status failed")
        return device_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", server_time)

    return JSONResponse(status_code=status.HTTP_200_OK, content=sync_status.to_response())
