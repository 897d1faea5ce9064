from __future__ import annotations
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Request, Response, status
from starlette.concurrency import run_in_threadpool
from .models import (
    Sample, PresenceView, IngestRequest, IngestResponse, DeviceMessageCreate,
    QueuedResponse, DeviceMessage, DeviceSummary, HealthResponse, ErrorResponse,
)
from .service import TelemetryService
from .config import HISTORY_DEFAULT_LIMIT


router = APIRouter()


def get_service(request: Request) -> TelemetryService:
    return request.app.state.service


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns service status, storage reachability and live-state counters",
    tags=["Health"]
)
def health(service: TelemetryService = Depends(get_service)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(**service.health())


@router.post(
    "/api/ingest",
    response_model=IngestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a reading",
    description="Devices push {device_id, temp, fan?, mode?}. Updates the live view and stores the reading.",
    responses={
        201: {"description": "Reading accepted"},
        400: {"description": "Missing or invalid device_id or temp"},
        500: {"model": ErrorResponse, "description": "Storage error"}
    },
    tags=["Ingest"]
)
async def ingest(
    body: IngestRequest,
    request: Request,
    service: TelemetryService = Depends(get_service),
) -> IngestResponse:
    # the audit copy is the JSON as sent, before any coercion
    raw = await request.json()
    await run_in_threadpool(service.ingest, body, raw)
    return IngestResponse(status="ok")


@router.get(
    "/api/data",
    response_model=List[Sample],
    summary="Live samples",
    description="Most recent samples held in memory, oldest first",
    tags=["Live"]
)
def live_data(service: TelemetryService = Depends(get_service)) -> List[Sample]:
    return service.live_samples()


@router.get(
    "/api/live-devices",
    response_model=List[PresenceView],
    summary="Live devices",
    description="Devices that reported within the TTL window, most recently seen first",
    tags=["Live"]
)
def live_devices(service: TelemetryService = Depends(get_service)) -> List[PresenceView]:
    return service.live_devices()


@router.get(
    "/api/db-data",
    response_model=List[Sample],
    summary="Stored history",
    description="Most recent stored samples, optionally for one device, returned oldest first",
    responses={500: {"model": ErrorResponse, "description": "Storage error"}},
    tags=["History"]
)
def db_data(
    limit: int = Query(default=HISTORY_DEFAULT_LIMIT, ge=1, description="Number of samples (clamped to the configured maximum)"),
    device_id: Optional[str] = Query(default=None, description="Only samples from this device"),
    service: TelemetryService = Depends(get_service),
) -> List[Sample]:
    return service.history(limit, device_id=device_id)


@router.get(
    "/devices",
    response_model=List[DeviceSummary],
    summary="Registered devices",
    description="Every registered device with its last three readings",
    tags=["Devices"]
)
def devices(service: TelemetryService = Depends(get_service)) -> List[DeviceSummary]:
    return service.list_devices()


@router.post(
    "/api/device-message",
    response_model=QueuedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Queue a command",
    description="Queue a params payload for a device to pick up on its next poll",
    responses={
        201: {"description": "Command queued"},
        400: {"description": "Missing device_id or params"},
        500: {"model": ErrorResponse, "description": "Storage error"}
    },
    tags=["Mailbox"]
)
def queue_device_message(body: DeviceMessageCreate, service: TelemetryService = Depends(get_service)) -> QueuedResponse:
    msg_id = service.enqueue_command(body.device_id, body.params)
    return QueuedResponse(status="queued", id=msg_id)


@router.get(
    "/api/device-message/{device_id}",
    response_model=DeviceMessage,
    summary="Poll for a command",
    description="Oldest queued command for the device. Consumed unless peek=1.",
    responses={
        200: {"description": "Command returned"},
        204: {"description": "Nothing queued"},
        500: {"model": ErrorResponse, "description": "Storage error"}
    },
    tags=["Mailbox"]
)
def poll_device_message(
    device_id: str,
    peek: Optional[str] = Query(default=None, description="Set to 1 to look without consuming"),
    service: TelemetryService = Depends(get_service),
):
    msg = service.poll_command(device_id, peek=peek == "1")
    if msg is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return msg
