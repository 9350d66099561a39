"""
Safety endpoints
================

GET      /api/v1/safety/no-shows/expired            -- arrivals past their deadline
GET|POST /api/v1/safety/no-shows/process            -- sweep them (cron target)
GET      /api/v1/safety/cooldown?event_id=&rider_name=  -- caller's cooldown
POST     /api/v1/safety/consents                    -- accept the terms
GET      /api/v1/safety/consents?event_id=          -- consent log
POST     /api/v1/safety/emergencies                 -- raise an alert
GET      /api/v1/safety/emergencies?event_id=&active_only=
PATCH    /api/v1/safety/emergencies/{id}/resolve
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import (
    client_origin,
    get_db,
    publish_committed,
    rider_hash_for,
)
from src.api.middleware import limiter
from src.api.schemas import (
    ConsentRequest,
    ConsentResponse,
    CooldownResponse,
    EmergencyCreateRequest,
    EmergencyResolveRequest,
    EmergencyResponse,
    ExpiredRideResponse,
    NoShowOutcomeResponse,
    SweepResponse,
)
from src.infrastructure.database import async_session_factory
from src.services.consent import ConsentService
from src.services.emergency import EmergencyService
from src.services.safety import SafetyService, run_no_show_sweep

router = APIRouter(prefix="/safety", tags=["safety"])


@router.get(
    "/no-shows/expired",
    response_model=list[ExpiredRideResponse],
    summary="Rides whose no-show window has lapsed",
)
@limiter.limit("100/minute")
async def expired_no_shows(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    rides = await SafetyService(db).get_expired_no_show_rides()
    return [
        ExpiredRideResponse(
            ride_id=r.id,
            event_id=r.event_id,
            assigned_driver_id=r.assigned_driver_id,
            arrival_deadline_timestamp=r.arrival_deadline_timestamp,
        )
        for r in rides
    ]


@router.api_route(
    "/no-shows/process",
    methods=["GET", "POST"],
    response_model=SweepResponse,
    summary="Process expired no-shows",
    description="One transaction per ride; a failing ride does not stop the sweep.",
)
@limiter.limit("100/minute")
async def process_no_shows(request: Request):
    result = await run_no_show_sweep(async_session_factory, publish=publish_committed)
    return SweepResponse(
        processed=result.processed,
        total=result.total,
        results=[NoShowOutcomeResponse(**o.__dict__) for o in result.outcomes],
    )


@router.get("/cooldown", response_model=CooldownResponse, summary="Cooldown status")
@limiter.limit("100/minute")
async def cooldown(
    request: Request,
    event_id: int,
    rider_name: str,
    db: AsyncSession = Depends(get_db),
):
    service = SafetyService(db)
    rider_hash = rider_hash_for(request, event_id, rider_name)
    status = await service.get_cooldown_status(event_id, rider_hash)
    penalty = await service.get_rider_penalty(event_id, rider_hash)
    return CooldownResponse(
        **status.__dict__,
        no_show_count=penalty.no_show_count if penalty else 0,
    )


@router.post(
    "/consents",
    status_code=201,
    response_model=ConsentResponse,
    summary="Accept the terms for an event",
)
@limiter.limit("100/minute")
async def record_consent(
    request: Request,
    body: ConsentRequest,
    db: AsyncSession = Depends(get_db),
):
    return await ConsentService(db).record_consent(
        body.event_id,
        rider_hash_for(request, body.event_id, body.rider_name),
        client_origin(request),
    )


@router.get(
    "/consents",
    response_model=list[ConsentResponse],
    summary="Consent log for an event",
)
@limiter.limit("100/minute")
async def list_consents(
    request: Request,
    event_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await ConsentService(db).list_event_consents(event_id)


@router.post(
    "/emergencies",
    status_code=201,
    response_model=EmergencyResponse,
    summary="Raise an emergency",
)
@limiter.limit("100/minute")
async def trigger_emergency(
    request: Request,
    body: EmergencyCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    return await EmergencyService(db).trigger_emergency(**body.model_dump())


@router.get(
    "/emergencies",
    response_model=list[EmergencyResponse],
    summary="List emergencies",
)
@limiter.limit("100/minute")
async def list_emergencies(
    request: Request,
    event_id: int,
    active_only: bool = True,
    db: AsyncSession = Depends(get_db),
):
    service = EmergencyService(db)
    if active_only:
        return await service.list_active_emergencies(event_id)
    return await service.list_emergencies(event_id)


@router.patch(
    "/emergencies/{emergency_id}/resolve",
    response_model=EmergencyResponse,
    summary="Resolve an emergency",
)
@limiter.limit("100/minute")
async def resolve_emergency(
    request: Request,
    emergency_id: int,
    body: EmergencyResolveRequest,
    db: AsyncSession = Depends(get_db),
):
    return await EmergencyService(db).resolve_emergency(
        emergency_id, body.resolved_by, body.notes
    )
