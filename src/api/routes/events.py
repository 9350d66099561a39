"""
Event endpoints
===============

POST  /api/v1/events                          -- create an event (access code issued)
GET   /api/v1/events/{event_id}               -- event details
GET   /api/v1/events/code/{access_code}       -- join lookup (active events only)
PATCH /api/v1/events/{event_id}/active        -- open / close the ride window
PATCH /api/v1/events/{event_id}/batch-mode    -- toggle multi-stop batching
GET   /api/v1/events/{event_id}/rides         -- every ride of the event
GET   /api/v1/events/{event_id}/analytics     -- headline statistics
GET   /api/v1/events/{event_id}/analytics/hourly  -- rides created per hour
GET   /api/v1/events/{event_id}/analytics/status  -- rides per status
GET   /api/v1/events/{event_id}/clusters      -- how waiting rides would batch
POST  /api/v1/events/{event_id}/wait-estimates -- store fresh wait estimates
POST  /api/v1/events/{event_id}/etas          -- refresh active driver ETAs
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db, get_eta_estimator
from src.api.middleware import limiter
from src.api.schemas import (
    AnalyticsResponse,
    ClusterResponse,
    EventCreateRequest,
    EventResponse,
    HourlyVolume,
    RefreshResponse,
    RideResponse,
    StatusCount,
    ToggleRequest,
)
from src.services.analytics import AnalyticsService
from src.services.batching import BatchDispatcher
from src.services.eta import EtaEstimator, EtaService
from src.services.events import EventService
from src.services.rides import RideService

router = APIRouter(prefix="/events", tags=["events"])


@router.post(
    "",
    status_code=201,
    response_model=EventResponse,
    summary="Create an event",
)
@limiter.limit("100/minute")
async def create_event(
    request: Request,
    body: EventCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    return await EventService(db).create_event(**body.model_dump())


@router.get("/code/{access_code}", response_model=EventResponse, summary="Find event by code")
@limiter.limit("100/minute")
async def get_event_by_code(
    request: Request,
    access_code: str,
    db: AsyncSession = Depends(get_db),
):
    return await EventService(db).get_event_by_access_code(access_code)


@router.get("/{event_id}", response_model=EventResponse, summary="Get an event")
@limiter.limit("100/minute")
async def get_event(
    request: Request,
    event_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await EventService(db).get_event(event_id)


@router.patch(
    "/{event_id}/active",
    response_model=EventResponse,
    summary="Open or close the event for ride requests",
)
@limiter.limit("100/minute")
async def set_active(
    request: Request,
    event_id: int,
    body: ToggleRequest,
    db: AsyncSession = Depends(get_db),
):
    return await EventService(db).set_event_active(event_id, body.enabled)


@router.patch(
    "/{event_id}/batch-mode",
    response_model=EventResponse,
    summary="Enable or disable batch dispatch",
)
@limiter.limit("100/minute")
async def set_batch_mode(
    request: Request,
    event_id: int,
    body: ToggleRequest,
    db: AsyncSession = Depends(get_db),
):
    return await EventService(db).set_batch_mode(event_id, body.enabled)


@router.get(
    "/{event_id}/rides",
    response_model=list[RideResponse],
    summary="List the event's rides in creation order",
)
@limiter.limit("100/minute")
async def list_rides(
    request: Request,
    event_id: int,
    db: AsyncSession = Depends(get_db),
):
    await EventService(db).get_event(event_id)
    return await RideService(db).list_event_rides(event_id)


@router.get(
    "/{event_id}/analytics",
    response_model=AnalyticsResponse,
    summary="Event statistics",
)
@limiter.limit("100/minute")
async def get_analytics(
    request: Request,
    event_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await AnalyticsService(db).get_event_analytics(event_id)


@router.get(
    "/{event_id}/analytics/hourly",
    response_model=list[HourlyVolume],
    summary="Ride requests per hour of day",
)
@limiter.limit("100/minute")
async def get_hourly_volume(
    request: Request,
    event_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await AnalyticsService(db).get_ride_volume_by_hour(event_id)


@router.get(
    "/{event_id}/analytics/status",
    response_model=list[StatusCount],
    summary="Ride counts by status",
)
@limiter.limit("100/minute")
async def get_status_breakdown(
    request: Request,
    event_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await AnalyticsService(db).get_ride_status_breakdown(event_id)


@router.get(
    "/{event_id}/clusters",
    response_model=list[ClusterResponse],
    summary="Preview how waiting rides would be batched",
)
@limiter.limit("100/minute")
async def list_clusters(
    request: Request,
    event_id: int,
    db: AsyncSession = Depends(get_db),
):
    await EventService(db).get_event(event_id)
    return await BatchDispatcher(db).cluster_waiting_rides(event_id)


@router.post(
    "/{event_id}/wait-estimates",
    response_model=RefreshResponse,
    summary="Store a fresh wait estimate on every waiting ride",
)
@limiter.limit("100/minute")
async def refresh_wait_estimates(
    request: Request,
    event_id: int,
    db: AsyncSession = Depends(get_db),
):
    await EventService(db).get_event(event_id)
    return RefreshResponse(
        updated=await RideService(db).update_all_wait_estimates(event_id)
    )


@router.post(
    "/{event_id}/etas",
    response_model=RefreshResponse,
    summary="Refresh driver ETAs for assigned and arrived rides",
)
@limiter.limit("100/minute")
async def refresh_etas(
    request: Request,
    event_id: int,
    db: AsyncSession = Depends(get_db),
    estimator: EtaEstimator = Depends(get_eta_estimator),
):
    await EventService(db).get_event(event_id)
    return RefreshResponse(
        updated=await EtaService(db, estimator).update_all_active_etas(event_id)
    )
