"""
Ride endpoints
==============

POST  /api/v1/rides                         -- request a pickup (202 Accepted)
GET   /api/v1/rides/{ride_id}               -- ride status
PATCH /api/v1/rides/{ride_id}/cancel        -- cancel a ride
POST  /api/v1/rides/{ride_id}/transition    -- driver-side status change
POST  /api/v1/rides/{ride_id}/confirm       -- rider confirms presence at the car
GET   /api/v1/rides/{ride_id}/no-show-countdown -- seconds left to confirm
GET   /api/v1/rides/{ride_id}/queue         -- position among waiting rides
GET   /api/v1/rides/{ride_id}/wait-estimate -- estimated wait in minutes
POST  /api/v1/rides/{ride_id}/eta           -- refresh the driver ETA
GET   /api/v1/rides/{ride_id}/batch-position -- stop number within a batch
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db, get_eta_estimator, rider_hash_for
from src.api.middleware import limiter
from src.api.schemas import (
    BatchPositionResponse,
    ConfirmPresenceResponse,
    EtaResponse,
    NoShowCountdownResponse,
    QueuePositionResponse,
    RideCreateRequest,
    RideResponse,
    RideTransitionRequest,
    WaitEstimateResponse,
)
from src.domain.enums import RideStatus
from src.services.batching import BatchDispatcher
from src.services.dispatch import Dispatcher
from src.services.eta import EtaEstimator, EtaService
from src.services.ride_state import RideStateMachine
from src.services.rides import RideService
from src.services.safety import SafetyService

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post(
    "",
    status_code=202,
    response_model=RideResponse,
    summary="Request a pickup",
    responses={
        202: {"description": "Ride request queued; dispatch is separate."},
        403: {"description": "Rider has not accepted the terms."},
        429: {"description": "Rider is in a no-show cooldown."},
    },
)
@limiter.limit("100/minute")
async def create_ride(
    request: Request,
    body: RideCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    return await RideService(db).create_ride(
        event_id=body.event_id,
        rider_name=body.rider_name,
        pickup_address=body.pickup_address,
        pickup_lat=body.pickup_lat,
        pickup_lng=body.pickup_lng,
        passenger_count=body.passenger_count,
        rider_identifier_hash=rider_hash_for(request, body.event_id, body.rider_name),
    )


@router.get("/{ride_id}", response_model=RideResponse, summary="Get ride status")
@limiter.limit("100/minute")
async def get_ride(
    request: Request,
    ride_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await RideService(db).get_ride(ride_id)


@router.patch(
    "/{ride_id}/cancel",
    response_model=RideResponse,
    summary="Cancel a ride",
    description=(
        "Moves a non-terminal ride to cancelled.  A solo driver becomes "
        "available; a batch driver gets the ride's seats back."
    ),
)
@limiter.limit("100/minute")
async def cancel_ride(
    request: Request,
    ride_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await RideService(db).cancel_ride(ride_id)


@router.post(
    "/{ride_id}/transition",
    response_model=RideResponse,
    summary="Change ride status",
    description="Assigning also claims the driver; other edges go straight through the state machine.",
)
@limiter.limit("100/minute")
async def transition_ride(
    request: Request,
    ride_id: int,
    body: RideTransitionRequest,
    db: AsyncSession = Depends(get_db),
):
    if body.status is RideStatus.ASSIGNED:
        if body.driver_id is None:
            raise HTTPException(status_code=422, detail="driver_id is required")
        await Dispatcher(db).assign_ride(ride_id, body.driver_id)
        return await RideService(db).get_ride(ride_id)
    return await RideStateMachine(db).transition(ride_id, body.status, body.driver_id)


@router.post(
    "/{ride_id}/confirm",
    response_model=ConfirmPresenceResponse,
    summary="Rider confirms presence",
)
@limiter.limit("100/minute")
async def confirm_presence(
    request: Request,
    ride_id: int,
    db: AsyncSession = Depends(get_db),
):
    confirmed = await SafetyService(db).confirm_rider_presence(ride_id)
    return ConfirmPresenceResponse(ride_id=ride_id, confirmed=confirmed)


@router.get(
    "/{ride_id}/no-show-countdown",
    response_model=NoShowCountdownResponse,
    summary="Seconds left to confirm before the ride becomes a no-show",
)
@limiter.limit("100/minute")
async def no_show_countdown(
    request: Request,
    ride_id: int,
    db: AsyncSession = Depends(get_db),
):
    seconds = await SafetyService(db).seconds_until_no_show(ride_id)
    return NoShowCountdownResponse(ride_id=ride_id, seconds_remaining=seconds)


@router.get(
    "/{ride_id}/queue",
    response_model=QueuePositionResponse,
    summary="Queue position",
)
@limiter.limit("100/minute")
async def queue_position(
    request: Request,
    ride_id: int,
    db: AsyncSession = Depends(get_db),
):
    position, total = await RideService(db).get_queue_position(ride_id)
    return QueuePositionResponse(ride_id=ride_id, position=position, total=total)


@router.get(
    "/{ride_id}/wait-estimate",
    response_model=WaitEstimateResponse,
    summary="Estimated wait",
)
@limiter.limit("100/minute")
async def wait_estimate(
    request: Request,
    ride_id: int,
    db: AsyncSession = Depends(get_db),
):
    service = RideService(db)
    ride = await service.get_ride(ride_id)
    minutes = await service.estimate_wait_minutes(ride.event_id, ride_id)
    return WaitEstimateResponse(ride_id=ride_id, estimated_wait_minutes=minutes)


@router.post(
    "/{ride_id}/eta",
    response_model=EtaResponse,
    summary="Refresh driver ETA",
)
@limiter.limit("100/minute")
async def refresh_eta(
    request: Request,
    ride_id: int,
    db: AsyncSession = Depends(get_db),
    estimator: EtaEstimator = Depends(get_eta_estimator),
):
    minutes = await EtaService(db, estimator).update_ride_eta(ride_id)
    return EtaResponse(ride_id=ride_id, driver_eta_minutes=minutes)


@router.get(
    "/{ride_id}/batch-position",
    response_model=BatchPositionResponse,
    summary="Stop number within the ride's batch",
)
@limiter.limit("100/minute")
async def batch_position(
    request: Request,
    ride_id: int,
    db: AsyncSession = Depends(get_db),
):
    position = await BatchDispatcher(db).get_ride_batch_position(ride_id)
    if position is None:
        raise HTTPException(status_code=404, detail="Ride is not part of a batch")
    return position
