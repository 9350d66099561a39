"""
Driver endpoints
================

POST   /api/v1/drivers                         -- add a driver to an event
GET    /api/v1/drivers?event_id=               -- list an event's drivers
PATCH  /api/v1/drivers/{driver_id}/status      -- offline / available / assigned
PATCH  /api/v1/drivers/{driver_id}/location    -- GPS update
DELETE /api/v1/drivers/{driver_id}             -- remove (offline drivers only)
GET    /api/v1/drivers/{driver_id}/current-ride  -- ride currently held
GET    /api/v1/drivers/{driver_id}/active-batch  -- pending / in-progress batch
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db
from src.api.middleware import limiter
from src.api.routes.batches import batch_response
from src.api.schemas import (
    BatchResponse,
    DriverCreateRequest,
    DriverLocationRequest,
    DriverResponse,
    DriverStatusRequest,
    RideResponse,
)
from src.services.batching import BatchDispatcher
from src.services.drivers import DriverService

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.post("", status_code=201, response_model=DriverResponse, summary="Add a driver")
@limiter.limit("100/minute")
async def add_driver(
    request: Request,
    body: DriverCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    return await DriverService(db).add_driver_to_event(
        body.event_id, body.driver_name, body.max_capacity
    )


@router.get("", response_model=list[DriverResponse], summary="List event drivers")
@limiter.limit("100/minute")
async def list_drivers(
    request: Request,
    event_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await DriverService(db).list_event_drivers(event_id)


@router.patch(
    "/{driver_id}/status",
    response_model=DriverResponse,
    summary="Set driver status",
)
@limiter.limit("100/minute")
async def set_status(
    request: Request,
    driver_id: int,
    body: DriverStatusRequest,
    db: AsyncSession = Depends(get_db),
):
    return await DriverService(db).set_driver_status(driver_id, body.status)


@router.patch(
    "/{driver_id}/location",
    response_model=DriverResponse,
    summary="Update driver location",
)
@limiter.limit("100/minute")
async def update_location(
    request: Request,
    driver_id: int,
    body: DriverLocationRequest,
    db: AsyncSession = Depends(get_db),
):
    return await DriverService(db).update_driver_location(driver_id, body.lat, body.lng)


@router.delete("/{driver_id}", status_code=204, summary="Remove a driver")
@limiter.limit("100/minute")
async def remove_driver(
    request: Request,
    driver_id: int,
    db: AsyncSession = Depends(get_db),
):
    await DriverService(db).remove_driver(driver_id)


@router.get(
    "/{driver_id}/current-ride",
    response_model=Optional[RideResponse],
    summary="Ride the driver currently holds",
)
@limiter.limit("100/minute")
async def current_ride(
    request: Request,
    driver_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await DriverService(db).get_driver_current_ride(driver_id)


@router.get(
    "/{driver_id}/active-batch",
    response_model=Optional[BatchResponse],
    summary="Driver's active batch",
)
@limiter.limit("100/minute")
async def active_batch(
    request: Request,
    driver_id: int,
    db: AsyncSession = Depends(get_db),
):
    await DriverService(db).get_driver(driver_id)
    details = await BatchDispatcher(db).get_driver_active_batch(driver_id)
    return batch_response(details) if details else None
