"""
Dispatch endpoints
==================

POST /api/v1/dispatch/smart  -- assign the oldest waiting ride
POST /api/v1/dispatch/all    -- assign until rides or drivers run out
POST /api/v1/dispatch/batch  -- cluster and batch waiting rides
POST /api/v1/dispatch/auto   -- batch if the event has batch mode on, else all

Dispatch only runs when one of these is called; there is no background loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db, get_eta_estimator
from src.api.middleware import limiter
from src.api.schemas import (
    AutoDispatchResponse,
    BatchDispatchResponse,
    DispatchAllResponse,
    DispatchRequest,
    DispatchResponse,
)
from src.services.batching import BatchDispatcher
from src.services.dispatch import Dispatcher
from src.services.eta import EtaEstimator
from src.services.events import EventService

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


@router.post("/smart", response_model=DispatchResponse, summary="Dispatch one ride")
@limiter.limit("100/minute")
async def smart(
    request: Request,
    body: DispatchRequest,
    db: AsyncSession = Depends(get_db),
):
    await EventService(db).get_event(body.event_id)
    result = await Dispatcher(db).smart_dispatch(body.event_id)
    return DispatchResponse(**result.__dict__)


@router.post("/all", response_model=DispatchAllResponse, summary="Dispatch all rides")
@limiter.limit("100/minute")
async def dispatch_all(
    request: Request,
    body: DispatchRequest,
    db: AsyncSession = Depends(get_db),
):
    await EventService(db).get_event(body.event_id)
    return DispatchAllResponse(
        assigned=await Dispatcher(db).dispatch_all_rides(body.event_id)
    )


@router.post("/batch", response_model=BatchDispatchResponse, summary="Batch dispatch")
@limiter.limit("100/minute")
async def batch(
    request: Request,
    body: DispatchRequest,
    db: AsyncSession = Depends(get_db),
    estimator: EtaEstimator = Depends(get_eta_estimator),
):
    await EventService(db).get_event(body.event_id)
    result = await BatchDispatcher(db, estimator).batch_dispatch(body.event_id)
    return BatchDispatchResponse(
        batches_created=result.batches_created,
        rides_assigned=result.rides_assigned,
    )


@router.post(
    "/auto",
    response_model=AutoDispatchResponse,
    summary="Dispatch using the event's mode",
)
@limiter.limit("100/minute")
async def auto(
    request: Request,
    body: DispatchRequest,
    db: AsyncSession = Depends(get_db),
    estimator: EtaEstimator = Depends(get_eta_estimator),
):
    event = await EventService(db).get_event(body.event_id)
    if event.batch_mode_enabled:
        result = await BatchDispatcher(db, estimator).batch_dispatch(event.id)
        return AutoDispatchResponse(
            mode="batch",
            assigned=result.rides_assigned,
            batches_created=result.batches_created,
        )
    return AutoDispatchResponse(
        mode="single", assigned=await Dispatcher(db).dispatch_all_rides(event.id)
    )
