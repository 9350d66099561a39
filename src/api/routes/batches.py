"""
Batch endpoints
===============

GET  /api/v1/batches/{batch_id}                      -- batch with stops in order
POST /api/v1/batches/items/{item_id}/pickup          -- driver picked a rider up
POST /api/v1/batches/{batch_id}/complete             -- all drop-offs done
POST /api/v1/batches/{batch_id}/etas                 -- recompute stop ETAs
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db, get_eta_estimator
from src.api.middleware import limiter
from src.api.schemas import (
    BatchEtasResponse,
    BatchItemResponse,
    BatchResponse,
    RideResponse,
)
from src.services.batching import BatchDetails, BatchDispatcher
from src.services.eta import EtaEstimator, EtaService

router = APIRouter(prefix="/batches", tags=["batches"])


def batch_response(details: BatchDetails) -> BatchResponse:
    batch = details.batch
    return BatchResponse(
        id=batch.id,
        event_id=batch.event_id,
        driver_id=batch.driver_id,
        status=batch.status,
        total_passengers=batch.total_passengers,
        created_at=batch.created_at,
        items=[BatchItemResponse.model_validate(i) for i in details.items],
        rides=[RideResponse.model_validate(r) for r in details.rides],
    )


@router.get("/{batch_id}", response_model=BatchResponse, summary="Get a batch")
@limiter.limit("100/minute")
async def get_batch(
    request: Request,
    batch_id: int,
    db: AsyncSession = Depends(get_db),
):
    return batch_response(await BatchDispatcher(db).get_batch(batch_id))


@router.post(
    "/items/{item_id}/pickup",
    response_model=BatchItemResponse,
    summary="Mark a stop picked up",
)
@limiter.limit("100/minute")
async def mark_pickup(
    request: Request,
    item_id: int,
    db: AsyncSession = Depends(get_db),
):
    return await BatchDispatcher(db).mark_pickup_complete(item_id)


@router.post(
    "/{batch_id}/complete",
    response_model=BatchResponse,
    summary="Complete a batch",
    description="Requires every pickup to be done (batch in_progress).",
)
@limiter.limit("100/minute")
async def complete_batch(
    request: Request,
    batch_id: int,
    db: AsyncSession = Depends(get_db),
):
    dispatcher = BatchDispatcher(db)
    await dispatcher.complete_batch(batch_id)
    return batch_response(await dispatcher.get_batch(batch_id))


@router.post(
    "/{batch_id}/etas",
    response_model=BatchEtasResponse,
    summary="Recompute stop ETAs from the driver's position",
)
@limiter.limit("100/minute")
async def refresh_etas(
    request: Request,
    batch_id: int,
    db: AsyncSession = Depends(get_db),
    estimator: EtaEstimator = Depends(get_eta_estimator),
):
    etas = await EtaService(db, estimator).update_batch_etas(batch_id)
    return BatchEtasResponse(batch_id=batch_id, eta_minutes=etas)
