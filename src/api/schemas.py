"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from src.domain.enums import BatchStatus, DriverStatus, EmergencyTrigger, RideStatus


# ── Requests ──────────────────────────────────────────────────────────


class EventCreateRequest(BaseModel):
    event_name: str = Field(..., min_length=1, max_length=200)
    organization_name: str = Field(..., min_length=1, max_length=200)
    start_time: datetime
    end_time: datetime
    admin_email: Optional[str] = Field(None, max_length=255)
    batch_mode_enabled: bool = False


class ToggleRequest(BaseModel):
    enabled: bool


class RideCreateRequest(BaseModel):
    event_id: int
    rider_name: str = Field(..., min_length=1, max_length=120)
    pickup_address: str = Field(..., min_length=1)
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    passenger_count: int = Field(
        1, description="Riders in the party; a single car takes at most 4."
    )


class RideTransitionRequest(BaseModel):
    status: RideStatus
    driver_id: Optional[int] = None


class DriverCreateRequest(BaseModel):
    event_id: int
    driver_name: str = Field(..., min_length=1, max_length=120)
    max_capacity: Optional[int] = Field(None, ge=1, le=8)


class DriverStatusRequest(BaseModel):
    status: DriverStatus


class DriverLocationRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class DispatchRequest(BaseModel):
    event_id: int


class ConsentRequest(BaseModel):
    event_id: int
    rider_name: str = Field(..., min_length=1, max_length=120)


class EmergencyCreateRequest(BaseModel):
    event_id: int
    triggered_by: EmergencyTrigger
    triggered_by_name: str = Field(..., min_length=1, max_length=120)
    ride_request_id: Optional[int] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class EmergencyResolveRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1, max_length=120)
    notes: Optional[str] = None


# ── Responses ─────────────────────────────────────────────────────────


class EventResponse(BaseModel):
    id: int
    event_name: str
    organization_name: str
    access_code: str
    start_time: datetime
    end_time: datetime
    is_active: bool
    admin_email: Optional[str] = None
    batch_mode_enabled: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RideResponse(BaseModel):
    id: int
    event_id: int
    rider_name: str
    pickup_address: str
    pickup_lat: float
    pickup_lng: float
    passenger_count: int
    status: RideStatus
    assigned_driver_id: Optional[int] = None
    batch_id: Optional[int] = None
    pickup_sequence_index: Optional[int] = None
    estimated_wait_minutes: Optional[int] = None
    driver_eta_minutes: Optional[int] = None
    arrival_timestamp: Optional[datetime] = None
    arrival_deadline_timestamp: Optional[datetime] = None
    completion_timestamp: Optional[datetime] = None
    rider_confirmed: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DriverResponse(BaseModel):
    id: int
    event_id: int
    driver_name: str
    is_online: bool
    current_status: DriverStatus
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    last_location_update: Optional[datetime] = None
    max_capacity: int
    current_passenger_load: int

    model_config = {"from_attributes": True}


class BatchItemResponse(BaseModel):
    id: int
    ride_request_id: int
    pickup_order_index: int
    estimated_arrival_time: Optional[datetime] = None
    picked_up: bool
    picked_up_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BatchResponse(BaseModel):
    id: int
    event_id: int
    driver_id: Optional[int] = None
    status: BatchStatus
    total_passengers: int
    created_at: Optional[datetime] = None
    items: list[BatchItemResponse] = []
    rides: list[RideResponse] = []


class QueuePositionResponse(BaseModel):
    ride_id: int
    position: int
    total: int


class WaitEstimateResponse(BaseModel):
    ride_id: int
    estimated_wait_minutes: int


class EtaResponse(BaseModel):
    ride_id: int
    driver_eta_minutes: Optional[int] = None


class BatchEtasResponse(BaseModel):
    batch_id: int
    eta_minutes: list[int]


class BatchPositionResponse(BaseModel):
    batch_id: int
    position: int
    total_stops: int
    estimated_arrival: Optional[datetime] = None


class NoShowCountdownResponse(BaseModel):
    ride_id: int
    seconds_remaining: Optional[int] = None


class RefreshResponse(BaseModel):
    updated: int


class ClusterResponse(BaseModel):
    cluster_key: str
    ride_ids: list[int]
    total_passengers: int
    oldest_created_at: Optional[datetime] = None
    avg_lat: float
    avg_lng: float

    model_config = {"from_attributes": True}


class ConfirmPresenceResponse(BaseModel):
    ride_id: int
    confirmed: bool


class DispatchResponse(BaseModel):
    assigned: bool
    ride_id: Optional[int] = None
    driver_id: Optional[int] = None
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None


class DispatchAllResponse(BaseModel):
    assigned: int


class BatchDispatchResponse(BaseModel):
    batches_created: int
    rides_assigned: int


class AutoDispatchResponse(BaseModel):
    mode: str
    assigned: int
    batches_created: int = 0


class AnalyticsResponse(BaseModel):
    total_rides: int
    completed_rides: int
    cancelled_rides: int
    no_show_rides: int
    avg_wait_time_minutes: float
    avg_ride_duration_minutes: float
    peak_hour: int
    active_drivers: int
    total_passengers: int
    total_passengers_driven: int
    total_batches: int
    completed_batches: int
    avg_passengers_per_batch: float
    avg_rides_per_batch: float
    batch_efficiency: float

    model_config = {"from_attributes": True}


class HourlyVolume(BaseModel):
    hour: int
    count: int


class StatusCount(BaseModel):
    status: str
    count: int


class ExpiredRideResponse(BaseModel):
    ride_id: int
    event_id: int
    assigned_driver_id: Optional[int] = None
    arrival_deadline_timestamp: Optional[datetime] = None


class NoShowOutcomeResponse(BaseModel):
    ride_id: int
    success: bool
    error: Optional[str] = None


class SweepResponse(BaseModel):
    processed: int
    total: int
    results: list[NoShowOutcomeResponse] = []


class CooldownResponse(BaseModel):
    is_in_cooldown: bool
    cooldown_until: Optional[datetime] = None
    remaining_minutes: Optional[int] = None
    no_show_count: int = 0


class ConsentResponse(BaseModel):
    event_id: int
    rider_identifier_hash: str
    consent_timestamp: datetime

    model_config = {"from_attributes": True}


class EmergencyResponse(BaseModel):
    id: int
    event_id: int
    ride_request_id: Optional[int] = None
    triggered_by: EmergencyTrigger
    triggered_by_name: str
    timestamp: datetime
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
