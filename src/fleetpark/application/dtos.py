# File: src/fleetpark/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Reservation Engine

This module defines DTOs for data transfer between layers:
1. Input DTOs - request bodies received from the request-handling layer
2. Output DTOs - reservations and joined summaries sent back to clients
3. Query DTOs - listing filters

External JSON uses camelCase keys (``parkingLotId``, ``startTime``); Python
code uses the snake_case field names. Both are accepted on input.
Datetimes are exchanged as UTC ISO-8601; naive values are read as UTC.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import json

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..domain.models import (
    PaymentStatus,
    ReservationStatus,
    TransactionType,
    VehicleType,
    ensure_utc,
    utcnow,
)


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,  # Allow creation from domain dataclasses
        populate_by_name=True,
        alias_generator=to_camel,
        str_strip_whitespace=True,
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to a JSON-ready dictionary with camelCase keys"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none, **kwargs)

    def to_json(self, **kwargs) -> str:
        return self.model_dump_json(by_alias=True, **kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        return cls.model_validate(data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        return cls.model_validate(json.loads(json_str))


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


# ============================================================================
# INPUT DTOs
# ============================================================================

class CreateReservationRequest(BaseDTO):
    """
    Body of POST /reservations

    The window is only parsed here. Its validity (end after start, start in
    the future) is checked by the service against its clock so the same
    rule applies to every caller.
    """
    parking_lot_id: str = Field(min_length=1)
    vehicle_id: str = Field(min_length=1)
    driver_id: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    parking_space_id: Optional[str] = None
    special_requests: Optional[str] = Field(default=None, max_length=500)
    company_id: Optional[str] = Field(
        default=None, description="Booking company; defaults to the company owning the vehicle",
    )
    request_id: Optional[str] = Field(default=None, max_length=100, description="Client idempotency key")

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_timezone(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class StatusChangeRequest(BaseDTO):
    """Body of PUT /reservations/{id}/status"""
    status: ReservationStatus
    reason: Optional[str] = Field(default=None, max_length=500)


class CancelReservationRequest(BaseDTO):
    """Body of PUT /reservations/{id}/cancel"""
    reason: Optional[str] = Field(default=None, max_length=500)


class RescheduleRequest(BaseDTO):
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_timezone(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class AssignSpaceRequest(BaseDTO):
    parking_space_id: str = Field(min_length=1)


class TransactionRequest(BaseDTO):
    amount: Decimal = Field(ge=0, decimal_places=2)
    transaction_type: TransactionType


class ReservationQueryDTO(BaseDTO):
    """
    Listing filters; all optional and combined with AND
    The date range selects reservations whose window overlaps it
    """
    parking_lot_id: Optional[str] = None
    company_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    driver_id: Optional[str] = None
    status: Optional[ReservationStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


# ============================================================================
# OUTPUT DTOs
# ============================================================================

class ReservationDTO(BaseDTO):
    """Reservation as returned to clients; total_cost is server-computed"""
    id: str
    parking_lot_id: str
    parking_space_id: Optional[str] = None
    company_id: str
    vehicle_id: str
    driver_id: str
    start_time: datetime
    end_time: datetime
    actual_arrival: Optional[datetime] = None
    actual_departure: Optional[datetime] = None
    status: ReservationStatus
    payment_status: PaymentStatus
    total_cost: Decimal
    special_requests: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    version: int


class ParkingLotSummaryDTO(BaseDTO):
    id: str
    name: str
    total_spaces: int
    price_per_hour: Decimal


class ParkingSpaceSummaryDTO(BaseDTO):
    id: str
    space_number: str
    is_available: bool


class VehicleSummaryDTO(BaseDTO):
    id: str
    license_plate: str
    vehicle_type: VehicleType


class DriverSummaryDTO(BaseDTO):
    id: str
    name: str


class ReservationDetailDTO(ReservationDTO):
    """GET /reservations/{id}: reservation joined with lot, vehicle, driver and space"""
    parking_lot: Optional[ParkingLotSummaryDTO] = None
    parking_space: Optional[ParkingSpaceSummaryDTO] = None
    vehicle: Optional[VehicleSummaryDTO] = None
    driver: Optional[DriverSummaryDTO] = None
    permitted_actions: Dict[str, List[ReservationStatus]] = Field(default_factory=dict, description="Role -> reachable statuses")


class LotAvailabilityDTO(BaseDTO):
    parking_lot_id: str
    total_spaces: int
    available_spaces: int
    at: datetime


class ErrorResponseDTO(BaseDTO):
    """Standard error response DTO"""
    success: bool = Field(default=False, description="Success flag")
    error: str = Field(description="Error message")
    error_code: Optional[str] = Field(default=None, description="Error code")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Error details")
    retryable: bool = False
    timestamp: datetime = Field(default_factory=utcnow, description="Error timestamp")
