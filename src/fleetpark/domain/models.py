# File: src/fleetpark/domain/models.py
"""
Domain Models for the Reservation Engine
Following Domain-Driven Design (DDD) principles with immutable domain values

This module contains:
1. Enums: reservation/payment status, vehicle type, company type, actor role
2. Value Objects: LicensePlate, TimeRange
3. Entities: Company, ParkingLot, ParkingSpace, Vehicle, Driver,
   Reservation, Transaction

Entities are frozen dataclasses. State changes never mutate an instance;
they return a new one through ``dataclasses.replace`` so a reservation read
by one request cannot change underneath it.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional
import re
import uuid


CURRENCY_QUANTUM = Decimal("0.01")


def new_id() -> str:
    """Generate a new entity identifier"""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def quantize_money(amount: Decimal) -> Decimal:
    """Round to currency precision, half-up"""
    return Decimal(amount).quantize(CURRENCY_QUANTUM, rounding=ROUND_HALF_UP)


# ============================================================================
# ENUMS FOR DOMAIN TYPES
# ============================================================================

class ReservationStatus(str, Enum):
    """
    Reservation lifecycle states
    PENDING is the only initial state; COMPLETED and CANCELLED are terminal
    """
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    def __str__(self) -> str:
        labels = {
            ReservationStatus.PENDING: "Pending",
            ReservationStatus.CONFIRMED: "Confirmed",
            ReservationStatus.IN_PROGRESS: "In progress",
            ReservationStatus.COMPLETED: "Completed",
            ReservationStatus.CANCELLED: "Cancelled",
        }
        return labels[self]


class PaymentStatus(str, Enum):
    """Payment lifecycle, independent from the reservation status"""
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class VehicleType(str, Enum):
    """Vehicle categories operated by transportation companies"""
    CAMINHAO = "CAMINHAO"       # Rigid truck
    VAN = "VAN"
    CARRETA = "CARRETA"         # Articulated trailer truck
    TRUCK = "TRUCK"
    MOTOCICLETA = "MOTOCICLETA"


class CompanyType(str, Enum):
    """
    Demand side (TRANSPORTADORA books spaces) or
    supply side (ESTACIONAMENTO owns lots)
    """
    TRANSPORTADORA = "TRANSPORTADORA"
    ESTACIONAMENTO = "ESTACIONAMENTO"


class ActorRole(str, Enum):
    """Role of the user driving a request"""
    ADMIN = "ADMIN"
    ESTACIONAMENTO = "ESTACIONAMENTO"
    TRANSPORTADORA = "TRANSPORTADORA"


class TransactionType(str, Enum):
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"
    FEE = "FEE"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)  # Value objects are immutable
class LicensePlate:
    """
    Value Object: Brazilian license plate
    Accepts the legacy format (ABC1234) and the Mercosul format (ABC1D23)
    """
    value: str

    PATTERN = re.compile(r'^[A-Z]{3}[0-9][A-Z0-9][0-9]{2}$')

    def __post_init__(self):
        if not self.value:
            raise ValueError("License plate cannot be empty")

        # Remove separators and convert to uppercase
        normalized = re.sub(r'[\s\-]', '', self.value).upper()
        object.__setattr__(self, 'value', normalized)

        if not self.PATTERN.match(normalized):
            raise ValueError(f"Invalid license plate format: {self.value}")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TimeRange:
    """
    Value Object: Half-open time window [start_time, end_time)
    Two windows that only touch at a boundary do not overlap
    """
    start_time: datetime
    end_time: datetime

    def __post_init__(self):
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    @property
    def duration_hours(self) -> float:
        return self.duration.total_seconds() / 3600

    def overlaps(self, other: 'TimeRange') -> bool:
        """Check if this time range overlaps with another"""
        return self.start_time < other.end_time and other.start_time < self.end_time

    def contains(self, instant: datetime) -> bool:
        return self.start_time <= instant < self.end_time

    def __str__(self) -> str:
        start_str = self.start_time.strftime("%Y-%m-%d %H:%M")
        end_str = self.end_time.strftime("%Y-%m-%d %H:%M")
        return f"{start_str} to {end_str} ({self.duration_hours:.1f} hours)"


def validate_cpf(cpf: str) -> str:
    """
    Validate a CPF (Brazilian taxpayer id) and return its 11 digits
    Punctuation is accepted; both check digits are verified
    """
    digits = re.sub(r'[.\-\s]', '', cpf or '')
    if not re.fullmatch(r'\d{11}', digits):
        raise ValueError(f"CPF must have 11 digits: {cpf}")
    if digits == digits[0] * 11:
        raise ValueError(f"Invalid CPF: {cpf}")

    numbers = [int(d) for d in digits]
    for position in (9, 10):
        total = sum(numbers[i] * (position + 1 - i) for i in range(position))
        check = (total * 10) % 11 % 10
        if check != numbers[position]:
            raise ValueError(f"Invalid CPF check digit: {cpf}")
    return digits


def validate_cnh(cnh: str) -> str:
    """Validate a CNH (driver licence number) format and return its digits"""
    digits = re.sub(r'[.\-\s]', '', cnh or '')
    if not re.fullmatch(r'\d{11}', digits):
        raise ValueError(f"CNH must have 11 digits: {cnh}")
    return digits


# ============================================================================
# DOMAIN ENTITIES
# ============================================================================

@dataclass(frozen=True)
class Company:
    """Entity: transportation company or parking operator"""
    name: str
    company_type: CompanyType
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Company name cannot be empty")
        object.__setattr__(self, 'company_type', CompanyType(self.company_type))

    @property
    def can_book(self) -> bool:
        return self.company_type == CompanyType.TRANSPORTADORA


@dataclass(frozen=True)
class ParkingLot:
    """
    Entity: parking facility owned by an ESTACIONAMENTO company
    Free space is derived from active reservations, never stored here
    """
    company_id: str
    name: str
    total_spaces: int
    price_per_hour: Decimal
    is_active: bool = True
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        if self.total_spaces <= 0:
            raise ValueError("Parking lot must have at least one space")

        price = Decimal(str(self.price_per_hour))
        if price <= Decimal('0'):
            raise ValueError("Price per hour must be positive")
        object.__setattr__(self, 'price_per_hour', price)


@dataclass(frozen=True)
class ParkingSpace:
    """
    Entity: individually bookable unit within a lot
    is_available reflects occupancy right now, not future bookings
    """
    parking_lot_id: str
    space_number: str
    is_available: bool = True
    is_active: bool = True
    id: str = field(default_factory=new_id)

    def occupied(self) -> 'ParkingSpace':
        return replace(self, is_available=False)

    def released(self) -> 'ParkingSpace':
        return replace(self, is_available=True)


@dataclass(frozen=True)
class Vehicle:
    """Entity: vehicle owned by a transportation company"""
    company_id: str
    license_plate: str
    vehicle_type: VehicleType
    driver_id: Optional[str] = None
    is_active: bool = True
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        object.__setattr__(self, 'license_plate', LicensePlate(self.license_plate).value)
        object.__setattr__(self, 'vehicle_type', VehicleType(self.vehicle_type))


@dataclass(frozen=True)
class Driver:
    """Entity: driver employed by a transportation company"""
    company_id: str
    name: str
    cpf: str
    cnh: str
    is_active: bool = True
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        if not self.name or len(self.name.strip()) < 2:
            raise ValueError("Driver name must be at least 2 characters")
        object.__setattr__(self, 'cpf', validate_cpf(self.cpf))
        object.__setattr__(self, 'cnh', validate_cnh(self.cnh))


@dataclass(frozen=True)
class Reservation:
    """
    Entity: booking of a parking lot (and optionally a space) by a
    vehicle/driver for a half-open time window

    Invariants:
    - end_time > start_time
    - total_cost is non-negative and rounded to currency precision
    - version increases by one on every persisted change
    """
    parking_lot_id: str
    company_id: str
    vehicle_id: str
    driver_id: str
    start_time: datetime
    end_time: datetime
    total_cost: Decimal
    parking_space_id: Optional[str] = None
    status: ReservationStatus = ReservationStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    special_requests: Optional[str] = None
    actual_arrival: Optional[datetime] = None
    actual_departure: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    request_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    version: int = 1
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        if self.end_time <= self.start_time:
            raise ValueError("Reservation end time must be after start time")

        cost = Decimal(str(self.total_cost))
        if cost < Decimal('0'):
            raise ValueError("Total cost cannot be negative")
        object.__setattr__(self, 'total_cost', quantize_money(cost))
        object.__setattr__(self, 'status', ReservationStatus(self.status))
        object.__setattr__(self, 'payment_status', PaymentStatus(self.payment_status))

    @property
    def window(self) -> TimeRange:
        return TimeRange(self.start_time, self.end_time)

    @property
    def is_active(self) -> bool:
        """Non-terminal reservations hold their window"""
        return self.status in (
            ReservationStatus.PENDING,
            ReservationStatus.CONFIRMED,
            ReservationStatus.IN_PROGRESS,
        )

    def overlaps(self, start_time: datetime, end_time: datetime) -> bool:
        return self.start_time < end_time and start_time < self.end_time

    def with_status(
        self,
        target: ReservationStatus,
        at: datetime,
        reason: Optional[str] = None
    ) -> 'Reservation':
        """
        Return a copy moved to the target status
        Arrival/departure are stamped on IN_PROGRESS/COMPLETED if not already set
        """
        changes: Dict[str, Any] = {
            "status": target,
            "updated_at": at,
            "version": self.version + 1,
        }

        if target == ReservationStatus.IN_PROGRESS and self.actual_arrival is None:
            changes["actual_arrival"] = at

        if target == ReservationStatus.COMPLETED and self.actual_departure is None:
            changes["actual_departure"] = at

        if target == ReservationStatus.CANCELLED:
            changes["cancelled_at"] = at
            changes["cancellation_reason"] = reason

        return replace(self, **changes)

    def rescheduled(
        self,
        start_time: datetime,
        end_time: datetime,
        total_cost: Decimal,
        at: datetime
    ) -> 'Reservation':
        return replace(
            self,
            start_time=start_time,
            end_time=end_time,
            total_cost=total_cost,
            updated_at=at,
            version=self.version + 1,
        )

    def with_space(self, parking_space_id: str, at: datetime) -> 'Reservation':
        return replace(
            self,
            parking_space_id=parking_space_id,
            updated_at=at,
            version=self.version + 1,
        )

    def with_payment_status(self, payment_status: PaymentStatus, at: datetime) -> 'Reservation':
        return replace(
            self,
            payment_status=payment_status,
            updated_at=at,
            version=self.version + 1,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "parking_lot_id": self.parking_lot_id,
            "parking_space_id": self.parking_space_id,
            "company_id": self.company_id,
            "vehicle_id": self.vehicle_id,
            "driver_id": self.driver_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "total_cost": str(self.total_cost),
            "version": self.version,
        }

    def __str__(self) -> str:
        return f"Reservation {self.id[-6:]} [{self.status}] {self.window}"


@dataclass(frozen=True)
class Transaction:
    """Entity: money movement attached to a reservation"""
    reservation_id: str
    amount: Decimal
    transaction_type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        amount = Decimal(str(self.amount))
        if amount < Decimal('0'):
            raise ValueError("Transaction amount cannot be negative")
        object.__setattr__(self, 'amount', quantize_money(amount))
        object.__setattr__(self, 'transaction_type', TransactionType(self.transaction_type))
        object.__setattr__(self, 'status', TransactionStatus(self.status))
