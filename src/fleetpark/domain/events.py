# File: src/fleetpark/domain/events.py
"""
Reservation lifecycle events

Events represent something that already happened to a reservation. The
engine only emits them; delivery (e-mail, push, in-app bell) belongs to
whatever subscribes on the event bus or reads the queue.
"""

from abc import ABC
from datetime import datetime
from typing import Any, Dict, Optional, Type
import json
import uuid

from .models import Reservation, ReservationStatus, Transaction, utcnow


class DomainEvent(ABC):
    """
    Base class for all domain events
    Carries identity, occurrence time and a schema version
    """

    event_type = "domain.event"

    def __init__(self, timestamp: Optional[datetime] = None):
        self.event_id = str(uuid.uuid4())
        self.timestamp = timestamp or utcnow()
        self.version = "1.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "data": {},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def __str__(self) -> str:
        return f"{self.__class__.__name__} at {self.timestamp}"


class ReservationEvent(DomainEvent):
    """Event raised for a reservation; snapshots the reservation after the change"""

    event_type = "reservation.event"

    def __init__(
        self,
        reservation: Reservation,
        actor_role: Optional[str] = None,
        previous_status: Optional[ReservationStatus] = None,
        timestamp: Optional[datetime] = None
    ):
        super().__init__(timestamp or reservation.updated_at)
        self.reservation = reservation
        self.reservation_id = reservation.id
        self.actor_role = getattr(actor_role, "value", actor_role)
        self.previous_status = previous_status

    @property
    def aggregate_id(self) -> str:
        return self.reservation_id

    def to_dict(self) -> Dict[str, Any]:
        data = self.reservation.to_dict()
        data["actor_role"] = self.actor_role
        if self.previous_status is not None:
            data["previous_status"] = self.previous_status.value

        envelope = super().to_dict()
        envelope["aggregate_id"] = self.reservation_id
        envelope["data"] = data
        return envelope


class ReservationCreated(ReservationEvent):
    """Event raised when a reservation is created in PENDING"""
    event_type = "reservation.created"


class ReservationConfirmed(ReservationEvent):
    event_type = "reservation.confirmed"


class ReservationStarted(ReservationEvent):
    """Event raised on check-in (IN_PROGRESS)"""
    event_type = "reservation.started"


class ReservationCompleted(ReservationEvent):
    event_type = "reservation.completed"


class ReservationCancelled(ReservationEvent):
    """Event raised when a reservation is cancelled; carries the audit reason"""

    event_type = "reservation.cancelled"

    def to_dict(self) -> Dict[str, Any]:
        envelope = super().to_dict()
        envelope["data"]["reason"] = self.reservation.cancellation_reason
        return envelope


class PaymentReceived(ReservationEvent):
    """Event raised when a PAYMENT transaction settles a reservation"""

    event_type = "reservation.payment_received"

    def __init__(self, reservation: Reservation, transaction: Transaction, actor_role: Optional[str] = None):
        super().__init__(reservation, actor_role=actor_role, timestamp=transaction.created_at)
        self.transaction = transaction

    def to_dict(self) -> Dict[str, Any]:
        envelope = super().to_dict()
        envelope["data"]["transaction_id"] = self.transaction.id
        envelope["data"]["amount"] = str(self.transaction.amount)
        return envelope


STATUS_EVENTS: Dict[ReservationStatus, Type[ReservationEvent]] = {
    ReservationStatus.CONFIRMED: ReservationConfirmed,
    ReservationStatus.IN_PROGRESS: ReservationStarted,
    ReservationStatus.COMPLETED: ReservationCompleted,
    ReservationStatus.CANCELLED: ReservationCancelled,
}


def event_for_transition(
    reservation: Reservation,
    previous_status: ReservationStatus,
    actor_role: Optional[str] = None
) -> ReservationEvent:
    """Build the typed event for the status the reservation just entered"""
    event_class = STATUS_EVENTS[reservation.status]
    return event_class(reservation, actor_role=actor_role, previous_status=previous_status)
