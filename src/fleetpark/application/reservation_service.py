# File: src/fleetpark/application/reservation_service.py
"""
Reservation Lifecycle Application Service

This module implements the use cases of the reservation engine:
1. Create a reservation (window check, reference lookups, allocation,
   pricing, insert) as one critical section per lot
2. Change status (role guard, transition table, space occupancy)
3. Cancel, reschedule, assign a space, record payments
4. Read a reservation with its joined summaries, list and count

Every collaborator is injected: a unit-of-work factory for storage, a
lock provider for critical sections, an event publisher, a clock and the
engine configuration. Nothing here is a module-level singleton, so tests
run the service against the in-memory store.

Deterministic failures (window, role, transition, conflict, missing
records) propagate at once. Retryable failures (storage unavailable,
concurrent update) are retried a bounded number of times with
exponential backoff; the create path is idempotent by request_id.
"""

from contextlib import ExitStack, contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable, Iterator, List, Optional, Protocol, Tuple, TypeVar
import logging
import time

from ..config import EngineConfig
from ..domain.allocation import available_spaces, check_availability, find_overlapping, validate_window
from ..domain.events import DomainEvent, PaymentReceived, ReservationCreated, event_for_transition
from ..domain.exceptions import (
    ConcurrentUpdateError,
    ConflictError,
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
    ReservationError,
)
from ..domain.models import (
    ActorRole,
    ParkingLot,
    ParkingSpace,
    PaymentStatus,
    Reservation,
    ReservationStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    ensure_utc,
    utcnow,
)
from ..domain.permissions import (
    RESCHEDULE_ROLES,
    SPACE_ASSIGNMENT_ROLES,
    ensure_authorized,
    ensure_can_create,
    ensure_company_scope,
    ensure_role_in,
    permitted_actions,
)
from ..domain.pricing import HourlyPricingStrategy, PricingStrategy
from ..domain.state_machine import validate_transition
from ..infrastructure.locking import LockProvider, lot_lock_key, reservation_lock_key, space_lock_key
from ..infrastructure.repositories import Repository, UnitOfWork
from .dtos import (
    CreateReservationRequest,
    DriverSummaryDTO,
    LotAvailabilityDTO,
    ParkingLotSummaryDTO,
    ParkingSpaceSummaryDTO,
    ReservationDetailDTO,
    ReservationQueryDTO,
    VehicleSummaryDTO,
)


R = TypeVar('R')

SPACE_ASSIGNABLE_STATUSES = frozenset({ReservationStatus.PENDING, ReservationStatus.CONFIRMED})

PAYMENT_STATUS_FOR_TRANSACTION = {
    TransactionType.PAYMENT: PaymentStatus.PAID,
    TransactionType.REFUND: PaymentStatus.REFUNDED,
}


class EventPublisher(Protocol):
    """Anything that accepts lifecycle events (MessageBus, EventBus, a test double)"""

    def publish(self, event: DomainEvent) -> None:
        ...


def vehicle_lock_key(vehicle_id: str) -> str:
    return f"reservation-vehicle:{vehicle_id}"


def driver_lock_key(driver_id: str) -> str:
    return f"reservation-driver:{driver_id}"


class ReservationLifecycleService:
    """
    Main application service for reservations

    Locks are always taken in sorted key order, so the create, reschedule
    and status paths can never wait on each other in a cycle.
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        event_publisher: EventPublisher,
        lock_provider: LockProvider,
        clock: Callable[[], datetime] = utcnow,
        config: Optional[EngineConfig] = None,
        pricing_strategy: Optional[PricingStrategy] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            uow_factory: returns a fresh UnitOfWork per call
            event_publisher: receives events after the change is committed
            lock_provider: serializes check-then-insert and status changes
            clock: current instant; naive results are read as UTC
            config: retry settings; defaults to EngineConfig()
            pricing_strategy: tariff; defaults to HourlyPricingStrategy
            sleep: backoff sleeper, replaced in tests
        """
        self.uow_factory = uow_factory
        self.events = event_publisher
        self.locks = lock_provider
        self.clock = clock
        self.config = config or EngineConfig()
        self.pricing = pricing_strategy or HourlyPricingStrategy()
        self._sleep = sleep
        self.logger = logging.getLogger(self.__class__.__name__)

        self.logger.info("ReservationLifecycleService initialized")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        request: CreateReservationRequest,
        actor_role: ActorRole = ActorRole.TRANSPORTADORA
    ) -> Reservation:
        """
        Create a reservation in PENDING

        Use Case: Booking
        1. Validate the window against the clock
        2. Check the actor may book
        3. Load lot, company, vehicle, driver (and space)
        4. Under the lot/vehicle/driver locks: availability check, pricing, insert
        5. Emit ReservationCreated

        A repeated request_id returns the reservation created the first time.
        """
        role = ActorRole(actor_role)
        now = self._now()
        start_time = ensure_utc(request.start_time)
        end_time = ensure_utc(request.end_time)

        validate_window(start_time, end_time, now)
        ensure_can_create(role)

        self.logger.info(
            f"Creating reservation at lot {request.parking_lot_id} "
            f"for vehicle {request.vehicle_id} ({start_time.isoformat()} - {end_time.isoformat()})"
        )

        reservation, created = self._with_retry(
            "create",
            lambda: self._create_once(request, start_time, end_time, now),
        )

        if created:
            self.logger.info(f"Reservation {reservation.id} created, cost {reservation.total_cost}")
            self._emit(ReservationCreated(reservation, actor_role=role))
        else:
            self.logger.info(f"Request {request.request_id} already served by reservation {reservation.id}")
        return reservation

    def _create_once(
        self,
        request: CreateReservationRequest,
        start_time: datetime,
        end_time: datetime,
        now: datetime
    ) -> Tuple[Reservation, bool]:
        keys = [
            lot_lock_key(request.parking_lot_id),
            vehicle_lock_key(request.vehicle_id),
            driver_lock_key(request.driver_id),
        ]
        with self._hold_locks(keys), self.uow_factory() as uow:
            if request.request_id:
                existing = uow.reservations.find_by_request_id(request.request_id)
                if existing is not None:
                    return existing, False

            lot = self._load_active(uow.parking_lots, "ParkingLot", request.parking_lot_id)
            vehicle = self._load_active(uow.vehicles, "Vehicle", request.vehicle_id)
            driver = self._load_active(uow.drivers, "Driver", request.driver_id)

            company_id = request.company_id or vehicle.company_id
            company = uow.companies.get(company_id)
            if company is None:
                raise NotFoundError("Company", company_id)
            if not company.can_book:
                raise InvalidRequestError(
                    "Only transportation companies can create reservations",
                    {"company_id": company.id, "company_type": company.company_type.value},
                )
            self._ensure_owned(vehicle, company_id, "Vehicle")
            self._ensure_owned(driver, company_id, "Driver")

            if request.parking_space_id:
                self._load_space_in_lot(uow, request.parking_space_id, lot)

            existing = uow.reservations.find_active_overlapping(
                start_time, end_time,
                parking_lot_id=lot.id, vehicle_id=vehicle.id, driver_id=driver.id,
            )
            check_availability(
                lot, start_time, end_time, existing, now,
                space_id=request.parking_space_id,
                vehicle_id=vehicle.id,
                driver_id=driver.id,
            )

            reservation = Reservation(
                parking_lot_id=lot.id,
                parking_space_id=request.parking_space_id,
                company_id=company_id,
                vehicle_id=vehicle.id,
                driver_id=driver.id,
                start_time=start_time,
                end_time=end_time,
                total_cost=self.pricing.calculate(lot, start_time, end_time),
                special_requests=request.special_requests,
                request_id=request.request_id,
                created_at=now,
                updated_at=now,
            )
            uow.reservations.add(reservation)
            return reservation, True

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def change_status(
        self,
        reservation_id: str,
        actor_role: ActorRole,
        target_status: ReservationStatus,
        reason: Optional[str] = None,
        actor_company_id: Optional[str] = None
    ) -> Reservation:
        """
        Move a reservation to ``target_status``

        The role guard runs before the transition table, so a role that can
        never request the target is refused even from a terminal state.
        With ``actor_company_id`` the change is also limited to the actor's
        own reservations (carriers) or lots (parking operators).
        Entering IN_PROGRESS occupies the assigned space; leaving it for
        COMPLETED or CANCELLED releases the space once no other reservation
        is in progress on it.
        """
        role = ActorRole(actor_role)
        target = ReservationStatus(target_status)

        updated, previous = self._with_retry(
            "change_status",
            lambda: self._change_status_once(reservation_id, role, target, reason, actor_company_id),
        )

        self.logger.info(
            f"Reservation {reservation_id} moved {previous.value} -> {target.value} by {role.value}"
        )
        self._emit(event_for_transition(updated, previous, actor_role=role))
        return updated

    def _change_status_once(
        self,
        reservation_id: str,
        role: ActorRole,
        target: ReservationStatus,
        reason: Optional[str],
        actor_company_id: Optional[str]
    ) -> Tuple[Reservation, ReservationStatus]:
        current = self._read(lambda uow: self._load_reservation(uow, reservation_id))
        keys = [reservation_lock_key(reservation_id)]
        if current.parking_space_id:
            keys.append(space_lock_key(current.parking_space_id))

        with self._hold_locks(keys), self.uow_factory() as uow:
            reservation = self._load_reservation(uow, reservation_id)
            if reservation.parking_space_id != current.parking_space_id:
                raise ConcurrentUpdateError(
                    f"Space of reservation {reservation_id} changed while waiting for its lock",
                    {"reservation_id": reservation_id},
                )
            ensure_authorized(role, target)
            self._ensure_company_scope(uow, role, actor_company_id, reservation)
            validate_transition(reservation.status, target)

            updated = reservation.with_status(target, self._now(), reason)
            uow.reservations.update(updated, expected_version=reservation.version)
            self._sync_space_occupancy(uow, reservation.status, updated)
            return updated, reservation.status

    def cancel(
        self,
        reservation_id: str,
        actor_role: ActorRole,
        reason: Optional[str] = None,
        actor_company_id: Optional[str] = None
    ) -> Reservation:
        """Cancel a reservation, recording the reason and time for audit"""
        return self.change_status(
            reservation_id, actor_role, ReservationStatus.CANCELLED,
            reason=reason, actor_company_id=actor_company_id,
        )

    def _sync_space_occupancy(
        self,
        uow: UnitOfWork,
        previous: ReservationStatus,
        reservation: Reservation
    ) -> None:
        if reservation.parking_space_id is None:
            return

        entering = reservation.status == ReservationStatus.IN_PROGRESS
        leaving = previous == ReservationStatus.IN_PROGRESS and reservation.status in (
            ReservationStatus.COMPLETED, ReservationStatus.CANCELLED,
        )
        if not (entering or leaving):
            return

        space = uow.parking_spaces.get(reservation.parking_space_id)
        if space is None:
            raise NotFoundError("ParkingSpace", reservation.parking_space_id)

        if leaving:
            still_parked = [
                r for r in uow.reservations.find_by_space(space.id, ReservationStatus.IN_PROGRESS)
                if r.id != reservation.id
            ]
            if still_parked:
                self.logger.debug(f"Space {space.space_number} stays occupied by reservation {still_parked[0].id}")
                return

        uow.parking_spaces.update(space.occupied() if entering else space.released())
        self.logger.debug(
            f"Space {space.space_number} marked {'occupied' if entering else 'available'}"
        )

    # ------------------------------------------------------------------
    # Window and space changes
    # ------------------------------------------------------------------

    def reschedule(
        self,
        reservation_id: str,
        actor_role: ActorRole,
        start_time: datetime,
        end_time: datetime,
        actor_company_id: Optional[str] = None
    ) -> Reservation:
        """Move a PENDING reservation to a new window and recompute its cost"""
        role = ActorRole(actor_role)
        ensure_role_in(role, RESCHEDULE_ROLES, "reschedule reservations")

        start_time = ensure_utc(start_time)
        end_time = ensure_utc(end_time)
        validate_window(start_time, end_time, self._now())

        updated = self._with_retry(
            "reschedule",
            lambda: self._reschedule_once(reservation_id, role, start_time, end_time, actor_company_id),
        )
        self.logger.info(f"Reservation {reservation_id} rescheduled, new cost {updated.total_cost}")
        return updated

    def _reschedule_once(
        self,
        reservation_id: str,
        role: ActorRole,
        start_time: datetime,
        end_time: datetime,
        actor_company_id: Optional[str]
    ) -> Reservation:
        current = self._read(lambda uow: self._load_reservation(uow, reservation_id))
        keys = [
            reservation_lock_key(reservation_id),
            lot_lock_key(current.parking_lot_id),
            vehicle_lock_key(current.vehicle_id),
            driver_lock_key(current.driver_id),
        ]
        with self._hold_locks(keys), self.uow_factory() as uow:
            reservation = self._load_reservation(uow, reservation_id)
            self._ensure_company_scope(uow, role, actor_company_id, reservation)
            if reservation.status != ReservationStatus.PENDING:
                raise InvalidTransitionError(
                    reservation.status, reservation.status,
                    f"Only pending reservations can be rescheduled (status is {reservation.status.value})",
                )

            lot = self._load(uow.parking_lots, "ParkingLot", reservation.parking_lot_id)
            existing = uow.reservations.find_active_overlapping(
                start_time, end_time,
                parking_lot_id=lot.id,
                vehicle_id=reservation.vehicle_id,
                driver_id=reservation.driver_id,
            )
            check_availability(
                lot, start_time, end_time, existing, self._now(),
                space_id=reservation.parking_space_id,
                vehicle_id=reservation.vehicle_id,
                driver_id=reservation.driver_id,
                exclude_id=reservation.id,
            )

            updated = reservation.rescheduled(
                start_time, end_time,
                self.pricing.calculate(lot, start_time, end_time),
                self._now(),
            )
            uow.reservations.update(updated, expected_version=reservation.version)
            return updated

    def assign_space(
        self,
        reservation_id: str,
        actor_role: ActorRole,
        space_id: str,
        actor_company_id: Optional[str] = None
    ) -> Reservation:
        """Pin a PENDING or CONFIRMED reservation to a concrete space of its lot"""
        role = ActorRole(actor_role)
        ensure_role_in(role, SPACE_ASSIGNMENT_ROLES, "assign parking spaces")

        updated = self._with_retry(
            "assign_space",
            lambda: self._assign_space_once(reservation_id, role, space_id, actor_company_id),
        )
        self.logger.info(f"Reservation {reservation_id} assigned to space {space_id}")
        return updated

    def _assign_space_once(
        self,
        reservation_id: str,
        role: ActorRole,
        space_id: str,
        actor_company_id: Optional[str]
    ) -> Reservation:
        current = self._read(lambda uow: self._load_reservation(uow, reservation_id))
        keys = [reservation_lock_key(reservation_id), lot_lock_key(current.parking_lot_id)]

        with self._hold_locks(keys), self.uow_factory() as uow:
            reservation = self._load_reservation(uow, reservation_id)
            self._ensure_company_scope(uow, role, actor_company_id, reservation)
            if reservation.status not in SPACE_ASSIGNABLE_STATUSES:
                raise InvalidTransitionError(
                    reservation.status, reservation.status,
                    f"Spaces can only be assigned to pending or confirmed reservations "
                    f"(status is {reservation.status.value})",
                )

            lot = self._load(uow.parking_lots, "ParkingLot", reservation.parking_lot_id)
            space = self._load_space_in_lot(uow, space_id, lot)

            in_lot = uow.reservations.find_active_overlapping(
                reservation.start_time, reservation.end_time, parking_lot_id=lot.id,
            )
            taken = [
                r for r in find_overlapping(in_lot, reservation.start_time, reservation.end_time,
                                            exclude_id=reservation.id)
                if r.parking_space_id == space.id
            ]
            if taken:
                raise ConflictError(
                    "Parking space is already reserved for an overlapping window",
                    {"parking_space_id": space.id, "conflicting_reservation_id": taken[0].id},
                )

            updated = reservation.with_space(space.id, self._now())
            uow.reservations.update(updated, expected_version=reservation.version)
            return updated

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_transaction(
        self,
        reservation_id: str,
        amount: Decimal,
        transaction_type: TransactionType
    ) -> Transaction:
        """
        Record a settled money movement
        PAYMENT marks the reservation PAID, REFUND marks it REFUNDED, FEE
        leaves the payment status alone
        """
        kind = TransactionType(transaction_type)
        transaction, reservation = self._with_retry(
            "record_transaction",
            lambda: self._record_transaction_once(reservation_id, amount, kind),
        )

        self.logger.info(f"Recorded {kind.value} of {transaction.amount} for reservation {reservation_id}")
        if kind == TransactionType.PAYMENT:
            self._emit(PaymentReceived(reservation, transaction))
        return transaction

    def _record_transaction_once(
        self,
        reservation_id: str,
        amount: Decimal,
        kind: TransactionType
    ) -> Tuple[Transaction, Reservation]:
        with self._hold_locks([reservation_lock_key(reservation_id)]), self.uow_factory() as uow:
            reservation = self._load_reservation(uow, reservation_id)
            now = self._now()

            transaction = Transaction(
                reservation_id=reservation.id,
                amount=amount,
                transaction_type=kind,
                status=TransactionStatus.COMPLETED,
                created_at=now,
            )
            uow.transactions.add(transaction)

            payment_status = PAYMENT_STATUS_FOR_TRANSACTION.get(kind)
            if payment_status is not None and payment_status != reservation.payment_status:
                updated = reservation.with_payment_status(payment_status, now)
                uow.reservations.update(updated, expected_version=reservation.version)
                reservation = updated
            return transaction, reservation

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, reservation_id: str) -> ReservationDetailDTO:
        """Reservation joined with its lot, vehicle, driver and space summaries"""

        def load(uow: UnitOfWork) -> ReservationDetailDTO:
            reservation = self._load_reservation(uow, reservation_id)
            lot = uow.parking_lots.get(reservation.parking_lot_id)
            vehicle = uow.vehicles.get(reservation.vehicle_id)
            driver = uow.drivers.get(reservation.driver_id)
            space = uow.parking_spaces.get(reservation.parking_space_id) if reservation.parking_space_id else None

            detail = ReservationDetailDTO.model_validate(reservation)
            return detail.model_copy(update={
                "parking_lot": ParkingLotSummaryDTO.model_validate(lot) if lot else None,
                "vehicle": VehicleSummaryDTO.model_validate(vehicle) if vehicle else None,
                "driver": DriverSummaryDTO.model_validate(driver) if driver else None,
                "parking_space": ParkingSpaceSummaryDTO.model_validate(space) if space else None,
                "permitted_actions": {role.value: permitted_actions(role, reservation.status) for role in ActorRole},
            })

        return self._with_retry("get", lambda: self._read(load))

    def list_reservations(self, query: Optional[ReservationQueryDTO] = None) -> List[Reservation]:
        """Filtered listing, newest start time first"""
        query = query or ReservationQueryDTO()
        return self._with_retry("list", lambda: self._read(lambda uow: uow.reservations.search(query)))

    def lot_availability(self, parking_lot_id: str, at: Optional[datetime] = None) -> LotAvailabilityDTO:
        """Free spaces in a lot at an instant (now by default)"""
        instant = ensure_utc(at) if at is not None else self._now()

        def load(uow: UnitOfWork) -> LotAvailabilityDTO:
            lot = self._load(uow.parking_lots, "ParkingLot", parking_lot_id)
            active = uow.reservations.find_active_overlapping(
                instant, instant + timedelta(microseconds=1), parking_lot_id=lot.id,
            )
            return LotAvailabilityDTO(
                parking_lot_id=lot.id,
                total_spaces=lot.total_spaces,
                available_spaces=available_spaces(lot, active, instant),
                at=instant,
            )

        return self._with_retry("lot_availability", lambda: self._read(load))

    def transactions_for(self, reservation_id: str) -> List[Transaction]:
        def load(uow: UnitOfWork) -> List[Transaction]:
            self._load_reservation(uow, reservation_id)
            return uow.transactions.find_by_reservation(reservation_id)

        return self._with_retry("transactions", lambda: self._read(load))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return ensure_utc(self.clock())

    def _read(self, fn: Callable[[UnitOfWork], R]) -> R:
        with self.uow_factory() as uow:
            return fn(uow)

    @contextmanager
    def _hold_locks(self, keys: Iterable[str]) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.locks.lock(key))
            yield

    def _with_retry(self, operation: str, fn: Callable[[], R]) -> R:
        """Run ``fn``, retrying retryable engine errors with exponential backoff"""
        attempts = self.config.retry_attempts
        attempt = 0
        while True:
            try:
                return fn()
            except ReservationError as e:
                if not e.retryable or attempt + 1 >= attempts:
                    raise
                delay = self.config.retry_backoff_seconds * (2 ** attempt)
                self.logger.warning(
                    f"Attempt {attempt + 1}/{attempts} of {operation} failed ({e.code}): {e.message}; "
                    f"retrying in {delay:.3f}s"
                )
                self._sleep(delay)
                attempt += 1

    def _emit(self, event: DomainEvent) -> None:
        """Publish after commit; a publishing failure never undoes the change"""
        try:
            self.events.publish(event)
        except Exception as e:
            self.logger.error(f"Failed to publish {event.event_type} ({event.event_id}): {e}")

    @staticmethod
    def _load(repository: Repository, entity: str, entity_id: str) -> Any:
        record = repository.get(entity_id)
        if record is None:
            raise NotFoundError(entity, entity_id)
        return record

    @classmethod
    def _load_active(cls, repository: Repository, entity: str, entity_id: str) -> Any:
        """Inactive records are treated as missing"""
        record = cls._load(repository, entity, entity_id)
        if not record.is_active:
            raise NotFoundError(entity, entity_id)
        return record

    @classmethod
    def _load_reservation(cls, uow: UnitOfWork, reservation_id: str) -> Reservation:
        return cls._load(uow.reservations, "Reservation", reservation_id)

    @classmethod
    def _load_space_in_lot(cls, uow: UnitOfWork, space_id: str, lot: ParkingLot) -> ParkingSpace:
        space = cls._load_active(uow.parking_spaces, "ParkingSpace", space_id)
        if space.parking_lot_id != lot.id:
            raise InvalidRequestError(
                "Parking space does not belong to this parking lot",
                {"parking_space_id": space.id, "parking_lot_id": lot.id},
            )
        return space

    @staticmethod
    def _ensure_owned(record: Any, company_id: str, entity: str) -> None:
        """Vehicles and drivers of another company are reported as missing"""
        if record.company_id != company_id:
            raise NotFoundError(entity, record.id)

    @staticmethod
    def _ensure_company_scope(
        uow: UnitOfWork,
        role: ActorRole,
        actor_company_id: Optional[str],
        reservation: Reservation
    ) -> None:
        if actor_company_id is None:
            return
        lot = uow.parking_lots.get(reservation.parking_lot_id)
        ensure_company_scope(
            role, actor_company_id, reservation.company_id, lot.company_id if lot is not None else None,
        )
