#!/usr/bin/env python3
"""
Reservation lifecycle service integration tests

Runs the service against the in-memory store with a fixed clock, the
in-process lock provider and a recording event publisher.
"""

import sys
import threading
import unittest
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from reservation_fixtures import (
    NOW, FailingPublisher, FixedClock, RecordingPublisher, at, booking, make_reference_data, make_service,
)
from fleetpark.application.dtos import ReservationQueryDTO
from fleetpark.config import EngineConfig
from fleetpark.domain.exceptions import (
    ConflictError,
    InvalidRequestError,
    InvalidTransitionError,
    InvalidWindowError,
    NotFoundError,
    StorageUnavailableError,
    UnauthorizedError,
)
from fleetpark.domain.models import (
    ActorRole, PaymentStatus, ReservationStatus, TransactionStatus, TransactionType,
)
from fleetpark.infrastructure.repositories import InMemoryStore, RepositoryFactory

ADMIN = ActorRole.ADMIN
OPERATOR = ActorRole.ESTACIONAMENTO
CARRIER = ActorRole.TRANSPORTADORA


class ServiceTestCase(unittest.TestCase):
    """Seeds the reference data into a fresh in-memory store"""

    def setUp(self):
        self.data = make_reference_data()
        self.store = InMemoryStore()
        self.store.seed(*self.data.entities())
        self.clock = FixedClock()
        self.publisher = RecordingPublisher()
        self.sleeps = []
        self.service = make_service(
            store=self.store, publisher=self.publisher, clock=self.clock, sleeps=self.sleeps,
        )

    def book(self, start=None, end=None, **kwargs):
        return self.service.create(booking(self.data, start or at(10), end or at(12), **kwargs))

    def stored(self, reservation_id):
        return self.store.tables["reservations"][reservation_id]


class TestCreateReservation(ServiceTestCase):
    """Booking use case"""

    def test_create_prices_and_stores_pending_reservation(self):
        """Test 2 hours at 15.00/h is booked PENDING for 30.00"""
        reservation = self.book(space=self.data.space_a1)

        self.assertEqual(reservation.status, ReservationStatus.PENDING)
        self.assertEqual(reservation.payment_status, PaymentStatus.PENDING)
        self.assertEqual(reservation.total_cost, Decimal("30.00"))
        self.assertEqual(reservation.company_id, self.data.carrier.id)
        self.assertEqual(reservation.created_at, NOW)
        self.assertEqual(self.stored(reservation.id), reservation)

    def test_create_emits_created_event(self):
        reservation = self.book()

        self.assertEqual(self.publisher.types(), ["reservation.created"])
        event = self.publisher.events[0]
        self.assertEqual(event.reservation_id, reservation.id)
        self.assertEqual(event.actor_role, "TRANSPORTADORA")

    def test_admin_may_book_for_a_carrier(self):
        reservation = self.service.create(
            booking(self.data, at(10), at(12), company_id=self.data.carrier.id), ADMIN,
        )
        self.assertEqual(reservation.company_id, self.data.carrier.id)

    def test_start_in_the_past_rejected(self):
        with self.assertRaises(InvalidWindowError):
            self.book(NOW - timedelta(hours=1), NOW + timedelta(hours=1))
        self.assertEqual(self.store.tables["reservations"], {})
        self.assertEqual(self.publisher.events, [])

    def test_end_before_start_rejected(self):
        with self.assertRaises(InvalidWindowError):
            self.book(at(12), at(10))

    def test_operator_cannot_book(self):
        with self.assertRaises(UnauthorizedError):
            self.service.create(booking(self.data, at(10), at(12)), OPERATOR)

    def test_unknown_lot(self):
        request = booking(self.data, at(10), at(12)).model_copy(update={"parking_lot_id": "missing"})
        with self.assertRaises(NotFoundError) as ctx:
            self.service.create(request)
        self.assertEqual(ctx.exception.entity, "ParkingLot")

    def test_inactive_lot_is_not_found(self):
        with self.assertRaises(NotFoundError):
            self.book(lot=self.data.closed_lot)

    def test_space_of_another_lot(self):
        with self.assertRaises(InvalidRequestError):
            self.book(space=self.data.space_b1)

    def test_parking_operator_company_cannot_book(self):
        with self.assertRaises(InvalidRequestError):
            self.book(company_id=self.data.operator.id)

    def test_vehicle_of_another_company(self):
        request = booking(self.data, at(10), at(12)).model_copy(
            update={"vehicle_id": self.data.foreign_vehicle.id},
        )
        with self.assertRaises(NotFoundError):
            self.service.create(request)

    def test_same_space_overlapping_window_conflicts(self):
        self.book(at(10), at(12), space=self.data.space_a1, index=0)
        with self.assertRaises(ConflictError):
            self.book(at(11), at(13), space=self.data.space_a1, index=1)

    def test_back_to_back_bookings_of_one_space(self):
        first = self.book(at(10), at(12), space=self.data.space_a1, index=0)
        second = self.book(at(12), at(14), space=self.data.space_a1, index=1)
        self.assertNotEqual(first.id, second.id)

    def test_lot_capacity_is_enforced(self):
        """Test a third overlapping booking of a 2-space lot conflicts"""
        self.book(at(10), at(12), index=0)
        self.book(at(11), at(13), index=1)
        with self.assertRaises(ConflictError):
            self.book(at(11), at(12), index=2)
        self.book(at(12), at(14), index=2)

    def test_vehicle_cannot_be_in_two_lots(self):
        self.book(at(10), at(12), index=0)
        with self.assertRaises(ConflictError) as ctx:
            self.book(at(11), at(13), lot=self.data.second_lot, index=0)
        self.assertIn("vehicle_id", ctx.exception.details)

    def test_cancelled_booking_frees_its_window(self):
        first = self.book(space=self.data.space_a1, index=0)
        self.service.cancel(first.id, CARRIER, "Route changed")
        second = self.book(space=self.data.space_a1, index=1)
        self.assertEqual(second.status, ReservationStatus.PENDING)

    def test_request_id_makes_create_idempotent(self):
        first = self.book(request_id="req-42")
        again = self.book(request_id="req-42")

        self.assertEqual(first.id, again.id)
        self.assertEqual(len(self.store.tables["reservations"]), 1)
        self.assertEqual(self.publisher.types(), ["reservation.created"])

    def test_publisher_failure_keeps_reservation(self):
        service = make_service(store=self.store, publisher=FailingPublisher(), clock=self.clock)
        reservation = service.create(booking(self.data, at(10), at(12)))
        self.assertEqual(self.stored(reservation.id).status, ReservationStatus.PENDING)


class TestStatusChanges(ServiceTestCase):
    """Status change use cases"""

    def test_full_lifecycle(self):
        reservation = self.book(space=self.data.space_a1)

        self.clock.now = at(9)
        confirmed = self.service.change_status(reservation.id, OPERATOR, ReservationStatus.CONFIRMED)
        self.clock.now = at(10, 5)
        started = self.service.change_status(reservation.id, OPERATOR, ReservationStatus.IN_PROGRESS)
        self.assertFalse(self.store.tables["parking_spaces"][self.data.space_a1.id].is_available)

        self.clock.now = at(11, 55)
        completed = self.service.change_status(reservation.id, OPERATOR, ReservationStatus.COMPLETED)

        self.assertEqual(confirmed.version, 2)
        self.assertEqual(started.actual_arrival, at(10, 5))
        self.assertEqual(completed.actual_departure, at(11, 55))
        self.assertEqual(completed.version, 4)
        self.assertTrue(self.store.tables["parking_spaces"][self.data.space_a1.id].is_available)
        self.assertEqual(self.publisher.types(), [
            "reservation.created",
            "reservation.confirmed",
            "reservation.started",
            "reservation.completed",
        ])

    def test_space_stays_occupied_while_next_booking_is_parked(self):
        """Test completing one of two back-to-back bookings keeps the shared space occupied"""
        first = self.book(at(10), at(12), space=self.data.space_a1, index=0)
        second = self.book(at(12), at(13), space=self.data.space_a1, index=1)
        for reservation in (first, second):
            self.service.change_status(reservation.id, OPERATOR, ReservationStatus.CONFIRMED)
        self.service.change_status(first.id, OPERATOR, ReservationStatus.IN_PROGRESS)
        self.service.change_status(second.id, OPERATOR, ReservationStatus.IN_PROGRESS)

        self.service.change_status(first.id, OPERATOR, ReservationStatus.COMPLETED)
        self.assertFalse(self.store.tables["parking_spaces"][self.data.space_a1.id].is_available)

        self.service.change_status(second.id, OPERATOR, ReservationStatus.COMPLETED)
        self.assertTrue(self.store.tables["parking_spaces"][self.data.space_a1.id].is_available)

    def test_status_change_locks_the_assigned_space(self):
        reservation = self.book(space=self.data.space_a1)
        keys = []
        take_lock = self.service.locks.lock

        def recording_lock(key):
            keys.append(key)
            return take_lock(key)

        self.service.locks.lock = recording_lock
        self.service.change_status(reservation.id, OPERATOR, ReservationStatus.CONFIRMED)

        self.assertEqual(keys, sorted([f"reservation:{reservation.id}", f"reservation-space:{self.data.space_a1.id}"]))

    def test_cancel_records_audit_fields(self):
        reservation = self.book()
        cancelled = self.service.cancel(reservation.id, CARRIER, "Load postponed")

        self.assertEqual(cancelled.status, ReservationStatus.CANCELLED)
        self.assertEqual(cancelled.cancellation_reason, "Load postponed")
        self.assertEqual(cancelled.cancelled_at, NOW)
        self.assertEqual(self.publisher.events[-1].to_dict()["data"]["reason"], "Load postponed")

    def test_cancelled_cannot_be_confirmed(self):
        reservation = self.book()
        self.service.cancel(reservation.id, CARRIER)

        with self.assertRaises(InvalidTransitionError):
            self.service.change_status(reservation.id, OPERATOR, ReservationStatus.CONFIRMED)
        self.assertEqual(self.stored(reservation.id).status, ReservationStatus.CANCELLED)

    def test_completed_cannot_be_cancelled(self):
        reservation = self.book()
        for status in (ReservationStatus.CONFIRMED, ReservationStatus.IN_PROGRESS, ReservationStatus.COMPLETED):
            self.service.change_status(reservation.id, ADMIN, status)

        with self.assertRaises(InvalidTransitionError):
            self.service.cancel(reservation.id, ADMIN)

    def test_skipping_confirmation_rejected(self):
        reservation = self.book()
        with self.assertRaises(InvalidTransitionError):
            self.service.change_status(reservation.id, OPERATOR, ReservationStatus.IN_PROGRESS)

    def test_carrier_cannot_confirm(self):
        reservation = self.book()
        with self.assertRaises(UnauthorizedError):
            self.service.change_status(reservation.id, CARRIER, ReservationStatus.CONFIRMED)
        self.assertEqual(self.stored(reservation.id).status, ReservationStatus.PENDING)
        self.assertEqual(self.publisher.types(), ["reservation.created"])

    def test_unknown_reservation(self):
        with self.assertRaises(NotFoundError):
            self.service.change_status("missing", CARRIER, ReservationStatus.CONFIRMED)

    def test_cancel_in_progress_releases_space(self):
        reservation = self.book(space=self.data.space_a1)
        self.service.change_status(reservation.id, OPERATOR, ReservationStatus.CONFIRMED)
        self.service.change_status(reservation.id, OPERATOR, ReservationStatus.IN_PROGRESS)
        self.service.cancel(reservation.id, OPERATOR, "Vehicle left early")
        self.assertTrue(self.store.tables["parking_spaces"][self.data.space_a1.id].is_available)


class TestCompanyScope(ServiceTestCase):
    """Actors limited to their own company's reservations and lots"""

    def test_carrier_cannot_cancel_another_companys_booking(self):
        reservation = self.book()
        with self.assertRaises(UnauthorizedError):
            self.service.cancel(reservation.id, CARRIER, "not mine", actor_company_id=self.data.other_carrier.id)

        self.assertEqual(self.stored(reservation.id).status, ReservationStatus.PENDING)
        self.assertEqual(self.publisher.types(), ["reservation.created"])

    def test_carrier_cancels_own_booking(self):
        reservation = self.book()
        cancelled = self.service.cancel(reservation.id, CARRIER, "Route changed", actor_company_id=self.data.carrier.id)
        self.assertEqual(cancelled.status, ReservationStatus.CANCELLED)

    def test_operator_limited_to_own_lots(self):
        reservation = self.book()
        with self.assertRaises(UnauthorizedError):
            self.service.change_status(
                reservation.id, OPERATOR, ReservationStatus.CONFIRMED, actor_company_id=self.data.carrier.id,
            )

        confirmed = self.service.change_status(
            reservation.id, OPERATOR, ReservationStatus.CONFIRMED, actor_company_id=self.data.operator.id,
        )
        self.assertEqual(confirmed.status, ReservationStatus.CONFIRMED)

    def test_admin_is_not_scoped(self):
        reservation = self.book()
        confirmed = self.service.change_status(
            reservation.id, ADMIN, ReservationStatus.CONFIRMED, actor_company_id=self.data.other_carrier.id,
        )
        self.assertEqual(confirmed.status, ReservationStatus.CONFIRMED)

    def test_reschedule_and_space_assignment_are_scoped(self):
        reservation = self.book()
        with self.assertRaises(UnauthorizedError):
            self.service.reschedule(
                reservation.id, CARRIER, at(13), at(14), actor_company_id=self.data.other_carrier.id,
            )
        with self.assertRaises(UnauthorizedError):
            self.service.assign_space(
                reservation.id, OPERATOR, self.data.space_a1.id, actor_company_id=self.data.carrier.id,
            )

        moved = self.service.reschedule(reservation.id, CARRIER, at(13), at(14), actor_company_id=self.data.carrier.id)
        self.assertEqual(moved.start_time, at(13))
        self.assertIsNone(self.stored(reservation.id).parking_space_id)


class TestConcurrency(ServiceTestCase):
    """Racing requests against the same lot or reservation"""

    def _race(self, calls):
        barrier = threading.Barrier(len(calls))
        results, errors = [], []

        def run(call):
            barrier.wait()
            try:
                results.append(call())
            except Exception as e:  # collected for assertions
                errors.append(e)

        threads = [threading.Thread(target=run, args=(call,)) for call in calls]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        return results, errors

    def test_racing_creates_for_last_space(self):
        """Test only one of several simultaneous bookings of a 1-space lot wins"""
        calls = [
            (lambda i=i: self.book(at(10), at(12), lot=self.data.small_lot, index=i))
            for i in range(3)
        ]
        results, errors = self._race(calls)

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), 2)
        for error in errors:
            self.assertIsInstance(error, ConflictError)

    def test_racing_confirmations(self):
        reservation = self.book()
        confirm = lambda: self.service.change_status(reservation.id, OPERATOR, ReservationStatus.CONFIRMED)  # noqa: E731

        results, errors = self._race([confirm, confirm])

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], InvalidTransitionError)
        self.assertEqual(self.stored(reservation.id).version, 2)
        self.assertEqual(self.publisher.types().count("reservation.confirmed"), 1)

    def test_racing_confirm_and_cancel(self):
        reservation = self.book()
        results, errors = self._race([
            lambda: self.service.change_status(reservation.id, OPERATOR, ReservationStatus.CONFIRMED),
            lambda: self.service.cancel(reservation.id, OPERATOR),
        ])

        # Either order ends CANCELLED; confirm loses only if cancel ran first
        self.assertEqual(len(results) + len(errors), 2)
        for error in errors:
            self.assertIsInstance(error, InvalidTransitionError)
        self.assertEqual(self.stored(reservation.id).status, ReservationStatus.CANCELLED)


class TestRetries(ServiceTestCase):
    """Retryable storage failures"""

    def _flaky_factory(self, failures):
        real = RepositoryFactory.create_in_memory_uow_factory(self.store)
        remaining = [failures]

        def factory():
            if remaining[0] > 0:
                remaining[0] -= 1
                raise StorageUnavailableError("database restarting")
            return real()

        return factory

    def test_transient_failure_is_retried(self):
        service = make_service(uow_factory=self._flaky_factory(1), publisher=self.publisher,
                               clock=self.clock, sleeps=self.sleeps)
        reservation = service.create(booking(self.data, at(10), at(12)))

        self.assertEqual(self.stored(reservation.id).id, reservation.id)
        self.assertEqual(len(self.sleeps), 1)
        self.assertAlmostEqual(self.sleeps[0], 0.05)

    def test_gives_up_after_configured_attempts(self):
        service = make_service(uow_factory=self._flaky_factory(10), clock=self.clock,
                               config=EngineConfig(retry_attempts=3, retry_backoff_seconds=0.5),
                               sleeps=self.sleeps)

        with self.assertRaises(StorageUnavailableError):
            service.create(booking(self.data, at(10), at(12)))
        self.assertEqual(self.sleeps, [0.5, 1.0])
        self.assertEqual(self.store.tables["reservations"], {})

    def test_deterministic_errors_are_not_retried(self):
        self.book(space=self.data.space_a1, index=0)
        with self.assertRaises(ConflictError):
            self.book(space=self.data.space_a1, index=1)
        self.assertEqual(self.sleeps, [])


class TestRescheduleAndSpaces(ServiceTestCase):
    """Window and space changes"""

    def test_reschedule_reprices(self):
        reservation = self.book(space=self.data.space_a1)
        moved = self.service.reschedule(reservation.id, CARRIER, at(11), at(14))

        self.assertEqual((moved.start_time, moved.end_time), (at(11), at(14)))
        self.assertEqual(moved.total_cost, Decimal("45.00"))
        self.assertEqual(moved.version, 2)

    def test_reschedule_into_taken_space_conflicts(self):
        mine = self.book(at(10), at(12), space=self.data.space_a1, index=0)
        self.book(at(14), at(16), space=self.data.space_a1, index=1)

        with self.assertRaises(ConflictError):
            self.service.reschedule(mine.id, CARRIER, at(13), at(15))

    def test_only_pending_reservations_reschedule(self):
        reservation = self.book()
        self.service.change_status(reservation.id, OPERATOR, ReservationStatus.CONFIRMED)
        with self.assertRaises(InvalidTransitionError):
            self.service.reschedule(reservation.id, CARRIER, at(14), at(16))

    def test_operator_cannot_reschedule(self):
        reservation = self.book()
        with self.assertRaises(UnauthorizedError):
            self.service.reschedule(reservation.id, OPERATOR, at(14), at(16))

    def test_assign_space(self):
        reservation = self.book()
        assigned = self.service.assign_space(reservation.id, OPERATOR, self.data.space_a2.id)
        self.assertEqual(assigned.parking_space_id, self.data.space_a2.id)
        self.assertEqual(assigned.version, 2)

    def test_assign_taken_space_conflicts(self):
        self.book(space=self.data.space_a1, index=0)
        other = self.book(index=1)
        with self.assertRaises(ConflictError):
            self.service.assign_space(other.id, OPERATOR, self.data.space_a1.id)

    def test_assign_space_of_another_lot(self):
        reservation = self.book()
        with self.assertRaises(InvalidRequestError):
            self.service.assign_space(reservation.id, OPERATOR, self.data.space_b1.id)

    def test_carrier_cannot_assign_space(self):
        reservation = self.book()
        with self.assertRaises(UnauthorizedError):
            self.service.assign_space(reservation.id, CARRIER, self.data.space_a2.id)


class TestPaymentsAndQueries(ServiceTestCase):

    def test_payment_marks_paid(self):
        reservation = self.book()
        transaction = self.service.record_transaction(reservation.id, Decimal("30.00"), TransactionType.PAYMENT)

        self.assertEqual(transaction.status, TransactionStatus.COMPLETED)
        self.assertEqual(self.stored(reservation.id).payment_status, PaymentStatus.PAID)
        self.assertEqual(self.publisher.types()[-1], "reservation.payment_received")
        self.assertEqual(self.service.transactions_for(reservation.id), [transaction])

    def test_refund_and_fee(self):
        reservation = self.book()
        self.service.record_transaction(reservation.id, Decimal("30.00"), TransactionType.PAYMENT)
        self.service.record_transaction(reservation.id, Decimal("2.50"), TransactionType.FEE)
        self.assertEqual(self.stored(reservation.id).payment_status, PaymentStatus.PAID)

        self.service.record_transaction(reservation.id, Decimal("30.00"), TransactionType.REFUND)
        self.assertEqual(self.stored(reservation.id).payment_status, PaymentStatus.REFUNDED)
        self.assertEqual(len(self.service.transactions_for(reservation.id)), 3)

    def test_payment_for_unknown_reservation(self):
        with self.assertRaises(NotFoundError):
            self.service.record_transaction("missing", Decimal("1"), TransactionType.PAYMENT)

    def test_get_joins_summaries_and_actions(self):
        reservation = self.book(space=self.data.space_a1)
        detail = self.service.get(reservation.id)

        self.assertEqual(detail.id, reservation.id)
        self.assertEqual(detail.parking_lot.name, "Patio Central")
        self.assertEqual(detail.parking_space.space_number, "A1")
        self.assertEqual(detail.vehicle.license_plate, "BRA2E19")
        self.assertEqual(detail.driver.name, "Maria Souza")
        self.assertEqual(detail.permitted_actions[OPERATOR],
                         [ReservationStatus.CONFIRMED, ReservationStatus.CANCELLED])
        self.assertEqual(detail.permitted_actions[CARRIER], [ReservationStatus.CANCELLED])

    def test_get_unknown(self):
        with self.assertRaises(NotFoundError):
            self.service.get("missing")

    def test_list_filters_and_orders(self):
        early = self.book(at(8), at(9), index=0)
        late = self.book(at(14), at(15), index=0)
        other = self.book(at(10), at(11), index=1)
        self.service.cancel(other.id, CARRIER)

        everything = self.service.list_reservations()
        self.assertEqual([r.id for r in everything], [late.id, other.id, early.id])

        pending = self.service.list_reservations(ReservationQueryDTO(status=ReservationStatus.PENDING))
        self.assertEqual({r.id for r in pending}, {early.id, late.id})

        by_vehicle = self.service.list_reservations(
            ReservationQueryDTO(vehicle_id=self.data.vehicles[1].id),
        )
        self.assertEqual([r.id for r in by_vehicle], [other.id])

        in_range = self.service.list_reservations(ReservationQueryDTO(start_date=at(9), end_date=at(12)))
        self.assertEqual([r.id for r in in_range], [other.id])

    def test_lot_availability(self):
        self.book(at(10), at(12), index=0)
        self.assertEqual(self.service.lot_availability(self.data.lot.id, at(11)).available_spaces, 1)
        self.assertEqual(self.service.lot_availability(self.data.lot.id, at(12)).available_spaces, 2)

        with self.assertRaises(NotFoundError):
            self.service.lot_availability("missing")


if __name__ == '__main__':
    unittest.main()
