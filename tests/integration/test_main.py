#!/usr/bin/env python3
"""
Composition root tests: service wiring and the demo walk-through
"""

import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from reservation_fixtures import FixedClock, at, booking, make_reference_data
from fleetpark.config import EngineConfig
from fleetpark.domain.models import ActorRole, PaymentStatus, ReservationStatus
from fleetpark.infrastructure.locking import InProcessLockProvider
from fleetpark.infrastructure.messaging import InMemoryMessageQueue, MessageBrokerFactory
from fleetpark.infrastructure.repositories import seed
from fleetpark.main import build_in_memory_service, build_service, run_demo


class TestMain(unittest.TestCase):

    def test_demo_settles_a_reservation(self):
        bus = MessageBrokerFactory.create_in_memory_bus()
        service = build_in_memory_service(message_bus=bus)

        run_demo(service)

        reservations = service.list_reservations()
        self.assertEqual(len(reservations), 1)
        self.assertEqual(reservations[0].status, ReservationStatus.COMPLETED)
        self.assertEqual(reservations[0].payment_status, PaymentStatus.PAID)
        self.assertEqual(
            [e["event_type"] for e in bus.history(reservations[0].id)],
            [
                "reservation.created",
                "reservation.confirmed",
                "reservation.started",
                "reservation.completed",
                "reservation.payment_received",
            ],
        )

    def test_build_service_without_redis_or_mongo(self):
        config = EngineConfig(database_url="sqlite://")
        service = build_service(config, clock=FixedClock())

        self.assertIsInstance(service.locks, InProcessLockProvider)
        self.assertIsInstance(service.events.message_queue, InMemoryMessageQueue)
        self.assertIsNone(service.events.event_store)

        data = make_reference_data()
        seed(service.uow_factory, data.entities())
        reservation = service.create(booking(data, at(10), at(12)))
        confirmed = service.change_status(reservation.id, ActorRole.ADMIN, ReservationStatus.CONFIRMED)
        self.assertEqual(confirmed.version, 2)

    def test_notification_settings_reach_the_bus(self):
        config = EngineConfig(database_url="sqlite://", notification_topic="custom-notes", currency="USD")
        service = build_service(config, clock=FixedClock())

        data = make_reference_data()
        seed(service.uow_factory, data.entities())
        service.create(booking(data, at(10), at(12)))

        queue = service.events.message_queue
        self.assertEqual(queue.get_messages("notifications"), [])
        notification = queue.get_messages("custom-notes")[0]
        self.assertEqual(notification["type"], "RESERVATION_CREATED")
        self.assertEqual(notification["currency"], "USD")

    def test_in_memory_service_uses_configured_topic(self):
        service = build_in_memory_service(config=EngineConfig(notification_topic="custom-notes"), clock=FixedClock())
        data = make_reference_data()
        seed(service.uow_factory, data.entities())
        service.create(booking(data, at(10), at(12)))

        self.assertEqual(len(service.events.message_queue.get_messages("custom-notes")), 1)


if __name__ == '__main__':
    unittest.main()
