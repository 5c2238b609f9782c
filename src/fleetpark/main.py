# File: src/fleetpark/main.py
"""
Composition root for the reservation engine

build_service wires storage, locks and messaging from an EngineConfig.
Running the module executes a short demo against the in-memory store:

    python -m fleetpark.main [--config fleetpark.yml]
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional
import argparse
import logging

from .application.dtos import CreateReservationRequest
from .application.reservation_service import ReservationLifecycleService
from .config import EngineConfig, load_config, setup_logging
from .domain.models import (
    ActorRole, Company, CompanyType, Driver, ParkingLot, ParkingSpace,
    ReservationStatus, TransactionType, Vehicle, VehicleType, utcnow,
)
from .infrastructure.locking import InProcessLockProvider, LockProvider, RedisLockProvider
from .infrastructure.messaging import MessageBrokerFactory, MessageBus
from .infrastructure.repositories import InMemoryStore, RepositoryFactory, seed
from .presentation.handlers import ReservationRequestHandler


def build_service(
    config: EngineConfig,
    clock: Callable[[], datetime] = utcnow,
    message_bus: Optional[MessageBus] = None
) -> ReservationLifecycleService:
    """Create a service backed by the database, lock and message backends named in config"""
    logger = logging.getLogger("fleetpark")

    uow_factory = RepositoryFactory.create_sqlalchemy_uow_factory(config.database_url)
    logger.info("SQLAlchemy storage initialized")

    if config.redis_url:
        locks: LockProvider = RedisLockProvider(config.redis_url, timeout=config.lock_timeout_seconds)
        logger.info("Redis lock provider initialized")
    else:
        locks = InProcessLockProvider(timeout=config.lock_timeout_seconds)
        logger.info("In-process lock provider initialized")

    bus = message_bus or MessageBrokerFactory.create_message_bus(
        redis_url=config.redis_url,
        mongo_url=config.mongo_url,
        topic=config.event_topic,
        max_retries=config.retry_attempts,
        retry_delay=config.retry_backoff_seconds,
        notification_topic=config.notification_topic,
        currency=config.currency,
    )

    return ReservationLifecycleService(
        uow_factory=uow_factory,
        event_publisher=bus,
        lock_provider=locks,
        clock=clock,
        config=config,
    )


def build_in_memory_service(
    store: Optional[InMemoryStore] = None,
    clock: Callable[[], datetime] = utcnow,
    config: Optional[EngineConfig] = None,
    message_bus: Optional[MessageBus] = None
) -> ReservationLifecycleService:
    """Create a service over an in-memory store, in-process locks and an in-memory bus"""
    config = config or EngineConfig()
    return ReservationLifecycleService(
        uow_factory=RepositoryFactory.create_in_memory_uow_factory(store),
        event_publisher=message_bus or MessageBrokerFactory.create_in_memory_bus(
            config.event_topic,
            notification_topic=config.notification_topic,
            currency=config.currency,
        ),
        lock_provider=InProcessLockProvider(timeout=config.lock_timeout_seconds),
        clock=clock,
        config=config,
        sleep=lambda _: None,
    )


def run_demo(service: ReservationLifecycleService) -> None:
    """Book a space, walk it through check-in and check-out, and settle it"""
    logger = logging.getLogger("fleetpark.demo")

    carrier = Company(name="Transportes Rapido", company_type=CompanyType.TRANSPORTADORA)
    operator = Company(name="Patio Central", company_type=CompanyType.ESTACIONAMENTO)
    lot = ParkingLot(company_id=operator.id, name="Patio Central", total_spaces=2, price_per_hour=Decimal("15.00"))
    space = ParkingSpace(parking_lot_id=lot.id, space_number="A1")
    driver = Driver(company_id=carrier.id, name="Maria Souza", cpf="529.982.247-25", cnh="12345678901")
    vehicle = Vehicle(
        company_id=carrier.id, license_plate="BRA2E19",
        vehicle_type=VehicleType.CARRETA, driver_id=driver.id,
    )
    seed(service.uow_factory, [carrier, operator, lot, space, driver, vehicle])

    start = (utcnow() + timedelta(days=1)).replace(hour=10, minute=0, second=0, microsecond=0)
    reservation = service.create(CreateReservationRequest(
        parking_lot_id=lot.id,
        parking_space_id=space.id,
        vehicle_id=vehicle.id,
        driver_id=driver.id,
        start_time=start,
        end_time=start + timedelta(hours=2),
    ))
    logger.info(f"Created {reservation} costing {reservation.total_cost}")

    for status in (ReservationStatus.CONFIRMED, ReservationStatus.IN_PROGRESS, ReservationStatus.COMPLETED):
        reservation = service.change_status(
            reservation.id, ActorRole.ESTACIONAMENTO, status, actor_company_id=operator.id,
        )
        logger.info(f"Now {reservation}")

    service.record_transaction(reservation.id, reservation.total_cost, TransactionType.PAYMENT)

    handler = ReservationRequestHandler(service)
    status_code, body = handler.get_reservation(reservation.id)
    logger.info(f"GET /reservations/{reservation.id} -> {status_code} {body['status']} {body['paymentStatus']}")


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="FleetPark reservation engine demo")
    parser.add_argument("--config", help="YAML configuration file")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    logger = setup_logging(config.log_level, config.log_file)
    logger.info("Starting FleetPark reservation engine demo...")

    run_demo(build_in_memory_service(config=config))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
