# File: src/fleetpark/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Reservation Engine

Repositories give the lifecycle service a collection-like interface over
reservations and the records they reference. A Unit of Work groups the
repositories of one request and commits or rolls them back together.

Storage Implementations:
- InMemory* - dict-backed store shared between units of work; used by
  tests and the demo entry point
- SQLAlchemy* - relational storage (SQLite, PostgreSQL, ...)

Reservation updates carry the version the caller read. A write whose
version no longer matches the stored row raises ConcurrentUpdateError,
which is how two racing status changes from the same state are told
apart. Driver errors are translated to StorageUnavailableError so the
service can retry them.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generic, Iterable, Iterator, List, Optional, Type, TypeVar
import logging
import threading

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text,
    create_engine, or_,
)
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..domain.exceptions import ConcurrentUpdateError, StorageUnavailableError
from ..domain.models import (
    Company, Driver, ParkingLot, ParkingSpace, Reservation, ReservationStatus, Transaction, Vehicle,
)
from ..domain.state_machine import ACTIVE_STATUSES
from ..application.dtos import ReservationQueryDTO


T = TypeVar('T')


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T]):
    """Base repository interface"""

    @abstractmethod
    def add(self, entity: T) -> T:
        pass

    @abstractmethod
    def get(self, id: str) -> Optional[T]:
        pass

    @abstractmethod
    def update(self, entity: T) -> T:
        pass

    @abstractmethod
    def list(self) -> List[T]:
        pass


class ReservationRepository(Repository[Reservation], ABC):
    """Reservation-specific queries used by the allocator and the listing endpoint"""

    @abstractmethod
    def update(self, entity: Reservation, expected_version: Optional[int] = None) -> Reservation:
        """Persist a changed reservation; raises ConcurrentUpdateError on a stale version"""
        pass

    @abstractmethod
    def find_active_overlapping(
        self,
        start_time: datetime,
        end_time: datetime,
        parking_lot_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
        driver_id: Optional[str] = None
    ) -> List[Reservation]:
        """
        Active reservations overlapping [start_time, end_time) that are in the
        given lot OR use the given vehicle OR use the given driver
        """
        pass

    @abstractmethod
    def find_by_space(self, parking_space_id: str, status: ReservationStatus) -> List[Reservation]:
        """Reservations pinned to one space that are in the given status"""
        pass

    @abstractmethod
    def find_by_request_id(self, request_id: str) -> Optional[Reservation]:
        pass

    @abstractmethod
    def search(self, query: ReservationQueryDTO) -> List[Reservation]:
        """Filtered listing, newest start time first"""
        pass


class TransactionRepository(Repository[Transaction], ABC):

    @abstractmethod
    def find_by_reservation(self, reservation_id: str) -> List[Transaction]:
        pass


# ============================================================================
# UNIT OF WORK PATTERN
# ============================================================================

class UnitOfWork(ABC):
    """
    Unit of Work pattern for transaction management
    Leaving the ``with`` block commits; an exception rolls back
    """

    @abstractmethod
    def __enter__(self) -> 'UnitOfWork':
        pass

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self.rollback()
            else:
                self.commit()
        finally:
            self.close()

    @abstractmethod
    def commit(self):
        """Commit the transaction"""
        pass

    @abstractmethod
    def rollback(self):
        """Rollback the transaction"""
        pass

    def close(self):
        pass

    @property
    @abstractmethod
    def reservations(self) -> ReservationRepository:
        pass

    @property
    @abstractmethod
    def parking_lots(self) -> Repository[ParkingLot]:
        pass

    @property
    @abstractmethod
    def parking_spaces(self) -> Repository[ParkingSpace]:
        pass

    @property
    @abstractmethod
    def companies(self) -> Repository[Company]:
        pass

    @property
    @abstractmethod
    def vehicles(self) -> Repository[Vehicle]:
        pass

    @property
    @abstractmethod
    def drivers(self) -> Repository[Driver]:
        pass

    @property
    @abstractmethod
    def transactions(self) -> TransactionRepository:
        pass


def _matches_query(reservation: Reservation, query: ReservationQueryDTO) -> bool:
    checks = (
        (query.parking_lot_id, reservation.parking_lot_id),
        (query.company_id, reservation.company_id),
        (query.vehicle_id, reservation.vehicle_id),
        (query.driver_id, reservation.driver_id),
        (query.status, reservation.status),
    )
    if any(expected is not None and expected != actual for expected, actual in checks):
        return False
    if query.start_date is not None and reservation.end_time <= query.start_date:
        return False
    if query.end_date is not None and reservation.start_time >= query.end_date:
        return False
    return True


# ============================================================================
# IN-MEMORY REPOSITORIES (For Testing)
# ============================================================================

class InMemoryStore:
    """
    Committed state shared by every InMemoryUnitOfWork created from it
    One dict per collection, guarded by a single lock at commit time
    """

    COLLECTIONS = (
        "reservations", "parking_lots", "parking_spaces",
        "companies", "vehicles", "drivers", "transactions",
    )

    def __init__(self):
        self.lock = threading.RLock()
        self.tables: Dict[str, Dict[str, Any]] = {name: {} for name in self.COLLECTIONS}

    def seed(self, *entities: Any) -> None:
        """Insert reference data directly (lots, spaces, companies, ...)"""
        table_for = {
            Reservation: "reservations", ParkingLot: "parking_lots", ParkingSpace: "parking_spaces",
            Company: "companies", Vehicle: "vehicles", Driver: "drivers", Transaction: "transactions",
        }
        with self.lock:
            for entity in entities:
                self.tables[table_for[type(entity)]][entity.id] = entity

    def clear(self):
        """Clear all data (for testing)"""
        with self.lock:
            for table in self.tables.values():
                table.clear()


class InMemoryRepository(Repository[T]):
    """
    In-memory repository staging writes until its unit of work commits
    Reads see committed state overlaid with this unit's own pending writes
    """

    def __init__(self, store: InMemoryStore, collection: str):
        self._store = store
        self._table: Dict[str, T] = store.tables[collection]
        self._pending: Dict[str, T] = {}
        self._expected_versions: Dict[str, int] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def _current(self) -> Dict[str, T]:
        with self._store.lock:
            merged = dict(self._table)
        merged.update(self._pending)
        return merged

    def add(self, entity: T) -> T:
        entity_id = getattr(entity, 'id')
        if entity_id in self._current():
            raise ConcurrentUpdateError(f"Entity {entity_id} already exists", {"id": entity_id})
        self._pending[entity_id] = entity
        self._logger.debug(f"Added entity {entity_id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        if id in self._pending:
            return self._pending[id]
        with self._store.lock:
            return self._table.get(id)

    def update(self, entity: T, expected_version: Optional[int] = None) -> T:
        entity_id = getattr(entity, 'id')
        current = self.get(entity_id)
        if current is None:
            raise KeyError(f"Entity {entity_id} not found")

        if expected_version is not None:
            if getattr(current, 'version') != expected_version:
                raise ConcurrentUpdateError(
                    f"Entity {entity_id} was modified concurrently",
                    {"id": entity_id, "expected_version": expected_version},
                )
            self._expected_versions.setdefault(entity_id, expected_version)

        self._pending[entity_id] = entity
        self._logger.debug(f"Updated entity {entity_id}")
        return entity

    def list(self) -> List[T]:
        return list(self._current().values())

    def check_versions(self) -> None:
        """Compare staged version expectations with committed state; caller holds the store lock"""
        for entity_id, expected in self._expected_versions.items():
            stored = self._table.get(entity_id)
            if stored is None or getattr(stored, 'version') != expected:
                raise ConcurrentUpdateError(
                    f"Entity {entity_id} was modified concurrently",
                    {"id": entity_id, "expected_version": expected},
                )

    def flush(self) -> None:
        """Apply staged writes; caller holds the store lock"""
        self._table.update(self._pending)
        self.discard()

    def discard(self) -> None:
        self._pending.clear()
        self._expected_versions.clear()


class InMemoryReservationRepository(InMemoryRepository[Reservation], ReservationRepository):
    """In-memory repository for reservations"""

    def find_active_overlapping(
        self,
        start_time: datetime,
        end_time: datetime,
        parking_lot_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
        driver_id: Optional[str] = None
    ) -> List[Reservation]:
        return [
            r for r in self.list()
            if r.status in ACTIVE_STATUSES
            and r.overlaps(start_time, end_time)
            and (
                (parking_lot_id is not None and r.parking_lot_id == parking_lot_id)
                or (vehicle_id is not None and r.vehicle_id == vehicle_id)
                or (driver_id is not None and r.driver_id == driver_id)
            )
        ]

    def find_by_space(self, parking_space_id: str, status: ReservationStatus) -> List[Reservation]:
        return [r for r in self.list() if r.parking_space_id == parking_space_id and r.status == status]

    def find_by_request_id(self, request_id: str) -> Optional[Reservation]:
        for reservation in self.list():
            if reservation.request_id == request_id:
                return reservation
        return None

    def search(self, query: ReservationQueryDTO) -> List[Reservation]:
        matches = [r for r in self.list() if _matches_query(r, query)]
        matches.sort(key=lambda r: r.start_time, reverse=True)
        return matches[query.offset:query.offset + query.limit]


class InMemoryTransactionRepository(InMemoryRepository[Transaction], TransactionRepository):

    def find_by_reservation(self, reservation_id: str) -> List[Transaction]:
        found = [t for t in self.list() if t.reservation_id == reservation_id]
        return sorted(found, key=lambda t: t.created_at)


class InMemoryUnitOfWork(UnitOfWork):
    """Unit of Work over an InMemoryStore; commit applies all staged writes atomically"""

    def __init__(self, store: InMemoryStore):
        self.store = store
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self) -> 'InMemoryUnitOfWork':
        self._reservations = InMemoryReservationRepository(self.store, "reservations")
        self._parking_lots = InMemoryRepository(self.store, "parking_lots")
        self._parking_spaces = InMemoryRepository(self.store, "parking_spaces")
        self._companies = InMemoryRepository(self.store, "companies")
        self._vehicles = InMemoryRepository(self.store, "vehicles")
        self._drivers = InMemoryRepository(self.store, "drivers")
        self._transactions = InMemoryTransactionRepository(self.store, "transactions")
        self._repositories = [
            self._reservations, self._parking_lots, self._parking_spaces,
            self._companies, self._vehicles, self._drivers, self._transactions,
        ]
        return self

    def commit(self):
        with self.store.lock:
            try:
                # All version checks before any write so a stale unit applies nothing
                for repository in self._repositories:
                    repository.check_versions()
                for repository in self._repositories:
                    repository.flush()
            except ConcurrentUpdateError:
                self.rollback()
                raise
        self._logger.debug("Transaction committed")

    def rollback(self):
        for repository in self._repositories:
            repository.discard()
        self._logger.debug("Transaction rolled back")

    @property
    def reservations(self) -> InMemoryReservationRepository:
        return self._reservations

    @property
    def parking_lots(self) -> InMemoryRepository[ParkingLot]:
        return self._parking_lots

    @property
    def parking_spaces(self) -> InMemoryRepository[ParkingSpace]:
        return self._parking_spaces

    @property
    def companies(self) -> InMemoryRepository[Company]:
        return self._companies

    @property
    def vehicles(self) -> InMemoryRepository[Vehicle]:
        return self._vehicles

    @property
    def drivers(self) -> InMemoryRepository[Driver]:
        return self._drivers

    @property
    def transactions(self) -> InMemoryTransactionRepository:
        return self._transactions


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class CompanyModel(Base):
    """SQLAlchemy model for Company"""
    __tablename__ = 'companies'

    id = Column(String(36), primary_key=True)
    name = Column(String(200), nullable=False)
    company_type = Column(String(20), nullable=False)


class ParkingLotModel(Base):
    """SQLAlchemy model for ParkingLot"""
    __tablename__ = 'parking_lots'

    id = Column(String(36), primary_key=True)
    company_id = Column(String(36), ForeignKey('companies.id'), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    total_spaces = Column(Integer, nullable=False)
    price_per_hour = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class ParkingSpaceModel(Base):
    """SQLAlchemy model for ParkingSpace"""
    __tablename__ = 'parking_spaces'

    id = Column(String(36), primary_key=True)
    parking_lot_id = Column(String(36), ForeignKey('parking_lots.id'), nullable=False, index=True)
    space_number = Column(String(20), nullable=False)
    is_available = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class VehicleModel(Base):
    """SQLAlchemy model for Vehicle"""
    __tablename__ = 'vehicles'

    id = Column(String(36), primary_key=True)
    company_id = Column(String(36), ForeignKey('companies.id'), nullable=False, index=True)
    license_plate = Column(String(10), nullable=False)
    vehicle_type = Column(String(20), nullable=False)
    driver_id = Column(String(36), ForeignKey('drivers.id'))
    is_active = Column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index('uq_vehicle_company_plate', 'company_id', 'license_plate', unique=True),
    )


class DriverModel(Base):
    """SQLAlchemy model for Driver"""
    __tablename__ = 'drivers'

    id = Column(String(36), primary_key=True)
    company_id = Column(String(36), ForeignKey('companies.id'), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    cpf = Column(String(11), nullable=False)
    cnh = Column(String(11), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)


class ReservationModel(Base):
    """SQLAlchemy model for Reservation"""
    __tablename__ = 'reservations'

    id = Column(String(36), primary_key=True)

    # References
    parking_lot_id = Column(String(36), ForeignKey('parking_lots.id'), nullable=False)
    parking_space_id = Column(String(36), ForeignKey('parking_spaces.id'))
    company_id = Column(String(36), ForeignKey('companies.id'), nullable=False)
    vehicle_id = Column(String(36), ForeignKey('vehicles.id'), nullable=False, index=True)
    driver_id = Column(String(36), ForeignKey('drivers.id'), nullable=False, index=True)

    # Window (naive UTC)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    actual_arrival = Column(DateTime)
    actual_departure = Column(DateTime)

    # Status
    status = Column(String(20), nullable=False)
    payment_status = Column(String(20), nullable=False)

    # Pricing
    total_cost = Column(Numeric(10, 2), nullable=False)

    # Metadata
    special_requests = Column(Text)
    cancellation_reason = Column(Text)
    cancelled_at = Column(DateTime)
    request_id = Column(String(100), unique=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index('ix_reservations_space_window', 'parking_space_id', 'start_time', 'end_time'),
        Index('ix_reservations_lot_window', 'parking_lot_id', 'start_time', 'end_time'),
        Index('ix_reservations_status', 'status'),
    )


class TransactionModel(Base):
    """SQLAlchemy model for Transaction"""
    __tablename__ = 'transactions'

    id = Column(String(36), primary_key=True)
    reservation_id = Column(String(36), ForeignKey('reservations.id'), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    transaction_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    created_at = Column(DateTime, nullable=False)


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetime -> naive UTC column value"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC column value -> aware datetime"""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


class Mapper:
    """Maps between domain models and ORM models"""

    @staticmethod
    def company_to_orm(company: Company) -> CompanyModel:
        return CompanyModel(id=company.id, name=company.name, company_type=company.company_type.value)

    @staticmethod
    def company_to_domain(model: CompanyModel) -> Company:
        return Company(id=model.id, name=model.name, company_type=model.company_type)

    @staticmethod
    def parking_lot_to_orm(lot: ParkingLot) -> ParkingLotModel:
        return ParkingLotModel(
            id=lot.id,
            company_id=lot.company_id,
            name=lot.name,
            total_spaces=lot.total_spaces,
            price_per_hour=lot.price_per_hour,
            is_active=lot.is_active,
        )

    @staticmethod
    def parking_lot_to_domain(model: ParkingLotModel) -> ParkingLot:
        return ParkingLot(
            id=model.id,
            company_id=model.company_id,
            name=model.name,
            total_spaces=model.total_spaces,
            price_per_hour=model.price_per_hour,
            is_active=model.is_active,
        )

    @staticmethod
    def parking_space_to_orm(space: ParkingSpace) -> ParkingSpaceModel:
        return ParkingSpaceModel(
            id=space.id,
            parking_lot_id=space.parking_lot_id,
            space_number=space.space_number,
            is_available=space.is_available,
            is_active=space.is_active,
        )

    @staticmethod
    def parking_space_to_domain(model: ParkingSpaceModel) -> ParkingSpace:
        return ParkingSpace(
            id=model.id,
            parking_lot_id=model.parking_lot_id,
            space_number=model.space_number,
            is_available=model.is_available,
            is_active=model.is_active,
        )

    @staticmethod
    def vehicle_to_orm(vehicle: Vehicle) -> VehicleModel:
        return VehicleModel(
            id=vehicle.id,
            company_id=vehicle.company_id,
            license_plate=vehicle.license_plate,
            vehicle_type=vehicle.vehicle_type.value,
            driver_id=vehicle.driver_id,
            is_active=vehicle.is_active,
        )

    @staticmethod
    def vehicle_to_domain(model: VehicleModel) -> Vehicle:
        return Vehicle(
            id=model.id,
            company_id=model.company_id,
            license_plate=model.license_plate,
            vehicle_type=model.vehicle_type,
            driver_id=model.driver_id,
            is_active=model.is_active,
        )

    @staticmethod
    def driver_to_orm(driver: Driver) -> DriverModel:
        return DriverModel(
            id=driver.id,
            company_id=driver.company_id,
            name=driver.name,
            cpf=driver.cpf,
            cnh=driver.cnh,
            is_active=driver.is_active,
        )

    @staticmethod
    def driver_to_domain(model: DriverModel) -> Driver:
        return Driver(
            id=model.id,
            company_id=model.company_id,
            name=model.name,
            cpf=model.cpf,
            cnh=model.cnh,
            is_active=model.is_active,
        )

    @staticmethod
    def reservation_to_orm(reservation: Reservation) -> ReservationModel:
        return ReservationModel(**Mapper.reservation_columns(reservation))

    @staticmethod
    def reservation_columns(reservation: Reservation) -> Dict[str, Any]:
        return {
            "id": reservation.id,
            "parking_lot_id": reservation.parking_lot_id,
            "parking_space_id": reservation.parking_space_id,
            "company_id": reservation.company_id,
            "vehicle_id": reservation.vehicle_id,
            "driver_id": reservation.driver_id,
            "start_time": to_db_time(reservation.start_time),
            "end_time": to_db_time(reservation.end_time),
            "actual_arrival": to_db_time(reservation.actual_arrival),
            "actual_departure": to_db_time(reservation.actual_departure),
            "status": reservation.status.value,
            "payment_status": reservation.payment_status.value,
            "total_cost": reservation.total_cost,
            "special_requests": reservation.special_requests,
            "cancellation_reason": reservation.cancellation_reason,
            "cancelled_at": to_db_time(reservation.cancelled_at),
            "request_id": reservation.request_id,
            "created_at": to_db_time(reservation.created_at),
            "updated_at": to_db_time(reservation.updated_at),
            "version": reservation.version,
        }

    @staticmethod
    def reservation_to_domain(model: ReservationModel) -> Reservation:
        return Reservation(
            id=model.id,
            parking_lot_id=model.parking_lot_id,
            parking_space_id=model.parking_space_id,
            company_id=model.company_id,
            vehicle_id=model.vehicle_id,
            driver_id=model.driver_id,
            start_time=from_db_time(model.start_time),
            end_time=from_db_time(model.end_time),
            actual_arrival=from_db_time(model.actual_arrival),
            actual_departure=from_db_time(model.actual_departure),
            status=model.status,
            payment_status=model.payment_status,
            total_cost=model.total_cost,
            special_requests=model.special_requests,
            cancellation_reason=model.cancellation_reason,
            cancelled_at=from_db_time(model.cancelled_at),
            request_id=model.request_id,
            created_at=from_db_time(model.created_at),
            updated_at=from_db_time(model.updated_at),
            version=model.version,
        )

    @staticmethod
    def transaction_to_orm(transaction: Transaction) -> TransactionModel:
        return TransactionModel(
            id=transaction.id,
            reservation_id=transaction.reservation_id,
            amount=transaction.amount,
            transaction_type=transaction.transaction_type.value,
            status=transaction.status.value,
            created_at=to_db_time(transaction.created_at),
        )

    @staticmethod
    def transaction_to_domain(model: TransactionModel) -> Transaction:
        return Transaction(
            id=model.id,
            reservation_id=model.reservation_id,
            amount=model.amount,
            transaction_type=model.transaction_type,
            status=model.status,
            created_at=from_db_time(model.created_at),
        )


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

@contextmanager
def storage_errors(logger: logging.Logger, action: str) -> Iterator[None]:
    """Translate driver errors into engine errors"""
    try:
        yield
    except IntegrityError as e:
        logger.warning(f"Integrity error while {action}: {e}")
        raise ConcurrentUpdateError(f"Conflicting write while {action}") from e
    except DBAPIError as e:
        logger.error(f"Database error while {action}: {e}")
        raise StorageUnavailableError(f"Storage unavailable while {action}") from e


class SQLAlchemyRepository(Repository[T], ABC):
    """Base SQLAlchemy repository"""

    model_class: Type[Any]

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def to_domain(self, model: Any) -> T:
        """Convert ORM model to domain model"""
        pass

    @abstractmethod
    def to_orm(self, entity: T) -> Any:
        """Convert domain model to ORM model"""
        pass

    def add(self, entity: T) -> T:
        with storage_errors(self._logger, f"adding {entity.id}"):
            self.session.add(self.to_orm(entity))
            self.session.flush()
        self._logger.debug(f"Added entity: {entity.id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        with storage_errors(self._logger, f"getting {id}"):
            model = self.session.get(self.model_class, id)
            return self.to_domain(model) if model is not None else None

    def update(self, entity: T) -> T:
        with storage_errors(self._logger, f"updating {entity.id}"):
            if self.session.get(self.model_class, entity.id) is None:
                raise KeyError(f"Entity {entity.id} not found")
            self.session.merge(self.to_orm(entity))
            self.session.flush()
        self._logger.debug(f"Updated entity: {entity.id}")
        return entity

    def list(self) -> List[T]:
        with storage_errors(self._logger, "listing"):
            return [self.to_domain(model) for model in self.session.query(self.model_class).all()]


class SQLAlchemyCompanyRepository(SQLAlchemyRepository[Company]):
    model_class = CompanyModel

    def to_domain(self, model: CompanyModel) -> Company:
        return Mapper.company_to_domain(model)

    def to_orm(self, entity: Company) -> CompanyModel:
        return Mapper.company_to_orm(entity)


class SQLAlchemyParkingLotRepository(SQLAlchemyRepository[ParkingLot]):
    model_class = ParkingLotModel

    def to_domain(self, model: ParkingLotModel) -> ParkingLot:
        return Mapper.parking_lot_to_domain(model)

    def to_orm(self, entity: ParkingLot) -> ParkingLotModel:
        return Mapper.parking_lot_to_orm(entity)


class SQLAlchemyParkingSpaceRepository(SQLAlchemyRepository[ParkingSpace]):
    model_class = ParkingSpaceModel

    def to_domain(self, model: ParkingSpaceModel) -> ParkingSpace:
        return Mapper.parking_space_to_domain(model)

    def to_orm(self, entity: ParkingSpace) -> ParkingSpaceModel:
        return Mapper.parking_space_to_orm(entity)


class SQLAlchemyVehicleRepository(SQLAlchemyRepository[Vehicle]):
    model_class = VehicleModel

    def to_domain(self, model: VehicleModel) -> Vehicle:
        return Mapper.vehicle_to_domain(model)

    def to_orm(self, entity: Vehicle) -> VehicleModel:
        return Mapper.vehicle_to_orm(entity)


class SQLAlchemyDriverRepository(SQLAlchemyRepository[Driver]):
    model_class = DriverModel

    def to_domain(self, model: DriverModel) -> Driver:
        return Mapper.driver_to_domain(model)

    def to_orm(self, entity: Driver) -> DriverModel:
        return Mapper.driver_to_orm(entity)


class SQLAlchemyReservationRepository(SQLAlchemyRepository[Reservation], ReservationRepository):
    """Reservation repository with version-checked updates"""

    model_class = ReservationModel

    def to_domain(self, model: ReservationModel) -> Reservation:
        return Mapper.reservation_to_domain(model)

    def to_orm(self, entity: Reservation) -> ReservationModel:
        return Mapper.reservation_to_orm(entity)

    def update(self, entity: Reservation, expected_version: Optional[int] = None) -> Reservation:
        columns = Mapper.reservation_columns(entity)
        del columns["id"]

        with storage_errors(self._logger, f"updating reservation {entity.id}"):
            query = self.session.query(ReservationModel).filter(ReservationModel.id == entity.id)
            if expected_version is not None:
                query = query.filter(ReservationModel.version == expected_version)
            updated = query.update(columns, synchronize_session="fetch")

        if updated == 0:
            if expected_version is None:
                raise KeyError(f"Reservation {entity.id} not found")
            raise ConcurrentUpdateError(
                f"Reservation {entity.id} was modified concurrently",
                {"id": entity.id, "expected_version": expected_version},
            )
        self._logger.debug(f"Updated reservation {entity.id} to version {entity.version}")
        return entity

    def find_active_overlapping(
        self,
        start_time: datetime,
        end_time: datetime,
        parking_lot_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
        driver_id: Optional[str] = None
    ) -> List[Reservation]:
        owners = []
        if parking_lot_id is not None:
            owners.append(ReservationModel.parking_lot_id == parking_lot_id)
        if vehicle_id is not None:
            owners.append(ReservationModel.vehicle_id == vehicle_id)
        if driver_id is not None:
            owners.append(ReservationModel.driver_id == driver_id)
        if not owners:
            return []

        with storage_errors(self._logger, "scanning overlapping reservations"):
            models = (
                self.session.query(ReservationModel)
                .filter(or_(*owners))
                .filter(ReservationModel.status.in_([s.value for s in ACTIVE_STATUSES]))
                .filter(ReservationModel.start_time < to_db_time(end_time))
                .filter(ReservationModel.end_time > to_db_time(start_time))
                .all()
            )
        return [self.to_domain(model) for model in models]

    def find_by_space(self, parking_space_id: str, status: ReservationStatus) -> List[Reservation]:
        with storage_errors(self._logger, f"looking up reservations on space {parking_space_id}"):
            models = (
                self.session.query(ReservationModel)
                .filter(ReservationModel.parking_space_id == parking_space_id)
                .filter(ReservationModel.status == ReservationStatus(status).value)
                .all()
            )
        return [self.to_domain(model) for model in models]

    def find_by_request_id(self, request_id: str) -> Optional[Reservation]:
        with storage_errors(self._logger, f"looking up request {request_id}"):
            model = (
                self.session.query(ReservationModel)
                .filter(ReservationModel.request_id == request_id)
                .first()
            )
        return self.to_domain(model) if model is not None else None

    def search(self, query: ReservationQueryDTO) -> List[Reservation]:
        filters = {
            "parking_lot_id": query.parking_lot_id,
            "company_id": query.company_id,
            "vehicle_id": query.vehicle_id,
            "driver_id": query.driver_id,
            "status": query.status.value if query.status is not None else None,
        }

        with storage_errors(self._logger, "searching reservations"):
            sql_query = self.session.query(ReservationModel)
            for key, value in filters.items():
                if value is not None:
                    sql_query = sql_query.filter(getattr(ReservationModel, key) == value)
            if query.start_date is not None:
                sql_query = sql_query.filter(ReservationModel.end_time > to_db_time(query.start_date))
            if query.end_date is not None:
                sql_query = sql_query.filter(ReservationModel.start_time < to_db_time(query.end_date))

            models = (
                sql_query.order_by(ReservationModel.start_time.desc())
                .offset(query.offset)
                .limit(query.limit)
                .all()
            )
        return [self.to_domain(model) for model in models]


class SQLAlchemyTransactionRepository(SQLAlchemyRepository[Transaction], TransactionRepository):
    model_class = TransactionModel

    def to_domain(self, model: TransactionModel) -> Transaction:
        return Mapper.transaction_to_domain(model)

    def to_orm(self, entity: Transaction) -> TransactionModel:
        return Mapper.transaction_to_orm(entity)

    def find_by_reservation(self, reservation_id: str) -> List[Transaction]:
        with storage_errors(self._logger, f"listing transactions of {reservation_id}"):
            models = (
                self.session.query(TransactionModel)
                .filter(TransactionModel.reservation_id == reservation_id)
                .order_by(TransactionModel.created_at)
                .all()
            )
        return [self.to_domain(model) for model in models]


# ============================================================================
# SQLALCHEMY UNIT OF WORK
# ============================================================================

class SQLAlchemyUnitOfWork(UnitOfWork):
    """Unit of Work implementation with SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self) -> 'SQLAlchemyUnitOfWork':
        self.session = self.session_factory()

        # Initialize repositories
        self._reservations = SQLAlchemyReservationRepository(self.session)
        self._parking_lots = SQLAlchemyParkingLotRepository(self.session)
        self._parking_spaces = SQLAlchemyParkingSpaceRepository(self.session)
        self._companies = SQLAlchemyCompanyRepository(self.session)
        self._vehicles = SQLAlchemyVehicleRepository(self.session)
        self._drivers = SQLAlchemyDriverRepository(self.session)
        self._transactions = SQLAlchemyTransactionRepository(self.session)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._logger.debug(f"Rolling back unit of work: {exc_val}")
        super().__exit__(exc_type, exc_val, exc_tb)

    def commit(self):
        """Commit the transaction"""
        try:
            with storage_errors(self._logger, "committing"):
                self.session.commit()
        except (ConcurrentUpdateError, StorageUnavailableError):
            self.session.rollback()
            raise
        self._logger.debug("Transaction committed")

    def rollback(self):
        """Rollback the transaction"""
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    def close(self):
        self.session.close()

    @property
    def reservations(self) -> SQLAlchemyReservationRepository:
        return self._reservations

    @property
    def parking_lots(self) -> SQLAlchemyParkingLotRepository:
        return self._parking_lots

    @property
    def parking_spaces(self) -> SQLAlchemyParkingSpaceRepository:
        return self._parking_spaces

    @property
    def companies(self) -> SQLAlchemyCompanyRepository:
        return self._companies

    @property
    def vehicles(self) -> SQLAlchemyVehicleRepository:
        return self._vehicles

    @property
    def drivers(self) -> SQLAlchemyDriverRepository:
        return self._drivers

    @property
    def transactions(self) -> SQLAlchemyTransactionRepository:
        return self._transactions


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

UnitOfWorkFactory = Callable[[], UnitOfWork]


class RepositoryFactory:
    """Factory for creating units of work"""

    @staticmethod
    def create_in_memory_uow_factory(store: Optional[InMemoryStore] = None) -> UnitOfWorkFactory:
        """Create an in-memory Unit of Work factory (for testing)"""
        store = store or InMemoryStore()
        return lambda: InMemoryUnitOfWork(store)

    @staticmethod
    def create_engine(database_url: str):
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every session sees the same in-memory database
            return create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, echo=False, pool_pre_ping=True)

    @staticmethod
    def create_sqlalchemy_uow_factory(database_url: str, create_tables: bool = True) -> UnitOfWorkFactory:
        """Create SQLAlchemy Unit of Work factory"""
        engine = RepositoryFactory.create_engine(database_url)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

        # Create tables if they don't exist
        if create_tables:
            Base.metadata.create_all(bind=engine)

        return lambda: SQLAlchemyUnitOfWork(SessionLocal)


def seed(uow_factory: UnitOfWorkFactory, entities: Iterable[Any]) -> None:
    """Insert reference records through a unit of work"""
    with uow_factory() as uow:
        repositories = {
            Company: uow.companies, ParkingLot: uow.parking_lots, ParkingSpace: uow.parking_spaces,
            Driver: uow.drivers, Vehicle: uow.vehicles, Reservation: uow.reservations,
            Transaction: uow.transactions,
        }
        for entity in entities:
            repositories[type(entity)].add(entity)
