# File: src/fleetpark/presentation/handlers.py
"""
Request handlers for the reservation endpoints

Framework-agnostic adapter between an HTTP layer and the lifecycle
service. Each method takes the decoded JSON body (camelCase keys) and the
authenticated actor role (plus, for changes to an existing reservation,
the company the actor belongs to), and returns ``(status_code, body)``:

    POST /reservations                      -> post_reservation
    PUT  /reservations/{id}/status          -> put_status
    PUT  /reservations/{id}/cancel          -> put_cancel
    PUT  /reservations/{id}/schedule        -> put_schedule
    PUT  /reservations/{id}/space           -> put_space
    POST /reservations/{id}/transactions    -> post_transaction
    GET  /reservations/{id}                 -> get_reservation
    GET  /reservations                      -> get_reservations
    GET  /parking-lots/{id}/availability    -> get_availability
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple
import logging

from pydantic import BaseModel, ValidationError

from ..application.dtos import (
    AssignSpaceRequest,
    CancelReservationRequest,
    CreateReservationRequest,
    ErrorResponseDTO,
    ReservationDTO,
    ReservationQueryDTO,
    RescheduleRequest,
    StatusChangeRequest,
    TransactionRequest,
)
from ..application.reservation_service import ReservationLifecycleService
from ..domain.exceptions import ReservationError
from ..domain.models import ActorRole


Response = Tuple[int, Dict[str, Any]]

STATUS_CODES: Dict[str, int] = {
    "invalid_window": 400,
    "invalid_request": 400,
    "unauthorized": 403,
    "not_found": 404,
    "conflict": 409,
    "invalid_transition": 409,
    "concurrent_update": 409,
    "storage_unavailable": 503,
}


class ReservationRequestHandler:
    """
    Handler for reservation requests

    Engine errors become their mapped status code with an ErrorResponseDTO
    body; malformed bodies become 400 with the validation errors.
    """

    def __init__(self, service: ReservationLifecycleService):
        self.service = service
        self.logger = logging.getLogger(self.__class__.__name__)

    def post_reservation(self, body: Dict[str, Any], actor_role: ActorRole) -> Response:
        def create() -> Response:
            request = CreateReservationRequest.model_validate(body)
            reservation = self.service.create(request, actor_role)
            return 201, self._reservation_body(reservation)

        return self._dispatch("post_reservation", create)

    def put_status(
        self,
        reservation_id: str,
        body: Dict[str, Any],
        actor_role: ActorRole,
        actor_company_id: Optional[str] = None
    ) -> Response:
        def change() -> Response:
            request = StatusChangeRequest.model_validate(body)
            reservation = self.service.change_status(
                reservation_id, actor_role, request.status, request.reason, actor_company_id=actor_company_id,
            )
            return 200, self._reservation_body(reservation)

        return self._dispatch("put_status", change)

    def put_cancel(
        self,
        reservation_id: str,
        body: Optional[Dict[str, Any]],
        actor_role: ActorRole,
        actor_company_id: Optional[str] = None
    ) -> Response:
        def cancel() -> Response:
            request = CancelReservationRequest.model_validate(body or {})
            reservation = self.service.cancel(
                reservation_id, actor_role, request.reason, actor_company_id=actor_company_id,
            )
            return 200, self._reservation_body(reservation)

        return self._dispatch("put_cancel", cancel)

    def put_schedule(
        self,
        reservation_id: str,
        body: Dict[str, Any],
        actor_role: ActorRole,
        actor_company_id: Optional[str] = None
    ) -> Response:
        def reschedule() -> Response:
            request = RescheduleRequest.model_validate(body)
            reservation = self.service.reschedule(
                reservation_id, actor_role, request.start_time, request.end_time, actor_company_id=actor_company_id,
            )
            return 200, self._reservation_body(reservation)

        return self._dispatch("put_schedule", reschedule)

    def put_space(
        self,
        reservation_id: str,
        body: Dict[str, Any],
        actor_role: ActorRole,
        actor_company_id: Optional[str] = None
    ) -> Response:
        def assign() -> Response:
            request = AssignSpaceRequest.model_validate(body)
            reservation = self.service.assign_space(
                reservation_id, actor_role, request.parking_space_id, actor_company_id=actor_company_id,
            )
            return 200, self._reservation_body(reservation)

        return self._dispatch("put_space", assign)

    def post_transaction(self, reservation_id: str, body: Dict[str, Any]) -> Response:
        def record() -> Response:
            request = TransactionRequest.model_validate(body)
            transaction = self.service.record_transaction(reservation_id, request.amount, request.transaction_type)
            return 201, {
                "id": transaction.id,
                "reservationId": transaction.reservation_id,
                "amount": str(transaction.amount),
                "transactionType": transaction.transaction_type.value,
                "status": transaction.status.value,
                "createdAt": transaction.created_at.isoformat(),
            }

        return self._dispatch("post_transaction", record)

    def get_reservation(self, reservation_id: str) -> Response:
        return self._dispatch("get_reservation", lambda: (200, self.service.get(reservation_id).to_dict()))

    def get_reservations(self, params: Optional[Dict[str, Any]] = None) -> Response:
        def search() -> Response:
            query = ReservationQueryDTO.model_validate(params or {})
            reservations = self.service.list_reservations(query)
            items = [self._reservation_body(r) for r in reservations]
            return 200, {"items": items, "count": len(items)}

        return self._dispatch("get_reservations", search)

    def get_availability(self, parking_lot_id: str, at: Optional[datetime] = None) -> Response:
        return self._dispatch(
            "get_availability",
            lambda: (200, self.service.lot_availability(parking_lot_id, at).to_dict()),
        )

    # ------------------------------------------------------------------

    @staticmethod
    def _reservation_body(reservation: Any) -> Dict[str, Any]:
        return ReservationDTO.model_validate(reservation).to_dict()

    def _dispatch(self, name: str, action: Callable[[], Response]) -> Response:
        try:
            return action()
        except ValidationError as e:
            self.logger.info(f"{name}: invalid body: {e.error_count()} error(s)")
            errors = [
                {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                for error in e.errors()
            ]
            return 400, self._error_body(ErrorResponseDTO(
                error="Validation failed",
                error_code="validation_error",
                details={"errors": errors},
            ))
        except ReservationError as e:
            status = STATUS_CODES.get(e.code, 400)
            self.logger.info(f"{name}: {status} {e.code}: {e.message}")
            return status, self._error_body(ErrorResponseDTO(
                error=e.message,
                error_code=e.code,
                details=e.details or None,
                retryable=e.retryable,
            ))
        except Exception as e:
            self.logger.error(f"Error handling {name}: {e}", exc_info=True)
            return 500, self._error_body(ErrorResponseDTO(error="Internal server error", error_code="internal_error"))

    @staticmethod
    def _error_body(error: BaseModel) -> Dict[str, Any]:
        return error.model_dump(mode="json", by_alias=True, exclude_none=True)
