# File: src/fleetpark/domain/permissions.py
"""
Role permission guard

Maps an actor role to the target statuses it may request, independent of
the reservation's current status. A change is accepted only when both this
guard and the transition table allow it; the two checks raise different
errors so callers can tell "not allowed for your role" from "not allowed
from the current state".
"""

from types import MappingProxyType
from typing import FrozenSet, List, Mapping, Optional

from .exceptions import UnauthorizedError
from .models import ActorRole, ReservationStatus
from .state_machine import allowed_targets


_OPERATOR_TARGETS = frozenset({
    ReservationStatus.CONFIRMED,
    ReservationStatus.IN_PROGRESS,
    ReservationStatus.COMPLETED,
    ReservationStatus.CANCELLED,
})

ROLE_PERMISSIONS: Mapping[ActorRole, FrozenSet[ReservationStatus]] = MappingProxyType({
    ActorRole.ADMIN: _OPERATOR_TARGETS,
    ActorRole.ESTACIONAMENTO: _OPERATOR_TARGETS,
    ActorRole.TRANSPORTADORA: frozenset({ReservationStatus.CANCELLED}),
})

# Roles allowed to open a booking on behalf of a transportation company
BOOKING_ROLES: FrozenSet[ActorRole] = frozenset({ActorRole.ADMIN, ActorRole.TRANSPORTADORA})

# Roles allowed to change the window of a pending booking
RESCHEDULE_ROLES: FrozenSet[ActorRole] = frozenset({ActorRole.ADMIN, ActorRole.TRANSPORTADORA})

# Roles allowed to pick the concrete space inside a lot
SPACE_ASSIGNMENT_ROLES: FrozenSet[ActorRole] = frozenset({ActorRole.ADMIN, ActorRole.ESTACIONAMENTO})


def authorize(role: ActorRole, target_status: ReservationStatus) -> bool:
    """Returns True if the role may request the target status"""
    return ReservationStatus(target_status) in ROLE_PERMISSIONS.get(ActorRole(role), frozenset())


def ensure_authorized(role: ActorRole, target_status: ReservationStatus) -> None:
    if not authorize(role, target_status):
        role_value = ActorRole(role).value
        status_value = ReservationStatus(target_status).value
        raise UnauthorizedError(
            f"Role {role_value} is not allowed to set reservations to {status_value}",
            {"role": role_value, "target_status": status_value},
        )


def ensure_role_in(role: ActorRole, allowed: FrozenSet[ActorRole], action: str) -> None:
    """Guard for non-status operations (create, reschedule, assign space)"""
    if ActorRole(role) not in allowed:
        raise UnauthorizedError(
            f"Role {ActorRole(role).value} is not allowed to {action}",
            {"role": ActorRole(role).value, "action": action},
        )


def ensure_can_create(role: ActorRole) -> None:
    ensure_role_in(role, BOOKING_ROLES, "create reservations")


def permitted_actions(role: ActorRole, current_status: ReservationStatus) -> List[ReservationStatus]:
    """
    Target statuses the role can actually reach from the current status
    Ordered by lifecycle position, which is what a UI shows as action buttons
    """
    reachable = allowed_targets(current_status) & ROLE_PERMISSIONS.get(ActorRole(role), frozenset())
    order = list(ReservationStatus)
    return sorted(reachable, key=order.index)


def ensure_company_scope(
    role: ActorRole,
    actor_company_id: Optional[str],
    reservation_company_id: str,
    lot_company_id: Optional[str]
) -> None:
    """
    Carriers may only act on their own company's reservations and parking
    operators only on reservations at lots their company owns. ADMIN and
    callers that do not name a company are not scoped.
    """
    role = ActorRole(role)
    if actor_company_id is None or role == ActorRole.ADMIN:
        return

    owner = reservation_company_id if role == ActorRole.TRANSPORTADORA else lot_company_id
    if owner != actor_company_id:
        raise UnauthorizedError(
            "Reservation does not belong to your company",
            {"role": role.value, "company_id": actor_company_id},
        )
