#!/usr/bin/env python3
"""
State machine and role permission unit tests.
"""

import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import reservation_fixtures  # noqa: F401  (puts src on the path)
from fleetpark.domain.exceptions import InvalidTransitionError, UnauthorizedError
from fleetpark.domain.models import ActorRole, ReservationStatus
from fleetpark.domain.permissions import (
    authorize,
    ensure_authorized,
    ensure_can_create,
    ensure_company_scope,
    ensure_role_in,
    permitted_actions,
    SPACE_ASSIGNMENT_ROLES,
)
from fleetpark.domain.state_machine import (
    ACTIVE_STATUSES,
    INITIAL_STATUS,
    TERMINAL_STATUSES,
    TRANSITIONS,
    allowed_targets,
    can_transition,
    is_terminal,
    validate_transition,
)

S = ReservationStatus


class TestTransitionTable(unittest.TestCase):
    """Unit tests for the status transition graph"""

    def test_forward_path(self):
        """Test the happy path PENDING -> CONFIRMED -> IN_PROGRESS -> COMPLETED"""
        self.assertTrue(can_transition(S.PENDING, S.CONFIRMED))
        self.assertTrue(can_transition(S.CONFIRMED, S.IN_PROGRESS))
        self.assertTrue(can_transition(S.IN_PROGRESS, S.COMPLETED))

    def test_cancel_from_every_active_state(self):
        for status in (S.PENDING, S.CONFIRMED, S.IN_PROGRESS):
            self.assertTrue(can_transition(status, S.CANCELLED), status)

    def test_no_skipping_or_going_back(self):
        test_cases = [
            (S.PENDING, S.IN_PROGRESS),
            (S.PENDING, S.COMPLETED),
            (S.CONFIRMED, S.COMPLETED),
            (S.CONFIRMED, S.PENDING),
            (S.IN_PROGRESS, S.CONFIRMED),
            (S.PENDING, S.PENDING),
        ]
        for from_status, to_status in test_cases:
            self.assertFalse(can_transition(from_status, to_status), f"{from_status} -> {to_status}")

    def test_terminal_states_have_no_exit(self):
        """Test COMPLETED and CANCELLED are absorbing"""
        self.assertEqual(TERMINAL_STATUSES, frozenset({S.COMPLETED, S.CANCELLED}))
        for status in TERMINAL_STATUSES:
            self.assertTrue(is_terminal(status))
            self.assertEqual(allowed_targets(status), frozenset())
            for target in ReservationStatus:
                self.assertFalse(can_transition(status, target))

    def test_active_statuses(self):
        self.assertEqual(ACTIVE_STATUSES, frozenset({S.PENDING, S.CONFIRMED, S.IN_PROGRESS}))
        self.assertEqual(INITIAL_STATUS, S.PENDING)

    def test_validate_transition_raises_with_details(self):
        with self.assertRaises(InvalidTransitionError) as ctx:
            validate_transition(S.CANCELLED, S.CONFIRMED)

        error = ctx.exception
        self.assertEqual(error.code, "invalid_transition")
        self.assertFalse(error.retryable)
        self.assertEqual(error.details, {"from_status": "CANCELLED", "to_status": "CONFIRMED"})
        self.assertIn("CANCELLED", error.message)

    def test_string_values_accepted(self):
        self.assertTrue(can_transition("PENDING", "CONFIRMED"))

    def test_table_is_read_only(self):
        with self.assertRaises(TypeError):
            TRANSITIONS[S.COMPLETED] = frozenset({S.PENDING})


class TestRolePermissions(unittest.TestCase):
    """Unit tests for the role guard"""

    def test_operators_may_request_every_non_initial_status(self):
        for role in (ActorRole.ADMIN, ActorRole.ESTACIONAMENTO):
            for status in (S.CONFIRMED, S.IN_PROGRESS, S.COMPLETED, S.CANCELLED):
                self.assertTrue(authorize(role, status), f"{role} -> {status}")
            self.assertFalse(authorize(role, S.PENDING))

    def test_transportadora_may_only_cancel(self):
        self.assertTrue(authorize(ActorRole.TRANSPORTADORA, S.CANCELLED))
        for status in (S.PENDING, S.CONFIRMED, S.IN_PROGRESS, S.COMPLETED):
            self.assertFalse(authorize(ActorRole.TRANSPORTADORA, status))

    def test_ensure_authorized_raises_unauthorized(self):
        with self.assertRaises(UnauthorizedError) as ctx:
            ensure_authorized(ActorRole.TRANSPORTADORA, S.CONFIRMED)
        self.assertEqual(ctx.exception.code, "unauthorized")
        self.assertEqual(ctx.exception.details["role"], "TRANSPORTADORA")

    def test_only_booking_roles_create(self):
        ensure_can_create(ActorRole.TRANSPORTADORA)
        ensure_can_create(ActorRole.ADMIN)
        with self.assertRaises(UnauthorizedError):
            ensure_can_create(ActorRole.ESTACIONAMENTO)

    def test_space_assignment_roles(self):
        ensure_role_in(ActorRole.ESTACIONAMENTO, SPACE_ASSIGNMENT_ROLES, "assign parking spaces")
        with self.assertRaises(UnauthorizedError):
            ensure_role_in(ActorRole.TRANSPORTADORA, SPACE_ASSIGNMENT_ROLES, "assign parking spaces")

    def test_permitted_actions(self):
        """Test action buttons are the intersection of role and transition table"""
        self.assertEqual(permitted_actions(ActorRole.ESTACIONAMENTO, S.PENDING), [S.CONFIRMED, S.CANCELLED])
        self.assertEqual(permitted_actions(ActorRole.ADMIN, S.CONFIRMED), [S.IN_PROGRESS, S.CANCELLED])
        self.assertEqual(permitted_actions(ActorRole.ESTACIONAMENTO, S.IN_PROGRESS), [S.COMPLETED, S.CANCELLED])
        self.assertEqual(permitted_actions(ActorRole.TRANSPORTADORA, S.CONFIRMED), [S.CANCELLED])
        self.assertEqual(permitted_actions(ActorRole.TRANSPORTADORA, S.COMPLETED), [])
        self.assertEqual(permitted_actions(ActorRole.ADMIN, S.CANCELLED), [])

    def test_company_scope(self):
        """Test carriers are scoped to the booking company and operators to the lot owner"""
        ensure_company_scope(ActorRole.TRANSPORTADORA, "carrier", "carrier", "operator")
        ensure_company_scope(ActorRole.ESTACIONAMENTO, "operator", "carrier", "operator")
        ensure_company_scope(ActorRole.ADMIN, "anyone", "carrier", "operator")
        ensure_company_scope(ActorRole.TRANSPORTADORA, None, "carrier", "operator")

        with self.assertRaises(UnauthorizedError):
            ensure_company_scope(ActorRole.TRANSPORTADORA, "operator", "carrier", "operator")
        with self.assertRaises(UnauthorizedError):
            ensure_company_scope(ActorRole.ESTACIONAMENTO, "carrier", "carrier", "operator")
        with self.assertRaises(UnauthorizedError):
            ensure_company_scope(ActorRole.ESTACIONAMENTO, "operator", "carrier", None)


if __name__ == '__main__':
    unittest.main()
