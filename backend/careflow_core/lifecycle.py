from __future__ import annotations

from typing import Iterable

from .errors import InvalidTransition
from .models import (
    CANCELLED,
    CANONICAL_PATH,
    CATEGORY_SELECTED,
    COMPLETED,
    CONSULTATION_APPROVED,
    CONSULTATION_PENDING,
    CONSULTATION_REJECTED,
    INTAKE_COMPLETED,
    INTAKE_STARTED,
    INVOICE_GENERATED,
    ORDER_CREATED,
    ORDER_FULFILLED,
    PRODUCT_SELECTED,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CONFIGURED,
)


class FlowLifecycle:
    """Forward-only transition graph of a patient flow."""

    _TRANSITIONS = {
        CATEGORY_SELECTED: {PRODUCT_SELECTED, CANCELLED},
        PRODUCT_SELECTED: {SUBSCRIPTION_CONFIGURED, CANCELLED},
        SUBSCRIPTION_CONFIGURED: {INTAKE_STARTED, CANCELLED},
        INTAKE_STARTED: {INTAKE_COMPLETED, CANCELLED},
        INTAKE_COMPLETED: {ORDER_CREATED, CANCELLED},
        ORDER_CREATED: {CONSULTATION_PENDING, CANCELLED},
        CONSULTATION_PENDING: {CONSULTATION_APPROVED, CONSULTATION_REJECTED, CANCELLED},
        CONSULTATION_APPROVED: {INVOICE_GENERATED, CANCELLED},
        CONSULTATION_REJECTED: {CANCELLED},
        INVOICE_GENERATED: {SUBSCRIPTION_ACTIVE, ORDER_FULFILLED, CANCELLED},
        SUBSCRIPTION_ACTIVE: {ORDER_FULFILLED, CANCELLED},
        ORDER_FULFILLED: {COMPLETED, CANCELLED},
        COMPLETED: set(),
        CANCELLED: set(),
    }
    INITIAL_STATE = CATEGORY_SELECTED

    def allowed_next(self, status: str) -> list[str]:
        return sorted(self._TRANSITIONS.get(status, set()))

    def can_transition(self, current: str | None, next_state: str) -> bool:
        if current is None:
            return next_state == self.INITIAL_STATE
        return next_state in self._TRANSITIONS.get(current, set())

    def assert_transition(self, current: str | None, next_state: str) -> None:
        if not self.can_transition(current, next_state):
            raise InvalidTransition(current, next_state)

    def path(self, current: str, *targets: str) -> list[tuple[str, str]]:
        """Validate a chain of transitions and return its (from, to) steps."""
        steps: list[tuple[str, str]] = []
        cursor = current
        for target in targets:
            self.assert_transition(cursor, target)
            steps.append((cursor, target))
            cursor = target
        return steps

    def is_valid_history(self, statuses: Iterable[str]) -> bool:
        previous: str | None = None
        seen: set[str] = set()
        for status in statuses:
            if status in seen or not self.can_transition(previous, status):
                return False
            seen.add(status)
            previous = status
        return True

    def completion_percentage(self, status: str, cancelled_from: str | None = None) -> float:
        if status == CANCELLED:
            if not cancelled_from or cancelled_from == CANCELLED:
                return 0.0
            return self.completion_percentage(cancelled_from)
        if status == CONSULTATION_REJECTED:
            status = CONSULTATION_APPROVED
        if status not in CANONICAL_PATH:
            return 0.0
        position = CANONICAL_PATH.index(status) + 1
        return round(position / len(CANONICAL_PATH) * 100, 2)
