"""Unit tests for the task state transition table."""

from __future__ import annotations

import itertools

import pytest

from marketplace_service.models import TASK_STATES, VALID_TRANSITIONS, can_transition

ALLOWED = {
    ("open", "in_progress"),
    ("open", "cancelled"),
    ("in_progress", "completed"),
    ("in_progress", "cancelled"),
}


@pytest.mark.unit
@pytest.mark.parametrize(("current", "new"), list(itertools.product(sorted(TASK_STATES), repeat=2)))
def test_transition_table(current: str, new: str) -> None:
    """Exactly four transitions are allowed; everything else is rejected."""
    assert can_transition(current, new) == ((current, new) in ALLOWED)


@pytest.mark.unit
def test_terminal_states_have_no_exits() -> None:
    assert VALID_TRANSITIONS["completed"] == frozenset()
    assert VALID_TRANSITIONS["cancelled"] == frozenset()


@pytest.mark.unit
def test_unknown_state_cannot_transition() -> None:
    assert can_transition("disputed", "open") is False
