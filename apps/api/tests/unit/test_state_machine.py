from __future__ import annotations

import sys
from pathlib import Path

import pytest

API_DIR = Path(__file__).resolve().parents[2]
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

from gradely.errors import InvalidTransitionError
from gradely.models import SubmissionStatus
from gradely.state import can_transition, ensure_transition, is_terminal


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("pending", "grading"),
        ("grading", "graded"),
        ("grading", "failed"),
        ("graded", "pending"),
        ("failed", "pending"),
    ],
)
def test_allowed_transitions(current: str, target: str) -> None:
    assert can_transition(current, target)
    assert ensure_transition(current, target) == SubmissionStatus(target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("pending", "graded"),
        ("pending", "failed"),
        ("pending", "pending"),
        ("grading", "pending"),
        ("graded", "grading"),
        ("failed", "graded"),
        ("graded", "graded"),
        ("queued", "grading"),
    ],
)
def test_rejected_transitions_raise(current: str, target: str) -> None:
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError) as exc_info:
        ensure_transition(current, target)
    assert exc_info.value.current == current
    assert exc_info.value.target == target


def test_terminal_states() -> None:
    assert is_terminal("graded")
    assert is_terminal(SubmissionStatus.FAILED)
    assert not is_terminal("pending")
    assert not is_terminal("grading")
    assert not is_terminal("unknown")
