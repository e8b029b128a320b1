from __future__ import annotations

from gradely.errors import InvalidTransitionError
from gradely.models import SubmissionStatus

TERMINAL_STATES = frozenset({SubmissionStatus.GRADED, SubmissionStatus.FAILED})

ALLOWED_TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
    SubmissionStatus.PENDING: frozenset({SubmissionStatus.GRADING}),
    SubmissionStatus.GRADING: frozenset({SubmissionStatus.GRADED, SubmissionStatus.FAILED}),
    # Re-submission and regrade start over from pending.
    SubmissionStatus.GRADED: frozenset({SubmissionStatus.PENDING}),
    SubmissionStatus.FAILED: frozenset({SubmissionStatus.PENDING}),
}


def can_transition(current: str, target: str) -> bool:
    try:
        return SubmissionStatus(target) in ALLOWED_TRANSITIONS[SubmissionStatus(current)]
    except ValueError:
        return False


def ensure_transition(current: str, target: str) -> SubmissionStatus:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)
    return SubmissionStatus(target)


def is_terminal(status: str) -> bool:
    try:
        return SubmissionStatus(status) in TERMINAL_STATES
    except ValueError:
        return False
