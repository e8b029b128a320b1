"""Engine-level errors.

Per-test faults (load, runtime, timeout) never surface as exceptions; they are
folded into failing test results by the orchestrator. Only the classes below
cross the service boundary.
"""

from __future__ import annotations


class GradingError(Exception):
    pass


class CollaboratorFault(GradingError):
    """A persistence or test-set collaborator could not do its job."""


class TestSetUnavailableError(CollaboratorFault):
    __test__ = False

    def __init__(self, assignment_id: int, reason: str) -> None:
        super().__init__(f"test set for assignment {assignment_id} could not be loaded: {reason}")
        self.assignment_id = assignment_id
        self.reason = reason


class SubmissionPersistenceError(CollaboratorFault):
    pass


class SubmissionNotFoundError(CollaboratorFault):
    def __init__(self, submission_id: int) -> None:
        super().__init__(f"submission {submission_id} not found")
        self.submission_id = submission_id


class AssignmentNotFoundError(CollaboratorFault):
    def __init__(self, assignment_id: int) -> None:
        super().__init__(f"assignment {assignment_id} not found")
        self.assignment_id = assignment_id


class GradingInProgressError(GradingError):
    def __init__(self, key: str) -> None:
        super().__init__(f"grading in progress for {key}")
        self.key = key


class InvalidTransitionError(GradingError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"submission cannot move from {current} to {target}")
        self.current = current
        self.target = target
