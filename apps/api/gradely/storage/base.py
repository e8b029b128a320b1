from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from gradely.grading import TestCase, TestResult


@dataclass(frozen=True)
class SubmissionRecord:
    id: int
    assignment_id: int
    user_id: int
    submitted_program: str
    language: str
    status: str
    score: float | None = None
    feedback: dict[str, Any] | None = None


class GradingStore(Protocol):
    async def load_tests(self, assignment_id: int) -> list[TestCase]:
        ...

    async def upsert_submission(
        self, assignment_id: int, user_id: int, submitted_program: str, language: str
    ) -> SubmissionRecord:
        ...

    async def get_submission(self, submission_id: int) -> SubmissionRecord:
        ...

    async def write_test_results(self, submission_id: int, results: Sequence[TestResult]) -> None:
        ...

    async def update_submission_status(
        self,
        submission_id: int,
        status: str,
        *,
        score: float | None = None,
        feedback: dict[str, Any] | None = None,
    ) -> None:
        ...

    async def touch_submission(self, submission_id: int) -> None:
        """Bump ``updated_at`` so a live pass is not mistaken for an abandoned one."""
        ...
