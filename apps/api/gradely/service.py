from __future__ import annotations

import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from functools import partial
from typing import Any, TypeVar

from gradely.config import worst_case_pass_seconds
from gradely.errors import GradingError, SubmissionPersistenceError, TestSetUnavailableError
from gradely.grading import GradeReport, TestResult, grade
from gradely.locks import InFlightGuard, grading_guard, in_flight_key
from gradely.models import SubmissionStatus
from gradely.notifications import Notifier, SqlNotifier
from gradely.observability import get_logger, log_event
from gradely.sandbox import SandboxBackend
from gradely.state import ensure_transition
from gradely.storage import GradingStore, SubmissionRecord, grading_store

T = TypeVar("T")

logger = get_logger("gradely.service")


@dataclass(frozen=True)
class SubmissionOutcome:
    submission_id: int
    score: float
    results: list[TestResult] = field(default_factory=list)
    feedback: dict[str, Any] = field(default_factory=dict)
    status: str = SubmissionStatus.GRADED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "submission_id": self.submission_id,
            "status": self.status,
            "score": self.score,
            "results": [result.to_dict() for result in self.results],
            "feedback": dict(self.feedback),
        }


class GradingService:
    """Persists a submission, grades it against its assignment's tests and records the outcome.

    Every pass walks ``pending -> grading -> graded | failed`` and holds the
    in-flight guard for its ``(assignment_id, user_id)`` pair, so a second
    request for the same pair is rejected instead of queued.
    """

    def __init__(
        self,
        store: GradingStore,
        sandbox: SandboxBackend | None = None,
        guard: InFlightGuard | None = None,
        notifier: Notifier | None = None,
        *,
        load_timeout: float | None = None,
        eval_timeout: float | None = None,
    ) -> None:
        self.store = store
        self.sandbox = sandbox
        self.guard = guard or InFlightGuard()
        self.notifier = notifier
        self.load_timeout = load_timeout
        self.eval_timeout = eval_timeout

    async def submit_and_grade(
        self, assignment_id: int, user_id: int, submitted_program: str, language: str
    ) -> SubmissionOutcome:
        async with self.guard.hold(in_flight_key(assignment_id, user_id)):
            record = await self._persist(
                self.store.upsert_submission(assignment_id, user_id, submitted_program, language)
            )
            log_event(
                logger,
                "submission.received",
                submission_id=record.id,
                assignment_id=assignment_id,
                user_id=user_id,
                language=language,
                program_bytes=len(submitted_program.encode("utf-8")),
            )
            return await self._run_pass(record)

    async def regrade(self, submission_id: int) -> SubmissionOutcome:
        record = await self.store.get_submission(submission_id)
        async with self.guard.hold(in_flight_key(record.assignment_id, record.user_id)):
            # Re-read under the guard; a concurrent pass may have finished meanwhile.
            record = await self.store.get_submission(submission_id)
            if record.status != SubmissionStatus.PENDING:
                status = ensure_transition(record.status, SubmissionStatus.PENDING)
                await self._persist(self.store.update_submission_status(record.id, status))
            log_event(logger, "submission.regrade", submission_id=record.id, previous_status=record.status)
            return await self._run_pass(record)

    async def _run_pass(self, record: SubmissionRecord) -> SubmissionOutcome:
        status = ensure_transition(SubmissionStatus.PENDING, SubmissionStatus.GRADING)
        try:
            await self._persist(self.store.update_submission_status(record.id, status))
        except Exception as exc:
            await self._mark_failed(record, str(exc), current=SubmissionStatus.PENDING)
            raise

        try:
            tests = await self.store.load_tests(record.assignment_id)
        except TestSetUnavailableError as exc:
            await self._mark_failed(record, exc.reason)
            raise
        except Exception as exc:
            error = TestSetUnavailableError(record.assignment_id, str(exc))
            await self._mark_failed(record, error.reason)
            raise error from exc

        self._check_lock_budget(len(tests))

        try:
            report = await grade(
                tests,
                record.submitted_program,
                record.language,
                self.sandbox,
                load_timeout=self.load_timeout,
                eval_timeout=self.eval_timeout,
                heartbeat=partial(self._heartbeat, record),
            )
            await self._persist(self.store.write_test_results(record.id, report.results))
            status = ensure_transition(SubmissionStatus.GRADING, SubmissionStatus.GRADED)
            await self._persist(
                self.store.update_submission_status(
                    record.id, status, score=report.score, feedback=report.feedback
                )
            )
        except Exception as exc:
            await self._mark_failed(record, str(exc))
            raise

        await self._notify(record, report)
        return SubmissionOutcome(
            submission_id=record.id,
            score=report.score,
            results=list(report.results),
            feedback=dict(report.feedback),
            status=status.value,
        )

    async def _persist(self, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except GradingError:
            raise
        except Exception as exc:
            raise SubmissionPersistenceError(str(exc)) from exc

    async def _heartbeat(self, record: SubmissionRecord) -> None:
        self.guard.refresh(in_flight_key(record.assignment_id, record.user_id))
        try:
            await self.store.touch_submission(record.id)
        except Exception as exc:
            log_event(
                logger,
                "submission.heartbeat_failed",
                level=logging.WARNING,
                submission_id=record.id,
                error=str(exc),
            )

    async def _mark_failed(
        self, record: SubmissionRecord, reason: str, current: SubmissionStatus = SubmissionStatus.GRADING
    ) -> None:
        log_event(
            logger,
            "submission.failed",
            level=logging.WARNING,
            submission_id=record.id,
            assignment_id=record.assignment_id,
            reason=reason,
        )
        try:
            if current == SubmissionStatus.PENDING:
                # failed is only reachable through grading.
                await self.store.update_submission_status(
                    record.id, ensure_transition(current, SubmissionStatus.GRADING)
                )
                current = SubmissionStatus.GRADING
            status = ensure_transition(current, SubmissionStatus.FAILED)
            await self.store.update_submission_status(record.id, status, feedback={"error": reason})
        except Exception:
            logger.exception("could not mark submission %s as failed", record.id)

    async def _notify(self, record: SubmissionRecord, report: GradeReport) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.graded(record.user_id, record.assignment_id, report.score)
        except Exception as exc:
            log_event(
                logger,
                "notification.failed",
                level=logging.WARNING,
                submission_id=record.id,
                user_id=record.user_id,
                error=str(exc),
            )

    def _check_lock_budget(self, test_count: int) -> None:
        worst_case = worst_case_pass_seconds(test_count)
        if worst_case >= self.guard.ttl_seconds:
            log_event(
                logger,
                "grading.lock_ttl_too_short",
                level=logging.WARNING,
                tests=test_count,
                worst_case_seconds=worst_case,
                lock_ttl_seconds=self.guard.ttl_seconds,
            )


def build_grading_service() -> GradingService:
    return GradingService(store=grading_store, guard=grading_guard, notifier=SqlNotifier())
