from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gradely.db import AsyncSessionLocal
from gradely.errors import (
    AssignmentNotFoundError,
    SubmissionNotFoundError,
    SubmissionPersistenceError,
    TestSetUnavailableError,
)
from gradely.grading import TestCase, TestResult
from gradely.models import Assignment, AssignmentTest, Submission, SubmissionResult, SubmissionStatus
from gradely.state import ensure_transition, is_terminal
from gradely.storage.base import GradingStore, SubmissionRecord


def _to_record(submission: Submission) -> SubmissionRecord:
    return SubmissionRecord(
        id=submission.id,
        assignment_id=submission.assignment_id,
        user_id=submission.user_id,
        submitted_program=submission.submitted_program,
        language=submission.language,
        status=submission.status,
        score=submission.score,
        feedback=submission.feedback,
    )


class SqlGradingStore(GradingStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal) -> None:
        self.session_factory = session_factory

    async def load_tests(self, assignment_id: int) -> list[TestCase]:
        try:
            async with self.session_factory() as session:
                exists = await session.scalar(select(Assignment.id).where(Assignment.id == assignment_id))
                if exists is None:
                    raise TestSetUnavailableError(assignment_id, "assignment not found")
                rows = await session.execute(
                    select(AssignmentTest)
                    .where(AssignmentTest.assignment_id == assignment_id)
                    .order_by(AssignmentTest.created_at.asc(), AssignmentTest.id.asc())
                )
                return [
                    TestCase(id=test.id, name=test.name, test_program=test.test_program)
                    for test in rows.scalars().all()
                ]
        except SQLAlchemyError as exc:
            raise TestSetUnavailableError(assignment_id, str(exc)) from exc

    async def upsert_submission(
        self, assignment_id: int, user_id: int, submitted_program: str, language: str
    ) -> SubmissionRecord:
        # One retry covers a concurrent first insert losing the unique race.
        for attempt in range(2):
            try:
                return await self._upsert_once(assignment_id, user_id, submitted_program, language)
            except IntegrityError as exc:
                if attempt == 1:
                    raise SubmissionPersistenceError(f"could not store submission: {exc}") from exc
            except SQLAlchemyError as exc:
                raise SubmissionPersistenceError(f"could not store submission: {exc}") from exc
        raise SubmissionPersistenceError("could not store submission")

    async def _upsert_once(
        self, assignment_id: int, user_id: int, submitted_program: str, language: str
    ) -> SubmissionRecord:
        async with self.session_factory() as session:
            assignment = await session.scalar(select(Assignment.id).where(Assignment.id == assignment_id))
            if assignment is None:
                raise AssignmentNotFoundError(assignment_id)

            submission = await session.scalar(
                select(Submission).where(Submission.assignment_id == assignment_id, Submission.user_id == user_id)
            )
            if submission is None:
                submission = Submission(
                    assignment_id=assignment_id,
                    user_id=user_id,
                    submitted_program=submitted_program,
                    language=language,
                    status=SubmissionStatus.PENDING.value,
                )
                session.add(submission)
            else:
                if is_terminal(submission.status):
                    ensure_transition(submission.status, SubmissionStatus.PENDING)
                # A row left pending or grading belongs to an abandoned pass; the caller holds the in-flight guard.
                submission.submitted_program = submitted_program
                submission.language = language
                submission.status = SubmissionStatus.PENDING.value
                submission.score = None
                submission.feedback = None
                await session.execute(delete(SubmissionResult).where(SubmissionResult.submission_id == submission.id))

            await session.commit()
            await session.refresh(submission)
            return _to_record(submission)

    async def get_submission(self, submission_id: int) -> SubmissionRecord:
        try:
            async with self.session_factory() as session:
                submission = await session.scalar(select(Submission).where(Submission.id == submission_id))
        except SQLAlchemyError as exc:
            raise SubmissionPersistenceError(f"could not read submission {submission_id}: {exc}") from exc
        if submission is None:
            raise SubmissionNotFoundError(submission_id)
        return _to_record(submission)

    async def write_test_results(self, submission_id: int, results: Sequence[TestResult]) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(delete(SubmissionResult).where(SubmissionResult.submission_id == submission_id))
                for position, result in enumerate(results):
                    session.add(
                        SubmissionResult(
                            submission_id=submission_id,
                            test_id=result.test_id,
                            position=position,
                            passed=result.passed,
                            message=result.message,
                            duration_ms=result.duration_ms,
                        )
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise SubmissionPersistenceError(f"could not store results for submission {submission_id}: {exc}") from exc

    async def update_submission_status(
        self,
        submission_id: int,
        status: str,
        *,
        score: float | None = None,
        feedback: dict[str, Any] | None = None,
    ) -> None:
        try:
            async with self.session_factory() as session:
                submission = await session.scalar(select(Submission).where(Submission.id == submission_id))
                if submission is None:
                    raise SubmissionNotFoundError(submission_id)
                submission.status = SubmissionStatus(status).value
                submission.score = score
                submission.feedback = feedback
                await session.commit()
        except SQLAlchemyError as exc:
            raise SubmissionPersistenceError(f"could not update submission {submission_id}: {exc}") from exc

    async def touch_submission(self, submission_id: int) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(Submission).where(Submission.id == submission_id).values(updated_at=func.now())
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise SubmissionPersistenceError(f"could not touch submission {submission_id}: {exc}") from exc
