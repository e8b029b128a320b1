from __future__ import annotations

import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

API_DIR = Path(__file__).resolve().parents[2]
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

from gradely.db import Base
from gradely.errors import GradingInProgressError, SubmissionNotFoundError
from gradely.locks import InFlightGuard, in_flight_key
from gradely.models import Assignment, Submission, User
from gradely.service import SubmissionOutcome
from gradely.worker_tasks import INTERRUPTED_MESSAGE, _grade_submission_async, requeue_stale_grading_submissions


class _RegradeService:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[int] = []

    async def regrade(self, submission_id: int) -> SubmissionOutcome:
        self.calls.append(submission_id)
        if self.error is not None:
            raise self.error
        return SubmissionOutcome(submission_id=submission_id, score=100.0)


def test_grade_submission_job_regrades_through_service() -> None:
    service = _RegradeService()

    asyncio.run(_grade_submission_async(11, service))

    assert service.calls == [11]


def test_grade_submission_job_skips_missing_or_busy_submissions() -> None:
    for error in (SubmissionNotFoundError(11), GradingInProgressError("grading:in-flight:1:2")):
        service = _RegradeService(error)
        asyncio.run(_grade_submission_async(11, service))
        assert service.calls == [11]


def test_requeue_stale_grading_submissions_fails_only_stale_rows() -> None:
    async def scenario() -> None:
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

        long_ago = datetime(2020, 1, 1, tzinfo=timezone.utc)
        async with factory() as session:
            users = [User(username=f"u{index}", display_name=f"User {index}") for index in range(3)]
            assignment = Assignment(title="Adder")
            session.add_all([*users, assignment])
            await session.flush()
            stale = Submission(
                assignment_id=assignment.id,
                user_id=users[0].id,
                submitted_program="x",
                status="grading",
                updated_at=long_ago,
            )
            fresh = Submission(assignment_id=assignment.id, user_id=users[1].id, submitted_program="x", status="grading")
            done = Submission(
                assignment_id=assignment.id,
                user_id=users[2].id,
                submitted_program="x",
                status="graded",
                score=100.0,
                updated_at=long_ago,
            )
            session.add_all([stale, fresh, done])
            await session.commit()
            stale_id, fresh_id, done_id = stale.id, fresh.id, done.id

        result = await requeue_stale_grading_submissions(
            stale_seconds=60, session_factory=factory, guard=InFlightGuard()
        )

        assert result == {"stale_seconds": 60, "scanned_grading": 2, "requeued_submission_ids": [stale_id]}
        async with factory() as session:
            rows = await session.execute(select(Submission).order_by(Submission.id.asc()))
            by_id = {submission.id: submission for submission in rows.scalars().all()}
        assert by_id[stale_id].status == "failed"
        assert by_id[stale_id].feedback == {"error": INTERRUPTED_MESSAGE}
        assert by_id[fresh_id].status == "grading"
        assert by_id[done_id].status == "graded"
        await engine.dispose()

    asyncio.run(scenario())


def test_requeue_leaves_rows_with_a_live_pass_alone() -> None:
    async def scenario() -> None:
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

        long_ago = datetime(2020, 1, 1, tzinfo=timezone.utc)
        async with factory() as session:
            users = [User(username=f"u{index}", display_name=f"User {index}") for index in range(2)]
            assignment = Assignment(title="Adder")
            session.add_all([*users, assignment])
            await session.flush()
            live = Submission(
                assignment_id=assignment.id,
                user_id=users[0].id,
                submitted_program="x",
                status="grading",
                updated_at=long_ago,
            )
            abandoned = Submission(
                assignment_id=assignment.id,
                user_id=users[1].id,
                submitted_program="x",
                status="grading",
                updated_at=long_ago,
            )
            session.add_all([live, abandoned])
            await session.commit()
            live_id, abandoned_id = live.id, abandoned.id
            live_key = in_flight_key(assignment.id, users[0].id)

        guard = InFlightGuard()
        async with guard.hold(live_key):
            result = await requeue_stale_grading_submissions(stale_seconds=60, session_factory=factory, guard=guard)

        assert result["requeued_submission_ids"] == [abandoned_id]
        async with factory() as session:
            rows = await session.execute(select(Submission).order_by(Submission.id.asc()))
            by_id = {submission.id: submission for submission in rows.scalars().all()}
        assert by_id[live_id].status == "grading"
        assert by_id[abandoned_id].status == "failed"
        await engine.dispose()

    asyncio.run(scenario())
