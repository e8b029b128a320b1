from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gradely.config import GRADING_STUCK_TIMEOUT_SECONDS
from gradely.db import AsyncSessionLocal
from gradely.errors import GradingInProgressError, InvalidTransitionError, SubmissionNotFoundError
from gradely.locks import InFlightGuard, grading_guard, in_flight_key
from gradely.models import Submission, SubmissionStatus
from gradely.observability import get_logger, log_event
from gradely.service import GradingService, build_grading_service
from gradely.state import ensure_transition

INTERRUPTED_MESSAGE = "grading interrupted before completion"

logger = get_logger("gradely.worker")


def grade_submission_job(submission_id: int) -> None:
    log_event(logger, "worker.job_started", submission_id=submission_id)
    asyncio.run(_grade_submission_async(submission_id))
    log_event(logger, "worker.job_finished", submission_id=submission_id)


async def _grade_submission_async(submission_id: int, service: GradingService | None = None) -> None:
    service = service or build_grading_service()
    try:
        outcome = await service.regrade(submission_id)
    except SubmissionNotFoundError:
        log_event(logger, "worker.submission_missing", level=logging.WARNING, submission_id=submission_id)
        return
    except (GradingInProgressError, InvalidTransitionError) as exc:
        # Another pass owns this submission; it will record its own outcome.
        log_event(logger, "worker.job_skipped", submission_id=submission_id, reason=str(exc))
        return
    log_event(logger, "worker.graded", submission_id=submission_id, score=outcome.score)


async def requeue_stale_grading_submissions(
    stale_seconds: int | None = None,
    max_requeue: int = 100,
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    guard: InFlightGuard = grading_guard,
) -> dict[str, object]:
    """Fail submissions stuck in ``grading`` so they can be graded again.

    A pass that outlives the threshold lost its worker. The row is moved to
    ``failed`` and its id returned; enqueueing a regrade takes it back through
    ``pending``. Rows whose in-flight guard is still held belong to a live
    pass and are left alone.
    """
    threshold_seconds = stale_seconds or GRADING_STUCK_TIMEOUT_SECONDS
    threshold_seconds = max(int(threshold_seconds), 1)
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=threshold_seconds)

    async with session_factory() as session:
        grading_count = await session.scalar(
            select(func.count(Submission.id)).where(Submission.status == SubmissionStatus.GRADING.value)
        )
        rows = await session.execute(
            select(Submission)
            .where(
                Submission.status == SubmissionStatus.GRADING.value,
                Submission.updated_at < cutoff,
            )
            .order_by(Submission.id.asc())
            .limit(max_requeue)
        )
        stale_submissions = []
        live_ids = []
        for submission in rows.scalars().all():
            if guard.is_held(in_flight_key(submission.assignment_id, submission.user_id)):
                live_ids.append(submission.id)
            else:
                stale_submissions.append(submission)

        submission_ids = [submission.id for submission in stale_submissions]
        for submission in stale_submissions:
            submission.status = ensure_transition(submission.status, SubmissionStatus.FAILED).value
            submission.feedback = {"error": INTERRUPTED_MESSAGE}

        await session.commit()

    if live_ids:
        log_event(logger, "watchdog.skipped_live", submission_ids=live_ids)
    if submission_ids:
        log_event(logger, "watchdog.requeued", level=logging.WARNING, submission_ids=submission_ids)

    return {
        "stale_seconds": threshold_seconds,
        "scanned_grading": int(grading_count or 0),
        "requeued_submission_ids": submission_ids,
    }
