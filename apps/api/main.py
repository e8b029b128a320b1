from __future__ import annotations

import time
from typing import Annotated
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import and_, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gradely.config import (
    ALLOWED_ORIGINS,
    GRADING_STUCK_TIMEOUT_SECONDS,
    STAFF_ROLES,
    SUBMISSION_QUEUE_MAX_DEPTH,
)
from gradely.db import check_db_connection, get_async_session
from gradely.deps import get_current_user, get_grading_service, require_admin, require_author, require_staff
from gradely.errors import (
    AssignmentNotFoundError,
    CollaboratorFault,
    GradingInProgressError,
    InvalidTransitionError,
)
from gradely.models import (
    Assignment,
    AssignmentTest,
    Notification,
    Submission,
    SubmissionResult,
    SubmissionStatus,
    User,
)
from gradely.observability import get_logger, log_event
from gradely.queue import check_redis_connection, enqueue_grading, grading_queue
from gradely.schemas import (
    AssignmentCreate,
    AssignmentListItem,
    AssignmentResponse,
    AssignmentStats,
    NotificationResponse,
    OverrideRequest,
    RegradeResponse,
    SubmissionCreate,
    SubmissionGradeResponse,
    SubmissionResponse,
    TestDetail,
    TestResultResponse,
    TestSummary,
    WatchdogRequeueResponse,
)
from gradely.service import GradingService
from gradely.state import is_terminal
from gradely.worker_tasks import requeue_stale_grading_submissions

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)
logger = get_logger()


@app.middleware("http")
async def add_request_id_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    request.state.request_id = request_id
    started_at = time.monotonic()
    response = None

    try:
        response = await call_next(request)
        return response
    finally:
        duration_ms = int((time.monotonic() - started_at) * 1000)
        if response is not None:
            response.headers["X-Request-ID"] = request_id
            status_code = response.status_code
        else:
            status_code = 500
        log_event(
            logger,
            "request.completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=duration_ms,
            client=(request.client.host if request.client else "unknown"),
        )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/db")
async def health_db() -> JSONResponse:
    ok = await check_db_connection()
    if ok:
        return JSONResponse(content={"db": "ok"}, status_code=status.HTTP_200_OK)
    return JSONResponse(content={"db": "error"}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


@app.get("/health/redis")
def health_redis() -> JSONResponse:
    ok = check_redis_connection()
    if ok:
        return JSONResponse(content={"redis": "ok"}, status_code=status.HTTP_200_OK)
    return JSONResponse(content={"redis": "error"}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


def _to_assignment_response(assignment: Assignment, tests: list[AssignmentTest], *, include_programs: bool) -> AssignmentResponse:
    if include_programs:
        test_items: list[TestDetail | TestSummary] = [
            TestDetail(id=test.id, name=test.name, test_program=test.test_program) for test in tests
        ]
    else:
        test_items = [TestSummary(id=test.id, name=test.name) for test in tests]
    return AssignmentResponse(
        id=assignment.id,
        title=assignment.title,
        description=assignment.description,
        language=assignment.language,
        due_at=assignment.due_at,
        created_at=assignment.created_at,
        tests=test_items,
    )


async def _load_assignment_tests(session: AsyncSession, assignment_id: int) -> list[AssignmentTest]:
    rows = await session.execute(
        select(AssignmentTest)
        .where(AssignmentTest.assignment_id == assignment_id)
        .order_by(AssignmentTest.created_at.asc(), AssignmentTest.id.asc())
    )
    return list(rows.scalars().all())


@app.post("/assignments", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
async def create_assignment(
    payload: AssignmentCreate,
    author: Annotated[User, Depends(require_author)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> AssignmentResponse:
    assignment = Assignment(
        title=payload.title,
        description=payload.description,
        language=payload.language,
        due_at=payload.due_at,
        created_by=author.id,
    )
    session.add(assignment)
    await session.flush()
    # Tests are inserted one by one so ids follow the authored order.
    for test in payload.tests:
        session.add(AssignmentTest(assignment_id=assignment.id, name=test.name, test_program=test.test_program))
        await session.flush()
    await session.commit()
    await session.refresh(assignment)

    log_event(logger, "assignment.created", assignment_id=assignment.id, tests=len(payload.tests), author_id=author.id)
    tests = await _load_assignment_tests(session, assignment.id)
    return _to_assignment_response(assignment, tests, include_programs=True)


@app.get("/assignments", response_model=list[AssignmentListItem])
async def list_assignments(
    _: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> list[AssignmentListItem]:
    rows = await session.execute(
        select(Assignment, func.count(AssignmentTest.id))
        .outerjoin(AssignmentTest, AssignmentTest.assignment_id == Assignment.id)
        .group_by(Assignment.id)
        .order_by(Assignment.id.asc())
    )
    return [
        AssignmentListItem(
            id=assignment.id,
            title=assignment.title,
            language=assignment.language,
            test_count=int(test_count or 0),
            due_at=assignment.due_at,
            created_at=assignment.created_at,
        )
        for assignment, test_count in rows.all()
    ]


@app.get("/assignments/{assignment_id}", response_model=AssignmentResponse)
async def get_assignment(
    assignment_id: int,
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> AssignmentResponse:
    assignment = await session.scalar(select(Assignment).where(Assignment.id == assignment_id))
    if assignment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Assignment not found")
    tests = await _load_assignment_tests(session, assignment_id)
    return _to_assignment_response(assignment, tests, include_programs=user.role in STAFF_ROLES)


@app.post("/submissions", response_model=SubmissionGradeResponse)
async def create_submission(
    payload: SubmissionCreate,
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
    service: Annotated[GradingService, Depends(get_grading_service)],
) -> SubmissionGradeResponse:
    assignment = await session.scalar(select(Assignment.id).where(Assignment.id == payload.assignment_id))
    if assignment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Assignment not found")

    grading_count = await session.scalar(
        select(func.count(Submission.id)).where(Submission.status == SubmissionStatus.GRADING.value)
    )
    if int(grading_count or 0) >= SUBMISSION_QUEUE_MAX_DEPTH:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Grading is busy. Please try again shortly.",
        )
    # Release the connection before the pass; grading can run for a while.
    await session.close()

    try:
        outcome = await service.submit_and_grade(payload.assignment_id, user.id, payload.code, payload.language)
    except (GradingInProgressError, InvalidTransitionError) as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A grading pass for this assignment is already in progress",
        ) from exc
    except AssignmentNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Assignment not found") from exc
    except CollaboratorFault as exc:
        log_event(logger, "submission.unavailable", assignment_id=payload.assignment_id, user_id=user.id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Grading is temporarily unavailable",
        ) from exc

    return SubmissionGradeResponse(
        submission_id=outcome.submission_id,
        status=outcome.status,
        score=outcome.score,
        results=[
            TestResultResponse(
                test_id=result.test_id,
                name=result.name,
                passed=result.passed,
                message=result.message,
                duration_ms=result.duration_ms,
            )
            for result in outcome.results
        ],
        feedback=outcome.feedback,
    )


async def _to_submission_response(session: AsyncSession, submission: Submission) -> SubmissionResponse:
    rows = await session.execute(
        select(SubmissionResult, AssignmentTest.name)
        .join(AssignmentTest, AssignmentTest.id == SubmissionResult.test_id)
        .where(SubmissionResult.submission_id == submission.id)
        .order_by(SubmissionResult.position.asc())
    )
    results = [
        TestResultResponse(
            test_id=result.test_id,
            name=name,
            passed=result.passed,
            message=result.message,
            duration_ms=result.duration_ms,
        )
        for result, name in rows.all()
    ]
    return SubmissionResponse(
        id=submission.id,
        assignment_id=submission.assignment_id,
        user_id=submission.user_id,
        language=submission.language,
        status=submission.status,
        score=submission.score,
        feedback=submission.feedback,
        results=results,
        created_at=submission.created_at,
        updated_at=submission.updated_at,
    )


@app.get("/submissions/{submission_id}", response_model=SubmissionResponse)
async def get_submission(
    submission_id: int,
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> SubmissionResponse:
    submission = await session.scalar(select(Submission).where(Submission.id == submission_id))
    if submission is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Submission not found")
    if submission.user_id != user.id and user.role not in STAFF_ROLES:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Submission not found")
    return await _to_submission_response(session, submission)


@app.get("/me/submissions", response_model=list[SubmissionResponse])
async def get_my_submissions(
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> list[SubmissionResponse]:
    rows = await session.execute(
        select(Submission).where(Submission.user_id == user.id).order_by(Submission.id.desc()).limit(limit)
    )
    return [await _to_submission_response(session, submission) for submission in rows.scalars().all()]


@app.patch("/admin/submissions/{submission_id}/override", response_model=SubmissionResponse)
async def override_submission(
    submission_id: int,
    payload: OverrideRequest,
    staff_user: Annotated[User, Depends(require_staff)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> SubmissionResponse:
    submission = await session.scalar(select(Submission).where(Submission.id == submission_id))
    if submission is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Submission not found")
    if not is_terminal(submission.status):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Submission is still being graded")

    feedback = dict(payload.feedback or submission.feedback or {})
    feedback["override"] = {"by": staff_user.id, "previous_score": submission.score}
    submission.score = payload.score
    submission.feedback = feedback
    submission.status = SubmissionStatus.GRADED.value
    await session.commit()
    await session.refresh(submission)

    log_event(logger, "submission.overridden", submission_id=submission_id, actor_id=staff_user.id, score=payload.score)
    return await _to_submission_response(session, submission)


@app.post("/admin/submissions/{submission_id}/regrade", response_model=RegradeResponse)
async def admin_regrade_submission(
    submission_id: int,
    staff_user: Annotated[User, Depends(require_staff)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> RegradeResponse:
    submission = await session.scalar(select(Submission).where(Submission.id == submission_id))
    if submission is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Submission not found")
    if not is_terminal(submission.status):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Submission is still being graded")

    try:
        queue_depth = int(grading_queue.count)
    except Exception:
        queue_depth = 0
    if queue_depth >= SUBMISSION_QUEUE_MAX_DEPTH:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Grading queue is busy. Please try again shortly.",
        )

    enqueue_grading(submission.id)
    log_event(logger, "submission.regrade_enqueued", submission_id=submission.id, actor_id=staff_user.id)
    return RegradeResponse(status="queued", submission_id=submission.id, message="Regrade job enqueued")


@app.get("/admin/analytics", response_model=list[AssignmentStats])
async def admin_assignment_analytics(
    _: Annotated[User, Depends(require_staff)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> list[AssignmentStats]:
    graded = Submission.status == SubmissionStatus.GRADED.value
    rows = await session.execute(
        select(
            Assignment.id,
            Assignment.title,
            Assignment.due_at,
            func.count(Submission.id),
            func.sum(case((graded, 1), else_=0)),
            func.sum(case((Submission.status == SubmissionStatus.FAILED.value, 1), else_=0)),
            func.avg(case((graded, Submission.score))),
            func.sum(case((and_(graded, Submission.score >= 100), 1), else_=0)),
        )
        .outerjoin(Submission, Submission.assignment_id == Assignment.id)
        .group_by(Assignment.id, Assignment.title, Assignment.due_at)
        .order_by(Assignment.id.asc())
    )

    stats = []
    for row in rows.all():
        assignment_id, title, due_at, submission_count, graded_count, failed_count, average_score, full_marks = row
        graded_count = int(graded_count or 0)
        stats.append(
            AssignmentStats(
                assignment_id=assignment_id,
                title=title,
                due_at=due_at,
                submission_count=int(submission_count or 0),
                graded_count=graded_count,
                failed_count=int(failed_count or 0),
                average_score=round(float(average_score), 2) if average_score is not None else None,
                # Share of graded submissions that passed every test.
                pass_rate=round(int(full_marks or 0) / graded_count, 4) if graded_count else None,
            )
        )
    return stats


@app.post("/admin/watchdog/requeue-stale", response_model=WatchdogRequeueResponse)
async def admin_requeue_stale_submissions(
    _: Annotated[User, Depends(require_admin)],
    stale_seconds: Annotated[int, Query(ge=1, le=86400)] = GRADING_STUCK_TIMEOUT_SECONDS,
) -> WatchdogRequeueResponse:
    result = await requeue_stale_grading_submissions(stale_seconds=stale_seconds)
    submission_ids = [int(submission_id) for submission_id in result["requeued_submission_ids"]]
    for submission_id in submission_ids:
        enqueue_grading(submission_id)

    return WatchdogRequeueResponse(
        status="ok",
        stale_seconds=int(result["stale_seconds"]),
        scanned_grading=int(result["scanned_grading"]),
        requeued_count=len(submission_ids),
        requeued_submission_ids=submission_ids,
    )


@app.get("/notifications", response_model=list[NotificationResponse])
async def list_notifications(
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
) -> list[NotificationResponse]:
    rows = await session.execute(
        select(Notification)
        .where(Notification.user_id == user.id)
        .order_by(Notification.id.desc())
        .limit(limit)
    )
    return [
        NotificationResponse(
            id=notification.id,
            type=notification.type,
            payload=notification.payload,
            read_at=notification.read_at,
            created_at=notification.created_at,
        )
        for notification in rows.scalars().all()
    ]


