from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from gradely.config import MAX_PROGRAM_BYTES


class TestCreate(BaseModel):
    __test__ = False

    name: str = Field(min_length=1, max_length=255)
    test_program: str = Field(min_length=1, max_length=MAX_PROGRAM_BYTES)


class AssignmentCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    language: Literal["python"] = "python"
    due_at: datetime | None = None
    tests: list[TestCreate] = Field(default_factory=list)


class TestSummary(BaseModel):
    __test__ = False

    id: int
    name: str


class TestDetail(TestSummary):
    test_program: str


class AssignmentResponse(BaseModel):
    id: int
    title: str
    description: str | None = None
    language: str
    due_at: datetime | None = None
    created_at: datetime
    tests: list[TestDetail | TestSummary] = Field(default_factory=list)


class AssignmentListItem(BaseModel):
    id: int
    title: str
    language: str
    test_count: int
    due_at: datetime | None = None
    created_at: datetime


class AssignmentStats(BaseModel):
    assignment_id: int
    title: str
    due_at: datetime | None = None
    submission_count: int
    graded_count: int
    failed_count: int
    average_score: float | None = None
    pass_rate: float | None = None


class SubmissionCreate(BaseModel):
    assignment_id: int
    code: str = Field(max_length=MAX_PROGRAM_BYTES)
    language: Literal["python"] = "python"


class TestResultResponse(BaseModel):
    __test__ = False

    model_config = ConfigDict(populate_by_name=True)

    test_id: int
    name: str | None = None
    passed: bool = Field(alias="pass")
    message: str | None = None
    duration_ms: int = 0


class SubmissionGradeResponse(BaseModel):
    submission_id: int
    status: str
    score: float
    results: list[TestResultResponse]
    feedback: dict[str, Any]


class SubmissionResponse(BaseModel):
    id: int
    assignment_id: int
    user_id: int
    language: str
    status: str
    score: float | None = None
    feedback: dict[str, Any] | None = None
    results: list[TestResultResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class OverrideRequest(BaseModel):
    score: float = Field(ge=0, le=100)
    feedback: dict[str, Any] | None = None


class RegradeResponse(BaseModel):
    status: str
    submission_id: int
    message: str


class WatchdogRequeueResponse(BaseModel):
    status: str
    stale_seconds: int
    scanned_grading: int
    requeued_count: int
    requeued_submission_ids: list[int]


class NotificationResponse(BaseModel):
    id: int
    type: str
    payload: dict[str, Any]
    read_at: datetime | None = None
    created_at: datetime
