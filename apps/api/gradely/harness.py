"""Host side of the test harness protocol.

A test program defines ``run(user_code)`` and returns, directly or through an
awaitable, a verdict mapping ``{"pass": bool, "message": str | None}``.
``user_code`` is a read-only view of the names the submitted program exports
(``__all__`` when present, otherwise its public top-level names).

The in-sandbox half of the protocol lives in ``gradely/sandbox/runner.py``;
this module turns sandbox outcomes into verdicts and fault messages.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, ValidationError

from gradely.sandbox.base import Completed, ExecutionOutcome, Faulted, TimedOut

NO_ENTRY_POINT_MESSAGE = "No evaluation entry point defined"
ENTRY_POINT = "run"


class Verdict(BaseModel):
    model_config = ConfigDict(extra="forbid")

    passed: StrictBool = Field(alias="pass")
    message: StrictStr | None = None

    @classmethod
    def failing(cls, message: str) -> "Verdict":
        return cls.model_validate({"pass": False, "message": message})


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "verdict"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


def parse_verdict(value: object) -> Verdict:
    try:
        return Verdict.model_validate(value)
    except ValidationError as exc:
        return Verdict.failing(f"Invalid verdict: {_validation_summary(exc)}")


def describe_timeout(outcome: TimedOut) -> str:
    if outcome.phase == "load":
        return f"Submission timed out while loading (limit {outcome.timeout:g}s)"
    if outcome.phase == "test_load":
        return f"Test program timed out while loading (limit {outcome.timeout:g}s)"
    return f"Test timed out after {outcome.timeout:g}s"


def describe_fault(outcome: Faulted) -> str:
    if outcome.phase == "load":
        return f"Submission failed to load: {outcome.reason}"
    if outcome.phase == "test_load":
        return f"Test program failed to load: {outcome.reason}"
    return outcome.reason


def load_failure_message(outcome: ExecutionOutcome) -> str | None:
    """Message for a failed load probe, or ``None`` when the submission loaded."""
    if isinstance(outcome, Completed):
        return None
    if isinstance(outcome, TimedOut):
        return describe_timeout(outcome)
    if outcome.phase == "load":
        return describe_fault(outcome)
    return outcome.reason


def verdict_from_outcome(outcome: ExecutionOutcome) -> Verdict:
    if isinstance(outcome, Completed):
        return parse_verdict(outcome.value)
    if isinstance(outcome, TimedOut):
        return Verdict.failing(describe_timeout(outcome))
    return Verdict.failing(describe_fault(outcome))
