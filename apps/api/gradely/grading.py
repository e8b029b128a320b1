from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from gradely.config import GRADER_EVAL_TIMEOUT_SECONDS, GRADER_LOAD_TIMEOUT_SECONDS, SUPPORTED_LANGUAGES
from gradely.harness import ENTRY_POINT, load_failure_message, verdict_from_outcome
from gradely.observability import get_logger, log_event
from gradely.sandbox import sandbox as default_sandbox
from gradely.sandbox.base import EntryContract, EvaluationUnit, ExecutionOutcome, Faulted, SandboxBackend

NO_TESTS_NOTE = "No tests defined"

logger = get_logger("gradely.grading")


@dataclass(frozen=True)
class TestCase:
    __test__ = False

    id: int
    name: str
    test_program: str


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    test_id: int
    name: str
    passed: bool
    message: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "name": self.name,
            "pass": self.passed,
            "message": self.message,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class GradeReport:
    score: float
    results: list[TestResult] = field(default_factory=list)
    feedback: dict[str, Any] = field(default_factory=dict)

    @property
    def passed_count(self) -> int:
        return sum(1 for result in self.results if result.passed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "results": [result.to_dict() for result in self.results],
            "feedback": dict(self.feedback),
        }


def compute_score(passed: int, total: int) -> float:
    """Percentage of passing tests, rounded half-up to two decimals.

    Same as ``round(p / n * 10000) / 100`` with half-up rounding: 1/3 gives
    33.33 and 5/7 gives 71.43.
    """
    if total <= 0:
        return 0.0
    return math.floor(passed / total * 10000 + 0.5) / 100


def empty_report() -> GradeReport:
    return GradeReport(score=0.0, results=[], feedback={"note": NO_TESTS_NOTE})


def _summarize(results: list[TestResult], extra: dict[str, Any] | None = None) -> GradeReport:
    passed = sum(1 for result in results if result.passed)
    feedback: dict[str, Any] = {"summary": f"Passed {passed}/{len(results)}"}
    if extra:
        feedback.update(extra)
    return GradeReport(score=compute_score(passed, len(results)), results=results, feedback=feedback)


async def _execute(
    sandbox: SandboxBackend, unit: EvaluationUnit, contract: EntryContract, timeout: float
) -> ExecutionOutcome:
    try:
        return await asyncio.to_thread(sandbox.execute, unit, contract, timeout)
    except Exception as exc:
        # A broken backend fails this run only.
        logger.exception("sandbox backend raised")
        return Faulted(reason=f"sandbox error: {exc}", phase="runtime")


async def grade(
    tests: Sequence[TestCase],
    submitted_program: str,
    language: str,
    sandbox: SandboxBackend | None = None,
    *,
    load_timeout: float | None = None,
    eval_timeout: float | None = None,
    heartbeat: Callable[[], Awaitable[None]] | None = None,
) -> GradeReport:
    """Run every test against ``submitted_program`` and score the pass.

    Tests run one at a time, each in a fresh sandbox, in the order given. A
    failing, faulting or hung test only affects its own result.

    ``heartbeat`` is awaited after the load check and after every test, so
    callers can show the pass is still alive.
    """
    if not tests:
        return empty_report()

    if sandbox is None:
        sandbox = default_sandbox

    load_timeout = GRADER_LOAD_TIMEOUT_SECONDS if load_timeout is None else load_timeout
    eval_timeout = GRADER_EVAL_TIMEOUT_SECONDS if eval_timeout is None else eval_timeout
    log_event(logger, "grading.started", tests=len(tests), language=language, backend=sandbox.name)

    if language not in SUPPORTED_LANGUAGES:
        reason = f"Unsupported language: {language}"
        failed = [TestResult(test_id=test.id, name=test.name, passed=False, message=reason) for test in tests]
        log_event(logger, "grading.load_failed", reason=reason)
        return _summarize(failed, {"load_error": reason})

    probe = await _execute(
        sandbox,
        EvaluationUnit(submission=submitted_program),
        EntryContract.load(load_timeout),
        load_timeout,
    )
    if heartbeat is not None:
        await heartbeat()
    load_error = load_failure_message(probe)
    if load_error is not None:
        log_event(logger, "grading.load_failed", reason=load_error, duration_ms=probe.duration_ms)
        failed = [TestResult(test_id=test.id, name=test.name, passed=False, message=load_error) for test in tests]
        return _summarize(failed, {"load_error": load_error})

    contract = EntryContract.evaluate(ENTRY_POINT, load_timeout=load_timeout, eval_timeout=eval_timeout)
    results: list[TestResult] = []
    for test in tests:
        outcome = await _execute(
            sandbox,
            EvaluationUnit(submission=submitted_program, test_program=test.test_program),
            contract,
            contract.budget,
        )
        verdict = verdict_from_outcome(outcome)
        results.append(
            TestResult(
                test_id=test.id,
                name=test.name,
                passed=verdict.passed,
                message=verdict.message,
                duration_ms=outcome.duration_ms,
            )
        )
        log_event(
            logger,
            "grading.test_finished",
            test_id=test.id,
            outcome=type(outcome).__name__,
            passed=verdict.passed,
            duration_ms=outcome.duration_ms,
            log_bytes=len(outcome.logs.encode("utf-8")),
        )
        if heartbeat is not None:
            await heartbeat()

    report = _summarize(results)
    log_event(logger, "grading.finished", score=report.score, passed=report.passed_count, total=len(results))
    return report
