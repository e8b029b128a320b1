from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

API_DIR = Path(__file__).resolve().parents[2]
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

from gradely.grading import TestCase, compute_score, empty_report, grade
from gradely.sandbox.base import Completed, EntryContract, EvaluationUnit, ExecutionOutcome, Faulted, TimedOut


class _ScriptedSandbox:
    """Returns canned outcomes keyed by test program text; the load probe always succeeds unless told otherwise."""

    name = "scripted"

    def __init__(self, outcomes: dict[str, ExecutionOutcome] | None = None, probe: ExecutionOutcome | None = None) -> None:
        self.outcomes = dict(outcomes or {})
        self.probe = probe or Completed(value={"exports": ["add"]})
        self.calls: list[tuple[EvaluationUnit, EntryContract, float]] = []

    def execute(self, unit: EvaluationUnit, contract: EntryContract, timeout: float) -> ExecutionOutcome:
        self.calls.append((unit, contract, timeout))
        if contract.mode == "load":
            return self.probe
        outcome = self.outcomes[unit.test_program]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _tests(*programs: str) -> list[TestCase]:
    return [TestCase(id=index + 1, name=f"t{index + 1}", test_program=program) for index, program in enumerate(programs)]


@pytest.mark.parametrize(
    ("passed", "total", "expected"),
    [
        (0, 0, 0.0),
        (0, 4, 0.0),
        (4, 4, 100.0),
        (1, 3, 33.33),
        (2, 3, 66.67),
        (5, 7, 71.43),
        (1, 8, 12.5),
    ],
)
def test_compute_score_rounds_half_up_to_two_decimals(passed: int, total: int, expected: float) -> None:
    assert compute_score(passed, total) == expected


def test_grade_without_tests_returns_note_and_skips_sandbox() -> None:
    sandbox = _ScriptedSandbox()

    report = asyncio.run(grade([], "def add(a, b):\n    return a + b\n", "python", sandbox))

    assert report == empty_report()
    assert report.score == 0
    assert report.results == []
    assert report.feedback == {"note": "No tests defined"}
    assert sandbox.calls == []


def test_grade_keeps_test_order_and_scores_passes() -> None:
    sandbox = _ScriptedSandbox(
        {
            "first": Completed(value={"pass": True, "message": None}, duration_ms=3),
            "second": Completed(value={"pass": False, "message": "add should return 3 for 1+2"}),
            "third": Completed(value={"pass": True}),
        }
    )

    report = asyncio.run(grade(_tests("first", "second", "third"), "code", "python", sandbox))

    assert [result.test_id for result in report.results] == [1, 2, 3]
    assert [result.passed for result in report.results] == [True, False, True]
    assert report.results[0].duration_ms == 3
    assert report.results[1].message == "add should return 3 for 1+2"
    assert report.score == 66.67
    assert report.feedback == {"summary": "Passed 2/3"}


def test_grade_runs_load_probe_once_then_each_test_with_full_budget() -> None:
    sandbox = _ScriptedSandbox({"a": Completed(value={"pass": True}), "b": Completed(value={"pass": True})})

    asyncio.run(grade(_tests("a", "b"), "code", "python", sandbox, load_timeout=1.5, eval_timeout=4.0))

    modes = [contract.mode for _, contract, _ in sandbox.calls]
    assert modes == ["load", "evaluate", "evaluate"]
    probe_unit, probe_contract, probe_timeout = sandbox.calls[0]
    assert probe_unit.test_program is None
    assert probe_timeout == 1.5
    assert probe_contract.load_timeout == 1.5
    _, contract, timeout = sandbox.calls[1]
    assert contract.symbol == "run"
    assert timeout == pytest.approx(5.5)


def test_grade_fails_fast_when_submission_does_not_load() -> None:
    sandbox = _ScriptedSandbox(probe=Faulted(reason="SyntaxError: invalid syntax (<submission>, line 1)", phase="load"))

    report = asyncio.run(grade(_tests("a", "b"), "def broken(:", "python", sandbox))

    assert len(sandbox.calls) == 1
    assert report.score == 0
    expected = "Submission failed to load: SyntaxError: invalid syntax (<submission>, line 1)"
    assert [result.message for result in report.results] == [expected, expected]
    assert report.feedback == {"summary": "Passed 0/2", "load_error": expected}


def test_grade_reports_load_timeout_for_every_test() -> None:
    sandbox = _ScriptedSandbox(probe=TimedOut(phase="load", timeout=2.0))

    report = asyncio.run(grade(_tests("a"), "while True: pass", "python", sandbox))

    assert report.results[0].passed is False
    assert report.results[0].message == "Submission timed out while loading (limit 2s)"


def test_grade_isolates_per_test_faults_and_timeouts() -> None:
    sandbox = _ScriptedSandbox(
        {
            "boom": Faulted(reason="ZeroDivisionError: division by zero", phase="evaluate"),
            "slow": TimedOut(phase="evaluate", timeout=5.0),
            "bad-test": Faulted(reason="NameError: name 'x' is not defined", phase="test_load"),
            "crash": RuntimeError("backend exploded"),
            "ok": Completed(value={"pass": True, "message": "fine"}),
        }
    )

    report = asyncio.run(grade(_tests("boom", "slow", "bad-test", "crash", "ok"), "code", "python", sandbox))

    messages = [result.message for result in report.results]
    assert messages == [
        "ZeroDivisionError: division by zero",
        "Test timed out after 5s",
        "Test program failed to load: NameError: name 'x' is not defined",
        "sandbox error: backend exploded",
        "fine",
    ]
    assert [result.passed for result in report.results] == [False, False, False, False, True]
    assert report.score == 20.0


def test_grade_rejects_invalid_verdict_shapes() -> None:
    sandbox = _ScriptedSandbox(
        {
            "truthy": Completed(value={"pass": 1}),
            "extra": Completed(value={"pass": True, "score": 10}),
            "none": Completed(value=None),
        }
    )

    report = asyncio.run(grade(_tests("truthy", "extra", "none"), "code", "python", sandbox))

    assert all(not result.passed for result in report.results)
    assert all(result.message.startswith("Invalid verdict: ") for result in report.results)


def test_grade_treats_unsupported_language_as_load_failure() -> None:
    sandbox = _ScriptedSandbox()

    report = asyncio.run(grade(_tests("a", "b"), "console.log(1)", "javascript", sandbox))

    assert sandbox.calls == []
    assert [result.message for result in report.results] == ["Unsupported language: javascript"] * 2
    assert report.feedback["load_error"] == "Unsupported language: javascript"
    assert report.score == 0


def test_report_to_dict_uses_pass_key() -> None:
    sandbox = _ScriptedSandbox({"a": Completed(value={"pass": True, "message": None})})

    report = asyncio.run(grade(_tests("a"), "code", "python", sandbox))

    assert report.to_dict() == {
        "score": 100.0,
        "results": [{"test_id": 1, "name": "t1", "pass": True, "message": None, "duration_ms": 0}],
        "feedback": {"summary": "Passed 1/1"},
    }
