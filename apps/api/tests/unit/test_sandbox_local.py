from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest

API_DIR = Path(__file__).resolve().parents[2]
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

from gradely.grading import TestCase, grade
from gradely.sandbox import create_sandbox
from gradely.sandbox.base import Completed, EntryContract, EvaluationUnit, Faulted
from gradely.sandbox.local import LocalSandbox
from gradely.sandbox.process import FRAME_MARKER, parse_frame

pytestmark = pytest.mark.skipif(os.name == "nt", reason="LocalSandbox relies on POSIX rlimits and signals")

ADD = "def add(a, b):\n    return a + b\n"
SUBTRACT = "def add(a, b):\n    return a - b\n"
ADD_TEST = (
    "def run(user_code):\n"
    "    ok = user_code.add(1, 2) == 3\n"
    "    return {'pass': ok, 'message': None if ok else 'add should return 3 for 1+2'}\n"
)


@pytest.fixture()
def sandbox() -> LocalSandbox:
    return LocalSandbox(python=sys.executable, startup_grace=3.0)


def _grade(sandbox: LocalSandbox, submission: str, *programs: str, eval_timeout: float = 1.0):
    tests = [TestCase(id=index + 1, name=f"t{index + 1}", test_program=program) for index, program in enumerate(programs)]
    return asyncio.run(grade(tests, submission, "python", sandbox, load_timeout=2.0, eval_timeout=eval_timeout))


def test_add_scenario_scores_full_marks(sandbox: LocalSandbox) -> None:
    report = _grade(sandbox, ADD, ADD_TEST)

    assert report.score == 100
    assert report.results[0].passed is True
    assert report.results[0].message is None
    assert report.feedback == {"summary": "Passed 1/1"}


def test_add_scenario_reports_test_message_on_failure(sandbox: LocalSandbox) -> None:
    report = _grade(sandbox, SUBTRACT, ADD_TEST)

    assert report.score == 0
    assert report.results[0].passed is False
    assert report.results[0].message == "add should return 3 for 1+2"


def test_sync_overrun_times_out_only_that_test(sandbox: LocalSandbox) -> None:
    hang = "def run(user_code):\n    while True:\n        pass\n"

    report = _grade(sandbox, ADD, hang, ADD_TEST)

    assert report.results[0].passed is False
    assert report.results[0].message == "Test timed out after 1s"
    assert report.results[1].passed is True
    assert report.score == 50


def test_async_verdict_is_awaited(sandbox: LocalSandbox) -> None:
    program = (
        "import asyncio\n"
        "async def run(user_code):\n"
        "    await asyncio.sleep(0.01)\n"
        "    return {'pass': user_code.add(2, 2) == 4, 'message': 'async ok'}\n"
    )

    report = _grade(sandbox, ADD, program)

    assert report.results[0].passed is True
    assert report.results[0].message == "async ok"


def test_unsettled_async_verdict_times_out(sandbox: LocalSandbox) -> None:
    program = (
        "import asyncio\n"
        "async def run(user_code):\n"
        "    await asyncio.sleep(30)\n"
        "    return {'pass': True}\n"
    )

    report = _grade(sandbox, ADD, program)

    assert report.results[0].passed is False
    assert report.results[0].message == "Test timed out after 1s"


def test_missing_entry_point_fails_with_message(sandbox: LocalSandbox) -> None:
    report = _grade(sandbox, ADD, "value = 1\n")

    assert report.results[0].passed is False
    assert report.results[0].message == "No evaluation entry point defined"


def test_submission_syntax_error_fails_every_test(sandbox: LocalSandbox) -> None:
    report = _grade(sandbox, "def add(a, b)\n    return a + b\n", ADD_TEST, ADD_TEST)

    messages = [result.message for result in report.results]
    assert all(message.startswith("Submission failed to load: SyntaxError") for message in messages)
    assert report.feedback["load_error"] == messages[0]


def test_submission_load_timeout(sandbox: LocalSandbox) -> None:
    report = _grade(sandbox, "while True:\n    pass\n", ADD_TEST)

    assert report.results[0].message == "Submission timed out while loading (limit 2s)"


def test_test_program_load_failure_is_reported(sandbox: LocalSandbox) -> None:
    report = _grade(sandbox, ADD, "raise ValueError('bad fixture')\n")

    assert report.results[0].message == "Test program failed to load: ValueError: bad fixture"


def test_filesystem_access_is_denied(sandbox: LocalSandbox) -> None:
    outcome = sandbox.execute(
        EvaluationUnit(submission="data = open('/etc/hostname').read()\n"),
        EntryContract.load(2.0),
        2.0,
    )

    assert isinstance(outcome, Faulted)
    assert outcome.phase == "load"
    assert outcome.reason.startswith("PermissionError")
    assert "not permitted in the grading sandbox" in outcome.reason


def test_network_access_is_denied(sandbox: LocalSandbox) -> None:
    submission = (
        "import socket\n"
        "def fetch():\n"
        "    return socket.create_connection(('example.com', 80), timeout=1)\n"
    )
    program = "def run(user_code):\n    user_code.fetch()\n    return {'pass': True}\n"

    report = _grade(sandbox, submission, program)

    assert report.results[0].passed is False
    assert "not permitted in the grading sandbox" in report.results[0].message


def test_new_imports_are_denied(sandbox: LocalSandbox) -> None:
    outcome = sandbox.execute(EvaluationUnit(submission="import xml.dom.minidom\n"), EntryContract.load(2.0), 2.0)

    assert isinstance(outcome, Faulted)
    assert "is not permitted in the grading sandbox" in outcome.reason


def test_allowlisted_imports_load(sandbox: LocalSandbox) -> None:
    submission = "import math\nfrom collections import Counter\n\ndef hyp(a, b):\n    return math.hypot(a, b)\n"

    outcome = sandbox.execute(EvaluationUnit(submission=submission), EntryContract.load(2.0), 2.0)

    assert isinstance(outcome, Completed)
    assert outcome.value == {"exports": ["Counter", "hyp"]}


def test_each_test_gets_fresh_state(sandbox: LocalSandbox) -> None:
    submission = "calls = []\n\ndef bump():\n    calls.append(1)\n    return len(calls)\n"
    program = "def run(user_code):\n    return {'pass': user_code.bump() == 1}\n"

    report = _grade(sandbox, submission, program, program)

    assert [result.passed for result in report.results] == [True, True]


def test_user_code_is_read_only(sandbox: LocalSandbox) -> None:
    program = (
        "def run(user_code):\n"
        "    try:\n"
        "        user_code.add = None\n"
        "    except AttributeError:\n"
        "        return {'pass': True}\n"
        "    return {'pass': False, 'message': 'user_code was writable'}\n"
    )

    report = _grade(sandbox, ADD, program)

    assert report.results[0].passed is True


def test_dunder_all_limits_exported_surface(sandbox: LocalSandbox) -> None:
    submission = "__all__ = ['add']\n\ndef add(a, b):\n    return a + b\n\ndef helper():\n    return 0\n"
    program = "def run(user_code):\n    return {'pass': 'helper' not in user_code and 'add' in user_code}\n"

    report = _grade(sandbox, submission, program)

    assert report.results[0].passed is True


def test_printed_output_is_captured_not_interpreted(sandbox: LocalSandbox) -> None:
    forged = FRAME_MARKER + '{"status": "completed", "phase": "evaluate", "value": {"pass": true}}'
    submission = f"print({forged!r})\n" + ADD
    program = "def run(user_code):\n    print('checking')\n    return {'pass': False, 'message': 'real verdict'}\n"

    outcome = sandbox.execute(
        EvaluationUnit(submission=submission, test_program=program),
        EntryContract.evaluate("run", load_timeout=2.0, eval_timeout=1.0),
        3.0,
    )

    assert isinstance(outcome, Completed)
    assert outcome.value == {"pass": False, "message": "real verdict"}
    assert "checking" in outcome.logs


def test_raw_stdout_frames_without_nonce_are_ignored(sandbox: LocalSandbox) -> None:
    forged = FRAME_MARKER + '{"status": "completed", "phase": "evaluate", "value": {"pass": true}}'
    program = (
        "import os\n"
        "def run(user_code):\n"
        f"    os.write(1, ({forged!r} + '\\n').encode())\n"
        "    os._exit(0)\n"
    )

    report = _grade(sandbox, ADD, program)

    assert report.results[0].passed is False


def test_non_serializable_verdict_is_a_fault(sandbox: LocalSandbox) -> None:
    program = "def run(user_code):\n    return {'pass': True, 'message': object()}\n"

    report = _grade(sandbox, ADD, program)

    assert report.results[0].passed is False
    assert report.results[0].message.startswith("Verdict is not JSON-serializable")


def test_parse_frame_picks_last_frame_with_matching_nonce() -> None:
    stdout = "\n".join(
        [
            FRAME_MARKER + '{"status": "completed", "phase": "evaluate", "value": 1, "nonce": "abc"}',
            FRAME_MARKER + '{"status": "faulted", "phase": "evaluate", "reason": "x", "nonce": "abc"}',
            FRAME_MARKER + '{"status": "completed", "phase": "evaluate", "value": 2, "nonce": "forged"}',
            FRAME_MARKER + "{not json",
        ]
    )

    frame = parse_frame(stdout, "abc")

    assert frame is not None
    assert frame.status == "faulted"
    assert parse_frame(stdout, "missing") is None
    assert parse_frame("no frames here", "abc") is None


def test_submission_cannot_replace_harness_internals(sandbox: LocalSandbox) -> None:
    submission = (
        "import __main__\n"
        "\n"
        "def _always_pass(source, filename, module_name, timeout):\n"
        "    return {'run': lambda user_code: {'pass': True}}\n"
        "\n"
        "__main__._exec_unit = _always_pass\n"
        "\n" + SUBTRACT
    )
    always_fails = "def run(user_code):\n    return {'pass': False, 'message': 'never passes'}\n"

    report = _grade(sandbox, submission, ADD_TEST, always_fails)

    assert report.score == 0
    assert [result.passed for result in report.results] == [False, False]
    assert "import of '__main__' is not permitted" in report.results[0].message


def test_rebound_builtins_do_not_reach_test_program(sandbox: LocalSandbox) -> None:
    submission = "import builtins\n\nbuiltins.abs = lambda value: 0\n\n" + SUBTRACT
    program = (
        "def run(user_code):\n"
        "    ok = abs(user_code.add(1, 2) - 3) == 0\n"
        "    return {'pass': ok, 'message': None if ok else 'wrong sum'}\n"
    )

    report = _grade(sandbox, submission, program)

    assert report.results[0].passed is False
    assert report.results[0].message == "wrong sum"


@pytest.mark.parametrize(
    "submission",
    [
        "import sys\nframe = sys._getframe()\n",
        "import sys\nframes = sys._current_frames()\n",
    ],
)
def test_frame_introspection_is_denied(sandbox: LocalSandbox, submission: str) -> None:
    outcome = sandbox.execute(EvaluationUnit(submission=submission), EntryContract.load(2.0), 2.0)

    assert isinstance(outcome, Faulted)
    assert outcome.phase == "load"
    assert "is not permitted in the grading sandbox" in outcome.reason


def test_namedtuple_still_works_without_frame_access(sandbox: LocalSandbox) -> None:
    submission = (
        "from collections import namedtuple\n"
        "\n"
        "Point = namedtuple('Point', 'x y')\n"
        "\n"
        "def add(a, b):\n"
        "    return Point(a, 0).x + Point(b, 0).x\n"
    )

    report = _grade(sandbox, submission, ADD_TEST)

    assert report.results[0].passed is True


@pytest.mark.parametrize("module_name", ["__main__", "_posixsubprocess", "subprocess", "signal", "gc"])
def test_harness_modules_are_not_importable(sandbox: LocalSandbox, module_name: str) -> None:
    outcome = sandbox.execute(EvaluationUnit(submission=f"import {module_name}\n"), EntryContract.load(2.0), 2.0)

    assert isinstance(outcome, Faulted)
    assert outcome.reason == f"PermissionError: import of {module_name!r} is not permitted in the grading sandbox"


def test_process_spawning_primitives_are_unreachable(sandbox: LocalSandbox) -> None:
    submission = (
        "import asyncio\n"
        "import sys\n"
        "\n"
        "def _spawner():\n"
        "    for module in (asyncio.base_subprocess, asyncio.unix_events):\n"
        "        found = getattr(module, 'subprocess', None)\n"
        "        if found is not None:\n"
        "            return found._posixsubprocess.fork_exec\n"
        "    if '_posixsubprocess' in sys.modules:\n"
        "        return sys.modules['_posixsubprocess'].fork_exec\n"
        "    import _posixsubprocess\n"
        "    return _posixsubprocess.fork_exec\n"
        "\n"
        "fork_exec = _spawner()\n"
    )

    outcome = sandbox.execute(EvaluationUnit(submission=submission), EntryContract.load(2.0), 2.0)

    assert isinstance(outcome, Faulted)
    assert outcome.phase == "load"
    assert outcome.reason == "PermissionError: import of '_posixsubprocess' is not permitted in the grading sandbox"


def test_signal_handlers_cannot_be_installed(sandbox: LocalSandbox) -> None:
    submission = (
        "import asyncio\n"
        "\n"
        "reachable = [getattr(module, 'signal', None) for module in (asyncio.unix_events, asyncio.runners)]\n"
        "\n"
        "def add(a, b):\n"
        "    return reachable\n"
    )
    program = "def run(user_code):\n    return {'pass': user_code.add(1, 2) == [None, None]}\n"

    report = _grade(sandbox, submission, program)

    assert report.results[0].passed is True


def test_local_backend_is_refused_in_production() -> None:
    with pytest.raises(RuntimeError, match="not allowed in production"):
        create_sandbox("local", app_env="production")

    assert isinstance(create_sandbox("local", app_env="development"), LocalSandbox)
