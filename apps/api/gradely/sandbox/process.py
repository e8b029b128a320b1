from __future__ import annotations

import json
import math
import os
import secrets
import signal
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, ValidationError

from gradely.config import GRADING_MAX_CONCURRENCY, MAX_LOG_BYTES, SANDBOX_MEMORY_MB, SANDBOX_STARTUP_GRACE_SECONDS
from gradely.observability import get_logger, log_event
from gradely.sandbox.base import Completed, EntryContract, EvaluationUnit, ExecutionOutcome, Faulted, TimedOut

RUNNER_PATH = Path(__file__).resolve().with_name("runner.py")
FRAME_MARKER = "@@gradely-outcome@@"
LOAD_PHASES = frozenset({"load", "test_load"})

logger = get_logger("gradely.sandbox")

# Caps how many untrusted programs run at once in this process.
_sandbox_slots = threading.BoundedSemaphore(max(GRADING_MAX_CONCURRENCY, 1))


class RunnerFrame(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["completed", "faulted", "timed_out"]
    phase: str
    value: Any = None
    reason: str | None = None
    logs: str = ""
    nonce: str = ""


def _truncate_output(text: str, limit: int = MAX_LOG_BYTES) -> str:
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= limit:
        return text
    clipped = encoded[:limit].decode("utf-8", errors="ignore")
    return f"{clipped}\n...<truncated>"


def parse_frame(stdout: str, nonce: str) -> RunnerFrame | None:
    """Return the last valid runner frame in ``stdout`` carrying ``nonce``, or ``None``."""
    for line in reversed(stdout.splitlines()):
        if not line.startswith(FRAME_MARKER):
            continue
        try:
            frame = RunnerFrame.model_validate_json(line[len(FRAME_MARKER):])
        except ValidationError:
            continue
        if frame.nonce == nonce:
            return frame
    return None


class ProcessSandbox:
    """Runs the harness runner in a fresh child process per execution.

    Subclasses decide how the child is started (plain interpreter or a
    container) and how a hung child is torn down.
    """

    name = "process"

    def __init__(
        self,
        *,
        memory_mb: int = SANDBOX_MEMORY_MB,
        startup_grace: float = SANDBOX_STARTUP_GRACE_SECONDS,
        max_log_bytes: int = MAX_LOG_BYTES,
    ) -> None:
        self.memory_mb = memory_mb
        self.startup_grace = startup_grace
        self.max_log_bytes = max_log_bytes

    def _command(self, run_id: str) -> list[str]:
        raise NotImplementedError

    def _environment(self) -> dict[str, str]:
        return {
            "PATH": os.defpath,
            "LANG": "C.UTF-8",
            "PYTHONHASHSEED": "0",
            "PYTHONDONTWRITEBYTECODE": "1",
            "PYTHONIOENCODING": "utf-8",
        }

    def _terminate(self, proc: subprocess.Popen, run_id: str) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return

    def _build_request(self, unit: EvaluationUnit, contract: EntryContract) -> dict[str, Any]:
        return {
            "mode": contract.mode,
            "submission": unit.submission,
            "test_program": unit.test_program,
            "entry": contract.symbol,
            "load_timeout": contract.load_timeout,
            "eval_timeout": contract.eval_timeout,
            "limits": {
                "memory_mb": self.memory_mb,
                "cpu_seconds": math.ceil(contract.budget) + 1,
            },
            "max_log_bytes": self.max_log_bytes,
            "seed": 0,
            "nonce": secrets.token_hex(16),
        }

    def execute(self, unit: EvaluationUnit, contract: EntryContract, timeout: float) -> ExecutionOutcome:
        request = self._build_request(unit, contract)
        with _sandbox_slots:
            return self._run(request, contract, timeout)

    def _run(self, request: dict[str, Any], contract: EntryContract, timeout: float) -> ExecutionOutcome:
        run_id = uuid4().hex[:12]
        deadline = timeout + self.startup_grace
        started_at = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started_at) * 1000)

        with tempfile.TemporaryDirectory(prefix=f"gradely-sandbox-{run_id}-") as tmp_dir:
            try:
                proc = subprocess.Popen(
                    self._command(run_id),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    cwd=tmp_dir,
                    env=self._environment(),
                    start_new_session=True,
                )
            except OSError as exc:
                return Faulted(reason=f"sandbox could not start: {exc}", phase="start", duration_ms=elapsed_ms())

            try:
                stdout, stderr = proc.communicate(json.dumps(request), timeout=deadline)
            except subprocess.TimeoutExpired:
                self._terminate(proc, run_id)
                stdout, stderr = proc.communicate()
                log_event(
                    logger,
                    "sandbox.timeout",
                    backend=self.name,
                    run_id=run_id,
                    mode=contract.mode,
                    deadline_seconds=deadline,
                )
                phase = "load" if contract.mode == "load" else "evaluate"
                return TimedOut(
                    phase=phase,
                    timeout=timeout,
                    logs=_truncate_output(stderr or "", self.max_log_bytes),
                    duration_ms=elapsed_ms(),
                )

        duration_ms = elapsed_ms()
        frame = parse_frame(stdout or "", request["nonce"])
        if frame is None:
            if proc.returncode == -signal.SIGXCPU:
                phase = "load" if contract.mode == "load" else "evaluate"
                return TimedOut(phase=phase, timeout=timeout, duration_ms=duration_ms)
            return Faulted(
                reason=f"sandbox exited with code {proc.returncode} without a result",
                phase="runtime",
                logs=_truncate_output(stderr or "", self.max_log_bytes),
                duration_ms=duration_ms,
            )

        if frame.status == "completed":
            return Completed(value=frame.value, logs=frame.logs, duration_ms=duration_ms)
        if frame.status == "timed_out":
            budget = contract.load_timeout if frame.phase in LOAD_PHASES else contract.eval_timeout
            return TimedOut(phase=frame.phase, timeout=budget, logs=frame.logs, duration_ms=duration_ms)
        return Faulted(
            reason=frame.reason or "unknown fault",
            phase=frame.phase,
            logs=frame.logs,
            duration_ms=duration_ms,
        )
