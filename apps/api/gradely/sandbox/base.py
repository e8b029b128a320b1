from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Protocol

from gradely.config import GRADER_EVAL_TIMEOUT_SECONDS, GRADER_LOAD_TIMEOUT_SECONDS

EntryMode = Literal["load", "evaluate"]


@dataclass(frozen=True)
class EvaluationUnit:
    """Program text handed to one sandbox run.

    ``test_program`` is ``None`` for the load probe, which only loads the
    submission and reports its exported surface.
    """

    submission: str
    test_program: str | None = None


@dataclass(frozen=True)
class EntryContract:
    mode: EntryMode
    symbol: str = "run"
    load_timeout: float = GRADER_LOAD_TIMEOUT_SECONDS
    eval_timeout: float = GRADER_EVAL_TIMEOUT_SECONDS

    @classmethod
    def load(cls, load_timeout: float = GRADER_LOAD_TIMEOUT_SECONDS) -> "EntryContract":
        return cls(mode="load", load_timeout=load_timeout, eval_timeout=0.0)

    @classmethod
    def evaluate(
        cls,
        symbol: str = "run",
        load_timeout: float = GRADER_LOAD_TIMEOUT_SECONDS,
        eval_timeout: float = GRADER_EVAL_TIMEOUT_SECONDS,
    ) -> "EntryContract":
        return cls(mode="evaluate", symbol=symbol, load_timeout=load_timeout, eval_timeout=eval_timeout)

    @property
    def budget(self) -> float:
        if self.mode == "load":
            return self.load_timeout
        return self.load_timeout + self.eval_timeout


@dataclass(frozen=True)
class Completed:
    value: Any
    logs: str = ""
    duration_ms: int = 0


@dataclass(frozen=True)
class Faulted:
    reason: str
    phase: str = "evaluate"
    logs: str = ""
    duration_ms: int = 0


@dataclass(frozen=True)
class TimedOut:
    phase: str = "evaluate"
    timeout: float = 0.0
    logs: str = ""
    duration_ms: int = 0


ExecutionOutcome = Completed | Faulted | TimedOut


class SandboxBackend(Protocol):
    name: str

    def execute(self, unit: EvaluationUnit, contract: EntryContract, timeout: float) -> ExecutionOutcome:
        ...
