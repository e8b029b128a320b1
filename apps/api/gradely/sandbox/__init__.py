from __future__ import annotations

from gradely.config import APP_ENV, SANDBOX_BACKEND
from gradely.sandbox.base import (
    Completed,
    EntryContract,
    EvaluationUnit,
    ExecutionOutcome,
    Faulted,
    SandboxBackend,
    TimedOut,
)
from gradely.sandbox.docker import DockerSandbox
from gradely.sandbox.local import LocalSandbox


def create_sandbox(backend: str = SANDBOX_BACKEND, app_env: str = APP_ENV) -> SandboxBackend:
    if backend == "local":
        # Submissions share the runner interpreter with the harness there.
        if app_env in {"production", "prod"}:
            raise RuntimeError("SANDBOX_BACKEND=local is not allowed in production; use docker")
        return LocalSandbox()
    return DockerSandbox()


sandbox: SandboxBackend = create_sandbox()

__all__ = [
    "Completed",
    "DockerSandbox",
    "EntryContract",
    "EvaluationUnit",
    "ExecutionOutcome",
    "Faulted",
    "LocalSandbox",
    "SandboxBackend",
    "TimedOut",
    "create_sandbox",
    "sandbox",
]
