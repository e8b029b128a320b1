from __future__ import annotations

from gradely.config import SANDBOX_PYTHON
from gradely.sandbox.process import RUNNER_PATH, ProcessSandbox


class LocalSandbox(ProcessSandbox):
    """Fresh host interpreter per run.

    Isolation comes from the runner's audit hook and rlimits, an empty working
    directory, a scrubbed environment and a dedicated process group. Use
    :class:`~gradely.sandbox.docker.DockerSandbox` where a kernel boundary is
    required; :func:`~gradely.sandbox.create_sandbox` refuses this backend
    when ``APP_ENV`` is production.
    """

    name = "local"

    def __init__(self, python: str = SANDBOX_PYTHON, **kwargs) -> None:
        super().__init__(**kwargs)
        self.python = python

    def _command(self, run_id: str) -> list[str]:
        return [self.python, "-S", "-s", "-B", str(RUNNER_PATH)]
