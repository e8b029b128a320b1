from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

from gradely.config import GRADER_IMAGE
from gradely.observability import get_logger, log_event
from gradely.sandbox.process import RUNNER_PATH, ProcessSandbox

logger = get_logger("gradely.sandbox")

CONTAINER_RUNNER_PATH = "/sandbox/runner.py"


def find_docker_binary() -> str | None:
    docker_bin = os.getenv("DOCKER_BIN")
    if not docker_bin:
        docker_bin = shutil.which("docker")
    if not docker_bin:
        for candidate in ("/usr/bin/docker", "/usr/local/bin/docker"):
            if Path(candidate).exists():
                docker_bin = candidate
                break
    return docker_bin


class DockerSandbox(ProcessSandbox):
    name = "docker"

    def __init__(self, image: str = GRADER_IMAGE, docker_bin: str | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.image = image
        self.docker_bin = docker_bin

    def _docker(self) -> str:
        docker_bin = self.docker_bin or find_docker_binary()
        if not docker_bin:
            raise FileNotFoundError("docker binary not found")
        return docker_bin

    def _container_name(self, run_id: str) -> str:
        return f"gradely-sandbox-{run_id}"

    def _environment(self) -> dict[str, str]:
        env = super()._environment()
        for key in ("DOCKER_HOST", "DOCKER_CONFIG", "DOCKER_CONTEXT", "HOME"):
            value = os.getenv(key)
            if value:
                env[key] = value
        return env

    def _command(self, run_id: str) -> list[str]:
        memory = f"{self.memory_mb}m"
        return [
            self._docker(),
            "run",
            "--rm",
            "-i",
            "--name",
            self._container_name(run_id),
            "--network",
            "none",
            "--read-only",
            "--security-opt",
            "no-new-privileges=true",
            "--cap-drop",
            "ALL",
            "--pids-limit",
            "64",
            "--cpus",
            "1.0",
            "--memory",
            memory,
            "--memory-swap",
            memory,
            "--tmpfs",
            "/tmp:rw,noexec,nosuid,size=16m",
            "--workdir",
            "/tmp",
            "-e",
            "PYTHONDONTWRITEBYTECODE=1",
            "-e",
            "PYTHONHASHSEED=0",
            "-v",
            f"{RUNNER_PATH}:{CONTAINER_RUNNER_PATH}:ro",
            self.image,
            "python",
            "-S",
            "-s",
            "-B",
            CONTAINER_RUNNER_PATH,
        ]

    def _terminate(self, proc: subprocess.Popen, run_id: str) -> None:
        super()._terminate(proc, run_id)
        name = self._container_name(run_id)
        try:
            subprocess.run(
                [self._docker(), "kill", name],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            log_event(logger, "sandbox.kill_failed", container=name, error=str(exc))
