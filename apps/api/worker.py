from __future__ import annotations

import os
import sys

from rq import SimpleWorker, Worker

from gradely.config import REDIS_URL, SANDBOX_BACKEND
from gradely.observability import get_logger, log_event
from gradely.queue import grading_queue, redis_conn

logger = get_logger("gradely.worker")


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    burst = "--burst" in args
    # Forking workers need os.fork; Windows hosts run jobs in-process.
    worker_cls = SimpleWorker if os.name == "nt" else Worker
    worker = worker_cls([grading_queue], connection=redis_conn)
    log_event(
        logger,
        "worker.listening",
        queue=grading_queue.name,
        redis=REDIS_URL,
        sandbox_backend=SANDBOX_BACKEND,
        burst=burst,
    )
    worker.work(burst=burst)


if __name__ == "__main__":
    main()
