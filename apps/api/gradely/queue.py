from __future__ import annotations

from redis import Redis
from rq import Queue

from gradely.config import REDIS_URL

redis_conn = Redis.from_url(REDIS_URL)
grading_queue = Queue("grading", connection=redis_conn)

GRADE_SUBMISSION_JOB = "gradely.worker_tasks.grade_submission_job"


def check_redis_connection() -> bool:
    try:
        return bool(redis_conn.ping())
    except Exception:
        return False


def enqueue_grading(submission_id: int) -> None:
    grading_queue.enqueue(GRADE_SUBMISSION_JOB, submission_id)
