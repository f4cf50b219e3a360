import os
from uuid import UUID

from redis import Redis
from rq import Queue, Retry

from pipeline.tasks import refund_debit_job


def _redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379/0")


def _timeout_seconds() -> int:
    return int(os.getenv("RQ_JOB_TIMEOUT", "120"))


def _refund_retry() -> Retry:
    attempts = int(os.getenv("RQ_REFUND_RETRIES", "5"))
    return Retry(max=max(1, attempts), interval=[10, 30, 60, 300, 900])


def get_redis() -> Redis:
    return Redis.from_url(_redis_url())


def get_queue(name: str = "default") -> Queue:
    return Queue(name, connection=get_redis())


def enqueue_refund(transaction_id: UUID, reason: str) -> str:
    queue = get_queue("billing")
    job = queue.enqueue(
        refund_debit_job,
        str(transaction_id),
        reason,
        job_timeout=_timeout_seconds(),
        retry=_refund_retry(),
    )
    return job.id
