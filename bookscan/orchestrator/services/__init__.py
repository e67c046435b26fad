from .job_queue import JobQueue
from .job_store import InMemoryJobStore, JobStore, RedisJobStore, create_job_store
from .job_worker import JobContext, JobWorker

__all__ = [
    "JobQueue",
    "JobWorker",
    "JobContext",
    "JobStore",
    "InMemoryJobStore",
    "RedisJobStore",
    "create_job_store",
]
