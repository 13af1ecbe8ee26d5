import logging
from rq import Worker
from admissions.core.config import settings
from admissions.jobs.grading_job import sweep_sessions_job
from admissions.jobs.queue import queue, redis

if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    queue.enqueue(sweep_sessions_job)
    w = Worker([settings.RQ_QUEUE], connection=redis)
    w.work(with_scheduler=True)
