import logging
from datetime import timedelta
from functools import lru_cache
from rq import get_current_job
from admissions.core.config import settings
from admissions.jobs.queue import queue
from admissions.services.container import Services, build_services

logger = logging.getLogger(__name__)


@lru_cache()
def worker_services() -> Services:
    """One set of storage handles per worker process."""
    return build_services(create_schema=False)


def grade_all_job(exam_id: int, regrade: bool = False, actor_id=None):
    job = get_current_job()
    job.meta.update({"state": "running", "exam_id": exam_id, "done": 0, "total": None}); job.save_meta()

    def progress(done, total):
        job.meta.update({"done": done, "total": total}); job.save_meta()

    try:
        report = worker_services().grading.grade_all(exam_id, regrade=regrade, actor_id=actor_id, on_progress=progress)
    except Exception:
        job.meta.update({"state": "failed"}); job.save_meta()
        raise
    logger.info("grade_all job %s finished for exam %s", job.id, exam_id)
    job.meta.update({"state": "done", "graded": len(report.graded), "failed": len(report.failed)}); job.save_meta()
    return report.to_dict()


def sweep_sessions_job(reschedule: bool = True):
    """Auto-submit sessions whose deadline passed, then queue the next sweep."""
    try:
        closed = worker_services().sessions.sweep_expired()
    finally:
        if reschedule:
            queue.enqueue_in(timedelta(seconds=settings.SESSION_SWEEP_INTERVAL_SECONDS), sweep_sessions_job)
    return {"closed": [list(pair) for pair in closed]}
