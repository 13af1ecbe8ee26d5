from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import List, Optional
from rq.exceptions import NoSuchJobError
from rq.job import Job
from admissions.api.deps import get_services
from admissions.core.auth import require_roles, TokenData
from admissions.core.config import settings
from admissions.jobs.grading_job import grade_all_job
from admissions.jobs.queue import queue
from admissions.services.container import Services

router = APIRouter()

class GradeAllIn(BaseModel):
    regrade: bool = False

class FailureRow(BaseModel):
    enrollment_id: int; code: str; message: str

class GradingReportOut(BaseModel):
    exam_id: int; graded: List[int]; skipped: List[int]; failed: List[FailureRow]

class JobStatus(BaseModel):
    job_id: str; state: str; done: int = 0; total: Optional[int] = None; result: Optional[dict] = None

@router.post("/exams/{exam_id}/grade_all", response_model=GradingReportOut)
def grade_all(exam_id: int, payload: Optional[GradeAllIn] = None, user: TokenData = Depends(require_roles("admin")),
              services: Services = Depends(get_services)):
    regrade = payload.regrade if payload else False
    return services.grading.grade_all(exam_id, regrade=regrade, actor_id=user.sub).to_dict()

@router.post("/exams/{exam_id}/grade_all/start")
def start_grade_all(exam_id: int, payload: Optional[GradeAllIn] = None, user: TokenData = Depends(require_roles("admin")),
                    services: Services = Depends(get_services)):
    services.scheduler.get_exam(exam_id)
    regrade = payload.regrade if payload else False
    job = queue.enqueue(grade_all_job, exam_id, regrade, user.sub, job_timeout=settings.GRADING_JOB_TIMEOUT)
    return {"job_id": job.get_id(), "exam_id": exam_id}

@router.get("/jobs/{job_id}", response_model=JobStatus, dependencies=[Depends(require_roles("admin"))])
def job_status(job_id: str):
    try:
        job = Job.fetch(job_id, connection=queue.connection)
    except NoSuchJobError:
        raise HTTPException(404, "Job not found")
    meta = job.meta or {}
    state = meta.get("state") or job.get_status()
    return JobStatus(job_id=job_id, state=state, done=int(meta.get("done") or 0), total=meta.get("total"),
                     result=job.return_value() if state == "done" else None)

@router.post("/sessions/sweep", dependencies=[Depends(require_roles("admin"))])
def sweep_sessions(services: Services = Depends(get_services)):
    closed = services.sessions.sweep_expired()
    return {"closed": [{"enrollment_id": e, "exam_id": x} for e, x in closed]}

class DashboardOut(BaseModel):
    pending_enrollments: int; upcoming_exams: int; results_last_30_days: int; pending_documents: int

class MonthCount(BaseModel):
    month: str; total: int

@router.get("/dashboard/stats", response_model=DashboardOut, dependencies=[Depends(require_roles("admin", "staff"))])
def dashboard_stats(services: Services = Depends(get_services)):
    return services.reports.dashboard_stats().to_dict()

@router.get("/stats/enrollments-by-month", response_model=List[MonthCount],
            dependencies=[Depends(require_roles("admin", "staff"))])
def enrollments_by_month(year: Optional[int] = None, services: Services = Depends(get_services)):
    return services.reports.enrollments_by_month(year)
