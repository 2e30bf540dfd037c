"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from an external cron (GH Actions, Cloud Scheduler, crontab + curl).
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventcrm.core.deps import get_db, verify_internal_secret
from eventcrm.db.enums import JobType
from eventcrm.services import job_service
from eventcrm.utils.datetime_utils import utcnow


router = APIRouter(
    prefix="/internal/scheduled",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)


class ScheduledJobResponse(BaseModel):
    status: str
    job_id: str | None = None


@router.post("/engagement-scores", response_model=ScheduledJobResponse)
def schedule_engagement_scores(db: Session = Depends(get_db)):
    """
    Enqueue a full engagement score recompute.

    At most one per day: the idempotency key carries the date.
    """
    key = f"engagement_scoring:{utcnow().date().isoformat()}"
    try:
        job = job_service.schedule_job(
            db, JobType.ENGAGEMENT_SCORING, {}, idempotency_key=key
        )
    except IntegrityError:
        db.rollback()
        return ScheduledJobResponse(status="already_scheduled")
    return ScheduledJobResponse(status="scheduled", job_id=str(job.id))
