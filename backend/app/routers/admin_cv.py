from fastapi import APIRouter, Depends, Query, Request
from typing import Optional
from sqlalchemy.orm import Session
import logging
import math

from ..db.database import get_db
from ..core.errors import CVUploadException, ErrorCodes
from ..models.submission import EmailStatus, SubmissionStatus
from ..schemas.submission import AnalysisSubmit, SubmissionOut, SubmissionUpdate
from ..services.email_queue import EmailQueueService
from ..services.submission_service import (
    analytics_summary,
    get_submission,
    list_submissions as list_db_submissions,
    record_analysis,
    update_submission,
)

router = APIRouter()
log = logging.getLogger(__name__)


def get_queue_service() -> EmailQueueService:
    return EmailQueueService()


def _dump(submission) -> dict:
    return SubmissionOut.model_validate(submission).model_dump(by_alias=True, mode='json')


def _require(db: Session, submission_id: int):
    record = get_submission(db, submission_id)
    if not record:
        raise CVUploadException(ErrorCodes.NOT_FOUND, "CV submission not found", 404)
    return record


@router.get("/cv-submissions")
def list_submissions(
    db: Session = Depends(get_db),
    status: Optional[SubmissionStatus] = Query(None),
    email_status: Optional[EmailStatus] = Query(None, alias="emailStatus"),
    search: Optional[str] = Query(None, description="Matches first/last name, email or phone"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    records, total = list_db_submissions(
        db,
        status=status.value if status else None,
        email_status=email_status.value if email_status else None,
        q_search=search,
        limit=limit,
        offset=(page - 1) * limit,
    )
    return {
        "success": True,
        "submissions": [_dump(r) for r in records],
        "total": total,
        "page": page,
        "totalPages": math.ceil(total / limit) if total else 0,
    }


@router.get("/cv-submissions/analytics")
def submissions_analytics(db: Session = Depends(get_db), queue: EmailQueueService = Depends(get_queue_service)):
    summary = analytics_summary(db)
    summary["email"] = queue.get_queue_stats().model_dump(by_alias=True)
    return {"success": True, "analytics": summary}


# email-queue routes are declared before /cv-submissions/{submission_id} so the
# literal path segment is not parsed as an id

@router.get("/cv-submissions/email-queue/stats")
def email_queue_stats(queue: EmailQueueService = Depends(get_queue_service)):
    return {
        "success": True,
        "stats": queue.get_queue_stats().model_dump(by_alias=True),
        "metrics": queue.get_queue_metrics().model_dump(by_alias=True),
    }


@router.get("/cv-submissions/email-queue/failed")
def email_queue_failed(limit: int = Query(50, ge=1, le=500), queue: EmailQueueService = Depends(get_queue_service)):
    failed = queue.get_failed_emails(limit=limit)
    return {
        "success": True,
        "failedEmails": [f.model_dump(by_alias=True, mode='json') for f in failed],
        "total": len(failed),
    }


@router.post("/cv-submissions/email-queue/process")
def email_queue_process(queue: EmailQueueService = Depends(get_queue_service)):
    result = queue.process_queue()
    log.info("admin_queue_processed", extra={"category": "email_queue", "sent": result.sent, "failed": result.failed})
    return {
        "success": True,
        "message": f"Email queue processed: {result.sent} sent, {result.failed} failed",
        "result": {"sent": result.sent, "failed": result.failed},
    }


@router.get("/cv-submissions/{submission_id}")
def get_single_submission(submission_id: int, db: Session = Depends(get_db)):
    return {"success": True, "submission": _dump(_require(db, submission_id))}


@router.put("/cv-submissions/{submission_id}")
def update_single_submission(submission_id: int, payload: SubmissionUpdate, request: Request, db: Session = Depends(get_db)):
    record = _require(db, submission_id)
    reviewer = request.headers.get("X-Admin-User") or "admin"
    record = update_submission(db, record, payload, reviewer=reviewer)
    log.info("admin_submission_updated", extra={"submission_id": submission_id, "category": "admin"})
    return {"success": True, "message": "CV submission updated successfully", "submission": _dump(record)}


@router.post("/cv-submissions/{submission_id}/analysis")
def submit_analysis(
    submission_id: int,
    payload: AnalysisSubmit,
    db: Session = Depends(get_db),
    queue: EmailQueueService = Depends(get_queue_service),
):
    """Record the analyzer's result and schedule the results email."""
    record = _require(db, submission_id)
    results = payload.analysis_results.model_dump(by_alias=True, mode='json')
    score = payload.analysis_score if payload.analysis_score is not None else payload.analysis_results.overall_score
    record_analysis(db, record, results, score)
    queued = queue.queue_email(submission_id, delay_hours=payload.delay_hours)
    db.refresh(record)
    return {"success": True, "queued": queued, "submission": _dump(record)}


@router.post("/cv-submissions/{submission_id}/retry-email")
def retry_email(submission_id: int, queue: EmailQueueService = Depends(get_queue_service)):
    outcome = queue.retry_email(submission_id)
    if not outcome.found:
        raise CVUploadException(ErrorCodes.NOT_FOUND, "No failed email found for this submission", 404)
    log.info(
        "admin_email_retry",
        extra={"category": "email_queue", "submission_id": submission_id, "email_status": outcome.email_status},
    )
    if outcome.sent:
        message = "Email retry successful"
    else:
        message = f"Email retry failed: {outcome.error}" if outcome.error else "Email retry already in progress"
    return {"success": outcome.sent, "message": message, "emailStatus": outcome.email_status}
