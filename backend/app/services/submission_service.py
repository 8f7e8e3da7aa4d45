from sqlalchemy.orm import Session
from typing import List, Optional, Tuple
from sqlalchemy import func, or_
from ..models.submission import CVSubmission, EmailStatus, SubmissionStatus, SUBMISSION_STATUSES
from ..schemas.submission import SubmissionUpdate
from ..db.database import utcnow
from datetime import timedelta

SCORE_BUCKETS = [('excellent', 85, 101), ('good', 70, 85), ('fair', 50, 70), ('poor', 0, 50)]


def create_submission(
    db: Session,
    first_name: str,
    last_name: str,
    email: str,
    phone: Optional[str],
    cv_filename: str,
    cv_file_path: str,
    cv_file_size: int,
    cv_mime_type: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> CVSubmission:
    now = utcnow()
    submission = CVSubmission(
        first_name=first_name,
        last_name=last_name,
        email=email,
        phone=phone,
        cv_filename=cv_filename,
        cv_file_path=cv_file_path,
        cv_file_size=cv_file_size,
        cv_mime_type=cv_mime_type,
        email_status=EmailStatus.pending.value,
        status=SubmissionStatus.new.value,
        ip_address=ip_address,
        user_agent=(user_agent or '')[:500] or None,
        submitted_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(submission)
    db.commit()
    db.refresh(submission)
    return submission


def get_submission(db: Session, submission_id: int) -> Optional[CVSubmission]:
    return db.query(CVSubmission).filter(CVSubmission.id == submission_id).first()


def get_submission_by_uuid(db: Session, submission_uuid: str) -> Optional[CVSubmission]:
    return db.query(CVSubmission).filter(CVSubmission.uuid == submission_uuid).first()


def list_submissions(
    db: Session,
    status: Optional[str] = None,
    email_status: Optional[str] = None,
    q_search: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[CVSubmission], int]:
    """List submissions, newest first.

    q_search: case-insensitive containment on first/last name, email and phone.
    """
    q = db.query(CVSubmission)
    if status:
        q = q.filter(CVSubmission.status == status)
    if email_status:
        q = q.filter(CVSubmission.email_status == email_status)
    if q_search:
        like = f"%{q_search.strip().lower()}%"
        q = q.filter(or_(
            CVSubmission.first_name.ilike(like),
            CVSubmission.last_name.ilike(like),
            CVSubmission.email.ilike(like),
            CVSubmission.phone.ilike(like),
        ))
    total = q.count()
    items = q.order_by(CVSubmission.submitted_at.desc(), CVSubmission.id.desc()).offset(offset).limit(limit).all()
    return items, total


def update_submission(db: Session, submission: CVSubmission, payload: SubmissionUpdate, reviewer: Optional[str] = None) -> CVSubmission:
    """Apply only the fields present in the payload; email delivery columns are never touched."""
    now = utcnow()
    fields = payload.model_dump(exclude_unset=True)
    if 'status' in fields and fields['status'] is not None:
        new_status = SubmissionStatus(fields['status']).value
        if new_status != submission.status and new_status != SubmissionStatus.new.value:
            submission.reviewed_at = now
            submission.reviewed_by = reviewer
        submission.status = new_status
    if 'admin_notes' in fields:
        submission.admin_notes = fields['admin_notes']
    if 'converted_to_premium' in fields and fields['converted_to_premium'] is not None:
        converted = bool(fields['converted_to_premium'])
        if converted and not submission.converted_to_premium:
            submission.conversion_date = now
        elif not converted:
            submission.conversion_date = None
        submission.converted_to_premium = converted
    submission.updated_at = now
    db.commit()
    db.refresh(submission)
    return submission


def record_analysis(db: Session, submission: CVSubmission, results: dict, score: Optional[float]) -> CVSubmission:
    submission.analysis_results = results
    submission.analysis_score = score if score is not None else results.get('overallScore')
    submission.updated_at = utcnow()
    db.commit()
    db.refresh(submission)
    return submission


def analytics_summary(db: Session):
    base = db.query(CVSubmission)
    total = base.count()
    now = utcnow()
    last_24 = base.filter(CVSubmission.submitted_at >= now - timedelta(hours=24)).count()
    by_status = {s: base.filter(CVSubmission.status == s).count() for s in SUBMISSION_STATUSES}
    conversions = base.filter(CVSubmission.converted_to_premium.is_(True)).count()
    avg_score = db.query(func.avg(CVSubmission.analysis_score)).scalar()
    scored = base.filter(CVSubmission.analysis_score.isnot(None))
    distribution = {
        name: scored.filter(CVSubmission.analysis_score >= lo, CVSubmission.analysis_score < hi).count()
        for name, lo, hi in SCORE_BUCKETS
    }
    return {
        'total': total,
        'last24h': last_24,
        'status': by_status,
        'conversions': conversions,
        'conversionRate': round(conversions * 100.0 / total, 1) if total else 0.0,
        'averageScore': round(float(avg_score), 1) if avg_score is not None else None,
        'scoreDistribution': distribution,
    }
