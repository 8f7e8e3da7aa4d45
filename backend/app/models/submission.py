import enum
import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Float, Index, Integer, JSON, String, Text

from ..db.database import Base, utcnow


class EmailStatus(str, enum.Enum):
    pending = "pending"
    queued = "queued"
    sent = "sent"
    retrying = "retrying"
    failed = "failed"


class SubmissionStatus(str, enum.Enum):
    new = "new"
    reviewed = "reviewed"
    contacted = "contacted"
    hired = "hired"
    rejected = "rejected"


EMAIL_STATUSES = [s.value for s in EmailStatus]
SUBMISSION_STATUSES = [s.value for s in SubmissionStatus]
DUE_STATUSES = [EmailStatus.queued.value, EmailStatus.retrying.value]


def _in(column: str, values: list[str]) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


class CVSubmission(Base):
    __tablename__ = 'cv_submissions'
    __table_args__ = (
        CheckConstraint(_in('email_status', EMAIL_STATUSES), name='ck_cv_submissions_email_status'),
        CheckConstraint(_in('status', SUBMISSION_STATUSES), name='ck_cv_submissions_status'),
        CheckConstraint('email_attempts >= 0', name='ck_cv_submissions_email_attempts'),
        Index('idx_email_due', 'email_status', 'email_scheduled_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    uuid = Column(String(36), unique=True, index=True, nullable=False, default=lambda: str(uuid.uuid4()))

    # candidate
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), index=True, nullable=False)
    phone = Column(String(50), nullable=True)

    # stored file (owned by the upload handler)
    cv_filename = Column(String(255), nullable=True)
    cv_file_path = Column(String(500), nullable=True)
    cv_file_size = Column(Integer, nullable=True)
    cv_mime_type = Column(String(100), nullable=True)

    # analysis (produced by the external analyzer, carried into the email)
    analysis_score = Column(Float, nullable=True)
    analysis_results = Column(JSON, nullable=True)

    # email delivery, written only by the queue service
    email_status = Column(String(16), nullable=False, default=EmailStatus.pending.value, index=True)
    email_scheduled_at = Column(DateTime, nullable=True, index=True)
    email_attempts = Column(Integer, nullable=False, default=0)
    email_last_attempt_at = Column(DateTime, nullable=True)
    email_sent_at = Column(DateTime, nullable=True)
    email_opened_at = Column(DateTime, nullable=True)
    email_error = Column(Text, nullable=True)

    # admin review workflow
    status = Column(String(16), nullable=False, default=SubmissionStatus.new.value, index=True)
    admin_notes = Column(Text, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String(100), nullable=True)
    converted_to_premium = Column(Boolean, nullable=False, default=False)
    conversion_date = Column(DateTime, nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    submitted_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<CVSubmission {self.id} {self.email} email_status={self.email_status}>"
