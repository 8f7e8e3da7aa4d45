from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from ..models.submission import SubmissionStatus


class CamelModel(BaseModel):
    """Admin UI speaks camelCase; Python code uses snake_case attributes."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- analysis payload (opaque to the queue, rendered by the email service) ---

class Improvement(CamelModel):
    category: str = 'general'
    priority: Literal['high', 'medium', 'low'] = 'medium'
    issue: str = ''
    suggestion: str = ''
    example: Optional[str] = None


class SectionCompleteness(CamelModel):
    contact_info: bool = False
    summary: bool = False
    experience: bool = False
    education: bool = False
    skills: bool = False


class AnalysisResult(CamelModel):
    overall_score: float = Field(0, ge=0, le=100)
    strengths: List[str] = []
    improvements: List[Improvement] = []
    ats_compatibility: Optional[float] = Field(None, ge=0, le=100)
    section_completeness: SectionCompleteness = SectionCompleteness()
    detailed_feedback: Optional[str] = None
    analyzed_at: Optional[datetime] = None


class UserData(CamelModel):
    first_name: str
    last_name: str
    email: EmailStr
    phone: Optional[str] = None


# --- queue ------------------------------------------------------------------

class QueueStats(CamelModel):
    pending: int = 0
    queued: int = 0
    sent: int = 0
    failed: int = 0
    retrying: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.queued + self.sent + self.failed + self.retrying


class QueueMetrics(CamelModel):
    sent_last_24_hours: int = Field(0, alias='sentLast24Hours')
    total_failed: int = 0
    currently_retrying: int = 0
    due_now: int = 0
    avg_attempts_for_success: float = 0.0


class ProcessResult(CamelModel):
    sent: int = 0
    failed: int = 0
    # rows another worker claimed first, and due rows left for the next run
    skipped: int = 0
    deferred: int = 0


class RetryResult(CamelModel):
    found: bool
    sent: bool = False
    email_status: Optional[str] = None
    error: Optional[str] = None


class FailedEmail(CamelModel):
    id: int
    uuid: str
    email: str
    first_name: str
    last_name: str
    email_attempts: int
    email_error: Optional[str] = None
    email_last_attempt_at: Optional[datetime] = None
    email_scheduled_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    analysis_score: Optional[float] = None


# --- admin ------------------------------------------------------------------

class SubmissionOut(CamelModel):
    id: int
    uuid: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    cv_filename: Optional[str] = None
    cv_file_size: Optional[int] = None
    cv_mime_type: Optional[str] = None
    status: str
    analysis_score: Optional[float] = None
    analysis_results: Optional[dict] = None
    email_status: str
    email_scheduled_at: Optional[datetime] = None
    email_attempts: int = 0
    email_last_attempt_at: Optional[datetime] = None
    email_sent_at: Optional[datetime] = None
    email_opened_at: Optional[datetime] = None
    email_error: Optional[str] = None
    converted_to_premium: bool = False
    conversion_date: Optional[datetime] = None
    admin_notes: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    submitted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SubmissionUpdate(CamelModel):
    status: Optional[SubmissionStatus] = None
    admin_notes: Optional[str] = Field(None, max_length=5000)
    converted_to_premium: Optional[bool] = None


class AnalysisSubmit(CamelModel):
    analysis_results: AnalysisResult
    analysis_score: Optional[float] = Field(None, ge=0, le=100)
    delay_hours: Optional[float] = Field(None, ge=0)
