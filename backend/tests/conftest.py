import os
import tempfile
from datetime import datetime, timedelta

# point the app at a throwaway database before anything imports it
_TMP = tempfile.mkdtemp(prefix="cv-intake-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["UPLOAD_DIR"] = os.path.join(_TMP, "uploads")
os.environ["EMAIL_QUEUE_SCHEDULER"] = "0"
os.environ["UPLOAD_RATE_LIMIT_MAX"] = "0"
os.environ.pop("ADMIN_API_KEY", None)
os.environ.pop("ALLOW_UNAUTH_LOCAL", None)

import pytest

from backend.app.core.errors import EmailSendError
from backend.app.db.database import SessionLocal, ensure_schema
from backend.app.models.submission import CVSubmission
from backend.app.services.email_queue import BackoffPolicy, EmailQueueService

ensure_schema()

ANALYSIS = {
    "overallScore": 82,
    "strengths": ["Clear work history"],
    "improvements": [
        {"category": "Skills", "priority": "high", "issue": "No skills section", "suggestion": "Add one", "example": "Python, SQL"},
    ],
    "atsCompatibility": 75,
}


@pytest.fixture(autouse=True)
def clean_table():
    db = SessionLocal()
    db.query(CVSubmission).delete()
    db.commit()
    db.close()
    yield


class FakeEmailService:
    """Stands in for the SMTP-backed EmailService."""

    def __init__(self):
        self.sent = []
        self.attempted = []
        self.fail = False
        self.connected = True
        self.on_send = None

    def send_cv_analysis(self, recipient, analysis, user):
        self.attempted.append(recipient)
        if self.on_send:
            self.on_send(recipient)
        if self.fail:
            raise EmailSendError("SMTP down", attempts=3)
        self.sent.append(recipient)
        return True

    def verify_connection(self):
        return self.connected


class Clock:
    def __init__(self, now=datetime(2025, 1, 15, 12, 0, 0)):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def fake_mail():
    return FakeEmailService()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def queue(fake_mail, clock):
    return EmailQueueService(
        email_service=fake_mail,
        max_attempts=3,
        backoff=BackoffPolicy('exponential', 30, 24 * 60),
        batch_size=100,
        concurrency=1,
        lease_seconds=300,
        clock=clock,
    )


@pytest.fixture
def make_submission(clock):
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        n = counter["n"]
        values = dict(
            first_name="Jane",
            last_name=f"Doe{n}",
            email=f"jane{n}@example.com",
            phone="+1 555 0100",
            cv_filename="cv.pdf",
            cv_file_path=f"/tmp/cv-{n}.pdf",
            cv_file_size=1024,
            cv_mime_type="application/pdf",
            analysis_score=82,
            analysis_results=dict(ANALYSIS),
            email_status="queued",
            email_scheduled_at=clock.now - timedelta(minutes=1),
            email_attempts=0,
        )
        values.update(overrides)
        db = SessionLocal()
        row = CVSubmission(**values)
        db.add(row)
        db.commit()
        db.refresh(row)
        db.close()
        return row.id

    return _make


def load(submission_id):
    db = SessionLocal()
    try:
        return db.query(CVSubmission).filter(CVSubmission.id == submission_id).first()
    finally:
        db.close()
