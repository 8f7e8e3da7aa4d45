"""Delayed, retried delivery of CV analysis emails.

State lives entirely in the ``cv_submissions`` row (``email_*`` columns):

    pending -> queued -> sent
    queued/retrying -> retrying (attempt failed, attempts < max)
    queued/retrying -> failed   (attempts >= max)
    failed -> queued            (admin retry)

A row is *claimed* before its email is sent: one conditional UPDATE that only
matches while the row is still due and still has the attempt count we read.
The claim bumps ``email_attempts`` and pushes ``email_scheduled_at`` forward by
a lease, so a concurrent run (cron, scheduler thread, admin button) sees either
a not-yet-due row or a stale attempt count and skips it. The claim is committed
before the transport is called.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..core import config
from ..core.errors import classify_store_error
from ..core.events import broadcaster
from ..db.database import SessionLocal, utcnow
from ..models.submission import CVSubmission, DUE_STATUSES, EmailStatus
from ..schemas.submission import FailedEmail, ProcessResult, QueueMetrics, QueueStats, RetryResult

log = logging.getLogger(__name__)

SENT, FAILED, SKIPPED, DEFERRED = 'sent', 'failed', 'skipped', 'deferred'
LEASE_MARGIN_SECONDS = 60


class BackoffPolicy:
    """Delay before the next automatic attempt, given attempts made so far."""

    def __init__(self, strategy: str = 'exponential', base_minutes: float = 30.0, max_minutes: float = 24 * 60.0):
        if strategy not in ('exponential', 'fixed'):
            raise ValueError(f"Unknown backoff strategy '{strategy}'")
        self.strategy = strategy
        self.base_minutes = base_minutes
        self.max_minutes = max_minutes

    @classmethod
    def from_env(cls) -> 'BackoffPolicy':
        s = config.backoff_settings()
        strategy = s['strategy'] if s['strategy'] in ('exponential', 'fixed') else 'exponential'
        return cls(strategy, s['base_minutes'], s['max_minutes'])

    def delay(self, attempts: int) -> timedelta:
        if self.strategy == 'fixed':
            minutes = self.base_minutes
        else:
            minutes = self.base_minutes * (2 ** max(0, attempts - 1))
        return timedelta(minutes=min(minutes, self.max_minutes))


class EmailQueueService:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        email_service=None,
        *,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._email_service = email_service
        self.max_attempts = max_attempts or config.email_max_attempts()
        self.backoff = backoff or BackoffPolicy.from_env()
        self.batch_size = batch_size or config.queue_batch_size()
        self.concurrency = concurrency or config.queue_concurrency()
        self.lease = timedelta(seconds=lease_seconds or config.claim_lease_seconds())
        self._clock = clock
        self._timer = timer

    @property
    def email_service(self):
        # built on first use so read-only callers (stats, listings) never need
        # mail transport settings
        if self._email_service is None:
            from .email_service import EmailService
            self._email_service = EmailService()
        return self._email_service

    def _fit_lease(self, email_service):
        # a claim must outlive the slowest possible send, otherwise a second
        # worker can take the row over while the first is still delivering
        budget = getattr(email_service, 'send_budget_seconds', None)
        if budget is None:
            return
        needed = timedelta(seconds=budget + LEASE_MARGIN_SECONDS)
        if self.lease < needed:
            log.warning(
                "email_claim_lease_extended",
                extra={"category": "email_queue", "lease_seconds": self.lease.total_seconds(), "send_budget_seconds": budget},
            )
            self.lease = needed

    @contextmanager
    def _session(self):
        db = self._session_factory()
        try:
            yield db
        except OperationalError as e:
            raise classify_store_error(e) from e
        finally:
            db.close()

    # --- scheduling -----------------------------------------------------

    def queue_email(self, submission_id: int, delay_hours: Optional[float] = None) -> bool:
        """Schedule the analysis email for a pending submission."""
        if delay_hours is None:
            delay_hours = config.email_delay_hours()
        now = self._clock()
        scheduled_at = now + timedelta(hours=delay_hours)
        with self._session() as db:
            updated = (
                db.query(CVSubmission)
                .filter(
                    CVSubmission.id == submission_id,
                    CVSubmission.email_status.in_([EmailStatus.pending.value, EmailStatus.queued.value]),
                )
                .update(
                    {
                        CVSubmission.email_status: EmailStatus.queued.value,
                        CVSubmission.email_scheduled_at: scheduled_at,
                        CVSubmission.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        if not updated:
            log.warning("email_queue_rejected", extra={"category": "email_queue", "submission_id": submission_id})
            return False
        log.info(
            "email_queued",
            extra={"category": "email_queue", "submission_id": submission_id, "next_attempt_at": scheduled_at.isoformat()},
        )
        self._publish(submission_id, EmailStatus.queued.value)
        return True

    # --- processing -----------------------------------------------------

    def process_queue(self, deadline_seconds: Optional[float] = None) -> ProcessResult:
        """Attempt every due email once.

        Delivery failures are recorded on the row and counted; only store
        failures (``StoreError``) and mail misconfiguration propagate.
        """
        started = self._timer()
        if deadline_seconds is None:
            deadline_seconds = config.queue_deadline_seconds()
        # misconfigured transport should fail the run before any attempt is spent
        email_service = self.email_service
        self._fit_lease(email_service)
        now = self._clock()
        with self._session() as db:
            due = [
                row_id
                for (row_id,) in db.query(CVSubmission.id)
                .filter(
                    CVSubmission.email_status.in_(DUE_STATUSES),
                    CVSubmission.email_scheduled_at <= now,
                )
                .order_by(CVSubmission.email_scheduled_at.asc(), CVSubmission.id.asc())
                .limit(self.batch_size)
                .all()
            ]
        log.info("email_queue_run_started", extra={"category": "email_queue", "due": len(due)})
        if not due:
            return ProcessResult()

        def work(row_id: int) -> str:
            if deadline_seconds is not None and self._timer() - started >= deadline_seconds:
                return DEFERRED
            return self._attempt(row_id, email_service)

        if self.concurrency > 1:
            with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                outcomes = list(pool.map(work, due))
        else:
            outcomes = [work(row_id) for row_id in due]

        result = ProcessResult(
            sent=outcomes.count(SENT),
            failed=outcomes.count(FAILED),
            skipped=outcomes.count(SKIPPED),
            deferred=outcomes.count(DEFERRED),
        )
        log.info(
            "email_queue_run_finished",
            extra={"category": "email_queue", "sent": result.sent, "failed": result.failed, "due": len(due)},
        )
        return result

    def _attempt(self, row_id: int, email_service) -> str:
        with self._session() as db:
            row = self._claim(db, row_id)
            if row is None:
                log.debug("email_claim_lost", extra={"category": "email_queue", "submission_id": row_id})
                return SKIPPED
            ok, error = self._deliver(row, email_service)
            status = self._record(db, row, ok, error)
        if status is None:
            return SKIPPED
        return SENT if status == EmailStatus.sent.value else FAILED

    def _claim(self, db: Session, row_id: int) -> Optional[CVSubmission]:
        now = self._clock()
        row = db.query(CVSubmission).filter(CVSubmission.id == row_id).first()
        if row is None or row.email_status not in DUE_STATUSES:
            return None
        if row.email_scheduled_at is None or row.email_scheduled_at > now:
            return None
        observed = row.email_attempts
        claimed = (
            db.query(CVSubmission)
            .filter(
                CVSubmission.id == row_id,
                CVSubmission.email_status.in_(DUE_STATUSES),
                CVSubmission.email_scheduled_at <= now,
                CVSubmission.email_attempts == observed,
            )
            .update(
                {
                    CVSubmission.email_attempts: observed + 1,
                    CVSubmission.email_last_attempt_at: now,
                    CVSubmission.email_scheduled_at: now + self.lease,
                    CVSubmission.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if claimed != 1:
            return None
        db.refresh(row)
        return row

    def _deliver(self, row: CVSubmission, email_service) -> tuple[bool, Optional[str]]:
        if not row.analysis_results:
            return False, "No analysis results available"
        user = {"first_name": row.first_name, "last_name": row.last_name, "email": row.email, "phone": row.phone}
        try:
            email_service.send_cv_analysis(row.email, row.analysis_results, user)
            return True, None
        except Exception as e:
            return False, str(e) or type(e).__name__

    def _record(self, db: Session, row: CVSubmission, ok: bool, error: Optional[str]) -> Optional[str]:
        """Write the attempt's outcome, fenced on the claim.

        Returns None when the claim was lost meanwhile (lease expired and
        another worker took the row over); the row is then left untouched.
        """
        now = self._clock()
        attempts = row.email_attempts
        base = {"category": "email_delivery", "submission_id": row.id, "email": row.email, "attempt": attempts}
        if ok:
            values = {
                CVSubmission.email_status: EmailStatus.sent.value,
                CVSubmission.email_sent_at: now,
                CVSubmission.email_error: None,
                CVSubmission.updated_at: now,
            }
            status = EmailStatus.sent.value
        elif attempts >= self.max_attempts:
            values = {
                CVSubmission.email_status: EmailStatus.failed.value,
                CVSubmission.email_error: error,
                CVSubmission.updated_at: now,
            }
            status = EmailStatus.failed.value
        else:
            next_at = now + self.backoff.delay(attempts)
            values = {
                CVSubmission.email_status: EmailStatus.retrying.value,
                CVSubmission.email_scheduled_at: next_at,
                CVSubmission.email_error: error,
                CVSubmission.updated_at: now,
            }
            status = EmailStatus.retrying.value
        written = (
            db.query(CVSubmission)
            .filter(
                CVSubmission.id == row.id,
                CVSubmission.email_attempts == attempts,
                CVSubmission.email_status.in_(DUE_STATUSES),
            )
            .update(values, synchronize_session=False)
        )
        db.commit()
        if written != 1:
            log.warning("email_claim_superseded", extra={**base, "email_status": status, "error": error})
            return None
        if status == EmailStatus.sent.value:
            log.info("email_sent", extra={**base, "email_status": status})
        elif status == EmailStatus.failed.value:
            log.error("email_failed_permanently", extra={**base, "max_attempts": self.max_attempts, "email_status": status, "error": error})
        else:
            log.warning(
                "email_retry_scheduled",
                extra={**base, "max_attempts": self.max_attempts, "email_status": status, "error": error, "next_attempt_at": next_at.isoformat()},
            )
        self._publish(row.id, status)
        return status

    # --- admin actions ----------------------------------------------------

    def retry_email(self, submission_id: int) -> RetryResult:
        """Reopen a failed email and attempt it right away."""
        email_service = self.email_service
        self._fit_lease(email_service)
        now = self._clock()
        with self._session() as db:
            reopened = (
                db.query(CVSubmission)
                .filter(CVSubmission.id == submission_id, CVSubmission.email_status == EmailStatus.failed.value)
                .update(
                    {
                        CVSubmission.email_status: EmailStatus.queued.value,
                        CVSubmission.email_scheduled_at: now,
                        CVSubmission.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            if not reopened:
                return RetryResult(found=False)
            log.info("email_manual_retry", extra={"category": "email_queue", "submission_id": submission_id})
            self._publish(submission_id, EmailStatus.queued.value)

            row = self._claim(db, submission_id)
            if row is None:
                # someone else picked it up between reopen and claim
                return RetryResult(found=True, sent=False, email_status=EmailStatus.queued.value)
            ok, error = self._deliver(row, email_service)
            status = self._record(db, row, ok, error)
            if status is None:
                current = db.query(CVSubmission.email_status).filter(CVSubmission.id == submission_id).scalar()
                return RetryResult(found=True, sent=False, email_status=current, error=error)
        return RetryResult(found=True, sent=ok, email_status=status, error=error)

    # --- reporting ----------------------------------------------------------

    def get_queue_stats(self) -> QueueStats:
        with self._session() as db:
            rows = (
                db.query(CVSubmission.email_status, func.count(CVSubmission.id))
                .group_by(CVSubmission.email_status)
                .all()
            )
        return QueueStats(**{status: count for status, count in rows})

    def get_queue_metrics(self) -> QueueMetrics:
        now = self._clock()
        with self._session() as db:
            def count(*criteria) -> int:
                return db.query(func.count(CVSubmission.id)).filter(*criteria).scalar() or 0

            sent_recent = count(
                CVSubmission.email_status == EmailStatus.sent.value,
                CVSubmission.email_sent_at >= now - timedelta(hours=24),
            )
            total_failed = count(CVSubmission.email_status == EmailStatus.failed.value)
            retrying = count(CVSubmission.email_status == EmailStatus.retrying.value)
            due_now = count(CVSubmission.email_status.in_(DUE_STATUSES), CVSubmission.email_scheduled_at <= now)
            avg = (
                db.query(func.avg(CVSubmission.email_attempts))
                .filter(CVSubmission.email_status == EmailStatus.sent.value)
                .scalar()
            )
        return QueueMetrics(
            sent_last_24_hours=sent_recent,
            total_failed=total_failed,
            currently_retrying=retrying,
            due_now=due_now,
            avg_attempts_for_success=round(float(avg or 0), 2),
        )

    def get_failed_emails(self, limit: int = 50) -> List[FailedEmail]:
        limit = max(1, min(int(limit), 500))
        with self._session() as db:
            rows = (
                db.query(CVSubmission)
                .filter(CVSubmission.email_status == EmailStatus.failed.value)
                .order_by(CVSubmission.email_last_attempt_at.desc(), CVSubmission.id.desc())
                .limit(limit)
                .all()
            )
            return [FailedEmail.model_validate(r) for r in rows]

    def _publish(self, submission_id: int, email_status: str):
        broadcaster.publish("email_updated", {"id": submission_id, "emailStatus": email_status})
