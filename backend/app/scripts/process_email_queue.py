"""Send every due CV analysis email once, then report.

Meant to run from cron every 15 minutes (or use EMAIL_QUEUE_SCHEDULER=1 in the API):
  python -m backend.app.scripts.process_email_queue

Exit status 1 when the mail transport cannot be reached or the run crashes,
0 otherwise (individual delivery failures are recorded on the rows).
"""
import argparse
import logging
from datetime import datetime, timezone

from ..core.logging import init_logging
from ..db.database import ensure_schema
from ..services.email_queue import EmailQueueService
from ..services.email_service import EmailService

RULE = "=" * 80
THIN = "-" * 80


def _print_stats(title: str, stats):
    print(f"\nQueue Statistics ({title}):")
    print(f"  Pending:  {stats.pending}")
    print(f"  Queued:   {stats.queued}")
    print(f"  Retrying: {stats.retrying}")
    print(f"  Sent:     {stats.sent}")
    print(f"  Failed:   {stats.failed}")


def run(queue: EmailQueueService, email_service, deadline_seconds=None, failed_limit: int = 10) -> int:
    print(RULE)
    print("Email Queue Processor Started")
    print(f"Timestamp: {datetime.now(timezone.utc).isoformat()}")
    print(RULE)

    if not email_service.verify_connection():
        print("Email service connection failed. Aborting queue processing.")
        return 1
    print("Email service connection verified")

    _print_stats("Before", queue.get_queue_stats())

    print("\n" + THIN)
    print("Processing Email Queue...")
    print(THIN)
    result = queue.process_queue(deadline_seconds=deadline_seconds)
    print(f"Emails sent successfully: {result.sent}")
    print(f"Emails failed: {result.failed}")
    if result.deferred:
        print(f"Emails left for the next run (deadline reached): {result.deferred}")

    after = queue.get_queue_stats()
    _print_stats("After", after)

    if after.failed > 0:
        print("\n" + THIN)
        print("Failed Emails (Recent):")
        print(THIN)
        for n, item in enumerate(queue.get_failed_emails(limit=failed_limit), 1):
            print(f"\n{n}. {item.first_name} {item.last_name} ({item.email})")
            print(f"   Submission ID: {item.uuid}")
            print(f"   Attempts: {item.email_attempts}")
            print(f"   Last Attempt: {item.email_last_attempt_at}")
            print(f"   Error: {item.email_error or 'Unknown error'}")

    print("\n" + RULE)
    print("Email Queue Processor Completed Successfully")
    print(RULE)
    return 0


def main(argv=None, queue: EmailQueueService | None = None, email_service=None) -> int:
    parser = argparse.ArgumentParser(description="Process the CV analysis email queue")
    parser.add_argument("--deadline", type=float, default=None, help="Stop claiming new emails after this many seconds")
    parser.add_argument("--failed-limit", type=int, default=10, help="How many recent failures to list")
    args = parser.parse_args(argv)

    init_logging()
    try:
        if queue is None:
            ensure_schema()
            email_service = email_service or EmailService()
            queue = EmailQueueService(email_service=email_service)
        elif email_service is None:
            email_service = queue.email_service
        return run(queue, email_service, deadline_seconds=args.deadline, failed_limit=args.failed_limit)
    except Exception as e:
        logging.getLogger(__name__).exception("email_queue_job_failed", extra={"category": "email_queue"})
        print(f"Fatal error in email queue processor: {e}")
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
