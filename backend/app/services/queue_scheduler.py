import threading
import logging
from datetime import datetime, timezone

from ..core import config
from .email_queue import EmailQueueService

_running = False
_thread: threading.Thread | None = None
_stop: threading.Event | None = None
last_run_summary = {"ts": None, "sent": 0, "failed": 0, "skipped": 0, "deferred": 0, "error": None}


def _run_once(service: EmailQueueService):
    log = logging.getLogger(__name__)
    try:
        result = service.process_queue()
        last_run_summary.update({
            "ts": datetime.now(timezone.utc).isoformat(),
            "sent": result.sent,
            "failed": result.failed,
            "skipped": result.skipped,
            "deferred": result.deferred,
            "error": None,
        })
        log.info("queue_scheduler_tick", extra={"category": "email_queue", "sent": result.sent, "failed": result.failed})
    except Exception as e:
        last_run_summary.update({"ts": datetime.now(timezone.utc).isoformat(), "error": str(e)})
        log.exception("queue_scheduler_tick_error", extra={"category": "email_queue"})


def _loop(service: EmailQueueService, interval: int, stop: threading.Event):
    # each thread owns its stop event, so a loop left over from an earlier
    # start can never be revived by a later one
    while not stop.is_set():
        _run_once(service)
        stop.wait(interval)


def start_queue_scheduler(service: EmailQueueService | None = None, interval: int | None = None):
    global _running, _thread, _stop
    if _running:
        return
    _running = True
    _stop = threading.Event()
    _thread = threading.Thread(
        target=_loop,
        args=(service or EmailQueueService(), interval or config.scheduler_interval_seconds(), _stop),
        name="email-queue-scheduler",
        daemon=True,
    )
    _thread.start()
    logging.getLogger(__name__).info("queue_scheduler_started", extra={"category": "email_queue"})


def stop_queue_scheduler(timeout: float = 5.0):
    global _running, _thread, _stop
    _running = False
    if _stop is not None:
        _stop.set()
    if _thread is not None:
        _thread.join(timeout)
        if _thread.is_alive():
            # still inside a tick; it exits once process_queue returns
            logging.getLogger(__name__).warning("queue_scheduler_stop_timeout", extra={"category": "email_queue"})
    _thread = None
    _stop = None


def is_running() -> bool:
    return _running


def get_last_run_summary():
    return last_run_summary
