import threading

from backend.app.schemas.submission import ProcessResult
from backend.app.services import queue_scheduler


class _Service:
    def __init__(self, result=None, error=None):
        self.result, self.error, self.calls = result, error, 0

    def process_queue(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


def test_tick_records_summary():
    queue_scheduler._run_once(_Service(ProcessResult(sent=2, failed=1)))
    summary = queue_scheduler.get_last_run_summary()
    assert summary['sent'] == 2 and summary['failed'] == 1
    assert summary['error'] is None
    assert summary['ts']


def test_tick_error_is_recorded_not_raised():
    svc = _Service(error=RuntimeError("smtp misconfigured"))
    queue_scheduler._run_once(svc)
    assert svc.calls == 1
    assert queue_scheduler.get_last_run_summary()['error'] == "smtp misconfigured"


def test_start_and_stop():
    svc = _Service(ProcessResult())
    queue_scheduler.start_queue_scheduler(service=svc, interval=3600)
    thread = queue_scheduler._thread
    try:
        assert queue_scheduler.is_running()
        thread.join(timeout=0.2)
    finally:
        queue_scheduler.stop_queue_scheduler()
    assert not queue_scheduler.is_running()
    assert queue_scheduler._thread is None
    assert not thread.is_alive()
    assert svc.calls >= 1


def test_restart_right_after_stop_runs_a_single_loop():
    first, second = _Service(ProcessResult()), _Service(ProcessResult())
    queue_scheduler.start_queue_scheduler(service=first, interval=3600)
    queue_scheduler.stop_queue_scheduler()
    queue_scheduler.start_queue_scheduler(service=second, interval=3600)
    try:
        loops = [t for t in threading.enumerate() if t.name == "email-queue-scheduler"]
        assert loops == [queue_scheduler._thread]
    finally:
        queue_scheduler.stop_queue_scheduler()
    assert not any(t.name == "email-queue-scheduler" for t in threading.enumerate())
