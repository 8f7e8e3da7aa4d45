import pytest

from conftest import load
from backend.app.scripts import process_email_queue
from backend.app.scripts.process_email_queue import main


@pytest.fixture(autouse=True)
def keep_test_logging(monkeypatch):
    # the job reconfigures the root logger; leave pytest's capture in place
    monkeypatch.setattr(process_email_queue, "init_logging", lambda: None)


def test_job_sends_due_emails_and_reports(queue, fake_mail, make_submission, capsys):
    sid = make_submission()
    assert main([], queue=queue, email_service=fake_mail) == 0
    out = capsys.readouterr().out
    assert "Email service connection verified" in out
    assert "Queue Statistics (Before):" in out
    assert "Emails sent successfully: 1" in out
    assert "Emails failed: 0" in out
    assert "Failed Emails (Recent):" not in out
    assert load(sid).email_status == 'sent'


def test_job_lists_failures(queue, fake_mail, make_submission, capsys):
    make_submission(email_status='retrying', email_attempts=2)
    fake_mail.fail = True
    assert main([], queue=queue, email_service=fake_mail) == 0
    out = capsys.readouterr().out
    assert "Emails failed: 1" in out
    assert "Failed Emails (Recent):" in out
    assert "Attempts: 3" in out
    assert "Error: SMTP down" in out


def test_job_aborts_when_transport_unreachable(queue, fake_mail, make_submission, capsys):
    sid = make_submission()
    fake_mail.connected = False
    assert main([], queue=queue, email_service=fake_mail) == 1
    assert "connection failed" in capsys.readouterr().out
    assert load(sid).email_attempts == 0


class _ExplodingQueue:
    def get_queue_stats(self):
        raise RuntimeError("database went away")


def test_job_exits_nonzero_on_crash(fake_mail, capsys):
    assert main([], queue=_ExplodingQueue(), email_service=fake_mail) == 1
    assert "Fatal error in email queue processor: database went away" in capsys.readouterr().out
