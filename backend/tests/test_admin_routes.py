from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import load
from backend.app.main import app
from backend.app.routers.admin_cv import get_queue_service
from backend.app.db.database import utcnow

client = TestClient(app)


@pytest.fixture(autouse=True)
def override_queue(fake_mail):
    from backend.app.services.email_queue import EmailQueueService
    app.dependency_overrides[get_queue_service] = lambda: EmailQueueService(email_service=fake_mail, max_attempts=3)
    yield
    app.dependency_overrides.pop(get_queue_service, None)


@pytest.fixture
def due(make_submission):
    # route tests run on the real clock
    return lambda **kw: make_submission(email_scheduled_at=utcnow() - timedelta(minutes=5), **kw)


def test_queue_stats_route_is_not_shadowed_by_id_route(due):
    due()
    due(email_status='failed', email_attempts=3)
    r = client.get('/api/admin/cv-submissions/email-queue/stats')
    assert r.status_code == 200
    body = r.json()
    assert body['success'] is True
    assert body['stats']['queued'] == 1 and body['stats']['failed'] == 1
    assert set(body['metrics']) == {'sentLast24Hours', 'totalFailed', 'currentlyRetrying', 'dueNow', 'avgAttemptsForSuccess'}
    assert body['metrics']['dueNow'] == 1


def test_failed_emails_route(due):
    sid = due(email_status='failed', email_attempts=3, email_error='bounced', email_last_attempt_at=utcnow())
    r = client.get('/api/admin/cv-submissions/email-queue/failed', params={'limit': 5})
    assert r.status_code == 200
    body = r.json()
    assert body['total'] == 1
    item = body['failedEmails'][0]
    assert item['id'] == sid
    assert item['emailAttempts'] == 3
    assert item['emailError'] == 'bounced'
    assert 'firstName' in item and 'submittedAt' in item


def test_process_route(due, fake_mail):
    due()
    due()
    r = client.post('/api/admin/cv-submissions/email-queue/process')
    assert r.status_code == 200
    assert r.json()['result'] == {'sent': 2, 'failed': 0}
    assert len(fake_mail.sent) == 2


def test_retry_email_404_when_nothing_failed(due):
    sid = due(email_status='sent')
    r = client.post(f'/api/admin/cv-submissions/{sid}/retry-email')
    assert r.status_code == 404
    assert r.json() == {'success': False, 'error': 'No failed email found for this submission', 'code': 'NOT_FOUND'}


def test_retry_email_success(due, fake_mail):
    sid = due(email_status='failed', email_attempts=3)
    r = client.post(f'/api/admin/cv-submissions/{sid}/retry-email')
    assert r.status_code == 200
    assert r.json()['success'] is True
    assert r.json()['emailStatus'] == 'sent'
    assert load(sid).email_attempts == 4


def test_retry_email_reports_failed_send(due, fake_mail):
    sid = due(email_status='failed', email_attempts=3)
    fake_mail.fail = True
    r = client.post(f'/api/admin/cv-submissions/{sid}/retry-email')
    assert r.status_code == 200
    assert r.json()['success'] is False
    assert r.json()['emailStatus'] == 'failed'
    assert 'SMTP down' in r.json()['message']


def test_admin_routes_require_key_when_configured(monkeypatch):
    monkeypatch.setenv('ADMIN_API_KEY', 'secret123')
    r = client.get('/api/admin/cv-submissions/email-queue/stats')
    assert r.status_code == 401
    assert r.json()['code'] == 'UNAUTHORIZED'
    r2 = client.get('/api/admin/cv-submissions/email-queue/stats', headers={'X-API-Key': 'secret123'})
    assert r2.status_code == 200
    monkeypatch.setenv('ALLOW_UNAUTH_LOCAL', '1')
    assert client.get('/api/admin/cv-submissions/email-queue/stats').status_code == 200


def test_update_touches_only_admin_columns(due):
    sid = due(email_status='retrying', email_attempts=1, email_error='timeout')
    before = load(sid)
    r = client.put(f'/api/admin/cv-submissions/{sid}', json={'status': 'reviewed', 'adminNotes': 'call back', 'convertedToPremium': True},
                   headers={'X-Admin-User': 'maria'})
    assert r.status_code == 200
    sub = r.json()['submission']
    assert sub['status'] == 'reviewed'
    assert sub['adminNotes'] == 'call back'
    assert sub['reviewedBy'] == 'maria'
    assert sub['convertedToPremium'] is True and sub['conversionDate']
    after = load(sid)
    assert (after.email_status, after.email_attempts, after.email_error) == ('retrying', 1, 'timeout')
    assert after.email_scheduled_at == before.email_scheduled_at


def test_update_rejects_unknown_status(due):
    sid = due()
    r = client.put(f'/api/admin/cv-submissions/{sid}', json={'status': 'promoted'})
    assert r.status_code == 422


def test_recording_analysis_schedules_email(make_submission):
    sid = make_submission(email_status='pending', email_scheduled_at=None, analysis_results=None, analysis_score=None)
    payload = {'analysisResults': {'overallScore': 64, 'strengths': ['Concise'], 'improvements': []}, 'delayHours': 2}
    r = client.post(f'/api/admin/cv-submissions/{sid}/analysis', json=payload)
    assert r.status_code == 200
    body = r.json()
    assert body['queued'] is True
    assert body['submission']['emailStatus'] == 'queued'
    assert body['submission']['analysisScore'] == 64
    row = load(sid)
    assert row.analysis_results['overallScore'] == 64
    assert row.email_scheduled_at > utcnow() + timedelta(hours=1)


def test_list_search_and_pagination(make_submission):
    for _ in range(3):
        make_submission()
    make_submission(first_name='Zed', email='zed@corp.test')
    r = client.get('/api/admin/cv-submissions', params={'search': 'zed'})
    assert r.json()['total'] == 1
    assert r.json()['submissions'][0]['email'] == 'zed@corp.test'
    page = client.get('/api/admin/cv-submissions', params={'limit': 3, 'page': 2}).json()
    assert page['total'] == 4 and page['totalPages'] == 2
    assert len(page['submissions']) == 1


def test_detail_and_missing(due):
    sid = due()
    assert client.get(f'/api/admin/cv-submissions/{sid}').json()['submission']['id'] == sid
    r = client.get('/api/admin/cv-submissions/999999')
    assert r.status_code == 404
    assert r.json()['code'] == 'NOT_FOUND'


def test_analytics(make_submission):
    make_submission(analysis_score=90, converted_to_premium=True)
    make_submission(analysis_score=40, status='reviewed')
    body = client.get('/api/admin/cv-submissions/analytics').json()['analytics']
    assert body['total'] == 2
    assert body['conversions'] == 1
    assert body['averageScore'] == 65.0
    assert body['scoreDistribution']['excellent'] == 1 and body['scoreDistribution']['poor'] == 1
    assert body['status']['reviewed'] == 1
    assert body['email']['queued'] == 2
