import io
import os

import pytest
from docx import Document
from fastapi.testclient import TestClient
from PyPDF2 import PdfWriter

from backend.app.core.config import DOCX_MIME, PDF_MIME
from backend.app.main import app
from backend.app.db.database import SessionLocal
from backend.app.models.submission import CVSubmission
from backend.app.security.rate_limit import reset_upload_limiter

client = TestClient(app)

FORM = {'firstName': 'Jane', 'lastName': 'Doe', 'email': 'jane@example.com', 'phone': '+1 555 0100', 'consentGiven': 'true'}


def docx_bytes(text='Jane Doe\nSenior Engineer'):
    doc = Document()
    for line in text.split('\n'):
        doc.add_paragraph(line)
    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()


def blank_pdf_bytes():
    writer = PdfWriter()
    writer.add_blank_page(width=72, height=72)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def stored_files():
    root = os.environ['UPLOAD_DIR']
    found = []
    for dirpath, _, files in os.walk(root):
        found.extend(os.path.join(dirpath, f) for f in files)
    return found


def only_row():
    db = SessionLocal()
    try:
        return db.query(CVSubmission).one()
    finally:
        db.close()


def test_upload_creates_pending_submission():
    r = client.post('/api/cv/upload', data=FORM, files={'file': ('my cv.docx', docx_bytes(), DOCX_MIME)})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body['success'] is True
    row = only_row()
    assert body['submissionId'] == row.uuid
    assert row.email_status == 'pending'
    assert row.email_attempts == 0
    assert row.status == 'new'
    assert row.cv_filename == 'my cv.docx'
    assert row.cv_mime_type == DOCX_MIME
    assert os.path.exists(row.cv_file_path)
    assert os.path.basename(row.cv_file_path) != 'my cv.docx'

    status = client.get(f"/api/cv/status/{row.uuid}").json()
    assert status['emailStatus'] == 'pending'


def test_extraction_failure_is_422_and_file_removed():
    before = set(stored_files())
    r = client.post('/api/cv/upload', data=FORM, files={'file': ('cv.pdf', blank_pdf_bytes(), PDF_MIME)})
    assert r.status_code == 422
    body = r.json()
    assert body['code'] == 'TEXT_EXTRACTION_FAILED'
    assert body['error'].startswith('Text extraction failed:')
    assert body['details'] == {'kind': 'pdf'}
    assert set(stored_files()) == before
    db = SessionLocal()
    assert db.query(CVSubmission).count() == 0
    db.close()


def test_rejects_disallowed_mime_type():
    r = client.post('/api/cv/upload', data=FORM, files={'file': ('cv.png', b'\x89PNG....', 'image/png')})
    assert r.status_code == 400
    assert r.json()['code'] == 'INVALID_FILE_TYPE'


def test_rejects_content_that_does_not_match_declared_type():
    r = client.post('/api/cv/upload', data=FORM, files={'file': ('cv.pdf', docx_bytes(), PDF_MIME)})
    assert r.status_code == 400
    assert r.json()['error'] == 'Invalid file type. The file does not match its extension.'


def test_rejects_oversized_file(monkeypatch):
    monkeypatch.setenv('MAX_FILE_SIZE', '100')
    r = client.post('/api/cv/upload', data=FORM, files={'file': ('cv.docx', docx_bytes(), DOCX_MIME)})
    assert r.status_code == 400
    assert r.json()['code'] == 'FILE_TOO_LARGE'


def test_requires_consent_and_valid_email():
    r = client.post('/api/cv/upload', data={**FORM, 'consentGiven': 'false'}, files={'file': ('cv.docx', docx_bytes(), DOCX_MIME)})
    assert r.status_code == 400
    assert r.json()['code'] == 'VALIDATION_ERROR'
    r2 = client.post('/api/cv/upload', data={**FORM, 'email': 'not-an-email'}, files={'file': ('cv.docx', docx_bytes(), DOCX_MIME)})
    assert r2.status_code == 400
    assert r2.json()['details'][0]['field'] == 'email'


def test_status_for_unknown_submission():
    r = client.get('/api/cv/status/does-not-exist')
    assert r.status_code == 404
    assert r.json()['code'] == 'NOT_FOUND'


def test_names_and_phone_are_sanitised():
    form = {**FORM, 'firstName': '  Mary<b>-Jane3 ', 'lastName': "O'Brien;--", 'phone': '+1 (555) 0100 ext.9'}
    r = client.post('/api/cv/upload', data=form, files={'file': ('cv.docx', docx_bytes(), DOCX_MIME)})
    assert r.status_code == 200, r.text
    row = only_row()
    assert row.first_name == 'Maryb-Jane'
    assert row.last_name == "O'Brien"
    assert row.phone == '+1 (555) 0100 9'


def test_name_made_only_of_symbols_is_rejected():
    r = client.post('/api/cv/upload', data={**FORM, 'firstName': '<>123'}, files={'file': ('cv.docx', docx_bytes(), DOCX_MIME)})
    assert r.status_code == 400
    assert r.json()['error'] == 'First and last name are required'


@pytest.fixture
def upload_limit(monkeypatch):
    monkeypatch.setenv('UPLOAD_RATE_LIMIT_MAX', '2')
    monkeypatch.setenv('UPLOAD_RATE_LIMIT_WINDOW_SECONDS', '3600')
    reset_upload_limiter()
    yield
    reset_upload_limiter()


def test_uploads_are_limited_per_client_ip(upload_limit):
    no_consent = {**FORM, 'consentGiven': 'false'}
    files = {'file': ('cv.docx', docx_bytes(), DOCX_MIME)}
    for _ in range(2):
        assert client.post('/api/cv/upload', data=no_consent, files=files).status_code == 400
    r = client.post('/api/cv/upload', data=no_consent, files=files)
    assert r.status_code == 429
    assert r.json()['code'] == 'RATE_LIMIT_EXCEEDED'
    assert int(r.headers['Retry-After']) > 0
    # another client is counted separately
    other = client.post('/api/cv/upload', data=no_consent, files=files, headers={'X-Forwarded-For': '203.0.113.7'})
    assert other.status_code == 400
