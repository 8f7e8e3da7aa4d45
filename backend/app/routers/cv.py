from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional
import logging
import time

from ..core import config
from ..core.errors import CVUploadException, ErrorCodes, TextExtractionError
from ..db.database import get_db
from ..schemas.submission import UserData
from ..security.rate_limit import client_ip, limit_uploads
from ..security.sanitization import sanitize_name, sanitize_phone
from ..services.file_storage import remove_upload, save_upload, signature_matches
from ..services.submission_service import create_submission, get_submission_by_uuid
from ..services.text_extraction import extract_text

router = APIRouter()
log = logging.getLogger(__name__)


@router.post("/upload", dependencies=[Depends(limit_uploads)])
async def upload_cv(
    request: Request,
    first_name: str = Form(..., alias="firstName"),
    last_name: str = Form(..., alias="lastName"),
    email: str = Form(...),
    phone: Optional[str] = Form(None),
    consent_given: bool = Form(False, alias="consentGiven"),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    """Accept a CV upload, store it and make sure its text can be extracted.

    The submission row starts with email status ``pending``; the results email
    is scheduled once the analysis is recorded.
    """
    started = time.perf_counter()
    if not consent_given:
        raise CVUploadException(ErrorCodes.VALIDATION_ERROR, "You must consent to data processing", 400)
    try:
        user = UserData(
            first_name=sanitize_name(first_name),
            last_name=sanitize_name(last_name),
            email=email.strip(),
            phone=sanitize_phone(phone or "") or None,
        )
    except ValidationError as e:
        raise CVUploadException(
            ErrorCodes.VALIDATION_ERROR,
            "Validation failed",
            400,
            details=[{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()],
        )
    if not user.first_name or not user.last_name:
        raise CVUploadException(ErrorCodes.VALIDATION_ERROR, "First and last name are required", 400)

    mime_type = file.content_type or ''
    if mime_type not in config.allowed_file_types():
        raise CVUploadException(ErrorCodes.INVALID_FILE_TYPE, "Invalid file type. Only PDF, DOC, and DOCX files are allowed.", 400)
    content = await file.read()
    if not content:
        raise CVUploadException(ErrorCodes.VALIDATION_ERROR, "No file uploaded", 400)
    max_size = config.max_file_size()
    if len(content) > max_size:
        raise CVUploadException(
            ErrorCodes.FILE_TOO_LARGE,
            f"File size {len(content)} bytes exceeds maximum allowed size of {max_size} bytes",
            400,
        )
    if not signature_matches(content, mime_type):
        raise CVUploadException(ErrorCodes.INVALID_FILE_TYPE, "Invalid file type. The file does not match its extension.", 400)

    try:
        stored_path = save_upload(content, file.filename, mime_type)
    except OSError as e:
        log.error("upload_store_failed", extra={"category": "cv_upload", "error": str(e)})
        raise CVUploadException(ErrorCodes.FILE_UPLOAD_FAILED, "Failed to store CV file", 500)

    try:
        text = await run_in_threadpool(extract_text, stored_path, mime_type)
    except TextExtractionError as e:
        remove_upload(stored_path)
        raise CVUploadException(ErrorCodes.TEXT_EXTRACTION_FAILED, str(e), 422, details={"kind": e.kind})

    try:
        record = create_submission(
            db,
            first_name=user.first_name,
            last_name=user.last_name,
            email=str(user.email),
            phone=user.phone,
            cv_filename=file.filename or stored_path,
            cv_file_path=stored_path,
            cv_file_size=len(content),
            cv_mime_type=mime_type,
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except SQLAlchemyError as e:
        db.rollback()
        remove_upload(stored_path)
        log.error("upload_db_failed", extra={"category": "cv_upload", "error": str(e)})
        raise CVUploadException(ErrorCodes.DATABASE_ERROR, "Failed to save submission to database", 500)

    log.info(
        "cv_upload_processed",
        extra={
            "category": "cv_upload",
            "submission_id": record.id,
            "mime_type": mime_type,
            "duration_ms": round((time.perf_counter() - started) * 1000, 1),
        },
    )
    return {
        "success": True,
        "submissionId": record.uuid,
        "message": "CV uploaded successfully. Your analysis results will be emailed to you.",
        "textLength": len(text),
    }


@router.get("/status/{submission_uuid}")
def submission_status(submission_uuid: str, db: Session = Depends(get_db)):
    record = get_submission_by_uuid(db, submission_uuid)
    if not record:
        raise CVUploadException(ErrorCodes.NOT_FOUND, "Submission not found", 404)
    return {
        "success": True,
        "submissionId": record.uuid,
        "emailStatus": record.email_status,
        "emailSentAt": record.email_sent_at.isoformat() if record.email_sent_at else None,
        "submittedAt": record.submitted_at.isoformat() if record.submitted_at else None,
    }
