"""Domain exceptions.

Each family carries a ``kind`` tag so callers branch on structure instead of
matching substrings in messages.
"""
from enum import Enum

from sqlalchemy.exc import OperationalError


class ErrorCodes(str, Enum):
    FILE_UPLOAD_FAILED = 'FILE_UPLOAD_FAILED'
    TEXT_EXTRACTION_FAILED = 'TEXT_EXTRACTION_FAILED'
    ANALYSIS_FAILED = 'ANALYSIS_FAILED'
    DATABASE_ERROR = 'DATABASE_ERROR'
    EMAIL_SEND_FAILED = 'EMAIL_SEND_FAILED'
    INVALID_FILE_TYPE = 'INVALID_FILE_TYPE'
    FILE_TOO_LARGE = 'FILE_TOO_LARGE'
    VALIDATION_ERROR = 'VALIDATION_ERROR'
    NOT_FOUND = 'NOT_FOUND'
    UNAUTHORIZED = 'UNAUTHORIZED'
    RATE_LIMIT_EXCEEDED = 'RATE_LIMIT_EXCEEDED'
    INTERNAL_ERROR = 'INTERNAL_ERROR'


class CVUploadException(Exception):
    """Error surfaced to HTTP clients as ``{success, error, code}``."""

    def __init__(self, code: ErrorCodes, message: str, status_code: int = 500, details=None, headers=None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.headers = headers

    def to_response(self) -> dict:
        body = {"success": False, "error": self.message, "code": self.code.value}
        if self.details is not None:
            body["details"] = self.details
        return body


# --- text extraction ------------------------------------------------------

class TextExtractionError(Exception):
    kind = 'extraction'

    def __init__(self, message: str, kind: str | None = None):
        super().__init__(message)
        if kind:
            self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


class FileAccessError(TextExtractionError):
    kind = 'file_access'


class UnsupportedTypeError(TextExtractionError):
    kind = 'unsupported_type'


class PDFExtractionError(TextExtractionError):
    kind = 'pdf'


class DOCXExtractionError(TextExtractionError):
    kind = 'docx'


# --- mail -----------------------------------------------------------------

class EmailConfigurationError(Exception):
    pass


class EmailSendError(Exception):
    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


# --- store ----------------------------------------------------------------

class StoreError(Exception):
    """The backing database could not be used at all (systemic failure)."""

    def __init__(self, message: str, kind: str = 'unavailable'):
        super().__init__(message)
        self.kind = kind


def classify_store_error(exc: Exception) -> StoreError:
    msg = str(getattr(exc, 'orig', None) or exc)
    lowered = msg.lower()
    if 'password authentication failed' in lowered or 'access denied' in lowered:
        kind = 'access_denied'
    elif 'connection refused' in lowered or 'could not connect' in lowered:
        kind = 'connection_refused'
    elif ('does not exist' in lowered and 'database' in lowered) or 'unknown database' in lowered:
        kind = 'unknown_database'
    elif isinstance(exc, OperationalError):
        kind = 'unavailable'
    else:
        kind = 'unknown'
    return StoreError(msg, kind=kind)
