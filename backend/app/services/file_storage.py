import os
import uuid
import logging

from ..core import config
from ..db.database import utcnow

EXTENSIONS = {
    config.PDF_MIME: '.pdf',
    config.DOCX_MIME: '.docx',
    config.DOC_MIME: '.doc',
}

# leading bytes of each accepted format; the declared MIME type must match the content
SIGNATURES = {
    config.PDF_MIME: b'%PDF',
    config.DOCX_MIME: b'PK\x03\x04',
    config.DOC_MIME: b'\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1',
}


def signature_matches(content: bytes, mime_type: str) -> bool:
    sig = SIGNATURES.get(mime_type)
    if sig is None:
        return False
    if content.startswith(sig):
        return True
    # .doc uploads are parsed as DOCX, so a zip container is accepted too
    return mime_type == config.DOC_MIME and content.startswith(SIGNATURES[config.DOCX_MIME])


def save_upload(content: bytes, original_name: str, mime_type: str, directory: str | None = None) -> str:
    """Write an uploaded CV under UPLOAD_DIR/<year>/<month>/ with a generated name; returns the path."""
    now = utcnow()
    directory = os.path.join(directory or config.upload_dir(), f"{now:%Y}", f"{now:%m}")
    os.makedirs(directory, exist_ok=True)
    ext = os.path.splitext(original_name or '')[1].lower()
    if ext not in EXTENSIONS.values():
        ext = EXTENSIONS.get(mime_type, '')
    path = os.path.join(directory, f"{uuid.uuid4()}{ext}")
    with open(path, 'wb') as fh:
        fh.write(content)
    logging.getLogger(__name__).info("upload_stored", extra={"file_path": path, "mime_type": mime_type})
    return path


def remove_upload(path: str | None):
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError as e:
        logging.getLogger(__name__).warning("upload_cleanup_failed", extra={"file_path": path, "error": str(e)})
