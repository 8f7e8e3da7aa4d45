"""Text extraction for uploaded CVs.

Dispatches on the declared MIME type to a PDF (PyPDF2) or DOCX (python-docx)
parser and normalises the result into plain ``\\n``-separated text suitable for
the analyzer. Legacy ``application/msword`` uploads go through the DOCX parser;
genuine binary ``.doc`` files will fail there with a DOCX extraction error.
"""
import logging
import os
import re
import warnings

from PyPDF2 import PdfReader
from docx import Document

from ..core.config import PDF_MIME, DOC_MIME, DOCX_MIME
from ..core.errors import (
    TextExtractionError,
    FileAccessError,
    UnsupportedTypeError,
    PDFExtractionError,
    DOCXExtractionError,
)

log = logging.getLogger(__name__)

DOCX_TYPES = {DOCX_MIME, DOC_MIME}

_SPACE_RUN = re.compile(r'[ \t]+')
_NEWLINE_RUN = re.compile(r'\n{3,}')
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]')


def extract_text(file_path: str, mime_type: str) -> str:
    """Extract and clean the text of a CV file.

    Raises TextExtractionError (message ``Text extraction failed: <cause>``);
    ``kind`` tells which stage failed.
    """
    try:
        # the declared type is checked before touching the filesystem so an
        # unsupported upload is reported as such even when the file is gone
        if mime_type != PDF_MIME and mime_type not in DOCX_TYPES:
            raise UnsupportedTypeError(f"Unsupported file type: {mime_type}")
        _check_readable(file_path)
        if mime_type == PDF_MIME:
            raw = extract_pdf(file_path)
        else:
            raw = extract_docx(file_path)
        return clean_text(raw)
    except TextExtractionError as e:
        log.warning("text_extraction_failed", extra={"file_path": file_path, "mime_type": mime_type, "kind": e.kind, "error": str(e)})
        raise type(e)(f"Text extraction failed: {e}", kind=e.kind) from e
    except Exception as e:
        log.exception("text_extraction_unexpected_error", extra={"file_path": file_path, "mime_type": mime_type})
        raise TextExtractionError(f"Text extraction failed: {e or 'Unknown error'}") from e


def _check_readable(file_path: str):
    if not file_path or not os.path.isfile(file_path):
        raise FileAccessError(f"File not found: {file_path}")
    if not os.access(file_path, os.R_OK):
        raise FileAccessError(f"File is not readable: {file_path}")


def extract_pdf(file_path: str) -> str:
    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            with open(file_path, 'rb') as fh:
                reader = PdfReader(fh)
                pages = [page.extract_text() or '' for page in reader.pages]
        _log_parser_warnings('pdf', file_path, caught)
        text = "\n".join(pages)
        if not text.strip():
            raise PDFExtractionError("PDF appears to be empty or contains no extractable text")
        return text
    except PDFExtractionError as e:
        raise PDFExtractionError(f"PDF extraction failed: {e}") from e
    except Exception as e:
        raise PDFExtractionError(f"PDF extraction failed: {e or 'Unknown error'}") from e


def extract_docx(file_path: str) -> str:
    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            doc = Document(file_path)
            blocks = [p.text for p in doc.paragraphs]
            for table in doc.tables:
                for row in table.rows:
                    cells, seen = [], []
                    for cell in row.cells:
                        # a merged cell is reported once per grid column it spans
                        if any(cell._tc is tc for tc in seen):
                            continue
                        seen.append(cell._tc)
                        if cell.text:
                            cells.append(cell.text)
                    if cells:
                        blocks.append("\t".join(cells))
        _log_parser_warnings('docx', file_path, caught)
        text = "\n".join(blocks)
        if not text.strip():
            raise DOCXExtractionError("DOCX appears to be empty or contains no extractable text")
        return text
    except DOCXExtractionError as e:
        raise DOCXExtractionError(f"DOCX extraction failed: {e}") from e
    except Exception as e:
        raise DOCXExtractionError(f"DOCX extraction failed: {e or 'Unknown error'}") from e


def _log_parser_warnings(kind: str, file_path: str, caught):
    if not caught:
        return
    log.warning(
        "text_extraction_parser_warnings",
        extra={"kind": kind, "file_path": file_path, "error": "; ".join(str(w.message) for w in caught[:10])},
    )


def clean_text(raw_text: str) -> str:
    """Normalise whitespace and strip control characters.

    Output has only ``\\n`` line breaks, no double spaces, no more than one blank
    line in a row, no leading/trailing whitespace and no control characters.
    Applying it twice gives the same result as applying it once.
    """
    cleaned = raw_text or ''
    while True:
        previous = cleaned
        cleaned = _clean_once(cleaned)
        if cleaned == previous:
            return cleaned


def _clean_once(text: str) -> str:
    text = text.replace('\r\n', '\n').replace('\r', '\n')
    text = _SPACE_RUN.sub(' ', text)
    text = _NEWLINE_RUN.sub('\n\n', text)
    text = '\n'.join(line.strip() for line in text.split('\n'))
    text = text.strip()
    return _CONTROL_CHARS.sub('', text)
