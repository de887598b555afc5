"""
Text extraction from uploaded documents.

PDF via pypdf, DOCX via python-docx, anything else decoded as UTF-8.
Scanned PDFs yield little or no text; image OCR is not done here.
"""

import io
import logging
import re
from typing import Optional

from docx import Document
from pypdf import PdfReader

logger = logging.getLogger(__name__)

MAX_IMG_MB = 15
MAX_DOC_MB = 20

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def is_too_large(file_size: Optional[int], limit_mb: int) -> bool:
    return bool(file_size) and file_size > limit_mb * 1024 * 1024


def sanitize_filename(name: Optional[str]) -> str:
    return re.sub(r"[^\w.\-]+", "_", name or "file")[:120]


def _extract_pdf(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    pages = [(page.extract_text() or "").strip() for page in reader.pages]
    return "\n\n".join(p for p in pages if p).strip()


def _extract_docx(data: bytes) -> str:
    document = Document(io.BytesIO(data))
    return "\n".join(p.text for p in document.paragraphs if p.text).strip()


def extract_text(data: bytes, filename: str = "", mime_type: Optional[str] = None) -> str:
    """
    Extract plain text from a document.

    Returns an empty string when nothing readable was found.
    """
    name = (filename or "").lower()

    if mime_type == PDF_MIME or name.endswith(".pdf") or data[:5] == b"%PDF-":
        return _extract_pdf(data)

    if mime_type == DOCX_MIME or name.endswith(".docx"):
        return _extract_docx(data)

    try:
        return data.decode("utf-8").strip()
    except UnicodeDecodeError:
        return ""


def log_extracted(user_id: str, kind: str, file_name: Optional[str], extracted: str) -> None:
    """Short preview of what was extracted, for support and debugging."""
    preview = " ".join((extracted or "").split())
    if len(preview) > 350:
        preview = preview[:350] + "…"
    logger.info(
        f"Extracted user={user_id} kind={kind} file={file_name or '-'} "
        f"chars={len(extracted or '')} preview=\"{preview}\""
    )
