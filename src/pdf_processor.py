"""
pdf_processor.py

Upload intake: file-type checks and page counting.

    PDF    page count read with pdfplumber (no rendering)
    image  always one page; opened with Pillow to reject corrupt uploads

Page counts drive admission: one credit per page, so a file whose pages
cannot be counted is rejected before it is queued.
"""

import io
import logging
from dataclasses import dataclass
from typing import Optional

import pdfplumber
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

# ── File type detection ────────────────────────────────────────────────────────

# The scan service only distinguishes jpeg and png; other raster formats go up as png.
_IMAGE_MIME_TYPES = {
    ".png":  "image/png",
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif":  "image/png",
    ".bmp":  "image/png",
    ".webp": "image/png",
}


def detect_mime_type(filename: str) -> str:
    """Mime type the scan service expects, from the file extension alone."""
    name = (filename or "").lower()
    for ext, mime in _IMAGE_MIME_TYPES.items():
        if name.endswith(ext):
            return mime
    return "application/pdf"


def is_image_filename(filename: str) -> bool:
    return detect_mime_type(filename) != "application/pdf"


# ── Intake ─────────────────────────────────────────────────────────────────────

@dataclass
class IntakeResult:
    filename: str
    total_pages: int = 0
    is_pdf: bool = False
    error: Optional[str] = None


def is_pdf(content: bytes) -> bool:
    """PDF magic bytes check."""
    return content[:4] == b"%PDF"


def _count_pdf_pages(content: bytes) -> int:
    with pdfplumber.open(io.BytesIO(content)) as pdf:
        return len(pdf.pages)


def _verify_image(content: bytes) -> None:
    with Image.open(io.BytesIO(content)) as img:
        img.verify()


def count_pages(filename: str, content: bytes) -> IntakeResult:
    """
    Inspect an uploaded file. Never raises; problems are returned in .error.
    """
    result = IntakeResult(filename=filename)

    if is_pdf(content):
        result.is_pdf = True
        try:
            result.total_pages = _count_pdf_pages(content)
        except Exception as exc:
            result.error = f"Could not read PDF: {exc}"
            logger.warning(f"[{filename}] {result.error}")
            return result
        if result.total_pages < 1:
            result.error = "PDF has no pages."
        logger.info(f"[{filename}] PDF with {result.total_pages} page(s).")
        return result

    if is_image_filename(filename):
        try:
            _verify_image(content)
        except (UnidentifiedImageError, OSError, SyntaxError) as exc:
            result.error = f"Not a readable image: {exc}"
            logger.warning(f"[{filename}] {result.error}")
            return result
        result.total_pages = 1
        return result

    result.error = "Unsupported file type. Upload a PDF or an image (png, jpg)."
    return result
