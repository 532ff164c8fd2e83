"""
Text-layer extraction for PDFs using PyMuPDF.

Used as the fallback when vision extraction returns too little text:
born-digital PDFs (and scans with an embedded OCR layer) carry their text
directly and need no model call.
"""

import asyncio

import fitz  # PyMuPDF

from studyflow.core.errors import PermanentExternalError
from studyflow.core.logging import get_logger

logger = get_logger(__name__)


def extract_pdf_pages(data: bytes) -> list[tuple[int, str]]:
    """
    Text of every page that has any, as ``(page_number, text)``.

    Page numbers are 1-based.

    Raises:
        PermanentExternalError: the bytes are not a readable PDF
    """
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (fitz.FileDataError, RuntimeError, ValueError) as e:
        raise PermanentExternalError(f"Unreadable PDF: {e}", provider_name="pymupdf") from e

    pages: list[tuple[int, str]] = []
    try:
        for page_num in range(len(doc)):
            text = doc[page_num].get_text("text").strip()
            if text:
                pages.append((page_num + 1, text))
    finally:
        doc.close()

    if not pages:
        logger.warning("pdf_no_text_layer")
    return pages


def extract_pdf_text(data: bytes) -> str:
    return "\n\n".join(text for _, text in extract_pdf_pages(data))


async def extract_pdf_text_async(data: bytes) -> str:
    """Run the (blocking) PyMuPDF parse in a worker thread."""
    return await asyncio.to_thread(extract_pdf_text, data)
