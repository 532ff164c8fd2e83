"""
Tests for PyMuPDF text-layer extraction.
"""

import fitz
import pytest

from studyflow.core.errors import PermanentExternalError
from studyflow.services.processors.pdf_text import extract_pdf_pages, extract_pdf_text, extract_pdf_text_async


def _pdf(pages: list[str]) -> bytes:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


class TestExtractPdf:

    def test_pages_with_text(self):
        pages = extract_pdf_pages(_pdf(["Cell division", "", "Mitosis phases"]))
        assert [number for number, _ in pages] == [1, 3]
        assert "Cell division" in pages[0][1]
        assert "Mitosis phases" in pages[1][1]

    def test_joined_text(self):
        text = extract_pdf_text(_pdf(["First page", "Second page"]))
        assert text.index("First page") < text.index("Second page")
        assert "\n\n" in text

    def test_no_text_layer(self):
        assert extract_pdf_text(_pdf([""])) == ""

    def test_unreadable_bytes(self):
        with pytest.raises(PermanentExternalError):
            extract_pdf_pages(b"definitely not a pdf")

    @pytest.mark.asyncio
    async def test_async_wrapper(self):
        assert "Async page" in await extract_pdf_text_async(_pdf(["Async page"]))
