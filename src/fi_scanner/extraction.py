"""
Text Extraction
===============

Turns a downloaded PDF or DOCX body into plain text for the classification
cascade. Extraction stops once ``MAX_TEXT_CHARS`` have been collected; the
full page count (PDF) or full character count (DOCX) is still reported so the
structural stage can judge document length.
"""

from __future__ import annotations

import io
import zipfile
from dataclasses import dataclass

import structlog
from docx import Document as DocxDocument
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .config import Settings
from .errors import UnreadableDocumentError
from .models import CandidateDocument

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ExtractedText:
    text: str
    page_count: int | None
    full_length: int

    @property
    def truncated(self) -> bool:
        return self.full_length > len(self.text)


class TextExtractor:
    """Extracts text from PDF and DOCX bodies."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def extract(self, document: CandidateDocument, body: bytes) -> ExtractedText:
        name = document.file_name.lower()
        if name.endswith(".pdf"):
            return self._extract_pdf(document, body)
        if name.endswith(".docx"):
            return self._extract_docx(document, body)
        raise UnreadableDocumentError(f"Unsupported file type: {document.file_name}")

    def _extract_pdf(self, document: CandidateDocument, body: bytes) -> ExtractedText:
        limit = self.settings.MAX_TEXT_CHARS
        try:
            reader = PdfReader(io.BytesIO(body))
            if reader.is_encrypted and not reader.decrypt(""):
                raise UnreadableDocumentError("PDF is encrypted")
            page_count = len(reader.pages)
            parts: list[str] = []
            collected = 0
            for page in reader.pages:
                page_text = page.extract_text() or ""
                if page_text:
                    parts.append(page_text)
                    collected += len(page_text) + 1
                if collected >= limit:
                    break
        except (PdfReadError, ValueError, KeyError, TypeError) as e:
            raise UnreadableDocumentError(f"Corrupt PDF: {e}") from e

        text = "\n".join(parts)
        # Pages past the limit were not read; estimate their length from the page count.
        full_length = len(text)
        if collected >= limit and page_count:
            full_length = max(full_length, page_count * self.settings.CHARS_PER_PAGE)
        log.debug(
            "Extracted PDF text",
            file_name=document.file_name,
            pages=page_count,
            chars=len(text),
        )
        return ExtractedText(text=text[:limit], page_count=page_count, full_length=full_length)

    def _extract_docx(self, document: CandidateDocument, body: bytes) -> ExtractedText:
        try:
            doc = DocxDocument(io.BytesIO(body))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
            raise UnreadableDocumentError(f"Corrupt DOCX: {e}") from e
        text = "\n".join(p.text for p in doc.paragraphs if p.text)
        log.debug("Extracted DOCX text", file_name=document.file_name, chars=len(text))
        return ExtractedText(
            text=text[: self.settings.MAX_TEXT_CHARS],
            page_count=None,
            full_length=len(text),
        )
