"""
PDF text extraction for the audiobook pipeline.

This module turns source documents into plain narration text. Documents are
read through DocumentSource (local files or http(s) URLs) and decoded by a
TextExtractor backend. The default backend uses PyMuPDF and returns text in
reading order with pages separated by blank lines.
"""

import asyncio
import re
from pathlib import Path
from typing import Optional

import fitz
import httpx

from audiobook.logging_config import get_logger, log_with_context


class ExtractionError(Exception):
    """Exception raised when a document cannot be read or yields no text."""
    pass


_HYPHEN_BREAK = re.compile(r"(\w)-\n(\w)")
_SPACE_RUN = re.compile(r"[ \t\f\v ]+")
_TRAILING_SPACE = re.compile(r" *\n *")
_BLANK_RUN = re.compile(r"\n{3,}")


def clean_text(text: str) -> str:
    """
    Normalize whitespace in extracted text.

    Words hyphenated across a line break are re-joined, runs of spaces
    collapse to one and three or more newlines collapse to a paragraph break.

    Args:
        text: Raw text as returned by the extractor backend

    Returns:
        Cleaned text with surrounding whitespace stripped
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HYPHEN_BREAK.sub(r"\1\2", text)
    text = _SPACE_RUN.sub(" ", text)
    text = _TRAILING_SPACE.sub("\n", text)
    text = _BLANK_RUN.sub("\n\n", text)
    return text.strip()


class TextExtractor:
    """Base class for document text extraction backends."""

    def extract(self, data: bytes) -> str:
        """
        Extract narration text from a raw document.

        Raises:
            ExtractionError: If the document is unreadable or contains no text
        """
        raise NotImplementedError


class PyMuPDFExtractor(TextExtractor):
    """
    Extracts PDF text with PyMuPDF.

    Pages are read with ``sort=True`` so blocks come out top-to-bottom,
    left-to-right, which is the order a reader would narrate them in.
    """

    def __init__(self):
        self.logger = get_logger(__name__)

    def extract(self, data: bytes) -> str:
        if not data:
            raise ExtractionError("Document is empty")

        try:
            document = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise ExtractionError(f"Unable to open PDF: {e}") from e

        try:
            if document.needs_pass:
                raise ExtractionError("PDF is encrypted")
            pages = []
            for page in document:
                page_text = clean_text(page.get_text(sort=True))
                if page_text:
                    pages.append(page_text)
            page_count = document.page_count
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"Unable to read PDF text: {e}") from e
        finally:
            document.close()

        text = "\n\n".join(pages)
        if not text:
            raise ExtractionError("No extractable text found in document")

        self.logger.debug(
            f"Extracted {len(text)} characters from {page_count} pages"
        )
        return text


class DocumentSource:
    """
    Reads source documents by reference.

    References starting with ``http://`` or ``https://`` are downloaded with
    httpx; anything else is a path, resolved against ``document_root`` when
    relative.
    """

    def __init__(self, document_root: str = ".", timeout: float = 60.0):
        self.document_root = Path(document_root)
        self.timeout = timeout
        self.logger = get_logger(__name__)

    async def read(self, ref: str) -> bytes:
        """
        Fetch the raw bytes of a document.

        Args:
            ref: Local path or http(s) URL

        Returns:
            The document contents

        Raises:
            ExtractionError: If the document is missing or the download fails
        """
        if ref.startswith(("http://", "https://")):
            return await self._download(ref)
        return await asyncio.to_thread(self._read_local, ref)

    async def _download(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                return resp.content
        except httpx.HTTPStatusError as e:
            raise ExtractionError(
                f"Document download failed with HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            log_with_context(self.logger, "warning", "Document download failed", document_ref=url, error=e)
            raise ExtractionError(f"Document download failed: {e}") from e

    def _read_local(self, ref: str) -> bytes:
        path = self._resolve(ref)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise ExtractionError(f"Document not found: {ref}") from e
        except OSError as e:
            raise ExtractionError(f"Unable to read document {ref}: {e}") from e

    def _resolve(self, ref: str) -> Path:
        if ref.startswith("file://"):
            ref = ref[len("file://"):]
        path = Path(ref)
        if not path.is_absolute():
            path = self.document_root / path
        return path


async def extract_document(
    source: DocumentSource,
    extractor: TextExtractor,
    ref: str,
    job_id: Optional[str] = None
) -> str:
    """Read a document and extract its text off the event loop."""
    data = await source.read(ref)
    text = await asyncio.to_thread(extractor.extract, data)
    log_with_context(
        get_logger(__name__),
        "info",
        "Document text extracted",
        job_id=job_id,
        document_ref=ref,
        characters=len(text)
    )
    return text
