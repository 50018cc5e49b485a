"""
Shadow-text generator: binary payload → extracted text.

PDF text extraction is inherently lossy (scanned documents have no text
layer and come out empty); OCR is not attempted.
"""

import logging
from io import BytesIO

from pypdf import PdfReader

logger = logging.getLogger(__name__)


class PdfTextExtractor:
    def __init__(self, max_pages: int = None):
        self.max_pages = max_pages

    def extract_text(self, data: bytes) -> str:
        """Return the text of every page, pages separated by a blank line."""
        reader = PdfReader(BytesIO(data))
        total = len(reader.pages)
        limit = total if self.max_pages is None else min(self.max_pages, total)

        pages: list[str] = []
        for i in range(limit):
            try:
                pages.append(reader.pages[i].extract_text() or "")
            except Exception:
                logger.warning("Could not extract text from page %d", i + 1)
                pages.append("")
        return "\n\n".join(pages)


def shadow_body(name: str, text: str) -> str:
    """Content of the .source.md record paired with a binary file."""
    return f"## Source: {name}\n\n{text}"
