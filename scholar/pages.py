"""Page text extraction with pypdf, used only to feed page embeddings."""

import logging
from collections.abc import Sequence
from pathlib import Path

from pypdf import PdfReader

from scholar.models import PageText

logger = logging.getLogger(__name__)


class PageExtractionError(Exception):
    """Raised when a PDF cannot be opened or a requested page does not exist."""


def extract_pages(pdf_path: Path, page_numbers: Sequence[int]) -> list[PageText]:
    """Return the text of the given 1-indexed pages, in the order requested.

    Raises:
        PageExtractionError: if the PDF cannot be read or a page is out of range.
    """
    try:
        reader = PdfReader(str(pdf_path))
    except Exception as e:
        raise PageExtractionError(f"Failed to open {pdf_path}: {e}") from e

    total = len(reader.pages)
    pages: list[PageText] = []
    for number in page_numbers:
        if not 1 <= number <= total:
            raise PageExtractionError(f"{pdf_path.name} has no page {number} (pages: {total})")
        try:
            text = reader.pages[number - 1].extract_text() or ""
        except Exception as e:
            raise PageExtractionError(
                f"Failed to extract page {number} of {pdf_path}: {e}"
            ) from e
        pages.append(PageText(page_number=number, text=text.strip()))

    logger.debug(
        "Extracted %d page(s) from %s (%s chars)",
        len(pages),
        pdf_path.name,
        f"{sum(len(p.text) for p in pages):,}",
    )
    return pages
