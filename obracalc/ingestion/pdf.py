"""Positioned text extraction from PDF price books using pypdf."""

from __future__ import annotations

import logging
from io import BytesIO

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from obracalc.core.errors import ParseError
from obracalc.ingestion.layout import TextToken

logger = logging.getLogger(__name__)


def extract_tokens(data: bytes) -> list[TextToken]:
    """Extract text fragments with page coordinates (top-down y).

    Raises:
        ParseError: If the bytes are not a readable PDF
    """
    try:
        reader = PdfReader(BytesIO(data))
        pages = list(reader.pages)
    except (PdfReadError, ValueError, OSError) as e:
        raise ParseError(f"Unreadable PDF document: {e}") from e

    tokens: list[TextToken] = []
    for page_number, page in enumerate(pages, 1):
        height = float(page.mediabox.height)

        def visitor(text, cm, tm, font_dict, font_size, page_number=page_number, height=height):
            text = " ".join(text.split())
            if not text:
                return
            x = tm[4] * cm[0] + tm[5] * cm[2] + cm[4]
            y = tm[4] * cm[1] + tm[5] * cm[3] + cm[5]
            tokens.append(TextToken(text=text, x=x, y=height - y, page=page_number))

        page.extract_text(visitor_text=visitor)

    logger.info(f"Extracted {len(tokens)} text tokens from {len(pages)} pages")
    return tokens
