"""Positioned text tokens to ordered text lines.

Tokens are grouped per page by a quantized vertical position and joined left
to right. ``y`` grows downwards from the top of the page.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class TextToken:
    text: str
    x: float
    y: float
    page: int = 1


@dataclass(frozen=True)
class TextLine:
    text: str
    page: int
    y: float


def group_lines(tokens: Iterable[TextToken], y_bucket: float = 2.0) -> list[TextLine]:
    """Group tokens into lines by (page, round(y / y_bucket)).

    Args:
        tokens: Positioned tokens in any order
        y_bucket: Vertical quantization step; tokens within a bucket share a line

    Returns:
        Lines ordered top-to-bottom, page by page
    """
    if y_bucket <= 0:
        raise ValueError("y_bucket must be positive")

    buckets: dict[tuple[int, int], list[TextToken]] = defaultdict(list)
    for token in tokens:
        text = token.text.strip()
        if not text:
            continue
        buckets[(token.page, round(token.y / y_bucket))].append(token)

    lines = []
    for (page, _), members in sorted(buckets.items()):
        members.sort(key=lambda t: t.x)
        text = " ".join(t.text.strip() for t in members)
        lines.append(TextLine(text=" ".join(text.split()), page=page, y=min(t.y for t in members)))
    return lines
