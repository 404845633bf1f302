"""Price book record segmentation.

Turns ordered text lines into catalog records using the price book's code
grammar. A record starts at a line beginning with a letter-prefixed code
(``B0001.0030``, ``RP0010``) followed by unit and price, in either order::

    B0001.0030 h 28,59 Oficial 1ª construcción
    B0001.0070 u Contenedor de residuos 23,01

Following lines are appended to the description until the next record or a
section heading. Lines that cannot be parsed are reported as issues, never
raised, so a drifting layout costs individual records rather than the job.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from obracalc.core.errors import ParseError, ValidationError
from obracalc.ingestion.layout import TextLine
from obracalc.models import CatalogItem

logger = logging.getLogger(__name__)

RECORD_START = re.compile(r"^(?P<code>[A-Z]{1,2}\d{3,4}(?:\.\d{2,4})?)(?=\s|$)\s*(?P<rest>.*)$")
PRICE_TOKEN = re.compile(r"^-?(?:\d{1,3}(?:\.\d{3})+|\d+),\d{1,4}$")
_DECIMAL = re.compile(r"^-?(?:\d{1,3}(?:\.\d{3})+|\d+)(?:,\d{1,4})?$")

# Layout noise
_FOOTER = re.compile(r"^--\s*\d+\s+of\s+\d+\s*--$|^P[áa]gina\s+\d+", re.IGNORECASE)
_BREAKDOWN = re.compile(r"^(?:[a-z]{2}\d|%)")
_MERGED_CODE_TAILS = (
    re.compile(r"\s+[A-Z]\d{4}\.\d{4}.*$"),
    re.compile(r"\s+[a-z]{2}\d{2,}.*$"),
)

UNIT_ALIASES = {
    "m": "m",
    "ml": "ml",
    "m2": "m2",
    "m²": "m2",
    "m3": "m3",
    "m³": "m3",
    "u": "u",
    "u.": "u",
    "ud": "u",
    "ud.": "u",
    "uds": "u",
    "h": "h",
    "kg": "kg",
    "l": "l",
    "t": "t",
    "km": "km",
    "pa": "pa",
    "mes": "mes",
}
UNITS = frozenset(UNIT_ALIASES.values())


@dataclass
class ParsedRecord:
    code: str
    description: str
    unit: str
    unit_price: Decimal
    page: int = 1
    suspicious: bool = False

    def to_catalog_item(self, year: int, job_id: str | None = None) -> CatalogItem:
        return CatalogItem(
            code=self.code,
            description=self.description,
            unit=self.unit,
            unit_price=self.unit_price,
            year=year,
            source_job_id=job_id,
        )


@dataclass
class ParseIssue:
    kind: str  # "parse" or "validation"
    message: str
    line: str


@dataclass
class SegmentationResult:
    records: list[ParsedRecord] = field(default_factory=list)
    issues: list[ParseIssue] = field(default_factory=list)
    suspicious: list[ParsedRecord] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return len(self.issues)


def parse_price(text: str) -> Decimal:
    """Parse a comma-decimal amount (``1.234,56`` -> ``Decimal("1234.56")``).

    Raises:
        ValidationError: If the text is not a locale-formatted number
    """
    cleaned = text.strip().replace("€", "").strip()
    if not _DECIMAL.match(cleaned):
        raise ValidationError(f"Unparseable price: {text!r}")
    try:
        return Decimal(cleaned.replace(".", "").replace(",", "."))
    except InvalidOperation as e:
        raise ValidationError(f"Unparseable price: {text!r}") from e


def format_price(value: Decimal) -> str:
    """Format an amount with the same locale rules ``parse_price`` reads.

    At least two decimals are written; sub-cent prices keep their own scale.
    """
    places = max(2, -value.normalize().as_tuple().exponent)
    formatted = f"{value:,.{places}f}"
    return formatted.translate(str.maketrans({",": ".", ".": ","}))


def normalize_unit(raw: str) -> str | None:
    return UNIT_ALIASES.get(raw.strip().lower())


def is_noise(text: str) -> bool:
    return bool(_FOOTER.match(text) or _BREAKDOWN.match(text))


def is_section_heading(text: str) -> bool:
    letters = [c for c in text if c.isalpha()]
    return len(letters) >= 4 and text == text.upper() and not RECORD_START.match(text)


def clean_description(text: str) -> str:
    for pattern in _MERGED_CODE_TAILS:
        text = pattern.sub("", text)
    return " ".join(text.split())


def _has_plain_thousands(price_text: str) -> bool:
    integer_part = price_text.lstrip("-").split(",")[0]
    return "." not in integer_part and len(integer_part) > 3


@dataclass
class _Draft:
    code: str
    unit: str
    price: str
    line: str
    page: int
    parts: list[str] = field(default_factory=list)


def _start_record(line: TextLine, match: re.Match[str]) -> _Draft:
    tokens = match.group("rest").split()

    if len(tokens) >= 2 and PRICE_TOKEN.match(tokens[1]):
        unit, price, description = tokens[0], tokens[1], tokens[2:]
    elif len(tokens) >= 2 and PRICE_TOKEN.match(tokens[-1]):
        unit, price, description = tokens[0], tokens[-1], tokens[1:-1]
    else:
        raise ParseError(f"No unit/price found for {match.group('code')}", line=line.text)

    return _Draft(
        code=match.group("code"),
        unit=unit,
        price=price,
        line=line.text,
        page=line.page,
        parts=[" ".join(description)] if description else [],
    )


def _finish_record(draft: _Draft, suspicious_threshold: Decimal | None) -> ParsedRecord:
    unit = normalize_unit(draft.unit)
    if unit is None:
        raise ValidationError(f"Unknown unit {draft.unit!r}", code=draft.code)

    price = parse_price(draft.price)
    if price <= 0:
        raise ValidationError(f"Non-positive price {draft.price}", code=draft.code)

    description = clean_description(" ".join(draft.parts))
    if not description:
        raise ValidationError("Missing description", code=draft.code)

    suspicious = _has_plain_thousands(draft.price) or (
        suspicious_threshold is not None and price > suspicious_threshold
    )
    return ParsedRecord(
        code=draft.code,
        description=description,
        unit=unit,
        unit_price=price,
        page=draft.page,
        suspicious=suspicious,
    )


def segment_records(
    lines: Iterable[TextLine],
    suspicious_threshold: Decimal | None = None,
) -> SegmentationResult:
    """Segment ordered lines into validated records.

    Args:
        lines: Lines in reading order (see ``layout.group_lines``)
        suspicious_threshold: Prices above this are kept but flagged

    Returns:
        Records in document order, plus one issue per skipped record
    """
    result = SegmentationResult()
    seen_codes: set[str] = set()
    draft: _Draft | None = None

    def flush() -> None:
        nonlocal draft
        if draft is None:
            return
        try:
            record = _finish_record(draft, suspicious_threshold)
            if record.code in seen_codes:
                raise ValidationError(f"Duplicate code {record.code}", code=record.code)
        except ValidationError as e:
            result.issues.append(ParseIssue(kind="validation", message=str(e), line=draft.line))
        else:
            seen_codes.add(record.code)
            result.records.append(record)
            if record.suspicious:
                result.suspicious.append(record)
        draft = None

    for line in lines:
        text = line.text.strip()
        if not text or is_noise(text):
            continue

        match = RECORD_START.match(text)
        if match:
            flush()
            try:
                draft = _start_record(line, match)
            except ParseError as e:
                result.issues.append(ParseIssue(kind="parse", message=str(e), line=text))
            continue

        if is_section_heading(text):
            flush()
            continue

        if draft is not None:
            draft.parts.append(text)

    flush()

    logger.info(
        f"Segmented {len(result.records)} records "
        f"({result.skipped} skipped, {len(result.suspicious)} flagged)"
    )
    return result
