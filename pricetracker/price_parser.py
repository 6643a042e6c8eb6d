"""Text price parsing and candidate construction."""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterator, List, Optional

from pricetracker.results import PriceCandidate, SourceTag

MIN_PRICE = Decimal("0")
MAX_PRICE = Decimal("100000")
CENTS_THRESHOLD = Decimal("9999")
CENT = Decimal("0.01")

_NON_PRICE_CHARS = re.compile(r"[^\d.,]")
_NUMERIC_PREFIX = re.compile(r"\d+(?:\.\d+)?|\.\d+")
PRICE_FRAGMENT_RE = re.compile(r"[$£€]?\s?[\d.,]*\d[\d.,]*")


def parse_price(text: Any) -> Optional[Decimal]:
    """Parse free-form price text into a Decimal.

    Keeps digits, dots and commas only. With both separators present the comma
    is a thousands separator; with only commas it is the decimal point.
    The leading numeric prefix of the cleaned string is used.

    Returns:
        Parsed value, or None when nothing numeric is left.
    """
    if text is None:
        return None

    cleaned = _NON_PRICE_CHARS.sub("", str(text))
    if not cleaned:
        return None

    if "," in cleaned and "." in cleaned:
        cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")

    match = _NUMERIC_PREFIX.match(cleaned)
    if not match:
        return None
    try:
        return Decimal(match.group())
    except InvalidOperation:
        return None


def price_fragments(text: Optional[str]) -> Iterator[str]:
    """Yield price-shaped substrings such as '$ 1,299.00' or '49,90'."""
    if not text:
        return
    for match in PRICE_FRAGMENT_RE.finditer(text):
        yield match.group().strip()


def first_price_fragment(text: Optional[str]) -> Optional[str]:
    return next(price_fragments(text), None)


def apply_cents_heuristic(value: Decimal) -> Decimal:
    """Divide integral values above 9999 by 100 (suspected cents encoding)."""
    if value > CENTS_THRESHOLD and value == value.to_integral_value():
        return value / 100
    return value


def in_price_range(value: Optional[Decimal]) -> bool:
    return value is not None and MIN_PRICE < value < MAX_PRICE


def make_candidate(
    value: Optional[Decimal],
    source: SourceTag,
    position: Optional[int] = None,
) -> Optional[PriceCandidate]:
    """Build a candidate, or None when the value is parsing noise."""
    if value is None:
        return None
    value = apply_cents_heuristic(value)
    if not in_price_range(value):
        return None
    return PriceCandidate(value=value, source=source, position=position)


def round_price(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def fragment_values(text: Optional[str]) -> List[Decimal]:
    """Parse every price fragment of an element text into in-range values."""
    values = []
    for fragment in price_fragments(text):
        value = parse_price(fragment)
        if value is None:
            continue
        value = apply_cents_heuristic(value)
        if not in_price_range(value):
            continue
        value = round_price(value)
        if in_price_range(value):
            values.append(value)
    return values
