"""Text signals used by the fetchers: stock language, promo language, JSON price keys."""

import json
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional, Tuple

from loguru import logger

from pricetracker.price_parser import parse_price

GENERIC_PRICE_SELECTORS = [
    ".price",
    "[itemprop='price']",
    ".product-price",
    "span[class*='price']",
    ".price__value",
    ".price-wrapper .price",
    "span[data-price-type='current'] .price",
    "span[data-price-type='finalPrice'] .price",
    ".price-item.price-item--regular",
    ".money",
    ".product-price.leading-6.text-2xl.tracking-wide.font-medium",
    ".price__value.price__value--special",
    ".product-page-price.product-main-price",
    ".divPriceNormal",
    ".sprice",
    ".a-price-whole",
]

STOCK_DEPLETION_KEYWORDS = [
    "temporarily out of stock",
    "temporarily unavailable",
    "currently unavailable",
    "no longer available",
    "out of stock",
    "unavailable",
]

PROMOTIONAL_RE = re.compile(
    r"\b(?:off|save|saving|discount|coupon|month|monthly|per|afterpay|zip|klarna|shipping|delivery)\b|/",
    re.IGNORECASE,
)

CURRENCY_AMOUNT_RE = re.compile(r"[$£€]\s?[\d.,]*\d")

NETWORK_JSON_PATTERNS = [
    re.compile(r'"priceDisplay"\s*:\s*"?\$?([\d.,]+)'),
    re.compile(r'"salePrice"\s*:\s*"?\$?([\d.,]+)'),
    re.compile(r'"price"\s*:\s*"?\$?([\d.,]+)'),
]

INLINE_JSON_PATTERNS = [
    re.compile(r'"priceDisplay"\s*:\s*"?\$?([\d.,]+)', re.IGNORECASE),
    re.compile(r'"salePrice"\s*:\s*"?\$?([\d.,]+)', re.IGNORECASE),
    re.compile(r'"price"\s*:\s*"?\$?([\d.,]+)', re.IGNORECASE),
    re.compile(r'"price"\s*:\s*\{\s*"amount"\s*:\s*([\d.]+)', re.IGNORECASE),
    re.compile(r'"price"\s*:\s*\{[^{}]*?"value"\s*:\s*"?([\d.]+)', re.IGNORECASE),
    re.compile(r'"amount"\s*:\s*([\d.]+)\s*(?:,|\})', re.IGNORECASE),
    re.compile(r"'priceDisplay'\s*:\s*'?\\?\$?([\d.,]+)", re.IGNORECASE),
]

LD_JSON_RE = re.compile(
    r"<script[^>]*type=[\"']application/ld\+json[\"'][^>]*>(.*?)</script>",
    re.IGNORECASE | re.DOTALL,
)
_CONCATENATED_OBJECTS_RE = re.compile(r"\}\s*\{")


def detect_out_of_stock(text: Optional[str]) -> Optional[str]:
    """Return the stock-depletion keyword found in the text, if any."""
    if not text:
        return None
    lowered = text.lower()
    for keyword in STOCK_DEPLETION_KEYWORDS:
        if keyword in lowered:
            return keyword
    return None


def is_promotional(text: Optional[str]) -> bool:
    return bool(text) and PROMOTIONAL_RE.search(text) is not None


def _scan(patterns, text: str) -> List[Tuple[Decimal, int]]:
    found = []
    for pattern in patterns:
        for match in pattern.finditer(text):
            value = parse_price(match.group(1))
            if value is not None:
                found.append((value, match.start(1)))
    return found


def scan_json_prices(text: Optional[str]) -> List[Decimal]:
    """Regex-scan serialized JSON for priceDisplay / salePrice / price values."""
    if not text:
        return []
    return [value for value, _ in _scan(NETWORK_JSON_PATTERNS, text)]


def scan_inline_json(html: Optional[str]) -> List[Tuple[Decimal, int]]:
    """Scan page source for JSON-ish price keys, keeping character offsets."""
    if not html:
        return []
    return _scan(INLINE_JSON_PATTERNS, html)


def ld_json_blocks_from_html(html: Optional[str]) -> List[str]:
    if not html:
        return []
    return [match.group(1) for match in LD_JSON_RE.finditer(html)]


def parse_json_blocks(text: Optional[str]) -> List[Any]:
    """Parse one script body, splitting concatenated `}{` objects when needed."""
    if not text or not text.strip():
        return []
    body = text.strip()
    try:
        return [json.loads(body)]
    except ValueError:
        pass

    parts = _CONCATENATED_OBJECTS_RE.split(body)
    if len(parts) < 2:
        logger.debug("Unparseable structured data block ({} chars)", len(body))
        return []

    pieces = [parts[0] + "}"]
    pieces.extend("{" + part + "}" for part in parts[1:-1])
    pieces.append("{" + parts[-1])

    parsed = []
    for piece in pieces:
        try:
            parsed.append(json.loads(piece))
        except ValueError:
            logger.debug("Skipping malformed structured data fragment")
    return parsed


def _to_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None
    if isinstance(value, str):
        return parse_price(value)
    return None


def _walk_prices(node: Any, found: List[Decimal], in_offers: bool = False) -> None:
    if isinstance(node, list):
        for child in node:
            _walk_prices(child, found, in_offers)
        return
    if not isinstance(node, dict):
        return

    for key, value in node.items():
        if key == "price":
            price = _to_decimal(value)
            if price is not None:
                found.append(price)
            elif isinstance(value, (dict, list)):
                _walk_prices(value, found, in_offers)
        elif key == "offers":
            _walk_prices(value, found, in_offers=True)
        elif key == "lowPrice" and in_offers and "price" not in node:
            price = _to_decimal(value)
            if price is not None:
                found.append(price)
        elif isinstance(value, (dict, list)):
            _walk_prices(value, found, in_offers)


def extract_structured_prices(blocks: Iterable[str]) -> List[Decimal]:
    """Collect every price (including priceSpecification and offers) from JSON-LD blocks."""
    found: List[Decimal] = []
    for block in blocks:
        for document in parse_json_blocks(block):
            _walk_prices(document, found)
    return found


def _line_around(text: str, start: int, end: int) -> str:
    line_start = text.rfind("\n", 0, start) + 1
    line_end = text.find("\n", end)
    if line_end == -1:
        line_end = len(text)
    return text[line_start:line_end]


def scan_currency_amounts(
    text: Optional[str],
    exclude_promotional: bool = True,
) -> List[Tuple[Decimal, int]]:
    """Find currency-prefixed amounts, skipping lines with promotional wording."""
    if not text:
        return []
    found = []
    for match in CURRENCY_AMOUNT_RE.finditer(text):
        if exclude_promotional and is_promotional(_line_around(text, match.start(), match.end())):
            continue
        value = parse_price(match.group())
        if value is not None:
            found.append((value, match.start()))
    return found
