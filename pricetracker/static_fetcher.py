"""Single-request price fetcher for server-rendered pages."""

from typing import Any, Dict, List, Optional

import requests
from bs4 import BeautifulSoup
from loguru import logger

from pricetracker.config_loader import get_scraping_config, hostname_of
from pricetracker.price_parser import first_price_fragment, in_price_range, parse_price
from pricetracker.results import ErrorKind, ExtractionResult
from pricetracker.signals import CURRENCY_AMOUNT_RE, GENERIC_PRICE_SELECTORS, detect_out_of_stock

DEFAULT_TIMEOUT_SECONDS = 25
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
PRICE_META_SELECTORS = [
    "meta[property='og:price:amount']",
    "meta[property='product:price:amount']",
]


def build_headers(url: str, user_agent: Optional[str] = None) -> Dict[str, str]:
    """Browser-like request headers with a referer on the page's own host."""
    return {
        "User-Agent": user_agent or DEFAULT_USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Referer": f"https://{hostname_of(url)}/",
    }


def _visible_text(soup: BeautifulSoup) -> str:
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    return soup.get_text(" ", strip=True)


def _first_selector_text(soup: BeautifulSoup, selectors: List[str]) -> Optional[str]:
    for selector in selectors:
        try:
            element = soup.select_one(selector)
        except Exception as e:
            logger.debug("Selector '{}' rejected: {}", selector, e)
            continue
        if element is None:
            continue
        text = element.get_text(" ", strip=True) or (element.get("content") or "").strip()
        if text:
            logger.debug("Found text from selector '{}': '{}'", selector, text)
            return text
    return None


def extract_price_text(soup: BeautifulSoup, page_text: str, selector: Optional[str] = None) -> Optional[str]:
    """First non-empty price text: selectors, then price meta, then a currency regex."""
    selectors = [selector] if selector else GENERIC_PRICE_SELECTORS
    text = _first_selector_text(soup, selectors)
    if text:
        return text

    for meta_selector in PRICE_META_SELECTORS:
        meta = soup.select_one(meta_selector)
        content = (meta.get("content") or "").strip() if meta else ""
        if content:
            logger.debug("Found price from meta '{}': '{}'", meta_selector, content)
            return content

    match = CURRENCY_AMOUNT_RE.search(page_text or "")
    if match:
        logger.debug("Found price from page text: '{}'", match.group())
        return match.group()
    return None


def fetch_simple(
    url: str,
    selector: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
) -> ExtractionResult:
    """Fetch a page with one GET and extract the first price found.

    Stock depletion text ends the attempt before any price lookup.
    """
    scraping_cfg = get_scraping_config(config)
    timeout = float(scraping_cfg.get("http_timeout_seconds", DEFAULT_TIMEOUT_SECONDS))
    logger.info("[simple] Fetching {}{}", url, f" (selector: {selector})" if selector else "")

    try:
        response = requests.get(
            url,
            headers=build_headers(url, scraping_cfg.get("user_agent")),
            timeout=timeout,
        )
    except requests.RequestException as e:
        logger.warning("[simple] Request failed for {}: {}", url, e)
        return ExtractionResult.failed(ErrorKind.NAVIGATION_ERROR, str(e))

    if response.status_code >= 400:
        logger.warning("[simple] Bad status {} for {}", response.status_code, url)
        return ExtractionResult.failed(ErrorKind.BAD_STATUS, f"HTTP {response.status_code}")

    try:
        soup = BeautifulSoup(response.text, "html.parser")
        page_text = _visible_text(soup)

        keyword = detect_out_of_stock(page_text)
        if keyword:
            logger.info("[simple] Stock depletion text '{}' on {}", keyword, url)
            return ExtractionResult.failed(ErrorKind.OUT_OF_STOCK, keyword)

        text = extract_price_text(soup, page_text, selector)
        if not text:
            logger.info("[simple] No price text found on {}", url)
            return ExtractionResult.failed(ErrorKind.NO_PRICE_FOUND)

        price = parse_price(first_price_fragment(text))
        if not in_price_range(price):
            logger.info("[simple] Unusable price text '{}' on {}", text, url)
            return ExtractionResult.failed(ErrorKind.NO_PRICE_FOUND, text)

        logger.info("[simple] Parsed price {} for {}", price, url)
        return ExtractionResult.found(price)
    except Exception as e:
        logger.warning("[simple] Failed for {}: {}", url, e)
        return ExtractionResult.failed(ErrorKind.UNKNOWN, str(e))
