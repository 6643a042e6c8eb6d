"""Fetch dispatch: route a URL to the static or the rendered-page fetcher."""

from typing import Any, Dict, Optional, Union

from loguru import logger

from pricetracker import rendered_fetcher, static_fetcher
from pricetracker.results import ExtractionResult, ScraperMode


def fetch_price(
    url: str,
    mode: Union[ScraperMode, str, None] = ScraperMode.AUTO,
    selector: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
    proximity_scan: bool = False,
) -> ExtractionResult:
    """Extract the current price of a product page.

    Args:
        url: Product page URL
        mode: 'simple' for one HTTP GET, 'puppeteer' or 'auto' for a rendered page
        selector: Optional CSS selector (comma-separated list allowed)
        config: Configuration dictionary
        proximity_scan: Also score visible price text by distance to the buy button

    Returns:
        ExtractionResult with either a price or an error kind.
    """
    mode = ScraperMode.parse(mode)
    logger.debug("Dispatching {} with mode={}", url, mode.value)
    if mode == ScraperMode.SIMPLE:
        return static_fetcher.fetch_simple(url, selector=selector, config=config)
    return rendered_fetcher.fetch_rendered(
        url,
        selector=selector,
        config=config,
        proximity_scan=proximity_scan,
    )


def fetch_title(url: str, config: Optional[Dict[str, Any]] = None) -> str:
    """Product title for a page; the hostname when none can be read."""
    return rendered_fetcher.fetch_title(url, config=config)
