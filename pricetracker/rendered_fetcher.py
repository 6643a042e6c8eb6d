"""Playwright-based price fetcher for JavaScript-rendered product pages."""

import random
from decimal import Decimal
from typing import Any, Dict, List, Optional

from loguru import logger
from playwright.sync_api import Error as PlaywrightError, Page, sync_playwright
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from pricetracker.config_loader import get_domain_selectors, get_scraping_config, hostname_of
from pricetracker.price_parser import fragment_values, make_candidate, parse_price
from pricetracker.results import ErrorKind, ExtractionResult, PriceCandidate, SourceTag
from pricetracker.selection import fuse_candidates, rank_proximity_groups
from pricetracker.signals import (
    GENERIC_PRICE_SELECTORS,
    detect_out_of_stock,
    extract_structured_prices,
    is_promotional,
    ld_json_blocks_from_html,
    scan_currency_amounts,
    scan_inline_json,
    scan_json_prices,
)

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
]

VIEWPORTS = [
    {"width": 1280, "height": 800},
    {"width": 1366, "height": 768},
    {"width": 1440, "height": 900},
    {"width": 1536, "height": 864},
    {"width": 1920, "height": 1080},
]

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
]

STEALTH_SCRIPT = """
() => {
    try {
        Object.defineProperty(navigator, 'webdriver', { get: () => false });
        Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
        Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
        window.chrome = { runtime: {} };
    } catch (e) {}
}
"""

LD_JSON_SELECTOR = "script[type='application/ld+json']"

BODY_TEXT_SCRIPT = "() => (document.body && document.body.innerText) || ''"

PRICE_TEXT_READY_SCRIPT = (
    "() => /[$£€]\\s?\\d/.test((document.body && document.body.innerText) || '')"
)

SPLIT_PRICE_SCRIPT = """
(el) => Array.from(el.querySelectorAll('span'))
    .filter(s => s.children.length === 0)
    .map(s => (s.textContent || '').trim())
    .filter(t => /[\\d$.,]/.test(t))
"""

PROXIMITY_SELECTORS = GENERIC_PRICE_SELECTORS + [
    "[class*='Price']",
    "[class*='price'] span",
    "[data-testid*='price']",
    "[data-test*='price']",
    "[id*='price']",
    ".sale-price",
    ".current-price",
    ".our-price",
    ".final-price",
]

PROXIMITY_SCAN_SCRIPT = """
(selectors) => {
    const fragments = [];
    const seen = new Set();
    const push = (el, text, positional) => {
        if (!text) return;
        text = String(text).trim();
        if (!text || text.length > 80 || !/\\d/.test(text)) return;
        let top = null;
        if (positional) {
            const rect = el.getBoundingClientRect();
            if (!rect.width && !rect.height) return;
            top = rect.top + window.scrollY;
        }
        fragments.push({ text, top });
    };
    for (const sel of selectors) {
        let nodes = [];
        try { nodes = document.querySelectorAll(sel); } catch (e) { continue; }
        nodes.forEach(el => {
            if (seen.has(el)) return;
            seen.add(el);
            push(el, el.innerText || el.textContent, true);
        });
    }
    document.querySelectorAll('[data-price], [aria-label], [title]').forEach(el => {
        for (const attr of ['data-price', 'aria-label', 'title']) {
            const value = el.getAttribute(attr);
            if (value && /[$£€]\\s?\\d|^\\s*\\d+([.,]\\d{2})?\\s*$/.test(value)) push(el, value, true);
        }
    });
    document.querySelectorAll(
        "meta[property='og:price:amount'], meta[property='product:price:amount'], " +
        "meta[name='twitter:data1'], meta[name='twitter:label1']"
    ).forEach(el => push(el, el.getAttribute('content'), false));

    let anchor = null;
    const buttons = document.querySelectorAll(
        "button, input[type='submit'], a[role='button'], [name='add'], " +
        "[id*='add-to-cart'], [class*='add-to-cart']"
    );
    for (const b of buttons) {
        const label = (b.innerText || b.value || b.getAttribute('aria-label') || '').toLowerCase();
        const hint = ((b.id || '') + ' ' + (b.getAttribute('class') || '')).toLowerCase();
        if (/add to (cart|bag|basket|trolley)|buy now/.test(label) || hint.includes('add-to-cart')) {
            const rect = b.getBoundingClientRect();
            if (rect.width || rect.height) {
                anchor = rect.top + window.scrollY;
                break;
            }
        }
    }
    return { fragments, anchor };
}
"""

TITLE_FALLBACK_SCRIPT = """
() => {
    const selectors = [
        "h1.product-title",
        "h1[itemprop='name']",
        "h1[data-testid='product-name']",
    ];
    for (const s of selectors) {
        const el = document.querySelector(s);
        if (el && el.textContent.trim()) return el.textContent.trim();
    }
    const meta = document.querySelector("meta[property='og:title']");
    return meta ? (meta.getAttribute('content') || '') : '';
}
"""

ANTI_BOT_MARKERS = [
    "just a moment",
    "verify you are human",
    "checking your browser",
    "attention required",
    "cf-challenge",
    "enable javascript and cookies",
    "captcha",
]


class BrowserLaunchError(Exception):
    """Raised when the headless browser cannot be started."""
    pass


class RenderedPageFetcher:
    """Extracts a price from one rendered page with a dedicated browser."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, headless: Optional[bool] = None):
        """Initialize the fetcher.

        Args:
            config: Configuration dictionary
            headless: Override headless mode from config
        """
        self.config = config or {}
        scraping_config = get_scraping_config(self.config)
        browser_config = scraping_config.get("browser", {}) or {}

        self.headless = headless if headless is not None else browser_config.get("headless", True)
        self.navigation_timeout = int(scraping_config.get("navigation_timeout_ms", 60000))
        self.default_timeout = int(scraping_config.get("timeout_ms", 15000))
        self.selector_retry_ms = int(scraping_config.get("selector_retry_ms", 10000))
        self.structured_data_wait_ms = int(scraping_config.get("structured_data_wait_ms", 3000))
        self.proximity_wait_ms = int(scraping_config.get("proximity_wait_ms", 5000))
        self.settle_min_ms = int(scraping_config.get("settle_min_ms", 2000))
        self.settle_max_ms = max(self.settle_min_ms, int(scraping_config.get("settle_max_ms", 2500)))
        self.title_timeout = int(scraping_config.get("title_timeout_ms", 45000))
        self.title_settle_ms = int(scraping_config.get("title_settle_ms", 4000))
        self.user_agents = browser_config.get("user_agents") or USER_AGENTS
        self.viewports = browser_config.get("viewports") or VIEWPORTS

        self.page: Optional[Page] = None
        self.playwright = None
        self.browser = None
        self.context = None
        self._json_responses: List[Any] = []

    def start(self):
        """Start the browser and create a new page."""
        logger.debug("Starting browser (headless={})", self.headless)
        self.playwright = sync_playwright().start()
        try:
            try:
                self.browser = self._launch_browser()
            except PlaywrightError as e:
                raise BrowserLaunchError(f"Browser launch failed: {e}") from e

            self.context = self.browser.new_context(
                viewport=random.choice(self.viewports),
                user_agent=random.choice(self.user_agents),
                locale="en-US",
                extra_http_headers={"Accept-Language": "en-US,en;q=0.9"},
            )
            self.context.add_init_script(STEALTH_SCRIPT)

            self.page = self.context.new_page()
            self.page.set_default_timeout(self.default_timeout)
            self.page.set_default_navigation_timeout(self.navigation_timeout)
        except BaseException:
            self.stop()
            raise

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(PlaywrightError),
        reraise=True,
    )
    def _launch_browser(self):
        return self.playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)

    def stop(self):
        """Stop the browser and cleanup."""
        if self.context:
            try:
                self.context.close()
            except Exception:
                pass
        if self.browser:
            try:
                self.browser.close()
            except Exception:
                pass
        if self.playwright:
            try:
                self.playwright.stop()
            except Exception:
                pass
        self.page = None
        self.context = None
        self.browser = None
        self.playwright = None
        logger.debug("Browser stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    # -- signal sources -------------------------------------------------

    def _on_response(self, response) -> None:
        try:
            content_type = (response.headers or {}).get("content-type", "")
        except Exception:
            return
        if "application/json" in content_type:
            self._json_responses.append(response)

    def _collect_network_candidates(self, pool: List[PriceCandidate]) -> None:
        pending, self._json_responses = self._json_responses, []
        added = 0
        for response in pending:
            try:
                body = response.text()
            except Exception as e:
                logger.debug("Could not read JSON response {}: {}", getattr(response, "url", "?"), e)
                continue
            for value in scan_json_prices(body):
                candidate = make_candidate(value, SourceTag.NETWORK_JSON)
                if candidate:
                    pool.append(candidate)
                    added += 1
        if added:
            logger.debug("Network JSON candidates: {}", added)

    def _navigate(self, url: str) -> Optional[str]:
        try:
            self.page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout)
            return None
        except Exception as e:
            logger.warning("Navigation warning for {}: {}", url, e)
            return str(e)

    def _settle(self) -> None:
        self.page.wait_for_timeout(random.uniform(self.settle_min_ms, self.settle_max_ms))

    def _page_content(self) -> str:
        try:
            return self.page.content() or ""
        except Exception as e:
            logger.warning("Could not read page content: {}", e)
            return ""

    def _body_text(self) -> str:
        try:
            return self.page.evaluate(BODY_TEXT_SCRIPT) or ""
        except Exception as e:
            logger.warning("Could not read body text: {}", e)
            return ""

    def _collect_inline_json(self, html: str, pool: List[PriceCandidate]) -> None:
        matches = scan_inline_json(html)
        for value, offset in matches:
            candidate = make_candidate(value, SourceTag.INLINE_JSON, offset)
            if candidate:
                pool.append(candidate)
        if matches:
            logger.debug("Inline HTML JSON matches: {}", len(matches))

    def _structured_data_blocks(self, html: str) -> List[str]:
        try:
            self.page.wait_for_selector(
                LD_JSON_SELECTOR,
                state="attached",
                timeout=self.structured_data_wait_ms,
            )
        except Exception:
            logger.debug("No structured data attached within {}ms", self.structured_data_wait_ms)

        blocks: List[str] = []
        try:
            blocks = [
                text for text in self.page.locator(LD_JSON_SELECTOR).all_text_contents()
                if text and text.strip()
            ]
        except Exception as e:
            logger.debug("Structured data DOM query failed: {}", e)

        if not blocks:
            blocks = ld_json_blocks_from_html(html)
        return blocks

    def _collect_structured_data(self, html: str, pool: List[PriceCandidate]) -> None:
        try:
            values = extract_structured_prices(self._structured_data_blocks(html))
        except Exception as e:
            logger.warning("Structured data extraction failed: {}", e)
            return
        for value in values:
            candidate = make_candidate(value, SourceTag.STRUCTURED_DATA)
            if candidate:
                pool.append(candidate)
        if values:
            logger.debug("Structured data prices: {}", ", ".join(str(v) for v in values))

    def _query_with_retry(self, selector: str):
        element = self.page.query_selector(selector)
        if element is None:
            logger.info("Custom selector '{}' not found, retrying after {}ms", selector, self.selector_retry_ms)
            self.page.wait_for_timeout(self.selector_retry_ms)
            element = self.page.query_selector(selector)
        return element

    def _custom_selector_price(self, selector: str) -> Optional[Decimal]:
        for sel in [s.strip() for s in selector.split(",") if s.strip()]:
            try:
                element = self._query_with_retry(sel)
                if element is None:
                    logger.info("Custom selector '{}' still not found after retry", sel)
                    continue
                text = (element.inner_text() or "").strip()
                if not text:
                    logger.info("Custom selector '{}' found but empty", sel)
                    continue
                values = fragment_values(text)
                if values:
                    chosen = min(values)
                    logger.info("Custom selector '{}' matched, forcing price {}", sel, chosen)
                    return chosen
                logger.info("Custom selector '{}' found but no valid numeric values", sel)
            except Exception as e:
                logger.warning("Error checking custom selector '{}': {}", sel, e)

        logger.warning("Custom selector '{}' was defined but failed to yield a price", selector)
        return None

    def _collect_generic_selectors(self, hostname: str, pool: List[PriceCandidate]) -> None:
        selectors = get_domain_selectors(self.config, hostname) or GENERIC_PRICE_SELECTORS
        for sel in selectors:
            try:
                element = self.page.query_selector(sel)
                if element is None:
                    continue
                values = fragment_values((element.inner_text() or "").strip())
            except Exception as e:
                logger.debug("Selector '{}' failed: {}", sel, e)
                continue
            if values:
                logger.debug("Selector {} gave candidates: {}", sel, ", ".join(str(v) for v in values))
                pool.extend(PriceCandidate(value=v, source=SourceTag.SELECTOR) for v in values)
                break

    @staticmethod
    def assemble_split_price(pieces: List[str]) -> Optional[Decimal]:
        """Join split-span price parts such as ['$', '49', '99'] into 49.99."""
        pieces = [p for p in pieces if p]
        if not pieces:
            return None
        digits_only = [p for p in pieces if p.isdigit()]
        joined = "".join(pieces)
        if "." not in joined and "," not in joined and len(digits_only) >= 2 and len(digits_only[-1]) == 2:
            joined = "".join(digits_only[:-1]) + "." + digits_only[-1]
        return parse_price(joined)

    def _collect_split_prices(self, pool: List[PriceCandidate]) -> None:
        for sel in GENERIC_PRICE_SELECTORS:
            container_selector = sel.split(" ")[0]
            try:
                container = self.page.query_selector(container_selector)
                if container is None:
                    continue
                pieces = container.evaluate(SPLIT_PRICE_SCRIPT) or []
            except Exception as e:
                logger.debug("Split price scan failed for '{}': {}", container_selector, e)
                continue
            candidate = make_candidate(self.assemble_split_price(pieces), SourceTag.SELECTOR)
            if candidate:
                logger.debug("Reassembled price from {}: {} ({})", container_selector, candidate.value, pieces)
                pool.append(candidate)
                break

    def _collect_proximity(self, pool: List[PriceCandidate]) -> None:
        try:
            self.page.wait_for_function(PRICE_TEXT_READY_SCRIPT, timeout=self.proximity_wait_ms)
        except Exception:
            logger.debug("No price-shaped text within {}ms", self.proximity_wait_ms)

        try:
            scan = self.page.evaluate(PROXIMITY_SCAN_SCRIPT, PROXIMITY_SELECTORS) or {}
        except Exception as e:
            logger.warning("Visible DOM scan failed: {}", e)
            return

        fragments = []
        for item in scan.get("fragments") or []:
            text = item.get("text")
            if is_promotional(text):
                continue
            try:
                values = fragment_values(text)
            except (ArithmeticError, ValueError) as e:
                logger.debug("Skipping visible fragment {!r}: {}", text, e)
                continue
            fragments.extend((value, item.get("top")) for value in values)

        groups = rank_proximity_groups(fragments, scan.get("anchor"))
        for group in groups:
            position = int(group.positions[0]) if group.positions else None
            pool.extend(
                PriceCandidate(value=group.value, source=SourceTag.VISIBLE_DOM, position=position)
                for _ in range(group.count)
            )
        if groups:
            logger.debug(
                "Visible DOM groups: {}",
                ", ".join(f"{g.value}x{g.count}@{g.score:.2f}" for g in groups[:5]),
            )

    def _collect_fulltext(self, body_text: str, pool: List[PriceCandidate]) -> None:
        added = []
        for value, offset in scan_currency_amounts(body_text):
            candidate = make_candidate(value, SourceTag.FULLTEXT, offset)
            if candidate:
                pool.append(candidate)
                added.append(str(candidate.value))
        if added:
            logger.debug("Full-text candidates: {}", ", ".join(added))

    @staticmethod
    def _detect_anti_bot_marker(text: str) -> Optional[str]:
        lowered = (text or "").lower()
        for marker in ANTI_BOT_MARKERS:
            if marker in lowered:
                return marker
        return None

    # -- public operations ----------------------------------------------

    def fetch(self, url: str, selector: Optional[str] = None, proximity_scan: bool = False) -> ExtractionResult:
        """Run every signal source against the page and fuse the candidates."""
        if not self.page:
            raise RuntimeError("Browser not started")

        pool: List[PriceCandidate] = []
        self._json_responses = []
        self.page.on("response", self._on_response)

        navigation_error = self._navigate(url)
        self._settle()
        self._collect_network_candidates(pool)

        html = self._page_content()
        self._collect_inline_json(html, pool)
        self._collect_structured_data(html, pool)

        if selector:
            forced = self._custom_selector_price(selector)
            if forced is not None:
                return ExtractionResult.found(forced)

        self._collect_generic_selectors(hostname_of(url), pool)
        if not pool:
            self._collect_split_prices(pool)
        if proximity_scan:
            self._collect_proximity(pool)
        self._collect_network_candidates(pool)

        body_text = self._body_text()
        if not pool:
            self._collect_fulltext(body_text, pool)

        stock_keyword = detect_out_of_stock(body_text)
        price = fuse_candidates(pool)

        if price is not None:
            if stock_keyword:
                logger.info("Ignoring stock text '{}' on {}: a price was found", stock_keyword, url)
            logger.info("Candidates: {} -> chosen {}", len(pool), price)
            return ExtractionResult.found(price)

        if stock_keyword:
            logger.info("No price and stock depletion text '{}' on {}", stock_keyword, url)
            return ExtractionResult.failed(ErrorKind.OUT_OF_STOCK, stock_keyword)
        if navigation_error:
            return ExtractionResult.failed(ErrorKind.NAVIGATION_ERROR, navigation_error)

        marker = self._detect_anti_bot_marker(body_text)
        if marker:
            logger.warning("Page appears blocked by anti-bot challenge ({}): {}", marker, url)
            return ExtractionResult.failed(ErrorKind.NO_PRICE_FOUND, f"anti-bot challenge ({marker})")
        logger.info("No price candidates found for {}", url)
        return ExtractionResult.failed(ErrorKind.NO_PRICE_FOUND)

    def title(self, url: str) -> str:
        """Best-effort product title, falling back to the hostname."""
        if not self.page:
            raise RuntimeError("Browser not started")

        try:
            self.page.goto(url, wait_until="networkidle", timeout=self.title_timeout)
        except Exception as e:
            logger.warning("[{}] Navigation warning: {}", url, e)
        self.page.wait_for_timeout(self.title_settle_ms)

        title = (self.page.title() or "").strip()
        if len(title) < 3:
            title = (self.page.evaluate(TITLE_FALLBACK_SCRIPT) or "").strip()
        return title or hostname_of(url)


def fetch_rendered(
    url: str,
    selector: Optional[str] = None,
    config: Optional[Dict[str, Any]] = None,
    proximity_scan: bool = False,
    headless: Optional[bool] = None,
) -> ExtractionResult:
    """Fetch one page with a fresh browser that is torn down afterwards."""
    logger.info("[browser] Fetching {}{}", url, f" (selector: {selector})" if selector else "")
    try:
        with RenderedPageFetcher(config, headless=headless) as fetcher:
            return fetcher.fetch(url, selector=selector, proximity_scan=proximity_scan)
    except Exception as e:
        logger.warning("[browser] Failed for {}: {}", url, e)
        return ExtractionResult.failed(ErrorKind.UNKNOWN, str(e))


def fetch_title(url: str, config: Optional[Dict[str, Any]] = None) -> str:
    try:
        with RenderedPageFetcher(config) as fetcher:
            return fetcher.title(url)
    except Exception as e:
        logger.warning("Title fetch failed for {}: {}", url, e)
        return hostname_of(url)
