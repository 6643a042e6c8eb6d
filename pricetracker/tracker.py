"""Update workflow: fetch every tracked site, guard the result and fold it into history."""

import time
import traceback
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional

from loguru import logger
from sqlalchemy.orm import Session

from pricetracker.config_loader import (
    ScraperConfig,
    get_tracking_config,
    hostname_of,
    load_config,
    resolve_scraper_config,
)
from pricetracker.models import (
    ItemPriceObservation,
    ScrapeError,
    ScrapeRun,
    SitePriceObservation,
    TrackedItem,
    TrackedSite,
    get_engine,
    get_session_factory,
    init_db,
    now_utc,
)
from pricetracker.repository import TrackerRepository
from pricetracker.results import ErrorKind, ExtractionResult, ScraperMode
from pricetracker.scraper import fetch_price

DEFAULT_MAX_CHANGE_RATIO = 0.7
IMPLAUSIBLE_PREFIX = "Implausible change"

Fetcher = Callable[..., ExtractionResult]


def apply_plausibility_guard(
    result: ExtractionResult,
    previous_price: Optional[Decimal],
    max_change_ratio: float = DEFAULT_MAX_CHANGE_RATIO,
) -> ExtractionResult:
    """Reject a price that moved more than the allowed ratio since the last one.

    A rejected price is reported as out_of_stock so it never reaches history.
    """
    if result.price is None or previous_price is None:
        return result
    previous = Decimal(str(previous_price))
    if previous <= 0:
        return result

    change = abs(result.price - previous) / previous
    if change > Decimal(str(max_change_ratio)):
        message = (
            f"{IMPLAUSIBLE_PREFIX} from {previous} to {result.price} "
            f"({float(change):.0%} > {float(max_change_ratio):.0%})"
        )
        logger.warning("Plausibility guard: {}", message)
        return ExtractionResult.failed(ErrorKind.OUT_OF_STOCK, message)
    return result


def resolve_site_settings(site: TrackedSite, domain_configs: Iterable[ScraperConfig]) -> ScraperConfig:
    """Effective settings for a site: its own selector and mode first, then the domain's.

    `configured` stays the domain's, so only hosts with a stored setting get
    the visible DOM proximity scan.
    """
    domain = resolve_scraper_config(hostname_of(site.url), domain_configs)
    return ScraperConfig(
        domain=domain.domain,
        selector=site.selector or domain.selector or None,
        scraper_mode=ScraperMode.parse(site.scraper_mode) if site.scraper_mode else domain.scraper_mode,
        configured=domain.configured,
    )


def update_site(
    session: Session,
    site: TrackedSite,
    config: Optional[Dict[str, Any]] = None,
    domain_configs: Iterable[ScraperConfig] = (),
    fetcher: Optional[Fetcher] = None,
    run_id: Optional[int] = None,
) -> ExtractionResult:
    """Fetch one site and record the price when it passes the guard."""
    fetcher = fetcher or fetch_price
    settings = resolve_site_settings(site, domain_configs)
    logger.info(
        "[update] Processing site {} (domain: {}, scraper: {}, selector: {})",
        site.url,
        settings.domain,
        settings.scraper_mode.value,
        settings.selector or "none",
    )

    result = fetcher(
        site.url,
        mode=settings.scraper_mode,
        selector=settings.selector,
        config=config,
        proximity_scan=settings.configured,
    )
    ratio = float(get_tracking_config(config).get("max_change_ratio", DEFAULT_MAX_CHANGE_RATIO))
    result = apply_plausibility_guard(result, site.current_price, ratio)

    if result.price is None:
        site.last_error = result.error_kind.value
        logger.info("[update] No price for {} ({})", site.url, result.error_kind.value)
        return result

    observed_at = now_utc()
    site.current_price = result.price
    site.last_updated = observed_at
    site.last_error = None
    site.observations.append(
        SitePriceObservation(price=result.price, observed_at=observed_at, run_id=run_id)
    )
    session.flush()
    logger.info("[update] Updated price for site {}: ${}", site.url, result.price)
    return result


def refresh_item_summary(session: Session, item: TrackedItem, run_id: Optional[int] = None) -> bool:
    """Recompute best price, best URL and the min/max range of an item.

    Returns False (leaving the item untouched) when no site has a price.
    """
    valid = [site for site in item.sites if site.current_price is not None]
    if not valid:
        logger.info("[update] No valid prices for item {}", item.id)
        return False

    best = min(valid, key=lambda site: site.current_price)
    observed_at = now_utc()
    item.current_price = best.current_price
    item.best_url = best.url
    item.observations.append(
        ItemPriceObservation(
            price=best.current_price,
            best_url=best.url,
            observed_at=observed_at,
            run_id=run_id,
        )
    )

    all_prices = [price for site in item.sites for price in site.history if price]
    if all_prices:
        item.min_price = min(all_prices)
        item.max_price = max(all_prices)
    item.last_updated = observed_at
    session.flush()
    return True


def update_item(
    session: Session,
    item: TrackedItem,
    config: Optional[Dict[str, Any]] = None,
    domain_configs: Optional[Iterable[ScraperConfig]] = None,
    fetcher: Optional[Fetcher] = None,
    run_id: Optional[int] = None,
    site_delay_ms: Optional[int] = None,
) -> Dict[str, Any]:
    """Update every site of an item in order, then its best-price summary.

    A failing site is recorded and never stops its siblings.
    """
    if domain_configs is None:
        domain_configs = TrackerRepository(session).domain_configs()
    domain_configs = list(domain_configs)
    if site_delay_ms is None:
        site_delay_ms = int(get_tracking_config(config).get("site_delay_ms", 0))

    summary: Dict[str, Any] = {
        "item_id": item.id,
        "item_name": item.name,
        "sites_attempted": 0,
        "sites_updated": 0,
        "sites_failed": 0,
        "errors": [],
    }
    logger.info("[update] Starting item {} - {} sites", item.id, len(item.sites))

    for index, site in enumerate(list(item.sites)):
        if index > 0 and site_delay_ms > 0:
            time.sleep(site_delay_ms / 1000.0)

        summary["sites_attempted"] += 1
        try:
            result = update_site(
                session,
                site,
                config=config,
                domain_configs=domain_configs,
                fetcher=fetcher,
                run_id=run_id,
            )
        except Exception as e:
            logger.warning("[update] Error fetching site {}: {}", site.url, e)
            summary["sites_failed"] += 1
            summary["errors"].append({
                "site_id": site.id,
                "url": site.url,
                "stage": "update",
                "error_type": type(e).__name__,
                "error": str(e),
                "stack_trace": traceback.format_exc(),
            })
            continue

        if result.ok:
            summary["sites_updated"] += 1
        else:
            summary["sites_failed"] += 1
            summary["errors"].append({
                "site_id": site.id,
                "url": site.url,
                "stage": "plausibility" if (result.message or "").startswith(IMPLAUSIBLE_PREFIX) else "fetch",
                "error_type": result.error_kind.value,
                "error": result.message or result.error_kind.value,
            })

    refresh_item_summary(session, item, run_id=run_id)
    session.commit()
    logger.info("[update] Finished item {}: {} updated, {} failed", item.id, summary["sites_updated"], summary["sites_failed"])
    return summary


def run_update(
    config_path: Optional[str] = None,
    item_id: Optional[int] = None,
    config: Optional[Dict[str, Any]] = None,
    fetcher: Optional[Fetcher] = None,
) -> Dict[str, Any]:
    """Run an update over one item or every tracked item.

    Args:
        config_path: Path to config file (ignored when config is given)
        item_id: Only update this item
        config: Already-loaded configuration
        fetcher: Replacement for fetch_price, same signature

    Returns:
        Run summary with counters, per-item results and errors.
    """
    if config is None:
        config = load_config(config_path)
    tracking = get_tracking_config(config)
    site_delay_ms = int(tracking.get("site_delay_ms", 0))

    engine = get_engine(config)
    init_db(engine)
    Session = get_session_factory(engine)
    session = Session()

    scrape_run: Optional[ScrapeRun] = None
    results: Dict[str, Any] = {
        "run_uuid": None,
        "status": "running",
        "started_at": now_utc().isoformat(),
        "items_planned": 0,
        "sites_attempted": 0,
        "sites_updated": 0,
        "sites_failed": 0,
        "items": [],
        "errors": [],
    }

    try:
        repo = TrackerRepository(session)
        repo.seed_domain_settings(config)
        items = [repo.get_item(item_id)] if item_id is not None else repo.list_items()
        domain_configs = repo.domain_configs()

        scrape_run = ScrapeRun(
            run_uuid=str(uuid.uuid4()),
            status="running",
            items_planned=len(items),
        )
        session.add(scrape_run)
        session.commit()
        results["run_uuid"] = scrape_run.run_uuid
        results["items_planned"] = len(items)
        logger.info("[update] Starting run {} - {} items", scrape_run.run_uuid, len(items))

        for index, item in enumerate(items):
            if index > 0 and site_delay_ms > 0:
                time.sleep(site_delay_ms / 1000.0)

            summary = update_item(
                session,
                item,
                config=config,
                domain_configs=domain_configs,
                fetcher=fetcher,
                run_id=scrape_run.id,
                site_delay_ms=site_delay_ms,
            )
            for error in summary["errors"]:
                session.add(
                    ScrapeError(
                        run_id=scrape_run.id,
                        item_id=item.id,
                        site_id=error.get("site_id"),
                        url=error.get("url"),
                        stage=error.get("stage", "fetch"),
                        error_type=error.get("error_type", "unknown"),
                        error_message=error.get("error") or "",
                        stack_trace=error.get("stack_trace"),
                    )
                )
                results["errors"].append({"item": item.name, "url": error.get("url"), "error": error.get("error")})

            scrape_run.sites_attempted += summary["sites_attempted"]
            scrape_run.sites_updated += summary["sites_updated"]
            scrape_run.sites_failed += summary["sites_failed"]
            results["items"].append({
                "item_id": item.id,
                "name": item.name,
                "current_price": item.current_price,
                "best_url": item.best_url,
                "sites_updated": summary["sites_updated"],
                "sites_failed": summary["sites_failed"],
            })
            session.commit()

        scrape_run.status = "completed" if scrape_run.sites_failed == 0 else "partial"
        scrape_run.completed_at = now_utc()
        if scrape_run.started_at:
            scrape_run.duration_seconds = int((scrape_run.completed_at - scrape_run.started_at).total_seconds())
        session.commit()

        results["status"] = scrape_run.status
        results["sites_attempted"] = scrape_run.sites_attempted
        results["sites_updated"] = scrape_run.sites_updated
        results["sites_failed"] = scrape_run.sites_failed
        results["completed_at"] = scrape_run.completed_at.isoformat()
        logger.info("[update] Finished run {} ({})", scrape_run.run_uuid, scrape_run.status)
    except Exception as e:
        logger.error("Update failed: {}", e)
        try:
            session.rollback()
        except Exception:
            pass
        if scrape_run is not None and scrape_run.id is not None:
            try:
                persisted_run = session.get(ScrapeRun, scrape_run.id)
                if persisted_run is not None:
                    persisted_run.status = "failed"
                    persisted_run.completed_at = now_utc()
                    session.commit()
            except Exception:
                session.rollback()
        results["status"] = "failed"
        results["error"] = str(e)
        raise
    finally:
        session.close()
        try:
            engine.dispose()
        except Exception:
            pass

    return results
