"""Command-line interface for the price tracker."""

import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Tuple

import click
from loguru import logger

from pricetracker.config_loader import ensure_directories, load_config
from pricetracker.exporter import export_history, get_site_history
from pricetracker.models import ScrapeRun, get_engine, get_session_factory, init_db
from pricetracker.repository import MOVE_DIRECTIONS, TrackerRepository
from pricetracker.results import ScraperMode
from pricetracker.scraper import fetch_price, fetch_title
from pricetracker.tracker import run_update

MODE_CHOICE = click.Choice([mode.value for mode in ScraperMode], case_sensitive=False)


def setup_logging(config: dict, level: Optional[str] = None):
    """Setup logging configuration."""
    log_config = config.get("logging", {})
    level = level or log_config.get("level", "INFO")
    log_file = log_config.get("file", "data/logs/tracker.log")

    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(
        sys.stdout,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | {message}",
    )
    logger.add(
        log_file,
        level=level,
        rotation=log_config.get("rotation", "1 week"),
        retention=log_config.get("retention", "1 month"),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name} | {message}",
    )


@contextmanager
def _repository(config: dict):
    engine = get_engine(config)
    init_db(engine)
    Session = get_session_factory(engine)
    session = Session()
    try:
        repo = TrackerRepository(session)
        repo.seed_domain_settings(config)
        yield repo
    finally:
        session.close()
        engine.dispose()


def _format_price(value) -> str:
    return f"${value}" if value is not None else "-"


def _fail(message: str, exc: Exception):
    logger.exception(message)
    click.echo(f"Error: {exc}", err=True)
    sys.exit(1)


@click.group()
@click.option("--config", "-c", type=click.Path(exists=True), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """Price Tracker - follow product prices across shops."""
    ctx.ensure_object(dict)

    try:
        cfg = load_config(config)
        ctx.obj["config"] = cfg
        ctx.obj["config_path"] = config

        ensure_directories(cfg)
        setup_logging(cfg, level="DEBUG" if verbose else None)

        logger.debug("Price Tracker initialized")

    except Exception as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def init(ctx):
    """Initialize the database, directories and domain settings."""
    config = ctx.obj["config"]

    try:
        ensure_directories(config)
        with _repository(config) as repo:
            seeded = len(repo.list_domain_settings())

        click.echo("[OK] Directories created")
        click.echo("[OK] Database initialized")
        click.echo(f"[OK] {seeded} domain settings available")
    except Exception as e:
        _fail("Initialization failed", e)


@cli.command()
@click.argument("url")
@click.option("--mode", "-m", type=MODE_CHOICE, default=None, help="Fetcher to use (default: domain setting or auto)")
@click.option("--selector", "-s", default=None, help="CSS selector(s), comma separated")
@click.option("--proximity/--no-proximity", default=None, help="Score visible prices by distance to the buy button (default: on for configured domains)")
@click.pass_context
def fetch(ctx, url: str, mode: Optional[str], selector: Optional[str], proximity: Optional[bool]):
    """Fetch the current price of one product page."""
    config = ctx.obj["config"]

    try:
        with _repository(config) as repo:
            domain = repo.resolve_for_url(url)
        selector = selector or domain.selector
        mode = ScraperMode.parse(mode) if mode else domain.scraper_mode
        if proximity is None:
            proximity = domain.configured

        result = fetch_price(url, mode=mode, selector=selector, config=config, proximity_scan=proximity)
    except Exception as e:
        _fail("Fetch failed", e)

    if result.ok:
        click.echo(f"Price: {_format_price(result.price)}")
        return

    click.echo(f"No price ({result.error_kind.value})" + (f": {result.message}" if result.message else ""))
    sys.exit(1)


@cli.command()
@click.argument("url")
@click.pass_context
def title(ctx, url: str):
    """Print the product title of a page."""
    click.echo(fetch_title(url, config=ctx.obj["config"]))


@cli.command("list")
@click.pass_context
def list_items(ctx):
    """List tracked items in display order."""
    config = ctx.obj["config"]

    try:
        with _repository(config) as repo:
            items = repo.list_items()
            if not items:
                click.echo("No tracked items")
                return

            click.echo(f"{'ID':<5} {'Name':<40} {'Price':>10} {'Min':>10} {'Max':>10}  Best URL")
            click.echo("-" * 100)
            for item in items:
                click.echo(
                    f"{item.id:<5} {item.name[:40]:<40} {_format_price(item.current_price):>10} "
                    f"{_format_price(item.min_price):>10} {_format_price(item.max_price):>10}  {item.best_url or ''}"
                )
                for site in item.sites:
                    updated = site.last_updated.strftime("%Y-%m-%d %H:%M") if site.last_updated else "never"
                    status = f" [{site.last_error}]" if site.last_error else ""
                    click.echo(f"      site {site.id}: {site.url} {_format_price(site.current_price)} ({updated}){status}")
    except Exception as e:
        _fail("Listing failed", e)


@cli.command()
@click.option("--url", "-u", "urls", multiple=True, required=True, help="Product page URL (repeatable)")
@click.option("--name", "-n", default=None, help="Item name (fetched from the first page when omitted)")
@click.option("--image-url", default=None, help="Image URL")
@click.pass_context
def add(ctx, urls: Tuple[str, ...], name: Optional[str], image_url: Optional[str]):
    """Track a new item on one or more sites."""
    config = ctx.obj["config"]

    try:
        with _repository(config) as repo:
            item = repo.add_item(
                urls,
                name=name,
                image_url=image_url,
                title_fetcher=lambda url: fetch_title(url, config=config),
            )
            click.echo(f"Added item {item.id}: {item.name} ({len(item.sites)} sites)")
    except Exception as e:
        _fail("Add failed", e)


@cli.command()
@click.argument("item_id", type=int)
@click.option("--name", default=None, help="New name")
@click.option("--position", type=int, default=None, help="New display position")
@click.option("--image-url", default=None, help="New image URL (empty string clears it)")
@click.pass_context
def edit(ctx, item_id: int, name: Optional[str], position: Optional[int], image_url: Optional[str]):
    """Edit an item's name, position or image."""
    try:
        with _repository(ctx.obj["config"]) as repo:
            item = repo.edit_item(item_id, name=name, position=position, image_url=image_url)
            click.echo(f"Updated item {item.id}: {item.name}")
    except Exception as e:
        _fail("Edit failed", e)


@cli.command()
@click.argument("item_id", type=int)
@click.pass_context
def remove(ctx, item_id: int):
    """Stop tracking an item."""
    try:
        with _repository(ctx.obj["config"]) as repo:
            repo.remove_item(item_id)
        click.echo(f"Deleted item {item_id}")
    except Exception as e:
        _fail("Remove failed", e)


@cli.command()
@click.argument("item_id", type=int)
@click.argument("direction", type=click.Choice(MOVE_DIRECTIONS))
@click.pass_context
def move(ctx, item_id: int, direction: str):
    """Move an item up, down or to the top of the list."""
    try:
        with _repository(ctx.obj["config"]) as repo:
            items = repo.move_item(item_id, direction)
        click.echo(f"Moved item {item_id} {direction} ({len(items)} items)")
    except Exception as e:
        _fail("Move failed", e)


@cli.command("add-site")
@click.argument("item_id", type=int)
@click.argument("url")
@click.option("--selector", "-s", default=None, help="CSS selector(s) for this site")
@click.option("--mode", "-m", type=MODE_CHOICE, default=None, help="Fetcher for this site")
@click.pass_context
def add_site(ctx, item_id: int, url: str, selector: Optional[str], mode: Optional[str]):
    """Add a shop URL to an item."""
    try:
        with _repository(ctx.obj["config"]) as repo:
            site = repo.add_site(item_id, url, selector=selector, scraper_mode=mode)
            click.echo(f"Added site {site.id} to item {item_id}: {site.url}")
    except Exception as e:
        _fail("Add site failed", e)


@cli.command("remove-site")
@click.argument("item_id", type=int)
@click.argument("site_id", type=int)
@click.pass_context
def remove_site(ctx, item_id: int, site_id: int):
    """Remove a shop URL from an item."""
    try:
        with _repository(ctx.obj["config"]) as repo:
            item = repo.remove_site(item_id, site_id)
            click.echo(f"Item {item_id} now has {len(item.sites)} sites")
    except Exception as e:
        _fail("Remove site failed", e)


def _print_run(results: dict):
    click.echo(f"\n{'='*70}")
    click.echo("UPDATE RESULTS")
    click.echo(f"{'='*70}")
    click.echo(f"Status: {results.get('status', 'unknown')}")
    if results.get("run_uuid"):
        click.echo(f"Run UUID: {results['run_uuid']}")
    click.echo(f"Items: {results.get('items_planned', 0)}")
    click.echo(f"Sites updated: {results.get('sites_updated', 0)}")
    click.echo(f"Sites failed: {results.get('sites_failed', 0)}")

    for row in results.get("items", []):
        click.echo(f"  - {row['name']}: {_format_price(row['current_price'])} {row.get('best_url') or ''}")

    if results.get("errors"):
        click.echo(f"\nErrors ({len(results['errors'])}):")
        for error in results["errors"][:5]:
            click.echo(f"  - {error['item']} ({error['url']}): {error['error']}")
    click.echo(f"{'='*70}")


@cli.command()
@click.argument("item_id", type=int)
@click.pass_context
def update(ctx, item_id: int):
    """Refresh prices of one item."""
    try:
        results = run_update(config=ctx.obj["config"], item_id=item_id)
        _print_run(results)
    except Exception as e:
        _fail("Update failed", e)


@cli.command("update-all")
@click.pass_context
def update_all(ctx):
    """Refresh prices of every tracked item, one site at a time."""
    try:
        results = run_update(config=ctx.obj["config"])
        _print_run(results)
        if results.get("status") == "failed":
            sys.exit(1)
    except Exception as e:
        _fail("Update failed", e)


@cli.command()
@click.argument("item_id", type=int)
@click.option("--limit", "-n", default=20, help="Max observations to show")
@click.pass_context
def history(ctx, item_id: int, limit: int):
    """Show the recorded site prices of an item."""
    try:
        with _repository(ctx.obj["config"]) as repo:
            df = get_site_history(repo.session, item_id)
        if df.empty:
            click.echo(f"No history for item {item_id}")
            return
        click.echo(df.tail(limit)[["observed_at", "url", "price"]].to_string(index=False))
    except Exception as e:
        _fail("History failed", e)


@cli.command()
@click.option("--limit", "-n", default=20, help="Max runs to list")
@click.pass_context
def status(ctx, limit: int):
    """Show recent update runs."""
    try:
        with _repository(ctx.obj["config"]) as repo:
            runs = (
                repo.session.query(ScrapeRun)
                .order_by(ScrapeRun.started_at.desc(), ScrapeRun.id.desc())
                .limit(limit)
                .all()
            )
            if not runs:
                click.echo("No runs found")
                return

            click.echo(f"{'ID':<5} {'Date':<20} {'Status':<12} {'Items':<6} {'Updated':<8} {'Failed':<8}")
            click.echo("-" * 64)
            for run in runs:
                date_str = run.started_at.strftime("%Y-%m-%d %H:%M") if run.started_at else "N/A"
                click.echo(
                    f"{run.id:<5} {date_str:<20} {run.status:<12} {run.items_planned:<6} "
                    f"{run.sites_updated:<8} {run.sites_failed:<8}"
                )
    except Exception as e:
        _fail("Status check failed", e)


@cli.group()
def settings():
    """Manage per-domain selector and fetcher settings."""


@settings.command("list")
@click.pass_context
def settings_list(ctx):
    """List domain settings."""
    try:
        with _repository(ctx.obj["config"]) as repo:
            rows = repo.list_domain_settings()
            if not rows:
                click.echo("No domain settings")
                return
            for row in rows:
                click.echo(f"{row.domain:<30} {row.scraper_mode:<10} {row.selector or '-'}")
    except Exception as e:
        _fail("Settings list failed", e)


@settings.command("set")
@click.argument("domain")
@click.option("--selector", "-s", default=None, help="CSS selector(s) for this domain")
@click.option("--mode", "-m", type=MODE_CHOICE, default=None, help="Fetcher for this domain")
@click.pass_context
def settings_set(ctx, domain: str, selector: Optional[str], mode: Optional[str]):
    """Create or update the setting for a domain."""
    try:
        with _repository(ctx.obj["config"]) as repo:
            row = repo.upsert_domain_setting(domain, selector=selector, scraper_mode=mode)
            click.echo(f"Saved {row.domain}: mode={row.scraper_mode}, selector={row.selector or '-'}")
    except Exception as e:
        _fail("Settings update failed", e)


@settings.command("remove")
@click.argument("domain")
@click.pass_context
def settings_remove(ctx, domain: str):
    """Delete the setting for a domain."""
    try:
        with _repository(ctx.obj["config"]) as repo:
            deleted = repo.remove_domain_setting(domain)
        click.echo(f"Deleted {domain}" if deleted else f"No setting for {domain}")
    except Exception as e:
        _fail("Settings remove failed", e)


@cli.command()
@click.option("--output", "-o", type=click.Path(), help="Output directory")
@click.option("--item", "item_id", type=int, default=None, help="Only export this item")
@click.pass_context
def export(ctx, output: Optional[str], item_id: Optional[int]):
    """Export items and price history to CSV."""
    try:
        paths = export_history(ctx.obj["config"], output_dir=output, item_id=item_id)
        if not paths:
            click.echo("Nothing to export")
            return
        click.echo("Exported files:")
        for name, path in paths.items():
            click.echo(f"  {name}: {path}")
    except Exception as e:
        _fail("Export failed", e)


if __name__ == "__main__":
    cli()
