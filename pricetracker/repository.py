"""Item, site and domain-setting bookkeeping on top of the SQLAlchemy session."""

from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from loguru import logger
from sqlalchemy import func
from sqlalchemy.orm import Session

from pricetracker.config_loader import ScraperConfig, get_domain_entries, hostname_of, resolve_scraper_config
from pricetracker.models import DomainSetting, TrackedItem, TrackedSite
from pricetracker.results import ScraperMode

UNNAMED_PRODUCT = "Unnamed Product"
MOVE_DIRECTIONS = ("up", "down", "top")

SiteSpec = Union[str, Dict[str, Any]]


class ItemNotFoundError(LookupError):
    pass


class TrackerRepository:
    """Persistence operations used by the CLI and the update workflow."""

    def __init__(self, session: Session):
        self.session = session

    # -- items ----------------------------------------------------------

    def list_items(self) -> List[TrackedItem]:
        return (
            self.session.query(TrackedItem)
            .order_by(TrackedItem.position.asc(), TrackedItem.id.asc())
            .all()
        )

    def get_item(self, item_id: int) -> TrackedItem:
        item = self.session.get(TrackedItem, item_id)
        if item is None:
            raise ItemNotFoundError(f"Item {item_id} not found")
        return item

    def _next_position(self) -> int:
        current = self.session.query(func.max(TrackedItem.position)).scalar()
        return 0 if current is None else int(current) + 1

    def add_item(
        self,
        sites: Iterable[SiteSpec],
        name: Optional[str] = None,
        image_url: Optional[str] = None,
        title_fetcher: Optional[Callable[[str], str]] = None,
    ) -> TrackedItem:
        """Create an item with its sites, appended after the last position.

        When no name is given, the title of the first site's page is used.
        """
        specs = [self._site_spec(spec) for spec in sites]
        specs = [spec for spec in specs if spec["url"]]

        if not name and specs and title_fetcher is not None:
            first_url = specs[0]["url"]
            try:
                name = title_fetcher(first_url)
                logger.info("Fetched title for new product: {}", name)
            except Exception as e:
                logger.warning("Could not fetch title for {}: {}", first_url, e)
        name = (name or "").strip() or UNNAMED_PRODUCT

        item = TrackedItem(name=name, image_url=image_url or None, position=self._next_position())
        for spec in specs:
            item.sites.append(TrackedSite(**spec))
        self.session.add(item)
        self.session.commit()
        logger.info("Added item {} '{}' with {} sites", item.id, item.name, len(item.sites))
        return item

    def edit_item(
        self,
        item_id: int,
        name: Optional[str] = None,
        position: Optional[int] = None,
        image_url: Optional[str] = None,
    ) -> TrackedItem:
        item = self.get_item(item_id)
        if name is not None:
            item.name = name
        if position is not None:
            item.position = int(position)
        if image_url is not None:
            item.image_url = image_url or None
        self.session.commit()
        return item

    def remove_item(self, item_id: int) -> None:
        item = self.get_item(item_id)
        self.session.delete(item)
        self.session.commit()
        logger.info("Deleted item: {}", item_id)

    def move_item(self, item_id: int, direction: str) -> List[TrackedItem]:
        """Move an item up, down or to the top, then renumber positions from 0."""
        if direction not in MOVE_DIRECTIONS:
            raise ValueError(f"Unknown direction: {direction}")
        items = self.list_items()
        index = next((i for i, it in enumerate(items) if it.id == item_id), None)
        if index is None:
            raise ItemNotFoundError(f"Item {item_id} not found")

        if direction == "up" and index > 0:
            items[index - 1], items[index] = items[index], items[index - 1]
        elif direction == "down" and index < len(items) - 1:
            items[index + 1], items[index] = items[index], items[index + 1]
        elif direction == "top":
            items.insert(0, items.pop(index))

        for position, it in enumerate(items):
            it.position = position
        self.session.commit()
        return items

    # -- sites ----------------------------------------------------------

    @staticmethod
    def _site_spec(spec: SiteSpec) -> Dict[str, Any]:
        if isinstance(spec, str):
            return {"url": spec.strip(), "selector": None, "scraper_mode": None}
        mode = spec.get("scraper_mode") or spec.get("scraper")
        return {
            "url": str(spec.get("url") or "").strip(),
            "selector": (spec.get("selector") or None),
            "scraper_mode": ScraperMode.parse(mode).value if mode else None,
        }

    def add_site(
        self,
        item_id: int,
        url: str,
        selector: Optional[str] = None,
        scraper_mode: Optional[str] = None,
    ) -> TrackedSite:
        if not url or not url.strip():
            raise ValueError("url required")
        item = self.get_item(item_id)
        site = TrackedSite(**self._site_spec({"url": url, "selector": selector, "scraper_mode": scraper_mode}))
        item.sites.append(site)
        self.session.commit()
        logger.info("Added new site to item {}: {}", item_id, url)
        return site

    def remove_site(self, item_id: int, site_id: int) -> TrackedItem:
        item = self.get_item(item_id)
        item.sites = [site for site in item.sites if site.id != site_id]
        self.session.commit()
        logger.info("Deleted site {} from item {}", site_id, item_id)
        return item

    # -- domain settings ------------------------------------------------

    def list_domain_settings(self) -> List[DomainSetting]:
        return self.session.query(DomainSetting).order_by(DomainSetting.domain.asc()).all()

    def domain_configs(self) -> List[ScraperConfig]:
        return [setting.to_scraper_config() for setting in self.list_domain_settings()]

    def resolve_for_url(self, url: str) -> ScraperConfig:
        return resolve_scraper_config(hostname_of(url), self.domain_configs())

    def upsert_domain_setting(
        self,
        domain: str,
        selector: Optional[str] = None,
        scraper_mode: Optional[str] = None,
    ) -> DomainSetting:
        domain = (domain or "").strip().lower()
        if not domain:
            raise ValueError("domain required")

        setting = self.session.query(DomainSetting).filter(DomainSetting.domain == domain).first()
        if setting is None:
            setting = DomainSetting(
                domain=domain,
                selector=(selector or "").strip() or None,
                scraper_mode=ScraperMode.parse(scraper_mode).value,
            )
            self.session.add(setting)
        else:
            setting.selector = (selector or "").strip() or None
            if scraper_mode:
                setting.scraper_mode = ScraperMode.parse(scraper_mode).value
        self.session.commit()
        return setting

    def remove_domain_setting(self, domain: str) -> bool:
        deleted = (
            self.session.query(DomainSetting)
            .filter(DomainSetting.domain == (domain or "").strip().lower())
            .delete()
        )
        self.session.commit()
        return bool(deleted)

    def seed_domain_settings(self, config: Optional[Dict[str, Any]]) -> int:
        """Insert config `domains` entries that have no row yet."""
        existing = {domain for (domain,) in self.session.query(DomainSetting.domain).all()}
        added = 0
        for entry in get_domain_entries(config):
            if entry.domain in existing:
                continue
            self.session.add(
                DomainSetting(
                    domain=entry.domain,
                    selector=entry.selector,
                    scraper_mode=entry.scraper_mode.value,
                )
            )
            existing.add(entry.domain)
            added += 1
        if added:
            self.session.commit()
            logger.info("Seeded {} domain settings from config", added)
        return added
