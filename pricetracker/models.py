"""Database models for the price tracker."""

from datetime import datetime, timezone
import os
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from pricetracker.config_loader import ScraperConfig
from pricetracker.results import ScraperMode


def now_utc():
    return datetime.now(timezone.utc).replace(tzinfo=None)


Base = declarative_base()


def _set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key support on every new SQLite connection."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class TrackedItem(Base):
    """A product followed across one or more shops."""

    __tablename__ = "tracked_items"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    image_url = Column(Text, nullable=True)
    position = Column(Integer, nullable=False, default=0, index=True)

    # Best-price summary across sites
    current_price = Column(Numeric(12, 2), nullable=True)
    best_url = Column(Text, nullable=True)
    min_price = Column(Numeric(12, 2), nullable=True)
    max_price = Column(Numeric(12, 2), nullable=True)
    last_updated = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=now_utc)
    updated_at = Column(DateTime, default=now_utc, onupdate=now_utc)

    sites = relationship(
        "TrackedSite",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="TrackedSite.id",
    )
    observations = relationship(
        "ItemPriceObservation",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="ItemPriceObservation.id",
    )

    def __repr__(self):
        return f"<TrackedItem(id={self.id}, name='{self.name}', price={self.current_price})>"

    @property
    def history(self) -> List[Decimal]:
        return [obs.price for obs in self.observations]

    @property
    def history_dates(self) -> List[datetime]:
        return [obs.observed_at for obs in self.observations]


class TrackedSite(Base):
    """One shop URL for a tracked item."""

    __tablename__ = "tracked_sites"

    id = Column(Integer, primary_key=True)
    item_id = Column(Integer, ForeignKey("tracked_items.id"), nullable=False, index=True)

    url = Column(Text, nullable=False)
    selector = Column(Text, nullable=True)
    scraper_mode = Column(String(20), nullable=True)  # 'auto', 'simple', 'puppeteer'

    current_price = Column(Numeric(12, 2), nullable=True)
    last_updated = Column(DateTime, nullable=True)
    last_error = Column(String(30), nullable=True)

    created_at = Column(DateTime, default=now_utc)

    item = relationship("TrackedItem", back_populates="sites")
    observations = relationship(
        "SitePriceObservation",
        back_populates="site",
        cascade="all, delete-orphan",
        order_by="SitePriceObservation.id",
    )

    def __repr__(self):
        return f"<TrackedSite(id={self.id}, url='{self.url}', price={self.current_price})>"

    @property
    def history(self) -> List[Decimal]:
        return [obs.price for obs in self.observations]

    @property
    def history_dates(self) -> List[datetime]:
        return [obs.observed_at for obs in self.observations]


class SitePriceObservation(Base):
    """Price history of a single site (long format)."""

    __tablename__ = "site_price_observations"
    __table_args__ = (
        Index("ix_site_price_observations_site_observed_at", "site_id", "observed_at"),
    )

    id = Column(Integer, primary_key=True)
    site_id = Column(Integer, ForeignKey("tracked_sites.id"), nullable=False, index=True)
    run_id = Column(Integer, ForeignKey("scrape_runs.id"), nullable=True, index=True)

    price = Column(Numeric(12, 2), nullable=False)
    observed_at = Column(DateTime, default=now_utc)

    site = relationship("TrackedSite", back_populates="observations")

    def __repr__(self):
        return f"<SitePriceObservation(site_id={self.site_id}, price={self.price}, date={self.observed_at})>"


class ItemPriceObservation(Base):
    """Best-price history of an item."""

    __tablename__ = "item_price_observations"
    __table_args__ = (
        Index("ix_item_price_observations_item_observed_at", "item_id", "observed_at"),
    )

    id = Column(Integer, primary_key=True)
    item_id = Column(Integer, ForeignKey("tracked_items.id"), nullable=False, index=True)
    run_id = Column(Integer, ForeignKey("scrape_runs.id"), nullable=True, index=True)

    price = Column(Numeric(12, 2), nullable=False)
    best_url = Column(Text, nullable=True)
    observed_at = Column(DateTime, default=now_utc)

    item = relationship("TrackedItem", back_populates="observations")

    def __repr__(self):
        return f"<ItemPriceObservation(item_id={self.item_id}, price={self.price}, date={self.observed_at})>"


class DomainSetting(Base):
    """Per-domain selector and fetcher overrides."""

    __tablename__ = "domain_settings"

    id = Column(Integer, primary_key=True)
    domain = Column(String(255), unique=True, nullable=False, index=True)
    selector = Column(Text, nullable=True)
    scraper_mode = Column(String(20), default=ScraperMode.AUTO.value)

    created_at = Column(DateTime, default=now_utc)
    updated_at = Column(DateTime, default=now_utc, onupdate=now_utc)

    def __repr__(self):
        return f"<DomainSetting(domain='{self.domain}', mode='{self.scraper_mode}')>"

    def to_scraper_config(self) -> ScraperConfig:
        return ScraperConfig(
            domain=self.domain,
            selector=self.selector or None,
            scraper_mode=ScraperMode.parse(self.scraper_mode),
            configured=True,
        )


class ScrapeRun(Base):
    """Update execution log table."""

    __tablename__ = "scrape_runs"

    id = Column(Integer, primary_key=True)
    run_uuid = Column(String(36), unique=True, nullable=False, index=True)

    # Timing
    started_at = Column(DateTime, default=now_utc)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    # Status
    status = Column(String(20), default="running")  # 'running', 'completed', 'failed', 'partial'

    # Statistics
    items_planned = Column(Integer, default=0)
    sites_attempted = Column(Integer, default=0)
    sites_updated = Column(Integer, default=0)
    sites_failed = Column(Integer, default=0)

    scraper_version = Column(String(20), default="1.0.0")

    errors = relationship("ScrapeError", back_populates="run", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<ScrapeRun(id={self.id}, status='{self.status}', started='{self.started_at}')>"


class ScrapeError(Base):
    """Per-site failures recorded during an update run."""

    __tablename__ = "scrape_errors"

    id = Column(Integer, primary_key=True)
    run_id = Column(Integer, ForeignKey("scrape_runs.id"), nullable=False, index=True)

    # Error context
    item_id = Column(Integer, nullable=True)
    site_id = Column(Integer, nullable=True)
    url = Column(Text, nullable=True)
    stage = Column(String(50), nullable=False)  # 'fetch', 'plausibility', 'update'

    # Error details
    error_type = Column(String(50), nullable=False)
    error_message = Column(Text, nullable=False)
    stack_trace = Column(Text, nullable=True)

    occurred_at = Column(DateTime, default=now_utc)

    run = relationship("ScrapeRun", back_populates="errors")

    def __repr__(self):
        return f"<ScrapeError(stage='{self.stage}', type='{self.error_type}')>"


def get_engine(config: dict, backend: Optional[str] = None):
    """Create database engine based on configuration."""
    storage = config.get("storage", {}) or {}
    backend = backend or storage.get("default_backend", "sqlite")

    if backend == "sqlite":
        db_path = storage.get("sqlite", {}).get("database_path", "data/prices.db")
        engine = create_engine(f"sqlite:///{db_path}")
        event.listen(engine, "connect", _set_sqlite_pragma)
        return engine
    elif backend == "postgresql":
        pg_config = storage.get("postgresql", {}) or {}
        db_url = str(pg_config.get("url") or os.getenv("DB_URL") or "").strip()
        if db_url:
            return create_engine(db_url)
        host = pg_config.get("host", "localhost")
        port = pg_config.get("port", "5432")
        database = pg_config.get("database", "price_tracker")
        user = pg_config.get("user", "tracker")
        password = pg_config.get("password", "")

        return create_engine(
            f"postgresql://{user}:{password}@{host}:{port}/{database}"
        )
    else:
        raise ValueError(f"Unsupported database backend: {backend}")


def init_db(engine):
    """Initialize database tables."""
    Base.metadata.create_all(engine)


def get_session_factory(engine):
    """Get session factory for database operations."""
    return sessionmaker(bind=engine)
