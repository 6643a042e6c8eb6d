"""CSV export of tracked items and their price history."""

from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import pandas as pd
from loguru import logger
from sqlalchemy.orm import Session

from pricetracker.config_loader import get_storage_config
from pricetracker.models import (
    ItemPriceObservation,
    ScrapeRun,
    SitePriceObservation,
    TrackedItem,
    TrackedSite,
    get_engine,
    get_session_factory,
    init_db,
)


def get_site_history(session: Session, item_id: Optional[int] = None) -> pd.DataFrame:
    """Long-format site price history, oldest first."""
    query = (
        session.query(
            TrackedItem.id.label("item_id"),
            TrackedItem.name.label("item_name"),
            TrackedSite.id.label("site_id"),
            TrackedSite.url,
            SitePriceObservation.price,
            SitePriceObservation.observed_at,
            SitePriceObservation.run_id,
        )
        .join(TrackedSite, SitePriceObservation.site_id == TrackedSite.id)
        .join(TrackedItem, TrackedSite.item_id == TrackedItem.id)
        .order_by(SitePriceObservation.observed_at.asc(), SitePriceObservation.id.asc())
    )
    if item_id is not None:
        query = query.filter(TrackedItem.id == item_id)
    return pd.read_sql(query.statement, session.bind)


def get_item_history(session: Session, item_id: Optional[int] = None) -> pd.DataFrame:
    """Best-price history per item, oldest first."""
    query = (
        session.query(
            TrackedItem.id.label("item_id"),
            TrackedItem.name.label("item_name"),
            ItemPriceObservation.price,
            ItemPriceObservation.best_url,
            ItemPriceObservation.observed_at,
            ItemPriceObservation.run_id,
        )
        .join(TrackedItem, ItemPriceObservation.item_id == TrackedItem.id)
        .order_by(ItemPriceObservation.observed_at.asc(), ItemPriceObservation.id.asc())
    )
    if item_id is not None:
        query = query.filter(TrackedItem.id == item_id)
    return pd.read_sql(query.statement, session.bind)


def export_history(
    config: dict,
    output_dir: Optional[str] = None,
    item_id: Optional[int] = None,
) -> Dict[str, str]:
    """Export items, site history, item history and runs to CSV files.

    Args:
        config: Configuration dictionary
        output_dir: Output directory (uses config default if None)
        item_id: Only export this item's history

    Returns:
        Dictionary with paths to exported files
    """
    if output_dir is None:
        storage = get_storage_config(config)
        output_dir = storage.get("exports", {}).get("csv_path", "data/exports/csv")

    Path(output_dir).mkdir(parents=True, exist_ok=True)

    engine = get_engine(config)
    init_db(engine)
    Session = get_session_factory(engine)
    session = Session()

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    suffix = f"item{item_id}_{timestamp}" if item_id is not None else timestamp
    paths = {}

    try:
        items_query = session.query(TrackedItem).order_by(TrackedItem.position.asc())
        if item_id is not None:
            items_query = items_query.filter(TrackedItem.id == item_id)
        frames = {
            "items": pd.read_sql(items_query.statement, session.bind),
            "site_history": get_site_history(session, item_id),
            "item_history": get_item_history(session, item_id),
        }
        if item_id is None:
            frames["scrape_runs"] = pd.read_sql(session.query(ScrapeRun).statement, session.bind)

        for name, df in frames.items():
            if df.empty:
                continue
            path = str(Path(output_dir) / f"{name}_{suffix}.csv")
            df.to_csv(path, index=False)
            paths[name] = path
            logger.info("Exported {} {} rows to {}", len(df), name, path)
    finally:
        session.close()
        engine.dispose()

    return paths
