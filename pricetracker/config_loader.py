"""Configuration loader for the price tracker."""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

import yaml
from dotenv import load_dotenv

from pricetracker.results import ScraperMode


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses default locations.

    Returns:
        Dictionary with configuration values.
    """
    load_dotenv()

    if config_path is None:
        locations = [
            "config.yaml",
            "config.yml",
            "../config.yaml",
            "../config.yml",
            "/app/config.yaml",
        ]
        for loc in locations:
            if Path(loc).exists():
                config_path = loc
                break

    if config_path is None or not Path(config_path).exists():
        raise FileNotFoundError("Configuration file not found. Please provide config.yaml")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    return _substitute_env_vars(config)


def _substitute_env_vars(obj: Any) -> Any:
    """Recursively substitute environment variables in config.

    Supports syntax: ${VAR_NAME} or ${VAR_NAME:default_value}
    """
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        return _substitute_env_string(obj)
    else:
        return obj


def _substitute_env_string(value: str) -> str:
    """Substitute environment variables in a string."""
    pattern = r'\$\{([^}]+)\}'

    def replace(match):
        var_expr = match.group(1)
        if ':' in var_expr:
            var_name, default = var_expr.split(':', 1)
            return os.getenv(var_name, default)
        else:
            return os.getenv(var_expr, match.group(0))

    return re.sub(pattern, replace, value)


def get_scraping_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Get scraping configuration."""
    section = (config or {}).get("scraping", {})
    return section if isinstance(section, dict) else {}


def get_tracking_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Get tracking (update workflow) configuration."""
    section = (config or {}).get("tracking", {})
    return section if isinstance(section, dict) else {}


def get_storage_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Get storage configuration."""
    section = (config or {}).get("storage", {})
    return section if isinstance(section, dict) else {}


def hostname_of(url: str) -> str:
    """Lower-cased hostname without a leading 'www.'."""
    host = (urlsplit(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


@dataclass
class ScraperConfig:
    """Per-domain scraping override."""

    domain: str
    selector: Optional[str] = None
    scraper_mode: ScraperMode = ScraperMode.AUTO
    configured: bool = False

    @classmethod
    def from_entry(cls, entry: Dict[str, Any]) -> Optional["ScraperConfig"]:
        domain = str(entry.get("domain") or "").strip().lower()
        if not domain:
            return None
        selector = entry.get("selector")
        selector = str(selector).strip() if selector else None
        return cls(
            domain=domain,
            selector=selector or None,
            scraper_mode=ScraperMode.parse(entry.get("scraper") or entry.get("scraper_mode")),
            configured=True,
        )


def get_domain_entries(config: Optional[Dict[str, Any]]) -> List[ScraperConfig]:
    """Domain seed list from the `domains` config section."""
    entries = []
    for raw in (config or {}).get("domains", []) or []:
        if not isinstance(raw, dict):
            continue
        entry = ScraperConfig.from_entry(raw)
        if entry:
            entries.append(entry)
    return entries


def resolve_scraper_config(hostname: str, settings: Iterable[ScraperConfig]) -> ScraperConfig:
    """Resolve the settings for a hostname.

    An exact domain match wins over a suffix match; no match yields defaults
    with `configured=False`.
    """
    host = (hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]

    settings = list(settings)
    for entry in settings:
        if entry.domain == host:
            return entry
    for entry in settings:
        if host.endswith("." + entry.domain):
            return entry
    return ScraperConfig(domain=host)


def get_domain_selectors(config: Optional[Dict[str, Any]], hostname: str) -> Optional[List[str]]:
    """Optional domain-keyed selector table (`scraping.domain_selectors`)."""
    table = get_scraping_config(config).get("domain_selectors") or {}
    if not isinstance(table, dict):
        return None
    host = (hostname or "").lower()
    for domain, selectors in table.items():
        domain = str(domain).lower()
        if host == domain or host.endswith("." + domain):
            if isinstance(selectors, str):
                return [s.strip() for s in selectors.split(",") if s.strip()]
            return [str(s) for s in selectors or [] if s]
    return None


def ensure_directories(config: Dict[str, Any]):
    """Ensure all required directories exist."""
    storage = get_storage_config(config)

    sqlite_path = storage.get("sqlite", {}).get("database_path", "data/prices.db")
    Path(sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    csv_path = storage.get("exports", {}).get("csv_path", "data/exports/csv")
    Path(csv_path).mkdir(parents=True, exist_ok=True)

    log_path = config.get("logging", {}).get("file", "data/logs/tracker.log")
    Path(log_path).parent.mkdir(parents=True, exist_ok=True)
