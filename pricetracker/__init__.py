"""Price tracker: extract product prices from shop pages and keep their history."""

__version__ = "1.0.0"
