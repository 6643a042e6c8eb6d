"""Result and candidate types shared by the price fetchers."""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


class SourceTag(str, Enum):
    """Signal source that produced a price candidate."""

    NETWORK_JSON = "network_json"
    INLINE_JSON = "inline_json"
    STRUCTURED_DATA = "structured_data"
    SELECTOR = "selector"
    VISIBLE_DOM = "visible_dom"
    FULLTEXT = "fulltext"


class ErrorKind(str, Enum):
    """Outcome classification of one extraction attempt."""

    NONE = "none"
    OUT_OF_STOCK = "out_of_stock"
    NO_PRICE_FOUND = "no_price_found"
    BAD_STATUS = "bad_status"
    NAVIGATION_ERROR = "navigation_error"
    UNKNOWN = "unknown"


class ScraperMode(str, Enum):
    """Fetcher choice for a site."""

    AUTO = "auto"
    SIMPLE = "simple"
    PUPPETEER = "puppeteer"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ScraperMode":
        if isinstance(value, cls):
            return value
        if not value:
            return cls.AUTO
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.AUTO


@dataclass
class PriceCandidate:
    """A numeric value seen by one signal source, not yet confirmed."""

    value: Decimal
    source: SourceTag
    position: Optional[int] = None


@dataclass
class ExtractionResult:
    """Single output contract of both fetchers."""

    price: Optional[Decimal] = None
    error_kind: ErrorKind = ErrorKind.NONE
    message: Optional[str] = None

    def __post_init__(self):
        if self.price is not None and self.error_kind != ErrorKind.NONE:
            raise ValueError("A result carrying a price cannot have an error kind")
        if self.price is None and self.error_kind == ErrorKind.NONE:
            self.error_kind = ErrorKind.NO_PRICE_FOUND

    @property
    def ok(self) -> bool:
        return self.price is not None

    @classmethod
    def found(cls, price: Decimal) -> "ExtractionResult":
        return cls(price=price, error_kind=ErrorKind.NONE)

    @classmethod
    def failed(cls, error_kind: ErrorKind, message: Optional[str] = None) -> "ExtractionResult":
        return cls(price=None, error_kind=error_kind, message=message)

    def as_dict(self):
        return {
            "price": float(self.price) if self.price is not None else None,
            "error_kind": self.error_kind.value,
            "message": self.message,
        }
