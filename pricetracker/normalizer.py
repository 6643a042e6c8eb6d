"""Scale correction for candidate pools (cents encoded as integers)."""

from decimal import Decimal
from statistics import median
from typing import List, Sequence

HUNDRED = Decimal("100")


def _is_multiple_of_hundred(value: Decimal) -> bool:
    return value == value.to_integral_value() and value % HUNDRED == 0


def _needs_rescale(index: int, value: Decimal, values: Sequence[Decimal], mid: Decimal) -> bool:
    if value > 500 and _is_multiple_of_hundred(value) and mid < 500:
        return True
    if value > 1000 and _is_multiple_of_hundred(value) and mid < 1000:
        return True
    if value > 1000 and any(other < 100 for i, other in enumerate(values) if i != index):
        return True
    return False


def normalize(values: Sequence[Decimal]) -> List[Decimal]:
    """Return the values with suspected cents encodings divided by 100.

    Each value is judged on its own against the median of the whole set, so
    one pool can mix corrected and untouched values. Order and length are
    preserved.
    """
    values = [v if isinstance(v, Decimal) else Decimal(str(v)) for v in values]
    if not values:
        return []

    mid = Decimal(median(values))
    return [
        value / HUNDRED if _needs_rescale(index, value, values, mid) else value
        for index, value in enumerate(values)
    ]
