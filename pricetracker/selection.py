"""Collapse a pooled set of price candidates into one output price."""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from pricetracker.normalizer import normalize
from pricetracker.price_parser import round_price
from pricetracker.results import PriceCandidate, SourceTag

JSON_SOURCES = {SourceTag.STRUCTURED_DATA, SourceTag.INLINE_JSON}
JSON_EPSILON = Decimal("0.05")
JSON_DOMINANCE = 3
PROXIMITY_DISTANCE_SCALE = 300.0


def _has_fraction(value: Decimal) -> bool:
    return value != value.to_integral_value()


def select_price(values: Iterable[Decimal]) -> Optional[Decimal]:
    """Pick the most frequent value.

    Ties go to values carrying cents, then to the smaller value.
    """
    counts: Dict[Decimal, int] = {}
    for value in values:
        key = round_price(value)
        counts[key] = counts.get(key, 0) + 1

    if not counts:
        return None

    ranked = sorted(
        counts.items(),
        key=lambda item: (-item[1], 0 if _has_fraction(item[0]) else 1, item[0]),
    )
    logger.debug("Fusion ranking: {}", ", ".join(f"{value}x{count}" for value, count in ranked[:5]))
    return ranked[0][0]


@dataclass
class _ValueGroup:
    value: Decimal
    count: int = 1


def lock_json_price(
    candidates: Sequence[PriceCandidate],
    epsilon: Decimal = JSON_EPSILON,
    dominance: int = JSON_DOMINANCE,
) -> Optional[Decimal]:
    """Return a JSON-sourced value trusted enough to bypass general fusion.

    Structured-data and inline-JSON values are grouped when within epsilon of
    each other. The earliest group leads unless another one outnumbers it by
    the dominance factor. The leader is locked only when it is the sole group
    or outnumbers every other group by that factor.
    """
    indexed = [
        (index, candidate)
        for index, candidate in enumerate(candidates)
        if candidate.source in JSON_SOURCES
    ]
    if not indexed:
        return None

    indexed.sort(
        key=lambda pair: (
            pair[1].position is None,
            pair[1].position if pair[1].position is not None else 0,
            pair[0],
        )
    )

    groups: List[_ValueGroup] = []
    for _, candidate in indexed:
        for group in groups:
            if abs(candidate.value - group.value) <= epsilon:
                group.count += 1
                break
        else:
            groups.append(_ValueGroup(value=candidate.value))

    leader = groups[0]
    largest = max(groups, key=lambda group: group.count)
    if largest is not leader and largest.count >= dominance * leader.count:
        leader = largest

    others = [group for group in groups if group is not leader]
    if all(leader.count >= dominance * group.count for group in others):
        logger.debug(
            "JSON value {} locked ({} hits over {} competing groups)",
            leader.value,
            leader.count,
            len(others),
        )
        return round_price(leader.value)
    return None


def fuse_candidates(candidates: Sequence[PriceCandidate]) -> Optional[Decimal]:
    """Normalize the pool, try the JSON lock, then fall back to frequency ranking."""
    if not candidates:
        return None

    values = normalize([candidate.value for candidate in candidates])
    normalized = [replace(candidate, value=value) for candidate, value in zip(candidates, values)]

    locked = lock_json_price(normalized)
    if locked is not None:
        return locked
    return select_price(values)


@dataclass
class ProximityGroup:
    """Visible price fragments sharing one rounded value."""

    value: Decimal
    count: int = 0
    positions: List[float] = field(default_factory=list)
    average_distance: float = 0.0
    score: float = 0.0


def rank_proximity_groups(
    fragments: Iterable[Tuple[Decimal, Optional[float]]],
    anchor: Optional[float],
    distance_scale: float = PROXIMITY_DISTANCE_SCALE,
) -> List[ProximityGroup]:
    """Score visible values by frequency and closeness to the buy button.

    Args:
        fragments: (value, vertical position) pairs; position may be None for
            meta tags and other non-rendered sources.
        anchor: Vertical position of the add-to-cart control, if any.

    Returns:
        Groups sorted by score, best first.
    """
    groups: Dict[Decimal, ProximityGroup] = {}
    for value, position in fragments:
        key = round_price(value)
        group = groups.setdefault(key, ProximityGroup(value=key))
        group.count += 1
        if position is not None:
            group.positions.append(float(position))

    for group in groups.values():
        if anchor is not None and group.positions:
            distances = [abs(position - anchor) for position in group.positions]
            group.average_distance = sum(distances) / len(distances)
        group.score = group.count * (1.0 / max(1.0, group.average_distance / distance_scale))

    return sorted(groups.values(), key=lambda group: (-group.score, group.value))
