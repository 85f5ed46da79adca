"""Search queries and the fallback ladder.

Level 0 is the fully specified query. Each further level relaxes exactly one
more dimension, always in ``RELAXATION_ORDER``; dimensions the query does not
constrain are skipped, so no two levels are identical. The last level keeps
only the mandatory location and date filters.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from ..errors import ValidationFailed
from ..models import Slots, VehicleCandidate
from ..services.config_provider import RuntimeConfig

logger = logging.getLogger(__name__)

RELAXATION_ORDER = ("price", "category", "radius", "dates")


@dataclass(frozen=True)
class SearchQuery:
    location: str
    start_date: date
    end_date: date
    vehicle_category: Optional[str] = None
    max_daily_rate: Optional[float] = None
    radius_miles: Optional[float] = None
    date_flex_days: int = 0
    no_deposit_first: bool = False
    limit: int = 6

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "vehicle_category": self.vehicle_category,
            "max_daily_rate": self.max_daily_rate,
            "radius_miles": self.radius_miles,
            "date_flex_days": self.date_flex_days,
            "no_deposit_first": self.no_deposit_first,
            "limit": self.limit,
        }


@dataclass(frozen=True)
class LadderStep:
    level: int
    query: SearchQuery
    relaxed: Tuple[str, ...] = ()


@dataclass
class LadderOutcome:
    step: Optional[LadderStep]
    vehicles: List[VehicleCandidate] = field(default_factory=list)
    levels_tried: int = 0

    @property
    def exhausted(self) -> bool:
        return not self.vehicles

    @property
    def level(self) -> Optional[int]:
        return self.step.level if self.step and self.vehicles else None

    @property
    def relaxed(self) -> Tuple[str, ...]:
        return self.step.relaxed if self.step and self.vehicles else ()


class Inventory(Protocol):
    async def search(self, query: SearchQuery) -> List[VehicleCandidate]: ...


def build_query(slots: Slots, cfg: RuntimeConfig) -> SearchQuery:
    """Turn session slots into the level-0 query. Location and dates are mandatory."""
    if not slots.has_minimum():
        raise ValidationFailed("search needs location, start_date and end_date")
    if slots.end_date < slots.start_date:  # type: ignore[operator]
        raise ValidationFailed("end_date must not be before start_date")
    return SearchQuery(
        location=slots.location,  # type: ignore[arg-type]
        start_date=slots.start_date,  # type: ignore[arg-type]
        end_date=slots.end_date,  # type: ignore[arg-type]
        vehicle_category=slots.vehicle_category,
        max_daily_rate=slots.budget_ceiling,
        radius_miles=cfg.search_radius_miles,
        no_deposit_first=bool(slots.no_deposit) or cfg.flags.prefer_no_deposit,
        limit=cfg.max_candidates,
    )


def _relax(query: SearchQuery, dimension: str, cfg: RuntimeConfig) -> Optional[SearchQuery]:
    if dimension == "price":
        return replace(query, max_daily_rate=None) if query.max_daily_rate is not None else None
    if dimension == "category":
        return replace(query, vehicle_category=None) if query.vehicle_category else None
    if dimension == "radius":
        return replace(query, radius_miles=None) if query.radius_miles is not None else None
    if dimension == "dates":
        if query.date_flex_days or cfg.date_flex_days <= 0:
            return None
        return replace(query, date_flex_days=cfg.date_flex_days)
    raise ValueError(f"unknown relaxation dimension: {dimension}")


def build_ladder(query: SearchQuery, cfg: RuntimeConfig) -> List[LadderStep]:
    ladder = [LadderStep(level=0, query=query)]
    relaxed: Tuple[str, ...] = ()
    current = query
    for dimension in RELAXATION_ORDER:
        loosened = _relax(current, dimension, cfg)
        if loosened is None:
            continue
        relaxed = relaxed + (dimension,)
        current = loosened
        ladder.append(LadderStep(level=len(ladder), query=current, relaxed=relaxed))
    return ladder


def rank(vehicles: Iterable[VehicleCandidate], no_deposit_first: bool) -> List[VehicleCandidate]:
    """Stable ordering: optional zero-deposit first, then cheapest, then id."""
    if no_deposit_first:
        key = lambda v: (v.deposit_amount > 0, v.daily_rate, v.vehicle_id)  # noqa: E731
    else:
        key = lambda v: (v.daily_rate, v.vehicle_id)  # noqa: E731
    return sorted(vehicles, key=key)


async def run_ladder(ladder: List[LadderStep], inventory: Inventory) -> LadderOutcome:
    """Search level by level and stop at the first level with at least one vehicle."""
    tried = 0
    for step in ladder:
        tried += 1
        found = await inventory.search(step.query)
        if found:
            vehicles = rank(found, step.query.no_deposit_first)[: step.query.limit]
            logger.info(
                "Search matched %d vehicle(s) at level %d (relaxed: %s)",
                len(vehicles),
                step.level,
                ",".join(step.relaxed) or "none",
            )
            return LadderOutcome(step=step, vehicles=vehicles, levels_tried=tried)
    logger.info("Search ladder exhausted after %d level(s)", tried)
    return LadderOutcome(step=ladder[-1] if ladder else None, levels_tried=tried)


def matches(query: SearchQuery, vehicle: VehicleCandidate) -> bool:
    """Inventory-side filter for one vehicle against one query."""
    if vehicle.location.lower() != query.location.lower():
        return False
    if query.vehicle_category and vehicle.category.upper() != query.vehicle_category.upper():
        return False
    if query.max_daily_rate is not None and vehicle.daily_rate > query.max_daily_rate:
        return False
    if (
        query.radius_miles is not None
        and vehicle.distance_miles is not None
        and vehicle.distance_miles > query.radius_miles
    ):
        return False
    flex = timedelta(days=query.date_flex_days)
    needed = query.end_date - query.start_date
    if vehicle.available_until - vehicle.available_from < needed:
        return False
    return (
        vehicle.available_from <= query.start_date + flex
        and vehicle.available_until >= query.end_date - flex
    )


class SnapshotInventory:
    """Inventory over a fixed list of vehicles."""

    def __init__(self, vehicles: Iterable[VehicleCandidate]) -> None:
        self._vehicles = list(vehicles)

    async def search(self, query: SearchQuery) -> List[VehicleCandidate]:
        return [v for v in self._vehicles if matches(query, v)]
