from dataclasses import replace
from datetime import date
from typing import List

import pytest

from rentalchat.booking.query import (
    SearchQuery,
    SnapshotInventory,
    build_ladder,
    build_query,
    matches,
    rank,
    run_ladder,
)
from rentalchat.errors import ValidationFailed
from rentalchat.models import Slots, VehicleCandidate
from rentalchat.services.config_provider import FeatureFlags, RuntimeConfig

SCENARIO = Slots(
    location="Phoenix",
    start_date=date(2026, 10, 31),
    end_date=date(2026, 11, 2),
    vehicle_category="SUV",
    budget_ceiling=40.0,
)


def test_build_query_needs_location_and_dates() -> None:
    with pytest.raises(ValidationFailed):
        build_query(Slots(location="Phoenix"), RuntimeConfig())


def test_build_query_rejects_inverted_dates() -> None:
    slots = Slots(location="Phoenix", start_date=date(2026, 11, 2), end_date=date(2026, 10, 31))
    with pytest.raises(ValidationFailed):
        build_query(slots, RuntimeConfig())


@pytest.mark.asyncio
async def test_same_day_rental_is_searchable(vehicles: List[VehicleCandidate]) -> None:
    slots = Slots(location="Phoenix", start_date=date(2026, 10, 31), end_date=date(2026, 10, 31), vehicle_category="SUV")
    query = build_query(slots, RuntimeConfig())
    assert slots.rental_days() == 1
    outcome = await run_ladder(build_ladder(query, RuntimeConfig()), SnapshotInventory(vehicles))
    assert outcome.level == 0
    assert [v.vehicle_id for v in outcome.vehicles] == ["phx-suv-4runner", "phx-suv-rav4"]


def test_full_ladder_relaxes_in_fixed_order() -> None:
    ladder = build_ladder(build_query(SCENARIO, RuntimeConfig()), RuntimeConfig())
    assert [step.relaxed for step in ladder] == [
        (),
        ("price",),
        ("price", "category"),
        ("price", "category", "radius"),
        ("price", "category", "radius", "dates"),
    ]
    assert [step.level for step in ladder] == [0, 1, 2, 3, 4]
    last = ladder[-1].query
    assert last.max_daily_rate is None and last.vehicle_category is None and last.radius_miles is None
    assert last.date_flex_days == 2
    assert (last.location, last.start_date, last.end_date) == ("Phoenix", date(2026, 10, 31), date(2026, 11, 2))


def test_unconstrained_dimensions_are_skipped() -> None:
    slots = replace(SCENARIO, vehicle_category=None, budget_ceiling=None)
    ladder = build_ladder(build_query(slots, RuntimeConfig()), RuntimeConfig())
    assert [step.relaxed for step in ladder] == [(), ("radius",), ("radius", "dates")]


@pytest.mark.asyncio
async def test_scenario_stops_at_first_level_with_results(vehicles: List[VehicleCandidate]) -> None:
    cfg = RuntimeConfig()
    ladder = build_ladder(build_query(SCENARIO, cfg), cfg)
    outcome = await run_ladder(ladder, SnapshotInventory(vehicles))
    assert outcome.level == 1
    assert outcome.relaxed == ("price",)
    assert outcome.levels_tried == 2
    assert [v.vehicle_id for v in outcome.vehicles] == ["phx-suv-4runner", "phx-suv-rav4"]


@pytest.mark.asyncio
async def test_ladder_is_deterministic(vehicles: List[VehicleCandidate]) -> None:
    cfg = RuntimeConfig()
    runs = []
    for _ in range(3):
        outcome = await run_ladder(build_ladder(build_query(SCENARIO, cfg), cfg), SnapshotInventory(vehicles))
        runs.append((outcome.level, outcome.relaxed, [v.vehicle_id for v in outcome.vehicles]))
    assert runs[0] == runs[1] == runs[2]


@pytest.mark.asyncio
async def test_exhausted_ladder(vehicles: List[VehicleCandidate]) -> None:
    cfg = RuntimeConfig()
    slots = replace(SCENARIO, location="Flagstaff")
    ladder = build_ladder(build_query(slots, cfg), cfg)
    outcome = await run_ladder(ladder, SnapshotInventory(vehicles))
    assert outcome.exhausted
    assert outcome.level is None
    assert outcome.relaxed == ()
    assert outcome.levels_tried == len(ladder)


def test_no_deposit_ranking(vehicles: List[VehicleCandidate]) -> None:
    suvs = [v for v in vehicles if v.vehicle_id in ("phx-suv-4runner", "phx-suv-rav4")]
    assert [v.vehicle_id for v in rank(suvs, no_deposit_first=False)] == ["phx-suv-4runner", "phx-suv-rav4"]
    assert [v.vehicle_id for v in rank(suvs, no_deposit_first=True)] == ["phx-suv-rav4", "phx-suv-4runner"]


def test_prefer_no_deposit_flag_reaches_query() -> None:
    cfg = RuntimeConfig(flags=FeatureFlags(prefer_no_deposit=True))
    assert build_query(SCENARIO, cfg).no_deposit_first is True


def test_radius_filter(vehicles: List[VehicleCandidate]) -> None:
    tahoe = next(v for v in vehicles if v.vehicle_id == "phx-suv-tahoe")
    query = build_query(SCENARIO, RuntimeConfig())
    assert not matches(query, tahoe)
    assert matches(replace(query, radius_miles=None), tahoe)


def test_date_flex_admits_near_miss() -> None:
    vehicle = VehicleCandidate(
        vehicle_id="v1",
        title="Test",
        category="SUV",
        location="Phoenix",
        daily_rate=30.0,
        deposit_amount=0.0,
        available_from=date(2026, 11, 1),
        available_until=date(2026, 12, 31),
    )
    query = SearchQuery(location="phoenix", start_date=date(2026, 10, 31), end_date=date(2026, 11, 2))
    assert not matches(query, vehicle)
    assert matches(replace(query, date_flex_days=2), vehicle)
