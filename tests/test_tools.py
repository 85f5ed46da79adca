import asyncio
from datetime import date
from typing import List

import pytest
from pydantic import BaseModel

from conftest import FakeRisk, FakeWeather, RecordingInventory
from rentalchat.agent.tools import (
    AssessRiskTool,
    BookingTool,
    QuotePriceTool,
    SearchVehiclesTool,
    SelectVehicleTool,
    ToolContext,
    ToolExecutor,
    ToolOutcome,
    ToolRegistry,
    WeatherTool,
    build_registry,
)
from rentalchat.models import Session, Slots, ToolCallRequest, VehicleCandidate
from rentalchat.services.config_provider import FeatureFlags, RuntimeConfig

SLOTS = Slots(
    location="Phoenix",
    start_date=date(2026, 10, 31),
    end_date=date(2026, 11, 2),
    vehicle_category="SUV",
    budget_ceiling=40.0,
)


def _ctx(candidates: List[VehicleCandidate] = (), cfg: RuntimeConfig | None = None) -> ToolContext:
    return ToolContext(
        session=Session(session_id="s1", identity="user-1"),
        slots=SLOTS,
        candidates=list(candidates),
        config=cfg or RuntimeConfig(),
        today=date(2026, 10, 19),
    )


def _executor(vehicles, **kwargs) -> ToolExecutor:
    registry = build_registry(
        kwargs.get("inventory") or RecordingInventory(vehicles),
        kwargs.get("risk") or FakeRisk(),
        kwargs.get("weather") or FakeWeather(),
    )
    return ToolExecutor(registry, max_parallel=kwargs.get("max_parallel", 4), timeout_seconds=kwargs.get("timeout", 5.0))


def test_registry_rejects_duplicate_names(vehicles) -> None:
    tool = build_registry(RecordingInventory(vehicles), FakeRisk(), FakeWeather()).get("quote_price")
    with pytest.raises(ValueError):
        ToolRegistry([tool, tool])


def test_schemas_follow_feature_flags(vehicles) -> None:
    registry = build_registry(RecordingInventory(vehicles), FakeRisk(), FakeWeather())
    names = [s["function"]["name"] for s in registry.schemas(RuntimeConfig())]
    assert names == ["search_vehicles", "select_vehicle", "quote_price", "assess_risk", "get_conditions"]

    cfg = RuntimeConfig(flags=FeatureFlags(weather_enabled=False, risk_assessment_enabled=False))
    names = [s["function"]["name"] for s in registry.schemas(cfg)]
    assert names == ["search_vehicles", "select_vehicle", "quote_price"]

    assert registry.schemas(RuntimeConfig(flags=FeatureFlags(tool_use_enabled=False))) == []


def test_search_schema_is_an_object(vehicles) -> None:
    registry = build_registry(RecordingInventory(vehicles), FakeRisk(), FakeWeather())
    params = registry.get("search_vehicles").schema()["function"]["parameters"]
    assert params["type"] == "object"
    assert "max_daily_rate" in params["properties"]


@pytest.mark.asyncio
async def test_search_uses_session_slots_and_reports_relaxation(vehicles) -> None:
    executor = _executor(vehicles)
    result, effects = await executor.execute(ToolCallRequest("call_1", "search_vehicles", {}), _ctx())
    assert result.is_error is False
    assert result.result["count"] == 2
    assert result.result["level"] == 1
    assert result.result["relaxed"] == ["price"]
    assert effects.searched is True
    assert [v.vehicle_id for v in effects.candidates] == ["phx-suv-4runner", "phx-suv-rav4"]


@pytest.mark.asyncio
async def test_search_arguments_override_slots(vehicles) -> None:
    executor = _executor(vehicles)
    call = ToolCallRequest("call_1", "search_vehicles", {"vehicle_category": "sedan", "max_daily_rate": 40})
    result, effects = await executor.execute(call, _ctx())
    assert result.result["level"] == 0
    assert [v["vehicle_id"] for v in result.result["vehicles"]] == ["phx-sedan-camry"]
    assert effects.slots.vehicle_category == "SEDAN"


@pytest.mark.asyncio
async def test_search_with_nothing_found_leaves_candidates_alone(vehicles) -> None:
    executor = _executor(vehicles)
    call = ToolCallRequest("call_1", "search_vehicles", {"location": "Flagstaff"})
    result, effects = await executor.execute(call, _ctx())
    assert result.result["count"] == 0
    assert effects.searched is True
    assert effects.candidates is None


@pytest.mark.asyncio
async def test_select_and_quote_need_a_current_candidate(vehicles) -> None:
    executor = _executor(vehicles)
    four_runner = next(v for v in vehicles if v.vehicle_id == "phx-suv-4runner")
    ctx = _ctx([four_runner])

    result, effects = await executor.execute(ToolCallRequest("c1", "select_vehicle", {"vehicle_id": "phx-suv-4runner"}), ctx)
    assert effects.selected_vehicle_id == "phx-suv-4runner"

    result, _ = await executor.execute(ToolCallRequest("c2", "quote_price", {"vehicle_id": "phx-suv-4runner"}), ctx)
    assert result.result["quote"]["estimated_total"] == 137.13

    result, effects = await executor.execute(ToolCallRequest("c3", "select_vehicle", {"vehicle_id": "nope"}), ctx)
    assert result.is_error is True
    assert "not among the current results" in result.result["error"]
    assert effects.selected_vehicle_id is None


@pytest.mark.asyncio
async def test_assess_risk_sends_booking_totals(vehicles) -> None:
    risk = FakeRisk(tier="medium")
    executor = _executor(vehicles, risk=risk)
    four_runner = next(v for v in vehicles if v.vehicle_id == "phx-suv-4runner")
    result, _ = await executor.execute(
        ToolCallRequest("c1", "assess_risk", {"vehicle_id": "phx-suv-4runner"}), _ctx([four_runner])
    )
    assert result.result == {
        "risk_tier": "medium",
        "requires_manual_review": False,
        "reasons": ["renter identity not verified"],
    }
    sent = risk.requests[0]
    assert (sent.rental_days, sent.total_amount, sent.verified) == (2, 137.13, False)


@pytest.mark.asyncio
async def test_weather_defaults_to_trip_location_and_start(vehicles) -> None:
    weather = FakeWeather()
    executor = _executor(vehicles, weather=weather)
    result, _ = await executor.execute(ToolCallRequest("c1", "get_conditions", {}), _ctx())
    assert weather.calls == [("Phoenix", date(2026, 10, 31))]
    assert result.result["high_f"] == 88


@pytest.mark.asyncio
async def test_unknown_disabled_and_invalid_calls_become_error_results(vehicles) -> None:
    executor = _executor(vehicles)
    cfg = RuntimeConfig(flags=FeatureFlags(weather_enabled=False))

    unknown, _ = await executor.execute(ToolCallRequest("c1", "book_now", {}), _ctx())
    disabled, _ = await executor.execute(ToolCallRequest("c2", "get_conditions", {}), _ctx(cfg=cfg))
    invalid, _ = await executor.execute(ToolCallRequest("c3", "search_vehicles", {"max_daily_rate": -5}), _ctx())

    assert unknown.is_error and unknown.result == {"error": "unknown tool: book_now"}
    assert disabled.is_error and "disabled" in disabled.result["error"]
    assert invalid.is_error and "max_daily_rate" in invalid.result["error"]


class _Boom(BookingTool):
    name = "boom"
    description = "always fails"

    class Args(BaseModel):
        pass

    async def run(self, args, ctx) -> ToolOutcome:
        raise RuntimeError("kaput")


class _Slow(BookingTool):
    name = "slow"
    description = "never finishes in time"

    class Args(BaseModel):
        pass

    async def run(self, args, ctx) -> ToolOutcome:
        await asyncio.sleep(10)
        return ToolOutcome(result={})


@pytest.mark.asyncio
async def test_failures_do_not_abort_siblings(vehicles) -> None:
    registry = ToolRegistry(
        [
            _Boom(),
            _Slow(),
            SearchVehiclesTool(RecordingInventory(vehicles)),
            SelectVehicleTool(),
            QuotePriceTool(),
            AssessRiskTool(FakeRisk()),
            WeatherTool(FakeWeather()),
        ]
    )
    executor = ToolExecutor(registry, max_parallel=4, timeout_seconds=0.05)
    outcomes = await executor.execute_all(
        [
            ToolCallRequest("c1", "boom", {}),
            ToolCallRequest("c2", "slow", {}),
            ToolCallRequest("c3", "search_vehicles", {}),
        ],
        _ctx(),
    )
    results = [r for r, _ in outcomes]
    assert [r.call_id for r in results] == ["c1", "c2", "c3"]
    assert results[0].is_error and results[0].result == {"error": "boom is unavailable right now"}
    assert results[1].is_error and results[1].result == {"error": "slow timed out"}
    assert results[2].is_error is False


@pytest.mark.asyncio
async def test_execute_all_keeps_request_order_when_completion_differs(vehicles) -> None:
    log: List[str] = []
    executor = _executor(
        vehicles,
        inventory=RecordingInventory(vehicles, delay=0.05, log=log),
        risk=FakeRisk(log=log),
    )
    four_runner = next(v for v in vehicles if v.vehicle_id == "phx-suv-4runner")
    outcomes = await executor.execute_all(
        [
            ToolCallRequest("c1", "search_vehicles", {}),
            ToolCallRequest("c2", "assess_risk", {"vehicle_id": "phx-suv-4runner"}),
        ],
        _ctx([four_runner]),
    )
    assert log[-1] == "search"
    assert "risk" in log
    assert [r.call_id for r, _ in outcomes] == ["c1", "c2"]
