import json
from contextlib import asynccontextmanager
from datetime import date
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import VEHICLES_PATH
from rentalchat.booking.query import SearchQuery
from rentalchat.errors import ToolExecutionFailed
from rentalchat.services.collaborators import (
    McpInventory,
    McpRiskService,
    McpToolClient,
    McpWeatherService,
    RiskRequest,
    load_vehicles,
)


def _tool_result(payload, is_error: bool = False) -> SimpleNamespace:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(content=[SimpleNamespace(text=text)], isError=is_error)


def _patched_session(result: SimpleNamespace):
    session = MagicMock()
    session.initialize = AsyncMock()
    session.call_tool = AsyncMock(return_value=result)

    @asynccontextmanager
    async def fake_stdio_client(params):
        yield ("read", "write")

    @asynccontextmanager
    async def fake_client_session(read, write):
        yield session

    return session, fake_stdio_client, fake_client_session


async def _call(result: SimpleNamespace, tool: str = "get_conditions", arguments=None):
    session, stdio, client_session = _patched_session(result)
    with patch("rentalchat.services.collaborators.stdio_client", stdio), patch(
        "rentalchat.services.collaborators.ClientSession", client_session
    ):
        data = await McpToolClient("weather", "python mcp_servers/weather_mock/server.py").call(tool, arguments or {})
    return session, data


@pytest.mark.asyncio
async def test_mcp_call_returns_json_payload() -> None:
    session, data = await _call(_tool_result({"high_f": 91}), arguments={"location": "Phoenix"})
    assert data == {"high_f": 91}
    session.initialize.assert_awaited_once()
    session.call_tool.assert_awaited_once_with("get_conditions", {"location": "Phoenix"})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "result",
    [
        _tool_result("boom", is_error=True),
        _tool_result("not json"),
        _tool_result([1, 2]),
        _tool_result({"error": "unknown location"}),
    ],
)
async def test_mcp_call_failures_become_tool_errors(result) -> None:
    with pytest.raises(ToolExecutionFailed):
        await _call(result)


@pytest.mark.asyncio
async def test_unconfigured_server_is_a_tool_error() -> None:
    client = McpToolClient("risk", None)
    assert not client.configured
    with pytest.raises(ToolExecutionFailed):
        await client.call("assess_booking_risk", {})


@pytest.mark.asyncio
async def test_inventory_drops_unset_query_fields() -> None:
    client = MagicMock()
    vehicle = json.loads(VEHICLES_PATH.read_text(encoding="utf-8"))[0]
    client.call = AsyncMock(return_value={"vehicles": [vehicle]})
    query = SearchQuery(location="Phoenix", start_date=date(2026, 10, 31), end_date=date(2026, 11, 2))

    found = await McpInventory(client).search(query)

    assert [v.vehicle_id for v in found] == [vehicle["vehicle_id"]]
    name, arguments = client.call.call_args.args
    assert name == "search_vehicles"
    assert arguments["location"] == "Phoenix"
    assert None not in arguments.values()


@pytest.mark.asyncio
async def test_inventory_rejects_malformed_vehicles() -> None:
    client = MagicMock()
    client.call = AsyncMock(return_value={"vehicles": [{"title": "no id"}]})
    query = SearchQuery(location="Phoenix", start_date=date(2026, 10, 31), end_date=date(2026, 11, 2))
    with pytest.raises(ToolExecutionFailed):
        await McpInventory(client).search(query)


@pytest.mark.asyncio
async def test_risk_and_weather_payloads() -> None:
    client = MagicMock()
    client.call = AsyncMock(return_value={"risk_tier": "medium", "requires_manual_review": False, "reasons": ["x"]})
    request = RiskRequest(
        session_id="s1",
        identity=None,
        vehicle_id="phx-suv-rav4",
        daily_rate=62.0,
        rental_days=2,
        total_amount=154.58,
        verified=False,
    )
    assessment = await McpRiskService(client).assess(request)
    assert (assessment.risk_tier, assessment.requires_manual_review, assessment.reasons) == ("medium", False, ["x"])
    assert client.call.call_args.args[1]["identity"] == ""

    client.call = AsyncMock(return_value={"high_f": 88})
    await McpWeatherService(client).conditions("Phoenix", date(2026, 10, 31))
    client.call.assert_awaited_once_with("get_conditions", {"location": "Phoenix", "date": "2026-10-31"})


def test_seed_vehicles_load() -> None:
    vehicles = load_vehicles(VEHICLES_PATH)
    assert len(vehicles) == 15
    assert len({v.vehicle_id for v in vehicles}) == 15
