"""Adapters for the external collaborators: inventory, risk and weather.

Each one is reached through an MCP server over stdio, the way the tool servers
in ``mcp_servers/`` are meant to be run. The adapters only translate between
engine types and tool payloads; transport failures become
``ToolExecutionFailed``.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Protocol

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client

from ..booking.query import SearchQuery
from ..errors import ToolExecutionFailed
from ..models import VehicleCandidate
from .session_store import dict_to_candidate

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class McpToolClient:
    """Calls one tool on one MCP server, spawning the server per call."""

    def __init__(self, name: str, command: str | None) -> None:
        self.name = name
        self._command = command

    @property
    def configured(self) -> bool:
        return bool(self._command and len(self._command.split()) >= 2)

    async def call(self, tool: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Call a tool on the MCP server over stdio.

        Args:
            tool: Tool name on the server.
            arguments: JSON-ready tool arguments.

        Returns:
            The decoded JSON object the tool returned.

        Raises:
            ToolExecutionFailed: The server is not configured, the call failed,
                or the result is not a JSON object without an ``error`` key.
        """
        if not self.configured:
            raise ToolExecutionFailed(f"MCP server '{self.name}' has no startup command configured")

        cmd_parts = self._command.split()  # type: ignore[union-attr]
        server_params = StdioServerParameters(
            command=cmd_parts[0],
            args=cmd_parts[1:],
            env={"PYTHONPATH": str(PROJECT_ROOT / "src"), **os.environ},
        )
        logger.info("Calling MCP tool %s on server %s", tool, self.name)
        try:
            async with stdio_client(server_params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    result = await session.call_tool(tool, arguments)
        except (OSError, ConnectionError, TimeoutError) as e:
            raise ToolExecutionFailed(f"MCP server '{self.name}' unavailable: {e}") from e

        text = result.content[0].text if result.content else ""
        if result.isError:
            raise ToolExecutionFailed(f"{self.name}.{tool} failed: {text[:200]}")
        try:
            data = json.loads(text or "{}")
        except json.JSONDecodeError as e:
            raise ToolExecutionFailed(f"{self.name}.{tool} returned non-JSON output") from e
        if not isinstance(data, dict):
            raise ToolExecutionFailed(f"{self.name}.{tool} returned {type(data).__name__}, expected object")
        if "error" in data:
            raise ToolExecutionFailed(f"{self.name}.{tool}: {data['error']}")
        return data


class McpInventory:
    def __init__(self, client: McpToolClient) -> None:
        self._client = client

    async def search(self, query: SearchQuery) -> List[VehicleCandidate]:
        arguments = {k: v for k, v in query.to_dict().items() if v is not None}
        data = await self._client.call("search_vehicles", arguments)
        try:
            return [dict_to_candidate(v) for v in data.get("vehicles", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise ToolExecutionFailed(f"inventory returned a malformed vehicle: {e}") from e


@dataclass(frozen=True)
class RiskRequest:
    session_id: str
    identity: str | None
    vehicle_id: str
    daily_rate: float
    rental_days: int
    total_amount: float
    verified: bool


@dataclass(frozen=True)
class RiskAssessment:
    risk_tier: str
    requires_manual_review: bool
    reasons: List[str] = field(default_factory=list)


class RiskService(Protocol):
    async def assess(self, request: RiskRequest) -> RiskAssessment: ...


class McpRiskService:
    def __init__(self, client: McpToolClient) -> None:
        self._client = client

    async def assess(self, request: RiskRequest) -> RiskAssessment:
        data = await self._client.call(
            "assess_booking_risk",
            {
                "session_id": request.session_id,
                "identity": request.identity or "",
                "vehicle_id": request.vehicle_id,
                "daily_rate": request.daily_rate,
                "rental_days": request.rental_days,
                "total_amount": request.total_amount,
                "verified": request.verified,
            },
        )
        return RiskAssessment(
            risk_tier=str(data.get("risk_tier", "unknown")),
            requires_manual_review=bool(data.get("requires_manual_review", True)),
            reasons=[str(r) for r in data.get("reasons", [])],
        )


class WeatherService(Protocol):
    async def conditions(self, location: str, on: date) -> Dict[str, Any]: ...


class McpWeatherService:
    def __init__(self, client: McpToolClient) -> None:
        self._client = client

    async def conditions(self, location: str, on: date) -> Dict[str, Any]:
        return await self._client.call(
            "get_conditions", {"location": location, "date": on.isoformat()}
        )


SEED_VEHICLES_PATH = PROJECT_ROOT / "mcp_servers" / "inventory" / "vehicles.json"


def load_vehicles(path: Path = SEED_VEHICLES_PATH) -> List[VehicleCandidate]:
    """Read a JSON list of vehicles in the session-store candidate format."""
    with open(path, encoding="utf-8") as f:
        return [dict_to_candidate(v) for v in json.load(f)]
