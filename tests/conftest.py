import asyncio
import sys
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from rentalchat.agent.accountant import CostAccountant  # noqa: E402
from rentalchat.agent.llm import ModelRequest  # noqa: E402
from rentalchat.agent.orchestrator import BookingOrchestrator, OrchestratorLimits  # noqa: E402
from rentalchat.agent.tools import ToolExecutor, build_registry  # noqa: E402
from rentalchat.booking.query import SearchQuery, SnapshotInventory  # noqa: E402
from rentalchat.models import VehicleCandidate  # noqa: E402
from rentalchat.security.gate import CallerContext, SecurityGate  # noqa: E402
from rentalchat.services.collaborators import RiskAssessment, RiskRequest, load_vehicles  # noqa: E402
from rentalchat.services.config_provider import ConfigProvider, RuntimeConfig  # noqa: E402
from rentalchat.services.memory import InMemoryCrudService  # noqa: E402
from rentalchat.services.session_store import SessionStore  # noqa: E402

VEHICLES_PATH = _root / "mcp_servers" / "inventory" / "vehicles.json"
TODAY = date(2026, 10, 19)


@dataclass(frozen=True)
class Pause:
    """Scripted model step: sleep before the next event."""

    seconds: float


class ScriptedModel:
    """ModelClient that replays one script per call.

    A script is a list of model events; ``Pause`` items sleep and exception
    instances are raised at that point of the stream.
    """

    def __init__(self, *scripts: List[Any]) -> None:
        self.scripts = list(scripts)
        self.requests: List[ModelRequest] = []
        self.closed = 0

    async def stream(self, request: ModelRequest):
        self.requests.append(request)
        script = self.scripts.pop(0)
        try:
            for item in script:
                if isinstance(item, Pause):
                    await asyncio.sleep(item.seconds)
                elif isinstance(item, BaseException):
                    raise item
                else:
                    yield item
        finally:
            self.closed += 1


class RecordingInventory:
    """Snapshot inventory that records queries and can be slowed down."""

    def __init__(self, vehicles: List[VehicleCandidate], delay: float = 0.0, log: Optional[List[str]] = None) -> None:
        self._inner = SnapshotInventory(vehicles)
        self.delay = delay
        self.queries: List[SearchQuery] = []
        self.log = log if log is not None else []

    async def search(self, query: SearchQuery) -> List[VehicleCandidate]:
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        found = await self._inner.search(query)
        self.log.append("search")
        return found


class FakeRisk:
    def __init__(self, tier: str = "low", delay: float = 0.0, log: Optional[List[str]] = None) -> None:
        self.tier = tier
        self.delay = delay
        self.requests: List[RiskRequest] = []
        self.log = log if log is not None else []

    async def assess(self, request: RiskRequest) -> RiskAssessment:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.log.append("risk")
        return RiskAssessment(
            risk_tier=self.tier,
            requires_manual_review=self.tier == "high",
            reasons=[] if self.tier == "low" else ["renter identity not verified"],
        )


class FakeWeather:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    async def conditions(self, location: str, on: date) -> Dict[str, Any]:
        self.calls.append((location, on))
        return {"location": location, "date": on.isoformat(), "high_f": 88, "advisories": []}


async def collect(events) -> List[Any]:
    return [event async for event in events]


@pytest.fixture
def vehicles() -> List[VehicleCandidate]:
    return load_vehicles(VEHICLES_PATH)


@pytest.fixture
def caller() -> CallerContext:
    return CallerContext(identity="user-1", ip="127.0.0.1", user_agent="Mozilla/5.0 (X11; Linux x86_64)", user_id="user-1")


@pytest.fixture
def crud() -> InMemoryCrudService:
    return InMemoryCrudService()


@pytest.fixture
def make_orchestrator(crud: InMemoryCrudService, vehicles: List[VehicleCandidate]):
    """Factory for an orchestrator over in-memory storage and fake collaborators."""

    def _make(
        model: ScriptedModel,
        *,
        config: Optional[RuntimeConfig] = None,
        inventory: Any = None,
        risk: Any = None,
        weather: Any = None,
        limits: Optional[OrchestratorLimits] = None,
        sleep: Any = None,
    ) -> BookingOrchestrator:
        runtime = config or RuntimeConfig()
        provider = ConfigProvider(lambda: runtime, ttl_seconds=60)
        registry = build_registry(
            inventory or RecordingInventory(vehicles),
            risk or FakeRisk(),
            weather or FakeWeather(),
        )
        kwargs: Dict[str, Any] = {}
        if sleep is not None:
            kwargs["sleep"] = sleep
        return BookingOrchestrator(
            store=SessionStore(crud, ttl_seconds=3600),
            config=provider,
            gate=SecurityGate(crud, provider),
            accountant=CostAccountant(crud),
            executor=ToolExecutor(registry, max_parallel=4, timeout_seconds=5.0),
            model=model,
            system_prompt="You are a rental booking assistant.",
            reasoning_preamble="Think carefully.\n",
            limits=limits or OrchestratorLimits(),
            today=lambda: TODAY,
            **kwargs,
        )

    return _make
