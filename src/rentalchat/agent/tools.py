import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Sequence, Tuple, Type

from pydantic import BaseModel, Field, ValidationError

from ..booking.pricing import build_quote
from ..booking.query import Inventory, build_ladder, build_query, run_ladder
from ..errors import ToolExecutionFailed, ValidationFailed
from ..models import Session, Slots, ToolCallRequest, ToolCallResult, VehicleCandidate
from ..services.collaborators import RiskRequest, RiskService, WeatherService
from ..services.config_provider import RuntimeConfig
from ..services.session_store import candidate_to_dict, slots_to_dict

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """What a tool may read. Tools never mutate it; they return ``ToolEffects``."""

    session: Session
    slots: Slots
    candidates: List[VehicleCandidate]
    config: RuntimeConfig
    today: date

    def vehicle(self, vehicle_id: str) -> VehicleCandidate:
        for vehicle in self.candidates:
            if vehicle.vehicle_id == vehicle_id:
                return vehicle
        raise ToolExecutionFailed(f"vehicle {vehicle_id} is not among the current results")


@dataclass
class ToolEffects:
    """Session changes a tool asks for, applied by the orchestrator in call order."""

    slots: Optional[Slots] = None
    searched: bool = False
    candidates: Optional[List[VehicleCandidate]] = None
    relaxation_level: Optional[int] = None
    relaxed: Tuple[str, ...] = ()
    selected_vehicle_id: Optional[str] = None


@dataclass
class ToolOutcome:
    result: Dict[str, Any]
    effects: ToolEffects = field(default_factory=ToolEffects)


class BookingTool(ABC):
    """One named capability the model can invoke."""

    name: ClassVar[str]
    description: ClassVar[str]
    Args: ClassVar[Type[BaseModel]]
    flag: ClassVar[Optional[str]] = None

    def enabled(self, cfg: RuntimeConfig) -> bool:
        return self.flag is None or bool(getattr(cfg.flags, self.flag))

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.Args.model_json_schema(),
            },
        }

    @abstractmethod
    async def run(self, args: Any, ctx: ToolContext) -> ToolOutcome:
        raise NotImplementedError


class SearchVehiclesTool(BookingTool):
    name = "search_vehicles"
    description = (
        "Search available rental vehicles. Missing arguments default to what the renter "
        "already said. Results are relaxed automatically when nothing matches."
    )

    class Args(BaseModel):
        location: Optional[str] = Field(None, description="City for pickup, e.g. Phoenix")
        start_date: Optional[date] = Field(None, description="Pickup date, YYYY-MM-DD")
        end_date: Optional[date] = Field(None, description="Return date, YYYY-MM-DD")
        vehicle_category: Optional[str] = Field(None, description="SUV, SEDAN, TRUCK, LUXURY, ELECTRIC, ...")
        max_daily_rate: Optional[float] = Field(None, gt=0, description="Budget ceiling in USD per day")
        no_deposit: Optional[bool] = Field(None, description="Renter prefers no security deposit")

    def __init__(self, inventory: Inventory) -> None:
        self._inventory = inventory

    async def run(self, args: "SearchVehiclesTool.Args", ctx: ToolContext) -> ToolOutcome:
        slots = ctx.slots.merged(
            Slots(
                location=args.location,
                start_date=args.start_date,
                end_date=args.end_date,
                vehicle_category=args.vehicle_category.upper() if args.vehicle_category else None,
                budget_ceiling=args.max_daily_rate,
                no_deposit=args.no_deposit,
            )
        )
        query = build_query(slots, ctx.config)
        outcome = await run_ladder(build_ladder(query, ctx.config), self._inventory)
        effects = ToolEffects(slots=slots, searched=True)
        if outcome.vehicles:
            effects.candidates = outcome.vehicles
            effects.relaxation_level = outcome.level
            effects.relaxed = outcome.relaxed
        return ToolOutcome(
            result={
                "count": len(outcome.vehicles),
                "level": outcome.level,
                "relaxed": list(outcome.relaxed),
                "levels_tried": outcome.levels_tried,
                "criteria": slots_to_dict(slots),
                "vehicles": [candidate_to_dict(v) for v in outcome.vehicles],
            },
            effects=effects,
        )


class SelectVehicleTool(BookingTool):
    name = "select_vehicle"
    description = "Record the vehicle the renter has chosen from the current results."

    class Args(BaseModel):
        vehicle_id: str

    async def run(self, args: "SelectVehicleTool.Args", ctx: ToolContext) -> ToolOutcome:
        vehicle = ctx.vehicle(args.vehicle_id)
        return ToolOutcome(
            result={"selected": candidate_to_dict(vehicle)},
            effects=ToolEffects(selected_vehicle_id=vehicle.vehicle_id),
        )


class QuotePriceTool(BookingTool):
    name = "quote_price"
    description = "Compute the trip total (subtotal, service fee, tax, deposit) for one vehicle."

    class Args(BaseModel):
        vehicle_id: str

    async def run(self, args: "QuotePriceTool.Args", ctx: ToolContext) -> ToolOutcome:
        quote = build_quote(ctx.slots, ctx.vehicle(args.vehicle_id), ctx.config.pricing)
        return ToolOutcome(result={"quote": quote.to_dict()})


class AssessRiskTool(BookingTool):
    name = "assess_risk"
    description = "Check whether a booking of this vehicle needs manual review before payment."
    flag = "risk_assessment_enabled"

    class Args(BaseModel):
        vehicle_id: str

    def __init__(self, risk: RiskService) -> None:
        self._risk = risk

    async def run(self, args: "AssessRiskTool.Args", ctx: ToolContext) -> ToolOutcome:
        vehicle = ctx.vehicle(args.vehicle_id)
        quote = build_quote(ctx.slots, vehicle, ctx.config.pricing)
        assessment = await self._risk.assess(
            RiskRequest(
                session_id=ctx.session.session_id,
                identity=ctx.session.identity,
                vehicle_id=vehicle.vehicle_id,
                daily_rate=vehicle.daily_rate,
                rental_days=quote.days,
                total_amount=quote.estimated_total,
                verified=ctx.session.verified,
            )
        )
        return ToolOutcome(
            result={
                "risk_tier": assessment.risk_tier,
                "requires_manual_review": assessment.requires_manual_review,
                "reasons": assessment.reasons,
            }
        )


class WeatherTool(BookingTool):
    name = "get_conditions"
    description = "Look up expected local weather for the trip, to suggest a suitable vehicle."
    flag = "weather_enabled"

    class Args(BaseModel):
        location: Optional[str] = Field(None, description="City, defaults to the pickup location")
        day: Optional[date] = Field(None, description="YYYY-MM-DD, defaults to the pickup date")

    def __init__(self, weather: WeatherService) -> None:
        self._weather = weather

    async def run(self, args: "WeatherTool.Args", ctx: ToolContext) -> ToolOutcome:
        location = args.location or ctx.slots.location
        if not location:
            raise ValidationFailed("get_conditions needs a location")
        on = args.day or ctx.slots.start_date or ctx.today
        return ToolOutcome(result=await self._weather.conditions(location, on))


class ToolRegistry:
    """Name-keyed registry. Each tool name maps to exactly one handler."""

    def __init__(self, tools: Iterable[BookingTool]) -> None:
        self._tools: Dict[str, BookingTool] = {}
        for tool in tools:
            if tool.name in self._tools:
                raise ValueError(f"duplicate tool registration: {tool.name}")
            self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[BookingTool]:
        """Look up a tool by the name the model calls it by.

        Args:
            name: Tool name from a model tool call.

        Returns:
            The registered tool, or None if no tool has that name.
        """
        return self._tools.get(name)

    def names(self) -> List[str]:
        """Registered tool names in registration order."""
        return list(self._tools)

    def schemas(self, cfg: RuntimeConfig) -> List[Dict[str, Any]]:
        """Tool schemas offered to the model under the current feature flags."""
        if not cfg.flags.tool_use_enabled:
            return []
        return [tool.schema() for tool in self._tools.values() if tool.enabled(cfg)]


def build_registry(
    inventory: Inventory,
    risk: RiskService,
    weather: WeatherService,
) -> ToolRegistry:
    return ToolRegistry(
        [
            SearchVehiclesTool(inventory),
            SelectVehicleTool(),
            QuotePriceTool(),
            AssessRiskTool(risk),
            WeatherTool(weather),
        ]
    )


def _error(call: ToolCallRequest, message: str) -> Tuple[ToolCallResult, ToolEffects]:
    return (
        ToolCallResult(call_id=call.call_id, name=call.name, result={"error": message}, is_error=True),
        ToolEffects(),
    )


class ToolExecutor:
    """Runs the tool calls of one assistant turn concurrently on a bounded pool.

    Results come back in request order whatever the completion order, and a
    failing tool yields an error result instead of raising, so sibling calls
    and the model loop carry on.
    """

    def __init__(self, registry: ToolRegistry, max_parallel: int, timeout_seconds: float) -> None:
        self._registry = registry
        self._max_parallel = max(1, max_parallel)
        self._timeout = timeout_seconds

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    async def execute_all(
        self, calls: Sequence[ToolCallRequest], ctx: ToolContext
    ) -> List[Tuple[ToolCallResult, ToolEffects]]:
        """Run the calls concurrently, at most ``max_parallel`` at a time.

        Args:
            calls: Tool calls from one model reply.
            ctx: Session view and runtime config shared by the calls.

        Returns:
            One (result, effects) pair per call, in the order of ``calls``.
        """
        semaphore = asyncio.Semaphore(self._max_parallel)

        async def _bounded(call: ToolCallRequest) -> Tuple[ToolCallResult, ToolEffects]:
            async with semaphore:
                return await self.execute(call, ctx)

        return list(await asyncio.gather(*(_bounded(c) for c in calls)))

    async def execute(
        self, call: ToolCallRequest, ctx: ToolContext
    ) -> Tuple[ToolCallResult, ToolEffects]:
        """Run one call. Failures come back as an error result, never as an exception."""
        tool = self._registry.get(call.name)
        if tool is None:
            logger.error("Tool %s not found", call.name)
            return _error(call, f"unknown tool: {call.name}")
        if not tool.enabled(ctx.config):
            return _error(call, f"tool {call.name} is disabled")

        try:
            args = tool.Args.model_validate(call.arguments)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) or "arguments" for err in e.errors())
            logger.warning("Invalid arguments for %s: %s", call.name, fields)
            return _error(call, f"invalid arguments: {fields}")

        logger.info("Executing tool: %s (%s)", call.name, call.call_id)
        try:
            outcome = await asyncio.wait_for(tool.run(args, ctx), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.1fs", call.name, self._timeout)
            return _error(call, f"{call.name} timed out")
        except (ToolExecutionFailed, ValidationFailed) as e:
            logger.warning("Tool %s failed: %s", call.name, e.detail)
            return _error(call, e.detail or e.public_message)
        except Exception:
            logger.exception("Tool %s raised unexpectedly", call.name)
            return _error(call, f"{call.name} is unavailable right now")

        logger.info("Tool %s completed", call.name)
        return ToolCallResult(call_id=call.call_id, name=call.name, result=outcome.result), outcome.effects
