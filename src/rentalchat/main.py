import asyncio
import json
import logging
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from .agent import BookingOrchestrator, CostAccountant, OpenAIModelClient, OrchestratorLimits, ToolExecutor, build_registry
from .agent.events import TurnEvent
from .agent.llm import ModelClient
from .agent.orchestrator import new_session_id, session_snapshot
from .analytics.batch import BatchAnalyticsService, OpenAIBatchProvider
from .booking.query import Inventory, SnapshotInventory
from .errors import EngineError, SessionBusy, SessionNotFound
from .models import Session
from .security.gate import CallerContext, SecurityGate
from .services.collaborators import (
    McpInventory,
    McpRiskService,
    McpToolClient,
    McpWeatherService,
    RiskService,
    WeatherService,
    load_vehicles,
)
from .services.config_provider import ConfigProvider, settings_loader
from .services.crud import CrudStore, open_crud_store
from .services.session_store import SessionStore, session_to_dict
from .settings import Settings, get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure the package logger (console plus rotating file) and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("rentalchat")
    logger = logging.getLogger("rentalchat.server")
    if root.handlers:
        return logger

    root.setLevel(getattr(logging, level, logging.INFO))
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    root.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


class ChatRequest(BaseModel):
    session_id: Optional[str] = None
    message: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    visitor_id: Optional[str] = None


@dataclass
class AppServices:
    crud: CrudStore
    config: ConfigProvider
    store: SessionStore
    orchestrator: BookingOrchestrator
    analytics: Optional[BatchAnalyticsService] = None


def _default_inventory(settings: Settings) -> Inventory:
    if settings.mcp_inventory_cmd:
        return McpInventory(McpToolClient("inventory", settings.mcp_inventory_cmd))
    LOGGER.info("MCP_INVENTORY_CMD not set; searching the bundled vehicle snapshot")
    return SnapshotInventory(load_vehicles())


def build_services(
    settings: Settings,
    crud: CrudStore,
    *,
    model: Optional[ModelClient] = None,
    inventory: Optional[Inventory] = None,
    risk: Optional[RiskService] = None,
    weather: Optional[WeatherService] = None,
    with_analytics: bool = True,
) -> AppServices:
    """Wire every engine component from settings. Collaborators can be swapped in."""
    with_analytics = with_analytics and bool(settings.openai_api_key)
    openai_client: Optional[AsyncOpenAI] = None
    if model is None or with_analytics:
        openai_client = AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
    config = ConfigProvider(settings_loader(settings), ttl_seconds=settings.runtime_config_ttl_seconds)
    store = SessionStore(crud, ttl_seconds=settings.session_ttl_seconds)
    registry = build_registry(
        inventory or _default_inventory(settings),
        risk or McpRiskService(McpToolClient("risk", settings.mcp_risk_cmd)),
        weather or McpWeatherService(McpToolClient("weather", settings.mcp_weather_cmd)),
    )
    orchestrator = BookingOrchestrator(
        store=store,
        config=config,
        gate=SecurityGate(crud, config, fail_closed=settings.rate_limit_fail_closed),
        accountant=CostAccountant(crud),
        executor=ToolExecutor(registry, settings.max_parallel_tools, settings.tool_timeout_seconds),
        model=model or OpenAIModelClient(openai_client),  # type: ignore[arg-type]
        system_prompt=settings.agent_system_prompt,
        reasoning_preamble=settings.reasoning_prompt_preamble,
        limits=OrchestratorLimits.from_settings(settings),
    )
    analytics = None
    if with_analytics and openai_client is not None:
        analytics = BatchAnalyticsService(
            store=store,
            crud=crud,
            provider=OpenAIBatchProvider(openai_client, settings.batch_model),
            config=config,
            instructions=settings.batch_summary_prompt,
            idle_seconds=settings.batch_idle_seconds,
            poll_interval_seconds=settings.batch_poll_interval_seconds,
        )
    return AppServices(crud=crud, config=config, store=store, orchestrator=orchestrator, analytics=analytics)


def resolve_caller(
    headers: Mapping[str, str],
    client_host: Optional[str],
    user_id: Optional[str] = None,
    visitor_id: Optional[str] = None,
) -> CallerContext:
    """Identity is the user id, else the visitor id, else the client address."""
    forwarded = headers.get("x-forwarded-for", "")
    ip = (
        forwarded.split(",")[0].strip()
        or headers.get("x-real-ip", "").strip()
        or client_host
        or "unknown"
    )
    identity = user_id or (f"visitor:{visitor_id}" if visitor_id else f"ip:{ip}")
    return CallerContext(identity=identity, ip=ip, user_agent=headers.get("user-agent"), user_id=user_id)


def sse_frame(event: TurnEvent) -> str:
    data = event.to_dict()
    return f"event: {data['type']}\ndata: {json.dumps(data, default=str)}\n\n"


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """Build the FastAPI app. Pass ``services`` to run against prebuilt components."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Connect the store and start batch analytics at startup; stop and close on shutdown."""
        owned = services is None
        if owned:
            crud = await open_crud_store()
            app.state.services = build_services(settings, crud)
        else:
            app.state.services = services

        stop = asyncio.Event()
        batch_task: Optional[asyncio.Task] = None
        if app.state.services.analytics is not None:
            batch_task = asyncio.create_task(app.state.services.analytics.run_forever(stop))

        yield

        LOGGER.info("Shutting down...")
        stop.set()
        if batch_task is not None:
            batch_task.cancel()
            try:
                await batch_task
            except asyncio.CancelledError:
                pass
        if owned:
            await app.state.services.crud.close()

    app = FastAPI(
        title="Rental Booking Assistant",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _services(request_app: FastAPI) -> AppServices:
        return request_app.state.services

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check for load balancers and monitoring."""
        return {"status": "ok"}

    @app.post("/chat/stream")
    async def chat_stream(body: ChatRequest, request: Request) -> StreamingResponse:
        """Streaming turn endpoint: one SSE frame per event, ending with turn_complete or error."""
        caller = resolve_caller(
            request.headers,
            request.client.host if request.client else None,
            body.user_id,
            body.visitor_id,
        )
        session_id = body.session_id or new_session_id()
        orchestrator = _services(request.app).orchestrator
        LOGGER.info("SSE chat start session_id=%s", session_id)

        async def frames() -> AsyncIterator[str]:
            async with aclosing(orchestrator.run_turn(session_id, body.message, caller)) as events:
                async for event in events:
                    yield sse_frame(event)

        return StreamingResponse(
            frames(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no", "X-Session-Id": session_id},
        )

    @app.post("/chat")
    async def chat(body: ChatRequest, request: Request) -> Dict[str, Any]:
        """Non-streaming turn endpoint: the same events collected into one response."""
        caller = resolve_caller(
            request.headers,
            request.client.host if request.client else None,
            body.user_id,
            body.visitor_id,
        )
        session_id = body.session_id or new_session_id()
        orchestrator = _services(request.app).orchestrator

        events: List[Dict[str, Any]] = []
        async with aclosing(orchestrator.run_turn(session_id, body.message, caller)) as stream:
            async for event in stream:
                events.append(event.to_dict())

        reply = "".join(e["content"] for e in events if e["type"] == "text_delta")
        complete = next((e for e in events if e["type"] == "turn_complete"), None)
        error = next((e for e in events if e["type"] == "error"), None)
        return {
            "session_id": session_id,
            "reply": reply,
            "events": events,
            "session": complete["session"] if complete else None,
            "suggestions": complete["suggestions"] if complete else [],
            "error": {"kind": error["kind"], "message": error["message"]} if error else None,
        }

    @app.get("/sessions/{session_id}")
    async def load_session(session_id: str, request: Request) -> Dict[str, Any]:
        """Conversation-load endpoint: full turn list, slots, candidates and counters."""
        session = await _services(request.app).orchestrator.load_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=SessionNotFound.public_message)
        return session_to_dict(session)

    async def _lifecycle(request: Request, session_id: str, action: str) -> Dict[str, Any]:
        orchestrator = _services(request.app).orchestrator
        hooks = {
            "verified": orchestrator.mark_verified,
            "booked": orchestrator.mark_booked,
            "abandoned": orchestrator.mark_abandoned,
        }
        try:
            session: Session = await hooks[action](session_id)
        except SessionNotFound as e:
            raise HTTPException(status_code=404, detail=e.public_message) from e
        except SessionBusy as e:
            raise HTTPException(status_code=409, detail=e.public_message) from e
        except EngineError as e:
            LOGGER.warning("Lifecycle %s rejected for session_id=%s: %s", action, session_id, e.detail)
            raise HTTPException(status_code=409, detail=e.public_message) from e
        return session_snapshot(session)

    @app.post("/sessions/{session_id}/verified")
    async def session_verified(session_id: str, request: Request) -> Dict[str, Any]:
        return await _lifecycle(request, session_id, "verified")

    @app.post("/sessions/{session_id}/booked")
    async def session_booked(session_id: str, request: Request) -> Dict[str, Any]:
        return await _lifecycle(request, session_id, "booked")

    @app.post("/sessions/{session_id}/abandoned")
    async def session_abandoned(session_id: str, request: Request) -> Dict[str, Any]:
        return await _lifecycle(request, session_id, "abandoned")

    @app.websocket("/ws/chat")
    async def chat_ws(websocket: WebSocket) -> None:
        """WebSocket chat endpoint: one turn per client message, one JSON object per event.

        Expected Input (JSON):
            {
                "session_id": str - optional, a new session is started when absent,
                "message": str - user text,
                "user_id": str - optional authenticated user,
                "visitor_id": str - optional anonymous visitor
            }
        """
        await websocket.accept()
        orchestrator = _services(websocket.app).orchestrator
        client_host = websocket.client.host if websocket.client else None
        session_id: Optional[str] = None
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError as e:
                    LOGGER.error("Invalid WS payload (not JSON): %s", e)
                    await websocket.send_json({"type": "error", "kind": "validation_failed", "message": "Invalid JSON payload"})
                    continue

                message = str(payload.get("message") or "").strip()
                if not message:
                    await websocket.send_json({"type": "error", "kind": "validation_failed", "message": "Empty message"})
                    continue

                session_id = str(payload.get("session_id") or session_id or new_session_id())
                caller = resolve_caller(
                    websocket.headers,
                    client_host,
                    payload.get("user_id"),
                    payload.get("visitor_id"),
                )
                LOGGER.info("WS chat turn session_id=%s", session_id)
                async with aclosing(orchestrator.run_turn(session_id, message, caller)) as events:
                    async for event in events:
                        await websocket.send_json(event.to_dict())

        except WebSocketDisconnect:
            LOGGER.info("WS disconnect session_id=%s", session_id)
        except (ConnectionError, RuntimeError) as e:
            LOGGER.exception("Unexpected WS error: %s", e)
            try:
                await websocket.close()
            except (OSError, RuntimeError):
                pass

    return app


app = create_app()
