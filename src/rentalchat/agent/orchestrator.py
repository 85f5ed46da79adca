"""The booking turn loop.

``BookingOrchestrator.run_turn`` is an async generator of ``TurnEvent``. One
turn runs the security gate, stages what the renter's message says, then
alternates model calls and tool rounds until the model answers in prose.
Slot, candidate and state changes are staged on a draft and only committed
when the turn completes; turns themselves are appended as they happen and are
persisted even when the turn is cut short.
"""

import asyncio
import logging
import uuid
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import date
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

from ..booking.intent import IntentParser, ParsedIntent
from ..booking.pricing import build_quote
from ..errors import (
    EngineError,
    IterationLimitExceeded,
    ModelTimeout,
    SecurityBlocked,
    SessionBusy,
    SessionClosed,
    SessionNotFound,
    UpstreamProviderError,
    ValidationFailed,
)
from ..models import (
    BookingState,
    Role,
    Session,
    Slots,
    ToolCallRequest,
    Turn,
    VehicleCandidate,
)
from ..security.gate import CallerContext, SecurityGate
from ..services.config_provider import ConfigProvider, RuntimeConfig
from ..services.session_store import SessionStore, session_to_dict
from ..settings import Settings
from .accountant import CostAccountant
from .events import (
    ErrorEvent,
    ReasoningEngaged,
    TextDelta,
    ToolCallFinished,
    ToolCallStarted,
    TurnComplete,
    TurnEvent,
)
from .llm import ModelClient, ModelEvent, ModelRequest, TextChunk, TextReply, ToolCallsReply
from .prompt import ReasoningPlan, build_messages, build_system_prompt, plan_reasoning
from .state_machine import TurnSignals, advance, transition
from .tools import ToolContext, ToolEffects, ToolExecutor

logger = logging.getLogger(__name__)

SUGGESTIONS: Dict[BookingState, List[str]] = {
    BookingState.INIT: ["Find me a car this weekend", "SUV in Phoenix", "Something under $50/day"],
    BookingState.GATHERING: ["This weekend", "Show me SUVs", "Under $50/day"],
    BookingState.SEARCHING: ["Any vehicle type is fine", "I'm flexible on dates", "Search now"],
    BookingState.PRESENTING: ["The first one", "Something cheaper", "No deposit options"],
    BookingState.CONFIRMING: ["Looks good, book it", "Show me other options"],
    BookingState.VERIFYING: ["Verify my identity"],
    BookingState.AWAITING_PAYMENT: ["Continue to payment"],
    BookingState.BOOKED: ["Start a new booking"],
    BookingState.ABANDONED: ["Start a new booking"],
}

FALLBACK_REPLY = "Sorry, I didn't catch that. Could you tell me where and when you need a car?"


@dataclass
class OrchestratorLimits:
    max_tool_iterations: int = 6
    model_retries: int = 1
    retry_backoff_seconds: float = 0.5
    model_timeout_seconds: float = 45.0
    max_history_turns: int = 40
    temperature: float = 0.2
    max_output_tokens: int = 1024

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorLimits":
        return cls(
            max_tool_iterations=settings.max_tool_iterations,
            model_retries=settings.model_retries,
            retry_backoff_seconds=settings.retry_backoff_seconds,
            model_timeout_seconds=settings.model_timeout_seconds,
            max_history_turns=settings.max_history_turns,
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
        )


class SessionLocks:
    """One in-flight turn per session id. A second caller is refused, not queued."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    async def try_acquire(self, session_id: str) -> bool:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        if lock.locked():
            return False
        await lock.acquire()
        return True

    def release(self, session_id: str) -> None:
        lock = self._locks.get(session_id)
        if lock is None or not lock.locked():
            return
        lock.release()
        if not lock.locked():
            self._locks.pop(session_id, None)


@dataclass
class TurnDraft:
    """Slot, candidate and selection changes staged during one turn."""

    slots: Slots
    candidates: List[VehicleCandidate]
    selected_vehicle_id: Optional[str]
    relaxation_level: Optional[int]
    relaxed: List[str]
    hints: Dict[str, Any] = field(default_factory=dict)
    searched: bool = False
    found: bool = False
    selection_changed: bool = False

    @classmethod
    def from_session(cls, session: Session) -> "TurnDraft":
        return cls(
            slots=replace(session.slots),
            candidates=list(session.candidates),
            selected_vehicle_id=session.selected_vehicle_id,
            relaxation_level=session.relaxation_level,
            relaxed=list(session.relaxed),
        )

    def select(self, vehicle_id: str) -> None:
        if vehicle_id != self.selected_vehicle_id:
            self.selection_changed = True
        self.selected_vehicle_id = vehicle_id

    def apply(self, effects: ToolEffects) -> None:
        if effects.slots is not None:
            self.slots = effects.slots
        if effects.searched:
            self.searched = True
            self.found = effects.candidates is not None
            if effects.candidates is not None:
                self.candidates = list(effects.candidates)
                self.relaxation_level = effects.relaxation_level
                self.relaxed = list(effects.relaxed)
                if self.selected_vehicle_id not in {v.vehicle_id for v in self.candidates}:
                    self.selected_vehicle_id = None
        if effects.selected_vehicle_id is not None:
            self.select(effects.selected_vehicle_id)

    def commit(self, session: Session) -> None:
        session.slots = self.slots
        session.candidates = self.candidates
        session.selected_vehicle_id = self.selected_vehicle_id
        session.relaxation_level = self.relaxation_level
        session.relaxed = self.relaxed


def new_session_id() -> str:
    return uuid.uuid4().hex


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def session_snapshot(session: Session) -> Dict[str, Any]:
    """Session state for ``turn_complete``: everything but the turn bodies."""
    data = session_to_dict(session)
    data.pop("turns")
    data["turn_count"] = len(session.turns)
    return data


def resolve_selection(intent: ParsedIntent, candidates: Sequence[VehicleCandidate]) -> Optional[str]:
    """Vehicle id picked by an ``[id:...]`` tag or an ordinal, if it names a current candidate."""
    if intent.selection_id is not None:
        for vehicle in candidates:
            if vehicle.vehicle_id == intent.selection_id:
                return vehicle.vehicle_id
        return None
    if intent.selection_index is not None and 1 <= intent.selection_index <= len(candidates):
        return candidates[intent.selection_index - 1].vehicle_id
    return None


class BookingOrchestrator:
    """Runs renter turns against one session at a time.

    Each turn goes through the security gate, the budget check, intent
    extraction, then the model and tool loop. Changes are staged on a
    ``TurnDraft`` and written to the session only when the turn completes.
    Turns for a session that is already mid-turn are rejected with
    ``session_busy``.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        config: ConfigProvider,
        gate: SecurityGate,
        accountant: CostAccountant,
        executor: ToolExecutor,
        model: ModelClient,
        system_prompt: str,
        reasoning_preamble: str = "",
        limits: Optional[OrchestratorLimits] = None,
        intent_parser: Optional[IntentParser] = None,
        today: Callable[[], date] = date.today,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._config = config
        self._gate = gate
        self._accountant = accountant
        self._executor = executor
        self._model = model
        self._system_prompt = system_prompt
        self._reasoning_preamble = reasoning_preamble
        self._limits = limits or OrchestratorLimits()
        self._parser = intent_parser or IntentParser()
        self._today = today
        self._sleep = sleep
        self._locks = SessionLocks()

    async def load_session(self, session_id: str) -> Optional[Session]:
        """The stored session, or None if it is unknown or expired."""
        return await self._store.load(session_id)

    async def run_turn(
        self,
        session_id: Optional[str],
        user_input: str,
        caller: CallerContext,
    ) -> AsyncIterator[TurnEvent]:
        """Run one renter message to completion, yielding events as they happen.

        Always ends with exactly one ``TurnComplete`` or ``ErrorEvent`` unless
        the consumer stops iterating first. Closing the generator early stops
        model output and tool dispatch; the turns appended so far, plus any
        streamed text as a partial assistant turn, are still saved.
        """
        session_id = session_id or new_session_id()
        if not await self._locks.try_acquire(session_id):
            logger.warning("Rejected concurrent turn for session_id=%s", session_id)
            yield ErrorEvent.from_error(SessionBusy(session_id))
            return

        session: Optional[Session] = None
        user_appended = False
        committed = False
        pending_text: List[str] = []

        try:
            session = await self._store.load(session_id)
            if session is None:
                session = Session(session_id=session_id, identity=caller.identity)
                logger.info("Created session_id=%s identity=%s", session_id, caller.identity)
            if session.state.terminal:
                raise SessionClosed(f"session {session_id} is {session.state.value}")

            cfg = await self._config.get()
            decision = await self._gate.admit(caller, user_input, session.user_turn_count())
            if not decision.allowed:
                raise SecurityBlocked(decision.reason)  # type: ignore[arg-type]
            await self._accountant.check(session, cfg)

            logger.info("Turn start session_id=%s state=%s", session_id, session.state.value)
            session.append_turn(Turn(role=Role.USER, content=user_input))
            user_appended = True

            today = self._today()
            draft = TurnDraft.from_session(session)
            intent = self._parser.parse(user_input, draft.slots, today)
            draft.slots = intent.slots
            draft.hints = intent.hints
            if session.state in (BookingState.PRESENTING, BookingState.CONFIRMING):
                picked = resolve_selection(intent, draft.candidates)
                if picked is not None:
                    draft.select(picked)

            reasoning = plan_reasoning(user_input, intent.constraint_count, cfg)
            if reasoning.enabled:
                logger.info(
                    "Extended reasoning engaged session_id=%s complexity=%.2f",
                    session_id,
                    reasoning.complexity,
                )
                yield ReasoningEngaged(complexity=reasoning.complexity, effort=reasoning.effort or "")

            rounds = 0
            while True:
                request = self._build_request(session, draft, cfg, reasoning, today)
                reply: Optional[ModelEvent] = None
                async with aclosing(self._call_model(session, request, cfg)) as events:
                    async for event in events:
                        if isinstance(event, TextChunk):
                            pending_text.append(event.content)
                            yield TextDelta(event.content)
                        else:
                            reply = event

                if isinstance(reply, TextReply):
                    break
                if not isinstance(reply, ToolCallsReply):
                    raise ValidationFailed("model stream ended without a reply")

                if rounds >= self._limits.max_tool_iterations:
                    raise IterationLimitExceeded(
                        f"session {session_id}: {rounds} tool rounds without a final answer"
                    )
                rounds += 1

                calls = self._assign_call_ids(reply.calls, session)
                for call in calls:
                    yield ToolCallStarted(call_id=call.call_id, name=call.name, args=call.arguments)

                ctx = ToolContext(
                    session=session,
                    slots=draft.slots,
                    candidates=draft.candidates,
                    config=cfg,
                    today=today,
                )
                outcomes = await self._executor.execute_all(calls, ctx)

                session.append_turn(Turn(role=Role.ASSISTANT, content=reply.content, tool_calls=calls))
                pending_text = []
                session.append_turn(Turn(role=Role.TOOL, tool_results=tuple(r for r, _ in outcomes)))
                for _, effects in outcomes:
                    draft.apply(effects)
                for result, _ in outcomes:
                    yield ToolCallFinished(
                        call_id=result.call_id,
                        name=result.name,
                        result=result.result,
                        is_error=result.is_error,
                    )

            final_text = reply.content
            if not final_text:
                final_text = FALLBACK_REPLY
                yield TextDelta(final_text)
            session.append_turn(Turn(role=Role.ASSISTANT, content=final_text))
            pending_text = []

            previous = session.state
            path = advance(
                session.state,
                TurnSignals(
                    user_message=True,
                    has_minimum_slots=draft.slots.has_minimum(),
                    searched=draft.searched,
                    has_candidates=draft.found,
                    selected=draft.selected_vehicle_id is not None,
                    selection_changed=draft.selection_changed,
                    verified=session.verified,
                ),
            )
            draft.commit(session)
            session.state = path[-1]
            await self._store.save(session)
            committed = True

            logger.info(
                "Turn complete session_id=%s state=%s->%s rounds=%d tokens=%d cost=%.6f",
                session_id,
                previous.value,
                session.state.value,
                rounds,
                session.usage.total,
                session.estimated_cost,
            )
            yield TurnComplete(
                session=session_snapshot(session),
                suggestions=SUGGESTIONS.get(session.state, []),
                relaxed=list(session.relaxed) if draft.found else [],
                quote=self._quote(session, cfg),
                transitions=[s.value for s in path],
            )
        except EngineError as e:
            if isinstance(e, SecurityBlocked):
                logger.warning("Turn blocked session_id=%s reason=%s", session_id, e.reason.value)
            else:
                logger.warning("Turn failed session_id=%s kind=%s detail=%s", session_id, e.kind, e.detail)
            yield ErrorEvent.from_error(e)
        except Exception:
            logger.exception("Unexpected error in turn for session_id=%s", session_id)
            yield ErrorEvent.from_error(EngineError("unexpected"))
        finally:
            try:
                if session is not None and user_appended and not committed:
                    if pending_text:
                        session.append_turn(
                            Turn(role=Role.ASSISTANT, content="".join(pending_text), partial=True)
                        )
                    await asyncio.shield(self._save_quietly(session))
            finally:
                self._locks.release(session_id)

    async def _save_quietly(self, session: Session) -> None:
        try:
            await self._store.save(session)
            logger.info("Saved interrupted turn for session_id=%s", session.session_id)
        except Exception:
            logger.exception("Failed to save interrupted turn for session_id=%s", session.session_id)

    def _build_request(
        self,
        session: Session,
        draft: TurnDraft,
        cfg: RuntimeConfig,
        reasoning: ReasoningPlan,
        today: date,
    ) -> ModelRequest:
        system_prompt = build_system_prompt(
            self._system_prompt,
            state=session.state,
            slots=draft.slots,
            candidates=draft.candidates,
            selected_vehicle_id=draft.selected_vehicle_id,
            relaxed=draft.relaxed,
            today=today,
            reasoning=reasoning,
            reasoning_preamble=self._reasoning_preamble,
            hints=draft.hints,
        )
        return ModelRequest(
            model=cfg.model,
            messages=build_messages(system_prompt, session.turns, self._limits.max_history_turns),
            tools=self._executor.registry.schemas(cfg),
            temperature=self._limits.temperature,
            max_output_tokens=self._limits.max_output_tokens,
            reasoning_effort=reasoning.effort,
        )

    async def _call_model(
        self, session: Session, request: ModelRequest, cfg: RuntimeConfig
    ) -> AsyncIterator[ModelEvent]:
        """One model call with budget check, deadline and a bounded retry.

        A failed attempt is retried only if it had not streamed any text yet.
        Usage is recorded once, for the attempt that completed.
        """
        attempt = 0
        while True:
            await self._accountant.check(session, cfg)
            streamed = False
            try:
                async with aclosing(self._with_deadline(self._model.stream(request))) as events:
                    async for event in events:
                        if isinstance(event, TextChunk):
                            streamed = True
                        else:
                            await self._accountant.record(session, event.usage, cfg)
                        yield event
                return
            except (ModelTimeout, UpstreamProviderError) as e:
                if streamed or attempt >= self._limits.model_retries:
                    raise
                attempt += 1
                delay = self._limits.retry_backoff_seconds * attempt
                logger.warning(
                    "Model call failed (%s), retry %d/%d in %.1fs",
                    e.kind,
                    attempt,
                    self._limits.model_retries,
                    delay,
                )
                await self._sleep(delay)

    async def _with_deadline(self, events: AsyncIterator[ModelEvent]) -> AsyncIterator[ModelEvent]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._limits.model_timeout_seconds
        iterator = events.__aiter__()
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise ModelTimeout("model call exceeded its deadline")
                try:
                    event = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as e:
                    raise ModelTimeout(
                        f"no model output within {self._limits.model_timeout_seconds:.1f}s"
                    ) from e
                yield event
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    def _assign_call_ids(
        self, calls: Sequence[ToolCallRequest], session: Session
    ) -> Tuple[ToolCallRequest, ...]:
        seen = session.call_ids()
        assigned: List[ToolCallRequest] = []
        for call in calls:
            call_id = call.call_id or new_call_id()
            if call_id in seen:
                raise ValidationFailed(f"tool call id {call_id} reused in session {session.session_id}")
            seen.add(call_id)
            assigned.append(call if call_id == call.call_id else replace(call, call_id=call_id))
        return tuple(assigned)

    def _quote(self, session: Session, cfg: RuntimeConfig) -> Optional[Dict[str, Any]]:
        if session.selected_vehicle_id is None or not session.slots.has_minimum():
            return None
        vehicle = session.candidate(session.selected_vehicle_id)
        if vehicle is None:
            return None
        return build_quote(session.slots, vehicle, cfg.pricing).to_dict()

    @asynccontextmanager
    async def _exclusive(self, session_id: str) -> AsyncIterator[Session]:
        if not await self._locks.try_acquire(session_id):
            raise SessionBusy(session_id)
        try:
            session = await self._store.load(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            yield session
        finally:
            self._locks.release(session_id)

    async def mark_verified(self, session_id: str) -> Session:
        """Identity verification finished outside the chat."""
        async with self._exclusive(session_id) as session:
            session.verified = True
            if session.state is BookingState.VERIFYING:
                session.state = transition(session.state, BookingState.AWAITING_PAYMENT)
            await self._store.save(session)
            logger.info("Session verified session_id=%s state=%s", session_id, session.state.value)
            return session

    async def mark_booked(self, session_id: str) -> Session:
        """Payment captured outside the chat."""
        async with self._exclusive(session_id) as session:
            session.state = transition(session.state, BookingState.BOOKED)
            await self._store.save(session)
            logger.info("Session booked session_id=%s", session_id)
            return session

    async def mark_abandoned(self, session_id: str) -> Session:
        """Inactivity timeout decided by an external policy."""
        async with self._exclusive(session_id) as session:
            if session.state is not BookingState.ABANDONED:
                session.state = transition(session.state, BookingState.ABANDONED)
                await self._store.save(session)
                logger.info("Session abandoned session_id=%s", session_id)
            return session
