"""Offline conversation analytics over the provider's batch channel.

Finished (or long idle) sessions are bundled into one low-priority batch job,
one request per session with the session id as ``custom_id``. Jobs are polled
until they settle and each session's result is written to
``analytics:result:<session_id>``. Nothing here touches a live turn.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import openai
from openai import AsyncOpenAI

from ..errors import EngineError, UpstreamProviderError
from ..models import BookingState, Role, Session, utcnow
from ..services.config_provider import ConfigProvider
from ..services.crud import CrudStore
from ..services.session_store import SessionStore, slots_to_dict

logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = "analytics:job:"
SESSION_JOB_KEY_PREFIX = "analytics:session:"
RESULT_KEY_PREFIX = "analytics:result:"
OPEN_JOBS_KEY = "analytics:jobs:open"

BATCH_ENDPOINT = "/v1/chat/completions"


class BatchStatus(str, Enum):
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def settled(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELED)

    @property
    def resubmittable(self) -> bool:
        return self in (BatchStatus.FAILED, BatchStatus.CANCELED)


OPENAI_BATCH_STATUS = {
    "validating": BatchStatus.PROCESSING,
    "in_progress": BatchStatus.PROCESSING,
    "finalizing": BatchStatus.PROCESSING,
    "completed": BatchStatus.COMPLETED,
    "failed": BatchStatus.FAILED,
    "expired": BatchStatus.FAILED,
    "cancelling": BatchStatus.CANCELED,
    "cancelled": BatchStatus.CANCELED,
}


@dataclass(frozen=True)
class BatchItem:
    custom_id: str
    messages: List[Dict[str, Any]]


@dataclass
class BatchPoll:
    status: BatchStatus
    results: Dict[str, Dict[str, Any]] = field(default_factory=dict)


class BatchProvider(Protocol):
    async def submit(self, items: Sequence[BatchItem]) -> str: ...

    async def poll(self, handle: str) -> BatchPoll: ...


def _parse_output_line(line: str) -> Optional[tuple]:
    try:
        row = json.loads(line)
    except json.JSONDecodeError:
        logger.warning("Skipping unreadable batch output line")
        return None
    custom_id = row.get("custom_id")
    if not custom_id:
        return None
    if row.get("error"):
        return custom_id, {"error": row["error"]}
    body = (row.get("response") or {}).get("body") or {}
    choices = body.get("choices") or []
    content = choices[0].get("message", {}).get("content", "") if choices else ""
    try:
        parsed = json.loads(content) if content else {}
    except json.JSONDecodeError:
        parsed = {"summary": content}
    if not isinstance(parsed, dict):
        parsed = {"summary": str(parsed)}
    return custom_id, parsed


class OpenAIBatchProvider:
    """Batch jobs through the OpenAI files and batches APIs."""

    def __init__(self, client: AsyncOpenAI, model: str, max_output_tokens: int = 512) -> None:
        self._client = client
        self._model = model
        self._max_output_tokens = max_output_tokens

    def _jsonl(self, items: Sequence[BatchItem]) -> bytes:
        lines = [
            json.dumps(
                {
                    "custom_id": item.custom_id,
                    "method": "POST",
                    "url": BATCH_ENDPOINT,
                    "body": {
                        "model": self._model,
                        "messages": item.messages,
                        "response_format": {"type": "json_object"},
                        "max_completion_tokens": self._max_output_tokens,
                    },
                }
            )
            for item in items
        ]
        return ("\n".join(lines) + "\n").encode("utf-8")

    async def submit(self, items: Sequence[BatchItem]) -> str:
        try:
            upload = await self._client.files.create(
                file=("conversations.jsonl", self._jsonl(items), "application/jsonl"),
                purpose="batch",
            )
            batch = await self._client.batches.create(
                input_file_id=upload.id,
                endpoint=BATCH_ENDPOINT,
                completion_window="24h",
                metadata={"purpose": "conversation-analytics"},
            )
        except (openai.APIConnectionError, openai.APIStatusError) as e:
            raise UpstreamProviderError(f"batch submit failed: {e}") from e
        return batch.id

    async def poll(self, handle: str) -> BatchPoll:
        try:
            batch = await self._client.batches.retrieve(handle)
            status = OPENAI_BATCH_STATUS.get(batch.status, BatchStatus.PROCESSING)
            results: Dict[str, Dict[str, Any]] = {}
            if status is BatchStatus.COMPLETED and batch.output_file_id:
                content = await self._client.files.content(batch.output_file_id)
                for line in content.text.splitlines():
                    if not line.strip():
                        continue
                    parsed = _parse_output_line(line)
                    if parsed is not None:
                        results[parsed[0]] = parsed[1]
        except (openai.APIConnectionError, openai.APIStatusError) as e:
            raise UpstreamProviderError(f"batch poll failed for {handle}: {e}") from e
        return BatchPoll(status=status, results=results)


@dataclass
class BatchJob:
    handle: str
    status: BatchStatus
    session_ids: List[str]
    submitted_at: str

    def to_json(self) -> str:
        data = asdict(self)
        data["status"] = self.status.value
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "BatchJob":
        data = json.loads(raw)
        return cls(
            handle=data["handle"],
            status=BatchStatus(data["status"]),
            session_ids=list(data["session_ids"]),
            submitted_at=data["submitted_at"],
        )


def conversation_messages(session: Session, instructions: str) -> List[Dict[str, Any]]:
    """The analytics request for one session: instructions plus a plain transcript."""
    lines = []
    for turn in session.turns:
        if turn.role is Role.TOOL:
            names = ", ".join(r.name for r in turn.tool_results)
            lines.append(f"[tools: {names}]")
        elif turn.content:
            suffix = " (interrupted)" if turn.partial else ""
            lines.append(f"{turn.role.value}: {turn.content}{suffix}")
    header = json.dumps(
        {
            "final_state": session.state.value,
            "slots": slots_to_dict(session.slots),
            "candidates_shown": len(session.candidates),
            "relaxed": session.relaxed,
        }
    )
    return [
        {"role": "system", "content": instructions},
        {"role": "user", "content": f"{header}\n\n" + "\n".join(lines)},
    ]


class BatchAnalyticsService:
    """Sends finished conversations to the batch provider and stores the results.

    Job records, the open-job set and the session-to-job links live in the
    counter store so a restarted process picks up where the last one stopped.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        crud: CrudStore,
        provider: BatchProvider,
        config: ConfigProvider,
        instructions: str,
        idle_seconds: int = 3600,
        poll_interval_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._crud = crud
        self._provider = provider
        self._config = config
        self._instructions = instructions
        self._idle = timedelta(seconds=idle_seconds)
        self._interval = poll_interval_seconds
        self._clock = clock

    def is_eligible(self, session: Session) -> bool:
        """Terminal, waiting on payment, or idle long enough to count as finished."""
        if not session.turns:
            return False
        if session.state.terminal or session.state is BookingState.AWAITING_PAYMENT:
            return True
        return self._clock() - session.last_activity_at >= self._idle

    async def load_job(self, handle: str) -> Optional[BatchJob]:
        """Read a job record.

        Args:
            handle: Provider batch id.

        Returns:
            The job, or None if it is unknown or its record is unreadable.
        """
        raw = await self._crud.get(f"{JOB_KEY_PREFIX}{handle}")
        if raw is None:
            return None
        try:
            return BatchJob.from_json(raw)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Invalid batch job record %s: %s", handle, e)
            return None

    async def _attached(self, session_id: str) -> bool:
        handle = await self._crud.get(f"{SESSION_JOB_KEY_PREFIX}{session_id}")
        if handle is None:
            return False
        job = await self.load_job(handle)
        return job is not None and not job.status.resubmittable

    async def submit_pending(self) -> Optional[str]:
        """Submit every eligible session not already covered by a live or completed job."""
        items: List[BatchItem] = []
        for session_id in await self._store.list_session_ids():
            session = await self._store.load(session_id)
            if session is None:
                logger.debug("Session %s expired or unreadable; dropping it from the index", session_id)
                await self._store.forget(session_id)
                continue
            if not self.is_eligible(session):
                continue
            if await self._attached(session_id):
                continue
            items.append(BatchItem(custom_id=session_id, messages=conversation_messages(session, self._instructions)))

        if not items:
            logger.debug("No sessions pending analytics")
            return None

        handle = await self._provider.submit(items)
        job = BatchJob(
            handle=handle,
            status=BatchStatus.SUBMITTED,
            session_ids=[item.custom_id for item in items],
            submitted_at=self._clock().isoformat(),
        )
        await self._crud.set(f"{JOB_KEY_PREFIX}{handle}", job.to_json())
        for item in items:
            await self._crud.set(f"{SESSION_JOB_KEY_PREFIX}{item.custom_id}", handle)
        await self._crud.add_member(OPEN_JOBS_KEY, handle)
        logger.info("Submitted analytics batch %s with %d session(s)", handle, len(items))
        return handle

    async def poll_jobs(self) -> Dict[str, BatchStatus]:
        """Advance every open job once; returns the status seen per handle."""
        seen: Dict[str, BatchStatus] = {}
        for handle in sorted(await self._crud.members(OPEN_JOBS_KEY)):
            job = await self.load_job(handle)
            if job is None:
                await self._crud.remove_member(OPEN_JOBS_KEY, handle)
                continue
            try:
                poll = await self._provider.poll(handle)
            except UpstreamProviderError as e:
                logger.warning("Polling batch %s failed: %s", handle, e.detail)
                continue

            if poll.status is not job.status:
                logger.info("Batch %s: %s -> %s", handle, job.status.value, poll.status.value)
                job.status = poll.status
                await self._crud.set(f"{JOB_KEY_PREFIX}{handle}", job.to_json())

            if poll.status is BatchStatus.COMPLETED:
                written = 0
                for session_id, result in poll.results.items():
                    if session_id not in job.session_ids:
                        continue
                    record = {**result, "job": handle, "completed_at": self._clock().isoformat()}
                    await self._crud.set(f"{RESULT_KEY_PREFIX}{session_id}", json.dumps(record))
                    written += 1
                logger.info("Batch %s wrote %d result(s)", handle, written)
            if poll.status.settled:
                await self._crud.remove_member(OPEN_JOBS_KEY, handle)
            seen[handle] = poll.status
        return seen

    async def result_for(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Stored analytics result for a session, if a batch has produced one."""
        raw = await self._crud.get(f"{RESULT_KEY_PREFIX}{session_id}")
        return json.loads(raw) if raw else None

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        """Poll then submit on a fixed interval while the feature flag is on."""
        stop = stop or asyncio.Event()
        logger.info("Batch analytics loop started (interval=%.0fs)", self._interval)
        while not stop.is_set():
            cfg = await self._config.get()
            if cfg.flags.batch_analytics_enabled:
                try:
                    await self.poll_jobs()
                    await self.submit_pending()
                except EngineError as e:
                    logger.warning("Batch analytics cycle failed (%s): %s", e.kind, e.detail)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Batch analytics loop stopped")
