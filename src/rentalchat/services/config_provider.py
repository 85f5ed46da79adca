import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from ..settings import Settings

logger = logging.getLogger(__name__)


class ModelPrice(BaseModel):
    """USD per million tokens."""

    input: float
    output: float
    cached_input: float = 0.0


class FeatureFlags(BaseModel):
    tool_use_enabled: bool = True
    weather_enabled: bool = True
    risk_assessment_enabled: bool = True
    extended_reasoning_enabled: bool = True
    batch_analytics_enabled: bool = False
    prefer_no_deposit: bool = False


class BookingPricing(BaseModel):
    service_fee_percent: float = 0.15
    tax_rate: float = 0.084


# User-Agent fragments (regular expressions) that mark a caller as automated.
DEFAULT_AUTOMATION_USER_AGENTS = [
    r"bot\b",
    "crawler",
    "spider",
    "scrapy",
    "curl/",
    "wget/",
    "python-requests",
    "python-urllib",
    "go-http-client",
    "libwww",
    "headless",
    "phantomjs",
    "selenium",
    "puppeteer",
    "playwright",
]


class RuntimeConfig(BaseModel):
    """Tunables read through the ConfigProvider and refreshed on a TTL."""

    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 20
    session_message_limit: int = 60
    max_input_chars: int = 2000
    # empty list and False let programmatic clients through
    automation_user_agents: List[str] = Field(default_factory=lambda: list(DEFAULT_AUTOMATION_USER_AGENTS))
    block_missing_user_agent: bool = True

    flags: FeatureFlags = Field(default_factory=FeatureFlags)

    model: str = "gpt-4o-mini"
    reasoning_models: List[str] = Field(default_factory=lambda: ["o4-mini", "o3", "gpt-5", "gpt-5-mini"])
    reasoning_threshold: float = 0.6
    reasoning_effort: str = "high"
    price_table: Dict[str, ModelPrice] = Field(
        default_factory=lambda: {
            "gpt-4o-mini": ModelPrice(input=0.15, output=0.60, cached_input=0.075),
            "gpt-4o": ModelPrice(input=2.50, output=10.00, cached_input=1.25),
            "o4-mini": ModelPrice(input=1.10, output=4.40, cached_input=0.275),
        }
    )

    session_cost_ceiling: float = 0.50
    identity_cost_ceiling: Optional[float] = 2.00
    identity_budget_period_seconds: int = 86400

    pricing: BookingPricing = Field(default_factory=BookingPricing)

    search_radius_miles: float = 25.0
    date_flex_days: int = 2
    max_candidates: int = 6

    model_config = {"protected_namespaces": ()}


def settings_loader(settings: Settings) -> Callable[[], RuntimeConfig]:
    """Loader that overlays the optional JSON file at ``runtime_config_path`` on the defaults."""

    def _load() -> RuntimeConfig:
        path: Path | None = settings.runtime_config_path
        if path is None or not path.exists():
            return RuntimeConfig()
        with open(path, encoding="utf-8") as f:
            return RuntimeConfig.model_validate(json.load(f))

    return _load


Loader = Callable[[], RuntimeConfig] | Callable[[], Awaitable[RuntimeConfig]]


class ConfigProvider:
    """Cached read-through access to ``RuntimeConfig``.

    A value is served until it is ``ttl_seconds`` old; the next ``get`` reloads
    it once under a lock. If a reload fails the last good value keeps being
    served.
    """

    def __init__(
        self,
        loader: Loader,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: RuntimeConfig | None = None
        self._loaded_at: float | None = None
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        return (
            self._value is not None
            and self._loaded_at is not None
            and self._clock() - self._loaded_at < self._ttl
        )

    async def get(self) -> RuntimeConfig:
        if self._fresh():
            return self._value  # type: ignore[return-value]
        async with self._lock:
            if self._fresh():
                return self._value  # type: ignore[return-value]
            try:
                loaded = self._loader()
                if asyncio.iscoroutine(loaded):
                    loaded = await loaded
            except (OSError, ValueError, ValidationError) as e:
                if self._value is None:
                    raise
                logger.warning("Runtime config refresh failed, keeping previous value: %s", e)
                self._loaded_at = self._clock()
                return self._value
            self._value = loaded  # type: ignore[assignment]
            self._loaded_at = self._clock()
            logger.debug("Runtime config loaded (model=%s)", self._value.model)
            return self._value

    def invalidate(self) -> None:
        """Force the next get() to reload."""
        self._loaded_at = None
