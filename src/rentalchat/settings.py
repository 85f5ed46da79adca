from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    temperature: float = 0.2
    max_output_tokens: int = 1024

    max_tool_iterations: int = 6
    model_retries: int = 1
    retry_backoff_seconds: float = 0.5
    model_timeout_seconds: float = 45.0
    tool_timeout_seconds: float = 20.0
    max_parallel_tools: int = 4
    max_history_turns: int = 40

    cors_origins: str = "*"

    redis_url: str | None = None
    session_ttl_seconds: int = 7 * 86400
    rate_limit_fail_closed: bool = False

    runtime_config_path: Path | None = None
    runtime_config_ttl_seconds: float = 30.0

    batch_poll_interval_seconds: float = 300.0
    batch_idle_seconds: int = 3600
    batch_model: str = "gpt-4o-mini"

    mcp_inventory_cmd: str | None = None
    mcp_risk_cmd: str | None = None
    mcp_weather_cmd: str | None = None

    agent_system_prompt: str = (
        "You are Choe, the booking assistant for a peer-to-peer car rental marketplace.\n\n"
        "## Your Role\n"
        "You help renters find and reserve a vehicle through conversation.\n"
        "You collect pickup location and dates first, then search, present options, "
        "and help the renter pick one.\n"
        "Never invent vehicles, prices or availability: use the search_vehicles tool.\n"
        "Use quote_price before stating a total, and select_vehicle once the renter "
        "clearly picks a car.\n\n"
        "## Style\n"
        " - Keep answers short and friendly, two or three sentences where possible.\n"
        " - When results were relaxed, say which criteria were loosened.\n"
        " - Ask for one missing detail at a time.\n"
    )

    reasoning_prompt_preamble: str = (
        "This request has several constraints. Work through each one before "
        "answering and state any trade-off you had to make.\n\n"
    )

    batch_summary_prompt: str = (
        "You review finished car rental booking conversations. Return JSON with keys: "
        "summary (string), outcome (booked|abandoned|in_progress), quality_score "
        "(integer 1-5), friction_points (array of strings)."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
