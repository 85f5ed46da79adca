"""Agent package for the rental booking assistant.

This package exposes the orchestrator as a service-style interface while
keeping the model client, tools, prompt assembly, state machine and cost
accounting in separate modules.
"""

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
from .llm import ModelClient, OpenAIModelClient
from .orchestrator import BookingOrchestrator, OrchestratorLimits
from .tools import ToolExecutor, ToolRegistry, build_registry

__all__ = [
    "BookingOrchestrator",
    "CostAccountant",
    "ErrorEvent",
    "ModelClient",
    "OpenAIModelClient",
    "OrchestratorLimits",
    "ReasoningEngaged",
    "TextDelta",
    "ToolCallFinished",
    "ToolCallStarted",
    "ToolExecutor",
    "ToolRegistry",
    "TurnComplete",
    "TurnEvent",
    "build_registry",
]
