"""ARC engine: agent definitions, prompt assembly and process execution."""
from .config import EngineConfig
from .errors import (
    AgentNotFoundError,
    AgentSpawnError,
    InvalidRequestError,
    OrchestrationError,
    SessionBusyError,
    SessionNotFoundError,
)
from .agent_registry import AgentRegistry
from .agent_runner import AgentRunner, RunResult
from .prompt_builder import build_prompt

__all__ = [
    "EngineConfig",
    "AgentRegistry",
    "AgentRunner",
    "RunResult",
    "build_prompt",
    # Errors
    "AgentNotFoundError",
    "AgentSpawnError",
    "InvalidRequestError",
    "OrchestrationError",
    "SessionBusyError",
    "SessionNotFoundError",
]
