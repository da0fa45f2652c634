"""Exception hierarchy for the orchestration core.

Caller errors and invariant violations propagate to the transport
adapters. Agent process failures are recovered inside the chat
manager and never surface as exceptions.
"""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""


class SessionNotFoundError(OrchestrationError):
    """Requested chat session does not exist."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class AgentNotFoundError(OrchestrationError):
    """Requested agent definition does not exist."""
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class InvalidRequestError(OrchestrationError):
    """A caller supplied missing or malformed input."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class SessionBusyError(OrchestrationError):
    """A turn is already in flight for this session."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"Session {session_id} already has an agent turn in progress"
        )


class AgentSpawnError(OrchestrationError):
    """Failed to start the agent process for a turn."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to spawn agent for session {session_id}: {reason}")
