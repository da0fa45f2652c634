"""Agent definition record.

Resolved by agent id before a turn starts and handed to the process
runner unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class AgentDef:
    id: str
    name: str
    description: str = ""
    system_prompt: str = ""
    model: str | None = None
    max_turns: int | None = None
    allowed_tools: list[str] = field(default_factory=list)
    working_dir: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "model": self.model,
            "max_turns": self.max_turns,
            "allowed_tools": list(self.allowed_tools),
            "working_dir": self.working_dir,
        }
