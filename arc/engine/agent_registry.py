"""Agent definitions, loaded from ``<agents_dir>/<agent_id>/agent.yaml``.

Example agent.yaml:
    name: Research Assistant
    description: Finds and summarises sources
    system_prompt: |
      You are a careful research assistant.
    model: sonnet
    max_turns: 8
    allowed_tools: [Read, Grep, WebSearch]
    working_dir: /srv/research
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from arc.engine.errors import AgentNotFoundError
from arc.shared.models.agent import AgentDef

logger = logging.getLogger(__name__)

AGENT_FILE_NAME = "agent.yaml"


def agent_from_dict(agent_id: str, raw: dict[str, Any]) -> AgentDef:
    """Build an AgentDef from a parsed YAML mapping."""
    if not isinstance(raw, dict):
        raise ValueError(f"Agent {agent_id!r}: definition must be a mapping")
    max_turns = raw.get("max_turns")
    tools = raw.get("allowed_tools") or []
    if isinstance(tools, str):
        tools = [t.strip() for t in tools.split(",") if t.strip()]
    return AgentDef(
        id=agent_id,
        name=str(raw.get("name") or agent_id),
        description=str(raw.get("description") or ""),
        system_prompt=str(raw.get("system_prompt") or ""),
        model=raw.get("model") or None,
        max_turns=int(max_turns) if max_turns is not None else None,
        allowed_tools=[str(t) for t in tools],
        working_dir=raw.get("working_dir") or None,
    )


class AgentRegistry:
    """In-memory catalogue of agent definitions keyed by id."""

    def __init__(self, agents_dir: str | Path | None = None) -> None:
        self._agents_dir = Path(agents_dir) if agents_dir else None
        self._agents: dict[str, AgentDef] = {}

    def load_all(self) -> int:
        """Load every ``<id>/agent.yaml`` under the agents directory.

        Unreadable or malformed files are logged and skipped. Returns the
        number of agents loaded.
        """
        if self._agents_dir is None or not self._agents_dir.is_dir():
            logger.info("AgentRegistry: no agents directory at %s", self._agents_dir)
            return 0

        loaded = 0
        for agent_dir in sorted(self._agents_dir.iterdir()):
            path = agent_dir / AGENT_FILE_NAME
            if not path.is_file():
                continue
            try:
                with open(path, encoding="utf-8") as f:
                    raw = yaml.safe_load(f) or {}
                agent = agent_from_dict(agent_dir.name, raw)
            except (OSError, yaml.YAMLError, ValueError, TypeError) as exc:
                logger.warning("AgentRegistry: skipping %s: %s", path, exc)
                continue
            self.register(agent)
            loaded += 1

        logger.info("AgentRegistry: loaded %d agent(s) from %s", loaded, self._agents_dir)
        return loaded

    def register(self, agent: AgentDef) -> None:
        if agent.id in self._agents:
            logger.debug("AgentRegistry: replacing definition for %s", agent.id)
        self._agents[agent.id] = agent

    def get(self, agent_id: str) -> AgentDef | None:
        return self._agents.get(agent_id)

    def require(self, agent_id: str) -> AgentDef:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def list(self) -> list[AgentDef]:
        return sorted(self._agents.values(), key=lambda a: a.name.lower())

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents
