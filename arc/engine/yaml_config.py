"""YAML configuration loader.

Optional ``arc.yaml`` layered on top of the ARC_* environment settings.

Example YAML:
    engine:
      agent_command: claude
      agent_timeout_seconds: 180
      history_max_messages: 30
      db_path: data/arc.db
      agents_dir: data/agents

    agents:
      helper:
        name: Helper
        system_prompt: |
          You are a concise assistant.
        max_turns: 4
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from arc.engine.agent_registry import agent_from_dict
from arc.engine.config import EngineConfig
from arc.shared.models.agent import AgentDef

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "arc.yaml"

_INT_FIELDS = {"default_max_turns", "history_max_messages", "history_max_chars"}
_FLOAT_FIELDS = {"agent_timeout_seconds", "kill_grace_seconds"}


@dataclass
class ArcConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    agents: list[AgentDef] = field(default_factory=list)


def find_default_config(cwd: str | Path | None = None) -> Path | None:
    """Return ``./arc.yaml`` when it exists."""
    candidate = Path(cwd or Path.cwd()) / DEFAULT_CONFIG_NAME
    return candidate if candidate.is_file() else None


def _apply_engine_section(base: EngineConfig, section: dict) -> EngineConfig:
    known = {f.name for f in dataclasses.fields(EngineConfig)}
    overrides = {}
    for key, value in section.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown engine key %r", key)
            continue
        if key in _INT_FIELDS:
            value = int(value)
        elif key in _FLOAT_FIELDS:
            value = float(value)
        elif key == "nested_session_env_vars":
            value = [str(v) for v in (value or [])]
        else:
            value = str(value)
        overrides[key] = value
    return dataclasses.replace(base, **overrides)


def load_yaml_config(path: str | Path, base: EngineConfig | None = None) -> ArcConfig:
    """Load and parse a YAML config file.

    Values from the ``engine:`` section override *base* (defaults when
    omitted). Inline ``agents:`` entries become AgentDef records; a
    broken entry is logged and skipped.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    engine = _apply_engine_section(base or EngineConfig(), raw.get("engine") or {})

    agents: list[AgentDef] = []
    for agent_id, agent_raw in (raw.get("agents") or {}).items():
        try:
            agents.append(agent_from_dict(str(agent_id), agent_raw or {}))
        except (ValueError, TypeError) as exc:
            logger.warning("load_yaml_config: skipping agent %r: %s", agent_id, exc)

    return ArcConfig(engine=engine, agents=agents)
