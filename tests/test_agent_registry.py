from __future__ import annotations

import pytest

from arc.engine.agent_registry import AgentRegistry
from arc.engine.errors import AgentNotFoundError
from arc.shared.models.agent import AgentDef


def _write_agent(root, agent_id: str, text: str) -> None:
    agent_dir = root / agent_id
    agent_dir.mkdir(parents=True)
    (agent_dir / "agent.yaml").write_text(text, encoding="utf-8")


def test_load_all_reads_agent_definitions(tmp_path) -> None:
    _write_agent(tmp_path, "researcher", (
        "name: Researcher\n"
        "description: Finds sources\n"
        "system_prompt: |\n"
        "  You are careful.\n"
        "model: sonnet\n"
        "max_turns: 8\n"
        "allowed_tools: [Read, WebSearch]\n"
        "working_dir: /srv/research\n"
    ))
    _write_agent(tmp_path, "writer", "name: Writer\n")

    registry = AgentRegistry(tmp_path)
    assert registry.load_all() == 2

    agent = registry.require("researcher")
    assert agent.name == "Researcher"
    assert agent.system_prompt == "You are careful.\n"
    assert agent.model == "sonnet"
    assert agent.max_turns == 8
    assert agent.allowed_tools == ["Read", "WebSearch"]
    assert agent.working_dir == "/srv/research"
    assert registry.get("writer").max_turns is None


def test_broken_files_are_skipped(tmp_path) -> None:
    _write_agent(tmp_path, "good", "name: Good\n")
    _write_agent(tmp_path, "broken", "name: [unclosed\n")
    _write_agent(tmp_path, "wrong-type", "- just\n- a list\n")
    (tmp_path / "no-yaml-here").mkdir()

    registry = AgentRegistry(tmp_path)

    assert registry.load_all() == 1
    assert "good" in registry
    assert "broken" not in registry


def test_missing_directory_loads_nothing(tmp_path) -> None:
    registry = AgentRegistry(tmp_path / "absent")
    assert registry.load_all() == 0
    assert len(registry) == 0


def test_register_get_require_and_list_sorted_by_name() -> None:
    registry = AgentRegistry()
    registry.register(AgentDef(id="z", name="alpha"))
    registry.register(AgentDef(id="a", name="Beta"))

    assert [a.id for a in registry.list()] == ["z", "a"]
    assert registry.get("missing") is None
    with pytest.raises(AgentNotFoundError):
        registry.require("missing")
