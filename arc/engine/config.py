"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via ARC_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Orchestration core configuration."""

    # CLI binary launched once per agent turn.
    agent_command: str = "claude"
    # Hard wall-clock ceiling for a single turn.
    agent_timeout_seconds: float = 120.0
    # Delay between SIGTERM and SIGKILL when a turn is stopped or times out.
    kill_grace_seconds: float = 5.0
    default_max_turns: int = 10
    # System prompts are handed to the CLI through files in this directory.
    tmp_dir: str = ".arc-tmp"
    system_prompt_flag: str = "--system-prompt-file"
    # Markers the wrapped CLI uses to detect it is running inside itself.
    nested_session_env_vars: list[str] = field(
        default_factory=lambda: ["CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT"]
    )

    # Prompt builder limits
    history_max_messages: int = 40
    history_max_chars: int = 80_000

    # Storage / agent definitions
    db_path: str = "data/arc.db"
    agents_dir: str = "data/agents"

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from ARC_* environment variables."""
        arc_vars = {
            k: v for k, v in os.environ.items() if k.startswith("ARC_")
        }
        if arc_vars:
            logger.info(
                "EngineConfig.from_env: ARC_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(arc_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no ARC_* env vars set, using defaults")

        config = cls(
            agent_command=os.getenv("ARC_AGENT_COMMAND", cls.agent_command),
            agent_timeout_seconds=float(os.getenv(
                "ARC_AGENT_TIMEOUT", str(cls.agent_timeout_seconds)
            )),
            kill_grace_seconds=float(os.getenv(
                "ARC_KILL_GRACE", str(cls.kill_grace_seconds)
            )),
            default_max_turns=int(os.getenv(
                "ARC_DEFAULT_MAX_TURNS", str(cls.default_max_turns)
            )),
            tmp_dir=os.getenv("ARC_TMP_DIR", cls.tmp_dir),
            history_max_messages=int(os.getenv(
                "ARC_HISTORY_MAX_MESSAGES", str(cls.history_max_messages)
            )),
            history_max_chars=int(os.getenv(
                "ARC_HISTORY_MAX_CHARS", str(cls.history_max_chars)
            )),
            db_path=os.getenv("ARC_DB_PATH", cls.db_path),
            agents_dir=os.getenv("ARC_AGENTS_DIR", cls.agents_dir),
            log_level=os.getenv("ARC_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: command=%s timeout=%.0fs tmp_dir=%s db=%s",
            config.agent_command, config.agent_timeout_seconds,
            config.tmp_dir, config.db_path,
        )
        return config
