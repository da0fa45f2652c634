"""ARC — agent session orchestration server entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _configure_logging(log_level: str) -> Path:
    log_dir = Path.home() / ".arc" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "arc-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="arc",
        description="ARC — chat sessions with CLI-backed AI agents",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Interface to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=int(os.getenv("ARC_PORT", "3100")),
        help="Server port (default: 3100 or $ARC_PORT)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file with engine settings and inline agents",
    )
    parser.add_argument(
        "--db", metavar="PATH",
        help="SQLite database path (overrides config)",
    )
    parser.add_argument(
        "--agents-dir", metavar="PATH",
        help="Directory of <agent_id>/agent.yaml definitions",
    )
    parser.add_argument(
        "--memory", action="store_true",
        help="Keep sessions in memory only (nothing is written to disk)",
    )
    args = parser.parse_args()

    from arc.engine.agent_registry import AgentRegistry
    from arc.engine.config import EngineConfig
    from arc.engine.yaml_config import find_default_config, load_yaml_config
    from arc.server.server import ArcServer
    from arc.shared.services.persistence import InMemoryChatStore, SqliteChatStore
    from arc.shared.services.process_cleanup import cleanup_stale_prompt_files

    log_file = _configure_logging(os.getenv("ARC_LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)

    config = EngineConfig.from_env()
    inline_agents = []
    config_path = Path(args.config) if args.config else find_default_config()
    if config_path is not None:
        logger.info("Using config: %s (exists=%s)", config_path, config_path.exists())
        try:
            parsed = load_yaml_config(config_path, base=config)
        except Exception:
            logger.exception("Failed to load config %s", config_path)
            sys.exit(1)
        config = parsed.engine
        inline_agents = parsed.agents
    else:
        logger.info("No config file found (tried %s); using defaults", Path.cwd() / "arc.yaml")

    if args.db:
        config.db_path = args.db
    if args.agents_dir:
        config.agents_dir = args.agents_dir
    logging.getLogger().setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    logger.info(
        "Starting ARC server cwd=%s host=%s port=%s db=%s log=%s",
        Path.cwd(), args.host, args.port,
        ":memory:" if args.memory else config.db_path, log_file,
    )

    try:
        removed = cleanup_stale_prompt_files(config.tmp_dir, log=logger.info)
        if removed:
            logger.warning("Removed %d stale prompt file(s) at startup", removed)
    except Exception:
        logger.exception("Startup stale-file cleanup failed")

    registry = AgentRegistry(config.agents_dir)
    registry.load_all()
    for agent in inline_agents:
        registry.register(agent)
    if not len(registry):
        logger.warning("No agents defined; sessions cannot be created until agents are added")

    store = InMemoryChatStore() if args.memory else SqliteChatStore(config.db_path)
    server = ArcServer(
        config,
        store=store,
        registry=registry,
        host=args.host,
        port=args.port,
    )
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
