"""Best-effort cleanup for stale runtime files.

A server that crashed mid-turn can leave system-prompt files behind in
the runtime temp directory. They are swept at startup.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

PROMPT_FILE_GLOB = "sp-*.txt"
DEFAULT_MAX_AGE_SECONDS = 3600.0


@dataclass(frozen=True)
class StaleFile:
    path: Path
    age_seconds: float


def _list_stale_files(tmp_dir: Path, max_age_seconds: float, now: float) -> list[StaleFile]:
    stale: list[StaleFile] = []
    for path in tmp_dir.glob(PROMPT_FILE_GLOB):
        try:
            age = now - path.stat().st_mtime
        except FileNotFoundError:
            continue
        if age >= max_age_seconds:
            stale.append(StaleFile(path=path, age_seconds=age))
    return stale


def cleanup_stale_prompt_files(
    tmp_dir: str | os.PathLike[str],
    max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
    *,
    now: float | None = None,
    log: Callable[[str], None] | None = None,
) -> int:
    """Remove leftover system-prompt files older than *max_age_seconds*.

    Returns the number of files removed. A missing directory is not an
    error.
    """
    logger = log or (lambda _: None)
    root = Path(tmp_dir)
    if not root.is_dir():
        return 0

    removed = 0
    for item in _list_stale_files(root, max_age_seconds, now if now is not None else time.time()):
        try:
            item.path.unlink()
            removed += 1
            logger(f"Removed stale prompt file {item.path} age={item.age_seconds:.0f}s")
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger(
                f"Failed to remove stale prompt file {item.path}: "
                f"{type(exc).__name__}: {exc}"
            )
    return removed
