"""Agent process runner.

Launches one CLI process per agent turn, streams its stdout to a
caller-supplied sink while buffering the full reply, and enforces a
hard wall-clock timeout. Live processes are tracked per session id so
a turn can be stopped on demand.

Every exit path (normal exit, timeout, stop, spawn failure,
cancellation) funnels through one idempotent cleanup on the per-turn
handle, which removes the system-prompt temp file, de-registers the
session and cancels pending timers.

Timeouts and stops signal the child's whole process group, so a
background command the agent left holding stdout is terminated with it.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from arc.engine.config import EngineConfig
from arc.engine.errors import AgentSpawnError, SessionBusyError
from arc.shared.models.agent import AgentDef

logger = logging.getLogger(__name__)

# Receives decoded stdout text as it arrives.
ChunkSink = Callable[[str], None]

_T = TypeVar("_T")

TIMEOUT_MESSAGE = (
    "Agent timed out after {seconds} seconds without completing a reply."
)
STOPPED_MESSAGE = "Agent was stopped before completing a reply."

_READ_SIZE = 4096
_STDERR_LOG_LIMIT = 2000


@dataclass
class RunResult:
    """Outcome of a single agent turn."""
    output: str
    exit_code: int | None
    timed_out: bool = False
    stopped: bool = False


def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    """Signal the child's whole process group, falling back to the child."""
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, sig)
            return
        except ProcessLookupError:
            return
        except PermissionError:
            pass
    try:
        proc.send_signal(sig)
    except ProcessLookupError:
        pass


class _LiveTurn:
    """Registry entry for one in-flight turn."""

    def __init__(
        self,
        runner: AgentRunner,
        session_id: str,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.session_id = session_id
        self.proc: asyncio.subprocess.Process | None = None
        self.prompt_file: Path | None = None
        self.timed_out = False
        self.stopped = False
        self.output_closed = False
        self._runner = runner
        self._loop = loop
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._kill_handle: asyncio.TimerHandle | None = None
        self._give_up_handle: asyncio.TimerHandle | None = None
        self._gave_up = asyncio.Event()
        self._cleaned = False

    @property
    def alive(self) -> bool:
        """True while the child or anything holding its stdout may still run.

        The leader exiting is not enough: a background command it
        started keeps the output pipe open.
        """
        if self.proc is None:
            return False
        return self.proc.returncode is None or not self.output_closed

    def arm_timeout(self, seconds: float, grace: float) -> None:
        self._timeout_handle = self._loop.call_later(seconds, self._expire, seconds, grace)

    def _expire(self, seconds: float, grace: float) -> None:
        self._timeout_handle = None
        if not self.alive:
            return
        self.timed_out = True
        logger.warning(
            "Agent turn for session %s exceeded %.0fs; terminating group pid=%s (leader_rc=%s)",
            self.session_id, seconds, self.proc.pid, self.proc.returncode,
        )
        self.terminate(grace)

    def terminate(self, grace: float) -> bool:
        """SIGTERM the group now, SIGKILL after *grace* seconds."""
        if not self.alive:
            return False
        _signal_group(self.proc, signal.SIGTERM)
        if self._kill_handle is None:
            self._kill_handle = self._loop.call_later(grace, self._force_kill, grace)
        return True

    def _force_kill(self, grace: float) -> None:
        self._kill_handle = None
        if not self.alive:
            return
        logger.warning(
            "Agent process group pid=%s for session %s ignored SIGTERM; killing",
            self.proc.pid, self.session_id,
        )
        _signal_group(self.proc, signal.SIGKILL)
        # Anything still holding the pipes after this escaped the group.
        self._give_up_handle = self._loop.call_later(grace, self._gave_up.set)

    async def bounded(self, aw: Awaitable[_T]) -> tuple[bool, _T | None]:
        """Await *aw* until it finishes or the turn is given up on.

        Returns ``(finished, result)``. An unfinished *aw* is cancelled.
        """
        task = asyncio.ensure_future(aw)
        gave_up = asyncio.ensure_future(self._gave_up.wait())
        try:
            await asyncio.wait({task, gave_up}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            gave_up.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            return False, None
        return True, task.result()

    def cleanup(self) -> asyncio.subprocess.Process | None:
        """Release the turn. Returns the process if it had to be killed."""
        if self._cleaned:
            return None
        self._cleaned = True
        for handle in (self._timeout_handle, self._kill_handle, self._give_up_handle):
            if handle is not None:
                handle.cancel()
        self._timeout_handle = None
        self._kill_handle = None
        self._give_up_handle = None
        orphan = None
        if self.alive and not self._gave_up.is_set():
            # Abandoned turn (cancelled while the process was running).
            logger.warning(
                "Killing orphaned agent process group pid=%s for session %s",
                self.proc.pid, self.session_id,
            )
            _signal_group(self.proc, signal.SIGKILL)
            orphan = self.proc
        self._runner._release(self)
        if self.prompt_file is not None:
            try:
                self.prompt_file.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning(
                    "Failed to remove system prompt file %s: %s",
                    self.prompt_file, exc,
                )
        return orphan


class AgentRunner:
    """Runs agent turns as child processes, at most one per session."""

    def __init__(self, config: EngineConfig | None = None) -> None:
        self._config = config or EngineConfig()
        self._processes: dict[str, _LiveTurn] = {}

    @property
    def running_count(self) -> int:
        return len(self._processes)

    def is_running(self, session_id: str) -> bool:
        return session_id in self._processes

    def build_args(self, agent: AgentDef, prompt_file: Path | None) -> list[str]:
        max_turns = agent.max_turns or self._config.default_max_turns
        args = [
            self._config.agent_command,
            "--print",
            "--output-format", "text",
            "--max-turns", str(max_turns),
        ]
        if agent.model:
            args.extend(["--model", agent.model])
        if prompt_file is not None:
            args.extend([self._config.system_prompt_flag, str(prompt_file)])
        for tool in agent.allowed_tools:
            args.extend(["--allowedTools", tool])
        return args

    def build_env(self) -> dict[str, str]:
        """Child environment without nested-session markers."""
        env = os.environ.copy()
        for name in self._config.nested_session_env_vars:
            env.pop(name, None)
        return env

    def _write_system_prompt(self, text: str) -> Path:
        tmp_dir = Path(self._config.tmp_dir)
        tmp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix="sp-", suffix=".txt", dir=str(tmp_dir))
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        return Path(name)

    async def run(
        self,
        agent: AgentDef,
        prompt: str,
        session_id: str,
        on_chunk: ChunkSink | None = None,
    ) -> RunResult:
        """Run one agent turn and return its full output.

        Timeouts and stops resolve normally with a synthesized message.
        Raises SessionBusyError if a process is already live for
        *session_id*, and AgentSpawnError if the process cannot start.
        """
        if session_id in self._processes:
            raise SessionBusyError(session_id)
        turn = _LiveTurn(self, session_id, asyncio.get_running_loop())
        self._processes[session_id] = turn

        try:
            try:
                if agent.system_prompt:
                    turn.prompt_file = self._write_system_prompt(agent.system_prompt)
                args = self.build_args(agent, turn.prompt_file)
                turn.proc = await asyncio.create_subprocess_exec(
                    *args,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=agent.working_dir or None,
                    env=self.build_env(),
                    start_new_session=True,
                )
            except OSError as exc:
                logger.error(
                    "Agent %s failed to start for session %s: %s",
                    agent.id, session_id, exc,
                )
                raise AgentSpawnError(session_id, f"{type(exc).__name__}: {exc}") from exc

            logger.info(
                "Agent %s turn started for session %s (pid=%s, prompt_chars=%d)",
                agent.id, session_id, turn.proc.pid, len(prompt),
            )
            turn.arm_timeout(
                self._config.agent_timeout_seconds,
                self._config.kill_grace_seconds,
            )
            if turn.stopped:
                # stop() arrived while the process was being spawned.
                turn.terminate(self._config.kill_grace_seconds)

            stdout_parts: list[str] = []
            stderr_parts: list[str] = []
            finished, _ = await turn.bounded(asyncio.gather(
                self._feed_stdin(turn.proc, prompt, session_id),
                self._pump_stdout(turn.proc, on_chunk, session_id, stdout_parts),
                self._drain_stderr(turn.proc, stderr_parts),
            ))
            if finished:
                turn.output_closed = True
                finished, exit_code = await turn.bounded(turn.proc.wait())
            if not finished:
                logger.error(
                    "Agent output for session %s still open after SIGKILL; abandoning pid=%s",
                    session_id, turn.proc.pid,
                )
                exit_code = turn.proc.returncode
        finally:
            orphan = turn.cleanup()
            if orphan is not None:
                await self._reap(orphan, session_id)

        return self._build_result(turn, "".join(stdout_parts), "".join(stderr_parts), exit_code)

    def _build_result(
        self,
        turn: _LiveTurn,
        output: str,
        stderr_text: str,
        exit_code: int | None,
    ) -> RunResult:
        session_id = turn.session_id
        output = output.strip()
        stderr_text = stderr_text.strip()
        if stderr_text:
            logger.info(
                "Agent stderr for session %s (rc=%s): %s",
                session_id, exit_code, stderr_text[:_STDERR_LOG_LIMIT],
            )

        if turn.timed_out:
            seconds = f"{self._config.agent_timeout_seconds:g}"
            return RunResult(
                output=TIMEOUT_MESSAGE.format(seconds=seconds),
                exit_code=exit_code,
                timed_out=True,
            )
        if turn.stopped:
            logger.info("Agent turn for session %s stopped (rc=%s)", session_id, exit_code)
            return RunResult(
                output=output or STOPPED_MESSAGE,
                exit_code=exit_code,
                stopped=True,
            )
        if exit_code != 0:
            logger.warning(
                "Agent turn for session %s exited with rc=%s (output_chars=%d)",
                session_id, exit_code, len(output),
            )
        else:
            logger.info(
                "Agent turn for session %s finished (output_chars=%d)",
                session_id, len(output),
            )
        return RunResult(output=output, exit_code=exit_code)

    async def _feed_stdin(
        self,
        proc: asyncio.subprocess.Process,
        prompt: str,
        session_id: str,
    ) -> None:
        # The wrapped CLI waits forever on an open stdin, so it is
        # closed on every path.
        stdin = proc.stdin
        if stdin is None:
            return
        try:
            stdin.write(prompt.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning(
                "Agent stdin for session %s closed before prompt was written: %s",
                session_id, exc,
            )
        finally:
            stdin.close()

    async def _pump_stdout(
        self,
        proc: asyncio.subprocess.Process,
        on_chunk: ChunkSink | None,
        session_id: str,
        parts: list[str],
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await proc.stdout.read(_READ_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                parts.append(text)
                self._emit_chunk(on_chunk, text, session_id)
            if not data:
                break

    @staticmethod
    async def _drain_stderr(proc: asyncio.subprocess.Process, parts: list[str]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await proc.stderr.read(_READ_SIZE)
            parts.append(decoder.decode(data, final=not data))
            if not data:
                break

    async def _reap(self, proc: asyncio.subprocess.Process, session_id: str) -> None:
        # Shielded so a second cancel does not leave the transport unreaped.
        try:
            await asyncio.wait_for(
                asyncio.shield(proc.wait()), self._config.kill_grace_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Agent process pid=%s for session %s not reaped after SIGKILL",
                proc.pid, session_id,
            )

    @staticmethod
    def _emit_chunk(on_chunk: ChunkSink | None, text: str, session_id: str) -> None:
        if on_chunk is None:
            return
        try:
            on_chunk(text)
        except Exception:
            logger.exception("Chunk sink failed for session %s", session_id)

    def stop(self, session_id: str) -> bool:
        """Ask the live process for *session_id* to exit.

        The pending run() resolves through the process's own exit.
        Returns False when no turn is in flight for the session.
        """
        turn = self._processes.get(session_id)
        if turn is None:
            return False
        turn.stopped = True
        logger.info(
            "Stopping agent turn for session %s (pid=%s)",
            session_id, turn.proc.pid if turn.proc else None,
        )
        turn.terminate(self._config.kill_grace_seconds)
        return True

    def stop_all(self) -> int:
        """Stop every live turn. Returns how many were signalled."""
        count = 0
        for session_id in list(self._processes):
            if self.stop(session_id):
                count += 1
        return count

    def _release(self, turn: _LiveTurn) -> None:
        if self._processes.get(turn.session_id) is turn:
            del self._processes[turn.session_id]
