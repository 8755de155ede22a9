"""Per-session worker processes with tagged output relay.

ProcessBridge starts one worker process per submitted command, feeds
the command on stdin, and relays stdout/stderr chunks and the exit
status as session-tagged event dicts through an async callback:

    {"type": "data",  "session_id": ..., "invocation_id": ..., "content": ...}
    {"type": "error", "session_id": ..., "invocation_id": ..., "content": ...}
    {"type": "close", "session_id": ..., "invocation_id": ..., "code": 0}

Each session owns a working directory under ``contexts/<session_id>``
that is created on demand and never cleaned up here. At most one
invocation per session is live at a time; the table of invocations is
held explicitly in ``ProcessBridge._invocations``.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import subprocess
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from gemdesk.adapters.events import CLOSE, DATA, ERROR
from gemdesk.shared.models.session import is_valid_session_id

from .config import BridgeConfig, EventCallback, fire_event
from .errors import (
    InvalidSessionIdError,
    InvocationInProgressError,
    WorkerSpawnError,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())[:8]


class InvocationState(Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class Invocation:
    """One run of the worker for a single submitted command."""

    session_id: str
    command: str
    cwd: Path
    id: str = field(default_factory=_gen_id)
    state: InvocationState = InvocationState.SPAWNING
    pid: int | None = None
    exit_code: int | None = None
    exit_signal: int | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None
    _process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    _task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def running(self) -> bool:
        """Whether the invocation still has a process or relay in flight."""
        if self.state is InvocationState.SPAWNING:
            return True
        return self._task is not None and not self._task.done()

    def to_dict(self) -> dict:
        return {
            "invocation_id": self.id,
            "session_id": self.session_id,
            "state": self.state.value,
            "running": self.running,
            "pid": self.pid,
            "code": self.exit_code,
            "signal": self.exit_signal,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class ProcessBridge:
    """Owns worker processes and relays their output per session."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        self._event_callback = event_callback
        self._invocations: dict[str, Invocation] = {}

    def set_event_callback(self, callback: EventCallback | None) -> None:
        self._event_callback = callback

    # ── Queries ──

    def context_dir(self, session_id: str) -> Path:
        """Working directory for *session_id* (not created here)."""
        if not is_valid_session_id(session_id):
            raise InvalidSessionIdError(session_id)
        return self._config.contexts_dir / session_id

    def get_invocation(self, session_id: str) -> Invocation | None:
        return self._invocations.get(session_id)

    def is_running(self, session_id: str) -> bool:
        inv = self._invocations.get(session_id)
        return inv is not None and inv.running

    @property
    def running_sessions(self) -> list[str]:
        return [sid for sid, inv in self._invocations.items() if inv.running]

    async def wait(self, session_id: str) -> Invocation | None:
        """Wait for the current invocation of *session_id* to finish."""
        inv = self._invocations.get(session_id)
        if inv is not None and inv._task is not None:
            await asyncio.shield(inv._task)
        return inv

    # ── Spawn ──

    async def spawn(self, session_id: str, command: str) -> Invocation:
        """Start a worker for *command* in the session's working directory.

        Returns as soon as the invocation is registered; start-up, I/O and
        exit are reported through the event callback. Start-up failures
        become an ``error`` event with no ``close`` event.

        Raises:
            InvalidSessionIdError: if *session_id* is not a safe path key.
            InvocationInProgressError: if the session already has a live
                invocation.
        """
        cwd = self.context_dir(session_id)
        current = self._invocations.get(session_id)
        if current is not None and current.running:
            raise InvocationInProgressError(session_id)

        inv = Invocation(session_id=session_id, command=command, cwd=cwd)
        # Registered before the first await so a concurrent spawn sees it.
        self._invocations[session_id] = inv
        inv._task = asyncio.create_task(
            self._run(inv), name=f"invocation-{session_id}-{inv.id}",
        )
        logger.info(
            "Invocation %s queued session=%s command_len=%d",
            inv.id, session_id, len(command),
        )
        return inv

    async def _run(self, inv: Invocation) -> None:
        try:
            try:
                proc = await self._start_process(inv)
            except WorkerSpawnError as exc:
                self._finish(inv, InvocationState.FAILED, error=str(exc))
                logger.error("Invocation %s session=%s: %s", inv.id, inv.session_id, exc)
                await self._emit(
                    inv, ERROR,
                    content=f"Error starting the worker process: {exc.reason}",
                )
                return

            inv._process = proc
            inv.pid = proc.pid
            inv.state = InvocationState.RUNNING
            logger.info(
                "Invocation %s running session=%s pid=%s cwd=%s",
                inv.id, inv.session_id, proc.pid, inv.cwd,
            )

            # Readers start before stdin is written so a chatty worker
            # cannot block on a full pipe.
            readers = [
                asyncio.create_task(self._pump(inv, proc.stdout, DATA)),
                asyncio.create_task(self._pump(inv, proc.stderr, ERROR)),
            ]
            await self._send_command(inv, proc)
            await asyncio.gather(*readers)
            returncode = await proc.wait()

            if returncode is not None and returncode < 0:
                code, signal_num = None, -returncode
            else:
                code, signal_num = returncode, None
            inv.exit_code = code
            inv.exit_signal = signal_num
            final = (
                InvocationState.FAILED
                if inv.state is InvocationState.FAILED
                else InvocationState.CLOSED
            )
            self._finish(inv, final)
            logger.info(
                "Invocation %s finished session=%s code=%s signal=%s",
                inv.id, inv.session_id, code, signal_num,
            )
            await self._emit(inv, CLOSE, code=code, signal=signal_num)
        except asyncio.CancelledError:
            self._finish(inv, InvocationState.FAILED, error="cancelled")
            raise
        except Exception as exc:
            logger.exception(
                "Invocation %s session=%s crashed", inv.id, inv.session_id,
            )
            self._finish(inv, InvocationState.FAILED, error=str(exc))
            await self._emit(inv, ERROR, content=f"Worker relay failed: {exc}")

    async def _start_process(self, inv: Invocation) -> asyncio.subprocess.Process:
        argv = [self._resolve_command(), *self._config.worker_args]
        kwargs: dict = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        try:
            await asyncio.to_thread(inv.cwd.mkdir, parents=True, exist_ok=True)
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(inv.cwd),
                env=self._build_env(),
                **kwargs,
            )
        except OSError as exc:
            raise WorkerSpawnError(
                self._config.worker_command, exc.strerror or str(exc),
            ) from exc

    async def _send_command(
        self, inv: Invocation, proc: asyncio.subprocess.Process,
    ) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.write(f"{inv.command}\n".encode("utf-8"))
            await proc.stdin.drain()
        except OSError as exc:
            inv.state = InvocationState.FAILED
            inv.error = f"stdin write failed: {exc}"
            logger.warning(
                "Invocation %s session=%s: could not send command: %s",
                inv.id, inv.session_id, exc,
            )
            await self._emit(inv, ERROR, content=f"Error sending the command: {exc}")
        finally:
            proc.stdin.close()

    async def _pump(
        self,
        inv: Invocation,
        stream: asyncio.StreamReader | None,
        event_type: str,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(self._config.read_chunk_size)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                await self._emit(inv, event_type, content=text)
            if not chunk:
                break

    # ── Helpers ──

    def _resolve_command(self) -> str:
        command = self._config.worker_command
        return shutil.which(command) or command

    def _build_env(self) -> dict[str, str] | None:
        if not self._config.worker_env:
            return None
        env = os.environ.copy()
        env.update(self._config.worker_env)
        return env

    def _finish(
        self, inv: Invocation, state: InvocationState, error: str | None = None,
    ) -> None:
        inv.state = state
        if error is not None:
            inv.error = error
        inv.finished_at = _utcnow()

    async def _emit(self, inv: Invocation, event_type: str, **fields) -> None:
        event = {
            "type": event_type,
            "session_id": inv.session_id,
            "invocation_id": inv.id,
            **fields,
        }
        await fire_event(self._event_callback, event)

    # ── Lifecycle ──

    async def shutdown(self) -> None:
        """Wait briefly for live workers, then terminate what remains.

        Only used when the host exits; there is no per-invocation abort.
        """
        tasks = {
            inv._task: inv
            for inv in self._invocations.values()
            if inv.running and inv._task is not None
        }
        if not tasks:
            return
        grace = max(0.0, self._config.shutdown_grace_seconds)
        logger.info("Waiting up to %.1fs for %d live worker(s)", grace, len(tasks))
        _, pending = await asyncio.wait(set(tasks), timeout=grace)
        for task in pending:
            inv = tasks[task]
            proc = inv._process
            if proc is not None and proc.returncode is None:
                logger.warning(
                    "Terminating worker pid=%s session=%s on shutdown",
                    proc.pid, inv.session_id,
                )
                try:
                    proc.terminate()
                except ProcessLookupError:
                    pass
        if pending:
            _, still_pending = await asyncio.wait(pending, timeout=grace)
            for task in still_pending:
                inv = tasks[task]
                if inv._process is not None and inv._process.returncode is None:
                    try:
                        inv._process.kill()
                    except ProcessLookupError:
                        pass
                task.cancel()
