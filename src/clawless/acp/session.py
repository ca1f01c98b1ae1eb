"""One agent subprocess driving one prompt over ACP."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable, Callable, Sequence
from enum import StrEnum
from pathlib import Path
from typing import Any

from loguru import logger

from clawless.acp.mcp import McpServerDescriptor
from clawless.acp.protocol import PROTOCOL_VERSION, AcpConnection, MethodNotFound
from clawless.config import PermissionStrategy
from clawless.errors import AgentCancelledError, AgentError, AgentTimeoutError, ProcessError, ProtocolError

#: Maximum bytes per JSON line read from the agent (8 MB).
MAX_LINE_BYTES = 8 * 1024 * 1024
CANCEL_NOTIFY_TIMEOUT_SECONDS = 1.0
STDERR_READ_BYTES = 4096

ChunkCallback = Callable[[str], Awaitable[None] | None]
ProcessFactory = Callable[[], Awaitable[Any]]


class SessionState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"
    CLEANED = "cleaned"


class StderrTail:
    """Keep the last `max_chars` characters written to stderr."""

    def __init__(self, max_chars: int) -> None:
        self.max_chars = max_chars
        self._text = ""

    def append(self, text: str) -> None:
        if self.max_chars <= 0:
            return
        self._text = (self._text + text)[-self.max_chars :]

    @property
    def text(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)


class ProcessSession:
    """Own one agent subprocess and its ACP connection for a single prompt.

    `run()` spawns the agent, performs the initialize / session/new /
    session/prompt handshake and streams text chunks to the callback. The
    call settles exactly once: with the concatenated text, or with
    `AgentTimeoutError` (overall or idle deadline), `AgentCancelledError`,
    `ProtocolError` or `ProcessError`. Teardown (SIGTERM, grace period,
    SIGKILL) always runs before `run()` returns or raises and runs only once
    however many exit paths request it.
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: Path,
        timeout_seconds: float,
        idle_timeout_seconds: float,
        kill_grace_seconds: float = 5.0,
        stderr_tail_max_chars: int = 4000,
        permission_strategy: PermissionStrategy = "allow_once",
        mcp_servers: Sequence[McpServerDescriptor] = (),
        label: str = "agent",
        spawn: ProcessFactory | None = None,
    ) -> None:
        self._command = command
        self._args = list(args)
        self._cwd = cwd
        self._timeout_seconds = timeout_seconds
        self._idle_timeout_seconds = idle_timeout_seconds
        self._kill_grace_seconds = kill_grace_seconds
        self._permission_strategy = permission_strategy
        self._mcp_servers = list(mcp_servers)
        self._label = label
        self._spawn_factory = spawn

        self._state = SessionState.IDLE
        self.outcome: SessionState | None = None
        self.pid: int | None = None
        self.session_id: str | None = None
        self._stderr = StderrTail(stderr_tail_max_chars)
        self._process: Any = None
        self._connection: AcpConnection | None = None
        self._result: asyncio.Future[str] | None = None
        self._on_chunk: ChunkCallback | None = None
        self._chunks: list[str] = []
        self._tasks: list[asyncio.Task[None]] = []
        self._overall_handle: asyncio.TimerHandle | None = None
        self._idle_handle: asyncio.TimerHandle | None = None
        self._cancel_task: asyncio.Task[None] | None = None
        self._close_task: asyncio.Future[None] | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def stderr_tail(self) -> str:
        return self._stderr.text

    @property
    def settled(self) -> bool:
        return self._result is not None and self._result.done()

    async def run(self, prompt: str, on_chunk: ChunkCallback | None = None) -> str:
        if self._state is not SessionState.IDLE:
            raise RuntimeError("a ProcessSession runs exactly one prompt")
        loop = asyncio.get_running_loop()
        self._state = SessionState.RUNNING
        self._result = loop.create_future()
        self._on_chunk = on_chunk
        try:
            try:
                self._process = await self._spawn()
            except OSError as exc:
                self._settle(SessionState.FAILED, error=ProcessError(f"failed to start {self._command}: {exc}"))
            else:
                self._start(prompt)
            return await asyncio.shield(self._result)
        except asyncio.CancelledError:
            self.cancel("caller cancelled")
            raise
        finally:
            await self.close()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation from any task. Returns False once settled."""
        if self._result is None or self._result.done():
            return False
        logger.info("acp.session.cancel label={} reason={}", self._label, reason)
        self._request_agent_cancel()
        return self._settle(SessionState.CANCELLED, error=AgentCancelledError(reason))

    async def close(self) -> None:
        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self._teardown())
        await asyncio.shield(self._close_task)

    async def _spawn(self) -> Any:
        if self._spawn_factory is not None:
            return await self._spawn_factory()
        return await asyncio.create_subprocess_exec(
            self._command,
            *self._args,
            cwd=str(self._cwd),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=MAX_LINE_BYTES,
            start_new_session=True,
        )

    def _start(self, prompt: str) -> None:
        process = self._process
        self.pid = process.pid
        logger.info(
            "acp.session.spawned label={} pid={} command={} args={}",
            self._label,
            self.pid,
            self._command,
            self._args,
        )
        self._connection = AcpConnection(
            process.stdout,
            process.stdin,
            on_request=self._handle_request,
            on_notification=self._handle_notification,
            on_activity=self._touch,
            label=self._label,
        )
        self._connection.start()
        self._tasks = [
            asyncio.create_task(self._pump_stderr()),
            asyncio.create_task(self._watch_exit()),
            asyncio.create_task(self._drive(prompt)),
        ]
        loop = asyncio.get_running_loop()
        self._overall_handle = loop.call_later(self._timeout_seconds, self._on_deadline, "overall")
        self._arm_idle()

    async def _drive(self, prompt: str) -> None:
        connection = self._connection
        assert connection is not None  # noqa: S101
        try:
            await connection.request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "clientCapabilities": {"fs": {"readTextFile": True, "writeTextFile": True}},
                },
            )
            opened = await connection.request(
                "session/new",
                {"cwd": str(self._cwd), "mcpServers": [server.to_acp() for server in self._mcp_servers]},
            )
            session_id = opened.get("sessionId") if isinstance(opened, dict) else None
            if not isinstance(session_id, str) or not session_id:
                raise ProtocolError("session/new returned no sessionId")
            self.session_id = session_id
            result = await connection.request(
                "session/prompt",
                {"sessionId": session_id, "prompt": [{"type": "text", "text": prompt}]},
            )
        except ProtocolError as exc:
            if connection.eof:
                # The exit watcher reports the exit code and stderr instead.
                return
            self._settle(SessionState.FAILED, error=exc)
            return

        stop_reason = result.get("stopReason") if isinstance(result, dict) else None
        if stop_reason == "cancelled":
            self._settle(SessionState.CANCELLED, error=AgentCancelledError("agent cancelled the prompt"))
            return
        logger.info(
            "acp.session.completed label={} stop_reason={} chunks={}",
            self._label,
            stop_reason,
            len(self._chunks),
        )
        self._settle(SessionState.COMPLETED, result="".join(self._chunks))

    async def _handle_notification(self, method: str, params: dict[str, Any]) -> None:
        if method != "session/update":
            return
        update = params.get("update")
        if not isinstance(update, dict) or update.get("sessionUpdate") != "agent_message_chunk":
            return
        content = update.get("content")
        if not isinstance(content, dict) or content.get("type") != "text":
            return
        text = content.get("text")
        if not isinstance(text, str) or not text or self.settled:
            return
        self._touch()
        self._chunks.append(text)
        if self._on_chunk is None:
            return
        result = self._on_chunk(text)
        if inspect.isawaitable(result):
            await result

    async def _handle_request(self, method: str, params: dict[str, Any]) -> Any:
        self._touch()
        if method == "session/request_permission":
            return self._permission_outcome(params)
        if method == "fs/read_text_file":
            return {"content": ""}
        if method == "fs/write_text_file":
            return None
        raise MethodNotFound(method)

    def _permission_outcome(self, params: dict[str, Any]) -> dict[str, Any]:
        cancelled = {"outcome": {"outcome": "cancelled"}}
        if self._permission_strategy == "cancelled":
            return cancelled
        if self._permission_strategy == "allow_once":
            wanted = ("allow_once", "allow_always")
        else:
            wanted = ("reject_once", "reject_always")
        options = [option for option in params.get("options") or [] if isinstance(option, dict)]
        for kind in wanted:
            for option in options:
                if option.get("kind") == kind and option.get("optionId"):
                    logger.debug("acp.session.permission label={} option={}", self._label, option["optionId"])
                    return {"outcome": {"outcome": "selected", "optionId": option["optionId"]}}
        return cancelled

    async def _pump_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return
        while True:
            data = await stream.read(STDERR_READ_BYTES)
            if not data:
                return
            self._touch()
            text = data.decode("utf-8", errors="replace")
            self._stderr.append(text)
            if text.strip():
                logger.debug("acp.session.stderr label={} text={}", self._label, text.strip()[:500])

    async def _watch_exit(self) -> None:
        returncode = await self._process.wait()
        if self._connection is not None:
            with contextlib.suppress(asyncio.TimeoutError, asyncio.CancelledError):
                await asyncio.wait_for(self._connection.wait_drained(), timeout=1.0)
        await asyncio.sleep(0)
        if self.settled:
            return
        signal = -returncode if returncode is not None and returncode < 0 else None
        message = f"agent exited with code {returncode}" + (f" (signal {signal})" if signal else "")
        self._settle(
            SessionState.FAILED,
            error=ProcessError(message, returncode=returncode, signal=signal, stderr_tail=self._stderr.text),
        )

    def _touch(self) -> None:
        if self.settled or self._idle_handle is None:
            return
        self._arm_idle()

    def _arm_idle(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(self._idle_timeout_seconds, self._on_deadline, "idle")

    def _on_deadline(self, kind: str) -> None:
        if self.settled:
            return
        seconds = self._idle_timeout_seconds if kind == "idle" else self._timeout_seconds
        logger.warning("acp.session.timeout label={} kind={} seconds={}", self._label, kind, seconds)
        self._request_agent_cancel()
        self._settle(SessionState.TIMED_OUT, error=AgentTimeoutError(kind, seconds))

    def _request_agent_cancel(self) -> None:
        if self._cancel_task is not None or self._connection is None or self.session_id is None:
            return
        self._cancel_task = asyncio.ensure_future(self._send_agent_cancel(self.session_id))

    async def _send_agent_cancel(self, session_id: str) -> None:
        assert self._connection is not None  # noqa: S101
        with contextlib.suppress(ProtocolError):
            await self._connection.notify("session/cancel", {"sessionId": session_id})

    def _cancel_timers(self) -> None:
        for handle in (self._overall_handle, self._idle_handle):
            if handle is not None:
                handle.cancel()
        self._overall_handle = None
        self._idle_handle = None

    def _settle(self, state: SessionState, *, result: str = "", error: AgentError | None = None) -> bool:
        if self._result is None or self._result.done():
            return False
        self._cancel_timers()
        self._state = state
        self.outcome = state
        if error is None:
            self._result.set_result(result)
        else:
            self._result.set_exception(error)
            # run() may already be unwinding through CancelledError.
            self._result.exception()
        logger.info("acp.session.settled label={} state={} pid={}", self._label, state, self.pid)
        return True

    async def _teardown(self) -> None:
        self._cancel_timers()
        if not self.settled:
            self._settle(SessionState.CANCELLED, error=AgentCancelledError("session closed"))
        if self._cancel_task is not None:
            with contextlib.suppress(asyncio.TimeoutError, ProtocolError):
                await asyncio.wait_for(self._cancel_task, timeout=CANCEL_NOTIFY_TIMEOUT_SECONDS)
        if self._connection is not None:
            await self._connection.close()

        process = self._process
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self._kill_grace_seconds)
            except TimeoutError:
                logger.warning(
                    "acp.session.kill label={} pid={} grace={}", self._label, self.pid, self._kill_grace_seconds
                )
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._state = SessionState.CLEANED
        logger.info("acp.session.cleaned label={} pid={} outcome={}", self._label, self.pid, self.outcome)
