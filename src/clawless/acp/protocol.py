"""Newline-delimited JSON-RPC connection to an ACP agent process."""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from clawless.errors import ProtocolError

PROTOCOL_VERSION = 1
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

RequestHandler = Callable[[str, dict[str, Any]], Awaitable[Any]]
NotificationHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


class MethodNotFound(Exception):
    """Raised by a request handler for methods the client does not serve."""


class AcpConnection:
    """JSON-RPC peer over a child process' stdin and stdout.

    Each message is one JSON object on one line. Incoming notifications are
    dispatched sequentially on the reader task, so their handlers observe
    them in the order the agent wrote them.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        on_request: RequestHandler,
        on_notification: NotificationHandler,
        on_activity: Callable[[], None] | None = None,
        label: str = "acp",
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._on_request = on_request
        self._on_notification = on_notification
        self._on_activity = on_activity
        self._label = label
        self._next_id = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._write_lock = asyncio.Lock()
        self._read_task: asyncio.Task[None] | None = None
        self._failure: ProtocolError | None = None
        self.eof = False

    @property
    def closed(self) -> bool:
        return self._failure is not None

    async def wait_drained(self) -> None:
        """Wait until the reader has consumed everything the agent wrote."""
        if self._read_task is not None:
            await asyncio.shield(self._read_task)

    def start(self) -> None:
        if self._read_task is None:
            self._read_task = asyncio.create_task(self._read_loop())

    async def request(self, method: str, params: dict[str, Any]) -> Any:
        if self._failure is not None:
            raise self._failure
        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict[str, Any]) -> None:
        if self._failure is not None:
            raise self._failure
        await self._send({"jsonrpc": "2.0", "method": method, "params": params})

    async def close(self) -> None:
        self._fail(ProtocolError("connection closed"))
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._read_task
        with contextlib.suppress(OSError, RuntimeError):
            self._writer.close()

    async def _send(self, message: dict[str, Any]) -> None:
        line = json.dumps(message, ensure_ascii=False) + "\n"
        async with self._write_lock:
            try:
                self._writer.write(line.encode("utf-8"))
                await self._writer.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as exc:
                failure = ProtocolError(f"cannot write to agent: {exc}")
                self._fail(failure)
                raise failure from exc

    def _fail(self, error: ProtocolError) -> None:
        if self._failure is None:
            self._failure = error
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
                # The awaiting request may already be gone.
                future.exception()

    async def _read_loop(self) -> None:
        try:
            while True:
                raw = await self._reader.readline()
                if not raw:
                    self.eof = True
                    self._fail(ProtocolError("agent closed its output stream"))
                    return
                if self._on_activity is not None:
                    self._on_activity()
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("acp.connection.non_json label={} line={}", self._label, line[:200])
                    continue
                if not isinstance(message, dict):
                    self._fail(ProtocolError(f"unexpected message from agent: {line[:200]}"))
                    return
                await self._dispatch(message)
        except ValueError as exc:
            # StreamReader raises ValueError when one line exceeds its limit.
            self._fail(ProtocolError(f"agent output line too long: {exc}"))

    async def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if isinstance(method, str):
            params = message.get("params")
            params = params if isinstance(params, dict) else {}
            if "id" in message:
                await self._answer(message["id"], method, params)
            else:
                try:
                    await self._on_notification(method, params)
                except Exception:
                    logger.exception("acp.connection.notification_error label={} method={}", self._label, method)
            return

        response_id = message.get("id")
        future = self._pending.get(response_id) if isinstance(response_id, int) else None
        if future is None or future.done():
            logger.warning("acp.connection.unmatched_response label={} id={}", self._label, response_id)
            return
        if "error" in message:
            error = message.get("error")
            detail = error.get("message") if isinstance(error, dict) else error
            future.set_exception(ProtocolError(f"agent returned an error: {detail}"))
            return
        future.set_result(message.get("result"))

    async def _answer(self, request_id: Any, method: str, params: dict[str, Any]) -> None:
        try:
            result = await self._on_request(method, params)
        except MethodNotFound:
            reply: dict[str, Any] = {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": METHOD_NOT_FOUND, "message": f"method not found: {method}"},
            }
        except Exception as exc:
            logger.exception("acp.connection.request_error label={} method={}", self._label, method)
            reply = {"jsonrpc": "2.0", "id": request_id, "error": {"code": INTERNAL_ERROR, "message": str(exc)}}
        else:
            reply = {"jsonrpc": "2.0", "id": request_id, "result": result}
        with contextlib.suppress(ProtocolError):
            await self._send(reply)
