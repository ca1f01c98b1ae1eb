from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from clawless.acp.mcp import StdioMcpServer
from clawless.acp.session import ProcessSession, SessionState, StderrTail
from clawless.errors import AgentCancelledError, AgentTimeoutError, ProcessError, ProtocolError


class FakeStdin:
    def __init__(self, agent: ScriptedAgent) -> None:
        self.agent = agent
        self.closed = False
        self._buffer = b""

    def write(self, data: bytes) -> None:
        self._buffer += data
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            self.agent.receive(json.loads(line))

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    def __init__(self, *, exit_on_term: bool = True) -> None:
        self.pid = 4242
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.stdin: FakeStdin | None = None
        self.signals: list[str] = []
        self.exit_on_term = exit_on_term
        self._exited = asyncio.Event()

    def terminate(self) -> None:
        self.signals.append("TERM")
        if self.exit_on_term:
            self.exit(-15)

    def kill(self) -> None:
        self.signals.append("KILL")
        self.exit(-9)

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


class ScriptedAgent:
    """Answers the ACP handshake the way a real agent would."""

    def __init__(
        self,
        process: FakeProcess,
        *,
        chunks: tuple[str, ...] = (),
        answer_prompt: bool = True,
        session_id: str | None = "sess-1",
        stop_reason: str = "end_turn",
    ) -> None:
        self.process = process
        self.chunks = chunks
        self.answer_prompt = answer_prompt
        self.session_id = session_id
        self.stop_reason = stop_reason
        self.received: list[dict[str, Any]] = []
        self.prompt_id: Any = None
        process.stdin = FakeStdin(self)

    @property
    def methods(self) -> list[str]:
        return [message["method"] for message in self.received if "method" in message]

    def emit(self, message: dict[str, Any]) -> None:
        self.process.stdout.feed_data((json.dumps(message) + "\n").encode())

    def reply(self, request_id: Any, result: Any) -> None:
        self.emit({"jsonrpc": "2.0", "id": request_id, "result": result})

    def send_chunk(self, text: str) -> None:
        self.emit({
            "jsonrpc": "2.0",
            "method": "session/update",
            "params": {
                "sessionId": self.session_id,
                "update": {"sessionUpdate": "agent_message_chunk", "content": {"type": "text", "text": text}},
            },
        })

    def receive(self, message: dict[str, Any]) -> None:
        self.received.append(message)
        method = message.get("method")
        if method == "initialize":
            self.reply(message["id"], {"protocolVersion": 1})
        elif method == "session/new":
            self.reply(message["id"], {"sessionId": self.session_id} if self.session_id else {})
        elif method == "session/prompt":
            self.prompt_id = message["id"]
            self.on_prompt(message)

    def on_prompt(self, message: dict[str, Any]) -> None:
        for chunk in self.chunks:
            self.send_chunk(chunk)
        if self.answer_prompt:
            self.reply(message["id"], {"stopReason": self.stop_reason})


def make_session(process: FakeProcess, **overrides: Any) -> ProcessSession:
    async def _spawn() -> FakeProcess:
        return process

    options: dict[str, Any] = {
        "cwd": Path("/tmp"),
        "timeout_seconds": 5.0,
        "idle_timeout_seconds": 5.0,
        "kill_grace_seconds": 0.05,
        "label": "test",
        "spawn": _spawn,
    }
    options.update(overrides)
    return ProcessSession("fake-agent", ["--experimental-acp"], **options)


@pytest.mark.asyncio
async def test_run_streams_chunks_and_returns_concatenated_text() -> None:
    process = FakeProcess()
    agent = ScriptedAgent(process, chunks=("Hel", "lo"))
    session = make_session(process)
    seen: list[str] = []

    async def _on_chunk(chunk: str) -> None:
        seen.append(chunk)

    result = await session.run("say hello", _on_chunk)

    assert result == "Hello"
    assert seen == ["Hel", "lo"]
    assert agent.methods[:3] == ["initialize", "session/new", "session/prompt"]
    assert agent.received[0]["params"]["protocolVersion"] == 1
    assert agent.received[0]["params"]["clientCapabilities"]["fs"] == {"readTextFile": True, "writeTextFile": True}
    prompt = agent.received[2]["params"]
    assert prompt == {"sessionId": "sess-1", "prompt": [{"type": "text", "text": "say hello"}]}
    assert session.outcome is SessionState.COMPLETED
    assert session.state is SessionState.CLEANED
    assert process.signals == ["TERM"]


@pytest.mark.asyncio
async def test_session_new_carries_cwd_and_mcp_servers() -> None:
    process = FakeProcess()
    agent = ScriptedAgent(process)
    server = StdioMcpServer(name="files", command="mcp-files", args=("--root", "."), env=(("TOKEN", "x"),))
    session = make_session(process, mcp_servers=[server])

    await session.run("hi")

    params = agent.received[1]["params"]
    assert params["cwd"] == "/tmp"
    assert params["mcpServers"] == [
        {"name": "files", "command": "mcp-files", "args": ["--root", "."], "env": [{"name": "TOKEN", "value": "x"}]}
    ]


@pytest.mark.asyncio
async def test_idle_timeout_fires_without_activity_and_sends_cancel() -> None:
    process = FakeProcess()
    agent = ScriptedAgent(process, answer_prompt=False)
    session = make_session(process, idle_timeout_seconds=0.05)

    with pytest.raises(AgentTimeoutError) as exc_info:
        await session.run("hang")

    assert exc_info.value.kind == "idle"
    assert "session/cancel" in agent.methods
    cancel = next(message for message in agent.received if message.get("method") == "session/cancel")
    assert cancel["params"] == {"sessionId": "sess-1"}
    assert "id" not in cancel
    assert session.outcome is SessionState.TIMED_OUT
    assert process.signals == ["TERM"]


@pytest.mark.asyncio
async def test_overall_timeout_fires_despite_steady_activity() -> None:
    process = FakeProcess()
    ScriptedAgent(process, answer_prompt=False)
    session = make_session(process, idle_timeout_seconds=0.1, timeout_seconds=0.3)

    async def _chatter() -> None:
        while process.returncode is None:
            process.stderr.feed_data(b"working...\n")
            await asyncio.sleep(0.02)

    chatter = asyncio.create_task(_chatter())
    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(AgentTimeoutError) as exc_info:
        await session.run("keep busy")
    elapsed = loop.time() - started
    chatter.cancel()

    assert exc_info.value.kind == "overall"
    assert elapsed >= 0.3
    assert "working..." in session.stderr_tail


@pytest.mark.asyncio
async def test_chunks_reset_the_idle_deadline() -> None:
    process = FakeProcess()

    class SlowAgent(ScriptedAgent):
        def on_prompt(self, message: dict[str, Any]) -> None:
            asyncio.get_running_loop().create_task(self._stream(message["id"]))

        async def _stream(self, request_id: Any) -> None:
            for chunk in ("a", "b", "c", "d"):
                await asyncio.sleep(0.04)
                self.send_chunk(chunk)
            self.reply(request_id, {"stopReason": "end_turn"})

    SlowAgent(process)
    session = make_session(process, idle_timeout_seconds=0.1)

    assert await session.run("slow") == "abcd"


@pytest.mark.asyncio
async def test_teardown_runs_once_when_closed_repeatedly() -> None:
    process = FakeProcess(exit_on_term=False)
    agent = ScriptedAgent(process, answer_prompt=False)
    session = make_session(process, idle_timeout_seconds=0.05)

    with pytest.raises(AgentTimeoutError):
        await session.run("hang")
    await session.close()
    await asyncio.gather(session.close(), session.close())

    assert process.signals == ["TERM", "KILL"]
    assert agent.methods.count("session/cancel") == 1
    assert process.stdin is not None and process.stdin.closed
    assert session.cancel("late") is False
    assert session.outcome is SessionState.TIMED_OUT


@pytest.mark.asyncio
async def test_cancel_rejects_with_cancelled_error() -> None:
    process = FakeProcess()
    agent = ScriptedAgent(process, answer_prompt=False)
    session = make_session(process)

    async def _cancel_soon() -> None:
        await asyncio.sleep(0.05)
        assert session.cancel("superseded") is True

    canceller = asyncio.create_task(_cancel_soon())
    with pytest.raises(AgentCancelledError):
        await session.run("long task")
    await canceller

    assert session.outcome is SessionState.CANCELLED
    assert "session/cancel" in agent.methods


@pytest.mark.asyncio
async def test_cancelling_the_caller_task_tears_the_session_down() -> None:
    process = FakeProcess()
    ScriptedAgent(process, answer_prompt=False)
    session = make_session(process)

    task = asyncio.create_task(session.run("long task"))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.outcome is SessionState.CANCELLED
    assert session.state is SessionState.CLEANED
    assert process.signals == ["TERM"]


@pytest.mark.asyncio
async def test_agent_cancel_stop_reason_is_reported_as_cancelled() -> None:
    process = FakeProcess()
    ScriptedAgent(process, stop_reason="cancelled")
    session = make_session(process)

    with pytest.raises(AgentCancelledError):
        await session.run("hi")


@pytest.mark.asyncio
async def test_process_exit_reports_code_and_stderr_tail() -> None:
    process = FakeProcess()

    class CrashingAgent(ScriptedAgent):
        def on_prompt(self, message: dict[str, Any]) -> None:
            self.process.stderr.feed_data(b"fatal: quota exceeded\n")
            asyncio.get_running_loop().call_later(0.02, self.process.exit, 3)

    CrashingAgent(process)
    session = make_session(process)

    with pytest.raises(ProcessError) as exc_info:
        await session.run("hi")

    assert exc_info.value.returncode == 3
    assert exc_info.value.signal is None
    assert "quota exceeded" in exc_info.value.stderr_tail
    assert "quota exceeded" in str(exc_info.value)
    assert session.outcome is SessionState.FAILED
    assert process.signals == []


@pytest.mark.asyncio
async def test_spawn_failure_is_a_process_error() -> None:
    async def _spawn() -> FakeProcess:
        raise FileNotFoundError("no such file: fake-agent")

    session = make_session(FakeProcess(), spawn=_spawn)

    with pytest.raises(ProcessError, match="failed to start fake-agent"):
        await session.run("hi")
    assert session.state is SessionState.CLEANED


@pytest.mark.asyncio
async def test_missing_session_id_is_a_protocol_error() -> None:
    process = FakeProcess()
    ScriptedAgent(process, session_id=None)
    session = make_session(process)

    with pytest.raises(ProtocolError, match="sessionId"):
        await session.run("hi")


@pytest.mark.asyncio
async def test_error_response_is_a_protocol_error() -> None:
    process = FakeProcess()

    class RejectingAgent(ScriptedAgent):
        def receive(self, message: dict[str, Any]) -> None:
            self.received.append(message)
            if message.get("method") == "initialize":
                self.emit({"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32000, "message": "auth required"}})

    RejectingAgent(process)
    session = make_session(process)

    with pytest.raises(ProtocolError, match="auth required"):
        await session.run("hi")


@pytest.mark.asyncio
async def test_non_json_lines_are_skipped() -> None:
    process = FakeProcess()

    class NoisyAgent(ScriptedAgent):
        def on_prompt(self, message: dict[str, Any]) -> None:
            self.process.stdout.feed_data(b"Loaded cached credentials.\n")
            super().on_prompt(message)

    NoisyAgent(process, chunks=("ok",))
    session = make_session(process)

    assert await session.run("hi") == "ok"


@pytest.mark.parametrize(
    ("strategy", "expected"),
    [
        ("allow_once", {"outcome": "selected", "optionId": "yes"}),
        ("reject_once", {"outcome": "selected", "optionId": "no"}),
        ("cancelled", {"outcome": "cancelled"}),
    ],
)
@pytest.mark.asyncio
async def test_permission_requests_follow_the_strategy(strategy: str, expected: dict[str, str]) -> None:
    process = FakeProcess()

    class AskingAgent(ScriptedAgent):
        def on_prompt(self, message: dict[str, Any]) -> None:
            self.emit({
                "jsonrpc": "2.0",
                "id": 99,
                "method": "session/request_permission",
                "params": {
                    "sessionId": "sess-1",
                    "options": [
                        {"optionId": "no", "kind": "reject_once", "name": "Reject"},
                        {"optionId": "yes", "kind": "allow_once", "name": "Allow"},
                    ],
                },
            })

        def receive(self, message: dict[str, Any]) -> None:
            super().receive(message)
            if message.get("id") == 99 and "method" not in message:
                self.reply(self.prompt_id, {"stopReason": "end_turn"})

    agent = AskingAgent(process)
    session = make_session(process, permission_strategy=strategy)

    await session.run("edit a file")

    answer = next(message for message in agent.received if message.get("id") == 99)
    assert answer["result"] == {"outcome": expected}


@pytest.mark.asyncio
async def test_file_requests_are_no_ops_and_unknown_methods_are_rejected() -> None:
    process = FakeProcess()

    class FileAgent(ScriptedAgent):
        def on_prompt(self, message: dict[str, Any]) -> None:
            self.emit({"jsonrpc": "2.0", "id": 10, "method": "fs/read_text_file", "params": {"path": "/a"}})
            self.emit({"jsonrpc": "2.0", "id": 11, "method": "fs/write_text_file", "params": {"path": "/a"}})
            self.emit({"jsonrpc": "2.0", "id": 12, "method": "terminal/create", "params": {}})

        def receive(self, message: dict[str, Any]) -> None:
            super().receive(message)
            if message.get("id") == 12 and "method" not in message:
                self.reply(self.prompt_id, {"stopReason": "end_turn"})

    agent = FileAgent(process)
    session = make_session(process)

    await session.run("hi")

    answers = {message["id"]: message for message in agent.received if "method" not in message}
    assert answers[10]["result"] == {"content": ""}
    assert answers[11]["result"] is None
    assert answers[12]["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_session_runs_only_once() -> None:
    process = FakeProcess()
    ScriptedAgent(process)
    session = make_session(process)
    await session.run("hi")

    with pytest.raises(RuntimeError):
        await session.run("again")


def test_stderr_tail_keeps_the_newest_characters() -> None:
    tail = StderrTail(5)
    tail.append("abc")
    tail.append("defgh")

    assert tail.text == "defgh"
    assert len(tail) == 5

    disabled = StderrTail(0)
    disabled.append("anything")
    assert disabled.text == ""
