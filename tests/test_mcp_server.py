from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
import textwrap
from pathlib import Path

import pytest
from fastmcp import Client
from fastmcp.exceptions import ToolError

import feedback_mcp_server
from feedback_config import BrokerConfig
from session_broker import ChannelAllocator, FeedbackBroker

ROOT = Path(__file__).resolve().parent.parent


class _RecordingContext:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    async def info(self, message: str) -> None:
        self.messages.append(("info", message))

    async def warning(self, message: str) -> None:
        self.messages.append(("warning", message))

    async def error(self, message: str) -> None:
        self.messages.append(("error", message))


def _exhausted_broker() -> FeedbackBroker:
    return FeedbackBroker(
        BrokerConfig(app_command=["/nonexistent/feedback-window"]),
        allocator=ChannelAllocator(max_attempts=2, probe=lambda host, port: False),
    )


@pytest.mark.asyncio
async def test_exhaustion_is_reported_as_tool_error() -> None:
    ctx = _RecordingContext()

    with pytest.raises(ToolError, match="Error collecting feedback: No free port available"):
        await feedback_mcp_server.run_collect_feedback(_exhausted_broker(), prompt="Review this PR", ctx=ctx)

    assert ctx.messages[0][0] == "info"
    assert ctx.messages[-1][0] == "warning"


@pytest.mark.asyncio
async def test_success_passes_content_through(make_broker) -> None:
    ctx = _RecordingContext()

    content = await feedback_mcp_server.run_collect_feedback(
        make_broker("echo"), prompt="Review this PR", time_format="date", ctx=ctx
    )

    assert content[0].text == "echo: Review this PR"
    assert content[-1].text.splitlines()[1].startswith("date: ")
    assert ctx.messages[-1][0] == "info"


@pytest.mark.asyncio
async def test_unexpected_errors_become_tool_errors() -> None:
    class _BrokenBroker:
        async def collect_feedback(self, **kwargs):
            raise RuntimeError("registry corrupted")

    with pytest.raises(ToolError, match="registry corrupted"):
        await feedback_mcp_server.run_collect_feedback(_BrokenBroker())


@pytest.mark.asyncio
async def test_tool_call_is_error_flagged_and_spawns_nothing(monkeypatch) -> None:
    broker = _exhausted_broker()
    launches = []

    async def fail_if_launched(session):
        launches.append(session)
        raise AssertionError("no process should be launched")

    broker.supervisor.launch = fail_if_launched
    monkeypatch.setattr(feedback_mcp_server, "broker", broker)

    async with Client(feedback_mcp_server.mcp) as client:
        result = await client.call_tool_mcp("collect_feedback", {"prompt": "Review this PR"})

    assert result.isError is True
    assert len(result.content) == 1
    assert "No free port available" in result.content[0].text
    assert launches == []


@pytest.mark.asyncio
async def test_tools_are_registered() -> None:
    async with Client(feedback_mcp_server.mcp) as client:
        tools = {tool.name: tool for tool in await client.list_tools()}

    assert {"collect_feedback", "health_check"} <= set(tools)
    properties = tools["collect_feedback"].inputSchema["properties"]
    assert set(properties) == {"prompt", "title", "time_format", "timezone"}


@pytest.mark.asyncio
async def test_health_check_reports_no_active_sessions(monkeypatch) -> None:
    monkeypatch.setattr(feedback_mcp_server, "broker", _exhausted_broker())

    async with Client(feedback_mcp_server.mcp) as client:
        result = await client.call_tool_mcp("health_check", {})

    assert result.isError is False
    report = json.loads(result.content[0].text)
    assert report["active_sessions"] == 0
    assert report["sessions"] == []


def test_signal_handler_exits_without_touching_the_registry(monkeypatch) -> None:
    swept = []
    monkeypatch.setattr(feedback_mcp_server.broker, "shutdown", lambda: swept.append(True) or 0)

    with pytest.raises(SystemExit) as excinfo:
        feedback_mcp_server._handle_shutdown_signal(signal.SIGTERM, None)

    assert excinfo.value.code == 0
    assert swept == []


def test_shutdown_sweep_is_registered_with_atexit(monkeypatch) -> None:
    registered = []
    installed = {}
    monkeypatch.setattr(feedback_mcp_server.atexit, "register", registered.append)
    monkeypatch.setattr(feedback_mcp_server.signal, "signal", lambda signum, handler: installed.update({signum: handler}))
    broker = _exhausted_broker()

    feedback_mcp_server.install_shutdown_handlers(broker)

    assert registered == [broker.shutdown]
    assert installed == {
        signal.SIGINT: feedback_mcp_server._handle_shutdown_signal,
        signal.SIGTERM: feedback_mcp_server._handle_shutdown_signal,
    }


_SIGTERM_WHILE_REGISTRY_LOCKED = textwrap.dedent(
    """
    import asyncio
    import os
    import signal

    import feedback_mcp_server
    from session_broker import ChannelAllocator

    broker = feedback_mcp_server.broker
    sweep = broker.shutdown
    broker.shutdown = lambda: print("swept", sweep(), flush=True)
    feedback_mcp_server.install_shutdown_handlers()


    def signal_while_locked(host, port):
        os.kill(os.getpid(), signal.SIGTERM)
        return True


    async def main():
        broker.registry.open_session(ChannelAllocator(probe=signal_while_locked))
        await asyncio.sleep(30)


    asyncio.run(main())
    """
)


def test_sigterm_during_registry_update_still_exits_and_sweeps(tmp_path) -> None:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(ROOT), env.get("PYTHONPATH")]))
    env["HOME"] = str(tmp_path)

    result = subprocess.run(
        [sys.executable, "-c", _SIGTERM_WHILE_REGISTRY_LOCKED],
        env=env,
        capture_output=True,
        text=True,
        timeout=20,
    )

    assert result.returncode == 0, result.stderr
    assert "swept 0" in result.stdout
