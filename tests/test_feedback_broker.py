from __future__ import annotations

import asyncio
import base64
from concurrent.futures import ThreadPoolExecutor

import pytest
from mcp.types import ImageContent, TextContent

from feedback_bridge import FeedbackDecision
from feedback_config import BrokerConfig
from session_broker import (
    BridgeUnreachable,
    ChannelAllocator,
    FeedbackBroker,
    FeedbackBrokerError,
    FeedbackError,
    FeedbackTimeout,
    InvalidFeedbackRequest,
    ProcessLaunchFailed,
    ResourceExhausted,
    SessionState,
)


def _texts(content) -> list[str]:
    return [item.text for item in content if isinstance(item, TextContent)]


@pytest.mark.asyncio
async def test_collects_text_and_appends_time_info(make_broker) -> None:
    broker = make_broker("echo")

    content = await broker.collect_feedback(prompt="Review this PR", time_format="unix", timezone="UTC")

    assert len(content) == 2
    assert content[0].text == "echo: Review this PR"
    lines = content[-1].text.splitlines()
    assert lines[0] == "timezone: UTC"
    assert lines[1].startswith("unix: ")
    assert lines[2].startswith("milliseconds: ")
    assert len(lines) == 3
    assert int(lines[2].split(": ")[1]) // 1000 == int(lines[1].split(": ")[1])
    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_full_time_info_block(make_broker) -> None:
    broker = make_broker("echo")

    content = await broker.collect_feedback(prompt="Deploy?", timezone="Europe/Berlin")

    keys = [line.split(": ", 1)[0] for line in content[-1].text.splitlines()]
    assert keys == ["timezone", "date", "time", "iso", "unix"]


@pytest.mark.asyncio
async def test_concurrent_sessions_do_not_cross_talk(make_broker) -> None:
    broker = make_broker("echo")
    prompts = [f"question {i}" for i in range(5)]

    results = await asyncio.gather(*(broker.collect_feedback(prompt=p) for p in prompts))

    assert [content[0].text for content in results] == [f"echo: {p}" for p in prompts]
    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_attached_image_is_base64_encoded(make_broker, tmp_path, monkeypatch) -> None:
    image = tmp_path / "shot.png"
    image.write_bytes(b"\x89PNG\r\n\x1a\nfake")
    monkeypatch.setenv("FAKE_FEEDBACK_IMAGE_PATH", str(image))
    broker = make_broker("image")

    content = await broker.collect_feedback(prompt="What do you see?")

    assert [type(item) for item in content] == [TextContent, ImageContent, TextContent]
    assert content[1].mimeType == "image/png"
    assert base64.b64decode(content[1].data) == image.read_bytes()


@pytest.mark.asyncio
async def test_unreadable_image_degrades_to_a_note(make_broker, tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_FEEDBACK_IMAGE_PATH", str(tmp_path / "gone.png"))
    broker = make_broker("image")

    content = await broker.collect_feedback(prompt="What do you see?")

    assert not any(isinstance(item, ImageContent) for item in content)
    texts = _texts(content)
    assert texts[0] == "echo: What do you see?"
    assert texts[1].startswith("[Image could not be loaded:")
    assert texts[2].startswith("timezone: ")


@pytest.mark.asyncio
async def test_empty_auto_submit_uses_the_inactivity_text(make_broker) -> None:
    broker = make_broker("auto_empty", inactivity_text="INACTIVE: nobody answered")

    content = await broker.collect_feedback(prompt="Still there?")

    assert content[0].text == "INACTIVE: nobody answered"


@pytest.mark.asyncio
async def test_cancel_surfaces_as_feedback_error(make_broker) -> None:
    broker = make_broker("cancel")

    with pytest.raises(FeedbackError, match="CANCELLED: Operation cancelled by user."):
        await broker.collect_feedback()

    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_child_crash_before_answering_fails_without_hanging(make_broker) -> None:
    broker = make_broker("crash_on_request")

    with pytest.raises(FeedbackBrokerError) as excinfo:
        await asyncio.wait_for(broker.collect_feedback(), 20)

    assert excinfo.value.state is SessionState.FAILED
    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_child_exit_before_ready_is_unreachable(make_broker) -> None:
    broker = make_broker("crash_before_ready")

    with pytest.raises(BridgeUnreachable):
        await asyncio.wait_for(broker.collect_feedback(), 20)

    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_child_that_never_listens_is_unreachable(make_broker) -> None:
    broker = make_broker("never_ready", ready_timeout=1.0)

    with pytest.raises(BridgeUnreachable, match="did not start listening"):
        await broker.collect_feedback()

    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_fixed_launch_delay_without_handshake(make_broker) -> None:
    broker = make_broker("echo", ready_handshake=False, launch_grace=2.0)

    content = await broker.collect_feedback(prompt="no handshake")

    assert content[0].text == "echo: no handshake"


@pytest.mark.asyncio
async def test_missing_binary_is_a_launch_failure(make_broker) -> None:
    broker = make_broker("echo", app_command=["/nonexistent/feedback-window"])

    with pytest.raises(ProcessLaunchFailed, match="Failed to start feedback window"):
        await broker.collect_feedback()

    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_exhausted_ports_spawn_nothing(make_broker) -> None:
    broker = make_broker("echo")
    broker.allocator = ChannelAllocator(max_attempts=3, probe=lambda host, port: False)
    launches = []
    original_launch = broker.supervisor.launch

    async def counting_launch(session):
        launches.append(session)
        return await original_launch(session)

    broker.supervisor.launch = counting_launch

    with pytest.raises(ResourceExhausted):
        await broker.collect_feedback()

    assert launches == []
    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_invalid_timezone_is_rejected_before_launch(make_broker) -> None:
    broker = make_broker("echo")

    with pytest.raises(InvalidFeedbackRequest, match="Unknown timezone"):
        await broker.collect_feedback(timezone="Nowhere/Special")

    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_response_timeout_watchdog(make_broker) -> None:
    broker = make_broker("hang", response_timeout=1.0)

    with pytest.raises(FeedbackTimeout):
        await asyncio.wait_for(broker.collect_feedback(), 20)

    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_cancelling_the_caller_tears_the_session_down(make_broker, wait_for_sessions) -> None:
    broker = make_broker("hang")
    task = asyncio.create_task(broker.collect_feedback(prompt="never answered"))
    await wait_for_sessions(broker, 1)
    session = broker.active_sessions()[0]

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(broker.registry) == 0
    assert session.process.terminated
    assert session.process.returncode is not None
    assert session.state is SessionState.CANCELLED


@pytest.mark.asyncio
async def test_shutdown_terminates_every_live_session(make_broker, wait_for_sessions) -> None:
    broker = make_broker("hang")
    terminated = []
    original_terminate = broker.supervisor.terminate

    def counting_terminate(handle):
        terminated.append(handle.pid)
        return original_terminate(handle)

    broker.supervisor.terminate = counting_terminate
    tasks = [asyncio.create_task(broker.collect_feedback(prompt=f"q{i}")) for i in range(3)]
    await wait_for_sessions(broker, 3)

    swept = broker.shutdown()
    results = await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), 20)

    assert swept == 3
    assert len(terminated) == 3
    assert len(set(terminated)) == 3
    assert len(broker.registry) == 0
    assert all(isinstance(r, FeedbackError) for r in results)
    assert broker.shutdown() == 0


@pytest.mark.asyncio
async def test_double_teardown_terminates_once(make_broker, wait_for_sessions) -> None:
    broker = make_broker("hang")
    terminated = []
    original_terminate = broker.supervisor.terminate
    broker.supervisor.terminate = lambda handle: terminated.append(handle) or original_terminate(handle)

    task = asyncio.create_task(broker.collect_feedback())
    await wait_for_sessions(broker, 1)
    session = broker.active_sessions()[0]

    await broker._teardown(session)
    await broker._teardown(session)
    with pytest.raises(FeedbackError):
        await asyncio.wait_for(task, 20)

    assert len(terminated) == 1
    assert session.process.terminate() is False


@pytest.mark.asyncio
async def test_waiting_sessions_do_not_starve_new_ones(make_broker, wait_for_sessions) -> None:
    loop = asyncio.get_running_loop()
    loop.set_default_executor(ThreadPoolExecutor(max_workers=1))
    broker = make_broker("hang")
    hanging = [asyncio.create_task(broker.collect_feedback(prompt=f"q{i}")) for i in range(2)]
    await wait_for_sessions(broker, 2)

    with_answer = make_broker("echo")
    content = await asyncio.wait_for(with_answer.collect_feedback(prompt="independent"), 20)

    assert content[0].text == "echo: independent"
    for task in hanging:
        task.cancel()
    await asyncio.gather(*hanging, return_exceptions=True)
    assert len(broker.registry) == 0


@pytest.mark.asyncio
async def test_answer_wins_over_the_exit_that_follows_it(make_broker) -> None:
    broker = make_broker("answer_and_exit")
    opened = []
    original_open = broker.registry.open_session

    def recording_open(allocator):
        session = original_open(allocator)
        opened.append(session)
        return session

    broker.registry.open_session = recording_open

    content = await asyncio.wait_for(broker.collect_feedback(prompt="quick one"), 20)

    assert content[0].text == "echo: quick one"
    assert opened[0].state is SessionState.COMPLETED
    assert opened[0].pending.peek().error is None


@pytest.mark.asyncio
async def test_output_is_drained_without_handshake(make_broker) -> None:
    broker = make_broker("chatty", ready_handshake=False, launch_grace=2.0)

    content = await asyncio.wait_for(broker.collect_feedback(prompt="lots of logs"), 20)

    assert content[0].text == "echo: lots of logs"


def test_missing_image_type_uses_the_configured_default(tmp_path) -> None:
    image = tmp_path / "shot.webp"
    image.write_bytes(b"RIFF\x00\x00\x00\x00WEBP")
    broker = FeedbackBroker(BrokerConfig(default_image_type="image/webp"))

    content = broker.load_image(FeedbackDecision(text="see", has_image=True, image_path=str(image)))

    assert content.mimeType == "image/webp"
    assert base64.b64decode(content.data) == image.read_bytes()
