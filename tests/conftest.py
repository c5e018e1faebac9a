from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest

from feedback_config import BrokerConfig
from session_broker import FeedbackBroker, SessionState

ROOT = Path(__file__).resolve().parent.parent
FAKE_APP = Path(__file__).resolve().parent / "fake_feedback_app.py"


@pytest.fixture
def make_broker(monkeypatch):
    """Build a broker whose feedback window is the scripted fake app."""
    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv("PYTHONPATH", str(ROOT) if not existing else f"{ROOT}{os.pathsep}{existing}")

    def _make(behavior: str = "echo", **overrides) -> FeedbackBroker:
        monkeypatch.setenv("FAKE_FEEDBACK_BEHAVIOR", behavior)
        settings = {
            "app_command": [sys.executable, str(FAKE_APP)],
            "ready_timeout": 15.0,
            "terminate_grace": 2.0,
        }
        settings.update(overrides)
        return FeedbackBroker(BrokerConfig(**settings))

    return _make


async def _wait_for_sessions(broker: FeedbackBroker, count: int,
                            state: SessionState = SessionState.AWAITING_RESPONSE,
                            timeout: float = 15.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        sessions = broker.active_sessions()
        if len(sessions) == count and all(s.state == state for s in sessions):
            return
        await asyncio.sleep(0.05)
    raise AssertionError(f"expected {count} sessions in state {state.value}, got {broker.active_sessions()}")


@pytest.fixture
def wait_for_sessions():
    return _wait_for_sessions
