"""
Feedback session broker.

Every ``collect_feedback`` call becomes one session:

    allocate port -> launch window process -> wait for its bridge ->
    POST the prompt -> wait for the human -> teardown

Each session owns exactly one child process and one private localhost port.
The session's outcome is a single-assignment slot: the bridge response, the
child's exit observer, the optional response-timeout watchdog and the shutdown
sweep may all try to resolve it, and only the first one counts.

Teardown (registry removal + terminating the child) runs exactly once per
session, whichever path ends it.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import http.client
import json
import logging
import os
import random
import socket
import threading
import urllib.error
import urllib.request
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Collection, Dict, List, Optional, Sequence, Union

from mcp.types import ImageContent, TextContent
from pydantic import ValidationError

from feedback_bridge import (
    FEEDBACK_PATH,
    HOST_ENV_VAR,
    PORT_ENV_VAR,
    READY_MARKER,
    DEFAULT_PROMPT,
    DEFAULT_TITLE,
    FeedbackDecision,
    FeedbackRequest,
)
from feedback_config import BrokerConfig
from time_info import TIME_FORMATS, UnknownTimezone, format_time_info, resolve_timezone

logger = logging.getLogger(__name__)

FeedbackContent = List[Union[TextContent, ImageContent]]


class SessionState(str, Enum):
    LAUNCHING = "launching"
    AWAITING_RESPONSE = "awaiting_response"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ── Errors ─────────────────────────────────────────────────────────────────


class FeedbackBrokerError(Exception):
    """Base class for every failure reported back to the tool caller."""

    state = SessionState.FAILED


class ResourceExhausted(FeedbackBrokerError):
    """No free port could be found for a new session."""


class ProcessLaunchFailed(FeedbackBrokerError):
    """The feedback window process could not be started."""


class BridgeUnreachable(FeedbackBrokerError):
    """The window never answered on its port, or dropped the exchange."""


class ProcessExited(FeedbackBrokerError):
    """The window process exited before answering."""


class FeedbackError(FeedbackBrokerError):
    """The human declined: cancelled, closed the window, or the window reported an error."""

    state = SessionState.CANCELLED


class ImageReadFailed(FeedbackBrokerError):
    """An attached image could not be read."""


class InternalProtocolError(FeedbackBrokerError):
    """The window sent a response the broker cannot interpret."""


class FeedbackTimeout(FeedbackBrokerError):
    """The configured broker-side response timeout elapsed."""


class InvalidFeedbackRequest(FeedbackBrokerError):
    """The tool was called with an unknown time format or timezone."""


# ── Sessions ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    def url(self, path: str = "") -> str:
        return f"http://{self.host}:{self.port}{path}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class SessionOutcome:
    state: SessionState
    decision: Optional[FeedbackDecision] = None
    error: Optional[FeedbackBrokerError] = None

    @classmethod
    def failed(cls, error: FeedbackBrokerError) -> "SessionOutcome":
        return cls(state=error.state, error=error)


class PendingResult:
    """Single-assignment result slot bound to the running event loop.

    The first ``resolve`` wins; later calls return False and change nothing.
    """

    def __init__(self):
        self._loop = asyncio.get_running_loop()
        self._future: asyncio.Future = self._loop.create_future()

    def done(self) -> bool:
        return self._future.done()

    def resolve(self, value: Any) -> bool:
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    def peek(self) -> Any:
        return self._future.result() if self._future.done() else None

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        """Run ``callback`` on the owning loop; safe from any thread."""
        if self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # loop closed after the check
            pass

    async def wait(self) -> Any:
        return await asyncio.shield(self._future)


@dataclass(eq=False)
class ProcessHandle:
    """Sole owner of one spawned feedback window process."""

    process: asyncio.subprocess.Process
    _terminated: bool = field(default=False, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def terminated(self) -> bool:
        return self._terminated

    def terminate(self) -> bool:
        """Send SIGTERM once. Returns False if the process already exited or was signalled."""
        with self._lock:
            if self._terminated or self.process.returncode is not None:
                return False
            self._terminated = True
        try:
            self.process.terminate()
        except ProcessLookupError:
            return False
        return True

    def kill(self) -> None:
        if self.process.returncode is not None:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            pass


@dataclass(eq=False)
class Session:
    endpoint: Endpoint
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.LAUNCHING
    process: Optional[ProcessHandle] = None
    pending: PendingResult = field(default_factory=PendingResult)
    tasks: List["asyncio.Task[Any]"] = field(default_factory=list, repr=False)

    def settle(self, outcome: SessionOutcome) -> bool:
        if not self.pending.resolve(outcome):
            return False
        self.state = outcome.state
        if outcome.error is not None:
            logger.info("Session %s %s: %s", self.id, outcome.state.value, outcome.error)
        else:
            logger.info("Session %s %s", self.id, outcome.state.value)
        return True

    def settle_threadsafe(self, outcome: SessionOutcome) -> None:
        self.pending.call_soon(self.settle, outcome)


# ── Registry ───────────────────────────────────────────────────────────────


class SessionRegistry:
    """The broker's table of live sessions, keyed by session id."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def open_session(self, allocator: "ChannelAllocator") -> Session:
        """Allocate an endpoint and register a new session in one atomic step."""
        with self._lock:
            in_use = {s.endpoint.port for s in self._sessions.values()}
            endpoint = allocator.allocate(in_use)
            session = Session(endpoint=endpoint)
            self._sessions[session.id] = session
        return session

    def remove(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def drain(self) -> List[Session]:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        return sessions

    def sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions


# ── Channel allocation ─────────────────────────────────────────────────────


def port_is_free(host: str, port: int) -> bool:
    """Return True if nothing on this machine is bound to ``host:port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class ChannelAllocator:
    """Draws random ports from a bounded range, retrying on collisions."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port_min: int = 49152,
        port_max: int = 65535,
        max_attempts: int = 20,
        rng: Optional[random.Random] = None,
        probe: Callable[[str, int], bool] = port_is_free,
    ):
        if port_min > port_max:
            raise ValueError(f"Empty port range {port_min}-{port_max}")
        self.host = host
        self.port_min = port_min
        self.port_max = port_max
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()
        self._probe = probe

    @classmethod
    def from_config(cls, config: BrokerConfig) -> "ChannelAllocator":
        return cls(
            host=config.host,
            port_min=config.port_min,
            port_max=config.port_max,
            max_attempts=config.port_attempts,
        )

    def allocate(self, in_use: Collection[int] = ()) -> Endpoint:
        for _ in range(self.max_attempts):
            port = self._rng.randint(self.port_min, self.port_max)
            if port in in_use:
                continue
            if not self._probe(self.host, port):
                logger.debug("Port %s is bound by another process, drawing again", port)
                continue
            return Endpoint(self.host, port)
        raise ResourceExhausted(
            f"No free port available after {self.max_attempts} attempts "
            f"in range {self.port_min}-{self.port_max}"
        )


# ── Process supervision ────────────────────────────────────────────────────


class ProcessSupervisor:
    """Launches, watches and terminates feedback window processes."""

    def __init__(
        self,
        command: Sequence[str],
        ready_handshake: bool = True,
        ready_timeout: float = 15.0,
        launch_grace: float = 1.0,
        exit_settle: float = 0.5,
        terminate_grace: float = 2.0,
    ):
        self.command = list(command)
        self.ready_handshake = ready_handshake
        self.ready_timeout = ready_timeout
        self.launch_grace = launch_grace
        self.exit_settle = exit_settle
        self.terminate_grace = terminate_grace

    @classmethod
    def from_config(cls, config: BrokerConfig) -> "ProcessSupervisor":
        return cls(
            command=config.app_command,
            ready_handshake=config.ready_handshake,
            ready_timeout=config.ready_timeout,
            launch_grace=config.launch_grace,
            exit_settle=config.exit_settle,
            terminate_grace=config.terminate_grace,
        )

    def child_environment(self, endpoint: Endpoint) -> Dict[str, str]:
        env = dict(os.environ)
        env[PORT_ENV_VAR] = str(endpoint.port)
        env[HOST_ENV_VAR] = endpoint.host
        env["PYTHONUNBUFFERED"] = "1"
        return env

    async def launch(self, session: Session) -> ProcessHandle:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                env=self.child_environment(session.endpoint),
            )
        except OSError as e:
            error = ProcessLaunchFailed(f"Failed to start feedback window ({self.command[0]}): {e}")
            session.settle(SessionOutcome.failed(error))
            raise error from e

        handle = ProcessHandle(process)
        session.process = handle
        session.tasks.append(asyncio.create_task(self._watch_exit(session, handle)))
        logger.info("Session %s launched feedback window pid=%s on %s", session.id, handle.pid, session.endpoint)
        return handle

    async def _watch_exit(self, session: Session, handle: ProcessHandle) -> None:
        returncode = await handle.process.wait()
        logger.info("Feedback window pid=%s exited with code %s", handle.pid, returncode)
        if session.pending.done():
            return
        # A window that answered and quit may exit before its response is read.
        try:
            await asyncio.wait_for(session.pending.wait(), self.exit_settle)
        except asyncio.TimeoutError:
            session.settle(SessionOutcome.failed(
                ProcessExited(f"Feedback window exited with code {returncode} before responding")
            ))

    async def wait_until_ready(self, session: Session) -> None:
        handle = session.process
        if handle is None:
            raise BridgeUnreachable("No feedback window process for this session")
        if not self.ready_handshake:
            session.tasks.append(asyncio.create_task(self._drain_output(handle)))
            await asyncio.sleep(self.launch_grace)
            return
        try:
            await asyncio.wait_for(self._read_ready_marker(handle), self.ready_timeout)
        except asyncio.TimeoutError:
            raise BridgeUnreachable(
                f"Feedback window did not start listening on {session.endpoint} "
                f"within {self.ready_timeout:g}s"
            ) from None
        session.tasks.append(asyncio.create_task(self._drain_output(handle)))

    async def _read_ready_marker(self, handle: ProcessHandle) -> None:
        stdout = handle.process.stdout
        while True:
            line = await stdout.readline()
            if not line:
                raise BridgeUnreachable("Feedback window exited before its bridge was listening")
            text = line.decode("utf-8", errors="replace").strip()
            if text.startswith(READY_MARKER):
                return
            logger.debug("feedback window pid=%s: %s", handle.pid, text)

    async def _drain_output(self, handle: ProcessHandle) -> None:
        stdout = handle.process.stdout
        while True:
            line = await stdout.readline()
            if not line:
                return
            logger.debug("feedback window pid=%s: %s", handle.pid, line.decode("utf-8", errors="replace").rstrip())

    def terminate(self, handle: ProcessHandle) -> bool:
        sent = handle.terminate()
        if sent:
            logger.info("Terminated feedback window pid=%s", handle.pid)
        return sent

    async def reap(self, handle: ProcessHandle) -> None:
        if handle.returncode is not None:
            return
        try:
            await asyncio.wait_for(handle.process.wait(), self.terminate_grace)
        except asyncio.TimeoutError:
            logger.warning("Feedback window pid=%s ignored SIGTERM, killing it", handle.pid)
            handle.kill()
            await handle.process.wait()


# ── Bridge client ──────────────────────────────────────────────────────────


def parse_bridge_response(status: int, body: bytes) -> FeedbackDecision:
    """Interpret one bridge response; raises FeedbackError or InternalProtocolError."""
    text = body.decode("utf-8", errors="replace")
    if status != 200:
        reason = None
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict) and payload.get("error"):
            reason = str(payload["error"])
        raise FeedbackError(reason or f"HTTP error {status}: {text}")

    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        raise InternalProtocolError("Invalid response from feedback window") from None
    if not isinstance(payload, dict) or "feedback" not in payload:
        raise InternalProtocolError("Response from feedback window has no feedback")

    feedback = payload["feedback"]
    try:
        if isinstance(feedback, str):
            decision = FeedbackDecision(text=feedback)
        else:
            decision = FeedbackDecision.model_validate(feedback)
    except ValidationError as e:
        raise InternalProtocolError(f"Malformed feedback from feedback window: {e.errors()[0]['msg']}") from None

    if not decision.text.strip() and not decision.auto_submitted:
        raise InternalProtocolError("Feedback window returned an empty decision")
    return decision


class BridgeClient:
    """Broker side of the bridge: one POST, one answer, never retried."""

    def __init__(self):
        # Localhost traffic must not go through HTTP(S)_PROXY.
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def exchange(self, endpoint: Endpoint, request: FeedbackRequest) -> FeedbackDecision:
        data = request.model_dump_json().encode("utf-8")
        req = urllib.request.Request(
            endpoint.url(FEEDBACK_PATH),
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with self._opener.open(req) as response:
                status, body = response.status, response.read()
        except urllib.error.HTTPError as e:
            status, body = e.code, e.read()
        except urllib.error.URLError as e:
            raise BridgeUnreachable(f"Feedback window at {endpoint} is unreachable: {e.reason}") from e
        except (OSError, http.client.HTTPException) as e:
            raise BridgeUnreachable(f"Feedback window at {endpoint} dropped the feedback exchange: {e}") from e
        return parse_bridge_response(status, body)

    def deliver(self, session: Session, request: FeedbackRequest) -> threading.Thread:
        """Start the exchange on a thread of its own; the session is settled from that thread.

        The thread blocks for as long as the human takes, so it never comes from
        the loop's shared executor.
        """
        thread = threading.Thread(
            target=self._exchange_and_settle,
            args=(session, request),
            name=f"feedback-exchange-{session.id[:8]}",
            daemon=True,
        )
        thread.start()
        return thread

    def _exchange_and_settle(self, session: Session, request: FeedbackRequest) -> None:
        try:
            decision = self.exchange(session.endpoint, request)
        except FeedbackBrokerError as e:
            outcome = SessionOutcome.failed(e)
        except Exception as e:
            logger.exception("Unexpected failure in feedback exchange for session %s", session.id)
            outcome = SessionOutcome.failed(InternalProtocolError(f"Unexpected bridge failure: {e}"))
        else:
            outcome = SessionOutcome(SessionState.COMPLETED, decision=decision)
        session.settle_threadsafe(outcome)


# ── Broker ─────────────────────────────────────────────────────────────────


class FeedbackBroker:
    """Runs collect_feedback sessions and guarantees their teardown."""

    def __init__(
        self,
        config: Optional[BrokerConfig] = None,
        registry: Optional[SessionRegistry] = None,
        allocator: Optional[ChannelAllocator] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        bridge: Optional[BridgeClient] = None,
    ):
        self.config = config or BrokerConfig()
        self.registry = registry or SessionRegistry()
        self.allocator = allocator or ChannelAllocator.from_config(self.config)
        self.supervisor = supervisor or ProcessSupervisor.from_config(self.config)
        self.bridge = bridge or BridgeClient()

    @contextlib.asynccontextmanager
    async def session(self):
        session = self.registry.open_session(self.allocator)
        logger.info("Session %s allocated %s", session.id, session.endpoint)
        try:
            yield session
        finally:
            await self._teardown(session)

    async def _teardown(self, session: Session) -> None:
        # Whoever removes the entry owns the process; a shutdown sweep may have got here first.
        owned = self.registry.remove(session.id) is not None
        if owned and session.process is not None:
            self.supervisor.terminate(session.process)
        if not session.pending.done():
            session.settle(SessionOutcome.failed(FeedbackError("Feedback session was cancelled")))
        for task in session.tasks:
            task.cancel()
        if session.process is not None:
            await self.supervisor.reap(session.process)
        logger.debug("Session %s torn down", session.id)

    async def collect_feedback(
        self,
        prompt: str = DEFAULT_PROMPT,
        title: str = DEFAULT_TITLE,
        time_format: str = "full",
        timezone: Optional[str] = None,
    ) -> FeedbackContent:
        if time_format not in TIME_FORMATS:
            raise InvalidFeedbackRequest(
                f"Unknown time format: {time_format} (expected one of {', '.join(TIME_FORMATS)})"
            )
        try:
            zone = resolve_timezone(timezone)
        except UnknownTimezone as e:
            raise InvalidFeedbackRequest(str(e)) from e

        request = FeedbackRequest(prompt=prompt, title=title, time_format=time_format, timezone=timezone)

        async with self.session() as session:
            await self.supervisor.launch(session)
            await self.supervisor.wait_until_ready(session)
            if not session.pending.done():
                session.state = SessionState.AWAITING_RESPONSE
                self.bridge.deliver(session, request)
            outcome: SessionOutcome = await self._await_outcome(session)

        if outcome.error is not None:
            raise outcome.error
        return self.render(outcome.decision, time_format, zone)

    async def _await_outcome(self, session: Session) -> SessionOutcome:
        timeout = self.config.response_timeout
        if timeout is None:
            return await session.pending.wait()
        try:
            return await asyncio.wait_for(session.pending.wait(), timeout)
        except asyncio.TimeoutError:
            session.settle(SessionOutcome.failed(
                FeedbackTimeout(f"No feedback received within {timeout:g}s")
            ))
            return session.pending.peek()

    def render(self, decision: FeedbackDecision, time_format: str = "full", zone=None) -> FeedbackContent:
        text = decision.text
        if decision.auto_submitted and not text.strip():
            text = self.config.inactivity_text

        content: FeedbackContent = [TextContent(type="text", text=text)]
        if decision.has_image:
            try:
                content.append(self.load_image(decision))
            except ImageReadFailed as e:
                logger.warning("Returning feedback without its image: %s", e)
                content.append(TextContent(type="text", text=f"[Image could not be loaded: {e}]"))
        content.append(TextContent(type="text", text=format_time_info(time_format, zone)))
        return content

    def load_image(self, decision: FeedbackDecision) -> ImageContent:
        if not decision.image_path:
            raise ImageReadFailed("no image path was provided")
        try:
            with open(decision.image_path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise ImageReadFailed(f"{decision.image_path}: {e.strerror or e}") from e
        return ImageContent(
            type="image",
            data=base64.b64encode(data).decode("ascii"),
            mimeType=decision.image_type or self.config.default_image_type,
        )

    def shutdown(self) -> int:
        """Terminate every live session's window. Called from the atexit hook, possibly after the loop has closed."""
        sessions = self.registry.drain()
        for session in sessions:
            if session.process is not None:
                self.supervisor.terminate(session.process)
            if not session.pending.done():
                session.settle_threadsafe(SessionOutcome.failed(
                    FeedbackError("Feedback broker is shutting down")
                ))
        if sessions:
            logger.info("Shutdown swept %d feedback session(s)", len(sessions))
        return len(sessions)

    def active_sessions(self) -> List[Session]:
        return self.registry.sessions()
