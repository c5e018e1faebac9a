"""
Feedback Bridge protocol

The wire contract between the broker and a feedback window process, plus the
single-shot HTTP server the window process runs.

The broker POSTs one ``FeedbackRequest`` as JSON to ``/feedback`` on the
window's private port. The window answers exactly once: HTTP 200 with
``{"feedback": <decision>}``, or an error status with ``{"error": <reason>}``.

This module has no GUI dependencies so the broker and the tests can import it
on headless machines.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, TextIO

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

# ── Protocol constants ─────────────────────────────────────────────────────

FEEDBACK_PATH = "/feedback"
PORT_ENV_VAR = "MCP_SERVER_PORT"
HOST_ENV_VAR = "FEEDBACK_BRIDGE_HOST"
READY_MARKER = "FEEDBACK_BRIDGE_READY"

DEFAULT_PROMPT = "Please provide your feedback or describe your issue:"
DEFAULT_TITLE = "AI Feedback Collection"
DEFAULT_IMAGE_TYPE = "image/png"

# ── Wire models ────────────────────────────────────────────────────────────


class FeedbackRequest(BaseModel):
    """Prompt shipped from the broker to the feedback window."""

    prompt: str = DEFAULT_PROMPT
    title: str = DEFAULT_TITLE
    time_format: str = "full"
    timezone: Optional[str] = None


class FeedbackDecision(BaseModel):
    """The human's answer, as produced by the feedback window."""

    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    has_image: bool = Field(default=False, alias="hasImage")
    image_path: Optional[str] = Field(default=None, alias="imagePath")
    image_type: Optional[str] = Field(default=None, alias="imageType")
    auto_submitted: bool = Field(default=False, alias="autoSubmitted")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class FeedbackDeclined(Exception):
    """Raised by a decision handler when the human cancels or closes the window."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


DecisionHandler = Callable[[FeedbackRequest], FeedbackDecision]

# ── Single-shot HTTP server ────────────────────────────────────────────────


class _BridgeHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, address, bridge: "RequestBridgeServer"):
        self.bridge = bridge
        super().__init__(address, _BridgeRequestHandler)


class _BridgeRequestHandler(BaseHTTPRequestHandler):
    server: _BridgeHTTPServer

    def do_POST(self):
        if self.path != FEEDBACK_PATH:
            self._send_json(404, {"error": "Not found"})
            return

        bridge = self.server.bridge
        if not bridge.claim():
            self._send_json(409, {"error": "Feedback request already received"})
            return

        try:
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length) if length else b"{}"
            try:
                request = FeedbackRequest.model_validate_json(body)
            except ValidationError as e:
                self._send_json(400, {"error": f"Invalid feedback request: {e.errors()[0]['msg']}"})
                return

            try:
                decision = bridge.handler(request)
            except FeedbackDeclined as e:
                self._send_json(400, {"error": e.reason})
            except Exception:
                logger.exception("Error processing feedback request")
                self._send_json(500, {"error": "Internal server error"})
            else:
                self._send_json(200, {"feedback": decision.to_wire()})
        finally:
            bridge.finish()

    def do_GET(self):
        self._send_json(404, {"error": "Not found"})

    def _send_json(self, status: int, payload: Dict[str, Any]):
        data = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)
        self.wfile.flush()

    def log_message(self, format, *args):
        logger.debug("bridge %s - %s", self.address_string(), format % args)


class RequestBridgeServer:
    """Accepts exactly one feedback request on a private localhost port.

    ``handler`` runs on the request thread and blocks until the human decides.
    It returns a ``FeedbackDecision`` or raises ``FeedbackDeclined``.
    """

    def __init__(self, handler: DecisionHandler, port: int, host: str = "127.0.0.1"):
        self.handler = handler
        self.host = host
        self._requested_port = port
        self._httpd: Optional[_BridgeHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._claim_lock = threading.Lock()
        self._claimed = False
        self._done = threading.Event()

    @property
    def port(self) -> int:
        if self._httpd is None:
            return self._requested_port
        return self._httpd.server_address[1]

    def start(self) -> "RequestBridgeServer":
        self._httpd = _BridgeHTTPServer((self.host, self._requested_port), self)
        self._thread = threading.Thread(
            target=self._httpd.serve_forever,
            name=f"feedback-bridge-{self.port}",
            daemon=True,
        )
        self._thread.start()
        logger.info("Feedback bridge listening on %s:%s", self.host, self.port)
        return self

    def announce_ready(self, stream: Optional[TextIO] = None):
        """Tell the broker the bridge is listening (the readiness handshake)."""
        print(f"{READY_MARKER} {self.port}", file=stream or sys.stdout, flush=True)

    def claim(self) -> bool:
        with self._claim_lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    def finish(self):
        self._done.set()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def close(self):
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
            self._httpd = None

    def __enter__(self) -> "RequestBridgeServer":
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.close()
