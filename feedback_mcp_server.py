#!/usr/bin/env python3
"""
Feedback Collector MCP Server

This server provides a tool for collecting free-form feedback from a human
through a desktop feedback window. Each call launches its own window process,
waits for the human's answer (text and optionally one image) and returns it to
the LLM together with the current time.
"""

import atexit
import logging
import os
import platform
import signal
import sys
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import Field

# Set required environment variable for FastMCP 2.8.1+
os.environ.setdefault('FASTMCP_LOG_LEVEL', 'INFO')

# ensure stdout uses utf-8 to avoid encoding errors on Windows consoles
try:
    sys.stdout.reconfigure(encoding='utf-8', errors='ignore')
    sys.stderr.reconfigure(encoding='utf-8', errors='ignore')
except Exception:
    pass

from fastmcp import FastMCP, Context
from fastmcp.exceptions import ToolError
from mcp.types import ImageContent, TextContent

from feedback_bridge import DEFAULT_PROMPT, DEFAULT_TITLE
from feedback_config import BrokerConfig, configure_logging
from session_broker import FeedbackBroker, FeedbackBrokerError

logger = logging.getLogger(__name__)

# Platform detection
CURRENT_PLATFORM = platform.system().lower()
IS_WINDOWS = CURRENT_PLATFORM == 'windows'
IS_MACOS = CURRENT_PLATFORM == 'darwin'
IS_LINUX = CURRENT_PLATFORM == 'linux'

# Initialize the MCP server
mcp = FastMCP("FeedbackCollector")

# One broker per server process; it owns the session registry
broker = FeedbackBroker(BrokerConfig.load())


def gui_available() -> bool:
    """Best-effort check that a feedback window can be shown on this machine"""
    if IS_LINUX:
        return bool(os.getenv("DISPLAY") or os.getenv("WAYLAND_DISPLAY"))
    return True


async def run_collect_feedback(
    active_broker: FeedbackBroker,
    prompt: str = DEFAULT_PROMPT,
    title: str = DEFAULT_TITLE,
    time_format: str = "full",
    timezone: Optional[str] = None,
    ctx: Optional[Context] = None,
) -> List[Union[TextContent, ImageContent]]:
    """Run one feedback session and turn every broker failure into a tool error."""
    try:
        if ctx:
            await ctx.info(f"Requesting feedback: {title}")

        content = await active_broker.collect_feedback(
            prompt=prompt,
            title=title,
            time_format=time_format,
            timezone=timezone,
        )

        if ctx:
            images = sum(1 for item in content if isinstance(item, ImageContent))
            await ctx.info(f"User provided feedback ({len(content[0].text)} characters, {images} image(s))")
        return content

    except FeedbackBrokerError as e:
        logger.warning("Feedback collection failed: %s", e)
        if ctx:
            await ctx.warning(f"Feedback collection failed: {e}")
        raise ToolError(f"Error collecting feedback: {e}") from e

    except Exception as e:
        logger.exception("Unexpected error collecting feedback")
        if ctx:
            await ctx.error(f"Error collecting feedback: {str(e)}")
        raise ToolError(f"Error collecting feedback: {e}") from e


# MCP Tools

@mcp.tool()
async def collect_feedback(
    prompt: Annotated[str, Field(description="The message to display to the user in the feedback window")] = DEFAULT_PROMPT,
    title: Annotated[str, Field(description="The title of the feedback window")] = DEFAULT_TITLE,
    time_format: Annotated[Literal["full", "iso", "date", "time", "unix"], Field(description="The format for time information")] = "full",
    timezone: Annotated[Optional[str], Field(description="The timezone to use (defaults to local)")] = None,
    ctx: Context = None
) -> Any:
    """
    Collect feedback from the user through a desktop feedback window.

    Opens a window showing the prompt and waits for the user to answer with text
    and optionally an image. The user can also approve, say the information is
    enough, or cancel. The response ends with the current time information.
    """
    return await run_collect_feedback(broker, prompt, title, time_format, timezone, ctx)


# Add a prompt to get prompting guidance for LLMs
@mcp.prompt()
async def get_feedback_guidance() -> str:
    """
    Get prompting guidance for LLMs on when and how to use the feedback tool.
    """
    return """
You have access to the `collect_feedback` tool, which opens a desktop window and waits for the user's answer.

**WHEN TO USE IT:**

1. **Checkpoints** - After finishing a step, to confirm the result before moving on
2. **Ambiguous Requirements** - When instructions could be read more than one way
3. **Sensitive Operations** - Before destructive or irreversible actions
4. **Missing Information** - When you need details only the user has
5. **Visual Questions** - When a screenshot from the user would help (they can attach one image)

**READING THE ANSWER:**
- "APPROVED: ..." means go ahead as proposed
- "ENOUGH: ..." means stop asking and continue with what you have
- "INACTIVE: ..." means the user did not answer in time; pick a safe default
- An error result starting with "CANCELLED" means the user declined; do not retry immediately
- The last block holds the current date and time in the requested format

**BEST PRACTICES:**
- Summarize what you did and ask one clear question
- Keep the prompt short enough to read at a glance
- Only one window is shown per call; batch related questions together"""


# Add a health check tool
@mcp.tool()
async def health_check() -> Dict[str, Any]:
    """Check if the Feedback Collector server is running and a feedback window can be shown."""
    try:
        available = gui_available()
        sessions = broker.active_sessions()

        return {
            "status": "healthy" if available else "degraded",
            "gui_available": available,
            "active_sessions": len(sessions),
            "sessions": [
                {"id": s.id, "endpoint": str(s.endpoint), "state": s.state.value}
                for s in sessions
            ],
            "app_command": broker.config.app_command,
            "ready_handshake": broker.config.ready_handshake,
            "response_timeout": broker.config.response_timeout,
            "server_name": "FeedbackCollector",
            "platform": CURRENT_PLATFORM,
            "platform_details": {
                "system": platform.system(),
                "release": platform.release(),
                "machine": platform.machine(),
            },
            "python_version": sys.version.split()[0],
            "tools_available": [
                "collect_feedback",
                "health_check",
                "get_feedback_guidance",
            ]
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "gui_available": False,
            "error": str(e),
            "platform": CURRENT_PLATFORM
        }


# Shutdown

def _handle_shutdown_signal(signum, frame):
    # The interrupted frame may hold the registry lock; the atexit hook sweeps
    # once the stack has unwound.
    sys.exit(0)


def install_shutdown_handlers(active_broker: Optional[FeedbackBroker] = None):
    atexit.register((active_broker or broker).shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown_signal)
    signal.signal(signal.SIGTERM, _handle_shutdown_signal)


# Main execution

def main():
    configure_logging(broker.config.log_level)

    # stdout carries the MCP protocol, so the banner goes to stderr
    out = sys.stderr
    print("Starting Feedback Collector MCP Server...", file=out)
    print("This server lets LLMs collect feedback from a human through a desktop window.", file=out)
    print(f"Platform: {CURRENT_PLATFORM} ({platform.system()} {platform.release()})", file=out)
    print("", file=out)
    print("Available tools:", file=out)
    print("collect_feedback - Show a prompt and wait for the user's feedback", file=out)
    print("health_check - Check server status", file=out)
    print("get_feedback_guidance - Get guidance on when to ask for feedback", file=out)
    print(f"Feedback window command: {' '.join(broker.config.app_command)}", file=out)
    if broker.config.response_timeout:
        print(f"Response timeout: {broker.config.response_timeout:g}s", file=out)
    else:
        print("Response timeout: none (the broker waits for the human indefinitely)", file=out)
    print("", file=out)

    if not gui_available():
        print(" Warning: no display detected, feedback windows may fail to open", file=out)

    install_shutdown_handlers()

    print("Starting MCP server...", file=out)

    # Run the server
    mcp.run()


if __name__ == "__main__":
    main()
