"""Live feedback while a prompt runs.

RunMonitor follows the runtime's event stream for one session:
- tool parts become ``[tool] <label> <status>: <title>`` lines when tool
  updates are enabled; each call id is reported once per status
- permission requests are answered per the permission mode, and a
  rejection is reported to the peer

The monitor never fails the prompt it watches: stream and delivery errors
are logged and the prompt carries on.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .conventions import PERMISSION_DENIED_NOTICE, TOOL_TITLE_LIMIT
from .models import SessionRecord
from .runtime import RuntimeEvents
from .text import format_input_summary, truncate_text

logger = logging.getLogger(__name__)

TOOL_LABELS = {
    "bash": "bash",
    "read": "read",
    "write": "write",
    "edit": "edit",
    "patch": "patch",
    "multiedit": "edit",
    "grep": "grep",
    "glob": "glob",
    "task": "agent",
    "webfetch": "webfetch",
}

_PERMISSION_EVENTS = ("permission.asked", "permission.updated")

SendText = Callable[[str], Awaitable[None]]


def format_tool_update(part: dict[str, Any], output_limit: int) -> str:
    """Chat line for a tool part; completed calls include truncated output."""
    tool = str(part.get("tool") or "tool")
    label = TOOL_LABELS.get(tool, tool)
    state = part.get("state") if isinstance(part.get("state"), dict) else {}
    status = state.get("status") or "unknown"
    inputs = state.get("input") if isinstance(state.get("input"), dict) else {}
    title = (
        state.get("title")
        or truncate_text(format_input_summary(inputs), TOOL_TITLE_LIMIT)
        or "running"
    )
    message = f"[tool] {label} {status}: {title}"

    output = state.get("output")
    if status == "completed" and isinstance(output, str):
        output = truncate_text(output.strip(), output_limit)
        if output:
            message += f"\n{output}"
    return message


class RunMonitor:
    """Watches runtime events for one in-flight prompt."""

    def __init__(
        self,
        runtime: RuntimeEvents,
        session: SessionRecord,
        send: SendText,
        *,
        tool_updates: bool,
        output_limit: int,
        permission_mode: str,
    ) -> None:
        self._runtime = runtime
        self._session = session
        self._send = send
        self._tool_updates = tool_updates
        self._output_limit = output_limit
        self._permission_mode = permission_mode
        self._seen: dict[str, str] = {}

    async def run(self) -> None:
        """Consume events until cancelled or the stream ends."""
        try:
            async for event in self._runtime.events(self._session.directory):
                try:
                    await self.handle(event)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception(
                        "Handling %s for session %s failed",
                        event.get("type"),
                        self._session.session_id,
                    )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Event stream for session %s closed: %s", self._session.session_id, e
            )

    async def handle(self, event: dict[str, Any]) -> None:
        properties = event.get("properties")
        if not isinstance(properties, dict):
            return
        event_type = event.get("type")
        if event_type == "message.part.updated" and self._tool_updates:
            await self._on_part(properties.get("part"))
        elif event_type in _PERMISSION_EVENTS:
            await self._on_permission(properties)

    async def _on_part(self, part: Any) -> None:
        if not isinstance(part, dict) or part.get("type") != "tool":
            return
        if part.get("sessionID") != self._session.session_id:
            return
        call_id = part.get("callID")
        if not call_id:
            return
        state = part.get("state") if isinstance(part.get("state"), dict) else {}
        status = state.get("status") or "unknown"
        if self._seen.get(call_id) == status:
            return
        self._seen[call_id] = status
        await self._send(format_tool_update(part, self._output_limit))

    async def _on_permission(self, properties: dict[str, Any]) -> None:
        permission_id = properties.get("id")
        if not permission_id or properties.get("sessionID") != self._session.session_id:
            return
        response = "reject" if self._permission_mode == "deny" else "always"
        await self._runtime.respond_permission(
            self._session.session_id,
            str(permission_id),
            response,
            self._session.directory,
        )
        logger.info(
            "Answered permission %s for session %s: %s",
            permission_id,
            self._session.session_id,
            response,
        )
        if response == "reject":
            await self._send(PERMISSION_DENIED_NOTICE)
