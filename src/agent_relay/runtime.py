"""Agent runtime abstraction.

Provides a Protocol for the operations the relay needs from an agent
runtime, an optional one for live events and permission replies, and two
implementations:
- MockRuntime: in-memory, scripted replies (testing)
- OpenCodeRuntime: the OpenCode HTTP server API (production)

The dispatcher always works through the AgentRuntime protocol.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from .conventions import GENERIC_FAILURE_MESSAGE

logger = logging.getLogger(__name__)


class PromptTimeout(RuntimeError):
    """The agent runtime did not answer a prompt in time."""


@dataclass
class PromptPart:
    """One part of an agent reply. Only ``text`` parts are shown to peers."""

    type: str
    text: str = ""
    ignored: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PromptPart:
        text = data.get("text")
        return cls(
            type=str(data.get("type", "")),
            text=text if isinstance(text, str) else "",
            ignored=bool(data.get("ignored", False)),
        )


@dataclass
class PromptReply:
    """A reply from the agent runtime: zero or more parts."""

    parts: list[PromptPart] = field(default_factory=list)

    @classmethod
    def from_texts(cls, *texts: str) -> PromptReply:
        return cls(parts=[PromptPart(type="text", text=t) for t in texts])

    @property
    def text(self) -> str:
        """Visible text parts joined by newlines. Other part types are skipped."""
        pieces = [p.text for p in self.parts if p.type == "text" and not p.ignored]
        return "\n".join(pieces).strip()

    @property
    def is_empty(self) -> bool:
        return not self.text


@runtime_checkable
class AgentRuntime(Protocol):
    """Protocol for agent runtime operations."""

    async def create_session(self, directory: str, title: str = "") -> str:
        """Create a session scoped to *directory*. Returns the session id."""
        ...

    async def prompt(
        self,
        session_id: str,
        text: str,
        directory: str,
        *,
        model: str = "",
        agent: str | None = None,
        system: str = "",
    ) -> PromptReply:
        """Send *text* to a session and wait for the complete reply.

        *model* (``"provider/model"``) overrides the configured model,
        *agent* selects a named agent and *system* adds instructions.
        """
        ...

    async def health(self) -> dict[str, Any]:
        """Return ``{"healthy": bool, ...}``."""
        ...


@runtime_checkable
class RuntimeEvents(Protocol):
    """Optional runtime capability: live events and permission replies."""

    def events(self, directory: str) -> AsyncIterator[dict[str, Any]]:
        """Yield runtime events for *directory* until cancelled."""
        ...

    async def respond_permission(
        self, session_id: str, permission_id: str, response: str, directory: str
    ) -> None:
        """Answer a tool permission request with ``always``/``once``/``reject``."""
        ...


class MockRuntime:
    """Scripted agent runtime for tests.

    Records every call in ``calls``. ``responder`` maps
    ``(session_id, text)`` to a PromptReply; the default echoes the prompt.
    A responder that raises simulates a hard runtime failure. Events in
    ``scripted_events`` are yielded by ``events()``, after which
    ``events_drained`` is set.
    """

    def __init__(
        self,
        responder: Callable[[str, str], PromptReply] | None = None,
    ) -> None:
        self.calls: list[dict[str, Any]] = []
        self.responder = responder or (
            lambda _sid, text: PromptReply.from_texts(f"[mock] {text}")
        )
        self.healthy = True
        self.scripted_events: list[dict[str, Any]] = []
        self.events_drained = asyncio.Event()
        self._counter = 0

    @property
    def created(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["method"] == "create_session"]

    @property
    def prompts(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["method"] == "prompt"]

    @property
    def permission_replies(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["method"] == "respond_permission"]

    async def create_session(self, directory: str, title: str = "") -> str:
        self._counter += 1
        session_id = f"session-{self._counter}"
        self.calls.append(
            {
                "method": "create_session",
                "directory": directory,
                "title": title,
                "result": session_id,
            }
        )
        return session_id

    async def prompt(
        self,
        session_id: str,
        text: str,
        directory: str,
        *,
        model: str = "",
        agent: str | None = None,
        system: str = "",
    ) -> PromptReply:
        self.calls.append(
            {
                "method": "prompt",
                "session_id": session_id,
                "text": text,
                "directory": directory,
                "model": model,
                "agent": agent,
                "system": system,
            }
        )
        return self.responder(session_id, text)

    async def health(self) -> dict[str, Any]:
        return {"healthy": self.healthy, "version": "mock"}

    async def events(self, directory: str) -> AsyncIterator[dict[str, Any]]:
        for event in self.scripted_events:
            yield event
        self.events_drained.set()
        await asyncio.Event().wait()

    async def respond_permission(
        self, session_id: str, permission_id: str, response: str, directory: str
    ) -> None:
        self.calls.append(
            {
                "method": "respond_permission",
                "session_id": session_id,
                "permission_id": permission_id,
                "response": response,
                "directory": directory,
            }
        )


class OpenCodeRuntime:
    """Agent runtime backed by an OpenCode server's HTTP API.

    Every request carries the target directory as the ``directory`` query
    parameter, which is how the server scopes sessions to a workspace.
    Ordinary calls are bounded by ``request_timeout``; prompts and the
    event stream may legitimately stay open for minutes, so they wait for
    data without a read timeout and the dispatcher bounds them instead.
    """

    def __init__(
        self,
        base_url: str,
        *,
        username: str = "",
        password: str = "",
        model: str = "",
        permission_mode: str = "allow",
        request_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        auth = httpx.BasicAuth(username, password) if username and password else None
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=auth,
            timeout=httpx.Timeout(request_timeout),
            transport=transport,
        )
        self._open_ended = httpx.Timeout(request_timeout, read=None)
        self._model = _parse_model(model)
        self._permission_mode = permission_mode

    @property
    def timeout(self) -> httpx.Timeout:
        """Timeout applied to ordinary (non-prompt) requests."""
        return self._client.timeout

    async def create_session(self, directory: str, title: str = "") -> str:
        body: dict[str, Any] = {"title": title} if title else {}
        body["permission"] = build_permission_rules(self._permission_mode)
        resp = await self._client.post(
            "/session", params={"directory": directory}, json=body
        )
        resp.raise_for_status()
        session_id = resp.json().get("id")
        if not session_id:
            raise RuntimeError("Failed to create session: no id in response")
        return str(session_id)

    async def prompt(
        self,
        session_id: str,
        text: str,
        directory: str,
        *,
        model: str = "",
        agent: str | None = None,
        system: str = "",
    ) -> PromptReply:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        model_ref = _parse_model(model) if model else self._model
        if model_ref:
            body["model"] = model_ref
        if agent:
            body["agent"] = agent
        if system:
            body["system"] = system
        resp = await self._client.post(
            f"/session/{session_id}/message",
            params={"directory": directory},
            json=body,
            timeout=self._open_ended,
        )
        resp.raise_for_status()
        data = resp.json() if resp.content else {}
        raw_parts = data.get("parts") if isinstance(data, dict) else None
        parts = [
            PromptPart.from_dict(p)
            for p in (raw_parts or [])
            if isinstance(p, dict)
        ]
        return PromptReply(parts=parts)

    async def health(self) -> dict[str, Any]:
        resp = await self._client.get("/global/health")
        resp.raise_for_status()
        data = resp.json()
        return {
            "healthy": bool(data.get("healthy")),
            "version": data.get("version", ""),
        }

    async def events(self, directory: str) -> AsyncIterator[dict[str, Any]]:
        """Follow the server-sent event stream for *directory*."""
        async with self._client.stream(
            "GET",
            "/event",
            params={"directory": directory},
            timeout=self._open_ended,
        ) as resp:
            resp.raise_for_status()
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                try:
                    event = json.loads(line[5:].strip())
                except json.JSONDecodeError:
                    logger.debug("Skipping undecodable event line: %r", line)
                    continue
                if isinstance(event, dict):
                    yield event

    async def respond_permission(
        self, session_id: str, permission_id: str, response: str, directory: str
    ) -> None:
        resp = await self._client.post(
            f"/session/{session_id}/permissions/{permission_id}",
            params={"directory": directory},
            json={"response": response},
        )
        resp.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


def build_permission_rules(mode: str) -> list[dict[str, str]]:
    """Session permission rules: allow or deny every tool."""
    action = "deny" if mode == "deny" else "allow"
    return [{"permission": "*", "pattern": "*", "action": action}]


def _parse_model(value: str) -> dict[str, str] | None:
    """Split ``"provider/model"`` into the request's model reference."""
    provider, sep, model = value.strip().partition("/")
    if not sep or not provider or not model:
        return None
    return {"providerID": provider, "modelID": model}


_STATUS_MESSAGES = {
    401: "Error: agent runtime authentication failed (401). Check credentials.",
    403: "Error: agent runtime access forbidden (403).",
    404: "Error: agent runtime endpoint not found (404).",
    429: "Error: Rate limited. Please wait and try again.",
}


def describe_failure(exc: BaseException) -> str:
    """Short, user-facing description of a hard runtime failure."""
    if isinstance(exc, PromptTimeout):
        return "Error: the agent did not respond in time. Please try again."
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in _STATUS_MESSAGES:
            return _STATUS_MESSAGES[status]
        if status >= 500:
            return f"Error: agent runtime server error ({status})."
    if isinstance(exc, httpx.ConnectError):
        return "Error: Cannot connect to the agent runtime. Is it running?"
    if isinstance(exc, httpx.TimeoutException):
        return "Error: the agent runtime timed out."
    return GENERIC_FAILURE_MESSAGE
