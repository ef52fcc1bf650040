"""Workspace agent file: chat-specific instructions for the agent.

The file lives at ``AGENT_FILE_RELATIVE_PATH`` under the workspace root.
An optional first line ``@agent <name>`` selects a named agent on the
runtime; the rest of the file is sent as system instructions with every
prompt. The file is re-read only when its mtime changes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from .conventions import AGENT_FILE_MAX_CHARS, AGENT_FILE_RELATIVE_PATH

logger = logging.getLogger(__name__)

_AGENT_LINE = re.compile(r"^@agent\s+([A-Za-z0-9_.:/-]+)$")


@dataclass(frozen=True)
class AgentProfile:
    """What the agent file currently says."""

    path: Path
    loaded: bool = False
    instructions: str = ""
    agent: str | None = None


def parse_agent_file(content: str) -> tuple[str | None, str]:
    """Split file content into ``(selected agent, instructions)``."""
    lines = content.splitlines()
    start = 0
    while start < len(lines) and not lines[start].strip():
        start += 1

    agent = None
    if start < len(lines):
        match = _AGENT_LINE.match(lines[start].strip())
        if match:
            agent = match.group(1)
            del lines[start]
    return agent, "\n".join(lines).strip()


class AgentFileLoader:
    """Reads the agent file under *workspace_root*, cached by mtime."""

    def __init__(self, workspace_root: Path) -> None:
        self.path = workspace_root / AGENT_FILE_RELATIVE_PATH
        self._cached: tuple[float, AgentProfile] | None = None

    def load(self) -> AgentProfile:
        """Current profile. A missing, empty or unreadable file is not loaded."""
        try:
            stat = self.path.stat()
        except OSError:
            self._cached = None
            return AgentProfile(path=self.path)
        if not self.path.is_file():
            self._cached = None
            return AgentProfile(path=self.path)

        if self._cached and self._cached[0] == stat.st_mtime:
            return self._cached[1]

        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot read agent file %s: %s", self.path, e)
            return AgentProfile(path=self.path)

        agent, instructions = parse_agent_file(raw[:AGENT_FILE_MAX_CHARS])
        profile = AgentProfile(
            path=self.path,
            loaded=bool(instructions or agent),
            instructions=instructions,
            agent=agent,
        )
        self._cached = (stat.st_mtime, profile)
        logger.info("Loaded agent file %s (agent: %s)", self.path, agent or "-")
        return profile
