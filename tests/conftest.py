"""Shared test fixtures for agent-relay."""

import asyncio
import contextlib
from pathlib import Path

import pytest

from agent_relay.adapters.base import MemoryAdapter
from agent_relay.dispatcher import BridgeDispatcher
from agent_relay.runtime import MockRuntime
from agent_relay.store import BindingStore, SessionStore
from agent_relay.workspace import WorkspaceResolver


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Workspace root with a nested project: ws/ws-a/project-b."""
    root = tmp_path / "ws"
    (root / "ws-a" / "project-b").mkdir(parents=True)
    return root.resolve()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def resolver(workspace: Path) -> WorkspaceResolver:
    return WorkspaceResolver(workspace)


@pytest.fixture
def bindings(data_dir: Path) -> BindingStore:
    return BindingStore(data_dir / "bindings.json")


@pytest.fixture
def sessions(data_dir: Path) -> SessionStore:
    return SessionStore(data_dir / "sessions.json")


@pytest.fixture
def runtime() -> MockRuntime:
    return MockRuntime()


@pytest.fixture
def slack() -> MemoryAdapter:
    """Memory stand-in for the default Slack identity."""
    return MemoryAdapter(channel="slack", identity_id="default", max_text_length=39_000)


@pytest.fixture
def dispatcher(bindings, sessions, resolver, runtime, slack) -> BridgeDispatcher:
    d = BridgeDispatcher(
        bindings=bindings,
        sessions=sessions,
        resolver=resolver,
        runtime=runtime,
        prompt_timeout=5,
    )
    d.register_adapter(slack)
    slack.on_message = d.handle_inbound
    return d


@pytest.fixture(autouse=True)
async def _cancel_stray_tasks():
    """Cancel any tasks that leaked from a test."""
    yield
    await asyncio.sleep(0)
    current = asyncio.current_task()
    for task in asyncio.all_tasks():
        if task is not current and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                await asyncio.wait_for(asyncio.shield(task), timeout=0.1)
