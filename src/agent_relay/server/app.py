"""Agent Relay admin server.

A FastAPI app over AdminService:

    GET    /health             bridge status (open)
    GET    /api/bindings       list bindings
    POST   /api/bindings       bind a peer to a directory
    DELETE /api/bindings       remove a binding
    POST   /api/send           broadcast to a directory, or send to one peer
    GET    /api/identities/{channel}        list configured identities
    POST   /api/identities/{channel}        add or replace an identity
    DELETE /api/identities/{channel}/{id}   remove an identity
    GET    /api/config/groups  whether group chats are handled
    POST   /api/config/groups  toggle group chat handling

If an api key is configured, every /api route requires an
``Authorization: Bearer <key>`` header.
"""

from __future__ import annotations

import contextlib
import logging
import secrets
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from agent_relay import __version__
from agent_relay.admin import AdminService

if TYPE_CHECKING:
    from agent_relay.bridge import RelayBridge

logger = logging.getLogger(__name__)

# auto_error=False so a missing header reaches our own check
_bearer_scheme = HTTPBearer(auto_error=False)
_bearer_dependency = Depends(_bearer_scheme)


class BindingRequest(BaseModel):
    channel: str
    peer_id: str
    directory: str
    identity_id: str | None = None


class SendRequest(BaseModel):
    channel: str
    text: str
    directory: str | None = None
    peer_id: str | None = None
    identity_id: str | None = None


class IdentityRequest(BaseModel):
    id: str | None = None
    token: str = ""
    bot_token: str = ""
    app_token: str = ""
    enabled: bool = True
    directory: str = ""


class GroupsRequest(BaseModel):
    enabled: bool


def _api_key_dependency(api_key: str) -> Any:
    async def verify_api_key(
        credentials: HTTPAuthorizationCredentials | None = _bearer_dependency,
    ) -> None:
        """Enforce bearer-token auth when a key is configured."""
        if not api_key:
            return  # No key configured: local-only open access
        if credentials is None or not secrets.compare_digest(
            credentials.credentials, api_key
        ):
            raise HTTPException(status_code=401, detail="Invalid or missing API key")

    return verify_api_key


def _bad_request(exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


def create_app(
    bridge: RelayBridge,
    *,
    api_key: str = "",
    manage_bridge: bool = True,
) -> FastAPI:
    """Build the admin app for *bridge*.

    With ``manage_bridge`` the app's lifespan starts and stops the bridge,
    which is how ``agent-relay serve`` runs everything in one process.
    """
    admin = AdminService(bridge)

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if manage_bridge:
            await bridge.start()
        try:
            yield
        finally:
            if manage_bridge:
                await bridge.stop()

    app = FastAPI(
        title="Agent Relay",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.admin = admin

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return admin.status()

    router = APIRouter(
        prefix="/api",
        tags=["admin"],
        dependencies=[Depends(_api_key_dependency(api_key))],
    )

    @router.get("/bindings")
    async def list_bindings(
        channel: str | None = None, identity_id: str | None = None
    ) -> Any:
        try:
            return {"items": admin.list_bindings(channel, identity_id)}
        except ValueError as e:
            return _bad_request(e)

    @router.post("/bindings")
    async def set_binding(body: BindingRequest) -> Any:
        try:
            return await admin.set_binding(
                body.channel, body.peer_id, body.directory, body.identity_id
            )
        except ValueError as e:
            return _bad_request(e)

    @router.delete("/bindings")
    async def clear_binding(
        channel: str, peer_id: str, identity_id: str | None = None
    ) -> Any:
        try:
            removed = await admin.clear_binding(channel, peer_id, identity_id)
        except ValueError as e:
            return _bad_request(e)
        return {"removed": removed}

    @router.post("/send")
    async def send(body: SendRequest) -> Any:
        try:
            return await admin.send(
                body.channel,
                body.text,
                directory=body.directory,
                peer_id=body.peer_id,
                identity_id=body.identity_id,
            )
        except ValueError as e:
            return _bad_request(e)

    @router.get("/identities/{channel}")
    async def list_identities(channel: str) -> Any:
        try:
            return {"items": admin.list_identities(channel)}
        except ValueError as e:
            return _bad_request(e)

    @router.post("/identities/{channel}")
    async def add_identity(channel: str, body: IdentityRequest) -> Any:
        try:
            return await admin.add_identity(
                channel,
                identity_id=body.id,
                token=body.token,
                bot_token=body.bot_token,
                app_token=body.app_token,
                enabled=body.enabled,
                directory=body.directory,
            )
        except ValueError as e:
            return _bad_request(e)

    @router.delete("/identities/{channel}/{identity_id}")
    async def remove_identity(channel: str, identity_id: str) -> Any:
        try:
            removed = await admin.remove_identity(channel, identity_id)
        except ValueError as e:
            return _bad_request(e)
        return {"removed": removed}

    @router.get("/config/groups")
    async def get_groups() -> Any:
        return {"groups_enabled": admin.groups_enabled()}

    @router.post("/config/groups")
    async def set_groups(body: GroupsRequest) -> Any:
        return await admin.set_groups_enabled(body.enabled)

    app.include_router(router)
    return app
