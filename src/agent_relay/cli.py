"""CLI entry point for agent-relay.

Usage:
    agent-relay serve [--host H] [--port P]   # run bridge + admin API
    agent-relay status [--url URL]            # query a running relay
    agent-relay bindings [--channel C]        # list persisted bindings
    agent-relay init                          # write a default relay.yaml
"""

from __future__ import annotations

import json
import logging

import click
import httpx

from agent_relay import conventions
from agent_relay.config import (
    config_path,
    data_dir,
    load_config,
    relay_home,
    save_config,
)


@click.group("agent-relay")
@click.version_option(package_name="agent-relay")
def main() -> None:
    """Relay Slack and Telegram chats to workspace-scoped agent sessions."""


@main.command()
@click.option("--host", default=None, help="Bind host (default from relay.yaml)")
@click.option("--port", default=None, type=int, help="Bind port")
def serve(host: str | None, port: int | None) -> None:
    """Run the relay and its admin API in the foreground."""
    import uvicorn

    from agent_relay.bridge import RelayBridge
    from agent_relay.server.app import create_app
    from agent_relay.server.startup import (
        load_env_file,
        log_startup_info,
        setup_logging,
    )

    loaded_env = load_env_file()
    config = load_config()
    setup_logging(level=config.log_level)
    logger = logging.getLogger("agent_relay")
    if loaded_env:
        logger.info(
            "Loaded %d var(s) from .env: %s", len(loaded_env), ", ".join(loaded_env)
        )

    host = host or config.admin.host
    port = port or config.admin.port

    bridge = RelayBridge(config, config_home=relay_home())
    app = create_app(bridge, api_key=config.admin.api_key)

    log_startup_info(
        host=host,
        port=port,
        adapters=[f"slack/{s.id}" for s in config.slack.apps]
        + [f"telegram/{t.id}" for t in config.telegram.bots],
        workspace_root=config.workspace_root,
        logger=logger,
    )
    click.echo(f"Starting Agent Relay on {host}:{port}")
    click.echo(f"  API docs:  http://{host}:{port}/api/docs")

    uvicorn.run(app, host=host, port=port, log_level=config.log_level.lower())


@main.command()
@click.option(
    "--url",
    default=f"http://127.0.0.1:{conventions.SERVER_DEFAULT_PORT}",
    help="Base URL of a running relay",
)
def status(url: str) -> None:
    """Show the status of a running relay."""
    try:
        resp = httpx.get(f"{url.rstrip('/')}/health", timeout=5.0)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        raise click.ClickException(f"Relay not reachable at {url}: {e}") from e
    click.echo(json.dumps(resp.json(), indent=2))


@main.command()
@click.option("--channel", default=None, help="Only this channel (slack|telegram)")
def bindings(channel: str | None) -> None:
    """List persisted peer bindings."""
    from agent_relay.store import BindingStore

    config = load_config()
    store = BindingStore(data_dir(config) / conventions.BINDINGS_FILENAME)
    records = store.list(channel=channel)
    if not records:
        click.echo("No bindings.")
        return
    for r in sorted(records, key=lambda r: str(r.key)):
        click.echo(f"{r.key}  ->  {r.directory}")


@main.command()
@click.option("--workspace-root", default="~/dev", help="Directory peers may bind to")
@click.option("--force", is_flag=True, help="Overwrite an existing relay.yaml")
def init(workspace_root: str, force: bool) -> None:
    """Write a default relay.yaml."""
    from agent_relay.schema import RelayConfig

    path = config_path()
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force)")
    written = save_config(RelayConfig(workspace_root=workspace_root))
    click.echo(f"Wrote {written}")


if __name__ == "__main__":
    main()
