"""mcpgate CLI using Cyclopts."""

import importlib.metadata
import platform
from pathlib import Path
from typing import Annotated

import anyio
import cyclopts
import uvicorn
from rich.console import Console
from rich.table import Table
from starlette.applications import Starlette

import mcpgate
from mcpgate.server.auth.store import InMemoryCredentialStore
from mcpgate.server.http import create_app, create_auth_app, create_resource_app
from mcpgate.settings import DiscoveryTopology, Settings
from mcpgate.utilities.logging import get_logger

logger = get_logger("cli")
console = Console()

app = cyclopts.App(
    name="mcpgate",
    help="mcpgate - an authorization and session proxy for MCP servers.",
    version=mcpgate.__version__,
)


def build_apps(settings: Settings) -> list[tuple[Starlette, int]]:
    """The apps to serve for the configured topology, with their ports."""
    if settings.discovery_topology == "same_origin":
        return [(create_app(settings), settings.port)]

    # the two apps must share a store so issued tokens resolve on the resource side
    store = InMemoryCredentialStore()
    return [
        (create_resource_app(settings, store=store), settings.port),
        (create_auth_app(settings, store=store), settings.port + 1),
    ]


@app.command
def version():
    """Display version information and platform details."""
    info = {
        "mcpgate version": mcpgate.__version__,
        "MCP version": importlib.metadata.version("mcp"),
        "Python version": platform.python_version(),
        "Platform": platform.platform(),
        "mcpgate root path": Path(mcpgate.__file__).resolve().parents[1],
    }

    g = Table.grid(padding=(0, 1))
    g.add_column(style="bold", justify="left")
    g.add_column(style="cyan", justify="right")
    for k, v in info.items():
        g.add_row(k + ":", str(v).replace("\n", " "))
    console.print(g)


@app.command
async def run(
    *,
    host: Annotated[
        str | None,
        cyclopts.Parameter(
            "--host",
            help="Host to bind to (default: 127.0.0.1)",
        ),
    ] = None,
    port: Annotated[
        int | None,
        cyclopts.Parameter(
            name=["--port", "-p"],
            help="Port of the resource server (default: 3000). With the adjacent_port topology the authorization server uses the next port.",
        ),
    ] = None,
    topology: Annotated[
        DiscoveryTopology | None,
        cyclopts.Parameter(
            name=["--topology", "-t"],
            help="Where the authorization server lives relative to the resource",
        ),
    ] = None,
) -> None:
    """Serve the MCP endpoint and the OAuth proxy."""
    overrides = {
        key: value
        for key, value in {
            "host": host,
            "port": port,
            "discovery_topology": topology,
        }.items()
        if value is not None
    }
    settings = mcpgate.settings.model_copy(update=overrides)

    apps = build_apps(settings)
    for _, app_port in apps:
        logger.info("Serving on http://%s:%s", settings.host, app_port)

    async with anyio.create_task_group() as tg:
        for starlette_app, app_port in apps:
            config = uvicorn.Config(
                starlette_app,
                host=settings.host,
                port=app_port,
                log_level=settings.log_level.lower(),
                lifespan="on",
                timeout_graceful_shutdown=0,
            )
            tg.start_soon(uvicorn.Server(config).serve)


if __name__ == "__main__":
    app()
