"""mcpgate - an authorization and session proxy for MCP servers."""

from importlib.metadata import PackageNotFoundError, version

from mcpgate.settings import settings

try:
    __version__ = version("mcpgate")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["settings", "__version__"]
