from .discovery import DiscoveryHandlers, DiscoveryStrategy, get_discovery_strategy
from .oauth_proxy import OAuthProxy
from .store import CredentialStore, InMemoryCredentialStore, ProviderCredential

__all__ = [
    "CredentialStore",
    "DiscoveryHandlers",
    "DiscoveryStrategy",
    "InMemoryCredentialStore",
    "OAuthProxy",
    "ProviderCredential",
    "get_discovery_strategy",
]
