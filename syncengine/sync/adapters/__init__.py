"""Provider adapters and the registry that builds them."""

from typing import Optional

from syncengine.auth import CredentialProvider
from syncengine.models import Integration
from syncengine.sync.adapters.base import ProviderAdapter, PushCapableAdapter
from syncengine.sync.adapters.google_calendar import GoogleCalendarAdapter
from syncengine.sync.adapters.notion import NotionAdapter
from syncengine.sync.errors import ConfigurationError

ADAPTERS: dict[str, type[ProviderAdapter]] = {
    GoogleCalendarAdapter.provider: GoogleCalendarAdapter,
    NotionAdapter.provider: NotionAdapter,
}


def get_adapter_class(provider: str) -> type[ProviderAdapter]:
    """Adapter class registered for ``provider``."""
    adapter_class = ADAPTERS.get(provider)
    if adapter_class is None:
        raise ConfigurationError(f"Unknown provider: {provider}")
    return adapter_class


def build_adapter(
    integration: Integration,
    credentials: CredentialProvider,
    timeout: Optional[float] = None,
) -> ProviderAdapter:
    """Instantiate the adapter for an integration."""
    return get_adapter_class(integration.provider)(integration, credentials, timeout)


__all__ = [
    "ADAPTERS",
    "GoogleCalendarAdapter",
    "NotionAdapter",
    "ProviderAdapter",
    "PushCapableAdapter",
    "build_adapter",
    "get_adapter_class",
]
