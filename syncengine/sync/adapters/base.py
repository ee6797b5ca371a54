"""Provider adapter interface.

All provider I/O goes through an adapter. The base class owns the behaviour
every provider shares: a per-call timeout and a single credential refresh
when the provider rejects the access token.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, TypeVar

from syncengine.auth import CredentialProvider
from syncengine.config import get_settings
from syncengine.models import CanonicalEvent, ChangeBatch, ChannelMetadata, Integration, PushResult
from syncengine.sync.errors import AuthenticationError, TransientSyncError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderAdapter(ABC):
    """Create, update, delete and list changes on one external calendar."""

    provider: str = ""
    push_capable: bool = False

    def __init__(
        self,
        integration: Integration,
        credentials: CredentialProvider,
        timeout: Optional[float] = None,
    ):
        self.integration = integration
        self.credentials = credentials
        self.timeout = timeout if timeout is not None else get_settings().adapter_timeout_seconds

    async def _call(self, name: str, func: Callable[[str], Awaitable[T]]) -> T:
        """
        Run ``func(access_token)`` with a timeout.

        On an authentication failure the token is refreshed and the call is
        retried exactly once; a second rejection propagates.
        """
        token = await self.credentials.get_access_token(self.integration.auth_ref)
        try:
            return await self._with_timeout(name, func(token))
        except AuthenticationError:
            logger.info(f"{self.provider} rejected credential for {self.integration.id}, refreshing")

        token = await self.credentials.get_access_token(self.integration.auth_ref, force_refresh=True)
        return await self._with_timeout(name, func(token))

    async def _with_timeout(self, name: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise TransientSyncError(f"{self.provider} {name} timed out after {self.timeout}s")

    @abstractmethod
    async def create(self, event: CanonicalEvent) -> PushResult:
        """Create the event remotely. Repeating the call must not duplicate it."""

    @abstractmethod
    async def update(self, external_id: str, event: CanonicalEvent) -> PushResult:
        """Overwrite the remote event. Returns ``gone=True`` if it no longer exists."""

    @abstractmethod
    async def delete(self, external_id: str) -> None:
        """Delete the remote event. Deleting a missing event succeeds."""

    @abstractmethod
    async def fetch_changes_since(self, cursor: Optional[str]) -> ChangeBatch:
        """Remote changes after ``cursor`` (everything when it is None)."""

    async def find_external_id(self, event: CanonicalEvent) -> Optional[str]:
        """
        Look up a remote copy of ``event`` the ledger does not know about.

        A create can reach the provider and still fail on our side, for
        example by timing out. Providers that tag remote records with the
        local id override this.
        """
        return None


class PushCapableAdapter(ProviderAdapter):
    """Adapter for a provider that can notify us of changes."""

    push_capable = True

    @abstractmethod
    async def register_webhook(self, callback_url: str) -> ChannelMetadata:
        """Open a push channel delivering to ``callback_url``."""

    @abstractmethod
    async def stop_webhook(self, channel: ChannelMetadata) -> None:
        """Close a push channel. Stopping an unknown channel succeeds."""

    async def renew_webhook(self, channel: ChannelMetadata, callback_url: str) -> ChannelMetadata:
        """Open a replacement channel, then close the old one."""
        new_channel = await self.register_webhook(callback_url)
        try:
            await self.stop_webhook(channel)
        except Exception as e:
            # The old channel expires on its own; its notifications are rejected
            logger.warning(f"Failed to stop old channel {channel.channel_id}: {e}")
        return new_channel
