"""Credential capability consumed by provider adapters.

Token storage and the OAuth consent flow live outside the sync engine. The
engine only asks a ``CredentialProvider`` for a usable access token, and asks
for a forced refresh when a provider rejects the one it was given.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from syncengine.config import get_settings
from syncengine.sync.errors import AuthenticationError

logger = logging.getLogger(__name__)

_credential_provider: Optional["CredentialProvider"] = None


class CredentialProvider(ABC):
    """Source of access tokens for integrations."""

    @abstractmethod
    async def get_access_token(self, auth_ref: str, force_refresh: bool = False) -> str:
        """Return a valid access token for ``auth_ref``."""


class StaticTokenProvider(CredentialProvider):
    """
    Tokens that never expire, keyed by auth reference.

    Suitable for Notion internal integration secrets. A forced refresh cannot
    produce a different token, so it returns the same one and lets the
    provider reject it again.
    """

    def __init__(self, tokens: Optional[dict[str, str]] = None):
        self._tokens = dict(tokens or {})

    def set_token(self, auth_ref: str, token: str) -> None:
        self._tokens[auth_ref] = token

    async def get_access_token(self, auth_ref: str, force_refresh: bool = False) -> str:
        token = self._tokens.get(auth_ref)
        if not token:
            raise AuthenticationError(f"No credential configured for {auth_ref}")
        if force_refresh:
            logger.debug(f"Static credential {auth_ref} cannot be refreshed")
        return token


def init_credential_provider(provider: CredentialProvider) -> None:
    """Install the credential provider used by default orchestrators."""
    global _credential_provider
    _credential_provider = provider


def get_credential_provider() -> CredentialProvider:
    """Get the installed credential provider, falling back to settings tokens."""
    global _credential_provider
    if _credential_provider is None:
        _credential_provider = StaticTokenProvider(get_settings().static_tokens)
    return _credential_provider
