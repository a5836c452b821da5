"""Credential providers for the generation transport.

Obtaining credentials (OAuth login, keychain storage, token refresh) happens
outside this package. The transport only asks a provider for request headers
right before each request, and any failure there is reported as ``AuthError``.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from gmn_agent.exceptions import AuthError


class CredentialProvider(ABC):
    """Supplies authorization headers for outgoing generation requests."""

    @abstractmethod
    async def get_headers(self) -> dict[str, str]:
        pass


class APIKeyCredentials(CredentialProvider):
    """Static API key sent with the ``x-goog-api-key`` header."""

    def __init__(self, api_key: str):
        self.api_key = api_key

    async def get_headers(self) -> dict[str, str]:
        if not self.api_key:
            raise AuthError("No API key configured")
        return {"x-goog-api-key": self.api_key}


class BearerTokenCredentials(CredentialProvider):
    """OAuth bearer token fetched (and refreshed) by an external callback."""

    def __init__(self, token_source: Callable[[], Awaitable[str]]):
        self._token_source = token_source

    async def get_headers(self) -> dict[str, str]:
        try:
            token = await self._token_source()
        except AuthError:
            raise
        except Exception as e:
            raise AuthError(f"Token refresh failed: {e}") from e
        if not token:
            raise AuthError("Token source returned an empty token")
        return {"Authorization": f"Bearer {token}"}
