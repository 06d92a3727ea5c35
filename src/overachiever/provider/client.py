"""ProviderClient contract and its typed failures.

The sync engine depends only on this module; ``overachiever.provider.steam``
is the production implementation.
"""

from __future__ import annotations

from typing import Protocol

from overachiever.provider.models import LibraryEntry, SchemaEntry, UnlockEntry


class ProviderError(Exception):
    """Base class for a failed provider call."""

    kind = "provider_error"
    retryable = False

    def __init__(self, message: str = "", *, status_code: int | None = None) -> None:
        super().__init__(message or self.kind)
        self.status_code = status_code


class RateLimited(ProviderError):
    """The provider throttled the call (HTTP 429)."""

    kind = "rate_limited"
    retryable = True


class NotFound(ProviderError):
    kind = "not_found"


class Unauthorized(ProviderError):
    """Bad API key, or the profile/game details are private."""

    kind = "unauthorized"


class Transient(ProviderError):
    """Network failure, timeout or 5xx. Safe to retry."""

    kind = "transient"
    retryable = True


class Malformed(ProviderError):
    """The response could not be parsed into the expected shape."""

    kind = "malformed"


class ProviderClient(Protocol):
    """The three fetches the sync engine needs from the provider."""

    async def fetch_library(self, user_ref: int) -> list[LibraryEntry]: ...

    async def fetch_schema(self, game_id: int) -> list[SchemaEntry]: ...

    async def fetch_unlocks(self, user_ref: int, game_id: int) -> list[UnlockEntry]: ...
