"""Outbound ports — interfaces that infrastructure adapters must implement.

These are the *driven* ports in hexagonal architecture.  The pool core
depends only on these abstractions, never on concrete HTTP clients or
storage drivers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

from pool_gateway.shared.providers.types import ProviderInstance, UsageReport


# ═══════════════════════════════════════════════════════════════
#  Upstream provider port
# ═══════════════════════════════════════════════════════════════
class UpstreamClient(ABC):
    """Talks to one upstream family on behalf of a pool instance.

    Request and response payloads are in the provider type's native
    dialect.  Failures are raised as ``UpstreamError`` subclasses annotated
    with the instance id.
    """

    @abstractmethod
    async def chat(self, instance: ProviderInstance, body: dict[str, Any]) -> dict[str, Any]: ...

    @abstractmethod
    def chat_stream(
        self, instance: ProviderInstance, body: dict[str, Any]
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield native-dialect stream events.  Errors before the first
        event are raised from the first ``__anext__``."""

    @abstractmethod
    async def probe(self, instance: ProviderInstance) -> None:
        """Lightweight call with the instance's own credential; raises on failure."""

    @abstractmethod
    async def fetch_usage(self, instance: ProviderInstance) -> UsageReport: ...

    @abstractmethod
    async def refresh_token(self, instance: ProviderInstance, *, force: bool = False) -> datetime | None:
        """Refresh the OAuth token; returns the new expiry.  Raises ``RefreshFailed``."""

    @abstractmethod
    async def token_expires_at(self, instance: ProviderInstance) -> datetime | None:
        """Expiry of the currently loaded token, or None if it never expires."""

    def list_models(self) -> list[str]:
        return []

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════
#  Pool storage port
# ═══════════════════════════════════════════════════════════════
class PoolStore(ABC):
    """Loads pool membership and persists runtime instance state."""

    @abstractmethod
    async def load(self) -> list[ProviderInstance]: ...

    @abstractmethod
    async def save(self, instances: list[ProviderInstance]) -> None: ...

    async def record_probe(
        self, instance: ProviderInstance, *, success: bool, error: str | None
    ) -> None:
        return None

    async def health_history(self, instance_id: str, *, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent probe results, newest first.  Stores without history return []."""
        return []

    async def close(self) -> None:
        return None
