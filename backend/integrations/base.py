"""
External API Client — Abstract Base Class

The telemetry feed and the tier-consuming API both sit behind this
interface so the jobs never touch transport details. Each client owns one
httpx.AsyncClient with a bounded timeout and releases it on close.

Lifecycle:
    1. __init__(base_url, api_key, timeout)  — load credentials / config
    2. async with client:                     — acquire the HTTP pool
    3. domain calls (fetch_snapshot, push_tier)
    4. aclose()                               — release the pool
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum

import httpx
import structlog

from core.clock import utcnow

logger = structlog.get_logger()


class ClientType(str, Enum):
    """External systems the core talks to."""

    TELEMETRY = "telemetry"  # Device metric snapshots (read-only)
    TIER_API = "tier_api"  # Loyalty tier consumer (mutating)


class ExternalAPIClient(ABC):
    """Base class for the outbound HTTP clients."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.auth_headers(),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self.logger = logger.bind(client=self.client_type.value)
        self.last_success_at: datetime | None = None

    @property
    @abstractmethod
    def client_type(self) -> ClientType:
        """Return the external system this client talks to."""
        ...

    @abstractmethod
    def auth_headers(self) -> dict[str, str]:
        """Headers carrying the pre-provisioned credential."""
        ...

    def _mark_success(self) -> None:
        self.last_success_at = utcnow()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
