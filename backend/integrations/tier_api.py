"""
Tier API Client — pushes {playerId, tier} to the tier-consuming service.

Pushes mutate remote state and are never retried here. A timeout after the
request went out is ambiguous (the remote may have applied it) and raises
AmbiguousTierPushError; connect failures and non-2xx answers raise
TierPushError. Each push carries an Idempotency-Key so a remote that
supports it can discard duplicates of the same decision.
"""

import uuid

import httpx

from core.config import Settings
from core.errors import AmbiguousTierPushError, TierPushError
from integrations.base import ClientType, ExternalAPIClient
from loyalty.tiers import Tier


def build_idempotency_key(player_id: uuid.UUID | str, old_tier: Tier, new_tier: Tier, day: str) -> str:
    """One key per (player, transition, day) decision."""
    return f"{player_id}:{old_tier.value}->{new_tier.value}:{day}"


class TierAPIClient(ExternalAPIClient):
    """HTTP sink for tier decisions."""

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "TierAPIClient":
        return cls(
            settings.tier_api_url,
            settings.tier_api_key,
            timeout=settings.tier_api_timeout_seconds,
            transport=transport,
        )

    @property
    def client_type(self) -> ClientType:
        return ClientType.TIER_API

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}

    async def push_tier(self, player_id: uuid.UUID | str, tier: Tier, idempotency_key: str) -> None:
        """Send one tier decision. Returns on 2xx, raises otherwise."""
        pid = str(player_id)
        try:
            response = await self._client.post(
                f"/players/{pid}/tier",
                json={"playerId": pid, "tier": tier.value},
                headers={"Idempotency-Key": idempotency_key},
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            # Never reached the server; nothing was applied.
            raise TierPushError(f"Tier API unreachable: {exc}", player_id=pid) from exc
        except httpx.TimeoutException as exc:
            raise AmbiguousTierPushError(
                f"Tier push timed out after {self.timeout}s; remote outcome unknown",
                player_id=pid,
            ) from exc
        except httpx.HTTPError as exc:
            raise AmbiguousTierPushError(f"Tier push transport error: {exc}", player_id=pid) from exc

        if not response.is_success:
            raise TierPushError(
                f"Tier API returned HTTP {response.status_code}",
                player_id=pid,
                status_code=response.status_code,
            )
        self._mark_success()
