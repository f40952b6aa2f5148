"""
Outbound API clients package.

  - TelemetryClient  (read)   — device metric snapshots
  - TierAPIClient    (write)  — loyalty tier decisions

Usage:
    from integrations import TelemetryClient

    async with TelemetryClient.from_settings(settings) as client:
        samples = await client.fetch_snapshot()
"""

from integrations.base import ClientType, ExternalAPIClient
from integrations.telemetry import MachineMetric, TelemetryClient, parse_snapshot
from integrations.tier_api import TierAPIClient, build_idempotency_key

__all__ = [
    "ClientType",
    "ExternalAPIClient",
    "MachineMetric",
    "TelemetryClient",
    "parse_snapshot",
    "TierAPIClient",
    "build_idempotency_key",
]
