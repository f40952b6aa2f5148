"""
Telemetry Client — fetches the current metric snapshot for all tracked
slot machines.

Response body is either a JSON list or {"machines": [...]} of:
  {machineId, utilization, status, location, revenue, spins}

A fetch is an idempotent read, so one retry after a short backoff is
allowed. Anything still failing surfaces as TelemetryFetchError.
"""

import asyncio
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.config import Settings
from core.errors import TelemetryFetchError
from db.models import MACHINE_STATUSES
from db.store import SampleRecord
from integrations.base import ClientType, ExternalAPIClient

SNAPSHOT_PATH = "/machines/metrics"


class MachineMetric(BaseModel):
    """One machine's reading as reported by the telemetry feed."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    machine_id: str = Field(alias="machineId", min_length=1)
    utilization: float = Field(ge=0)
    status: str = "unknown"
    location: str | None = None
    revenue: float = 0.0
    spins: int = Field(default=0, ge=0)

    @field_validator("machine_id", mode="before")
    @classmethod
    def _coerce_machine_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        status = str(value or "unknown").strip().lower()
        return status if status in MACHINE_STATUSES else "unknown"

    def to_record(self) -> SampleRecord:
        return SampleRecord(
            machine_id=self.machine_id,
            utilization=self.utilization,
            status=self.status,
            location=self.location,
            revenue=self.revenue,
            spins=self.spins,
        )


def parse_snapshot(payload: Any) -> list[SampleRecord]:
    """Validate a decoded snapshot body. Raises TelemetryFetchError if malformed."""
    if isinstance(payload, dict):
        payload = payload.get("machines")
    if not isinstance(payload, list):
        raise TelemetryFetchError("Malformed telemetry payload: expected a list of machines")
    try:
        return [MachineMetric.model_validate(item).to_record() for item in payload]
    except ValidationError as exc:
        raise TelemetryFetchError(f"Malformed telemetry payload: {exc.error_count()} invalid field(s)") from exc


class TelemetryClient(ExternalAPIClient):
    """HTTP source for device metric snapshots."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        retry_backoff_seconds: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(base_url, api_key, timeout, transport=transport)
        self.retry_backoff_seconds = retry_backoff_seconds

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "TelemetryClient":
        return cls(
            settings.telemetry_api_url,
            settings.telemetry_api_key,
            timeout=settings.telemetry_timeout_seconds,
            retry_backoff_seconds=settings.telemetry_retry_backoff_seconds,
            transport=transport,
        )

    @property
    def client_type(self) -> ClientType:
        return ClientType.TELEMETRY

    def auth_headers(self) -> dict[str, str]:
        return {"X-API-Key": self.api_key, "Accept": "application/json"}

    async def fetch_snapshot(self) -> list[SampleRecord]:
        """Fetch and validate the current snapshot, retrying once."""
        try:
            return await self._fetch_once()
        except TelemetryFetchError as exc:
            self.logger.warning(
                "telemetry.fetch_retrying",
                error=str(exc),
                backoff_seconds=self.retry_backoff_seconds,
            )
        await asyncio.sleep(self.retry_backoff_seconds)
        return await self._fetch_once()

    async def _fetch_once(self) -> list[SampleRecord]:
        try:
            response = await self._client.get(SNAPSHOT_PATH)
        except httpx.TimeoutException as exc:
            raise TelemetryFetchError(f"Telemetry fetch timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise TelemetryFetchError(f"Telemetry transport error: {exc}") from exc

        if not response.is_success:
            raise TelemetryFetchError(f"Telemetry returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise TelemetryFetchError("Telemetry returned a non-JSON body") from exc

        samples = parse_snapshot(payload)
        self._mark_success()
        return samples
