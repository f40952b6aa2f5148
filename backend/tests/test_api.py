"""
API Tests — read-only views over alerts, tier history and job runs.
"""

import uuid

import pytest
from httpx import AsyncClient

from conftest import NOW, FakeTelemetrySource, sample
from loyalty.reclassifier import TierReclassifier
from loyalty.tiers import Tier
from telemetry.monitor import TelemetryMonitor
from workers.runner import JobRunner, LocalJobLock


@pytest.mark.asyncio
class TestHealthCheck:
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"


@pytest.mark.asyncio
class TestAlertsAPI:
    async def test_list_alerts_empty(self, client: AsyncClient):
        response = await client.get("/api/v1/alerts/")
        assert response.status_code == 200
        assert response.json() == []

    async def test_open_filter(self, client: AsyncClient, settings, store, notifier):
        source = FakeTelemetrySource(
            [
                [sample("M1", 92.0), sample("M2", 95.0)],
                [sample("M1", 20.0), sample("M2", 96.0)],
            ]
        )
        monitor = TelemetryMonitor(settings, source, store, notifier, concurrency=1)
        await monitor.run_cycle()
        await monitor.run_cycle()

        everything = (await client.get("/api/v1/alerts/")).json()
        open_only = (await client.get("/api/v1/alerts/", params={"open": "true"})).json()
        machine = (await client.get("/api/v1/alerts/", params={"machine_id": "M1"})).json()

        assert len(everything) == 2
        assert [a["machine_id"] for a in open_only] == ["M2"]
        assert open_only[0]["is_open"] is True
        assert machine[0]["resolution_reason"] == "recovered"

    async def test_limit_is_bounded(self, client: AsyncClient):
        response = await client.get("/api/v1/alerts/", params={"limit": 0})
        assert response.status_code == 422


@pytest.mark.asyncio
class TestPlayersAPI:
    async def test_unknown_player(self, client: AsyncClient):
        response = await client.get(f"/api/v1/players/{uuid.uuid4()}/tier-history")
        assert response.status_code == 404

    async def test_tier_history_after_promotion(self, client: AsyncClient, settings, store, make_player, tier_api):
        player = await make_player(60000, tier=Tier.GOLD, name="Avery")
        await TierReclassifier(settings, store, tier_api, concurrency=1).run(now=NOW)

        response = await client.get(f"/api/v1/players/{player.player_id}/tier-history")

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "platinum"
        assert data["display_name"] == "Avery"
        assert [(h["old_tier"], h["new_tier"]) for h in data["history"]] == [("gold", "platinum")]


@pytest.mark.asyncio
class TestJobsAPI:
    async def test_job_runs(self, client: AsyncClient, store):
        async def job():
            return {"selected": 0}

        await JobRunner(LocalJobLock, store=store).run_once("api_job", job)

        response = await client.get("/api/v1/jobs/runs", params={"job_name": "api_job"})

        assert response.status_code == 200
        runs = response.json()
        assert len(runs) == 1
        assert runs[0]["status"] == "success"
        assert runs[0]["summary"] == {"selected": 0}
