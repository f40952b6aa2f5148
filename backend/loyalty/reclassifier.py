"""
Tier Reclassifier — nightly recomputation of loyalty tiers.

Selection is incremental: only players whose last evaluation is older than
the max age (24h) are processed, so a re-triggered run after a partial
failure picks up exactly the players that did not finish.

Per player:
  same tier      → stamp last_evaluated_at, no history
  different tier → push to the tier API, then commit tier + timestamp +
                   history in one transaction
  push failed    → leave untouched, retried next run
  push ambiguous → leave untouched, flagged for operators, never retried here
  anything else  → failed, left untouched like a rejected push

An unreachable store aborts the whole run.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

import structlog

from core.clock import to_naive_utc, utcnow
from core.config import Settings
from core.errors import AmbiguousTierPushError, StoreUnavailableError, TierConflictError, TierPushError
from db.models import Player
from db.store import StoreAdapter
from integrations.tier_api import build_idempotency_key
from loyalty.tiers import Tier, is_promotion, parse_tier, tier_for_wager

logger = structlog.get_logger()

RECLASSIFY_JOB_NAME = "tier_reclassifier"


class TierSink(Protocol):
    async def push_tier(self, player_id: uuid.UUID | str, tier: Tier, idempotency_key: str) -> None: ...


class PlayerOutcome(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    UNRESOLVED = "unresolved"


@dataclass
class PlayerResult:
    player_id: str
    outcome: PlayerOutcome
    old_tier: Tier | None
    new_tier: Tier | None
    error: str | None = None


@dataclass
class ReclassificationSummary:
    run_id: str
    started_at: datetime
    completed_at: datetime | None = None
    selected: int = 0
    results: list[PlayerResult] = field(default_factory=list)

    def count(self, outcome: PlayerOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def changed(self) -> int:
        return self.count(PlayerOutcome.CHANGED)

    @property
    def unchanged(self) -> int:
        return self.count(PlayerOutcome.UNCHANGED)

    @property
    def failed(self) -> int:
        return self.count(PlayerOutcome.FAILED)

    @property
    def unresolved(self) -> int:
        return self.count(PlayerOutcome.UNRESOLVED)

    def summary_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "selected": self.selected,
            "changed": self.changed,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "unresolved": self.unresolved,
            "failed_players": [r.player_id for r in self.results if r.outcome == PlayerOutcome.FAILED],
            "unresolved_players": [r.player_id for r in self.results if r.outcome == PlayerOutcome.UNRESOLVED],
        }


class TierReclassifier:
    def __init__(
        self,
        settings: Settings,
        store: StoreAdapter,
        tier_api: TierSink,
        concurrency: int | None = None,
    ):
        self.settings = settings
        self.store = store
        self.tier_api = tier_api
        self.max_age = timedelta(hours=settings.reclassify_max_age_hours)
        self.batch_limit = settings.reclassify_batch_limit
        self._concurrency = max(1, concurrency or settings.reclassify_concurrency)

    async def run(self, now: datetime | None = None) -> ReclassificationSummary:
        now = to_naive_utc(now) if now else utcnow()
        summary = ReclassificationSummary(run_id=f"reclassify-{uuid.uuid4().hex[:12]}", started_at=now)
        log = logger.bind(run_id=summary.run_id)

        players = await self.store.select_players_due_for_evaluation(now, self.max_age, limit=self.batch_limit)
        summary.selected = len(players)
        log.info("tier.run_started", selected=summary.selected, max_age_hours=self.max_age.total_seconds() / 3600)

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(player: Player) -> PlayerResult:
            async with semaphore:
                return await self._process_player(player, now, summary.run_id)

        tasks = [asyncio.create_task(_bounded(p)) for p in players]
        try:
            summary.results = list(await asyncio.gather(*tasks))
        except StoreUnavailableError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            log.error("tier.run_aborted", reason="store_unavailable")
            raise

        summary.completed_at = utcnow()
        log.info("tier.run_completed", **summary.summary_dict())
        return summary

    async def _process_player(self, player: Player, now: datetime, run_id: str) -> PlayerResult:
        try:
            return await self._evaluate_player(player, now, run_id)
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            pid = str(player.player_id)
            error = f"{type(exc).__name__}: {exc}"
            logger.error("tier.player_failed", player_id=pid, error=error, exc_info=True)
            return PlayerResult(pid, PlayerOutcome.FAILED, None, None, error=error)

    async def _evaluate_player(self, player: Player, now: datetime, run_id: str) -> PlayerResult:
        pid = str(player.player_id)
        current = parse_tier(player.tier)
        new = tier_for_wager(player.total_wager)

        if new == current:
            await self.store.touch_last_evaluated(player.player_id, now)
            return PlayerResult(pid, PlayerOutcome.UNCHANGED, current, new)

        key = build_idempotency_key(pid, current, new, now.date().isoformat())
        try:
            await self.tier_api.push_tier(player.player_id, new, key)
        except AmbiguousTierPushError as exc:
            logger.error(
                "tier.push_ambiguous",
                player_id=pid,
                old_tier=current.value,
                new_tier=new.value,
                idempotency_key=key,
                error=str(exc),
                requires_operator=True,
            )
            return PlayerResult(pid, PlayerOutcome.UNRESOLVED, current, new, error=str(exc))
        except TierPushError as exc:
            logger.warning("tier.push_failed", player_id=pid, new_tier=new.value, error=str(exc))
            return PlayerResult(pid, PlayerOutcome.FAILED, current, new, error=str(exc))

        try:
            await self.store.commit_tier_change(player.player_id, current, new, now, run_id=run_id)
        except TierConflictError as exc:
            logger.error("tier.commit_conflict", player_id=pid, expected_tier=current.value, error=str(exc))
            return PlayerResult(pid, PlayerOutcome.FAILED, current, new, error=str(exc))

        logger.info(
            "tier.changed",
            player_id=pid,
            old_tier=current.value,
            new_tier=new.value,
            direction="promotion" if is_promotion(current, new) else "demotion",
        )
        return PlayerResult(pid, PlayerOutcome.CHANGED, current, new)

