"""
Alert Engine — Overutilization detection rules.

A machine is critical when its utilization is strictly above the threshold
and it is not under maintenance. Everything else (including maintenance at
any utilization) counts as recovered and closes an open alert.

Decisions:
  - open:    critical → create an alert and notify once; when the machine
             already has an open alert the store keeps it and nothing is sent
  - resolve: not critical → close any open alert, never notify
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from db.store import SampleRecord

DEFAULT_UTILIZATION_THRESHOLD = 85.0

MAINTENANCE = "maintenance"


class AlertDecision(str, Enum):
    OPEN = "open"
    RESOLVE = "resolve"


def is_critical(utilization: float, status: str, threshold: float = DEFAULT_UTILIZATION_THRESHOLD) -> bool:
    """Exclusive threshold: exactly `threshold` is not critical."""
    return utilization > threshold and status != MAINTENANCE


def classify_sample(sample: SampleRecord, threshold: float = DEFAULT_UTILIZATION_THRESHOLD) -> AlertDecision:
    if is_critical(sample.utilization, sample.status, threshold):
        return AlertDecision.OPEN
    return AlertDecision.RESOLVE


def resolution_reason(sample: SampleRecord) -> str:
    return "maintenance" if sample.status == MAINTENANCE else "recovered"


@dataclass
class SnapshotPartition:
    """A snapshot reduced to one sample per machine."""

    samples: list[SampleRecord] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)


def dedupe_snapshot(samples: list[SampleRecord]) -> SnapshotPartition:
    """Keep the last sample per machine, preserving first-seen order."""
    latest: dict[str, SampleRecord] = {}
    duplicates: list[str] = []
    for sample in samples:
        if sample.machine_id in latest:
            duplicates.append(sample.machine_id)
        latest[sample.machine_id] = sample
    return SnapshotPartition(samples=list(latest.values()), duplicates=duplicates)


def should_renotify(
    last_notified_at: datetime | None,
    now: datetime,
    realert_after: timedelta | None,
) -> bool:
    """Re-notification for a still-open alert; off when realert_after is None."""
    if realert_after is None:
        return False
    if last_notified_at is None:
        return True
    return now - last_notified_at >= realert_after
