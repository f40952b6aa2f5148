"""
Error taxonomy shared by the monitor, the reclassifier and their adapters.

  - TransientIOError: an external call failed; the caller logs and moves on
  - AmbiguousTierPushError: the remote side may have applied the change
  - StoreUnavailableError: the database could not be reached
  - TierConflictError: the player's tier changed under a pending commit
"""


class SlotOpsError(Exception):
    """Base class for all SlotOps errors."""


class TransientIOError(SlotOpsError):
    """An external endpoint failed in a way that is safe to try next cycle."""


class TelemetryFetchError(TransientIOError):
    """Telemetry snapshot could not be fetched or parsed."""


class NotificationError(TransientIOError):
    """An alert notification could not be delivered."""


class TierPushError(TransientIOError):
    """The tier-consuming API rejected or failed a tier update."""

    def __init__(self, message: str, *, player_id: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.player_id = player_id
        self.status_code = status_code


class AmbiguousTierPushError(TierPushError):
    """The request was sent but no answer came back; the outcome is unknown."""


class StoreUnavailableError(SlotOpsError):
    """The relational store is unreachable."""


class JobFailedError(SlotOpsError):
    """A scheduled job ended in a batch-level failure."""

    def __init__(self, job_name: str, error: str | None):
        super().__init__(f"{job_name} failed: {error or 'unknown error'}")
        self.job_name = job_name


class TierConflictError(SlotOpsError):
    """Conditional tier update matched no row (tier moved since it was read)."""

    def __init__(self, player_id: str, expected_tier: str):
        super().__init__(f"Player {player_id} is no longer at tier {expected_tier}")
        self.player_id = player_id
        self.expected_tier = expected_tier
