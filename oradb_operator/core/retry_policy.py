"""
Retry policies keyed on an expected remote lifecycle state.

A policy never sleeps inside a reconcile pass. It answers two questions the
reconciler asks on every pass: is the remote object in a state where the
call may be sent, and if not, how long until the next look.
"""
from datetime import datetime, timedelta
from typing import FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field

from oradb_operator.config.settings import Settings, settings
from oradb_operator.models.lifecycle import LifecycleState


class RetryPolicy(BaseModel):
    """
    Wait for a remote object to reach one of ``expected_states``.

    ``None`` inside ``expected_states`` stands for "no remote object".
    When ``expected_states`` is None every state except ``excluded_states``
    satisfies the policy.
    """

    model_config = ConfigDict(frozen=True)

    expected_states: Optional[FrozenSet[Optional[LifecycleState]]]
    max_wait: float
    poll_interval: float
    excluded_states: FrozenSet[Optional[LifecycleState]] = Field(default_factory=frozenset)

    def is_satisfied(self, state: Optional[LifecycleState]) -> bool:
        if state in self.excluded_states:
            return False
        if self.expected_states is None:
            return True
        return state in self.expected_states

    def deadline(self, since: datetime) -> datetime:
        return since + timedelta(seconds=self.max_wait)

    def is_expired(self, since: Optional[datetime], now: datetime) -> bool:
        """True once a wait that started at ``since`` has outlived max_wait."""
        if since is None:
            return False
        return now >= self.deadline(since)

    def describe(self) -> str:
        if self.expected_states is None:
            excluded = sorted(s.value if s else "ABSENT" for s in self.excluded_states)
            return f"any state except {', '.join(excluded)}"
        expected = sorted(s.value if s else "ABSENT" for s in self.expected_states)
        return " or ".join(expected)


class BackoffPolicy(BaseModel):
    """Exponential backoff for transient failures, capped at ``max_delay``."""

    model_config = ConfigDict(frozen=True)

    base_delay: float = 2.0
    max_delay: float = 300.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if attempt < 1:
            return self.base_delay
        return min(self.base_delay * (self.factor ** (attempt - 1)), self.max_delay)


class ReconcilerConfig(BaseModel):
    """
    Timing knobs for reconcile passes, injected rather than read globally.

    Build from process settings with ``ReconcilerConfig.from_settings()``;
    tests construct it directly.
    """

    model_config = ConfigDict(frozen=True)

    resync_interval: float = 60.0
    poll_interval: float = 15.0
    conflict_requeue: float = 5.0
    precondition_max_wait: float = 1800.0
    pending_action_timeout: float = 600.0
    deletion_wait_timeout: float = 300.0
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "ReconcilerConfig":
        config = config or settings
        return cls(
            resync_interval=config.resync_interval_seconds,
            poll_interval=config.poll_interval_seconds,
            conflict_requeue=config.conflict_requeue_seconds,
            precondition_max_wait=config.precondition_max_wait_seconds,
            pending_action_timeout=config.pending_action_timeout_seconds,
            deletion_wait_timeout=config.deletion_wait_timeout_seconds,
            backoff=BackoffPolicy(
                base_delay=config.transient_backoff_base_seconds,
                max_delay=config.transient_backoff_max_seconds,
            ),
        )


class ReconcileResult(BaseModel):
    """
    Outcome of one reconcile pass.

    ``requeue_after`` is None when nothing needs another look until the
    resource changes.
    """

    requeue_after: Optional[float]
    outcome: str
    action: Optional[str] = None
    dispatched: bool = False
