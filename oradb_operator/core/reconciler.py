"""
Reconciler - one short, re-entrant pass over one resource.

A pass loads the resource, refreshes its observed remote state, asks the
drift detector for at most one corrective action, checks the action's
precondition and dispatches it, then records the outcome on status and
decides when to look again. Long-running remote operations are never
awaited: a later pass observes their completion.

Before a mutating call is sent, the pass claims it by writing
``status.pendingAction`` with the resourceVersion it read. A concurrent or
stale pass loses that write (HTTP 409) and never reaches the actuator,
which is what keeps one outstanding mutating call per identity.
"""
import time
from datetime import datetime
from typing import Callable, Optional, Tuple

from oradb_operator.config.logging import get_logger, reconcile_context
from oradb_operator.core.deletion import DeletionPolicy
from oradb_operator.core.drift import DriftDetector, drift_detector
from oradb_operator.core.retry_policy import ReconcileResult, ReconcilerConfig
from oradb_operator.core.state_machine import LifecycleStateMachine
from oradb_operator.exceptions import (
    ActuatorError,
    ConfigurationError,
    ConflictError,
    EventualConsistencyMismatch,
    OperatorException,
    PermanentError,
    ResourceStoreError,
    StaleResourceError,
    WalletError,
)
from oradb_operator.models.action import ActionKind, CorrectiveAction, PdbActionKind
from oradb_operator.models.lifecycle import READY_STATES, LifecycleState
from oradb_operator.models.observation import DispatchResult, RemoteObservation
from oradb_operator.models.resource import (
    AutonomousDatabase,
    ConditionType,
    ManagedResource,
    PendingAction,
    ResourceKey,
    utcnow,
)
from oradb_operator.services import metrics
from oradb_operator.services.actuator import RemoteActuator
from oradb_operator.services.wallet_service import WalletMaterializer

logger = get_logger(__name__)

# States from which nothing changes without an outside event
STABLE_STATES = READY_STATES | frozenset({LifecycleState.STOPPED, LifecycleState.READ_ONLY})


class Reconciler:
    """
    Drive one resource toward its declared state.

    Args:
        store: Resource store (KubernetesResourceStore or a test fake)
        actuators: Object with ``async resolve(resource) -> RemoteActuator``
        config: Requeue timings
        detector: Drift detector
        wallets: Wallet materializer; built from ``store`` when omitted
        clock: Returns the current time; injected by tests
    """

    def __init__(
        self,
        store,
        actuators,
        config: Optional[ReconcilerConfig] = None,
        detector: Optional[DriftDetector] = None,
        wallets: Optional[WalletMaterializer] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.actuators = actuators
        self.config = config or ReconcilerConfig.from_settings()
        self.detector = detector or drift_detector
        self.wallets = wallets or WalletMaterializer(store)
        self.deletion = DeletionPolicy(store, actuators, self.config)
        self.clock = clock

    async def reconcile(self, key: ResourceKey) -> ReconcileResult:
        """
        Run one pass for ``key``.

        Remote failures never escape: they become a requeue decision or a
        status condition. Store failures other than a lost write race do
        propagate, for the controller to log and retry.
        """
        started = time.monotonic()
        with reconcile_context(key.kind.value, key.namespace, key.name):
            try:
                resource = await self.store.get(key)
                if resource is None:
                    result = ReconcileResult(requeue_after=None, outcome="gone")
                else:
                    result = await self._reconcile(resource)
            except StaleResourceError:
                logger.debug("status_write_lost_race")
                result = ReconcileResult(requeue_after=0, outcome="stale")

        metrics.record_reconcile(key.kind.value, result.outcome, time.monotonic() - started)
        return result

    async def _reconcile(self, resource: ManagedResource) -> ReconcileResult:
        now = self.clock()

        if resource.is_deleting:
            action = self.detector.detect(resource)
            try:
                return await self.deletion.handle(resource, action, now)
            except (ConfigurationError, ResourceStoreError) as e:
                if isinstance(e, StaleResourceError):
                    raise
                return await self._configuration_failed(resource, e)

        if not resource.has_finalizer:
            resource = await self.store.add_finalizer(resource)

        conflict = self.detector.identity_conflict(resource)
        if conflict:
            logger.error("identity_change_rejected", identity=resource.identity, declared=resource.declared_identity)
            status = resource.status
            status.set_condition(ConditionType.FAILED, True, "IdentityImmutable", conflict, now=now)
            status.set_condition(ConditionType.READY, False, "IdentityImmutable", conflict, now=now)
            await self._write_status(resource)
            return ReconcileResult(requeue_after=None, outcome="identity_conflict")

        try:
            actuator = await self.actuators.resolve(resource)
            observation, mismatch = await self._observe(resource, actuator)
        except ActuatorError as e:
            return await self._observation_failed(resource, e, now)
        except (ConfigurationError, ResourceStoreError) as e:
            if isinstance(e, StaleResourceError):
                raise
            return await self._configuration_failed(resource, e)

        self._apply_observation(resource, observation, now)

        if mismatch is not None:
            # Prefer the list read; look again shortly instead of acting on it
            logger.warning("eventual_consistency_mismatch", **mismatch.details)
            metrics.record_consistency_mismatch(resource.kind.value)
            resource.status.set_condition(
                ConditionType.READY, False, "EventualConsistencyMismatch", mismatch.message, now=now,
            )
            resource.status.consecutive_failures += 1
            await self._write_status(resource)
            delay = self.config.backoff.delay(resource.status.consecutive_failures)
            return ReconcileResult(requeue_after=delay, outcome="consistency_mismatch")

        action = self.detector.detect(resource)

        if observation is None and resource.identity is not None:
            gone = self._absent_identified(resource, now)
            # A new Create, Clone or Plug brings an unplugged or dropped PDB back
            recreating = (
                action is not None
                and action.kind == ActionKind.PDB_ACTION
                and action.pdb_action in (PdbActionKind.CREATE, PdbActionKind.CLONE, PdbActionKind.PLUG)
            )
            if gone is not None and not recreating:
                resource.status.lifecycle_state = gone
                return await self._terminal(resource, gone, now)

        state = resource.status.lifecycle_state

        if LifecycleStateMachine.is_terminal(state) and not (
            action is not None and LifecycleStateMachine.is_provisioning_action(action)
        ):
            return await self._terminal(resource, state, now)

        await self._ensure_wallet(resource, actuator, now)

        if action is None:
            return await self._in_sync(resource, now)

        logger.info("drift_detected", action=action.name, state=state.value if state else None)
        return await self._drive(resource, actuator, action, now)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    async def _observe(
        self,
        resource: ManagedResource,
        actuator: RemoteActuator,
    ) -> Tuple[Optional[RemoteObservation], Optional[EventualConsistencyMismatch]]:
        """
        Read remote state, cross-checking the direct read against the list index.

        The cross-check runs while an action is pending or when the direct
        read misses an identified object. On disagreement the direct read
        is retried once; a persistent disagreement returns the list read
        together with an EventualConsistencyMismatch.
        """
        direct = await actuator.observe(resource)
        pending = resource.status.pending_action
        if not ((direct is None and resource.identity) or pending is not None):
            return direct, None
        # A bind names its object; only a lost create may be recovered from the list
        if resource.identity is None and pending is not None and pending.action == ActionKind.BIND.value:
            return direct, None

        listed = await actuator.list_matching(resource)
        if listed is None:
            return direct, None
        if direct is None and resource.identity is None:
            logger.info("identity_recovered_from_list", identity=listed.identity)
            return listed, None
        if direct is not None and direct.agrees_with(listed):
            return direct, None

        retried = await actuator.observe(resource)
        if retried is not None and retried.agrees_with(listed):
            return retried, None

        mismatch = EventualConsistencyMismatch(
            "direct read disagrees with list read",
            operation="observe",
            details={
                "identity": listed.identity,
                "get_state": retried.lifecycle_state.value if retried else None,
                "list_state": listed.lifecycle_state.value,
            },
        )
        return listed, mismatch

    def _apply_observation(
        self,
        resource: ManagedResource,
        observation: Optional[RemoteObservation],
        now: datetime,
    ) -> None:
        status = resource.status
        status.last_observed_at = now
        if observation is None:
            status.lifecycle_state = None
            status.remote_state = None
            return
        if status.identity is None:
            status.identity = observation.identity
        status.lifecycle_state = observation.lifecycle_state
        status.remote_state = observation.raw_state
        if isinstance(resource, AutonomousDatabase) and observation.attributes:
            status.snapshot = dict(observation.attributes)

    def _absent_identified(self, resource: ManagedResource, now: datetime) -> Optional[LifecycleState]:
        """
        Decide what a missing identified object means.

        Returns the terminal state to record, or None while a recent pending
        action may still explain the absence.
        """
        status = resource.status
        pending = status.pending_action
        if pending is not None and (now - pending.claimed_at).total_seconds() < self.config.pending_action_timeout:
            return None
        if status.completed_action == "pdb_unplug":
            return LifecycleState.UNPLUGGED
        return LifecycleState.TERMINATED

    # ------------------------------------------------------------------
    # Outcomes without dispatch
    # ------------------------------------------------------------------

    async def _terminal(self, resource: ManagedResource, state: LifecycleState, now: datetime) -> ReconcileResult:
        status = resource.status
        status.pending_action = None
        status.waiting_since = None
        message = f"remote object is {state.value}"
        status.set_condition(ConditionType.READY, False, state.value.title(), message, now=now)
        status.set_condition(ConditionType.PROGRESSING, False, state.value.title(), message, now=now)
        if state == LifecycleState.FAILED:
            status.set_condition(ConditionType.FAILED, True, "RemoteFailed", message, now=now)
        logger.info("remote_object_terminal", state=state.value, identity=resource.identity)
        await self._write_status(resource)
        return ReconcileResult(requeue_after=None, outcome="terminal")

    async def _in_sync(self, resource: ManagedResource, now: datetime) -> ReconcileResult:
        status = resource.status
        state = status.lifecycle_state
        status.pending_action = None
        status.waiting_since = None
        status.consecutive_failures = 0
        status.set_condition(ConditionType.PROGRESSING, False, "InSync", now=now)
        if status.get_condition(ConditionType.FAILED) is not None:
            status.set_condition(ConditionType.FAILED, False, "InSync", now=now)

        if LifecycleStateMachine.is_ready(state):
            status.set_condition(ConditionType.READY, True, "Available", f"remote object is {state.value}", now=now)
        else:
            reason = state.value.title() if state else "NotFound"
            status.set_condition(ConditionType.READY, False, reason, f"remote object is {state.value if state else 'absent'}", now=now)

        await self._write_status(resource)
        requeue = self.config.resync_interval if state in STABLE_STATES else self.config.poll_interval
        return ReconcileResult(requeue_after=requeue, outcome="in_sync")

    async def _ensure_wallet(self, resource: ManagedResource, actuator: RemoteActuator, now: datetime) -> None:
        if not isinstance(resource, AutonomousDatabase) or not resource.requires_wallet:
            return
        status = resource.status
        if not LifecycleStateMachine.is_ready(status.lifecycle_state):
            return
        try:
            status.wallet_secret = await self.wallets.ensure(resource, actuator)
        except (ActuatorError, WalletError, ConfigurationError) as e:
            message = e.message
            logger.warning("wallet_materialization_failed", error=message)
            status.set_condition(ConditionType.WALLET_READY, False, type(e).__name__, message, now=now)
            return
        except ResourceStoreError as e:
            if isinstance(e, StaleResourceError):
                raise
            logger.warning("wallet_secret_write_failed", error=e.message)
            status.set_condition(ConditionType.WALLET_READY, False, "SecretWriteFailed", e.message, now=now)
            return
        status.set_condition(
            ConditionType.WALLET_READY, True, "Materialized",
            f"wallet stored in secret {status.wallet_secret}", now=now,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _drive(
        self,
        resource: ManagedResource,
        actuator: RemoteActuator,
        action: CorrectiveAction,
        now: datetime,
    ) -> ReconcileResult:
        status = resource.status
        state = status.lifecycle_state
        fingerprint = action.fingerprint

        # A one-shot PDB action whose outcome is already visible is done,
        # whether this operator sent it or not
        if action.kind == ActionKind.PDB_ACTION and LifecycleStateMachine.has_taken_effect(action, state):
            self._mark_completed(resource, action)
            status.set_condition(ConditionType.PROGRESSING, False, "ActionCompleted", action.name, now=now)
            await self._write_status(resource)
            return ReconcileResult(requeue_after=self.config.poll_interval, outcome="confirmed", action=action.name)

        if status.failed_action == fingerprint and status.failed_generation == resource.metadata.generation:
            logger.debug("action_failed_permanently_skipping", action=action.name)
            await self._write_status(resource)
            return ReconcileResult(requeue_after=self.config.resync_interval, outcome="failed_latched", action=action.name)

        pending = status.pending_action
        if pending is not None:
            if self._same_action(pending, action, resource):
                age = (now - pending.claimed_at).total_seconds()
                if age < self.config.pending_action_timeout:
                    logger.debug("action_in_flight", action=action.name, age_seconds=age)
                    await self._write_status(resource)
                    return ReconcileResult(requeue_after=self.config.poll_interval, outcome="pending", action=action.name)
                logger.warning("pending_action_expired", action=action.name, age_seconds=age)
            status.pending_action = None

        policy = LifecycleStateMachine.retry_policy_for(
            action, self.config.poll_interval, self.config.precondition_max_wait,
        )
        if not policy.is_satisfied(state):
            if status.waiting_since is None:
                status.waiting_since = now
            expired = policy.is_expired(status.waiting_since, now)
            reason = "PreconditionTimeout" if expired else "WaitingForPrecondition"
            message = f"{action.name} waits for remote state {policy.describe()}"
            if expired:
                logger.warning("precondition_wait_exceeded", action=action.name, expected=policy.describe())
            status.set_condition(ConditionType.READY, False, reason, message, now=now)
            status.set_condition(ConditionType.PROGRESSING, True, reason, message, now=now)
            await self._write_status(resource)
            return ReconcileResult(requeue_after=policy.poll_interval, outcome="waiting", action=action.name)
        status.waiting_since = None

        # Claim; a stale read loses here and never reaches the actuator
        status.pending_action = PendingAction(fingerprint=fingerprint, action=action.name, claimed_at=now)
        status.set_condition(ConditionType.PROGRESSING, True, "Dispatching", action.name, now=now)
        resource = await self._write_status(resource)

        try:
            result = await actuator.dispatch(resource, action)
        except ActuatorError as e:
            return await self._dispatch_failed(resource, action, e, now)
        except (ConfigurationError, ResourceStoreError) as e:
            if isinstance(e, StaleResourceError):
                raise
            resource.status.pending_action = None
            return await self._configuration_failed(resource, e)

        metrics.record_action_dispatched(resource.kind.value, action.name)
        logger.info("action_dispatched", action=action.name, identity=result.identity or resource.identity)
        return await self._dispatch_succeeded(resource, action, result, now)

    @staticmethod
    def _same_action(pending: PendingAction, action: CorrectiveAction, resource: ManagedResource) -> bool:
        if pending.fingerprint == action.fingerprint:
            return True
        # An unidentified resource never gets a second provisioning call
        # just because its spec changed while the first was outstanding
        return (
            resource.identity is None
            and LifecycleStateMachine.is_provisioning_action(action)
            and pending.action == action.name
        )

    @staticmethod
    def _mark_completed(resource: ManagedResource, action: CorrectiveAction) -> None:
        status = resource.status
        status.completed_action = action.name
        status.completed_action_fingerprint = action.fingerprint
        status.pending_action = None

    async def _dispatch_succeeded(
        self,
        resource: ManagedResource,
        action: CorrectiveAction,
        result: DispatchResult,
        now: datetime,
    ) -> ReconcileResult:
        status = resource.status
        if status.identity is None and result.identity and LifecycleStateMachine.is_provisioning_action(action):
            status.identity = result.identity
            logger.info("identity_assigned", identity=result.identity, action=action.name)
        if result.lifecycle_state is not None:
            status.lifecycle_state = result.lifecycle_state
            status.remote_state = result.lifecycle_state.value
        if result.attributes and action.kind in (ActionKind.PROVISION, ActionKind.BIND):
            status.snapshot = dict(result.attributes)

        status.consecutive_failures = 0
        status.failed_action = None
        status.failed_generation = None
        if status.get_condition(ConditionType.FAILED) is not None:
            status.set_condition(ConditionType.FAILED, False, "ActionAccepted", action.name, now=now)

        if action.kind == ActionKind.PDB_ACTION:
            self._mark_completed(resource, action)
            status.set_condition(ConditionType.PROGRESSING, False, "ActionCompleted", action.name, now=now)
            ready = LifecycleStateMachine.is_ready(status.lifecycle_state)
            status.set_condition(
                ConditionType.READY, ready,
                "Available" if ready else (status.lifecycle_state.value.title() if status.lifecycle_state else "Pending"),
                f"{action.name} completed", now=now,
            )
        else:
            if status.pending_action is not None:
                status.pending_action.dispatched = True
            status.set_condition(ConditionType.PROGRESSING, True, "ActionInProgress", action.name, now=now)
            status.set_condition(ConditionType.READY, False, "ActionInProgress", f"{action.name} in progress", now=now)

        await self._write_status(resource)
        return ReconcileResult(requeue_after=self.config.poll_interval, outcome="dispatched", action=action.name, dispatched=True)

    async def _dispatch_failed(
        self,
        resource: ManagedResource,
        action: CorrectiveAction,
        error: ActuatorError,
        now: datetime,
    ) -> ReconcileResult:
        metrics.record_actuator_error(resource.kind.value, error.classification)
        status = resource.status
        logger.warning(
            "action_failed",
            action=action.name,
            classification=error.classification,
            status_code=error.status,
            error=error.message,
        )
        status.set_condition(ConditionType.PROGRESSING, False, error.classification, error.message, now=now)

        if isinstance(error, PermanentError):
            status.pending_action = None
            status.failed_action = action.fingerprint
            status.failed_generation = resource.metadata.generation
            status.set_condition(ConditionType.FAILED, True, "ReconcileFailed", error.message, now=now)
            status.set_condition(ConditionType.READY, False, "ReconcileFailed", error.message, now=now)
            await self._write_status(resource)
            return ReconcileResult(requeue_after=self.config.resync_interval, outcome="permanent", action=action.name)

        if isinstance(error, ConflictError):
            status.pending_action = None
            await self._write_status(resource)
            return ReconcileResult(requeue_after=self.config.conflict_requeue, outcome="conflict", action=action.name)

        # A transient provisioning failure may still have landed remotely;
        # its claim stays until the list read finds the object
        if not LifecycleStateMachine.is_provisioning_action(action):
            status.pending_action = None
        status.consecutive_failures += 1
        delay = self.config.backoff.delay(status.consecutive_failures)
        await self._write_status(resource)
        return ReconcileResult(requeue_after=delay, outcome="transient", action=action.name)

    async def _observation_failed(self, resource: ManagedResource, error: ActuatorError, now: datetime) -> ReconcileResult:
        metrics.record_actuator_error(resource.kind.value, error.classification)
        status = resource.status
        logger.warning("observation_failed", classification=error.classification, error=error.message)
        status.set_condition(ConditionType.READY, False, error.classification, error.message, now=now)

        if isinstance(error, PermanentError):
            status.set_condition(ConditionType.FAILED, True, "ObservationFailed", error.message, now=now)
            await self._write_status(resource)
            return ReconcileResult(requeue_after=self.config.resync_interval, outcome="permanent")

        if isinstance(error, ConflictError):
            await self._write_status(resource)
            return ReconcileResult(requeue_after=self.config.conflict_requeue, outcome="conflict")

        status.consecutive_failures += 1
        await self._write_status(resource)
        return ReconcileResult(requeue_after=self.config.backoff.delay(status.consecutive_failures), outcome="transient")

    async def _configuration_failed(self, resource: ManagedResource, error: OperatorException) -> ReconcileResult:
        """Missing secrets, CDBs or unusable settings: surfaced and retried with backoff."""
        status = resource.status
        logger.warning("configuration_unusable", error=error.message)
        status.set_condition(ConditionType.READY, False, "ConfigurationError", error.message)
        status.consecutive_failures += 1
        await self._write_status(resource)
        return ReconcileResult(requeue_after=self.config.backoff.delay(status.consecutive_failures), outcome="configuration_error")

    async def _write_status(self, resource: ManagedResource) -> ManagedResource:
        resource.status.observed_generation = resource.metadata.generation
        return await self.store.update_status(resource)
