"""
Deletion policy - what local deletion means for the remote object.

Hard link: send Delete, then keep the finalizer until the remote object is
observed TERMINATING/TERMINATED (or gone), so the local object's
disappearance implies remote teardown is under way.

Soft link: drop the finalizer without calling the actuator; the remote
object is intentionally left running.
"""
from datetime import datetime

from oradb_operator.config.logging import get_logger
from oradb_operator.core.retry_policy import ReconcileResult, ReconcilerConfig
from oradb_operator.core.state_machine import LifecycleStateMachine
from oradb_operator.exceptions import ActuatorError, ConflictError, PermanentError
from oradb_operator.models.action import CorrectiveAction, DeleteMode
from oradb_operator.models.lifecycle import DELETION_IN_PROGRESS_STATES, LifecycleState
from oradb_operator.models.resource import ConditionType, ManagedResource, PendingAction
from oradb_operator.services import metrics

logger = get_logger(__name__)

# Observed states in which the finalizer may be released after a hard delete
RELEASABLE_STATES = DELETION_IN_PROGRESS_STATES | frozenset({LifecycleState.UNPLUGGED})


class DeletionPolicy:
    """Drives a resource marked for deletion to finalizer removal."""

    def __init__(self, store, actuators, config: ReconcilerConfig):
        self.store = store
        self.actuators = actuators
        self.config = config

    async def handle(self, resource: ManagedResource, action: CorrectiveAction, now: datetime) -> ReconcileResult:
        if not resource.has_finalizer:
            return ReconcileResult(requeue_after=None, outcome="finalized")

        if action.delete_mode == DeleteMode.SOFT:
            logger.info(
                "remote_object_detached",
                resource=str(resource.key),
                identity=resource.identity,
            )
            return await self._finalize(resource)

        if resource.identity is None:
            logger.info("finalizing_unprovisioned_resource", resource=str(resource.key))
            return await self._finalize(resource)

        try:
            actuator = await self.actuators.resolve(resource)
            observation = await actuator.observe(resource)
        except ActuatorError as e:
            return await self._failed(resource, action, e)

        state = observation.lifecycle_state if observation else None
        if state is None or state in RELEASABLE_STATES:
            logger.info(
                "remote_teardown_observed",
                resource=str(resource.key),
                identity=resource.identity,
                state=state.value if state else None,
            )
            return await self._finalize(resource)

        status = resource.status
        status.lifecycle_state = state
        status.remote_state = observation.raw_state

        pending = status.pending_action
        if pending is not None and pending.fingerprint == action.fingerprint:
            age = (now - pending.claimed_at).total_seconds()
            if age < self.config.deletion_wait_timeout:
                logger.debug("waiting_for_remote_teardown", resource=str(resource.key), state=state.value)
                await self.store.update_status(resource)
                return ReconcileResult(requeue_after=self.config.poll_interval, outcome="deleting", action=action.name)
            logger.warning(
                "remote_teardown_not_observed_resending_delete",
                resource=str(resource.key),
                waited_seconds=age,
            )

        if not LifecycleStateMachine.can_dispatch(action, state):
            await self.store.update_status(resource)
            return ReconcileResult(requeue_after=self.config.poll_interval, outcome="waiting", action=action.name)

        status.pending_action = PendingAction(
            fingerprint=action.fingerprint, action=action.name, claimed_at=now,
        )
        status.set_condition(ConditionType.PROGRESSING, True, "Deleting", "remote delete requested", now=now)
        resource = await self.store.update_status(resource)

        try:
            result = await actuator.dispatch(resource, action)
        except ActuatorError as e:
            return await self._failed(resource, action, e)

        metrics.record_action_dispatched(resource.kind.value, action.name)
        logger.info(
            "remote_delete_dispatched",
            resource=str(resource.key),
            identity=resource.identity,
        )
        status = resource.status
        status.pending_action.dispatched = True
        if result.lifecycle_state is not None:
            status.lifecycle_state = result.lifecycle_state
            status.remote_state = result.lifecycle_state.value
        await self.store.update_status(resource)
        return ReconcileResult(requeue_after=self.config.poll_interval, outcome="deleting", action=action.name, dispatched=True)

    async def _finalize(self, resource: ManagedResource) -> ReconcileResult:
        await self.store.remove_finalizer(resource)
        return ReconcileResult(requeue_after=None, outcome="finalized")

    async def _failed(self, resource: ManagedResource, action: CorrectiveAction, error: ActuatorError) -> ReconcileResult:
        metrics.record_actuator_error(resource.kind.value, error.classification)
        status = resource.status

        if isinstance(error, PermanentError) and error.status == 404:
            logger.info("remote_object_already_gone", resource=str(resource.key), identity=resource.identity)
            return await self._finalize(resource)

        logger.warning(
            "remote_delete_failed",
            resource=str(resource.key),
            classification=error.classification,
            error=error.message,
        )
        status.pending_action = None
        status.set_condition(ConditionType.PROGRESSING, False, error.classification, error.message)

        if isinstance(error, PermanentError):
            status.set_condition(ConditionType.FAILED, True, "DeleteFailed", error.message)
            await self.store.update_status(resource)
            return ReconcileResult(requeue_after=self.config.resync_interval, outcome="permanent", action=action.name)

        if isinstance(error, ConflictError):
            await self.store.update_status(resource)
            return ReconcileResult(requeue_after=self.config.conflict_requeue, outcome="conflict", action=action.name)

        status.consecutive_failures += 1
        await self.store.update_status(resource)
        return ReconcileResult(
            requeue_after=self.config.backoff.delay(status.consecutive_failures), outcome="transient", action=action.name,
        )
