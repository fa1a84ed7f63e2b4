"""
Lifecycle State Machine for managed Oracle databases

Remote lifecycle states belong to the remote control planes (the OCI
Database service and the CDB REST gateway). This module does not model
transitions between them; it supplies the precondition table that gates
every mutating call: the set of remote states in which each action may be
sent without provoking a conflict or corrupting remote state.

Usage:
    >>> from oradb_operator.core.state_machine import LifecycleStateMachine
    >>> from oradb_operator.models import CorrectiveAction, LifecycleState
    >>>
    >>> LifecycleStateMachine.can_dispatch(
    ...     CorrectiveAction.update({"cpu_core_count": 2}),
    ...     LifecycleState.AVAILABLE,
    ... )
    True
    >>> LifecycleStateMachine.can_dispatch(
    ...     CorrectiveAction.update({"cpu_core_count": 2}),
    ...     LifecycleState.PROVISIONING,
    ... )
    False
"""

from typing import Dict, FrozenSet, Optional

from oradb_operator.config.logging import get_logger
from oradb_operator.core.retry_policy import RetryPolicy
from oradb_operator.models.action import ActionKind, CorrectiveAction, PdbActionKind
from oradb_operator.models.lifecycle import (
    DELETION_IN_PROGRESS_STATES,
    DESIRED_TARGET_STATES,
    PDB_PRESENT_STATES,
    READY_STATES,
    TERMINAL_STATES,
    LifecycleState,
)

logger = get_logger(__name__)

# Stands for "no remote object observed"
ABSENT = None

StateSet = FrozenSet[Optional[LifecycleState]]


class LifecycleStateMachine:
    """
    Precondition table for corrective actions.

    Keys are rule names derived from the action (see ``rule_for``); values
    are the remote states in which the action may be sent.
    """

    PRECONDITIONS: Dict[str, StateSet] = {
        "provision": frozenset({ABSENT}),
        "bind": frozenset({ABSENT}),
        "update_attributes": frozenset({
            LifecycleState.AVAILABLE,
            LifecycleState.OPEN,
            LifecycleState.MOUNTED,
            LifecycleState.READ_ONLY,
        }),
        "change_state:AVAILABLE": frozenset({LifecycleState.STOPPED}),
        "change_state:STOPPED": frozenset({LifecycleState.AVAILABLE}),
        "pdb:Create": frozenset({ABSENT}),
        "pdb:Clone": frozenset({ABSENT}),
        "pdb:Plug": frozenset({ABSENT}),
        # The gateway refuses to unplug an open PDB
        "pdb:Unplug": frozenset({LifecycleState.MOUNTED}),
        "pdb:Modify": PDB_PRESENT_STATES,
        "pdb:Map": PDB_PRESENT_STATES,
        "pdb:Delete": PDB_PRESENT_STATES,
    }

    # Delete is legal everywhere except while the remote side is already tearing down
    DELETE_EXCLUDED: StateSet = DELETION_IN_PROGRESS_STATES

    # States showing that a sent action has been picked up remotely
    IN_FLIGHT: Dict[str, StateSet] = {
        "update_attributes": frozenset({
            LifecycleState.UPDATING,
            LifecycleState.SCALE_IN_PROGRESS,
        }),
        "change_state:AVAILABLE": frozenset({
            LifecycleState.STARTING,
            LifecycleState.AVAILABLE,
        }),
        "change_state:STOPPED": frozenset({
            LifecycleState.STOPPING,
            LifecycleState.STOPPED,
        }),
        "delete": DELETION_IN_PROGRESS_STATES | frozenset({ABSENT}),
        "pdb:Create": PDB_PRESENT_STATES,
        "pdb:Clone": PDB_PRESENT_STATES,
        "pdb:Plug": PDB_PRESENT_STATES,
        # Map only reads the PDB; it is always sent once and recorded as completed
        "pdb:Unplug": frozenset({ABSENT, LifecycleState.UNPLUGGED}),
        "pdb:Delete": frozenset({ABSENT, LifecycleState.TERMINATED}),
    }

    @staticmethod
    def rule_for(action: CorrectiveAction) -> str:
        """
        Name of the precondition rule governing ``action``.

        Example:
            >>> LifecycleStateMachine.rule_for(
            ...     CorrectiveAction.change_state(LifecycleState.STOPPED)
            ... )
            'change_state:STOPPED'
        """
        if action.kind == ActionKind.CHANGE_STATE and action.target_state:
            return f"change_state:{action.target_state.value}"
        if action.kind == ActionKind.PDB_ACTION and action.pdb_action:
            return f"pdb:{action.pdb_action.value}"
        return action.kind.value

    @classmethod
    def retry_policy_for(
        cls,
        action: CorrectiveAction,
        poll_interval: float,
        max_wait: float,
    ) -> RetryPolicy:
        """Build the policy that waits for ``action``'s precondition."""
        if action.kind == ActionKind.DELETE:
            return RetryPolicy(
                expected_states=None,
                excluded_states=cls.DELETE_EXCLUDED,
                max_wait=max_wait,
                poll_interval=poll_interval,
            )
        expected = cls.PRECONDITIONS.get(cls.rule_for(action), frozenset())
        return RetryPolicy(
            expected_states=expected,
            max_wait=max_wait,
            poll_interval=poll_interval,
        )

    @classmethod
    def can_dispatch(
        cls,
        action: CorrectiveAction,
        state: Optional[LifecycleState],
    ) -> bool:
        """
        Check whether ``action`` may be sent while the remote side is in ``state``.

        Args:
            action: Corrective action about to be dispatched
            state: Observed remote state, None when no remote object exists

        Returns:
            True if the action's precondition holds
        """
        if not action.touches_remote:
            return True
        policy = cls.retry_policy_for(action, poll_interval=0, max_wait=0)
        allowed = policy.is_satisfied(state)
        if not allowed:
            logger.debug(
                "precondition_not_met",
                action=action.name,
                state=state.value if state else None,
                expected=policy.describe(),
            )
        return allowed

    @classmethod
    def has_taken_effect(
        cls,
        action: CorrectiveAction,
        state: Optional[LifecycleState],
    ) -> bool:
        """
        Check whether the remote side shows that ``action`` has landed.

        Used for an action that was claimed but whose result never made it
        into status (e.g. the status write lost a race after the call).
        """
        rule = cls.rule_for(action)
        if rule == "pdb:Modify":
            requested = str(action.params.get("state") or "").upper()
            if requested == "CLOSE":
                return state == LifecycleState.MOUNTED
            if requested == "OPEN":
                return state in (LifecycleState.OPEN, LifecycleState.READ_ONLY)
            return False
        in_flight = cls.IN_FLIGHT.get(rule)
        return in_flight is not None and state in in_flight

    @staticmethod
    def is_terminal(state: Optional[LifecycleState]) -> bool:
        return state in TERMINAL_STATES

    @staticmethod
    def is_ready(state: Optional[LifecycleState]) -> bool:
        return state in READY_STATES

    @staticmethod
    def is_legal_target(state: Optional[LifecycleState]) -> bool:
        """UNKNOWN and transitional states are never valid desired states."""
        return state in DESIRED_TARGET_STATES

    @staticmethod
    def is_provisioning_action(action: CorrectiveAction) -> bool:
        """Actions that give an unidentified resource its identity."""
        if action.kind in (ActionKind.PROVISION, ActionKind.BIND):
            return True
        return action.kind == ActionKind.PDB_ACTION and action.pdb_action in (
            PdbActionKind.CREATE,
            PdbActionKind.CLONE,
            PdbActionKind.PLUG,
            PdbActionKind.MAP,
        )
