"""
Remote lifecycle states.

States are owned by the remote control planes. The operator only observes
them; it never invents a transition.
"""
from enum import Enum
from typing import Optional


class LifecycleState(str, Enum):
    """
    Open enumeration of remote lifecycle states.

    Values that the remote side adds later parse to UNKNOWN instead of
    failing, so precondition checks keep working.
    """

    # OCI Autonomous Database
    PROVISIONING = "PROVISIONING"
    AVAILABLE = "AVAILABLE"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    UPDATING = "UPDATING"
    SCALE_IN_PROGRESS = "SCALE_IN_PROGRESS"
    AVAILABLE_NEEDS_ATTENTION = "AVAILABLE_NEEDS_ATTENTION"
    BACKUP_IN_PROGRESS = "BACKUP_IN_PROGRESS"
    RESTORE_IN_PROGRESS = "RESTORE_IN_PROGRESS"
    TERMINATING = "TERMINATING"
    TERMINATED = "TERMINATED"
    UNAVAILABLE = "UNAVAILABLE"
    FAILED = "FAILED"

    # REST gateway (pluggable databases)
    OPEN = "OPEN"
    READ_ONLY = "READ_ONLY"
    MOUNTED = "MOUNTED"
    UNPLUGGED = "UNPLUGGED"

    UNKNOWN = "UNKNOWN"

    @classmethod
    def _missing_(cls, value: object) -> "LifecycleState":
        if isinstance(value, str):
            normalized = value.strip().upper().replace(" ", "_").replace("-", "_")
            for member in cls:
                if member.value == normalized:
                    return member
        return cls.UNKNOWN

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["LifecycleState"]:
        """Parse a remote value; None stays None (nothing observed)."""
        if value is None:
            return None
        return cls(value)


# Remote object exists and accepts work
READY_STATES = frozenset({
    LifecycleState.AVAILABLE,
    LifecycleState.OPEN,
    LifecycleState.MOUNTED,
})

# PDB present in the CDB
PDB_PRESENT_STATES = frozenset({
    LifecycleState.OPEN,
    LifecycleState.READ_ONLY,
    LifecycleState.MOUNTED,
})

# Remote object is gone or going; nothing more to drive
TERMINAL_STATES = frozenset({
    LifecycleState.TERMINATED,
    LifecycleState.FAILED,
    LifecycleState.UNPLUGGED,
})

DELETION_IN_PROGRESS_STATES = frozenset({
    LifecycleState.TERMINATING,
    LifecycleState.TERMINATED,
})

# States a user may request through spec.details.lifecycleState
DESIRED_TARGET_STATES = frozenset({
    LifecycleState.AVAILABLE,
    LifecycleState.STOPPED,
})
