"""
Corrective actions produced by drift detection.
"""
import hashlib
import json
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from oradb_operator.models.lifecycle import LifecycleState


class ActionKind(str, Enum):
    """One unit of remote work."""

    PROVISION = "provision"
    BIND = "bind"
    UPDATE_ATTRIBUTES = "update_attributes"
    CHANGE_STATE = "change_state"
    DELETE = "delete"
    PDB_ACTION = "pdb_action"


class DeleteMode(str, Enum):
    """Whether local deletion cascades to the remote object."""

    HARD = "hard"
    SOFT = "soft"


class PdbActionKind(str, Enum):
    """One-shot lifecycle actions executed by the REST gateway."""

    CREATE = "Create"
    CLONE = "Clone"
    PLUG = "Plug"
    UNPLUG = "Unplug"
    DELETE = "Delete"
    MODIFY = "Modify"
    MAP = "Map"


class CorrectiveAction(BaseModel):
    """
    A single unit of remote work derived from current state.

    ``fingerprint`` identifies the drift the action corrects, so the same
    drift seen on consecutive passes maps to the same fingerprint and is
    dispatched once.
    """

    model_config = ConfigDict(frozen=True)

    kind: ActionKind
    target_state: Optional[LifecycleState] = None
    delete_mode: Optional[DeleteMode] = None
    pdb_action: Optional[PdbActionKind] = None
    changes: Dict[str, Any] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        payload = json.dumps(
            {
                "kind": self.kind.value,
                "target_state": self.target_state.value if self.target_state else None,
                "delete_mode": self.delete_mode.value if self.delete_mode else None,
                "pdb_action": self.pdb_action.value if self.pdb_action else None,
                "changes": self.changes,
                "params": self.params,
            },
            sort_keys=True,
            default=str,
        )
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
        return f"{self.name}:{digest}"

    @property
    def name(self) -> str:
        """Short label used in logs, metrics and status."""
        if self.kind == ActionKind.PDB_ACTION and self.pdb_action:
            return f"pdb_{self.pdb_action.value.lower()}"
        if self.kind == ActionKind.CHANGE_STATE and self.target_state:
            return f"change_state_{self.target_state.value.lower()}"
        if self.kind == ActionKind.DELETE and self.delete_mode:
            return f"delete_{self.delete_mode.value}"
        return self.kind.value

    @property
    def touches_remote(self) -> bool:
        """Soft deletes only detach local management."""
        return not (self.kind == ActionKind.DELETE and self.delete_mode == DeleteMode.SOFT)

    @classmethod
    def provision(cls, **params: Any) -> "CorrectiveAction":
        return cls(kind=ActionKind.PROVISION, params=params)

    @classmethod
    def bind(cls, identity: str) -> "CorrectiveAction":
        return cls(kind=ActionKind.BIND, params={"identity": identity})

    @classmethod
    def update(cls, changes: Dict[str, Any]) -> "CorrectiveAction":
        return cls(kind=ActionKind.UPDATE_ATTRIBUTES, changes=changes)

    @classmethod
    def change_state(cls, target: LifecycleState) -> "CorrectiveAction":
        return cls(kind=ActionKind.CHANGE_STATE, target_state=target)

    @classmethod
    def delete(cls, mode: DeleteMode) -> "CorrectiveAction":
        return cls(kind=ActionKind.DELETE, delete_mode=mode)

    @classmethod
    def pdb(cls, action: PdbActionKind, **params: Any) -> "CorrectiveAction":
        return cls(kind=ActionKind.PDB_ACTION, pdb_action=action, params=params)
