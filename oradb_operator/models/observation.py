"""
Remote observations returned by actuators.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from oradb_operator.models.lifecycle import LifecycleState
from oradb_operator.models.resource import utcnow


class RemoteObservation(BaseModel):
    """
    What a remote control plane reported about one object.

    ``attributes`` uses the operator's snake_case spec field names so drift
    detection compares like with like.
    """

    identity: str
    lifecycle_state: LifecycleState
    raw_state: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    observed_at: datetime = Field(default_factory=utcnow)
    source: str = "get"

    def agrees_with(self, other: "RemoteObservation") -> bool:
        return (
            self.identity == other.identity
            and self.lifecycle_state == other.lifecycle_state
        )


class DispatchResult(BaseModel):
    """
    What the actuator reported back for an accepted mutating call.

    Remote operations are long-running; ``lifecycle_state`` is whatever the
    remote side reported at acceptance (e.g. PROVISIONING), not the outcome.
    """

    identity: Optional[str] = None
    lifecycle_state: Optional[LifecycleState] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    work_request_id: Optional[str] = None
