from oradb_operator.models.action import ActionKind, CorrectiveAction, DeleteMode, PdbActionKind
from oradb_operator.models.lifecycle import LifecycleState
from oradb_operator.models.resource import (
    AutonomousDatabase,
    ContainerDatabase,
    ManagedResource,
    PluggableDatabase,
    ResourceKey,
    ResourceKind,
)
from oradb_operator.models.observation import DispatchResult, RemoteObservation

__all__ = [
    "ActionKind",
    "AutonomousDatabase",
    "ContainerDatabase",
    "CorrectiveAction",
    "DeleteMode",
    "DispatchResult",
    "LifecycleState",
    "ManagedResource",
    "PdbActionKind",
    "PluggableDatabase",
    "RemoteObservation",
    "ResourceKey",
    "ResourceKind",
]
