"""
Drift detection between a resource's declared spec and its last-observed remote state.

The detector is pure: it reads the resource (spec + status) and returns at
most one corrective action. Priority, highest first:

1. marked for deletion -> Delete(hard|soft)
2. no identity, adopt identifier declared -> Bind
3. no identity, nothing to adopt -> Provision
4. desired lifecycle state differs from observed -> ChangeState
5. comparable attribute differs from the confirmed snapshot -> UpdateAttributes
6. PDB one-shot action not yet completed -> PdbAction
"""
from typing import Any, Dict, Optional, Tuple

from oradb_operator.config.logging import get_logger
from oradb_operator.core.state_machine import LifecycleStateMachine
from oradb_operator.models.action import CorrectiveAction, DeleteMode, PdbActionKind
from oradb_operator.models.resource import (
    AutonomousDatabase,
    ManagedResource,
    PDBSpec,
    PluggableDatabase,
)

logger = get_logger(__name__)

# Spec fields compared against status.snapshot; order is the order changes are reported
COMPARABLE_ATTRIBUTES: Tuple[str, ...] = (
    "display_name",
    "cpu_core_count",
    "data_storage_size_in_tbs",
    "is_auto_scaling_enabled",
    "freeform_tags",
    "nsg_ocids",
    "subnet_ocid",
    "private_endpoint_label",
)

# Compared without regard to order
UNORDERED_ATTRIBUTES = frozenset({"nsg_ocids"})

# PDB spec fields each gateway action carries
PDB_ACTION_FIELDS: Dict[PdbActionKind, Tuple[str, ...]] = {
    PdbActionKind.CREATE: (
        "pdb_name", "file_name_conversions", "unlimited_storage",
        "reuse_temp_file", "total_size", "temp_size", "tde_import", "get_script",
    ),
    PdbActionKind.CLONE: (
        "pdb_name", "src_pdb_name", "file_name_conversions", "unlimited_storage",
        "total_size", "temp_size", "get_script",
    ),
    PdbActionKind.PLUG: (
        "pdb_name", "xml_file_name", "source_file_name_conversions", "copy_action",
        "file_name_conversions", "unlimited_storage", "reuse_temp_file",
        "total_size", "temp_size", "tde_import", "get_script",
    ),
    PdbActionKind.UNPLUG: ("pdb_name", "xml_file_name", "tde_export", "get_script"),
    PdbActionKind.MODIFY: ("pdb_name", "pdb_state", "modify_option", "get_script"),
    PdbActionKind.DELETE: ("pdb_name", "drop_action"),
    PdbActionKind.MAP: ("pdb_name",),
}

# The gateway's modify endpoint names the requested open mode "state"
PDB_PARAM_NAMES = {"pdb_state": "state"}


def _normalize(name: str, value: Any) -> Any:
    if name in UNORDERED_ATTRIBUTES and isinstance(value, (list, tuple)):
        return sorted(value)
    return value


def attribute_changes(desired: Dict[str, Any], confirmed: Dict[str, Any]) -> Dict[str, Any]:
    """
    Compare declared attributes with the last-confirmed remote snapshot.

    An attribute unset in ``desired`` is "no opinion" and never a difference.

    Returns:
        Mapping of attribute name to desired value for every difference
    """
    changes: Dict[str, Any] = {}
    for name in COMPARABLE_ATTRIBUTES:
        wanted = desired.get(name)
        if wanted is None:
            continue
        if _normalize(name, wanted) != _normalize(name, confirmed.get(name)):
            changes[name] = wanted
    return changes


def pdb_action_params(spec: PDBSpec, action: PdbActionKind) -> Dict[str, Any]:
    """Parameters carried by a PDB action, taken from the fields it uses."""
    params: Dict[str, Any] = {}
    for field_name in PDB_ACTION_FIELDS[action]:
        value = getattr(spec, field_name)
        if value is not None:
            params[PDB_PARAM_NAMES.get(field_name, field_name)] = value
    return params


def provision_params(resource: AutonomousDatabase) -> Dict[str, Any]:
    """Parameters of a Provision action (Clone when a source is declared)."""
    details = resource.spec.details
    params = details.model_dump(
        exclude={"autonomous_database_ocid", "source_ocid", "lifecycle_state", "wallet", "admin_password"},
        exclude_none=True,
    )
    if details.source_ocid:
        params["source_id"] = details.source_ocid
    return params


class DriftDetector:
    """
    Produces zero or one corrective action per pass.

    Backend-agnostic: it only looks at the resource model and the state
    recorded on its status by the last observation.
    """

    def detect(self, resource: ManagedResource) -> Optional[CorrectiveAction]:
        if resource.is_deleting:
            mode = DeleteMode.HARD if resource.hard_link_delete else DeleteMode.SOFT
            return CorrectiveAction.delete(mode)

        if isinstance(resource, PluggableDatabase):
            return self._detect_pdb(resource)
        if isinstance(resource, AutonomousDatabase):
            return self._detect_autonomous_database(resource)
        return None

    def identity_conflict(self, resource: ManagedResource) -> Optional[str]:
        """
        Return a message when the spec tries to re-point an identified resource.
        """
        identity = resource.identity
        declared = resource.declared_identity
        if identity and declared and declared != identity:
            return (
                f"identity is immutable: resource is bound to {identity}, "
                f"spec declares {declared}"
            )
        return None

    def _detect_autonomous_database(self, resource: AutonomousDatabase) -> Optional[CorrectiveAction]:
        if resource.identity is None:
            declared = resource.declared_identity
            if declared:
                return CorrectiveAction.bind(declared)
            return CorrectiveAction.provision(**provision_params(resource))

        observed = resource.status.lifecycle_state
        desired = resource.desired_state
        if desired is not None and desired != observed:
            if LifecycleStateMachine.is_legal_target(desired):
                return CorrectiveAction.change_state(desired)
            logger.warning(
                "desired_state_not_a_legal_target",
                resource=str(resource.key),
                desired=resource.spec.details.lifecycle_state,
            )

        declared = resource.spec.details.model_dump(include=set(COMPARABLE_ATTRIBUTES))
        changes = attribute_changes(declared, resource.status.snapshot)
        if changes:
            return CorrectiveAction.update(changes)
        return None

    def _detect_pdb(self, resource: PluggableDatabase) -> Optional[CorrectiveAction]:
        action = resource.spec.action
        if action is None:
            return None
        candidate = CorrectiveAction.pdb(action, **pdb_action_params(resource.spec, action))
        if resource.status.completed_action_fingerprint == candidate.fingerprint:
            return None
        return candidate


drift_detector = DriftDetector()
