"""
Pydantic models for the operator's custom resources.

Field aliases follow the camelCase names used in the Kubernetes manifests, so
bodies returned by the API server validate directly and status is written
back with the same spelling.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from oradb_operator.models.action import PdbActionKind
from oradb_operator.models.lifecycle import LifecycleState

GROUP = "database.oracle.com"
VERSION = "v1alpha1"
FINALIZER = "database.oracle.com/oradb-operator-finalizer"
WALLET_SECRET_SUFFIX = "-instance-wallet"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceKind(str, Enum):
    """Custom resource kinds served by the operator."""

    AUTONOMOUS_DATABASE = "AutonomousDatabase"
    PDB = "PDB"
    CDB = "CDB"

    @property
    def plural(self) -> str:
        return {
            ResourceKind.AUTONOMOUS_DATABASE: "autonomousdatabases",
            ResourceKind.PDB: "pdbs",
            ResourceKind.CDB: "cdbs",
        }[self]


class ResourceKey(NamedTuple):
    kind: ResourceKind
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.namespace}/{self.name}"


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ObjectMeta(CamelModel):
    name: str
    namespace: str = "default"
    uid: Optional[str] = None
    resource_version: Optional[str] = Field(default=None, alias="resourceVersion")
    generation: int = 0
    deletion_timestamp: Optional[datetime] = Field(default=None, alias="deletionTimestamp")
    finalizers: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("finalizers", mode="before")
    @classmethod
    def none_finalizers(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("labels", mode="before")
    @classmethod
    def none_labels(cls, v: Any) -> Any:
        return {} if v is None else v


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class ConditionType(str, Enum):
    READY = "Ready"
    PROGRESSING = "Progressing"
    FAILED = "Failed"
    WALLET_READY = "WalletReady"


class Condition(CamelModel):
    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utcnow, alias="lastTransitionTime")


class PendingAction(CamelModel):
    """A mutating call this operator has claimed or sent and not yet seen land."""

    fingerprint: str
    action: str
    claimed_at: datetime = Field(default_factory=utcnow, alias="claimedAt")
    dispatched: bool = False


class ResourceStatus(CamelModel):
    identity: Optional[str] = None
    lifecycle_state: Optional[LifecycleState] = Field(default=None, alias="lifecycleState")
    remote_state: Optional[str] = Field(default=None, alias="remoteState")
    snapshot: Dict[str, Any] = Field(default_factory=dict)
    observed_generation: Optional[int] = Field(default=None, alias="observedGeneration")
    last_observed_at: Optional[datetime] = Field(default=None, alias="lastObservedAt")
    conditions: List[Condition] = Field(default_factory=list)
    pending_action: Optional[PendingAction] = Field(default=None, alias="pendingAction")
    failed_action: Optional[str] = Field(default=None, alias="failedAction")
    failed_generation: Optional[int] = Field(default=None, alias="failedGeneration")
    consecutive_failures: int = Field(default=0, alias="consecutiveFailures")
    waiting_since: Optional[datetime] = Field(default=None, alias="waitingSince")
    completed_action: Optional[str] = Field(default=None, alias="completedAction")
    completed_action_fingerprint: Optional[str] = Field(default=None, alias="completedActionFingerprint")
    wallet_secret: Optional[str] = Field(default=None, alias="walletSecret")

    @field_validator("lifecycle_state", mode="before")
    @classmethod
    def parse_state(cls, v: Any) -> Any:
        if isinstance(v, str):
            return LifecycleState.parse(v)
        return v

    def get_condition(self, condition_type: ConditionType) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type.value:
                return condition
        return None

    def set_condition(
        self,
        condition_type: ConditionType,
        status: bool,
        reason: str,
        message: str = "",
        now: Optional[datetime] = None,
    ) -> Condition:
        """
        Upsert a condition.

        lastTransitionTime only moves when the condition's status flips.
        """
        value = "True" if status else "False"
        now = now or utcnow()
        existing = self.get_condition(condition_type)
        if existing is None:
            existing = Condition(
                type=condition_type.value, status=value, reason=reason,
                message=message, last_transition_time=now,
            )
            self.conditions.append(existing)
            return existing

        if existing.status != value:
            existing.last_transition_time = now
        existing.status = value
        existing.reason = reason
        existing.message = message
        return existing

    def is_condition_true(self, condition_type: ConditionType) -> bool:
        condition = self.get_condition(condition_type)
        return condition is not None and condition.status == "True"


# ---------------------------------------------------------------------------
# Spec fragments
# ---------------------------------------------------------------------------


class K8sSecret(CamelModel):
    name: Optional[str] = None
    key: Optional[str] = None


class PasswordSpec(CamelModel):
    k8s_secret: K8sSecret = Field(default_factory=K8sSecret, alias="k8sSecret")


class WalletSpec(CamelModel):
    name: Optional[str] = None
    password: PasswordSpec = Field(default_factory=PasswordSpec)


class SecretKeyRef(CamelModel):
    secret_name: str = Field(alias="secretName")
    key: str


class SecretRef(CamelModel):
    secret: SecretKeyRef


class AutonomousDatabaseDetails(CamelModel):
    autonomous_database_ocid: Optional[str] = Field(default=None, alias="autonomousDatabaseOCID")
    source_ocid: Optional[str] = Field(default=None, alias="sourceOCID")
    compartment_ocid: Optional[str] = Field(default=None, alias="compartmentOCID")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    db_name: Optional[str] = Field(default=None, alias="dbName")
    db_workload: Optional[str] = Field(default=None, alias="dbWorkload")
    is_dedicated: Optional[bool] = Field(default=None, alias="isDedicated")
    db_version: Optional[str] = Field(default=None, alias="dbVersion")
    data_storage_size_in_tbs: Optional[int] = Field(default=None, alias="dataStorageSizeInTBs")
    cpu_core_count: Optional[int] = Field(default=None, alias="cpuCoreCount")
    is_auto_scaling_enabled: Optional[bool] = Field(default=None, alias="isAutoScalingEnabled")
    admin_password: Optional[PasswordSpec] = Field(default=None, alias="adminPassword")
    freeform_tags: Optional[Dict[str, str]] = Field(default=None, alias="freeformTags")
    subnet_ocid: Optional[str] = Field(default=None, alias="subnetOCID")
    nsg_ocids: Optional[List[str]] = Field(default=None, alias="nsgOCIDs")
    private_endpoint_label: Optional[str] = Field(default=None, alias="privateEndpointLabel")
    lifecycle_state: Optional[str] = Field(default=None, alias="lifecycleState")
    wallet: Optional[WalletSpec] = None


class OCIConfigSpec(CamelModel):
    """Per-resource override of the OCI SDK profile."""

    config_file: Optional[str] = Field(default=None, alias="configFile")
    profile: Optional[str] = None
    region: Optional[str] = None


class AutonomousDatabaseSpec(CamelModel):
    details: AutonomousDatabaseDetails = Field(default_factory=AutonomousDatabaseDetails)
    hard_link: bool = Field(default=False, alias="hardLink")
    oci_config: Optional[OCIConfigSpec] = Field(default=None, alias="ociConfig")


class PDBSpec(CamelModel):
    cdb_res_name: str = Field(alias="cdbResName")
    cdb_namespace: Optional[str] = Field(default=None, alias="cdbNamespace")
    cdb_name: Optional[str] = Field(default=None, alias="cdbName")
    pdb_name: str = Field(alias="pdbName")
    src_pdb_name: Optional[str] = Field(default=None, alias="srcPdbName")
    xml_file_name: Optional[str] = Field(default=None, alias="xmlFileName")
    action: Optional[PdbActionKind] = None
    admin_name: Optional[SecretRef] = Field(default=None, alias="adminName")
    admin_pwd: Optional[SecretRef] = Field(default=None, alias="adminPwd")
    file_name_conversions: Optional[str] = Field(default=None, alias="fileNameConversions")
    source_file_name_conversions: Optional[str] = Field(default=None, alias="sourceFileNameConversions")
    copy_action: Optional[str] = Field(default=None, alias="copyAction")
    total_size: Optional[str] = Field(default=None, alias="totalSize")
    temp_size: Optional[str] = Field(default=None, alias="tempSize")
    unlimited_storage: Optional[bool] = Field(default=None, alias="unlimitedStorage")
    reuse_temp_file: Optional[bool] = Field(default=None, alias="reuseTempFile")
    tde_import: Optional[bool] = Field(default=None, alias="tdeImport")
    tde_export: Optional[bool] = Field(default=None, alias="tdeExport")
    pdb_state: Optional[str] = Field(default=None, alias="pdbState")
    modify_option: Optional[str] = Field(default=None, alias="modifyOption")
    drop_action: Optional[str] = Field(default=None, alias="dropAction")
    get_script: Optional[bool] = Field(default=None, alias="getScript")
    assertive_pdb_deletion: bool = Field(default=False, alias="assertivePdbDeletion")

    @field_validator("action", mode="before")
    @classmethod
    def parse_action(cls, v: Any) -> Any:
        if isinstance(v, str):
            for member in PdbActionKind:
                if member.value.lower() == v.strip().lower():
                    return member
        return v


class CDBSpec(CamelModel):
    cdb_name: Optional[str] = Field(default=None, alias="cdbName")
    db_server: Optional[str] = Field(default=None, alias="dbServer")
    db_port: Optional[int] = Field(default=None, alias="dbPort")
    service_name: Optional[str] = Field(default=None, alias="serviceName")
    ords_port: Optional[int] = Field(default=None, alias="ordsPort")
    replicas: Optional[int] = None
    sys_admin_pwd: Optional[SecretRef] = Field(default=None, alias="sysAdminPwd")
    ords_pwd: Optional[SecretRef] = Field(default=None, alias="ordsPwd")
    cdb_admin_user: Optional[SecretRef] = Field(default=None, alias="cdbAdminUser")
    cdb_admin_pwd: Optional[SecretRef] = Field(default=None, alias="cdbAdminPwd")
    web_server_user: Optional[SecretRef] = Field(default=None, alias="webServerUser")
    web_server_pwd: Optional[SecretRef] = Field(default=None, alias="webServerPwd")
    cdb_tls_key: Optional[SecretRef] = Field(default=None, alias="cdbTlsKey")
    cdb_tls_crt: Optional[SecretRef] = Field(default=None, alias="cdbTlsCrt")


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


class ManagedResource(CamelModel):
    """
    A custom resource whose remote counterpart the operator drives.

    ``identity`` lives on status and is written only by provisioning or
    binding; once set it never changes.
    """

    kind: ClassVar[ResourceKind]

    api_version: str = Field(default=f"{GROUP}/{VERSION}", alias="apiVersion")
    metadata: ObjectMeta
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    @field_validator("status", mode="before")
    @classmethod
    def none_status(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.metadata.namespace, self.metadata.name)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def identity(self) -> Optional[str]:
        return self.status.identity

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return FINALIZER in self.metadata.finalizers

    @property
    def hard_link_delete(self) -> bool:
        """Whether deleting the resource also deletes the remote object."""
        return False

    @property
    def declared_identity(self) -> Optional[str]:
        """Pre-existing remote identifier the user asked to adopt."""
        return None

    def status_body(self) -> Dict[str, Any]:
        """Body for a status-subresource replace, carrying the read resourceVersion."""
        metadata: Dict[str, Any] = {
            "name": self.metadata.name,
            "namespace": self.metadata.namespace,
        }
        if self.metadata.resource_version:
            metadata["resourceVersion"] = self.metadata.resource_version
        return {
            "apiVersion": self.api_version,
            "kind": self.kind.value,
            "metadata": metadata,
            "status": self.status.model_dump(by_alias=True, exclude_none=True, mode="json"),
        }


class AutonomousDatabase(ManagedResource):
    kind: ClassVar[ResourceKind] = ResourceKind.AUTONOMOUS_DATABASE

    spec: AutonomousDatabaseSpec = Field(default_factory=AutonomousDatabaseSpec)

    @property
    def hard_link_delete(self) -> bool:
        return self.spec.hard_link

    @property
    def declared_identity(self) -> Optional[str]:
        return self.spec.details.autonomous_database_ocid

    @property
    def desired_state(self) -> Optional[LifecycleState]:
        return LifecycleState.parse(self.spec.details.lifecycle_state)

    @property
    def wallet_secret_name(self) -> str:
        wallet = self.spec.details.wallet
        if wallet and wallet.name:
            return wallet.name
        return f"{self.metadata.name}{WALLET_SECRET_SUFFIX}"

    @property
    def requires_wallet(self) -> bool:
        wallet = self.spec.details.wallet
        return bool(wallet and wallet.password.k8s_secret.name)


class PluggableDatabase(ManagedResource):
    kind: ClassVar[ResourceKind] = ResourceKind.PDB

    spec: PDBSpec

    @property
    def hard_link_delete(self) -> bool:
        return self.spec.assertive_pdb_deletion

    @property
    def cdb_namespace(self) -> str:
        return self.spec.cdb_namespace or self.metadata.namespace


class ContainerDatabase(CamelModel):
    """Read-only input describing where a CDB's REST gateway lives."""

    kind: ClassVar[ResourceKind] = ResourceKind.CDB

    metadata: ObjectMeta
    spec: CDBSpec = Field(default_factory=CDBSpec)


_MODELS = {
    ResourceKind.AUTONOMOUS_DATABASE: AutonomousDatabase,
    ResourceKind.PDB: PluggableDatabase,
    ResourceKind.CDB: ContainerDatabase,
}


def parse_resource(kind: ResourceKind, body: Dict[str, Any]) -> BaseModel:
    """Validate a raw API-server body into the model for ``kind``."""
    return _MODELS[kind].model_validate(body)
