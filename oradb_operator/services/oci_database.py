"""
OCI Database service backend for Autonomous Databases.

SDK calls are blocking; each one runs in a worker thread and is bounded by
``asyncio.wait_for``. SDK failures are classified into the operator's
Transient / Conflict / Permanent taxonomy here and nowhere else.
"""
import asyncio
import io
import os
import zipfile
from typing import Any, Callable, Dict, Optional

import oci
from pydantic import BaseModel

from oradb_operator.config.logging import get_logger
from oradb_operator.config.settings import Settings
from oradb_operator.exceptions import (
    ActuatorError,
    ConflictError,
    PermanentError,
    TransientError,
    WalletError,
)
from oradb_operator.models.action import ActionKind, CorrectiveAction
from oradb_operator.models.lifecycle import LifecycleState
from oradb_operator.models.observation import DispatchResult, RemoteObservation
from oradb_operator.models.resource import AutonomousDatabase, OCIConfigSpec
from oradb_operator.services.actuator import SecretReader

logger = get_logger(__name__)

# Remote error codes meaning "object is mid-transition"
CONFLICT_CODES = frozenset({"IncorrectState", "Conflict", "InvalidatedRetryToken"})

# Spec attribute name -> SDK model attribute name
SDK_ATTRIBUTES = {
    "display_name": "display_name",
    "cpu_core_count": "cpu_core_count",
    "data_storage_size_in_tbs": "data_storage_size_in_tbs",
    "is_auto_scaling_enabled": "is_auto_scaling_enabled",
    "freeform_tags": "freeform_tags",
    "nsg_ocids": "nsg_ids",
    "subnet_ocid": "subnet_id",
    "private_endpoint_label": "private_endpoint_label",
}

# Provision-only spec fields -> SDK create-details attribute
CREATE_ONLY_ATTRIBUTES = {
    "compartment_ocid": "compartment_id",
    "db_name": "db_name",
    "db_workload": "db_workload",
    "is_dedicated": "is_dedicated",
    "db_version": "db_version",
}

WALLET_CHUNK_SIZE = 1024 * 1024

# Freeform tag stamped on databases this operator creates; holds the resource uid
OWNER_TAG = "oradb-operator-uid"


class OCIClientConfig(BaseModel):
    """Injected configuration for one OCI SDK client."""

    config_file: str
    profile: str
    region: Optional[str] = None
    timeout_seconds: float = 60.0

    @classmethod
    def from_settings(cls, config: Settings, override: Optional[OCIConfigSpec] = None) -> "OCIClientConfig":
        override = override or OCIConfigSpec()
        return cls(
            config_file=override.config_file or config.oci_config_file,
            profile=override.profile or config.oci_profile,
            region=override.region or config.oci_region,
            timeout_seconds=config.actuator_timeout_seconds,
        )


def classify_service_error(operation: str, error: "oci.exceptions.ServiceError") -> ActuatorError:
    """
    Map an OCI ServiceError to the operator's error taxonomy.

    Args:
        operation: Name of the SDK operation that failed
        error: The raised ServiceError

    Returns:
        A TransientError, ConflictError or PermanentError
    """
    status = getattr(error, "status", None)
    code = getattr(error, "code", None)
    message = f"{operation} failed: {status} {code}: {getattr(error, 'message', error)}"

    if status == 409 or code in CONFLICT_CODES:
        return ConflictError(message, operation=operation, status=status, code=code)
    if status == 429 or (status is not None and status >= 500):
        return TransientError(message, operation=operation, status=status, code=code)
    return PermanentError(message, operation=operation, status=status, code=code)


def to_attributes(adb: Any) -> Dict[str, Any]:
    """Snapshot of comparable attributes from an SDK AutonomousDatabase(Summary)."""
    attributes = {}
    for name, sdk_name in SDK_ATTRIBUTES.items():
        value = getattr(adb, sdk_name, None)
        if value is not None:
            attributes[name] = value
    if "freeform_tags" in attributes:
        attributes["freeform_tags"] = {
            key: value for key, value in attributes["freeform_tags"].items() if key != OWNER_TAG
        }
    return attributes


def owner_uid(adb: Any) -> Optional[str]:
    """The resource uid a database was created for, if this operator created it."""
    return (getattr(adb, "freeform_tags", None) or {}).get(OWNER_TAG)


def to_observation(adb: Any, source: str = "get") -> RemoteObservation:
    return RemoteObservation(
        identity=adb.id,
        lifecycle_state=LifecycleState(adb.lifecycle_state),
        raw_state=adb.lifecycle_state,
        attributes=to_attributes(adb),
        source=source,
    )


def unpack_wallet(content: bytes) -> Dict[str, bytes]:
    """Unpack a wallet zip into file name -> content."""
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            return {
                os.path.basename(info.filename): archive.read(info)
                for info in archive.infolist()
                if not info.is_dir()
            }
    except zipfile.BadZipFile as e:
        raise WalletError("Wallet bundle is not a valid zip archive") from e


class OCIDatabaseClient:
    """
    Autonomous Database operations through ``oci.database.DatabaseClient``.

    One method per remote operation, plus the ``RemoteActuator`` capability
    methods the reconciler uses.
    """

    def __init__(
        self,
        config: OCIClientConfig,
        secrets: SecretReader,
        client: Optional["oci.database.DatabaseClient"] = None,
    ):
        self.config = config
        self.secrets = secrets
        self._client = client

    @property
    def client(self) -> "oci.database.DatabaseClient":
        if self._client is None:
            try:
                oci_config = oci.config.from_file(
                    file_location=os.path.expanduser(self.config.config_file),
                    profile_name=self.config.profile,
                )
                if self.config.region:
                    oci_config["region"] = self.config.region
                oci.config.validate_config(oci_config)
            except oci.exceptions.ClientError as e:
                logger.error(
                    "oci_config_invalid",
                    config_file=self.config.config_file,
                    profile=self.config.profile,
                    error=str(e),
                )
                raise PermanentError(f"Unusable OCI configuration: {e}", operation="configure") from e
            self._client = oci.database.DatabaseClient(oci_config)
        return self._client

    async def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TransientError(
                f"{operation} timed out after {self.config.timeout_seconds}s",
                operation=operation,
            ) from e
        except oci.exceptions.ServiceError as e:
            raise classify_service_error(operation, e) from e
        except oci.exceptions.RequestException as e:
            raise TransientError(f"{operation} request failed: {e}", operation=operation) from e
        except oci.exceptions.ClientError as e:
            raise PermanentError(f"{operation} client error: {e}", operation=operation) from e

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    async def create(self, details: Dict[str, Any], admin_password: Optional[str]) -> Any:
        kwargs = self._create_kwargs(details, admin_password)
        create_details = oci.database.models.CreateAutonomousDatabaseDetails(**kwargs)
        response = await self._call("create", self.client.create_autonomous_database, create_details)
        return response.data

    async def clone(self, source_id: str, details: Dict[str, Any], admin_password: Optional[str]) -> Any:
        kwargs = self._create_kwargs(details, admin_password)
        clone_details = oci.database.models.CreateAutonomousDatabaseCloneDetails(
            source_id=source_id,
            clone_type=oci.database.models.CreateAutonomousDatabaseCloneDetails.CLONE_TYPE_FULL,
            **kwargs,
        )
        response = await self._call("clone", self.client.create_autonomous_database, clone_details)
        return response.data

    async def get(self, identity: str) -> Optional[Any]:
        """Return the SDK model, or None when the database does not exist."""
        try:
            response = await self._call("get", self.client.get_autonomous_database, identity)
        except PermanentError as e:
            if e.status == 404:
                return None
            raise
        return response.data

    async def list(self, compartment_id: str, display_name: Optional[str] = None) -> list:
        kwargs = {"compartment_id": compartment_id}
        if display_name:
            kwargs["display_name"] = display_name
        response = await self._call(
            "list",
            oci.pagination.list_call_get_all_results,
            self.client.list_autonomous_databases,
            **kwargs,
        )
        return response.data

    async def update(self, identity: str, changes: Dict[str, Any]) -> Any:
        update_details = oci.database.models.UpdateAutonomousDatabaseDetails(
            **{SDK_ATTRIBUTES[name]: value for name, value in changes.items()}
        )
        response = await self._call("update", self.client.update_autonomous_database, identity, update_details)
        return response.data

    async def change_lifecycle_state(self, identity: str, target: LifecycleState) -> Any:
        if target == LifecycleState.AVAILABLE:
            response = await self._call("start", self.client.start_autonomous_database, identity)
        elif target == LifecycleState.STOPPED:
            response = await self._call("stop", self.client.stop_autonomous_database, identity)
        else:
            raise PermanentError(f"Cannot change lifecycle state to {target.value}", operation="change_state")
        return response.data

    async def delete(self, identity: str) -> None:
        await self._call("delete", self.client.delete_autonomous_database, identity)

    async def download_wallet(self, resource: AutonomousDatabase, password: str) -> Dict[str, bytes]:
        if not resource.identity:
            raise PermanentError("Cannot download a wallet before the database has an identity", operation="download_wallet")
        content = await self._call("download_wallet", self._read_wallet, resource.identity, password)
        return unpack_wallet(content)

    def _read_wallet(self, identity: str, password: str) -> bytes:
        details = oci.database.models.GenerateAutonomousDatabaseWalletDetails(password=password)
        response = self.client.generate_autonomous_database_wallet(identity, details)
        buffer = io.BytesIO()
        for chunk in response.data.raw.stream(WALLET_CHUNK_SIZE, decode_content=False):
            buffer.write(chunk)
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # RemoteActuator
    # ------------------------------------------------------------------

    async def observe(self, resource: AutonomousDatabase) -> Optional[RemoteObservation]:
        if not resource.identity:
            return None
        adb = await self.get(resource.identity)
        if adb is None:
            return None
        return to_observation(adb)

    async def list_matching(self, resource: AutonomousDatabase) -> Optional[RemoteObservation]:
        """
        Find the database through the list index.

        With an identity the item with that OCID is returned. Without one,
        the newest live database carrying this resource's owner tag, which
        recovers a provision whose result never reached status. A database
        that merely shares the display name is never returned.
        """
        details = resource.spec.details
        if not details.compartment_ocid:
            return None
        uid = resource.metadata.uid
        display_name = None if resource.identity else details.display_name
        if not resource.identity and not (display_name and uid):
            return None

        items = await self.list(details.compartment_ocid, display_name)
        if resource.identity:
            for item in items:
                if item.id == resource.identity:
                    return to_observation(item, source="list")
            return None

        live = [
            item for item in items
            if owner_uid(item) == uid
            and LifecycleState(item.lifecycle_state) not in (LifecycleState.TERMINATING, LifecycleState.TERMINATED)
        ]
        if not live:
            return None
        newest = max(live, key=lambda item: item.time_created.timestamp() if item.time_created else 0)
        return to_observation(newest, source="list")

    async def dispatch(self, resource: AutonomousDatabase, action: CorrectiveAction) -> DispatchResult:
        if action.kind == ActionKind.PROVISION:
            details = {k: v for k, v in action.params.items() if k != "source_id"}
            details["freeform_tags"] = self._owned_tags(resource, details.get("freeform_tags"))
            admin_password = await self._admin_password(resource)
            source_id = action.params.get("source_id")
            if source_id:
                adb = await self.clone(source_id, details, admin_password)
            else:
                adb = await self.create(details, admin_password)
            return self._result(adb)

        if action.kind == ActionKind.BIND:
            identity = action.params["identity"]
            adb = await self.get(identity)
            if adb is None:
                raise PermanentError(
                    f"Autonomous Database {identity} does not exist",
                    operation="bind",
                    status=404,
                )
            return self._result(adb)

        if not resource.identity:
            raise PermanentError(f"{action.name} requires an identity", operation=action.name)

        if action.kind == ActionKind.UPDATE_ATTRIBUTES:
            changes = dict(action.changes)
            if "freeform_tags" in changes:
                changes["freeform_tags"] = await self._kept_owner_tag(resource.identity, changes["freeform_tags"])
            return self._result(await self.update(resource.identity, changes))
        if action.kind == ActionKind.CHANGE_STATE:
            return self._result(await self.change_lifecycle_state(resource.identity, action.target_state))
        if action.kind == ActionKind.DELETE:
            await self.delete(resource.identity)
            return DispatchResult(identity=resource.identity, lifecycle_state=LifecycleState.TERMINATING)

        raise PermanentError(f"Unsupported action {action.name}", operation=action.name)

    async def close(self) -> None:
        if self._client is not None:
            self._client.base_client.session.close()
            self._client = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _create_kwargs(self, details: Dict[str, Any], admin_password: Optional[str]) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        for name, value in details.items():
            sdk_name = SDK_ATTRIBUTES.get(name) or CREATE_ONLY_ATTRIBUTES.get(name)
            if sdk_name:
                kwargs[sdk_name] = value
        if admin_password:
            kwargs["admin_password"] = admin_password
        return kwargs

    @staticmethod
    def _owned_tags(resource: AutonomousDatabase, tags: Optional[Dict[str, str]]) -> Dict[str, str]:
        owned = dict(tags or {})
        if resource.metadata.uid:
            owned[OWNER_TAG] = resource.metadata.uid
        return owned

    async def _kept_owner_tag(self, identity: str, tags: Optional[Dict[str, str]]) -> Dict[str, str]:
        """Replacing freeform tags keeps the owner tag the database already carries."""
        kept = dict(tags or {})
        adb = await self.get(identity)
        owner = owner_uid(adb) if adb is not None else None
        if owner:
            kept[OWNER_TAG] = owner
        return kept

    async def _admin_password(self, resource: AutonomousDatabase) -> Optional[str]:
        ref = resource.spec.details.admin_password
        if not ref or not ref.k8s_secret.name:
            return None
        return await self.secrets.read_secret_value(
            resource.namespace,
            ref.k8s_secret.name,
            ref.k8s_secret.key or ref.k8s_secret.name,
        )

    @staticmethod
    def _result(adb: Any) -> DispatchResult:
        return DispatchResult(
            identity=adb.id,
            lifecycle_state=LifecycleState(adb.lifecycle_state) if adb.lifecycle_state else None,
            attributes=to_attributes(adb),
        )
