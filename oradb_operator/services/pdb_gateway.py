"""
CDB REST gateway backend for pluggable databases.

Talks to the ORDS ``db-api`` of one CDB over HTTPS with basic auth and
client TLS material taken from the CDB resource's secrets.
"""
import asyncio
import os
import ssl
import tempfile
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from oradb_operator.config.logging import get_logger
from oradb_operator.config.settings import Settings
from oradb_operator.exceptions import (
    ActuatorError,
    ConfigurationError,
    ConflictError,
    PermanentError,
    TransientError,
)
from oradb_operator.models.action import ActionKind, CorrectiveAction, PdbActionKind
from oradb_operator.models.lifecycle import LifecycleState
from oradb_operator.models.observation import DispatchResult, RemoteObservation
from oradb_operator.models.resource import ContainerDatabase, PluggableDatabase, SecretRef
from oradb_operator.services.actuator import SecretReader

logger = get_logger(__name__)

API_PATH = "/ords/_/db-api/latest/database/pdbs/"

# open_mode reported by the gateway -> lifecycle state
OPEN_MODES = {
    "READ WRITE": LifecycleState.OPEN,
    "READ ONLY": LifecycleState.READ_ONLY,
    "MOUNTED": LifecycleState.MOUNTED,
}

# Action parameter name -> gateway request field
REQUEST_FIELDS = {
    "file_name_conversions": "fileNameConversions",
    "source_file_name_conversions": "sourceFileNameConversions",
    "copy_action": "copyAction",
    "xml_file_name": "xmlFileName",
    "reuse_temp_file": "reuseTempFile",
    "unlimited_storage": "unlimitedStorage",
    "total_size": "totalSize",
    "temp_size": "tempSize",
    "tde_import": "tdeImport",
    "tde_export": "tdeExport",
    "get_script": "getScript",
    "modify_option": "modifyOption",
    "state": "state",
}

DEFAULT_DROP_ACTION = "INCLUDING"


def classify_status(operation: str, response: httpx.Response) -> Optional[ActuatorError]:
    """Map a non-2xx gateway response to the operator's error taxonomy."""
    if response.is_success:
        return None
    status = response.status_code
    message = f"{operation} failed: HTTP {status}: {response.text[:500]}"
    if status == 409:
        return ConflictError(message, operation=operation, status=status)
    if status in (408, 429) or status >= 500:
        return TransientError(message, operation=operation, status=status)
    return PermanentError(message, operation=operation, status=status)


def parse_open_mode(value: Optional[str]) -> LifecycleState:
    if value is None:
        return LifecycleState.UNKNOWN
    return OPEN_MODES.get(value.strip().upper(), LifecycleState(value))


class GatewayClientConfig(BaseModel):
    """Injected configuration for one CDB's REST gateway."""

    base_url: str
    username: str
    password: str
    verify_tls: bool = True
    tls_key: Optional[str] = None
    tls_crt: Optional[str] = None
    timeout_seconds: float = 60.0

    @classmethod
    async def from_cdb(cls, cdb: ContainerDatabase, secrets: SecretReader, config: Settings) -> "GatewayClientConfig":
        """Build the client configuration from a CDB resource and its secrets."""
        spec = cdb.spec
        namespace = cdb.metadata.namespace
        if spec.web_server_user is None or spec.web_server_pwd is None:
            raise ConfigurationError(
                f"CDB {namespace}/{cdb.metadata.name} has no webServerUser/webServerPwd",
            )

        async def read(ref: Optional[SecretRef]) -> Optional[str]:
            if ref is None:
                return None
            return await secrets.read_secret_value(namespace, ref.secret.secret_name, ref.secret.key)

        port = spec.ords_port or config.gateway_ords_port
        return cls(
            base_url=f"https://{cdb.metadata.name}-ords.{namespace}:{port}{API_PATH}",
            username=await read(spec.web_server_user),
            password=await read(spec.web_server_pwd),
            verify_tls=config.gateway_verify_tls,
            tls_key=await read(spec.cdb_tls_key),
            tls_crt=await read(spec.cdb_tls_crt),
            timeout_seconds=config.actuator_timeout_seconds,
        )

    def ssl_context(self) -> ssl.SSLContext:
        """
        SSL context carrying the CDB's key/cert pair.

        The ssl module only loads certificates from files, so the PEM
        material is written to temporary files that are removed right after.
        """
        context = ssl.create_default_context()
        if not self.verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        if not (self.tls_key and self.tls_crt):
            return context

        paths = []
        try:
            for content in (self.tls_crt, self.tls_key):
                with tempfile.NamedTemporaryFile(mode="w", suffix=".pem", delete=False) as f:
                    f.write(content)
                    paths.append(f.name)
            context.load_cert_chain(certfile=paths[0], keyfile=paths[1])
            if self.verify_tls:
                context.load_verify_locations(cafile=paths[0])
        except ssl.SSLError as e:
            raise ConfigurationError(f"Invalid CDB TLS material: {e}") from e
        finally:
            for path in paths:
                try:
                    os.unlink(path)
                except OSError as cleanup_error:
                    logger.warning("failed_to_cleanup_temp_pem", path=path, error=str(cleanup_error))
        return context


class PdbGatewayClient:
    """
    PDB lifecycle operations through a CDB's REST gateway.

    One method per gateway operation, plus the ``RemoteActuator``
    capability methods the reconciler uses.
    """

    def __init__(
        self,
        config: GatewayClientConfig,
        secrets: SecretReader,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.secrets = secrets
        self.client = http_client or httpx.AsyncClient(
            base_url=config.base_url,
            auth=httpx.BasicAuth(config.username, config.password),
            verify=config.ssl_context(),
            timeout=httpx.Timeout(config.timeout_seconds),
            headers={"Content-Type": "application/json"},
        )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        logger.debug("gateway_request", operation=operation, method=method, path=path)
        try:
            response = await asyncio.wait_for(
                self.client.request(method, path, json=json, params=params),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TransientError(
                f"{operation} timed out after {self.config.timeout_seconds}s",
                operation=operation,
            ) from e
        except httpx.TransportError as e:
            raise TransientError(f"{operation} transport error: {e}", operation=operation) from e
        return response

    async def _send(self, operation: str, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = await self._request(operation, method, path, **kwargs)
        error = classify_status(operation, response)
        if error is not None:
            logger.warning(
                "gateway_request_failed",
                operation=operation,
                status=response.status_code,
                classification=error.classification,
            )
            raise error
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    # ------------------------------------------------------------------
    # Gateway operations
    # ------------------------------------------------------------------

    async def create_pdb(self, params: Dict[str, Any], admin_name: str, admin_pwd: str) -> Dict[str, Any]:
        body = {
            "method": "CREATE",
            "pdb_name": params["pdb_name"],
            "adminName": admin_name,
            "adminPwd": admin_pwd,
            **self._fields(params),
        }
        return await self._send("create_pdb", "POST", "", json=body)

    async def clone_pdb(self, params: Dict[str, Any]) -> Dict[str, Any]:
        source = params.get("src_pdb_name")
        if not source:
            raise PermanentError("Clone requires srcPdbName", operation="clone_pdb")
        body = {"method": "CLONE", "clonePDBName": params["pdb_name"], **self._fields(params)}
        return await self._send("clone_pdb", "POST", f"{source}/", json=body)

    async def plug_pdb(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if not params.get("xml_file_name"):
            raise PermanentError("Plug requires xmlFileName", operation="plug_pdb")
        body = {"method": "PLUG", "pdb_name": params["pdb_name"], **self._fields(params)}
        return await self._send("plug_pdb", "POST", "", json=body)

    async def unplug_pdb(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if not params.get("xml_file_name"):
            raise PermanentError("Unplug requires xmlFileName", operation="unplug_pdb")
        body = {"method": "UNPLUG", **self._fields(params)}
        return await self._send("unplug_pdb", "POST", f"{params['pdb_name']}/", json=body)

    async def modify_pdb(self, params: Dict[str, Any]) -> Dict[str, Any]:
        state = str(params.get("state") or "").upper()
        if state not in ("OPEN", "CLOSE"):
            raise PermanentError("Modify requires pdbState OPEN or CLOSE", operation="modify_pdb")
        body = {**self._fields(params), "state": state}
        return await self._send("modify_pdb", "POST", f"{params['pdb_name']}/status", json=body)

    async def delete_pdb(self, pdb_name: str, drop_action: Optional[str] = None) -> None:
        """
        Drop a PDB. An open PDB is closed first since the gateway only drops closed PDBs.
        """
        current = await self.get_pdb(pdb_name)
        if current is None:
            raise PermanentError(f"PDB {pdb_name} does not exist", operation="delete_pdb", status=404)
        if current.lifecycle_state in (LifecycleState.OPEN, LifecycleState.READ_ONLY):
            await self._send(
                "close_pdb", "POST", f"{pdb_name}/status",
                json={"state": "CLOSE", "modifyOption": "IMMEDIATE"},
            )
        await self._send(
            "delete_pdb", "DELETE", f"{pdb_name}/",
            params={"action": (drop_action or DEFAULT_DROP_ACTION).upper()},
        )

    async def map_pdb(self, pdb_name: str) -> RemoteObservation:
        observation = await self.get_pdb(pdb_name)
        if observation is None:
            raise PermanentError(f"PDB {pdb_name} does not exist", operation="map_pdb", status=404)
        return observation

    async def get_pdb(self, pdb_name: str) -> Optional[RemoteObservation]:
        response = await self._request("get_pdb", "GET", f"{pdb_name}/status")
        if response.status_code == 404:
            return None
        error = classify_status("get_pdb", response)
        if error is not None:
            raise error
        payload = response.json()
        raw = payload.get("open_mode")
        return RemoteObservation(
            identity=pdb_name,
            lifecycle_state=parse_open_mode(raw),
            raw_state=raw,
            attributes={k: v for k, v in payload.items() if k != "open_mode"},
        )

    async def list_pdbs(self) -> List[RemoteObservation]:
        payload = await self._send("list_pdbs", "GET", "")
        observations = []
        for item in payload.get("items", []):
            name = item.get("pdb_name")
            if not name:
                continue
            observations.append(RemoteObservation(
                identity=name,
                lifecycle_state=parse_open_mode(item.get("open_mode")),
                raw_state=item.get("open_mode"),
                source="list",
            ))
        return observations

    # ------------------------------------------------------------------
    # RemoteActuator
    # ------------------------------------------------------------------

    async def observe(self, resource: PluggableDatabase) -> Optional[RemoteObservation]:
        return await self.get_pdb(resource.spec.pdb_name)

    async def list_matching(self, resource: PluggableDatabase) -> Optional[RemoteObservation]:
        for observation in await self.list_pdbs():
            if observation.identity == resource.spec.pdb_name:
                return observation
        return None

    async def dispatch(self, resource: PluggableDatabase, action: CorrectiveAction) -> DispatchResult:
        pdb_name = resource.spec.pdb_name

        if action.kind == ActionKind.DELETE:
            await self.delete_pdb(pdb_name, resource.spec.drop_action)
            return DispatchResult(identity=pdb_name, lifecycle_state=LifecycleState.TERMINATED)

        if action.kind != ActionKind.PDB_ACTION:
            raise PermanentError(f"Unsupported action {action.name} for a PDB", operation=action.name)

        params = {"pdb_name": pdb_name, **action.params}
        kind = action.pdb_action
        if kind == PdbActionKind.CREATE:
            admin_name, admin_pwd = await self._admin_credentials(resource)
            await self.create_pdb(params, admin_name, admin_pwd)
        elif kind == PdbActionKind.CLONE:
            await self.clone_pdb(params)
        elif kind == PdbActionKind.PLUG:
            await self.plug_pdb(params)
        elif kind == PdbActionKind.UNPLUG:
            await self.unplug_pdb(params)
            return DispatchResult(identity=pdb_name, lifecycle_state=LifecycleState.UNPLUGGED)
        elif kind == PdbActionKind.MODIFY:
            await self.modify_pdb(params)
        elif kind == PdbActionKind.DELETE:
            await self.delete_pdb(pdb_name, params.get("drop_action"))
            return DispatchResult(identity=pdb_name, lifecycle_state=LifecycleState.TERMINATED)
        elif kind == PdbActionKind.MAP:
            observation = await self.map_pdb(pdb_name)
            return DispatchResult(identity=pdb_name, lifecycle_state=observation.lifecycle_state)
        else:
            raise PermanentError(f"Unsupported PDB action {kind}", operation=action.name)

        return DispatchResult(identity=pdb_name)

    async def download_wallet(self, resource: PluggableDatabase, password: str) -> Dict[str, bytes]:
        raise PermanentError("PDBs have no downloadable wallet", operation="download_wallet")

    async def close(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fields(params: Dict[str, Any]) -> Dict[str, Any]:
        body = {REQUEST_FIELDS[name]: value for name, value in params.items() if name in REQUEST_FIELDS}
        if params.get("unlimited_storage"):
            body["totalSize"] = "UNLIMITED"
            body["tempSize"] = "UNLIMITED"
        return body

    async def _admin_credentials(self, resource: PluggableDatabase):
        spec = resource.spec
        if spec.admin_name is None or spec.admin_pwd is None:
            raise PermanentError("Create requires adminName and adminPwd", operation="create_pdb")
        namespace = resource.namespace
        admin_name = await self.secrets.read_secret_value(
            namespace, spec.admin_name.secret.secret_name, spec.admin_name.secret.key,
        )
        admin_pwd = await self.secrets.read_secret_value(
            namespace, spec.admin_pwd.secret.secret_name, spec.admin_pwd.secret.key,
        )
        return admin_name, admin_pwd
