"""
Remote actuator capability interface and backend registry.

The reconciler and drift detector depend only on ``RemoteActuator``. Two
backends implement it: the OCI Database service for Autonomous Databases
and a CDB's REST gateway for pluggable databases. ``ActuatorRegistry``
selects and caches the backend for a resource.
"""
from typing import Dict, Optional, Protocol, Tuple

from oradb_operator.config.logging import get_logger
from oradb_operator.config.settings import Settings, settings as default_settings
from oradb_operator.exceptions import ConfigurationError, TransientError
from oradb_operator.models.action import CorrectiveAction
from oradb_operator.models.observation import DispatchResult, RemoteObservation
from oradb_operator.models.resource import (
    AutonomousDatabase,
    ContainerDatabase,
    ManagedResource,
    PluggableDatabase,
)

logger = get_logger(__name__)


class SecretReader(Protocol):
    """Read-only access to credential material stored in Kubernetes Secrets."""

    async def read_secret_value(self, namespace: str, name: str, key: str) -> str:
        ...


class RemoteActuator(Protocol):
    """
    Capability interface over a remote control plane.

    Every method is bounded by the backend's configured timeout and raises
    a classified ``ActuatorError`` on failure.
    """

    async def observe(self, resource: ManagedResource) -> Optional[RemoteObservation]:
        """Direct read of the remote object; None when it does not exist."""
        ...

    async def list_matching(self, resource: ManagedResource) -> Optional[RemoteObservation]:
        """List-based read of the remote object; None when no item matches."""
        ...

    async def dispatch(self, resource: ManagedResource, action: CorrectiveAction) -> DispatchResult:
        """Send one mutating call. Returns once the remote side accepted it."""
        ...

    async def download_wallet(self, resource: ManagedResource, password: str) -> Dict[str, bytes]:
        """Fetch the connection wallet, unpacked to file name -> content."""
        ...

    async def close(self) -> None:
        ...


class ActuatorRegistry:
    """
    Resolve the actuator backing a resource.

    OCI clients are cached per (config file, profile, region); gateway
    clients per CDB resourceVersion, so a CDB spec edit rebuilds the client.
    """

    def __init__(self, store, config: Optional[Settings] = None):
        self.store = store
        self.settings = config or default_settings
        self._oci_clients: Dict[Tuple[str, str, Optional[str]], RemoteActuator] = {}
        self._gateway_clients: Dict[Tuple[str, str], Tuple[Optional[str], RemoteActuator]] = {}

    async def resolve(self, resource: ManagedResource) -> RemoteActuator:
        if isinstance(resource, AutonomousDatabase):
            return self._resolve_oci(resource)
        if isinstance(resource, PluggableDatabase):
            return await self._resolve_gateway(resource)
        raise ConfigurationError(f"No actuator for kind {resource.kind.value}")

    def _resolve_oci(self, resource: AutonomousDatabase) -> RemoteActuator:
        from oradb_operator.services.oci_database import OCIClientConfig, OCIDatabaseClient

        client_config = OCIClientConfig.from_settings(self.settings, resource.spec.oci_config)
        cache_key = (client_config.config_file, client_config.profile, client_config.region)
        client = self._oci_clients.get(cache_key)
        if client is None:
            logger.info(
                "oci_client_created",
                config_file=client_config.config_file,
                profile=client_config.profile,
            )
            client = OCIDatabaseClient(client_config, secrets=self.store)
            self._oci_clients[cache_key] = client
        return client

    async def _resolve_gateway(self, resource: PluggableDatabase) -> RemoteActuator:
        from oradb_operator.services.pdb_gateway import GatewayClientConfig, PdbGatewayClient

        cdb_namespace = resource.cdb_namespace
        cdb_name = resource.spec.cdb_res_name
        cdb: Optional[ContainerDatabase] = await self.store.get_cdb(cdb_namespace, cdb_name)
        if cdb is None:
            # The CDB may simply not have been created yet
            raise TransientError(
                f"CDB {cdb_namespace}/{cdb_name} not found",
                operation="resolve_gateway",
                status=404,
            )

        cache_key = (cdb_namespace, cdb_name)
        cached = self._gateway_clients.get(cache_key)
        if cached and cached[0] == cdb.metadata.resource_version:
            return cached[1]

        client_config = await GatewayClientConfig.from_cdb(cdb, self.store, self.settings)
        client = PdbGatewayClient(client_config, secrets=self.store)
        if cached:
            await cached[1].close()
        self._gateway_clients[cache_key] = (cdb.metadata.resource_version, client)
        logger.info("gateway_client_created", cdb=f"{cdb_namespace}/{cdb_name}", base_url=client_config.base_url)
        return client

    async def close(self) -> None:
        for client in self._oci_clients.values():
            await client.close()
        for _, client in self._gateway_clients.values():
            await client.close()
        self._oci_clients.clear()
        self._gateway_clients.clear()
