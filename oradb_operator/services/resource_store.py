"""
Resource store - the operator's view of the Kubernetes API.

Reads and writes the AutonomousDatabase/PDB custom resources, reads CDB
resources and credential secrets, and writes wallet secrets. Status is
written through the status subresource with the resourceVersion that was
read, so a stale pass loses the write instead of clobbering newer state.
"""
import base64
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from kubernetes_asyncio import client, config, watch
from kubernetes_asyncio.client import ApiException
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from oradb_operator.config.logging import get_logger
from oradb_operator.config.settings import Settings, settings as default_settings
from oradb_operator.exceptions import ConfigurationError, ResourceStoreError, StaleResourceError
from oradb_operator.models.resource import (
    FINALIZER,
    GROUP,
    VERSION,
    ContainerDatabase,
    ManagedResource,
    ResourceKey,
    ResourceKind,
    parse_resource,
)
from oradb_operator.utils.retry import is_retryable_k8s_error, retry_on_k8s_error

logger = get_logger(__name__)

read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception(is_retryable_k8s_error),
    reraise=True,
)


def owner_reference(owner: ManagedResource) -> Dict[str, Any]:
    """Owner reference that garbage-collects a child with ``owner``."""
    return {
        "apiVersion": owner.api_version,
        "kind": owner.kind.value,
        "name": owner.name,
        "uid": owner.metadata.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


class KubernetesResourceStore:
    """
    Custom-resource and secret access through kubernetes_asyncio.
    """

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.custom_api = client.CustomObjectsApi(api_client)
        self.core_api = client.CoreV1Api(api_client)

    @classmethod
    async def connect(cls, config_settings: Optional[Settings] = None) -> "KubernetesResourceStore":
        """Load in-cluster or kubeconfig credentials into an isolated configuration."""
        config_settings = config_settings or default_settings
        configuration = client.Configuration()
        try:
            if config_settings.k8s_in_cluster:
                config.load_incluster_config(client_configuration=configuration)
            else:
                await config.load_kube_config(
                    config_file=config_settings.kubeconfig_path,
                    client_configuration=configuration,
                )
        except config.ConfigException as e:
            raise ConfigurationError(f"Unable to load Kubernetes configuration: {e}") from e

        logger.info(
            "kubernetes_configuration_loaded",
            host=configuration.host,
            in_cluster=config_settings.k8s_in_cluster,
        )
        return cls(client.ApiClient(configuration=configuration))

    async def close(self) -> None:
        await self.api_client.close()

    async def ping(self) -> bool:
        """Check API server connectivity."""
        try:
            await client.VersionApi(self.api_client).get_code()
            return True
        except Exception as e:
            logger.error("kubernetes_ping_failed", error=str(e))
            return False

    # ------------------------------------------------------------------
    # Managed resources
    # ------------------------------------------------------------------

    @read_retry
    async def get(self, key: ResourceKey) -> Optional[ManagedResource]:
        try:
            body = await self.custom_api.get_namespaced_custom_object(
                group=GROUP,
                version=VERSION,
                namespace=key.namespace,
                plural=key.kind.plural,
                name=key.name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            if is_retryable_k8s_error(e):
                raise
            raise ResourceStoreError(f"get {key} failed: {e.reason}", status=e.status) from e
        return self._parse(key.kind, body)

    @read_retry
    async def list(self, kind: ResourceKind, namespace: Optional[str] = None) -> List[ManagedResource]:
        try:
            if namespace:
                body = await self.custom_api.list_namespaced_custom_object(
                    GROUP, VERSION, namespace, kind.plural,
                )
            else:
                body = await self.custom_api.list_cluster_custom_object(GROUP, VERSION, kind.plural)
        except ApiException as e:
            if is_retryable_k8s_error(e):
                raise
            raise ResourceStoreError(f"list {kind.plural} failed: {e.reason}", status=e.status) from e

        resources = []
        for item in body.get("items", []):
            resource = self._parse_or_skip(kind, item)
            if resource is not None:
                resources.append(resource)
        return resources

    async def watch(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> AsyncIterator[Tuple[str, ManagedResource]]:
        """
        Stream (event type, resource) pairs until the server closes the watch.
        """
        kwargs: Dict[str, Any] = {}
        if resource_version:
            kwargs["resource_version"] = resource_version
        if namespace:
            func, args = self.custom_api.list_namespaced_custom_object, (GROUP, VERSION, namespace, kind.plural)
        else:
            func, args = self.custom_api.list_cluster_custom_object, (GROUP, VERSION, kind.plural)

        w = watch.Watch()
        try:
            async for event in w.stream(func, *args, **kwargs):
                resource = self._parse_or_skip(kind, event["object"])
                if resource is not None:
                    yield event["type"], resource
        except ApiException as e:
            # ERROR events, 410 Gone included, surface from the stream as ApiException
            raise ResourceStoreError(f"watch {kind.plural} failed: {e.reason}", status=e.status) from e
        finally:
            w.stop()

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def update_status(self, resource: ManagedResource) -> ManagedResource:
        """
        Replace the status subresource using the resourceVersion that was read.

        Raises:
            StaleResourceError: Another writer updated the object first
        """
        try:
            body = await self.custom_api.replace_namespaced_custom_object_status(
                GROUP, VERSION, resource.namespace, resource.kind.plural,
                resource.name, resource.status_body(),
            )
        except ApiException as e:
            if e.status == 409:
                raise StaleResourceError(str(resource.key), resource.metadata.resource_version) from e
            if is_retryable_k8s_error(e):
                raise
            raise ResourceStoreError(f"status update {resource.key} failed: {e.reason}", status=e.status) from e
        return self._parse(resource.kind, body)

    async def add_finalizer(self, resource: ManagedResource) -> ManagedResource:
        if resource.has_finalizer:
            return resource
        finalizers = list(resource.metadata.finalizers) + [FINALIZER]
        body = await self._patch_finalizers(resource, finalizers)
        logger.info("finalizer_added", resource=str(resource.key))
        return self._parse(resource.kind, body)

    async def remove_finalizer(self, resource: ManagedResource) -> None:
        if not resource.has_finalizer:
            return
        finalizers = [f for f in resource.metadata.finalizers if f != FINALIZER]
        await self._patch_finalizers(resource, finalizers)
        logger.info("finalizer_removed", resource=str(resource.key))

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def _patch_finalizers(self, resource: ManagedResource, finalizers: List[str]) -> Dict[str, Any]:
        patch = {
            "metadata": {
                "finalizers": finalizers or None,
                "resourceVersion": resource.metadata.resource_version,
            }
        }
        try:
            return await self.custom_api.patch_namespaced_custom_object(
                GROUP, VERSION, resource.namespace, resource.kind.plural, resource.name, patch,
            )
        except ApiException as e:
            if e.status == 409:
                raise StaleResourceError(str(resource.key), resource.metadata.resource_version) from e
            if is_retryable_k8s_error(e):
                raise
            raise ResourceStoreError(f"finalizer patch {resource.key} failed: {e.reason}", status=e.status) from e

    # ------------------------------------------------------------------
    # CDB (read-only input)
    # ------------------------------------------------------------------

    @read_retry
    async def get_cdb(self, namespace: str, name: str) -> Optional[ContainerDatabase]:
        try:
            body = await self.custom_api.get_namespaced_custom_object(
                GROUP, VERSION, namespace, ResourceKind.CDB.plural, name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            if is_retryable_k8s_error(e):
                raise
            raise ResourceStoreError(f"get CDB {namespace}/{name} failed: {e.reason}", status=e.status) from e
        return ContainerDatabase.model_validate(body)

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    @read_retry
    async def read_secret(self, namespace: str, name: str) -> Optional[Dict[str, bytes]]:
        """Return decoded secret data, or None when the secret does not exist."""
        try:
            secret = await self.core_api.read_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            if is_retryable_k8s_error(e):
                raise
            raise ResourceStoreError(f"read secret {namespace}/{name} failed: {e.reason}", status=e.status) from e
        return {k: base64.b64decode(v) for k, v in (secret.data or {}).items()}

    async def read_secret_value(self, namespace: str, name: str, key: str) -> str:
        data = await self.read_secret(namespace, name)
        if data is None:
            raise ConfigurationError(f"Secret {namespace}/{name} not found")
        if key not in data:
            raise ConfigurationError(f"Secret {namespace}/{name} has no key '{key}'")
        return data[key].decode("utf-8").rstrip("\n")

    @retry_on_k8s_error(max_retries=3, initial_delay=1.0, max_delay=10.0)
    async def write_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        owner: Optional[ManagedResource] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Create the secret, replacing it when it already exists."""
        metadata: Dict[str, Any] = {"name": name, "namespace": namespace, "labels": labels or {}}
        if owner is not None and owner.metadata.uid:
            metadata["ownerReferences"] = [owner_reference(owner)]
        body = client.V1Secret(
            metadata=metadata,
            type="Opaque",
            data={k: base64.b64encode(v).decode("ascii") for k, v in data.items()},
        )
        try:
            await self.core_api.create_namespaced_secret(namespace, body)
            logger.info("secret_created", namespace=namespace, name=name, keys=len(data))
            return
        except ApiException as e:
            if e.status != 409:
                if is_retryable_k8s_error(e):
                    raise
                raise ResourceStoreError(f"create secret {namespace}/{name} failed: {e.reason}", status=e.status) from e

        try:
            await self.core_api.replace_namespaced_secret(name, namespace, body)
            logger.info("secret_replaced", namespace=namespace, name=name, keys=len(data))
        except ApiException as e:
            if is_retryable_k8s_error(e):
                raise
            raise ResourceStoreError(f"replace secret {namespace}/{name} failed: {e.reason}", status=e.status) from e

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse(kind: ResourceKind, body: Dict[str, Any]) -> ManagedResource:
        try:
            return parse_resource(kind, body)
        except ValidationError as e:
            name = body.get("metadata", {}).get("name")
            raise ConfigurationError(f"Invalid {kind.value} '{name}': {e}") from e

    @staticmethod
    def _parse_or_skip(kind: ResourceKind, body: Dict[str, Any]) -> Optional[ManagedResource]:
        try:
            return parse_resource(kind, body)
        except ValidationError as e:
            logger.warning(
                "invalid_resource_skipped",
                kind=kind.value,
                name=body.get("metadata", {}).get("name"),
                error=str(e),
            )
            return None
