"""
Wallet materializer - persists an Autonomous Database's connection wallet as a Secret.

The secret is named ``<resource-name>-instance-wallet`` unless the spec
names it, holds one key per file of the wallet zip, and is owned by the
resource so it is garbage-collected with it.
"""
from typing import Optional

from oradb_operator.config.logging import get_logger
from oradb_operator.exceptions import WalletError
from oradb_operator.models.resource import AutonomousDatabase
from oradb_operator.services.actuator import RemoteActuator

logger = get_logger(__name__)

MANAGED_BY_LABELS = {"app.kubernetes.io/managed-by": "oradb-operator"}


class WalletMaterializer:
    """
    Idempotent wallet download.

    A secret that exists with non-empty content is left alone; a missing or
    empty secret means "not yet materialized" and is (re)written.
    """

    def __init__(self, store):
        self.store = store

    async def is_materialized(self, resource: AutonomousDatabase) -> bool:
        data = await self.store.read_secret(resource.namespace, resource.wallet_secret_name)
        return bool(data) and any(data.values())

    async def ensure(self, resource: AutonomousDatabase, actuator: RemoteActuator) -> Optional[str]:
        """
        Make sure the wallet secret exists.

        Args:
            resource: Autonomous Database whose remote object is ready
            actuator: Backend able to download the wallet

        Returns:
            The secret name, or None when the resource asks for no wallet

        Raises:
            WalletError: The downloaded bundle was empty or unreadable
            ActuatorError: The download failed remotely
        """
        if not resource.requires_wallet:
            return None

        secret_name = resource.wallet_secret_name
        if await self.is_materialized(resource):
            logger.debug("wallet_secret_present", resource=str(resource.key), secret=secret_name)
            return secret_name

        password_ref = resource.spec.details.wallet.password.k8s_secret
        password = await self.store.read_secret_value(
            resource.namespace,
            password_ref.name,
            password_ref.key or password_ref.name,
        )

        logger.info("wallet_download_started", resource=str(resource.key), identity=resource.identity)
        files = await actuator.download_wallet(resource, password)
        if not files:
            raise WalletError(f"Wallet for {resource.key} is empty")

        await self.store.write_secret(
            resource.namespace,
            secret_name,
            files,
            owner=resource,
            labels=MANAGED_BY_LABELS,
        )
        logger.info(
            "wallet_materialized",
            resource=str(resource.key),
            secret=secret_name,
            files=sorted(files),
        )
        return secret_name
