"""
Redis-lease leader election between operator replicas.

The leader holds ``oradb-operator:leader`` (``SET NX EX``) and refreshes
its expiry every third of the lease. Only the leader runs the controller;
a standby replica keeps polling and takes over once the lease lapses.
"""
import asyncio
from typing import Optional

from redis.exceptions import RedisError

from oradb_operator.config.logging import get_logger
from oradb_operator.config.redis import RedisConnection
from oradb_operator.exceptions import ConfigurationError

logger = get_logger(__name__)

DEFAULT_LEADER_KEY = "oradb-operator:leader"


class LeaderElection:
    """
    Args:
        instance_id: Identifier written into the lease (pod name + pid)
        lease_duration: Lease TTL in seconds
        leader_key: Redis key holding the lease
    """

    def __init__(self, instance_id: str, lease_duration: int = 30, leader_key: str = DEFAULT_LEADER_KEY):
        self.instance_id = instance_id
        self.lease_duration = lease_duration
        self.leader_key = leader_key
        self.is_leader = False

    @property
    def tick(self) -> float:
        return max(self.lease_duration / 3, 1)

    async def _holder(self) -> Optional[str]:
        client = await RedisConnection.get_client()
        return await client.get(self.leader_key)

    def _lose(self, holder: Optional[str]) -> None:
        if self.is_leader:
            logger.warning("leadership_lost", instance_id=self.instance_id, leader=holder)
        self.is_leader = False

    async def acquire_leadership(self) -> bool:
        """Take the lease if it is free; True when this replica holds it."""
        client = await RedisConnection.get_client()
        if await client.set(self.leader_key, self.instance_id, nx=True, ex=self.lease_duration):
            if not self.is_leader:
                logger.info("leadership_acquired", instance_id=self.instance_id)
            self.is_leader = True
            return True

        holder = await self._holder()
        if holder == self.instance_id:
            self.is_leader = True
            return True
        self._lose(holder)
        return False

    async def renew_lease(self) -> bool:
        if not self.is_leader:
            return False
        holder = await self._holder()
        if holder != self.instance_id:
            self._lose(holder)
            return False
        client = await RedisConnection.get_client()
        await client.expire(self.leader_key, self.lease_duration)
        logger.debug("leadership_lease_renewed", instance_id=self.instance_id)
        return True

    async def release_leadership(self) -> None:
        """Delete the lease if this replica still holds it."""
        if not self.is_leader:
            return
        self.is_leader = False
        if await self._holder() == self.instance_id:
            client = await RedisConnection.get_client()
            await client.delete(self.leader_key)
            logger.info("leadership_released", instance_id=self.instance_id)

    async def _follow(self, controller) -> None:
        """One election round: align the controller with the lease."""
        leading = await self.acquire_leadership()
        if leading and not controller.running:
            logger.info("controller_starting_as_leader", instance_id=self.instance_id)
            await controller.start()
        elif not leading and controller.running:
            logger.info("controller_stopping_as_standby", instance_id=self.instance_id)
            await controller.stop()

        await asyncio.sleep(self.tick)

        if leading and not await self.renew_lease() and controller.running:
            await controller.stop()

    async def run(self, controller) -> None:
        """
        Keep ``controller`` running only while this replica leads.

        Runs until cancelled; on cancellation the controller is stopped and
        the lease released before CancelledError propagates.
        """
        try:
            while True:
                try:
                    await self._follow(controller)
                except (RedisError, ConfigurationError) as e:
                    logger.error("leader_election_error", instance_id=self.instance_id, error=str(e))
                    await asyncio.sleep(self.tick)
        except asyncio.CancelledError:
            if controller.running:
                await controller.stop()
            await self.release_leadership()
            raise
