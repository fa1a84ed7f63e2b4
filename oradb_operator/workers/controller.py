"""
Controller loop: watch events and periodic resync feed a work queue,
workers drain it through the reconciler.

A key is never reconciled by two workers at once. An event arriving while
its key is being processed marks it dirty, and the key is queued again as
soon as the running pass finishes.
"""
import asyncio
from typing import Dict, List, Optional, Set

from oradb_operator.config.logging import get_logger
from oradb_operator.core.retry_policy import BackoffPolicy, ReconcileResult
from oradb_operator.exceptions import ResourceStoreError
from oradb_operator.models.resource import ResourceKey, ResourceKind
from oradb_operator.services import metrics

logger = get_logger(__name__)

# Kinds the operator reconciles; CDBs are read, never driven
RECONCILED_KINDS = (ResourceKind.AUTONOMOUS_DATABASE, ResourceKind.PDB)


class WorkQueue:
    """Deduplicating work queue of resource keys with delayed requeue."""

    def __init__(self):
        self._queue: "asyncio.Queue[ResourceKey]" = asyncio.Queue()
        self._queued: Set[ResourceKey] = set()
        self._processing: Set[ResourceKey] = set()
        self._dirty: Set[ResourceKey] = set()
        self._timers: Dict[ResourceKey, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._queued)

    @property
    def processing(self) -> int:
        return len(self._processing)

    def add(self, key: ResourceKey) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)
        self._update_stats()

    def add_after(self, key: ResourceKey, delay: float) -> None:
        """Queue ``key`` after ``delay`` seconds, keeping an earlier timer if one exists."""
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def _fire(self, key: ResourceKey) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> ResourceKey:
        key = await self._queue.get()
        self._queued.discard(key)
        self._processing.add(key)
        self._update_stats()
        return key

    def done(self, key: ResourceKey) -> None:
        self._processing.discard(key)
        self._queue.task_done()
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)
        self._update_stats()

    def forget(self, key: ResourceKey) -> None:
        """Drop any delayed requeue for a key whose resource is gone."""
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def shutdown(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    def _update_stats(self) -> None:
        metrics.update_queue_stats(len(self._queued), len(self._processing))


class OperatorController:
    """
    Runs watches, periodic resync and reconcile workers.

    ``start`` returns once the background tasks are running; ``stop``
    cancels them and waits for in-flight passes to unwind.
    """

    def __init__(
        self,
        store,
        reconciler,
        namespace: Optional[str] = None,
        workers: int = 4,
        resync_interval: float = 60.0,
        watch_retry_delay: float = 5.0,
        error_backoff: Optional[BackoffPolicy] = None,
        kinds=RECONCILED_KINDS,
    ):
        self.store = store
        self.reconciler = reconciler
        self.namespace = namespace or None
        self.workers = workers
        self.resync_interval = resync_interval
        self.watch_retry_delay = watch_retry_delay
        self.error_backoff = error_backoff or BackoffPolicy()
        self.kinds = tuple(kinds)
        self.queue = WorkQueue()
        self.running = False
        self._tasks: List[asyncio.Task] = []
        self._errors: Dict[ResourceKey, int] = {}

    async def start(self):
        """Start watches, resync and workers."""
        if self.running:
            return
        self.running = True
        self.queue = WorkQueue()

        for kind in self.kinds:
            self._tasks.append(asyncio.create_task(self._watch(kind), name=f"watch-{kind.plural}"))
        self._tasks.append(asyncio.create_task(self._resync_loop(), name="resync"))
        for worker_id in range(1, self.workers + 1):
            self._tasks.append(asyncio.create_task(self._worker(worker_id), name=f"reconcile-worker-{worker_id}"))

        logger.info(
            "controller_started",
            namespace=self.namespace or "*",
            kinds=[k.value for k in self.kinds],
            workers=self.workers,
            resync_interval_seconds=self.resync_interval,
        )

    async def stop(self):
        """Stop controller gracefully."""
        if not self.running:
            return
        logger.info("stopping_controller")
        self.running = False

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.queue.shutdown()
        logger.info("controller_stopped")

    async def resync_all(self) -> int:
        """Queue every reconciled resource. Returns the number of keys queued."""
        count = 0
        for kind in self.kinds:
            try:
                resources = await self.store.list(kind, self.namespace)
            except ResourceStoreError as e:
                logger.error("resync_list_failed", kind=kind.value, error=e.message, status=e.status)
                continue
            for resource in resources:
                self.queue.add(resource.key)
                count += 1
        logger.debug("resync_queued", count=count)
        return count

    async def _resync_loop(self):
        while self.running:
            try:
                await self.resync_all()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("resync_error", error=str(e), exc_info=True)
            await asyncio.sleep(self.resync_interval)

    async def _watch(self, kind: ResourceKind):
        """Watch one kind, reconnecting until stopped."""
        resource_version: Optional[str] = None
        while self.running:
            try:
                async for event_type, resource in self.store.watch(kind, self.namespace, resource_version):
                    resource_version = resource.metadata.resource_version
                    if event_type == "DELETED":
                        self.queue.forget(resource.key)
                        continue
                    self.queue.add(resource.key)
                logger.debug("watch_closed_reconnecting", kind=kind.value)
            except asyncio.CancelledError:
                raise
            except ResourceStoreError as e:
                if e.status == 410:
                    # History compacted; restart from the current state
                    logger.info("watch_expired_restarting", kind=kind.value)
                    resource_version = None
                    continue
                logger.warning("watch_failed", kind=kind.value, error=e.message, status=e.status)
                await asyncio.sleep(self.watch_retry_delay)
            except Exception as e:
                logger.error("watch_error", kind=kind.value, error=str(e), exc_info=True)
                await asyncio.sleep(self.watch_retry_delay)

    async def _worker(self, worker_id: int):
        logger.debug("reconcile_worker_started", worker_id=worker_id)
        while self.running:
            key = await self.queue.get()
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: ResourceKey) -> Optional[ReconcileResult]:
        """Run one pass for ``key`` and schedule the next one."""
        try:
            result = await self.reconciler.reconcile(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            attempts = self._errors.get(key, 0) + 1
            self._errors[key] = attempts
            delay = self.error_backoff.delay(attempts)
            metrics.record_reconcile_error(key.kind.value)
            logger.error(
                "reconcile_error",
                resource=str(key),
                error=str(e),
                attempt=attempts,
                retry_in_seconds=delay,
                exc_info=True,
            )
            self.queue.add_after(key, delay)
            return None

        self._errors.pop(key, None)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
        elif result.outcome in ("gone", "finalized"):
            self.queue.forget(key)
        return result
