"""
Tests for the work queue and controller scheduling.
"""
import asyncio

import pytest

from oradb_operator.core.retry_policy import BackoffPolicy, ReconcileResult
from oradb_operator.exceptions import ResourceStoreError
from oradb_operator.models.resource import ResourceKey, ResourceKind
from oradb_operator.workers.controller import OperatorController, WorkQueue

from tests.fakes import FakeResourceStore, adb_body, pdb_body

KEY = ResourceKey(ResourceKind.AUTONOMOUS_DATABASE, "default", "adb1")
OTHER = ResourceKey(ResourceKind.PDB, "default", "pdb1")


class ScriptedReconciler:
    """Returns queued results in order and records the keys it saw."""

    def __init__(self, *results):
        self.results = list(results)
        self.keys = []

    async def reconcile(self, key):
        self.keys.append(key)
        result = self.results.pop(0) if self.results else ReconcileResult(requeue_after=None, outcome="in_sync")
        if isinstance(result, Exception):
            raise result
        return result


class TestWorkQueue:
    @pytest.mark.asyncio
    async def test_deduplicates_queued_keys(self):
        queue = WorkQueue()

        queue.add(KEY)
        queue.add(KEY)
        queue.add(OTHER)

        assert len(queue) == 2
        assert await queue.get() == KEY
        assert await queue.get() == OTHER

    @pytest.mark.asyncio
    async def test_event_during_processing_requeues_after_done(self):
        queue = WorkQueue()
        queue.add(KEY)
        key = await queue.get()

        queue.add(KEY)
        assert len(queue) == 0
        assert queue.processing == 1

        queue.done(key)

        assert len(queue) == 1
        assert queue.processing == 0

    @pytest.mark.asyncio
    async def test_add_after_fires(self):
        queue = WorkQueue()

        queue.add_after(KEY, 0.01)
        assert len(queue) == 0

        assert await asyncio.wait_for(queue.get(), timeout=1) == KEY

    @pytest.mark.asyncio
    async def test_add_after_keeps_earlier_timer(self):
        queue = WorkQueue()

        queue.add_after(KEY, 0.01)
        queue.add_after(KEY, 60)

        assert await asyncio.wait_for(queue.get(), timeout=1) == KEY

    @pytest.mark.asyncio
    async def test_add_after_replaces_later_timer(self):
        queue = WorkQueue()

        queue.add_after(KEY, 60)
        queue.add_after(KEY, 0.01)

        assert await asyncio.wait_for(queue.get(), timeout=1) == KEY
        queue.shutdown()

    @pytest.mark.asyncio
    async def test_forget_cancels_timer(self):
        queue = WorkQueue()

        queue.add_after(KEY, 0.01)
        queue.forget(KEY)
        await asyncio.sleep(0.05)

        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_non_positive_delay_queues_now(self):
        queue = WorkQueue()

        queue.add_after(KEY, 0)

        assert len(queue) == 1


class TestProcess:
    @pytest.mark.asyncio
    async def test_requeues_after_result_delay(self):
        controller = OperatorController(FakeResourceStore(), ScriptedReconciler(ReconcileResult(requeue_after=0.01, outcome="pending")))

        result = await controller.process(KEY)

        assert result.outcome == "pending"
        assert await asyncio.wait_for(controller.queue.get(), timeout=1) == KEY

    @pytest.mark.asyncio
    async def test_gone_resource_is_forgotten(self):
        controller = OperatorController(FakeResourceStore(), ScriptedReconciler(ReconcileResult(requeue_after=None, outcome="gone")))
        controller.queue.add_after(KEY, 0.01)

        await controller.process(KEY)
        await asyncio.sleep(0.05)

        assert len(controller.queue) == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_backs_off(self):
        reconciler = ScriptedReconciler(RuntimeError("boom"), RuntimeError("boom"), ReconcileResult(requeue_after=None, outcome="in_sync"))
        controller = OperatorController(
            FakeResourceStore(), reconciler, error_backoff=BackoffPolicy(base_delay=0.01, max_delay=0.02),
        )

        assert await controller.process(KEY) is None
        assert controller._errors[KEY] == 1
        assert await controller.process(KEY) is None
        assert controller._errors[KEY] == 2

        await controller.process(KEY)

        assert KEY not in controller._errors
        assert await asyncio.wait_for(controller.queue.get(), timeout=1) == KEY


class TestResync:
    @pytest.mark.asyncio
    async def test_queues_every_reconciled_kind(self):
        store = FakeResourceStore()
        store.put(ResourceKind.AUTONOMOUS_DATABASE, adb_body("adb1"))
        store.put(ResourceKind.AUTONOMOUS_DATABASE, adb_body("adb2"))
        store.put(ResourceKind.PDB, pdb_body("pdb1"))
        controller = OperatorController(store, ScriptedReconciler())

        assert await controller.resync_all() == 3
        assert len(controller.queue) == 3

    @pytest.mark.asyncio
    async def test_namespace_filter(self):
        store = FakeResourceStore()
        store.put(ResourceKind.AUTONOMOUS_DATABASE, adb_body("adb1"))
        other = adb_body("adb2")
        other["metadata"]["namespace"] = "team-b"
        store.put(ResourceKind.AUTONOMOUS_DATABASE, other)
        controller = OperatorController(store, ScriptedReconciler(), namespace="team-b")

        assert await controller.resync_all() == 1
        assert await controller.queue.get() == ResourceKey(ResourceKind.AUTONOMOUS_DATABASE, "team-b", "adb2")

    @pytest.mark.asyncio
    async def test_list_failure_skips_kind(self):
        store = FakeResourceStore()
        store.put(ResourceKind.PDB, pdb_body("pdb1"))

        async def failing_list(kind, namespace=None):
            if kind == ResourceKind.AUTONOMOUS_DATABASE:
                raise ResourceStoreError("forbidden", status=403)
            return await FakeResourceStore.list(store, kind, namespace)

        store.list = failing_list
        controller = OperatorController(store, ScriptedReconciler())

        assert await controller.resync_all() == 1


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_watch_event_is_reconciled(self):
        store = FakeResourceStore()
        resource = store.put(ResourceKind.AUTONOMOUS_DATABASE, adb_body("adb1"))
        store.events.append(("ADDED", resource))
        reconciler = ScriptedReconciler()
        controller = OperatorController(store, reconciler, workers=2, resync_interval=3600)

        await controller.start()
        try:
            for _ in range(100):
                if reconciler.keys:
                    break
                await asyncio.sleep(0.01)
        finally:
            await controller.stop()

        assert resource.key in reconciler.keys
        assert controller.running is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        controller = OperatorController(FakeResourceStore(), ScriptedReconciler(), workers=1, resync_interval=3600)

        await controller.start()
        task_count = len(controller._tasks)
        await controller.start()

        assert len(controller._tasks) == task_count
        await controller.stop()
        assert controller._tasks == []

    @pytest.mark.asyncio
    async def test_expired_watch_restarts_without_resource_version(self):
        store = FakeResourceStore()
        resource = store.put(ResourceKind.AUTONOMOUS_DATABASE, adb_body("adb1"))
        controller = OperatorController(store, ScriptedReconciler(), watch_retry_delay=30)
        versions = []

        async def expiring_watch(kind, namespace=None, resource_version=None):
            versions.append(resource_version)
            if len(versions) == 1:
                yield "ADDED", resource
                raise ResourceStoreError("watch expired", status=410)
            controller.running = False

        store.watch = expiring_watch
        controller.running = True

        await asyncio.wait_for(controller._watch(ResourceKind.AUTONOMOUS_DATABASE), timeout=1)

        assert versions == [None, None]
        assert len(controller.queue) == 1
