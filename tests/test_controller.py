"""Unit tests for controller.py - Main reconciliation controller."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from controller import (
    ClusterStatus,
    Controller,
    ControllerConfig,
    backoff_delay,
)
from errors import OperatorError
from events import EventBus, EventRecorder, Reason
from models import Request
from reconciler import ReconcileResult

C1 = Request("c1", "ns1")


@pytest.fixture
def reconciler(platform_store):
    """Create a mock cluster reconciler."""
    reconciler = MagicMock()
    reconciler.platform_store = platform_store
    reconciler.provider_name = "gateway"
    reconciler.reconcile = AsyncMock(
        return_value=ReconcileResult(success=True, message="Gateway installed", requeue_after=3600)
    )
    reconciler.map_config_to_requests = AsyncMock(return_value=[])
    return reconciler


@pytest.fixture
def controller(reconciler):
    config = ControllerConfig(
        resync_interval=3600,
        config_watch_timeout=3600,
        max_concurrent_reconciles=2,
        backoff_jitter_factor=0.0,
    )
    controller = Controller(reconciler, config=config)
    yield controller
    controller.queue.shutdown()


class TestControllerConfig:
    """Tests for ControllerConfig dataclass."""

    def test_default_values(self):
        config = ControllerConfig()
        assert config.resync_interval == 300
        assert config.config_watch_timeout == 300
        assert config.max_concurrent_reconciles == 5
        assert config.backoff_base_delay == 5
        assert config.backoff_max_delay == 300
        assert config.backoff_jitter_factor == 0.1


class TestBackoffDelay:
    """Tests for the exponential backoff calculation."""

    def test_exponential_growth(self):
        delays = [backoff_delay(n, 5, 300, 0.1, rand=lambda: 0.5) for n in range(4)]
        assert delays == [5, 10, 20, 40]

    def test_capped_at_max_delay(self):
        assert backoff_delay(6, 5, 300, 0.1, rand=lambda: 0.5) == 300
        assert backoff_delay(50, 5, 300, 0.1, rand=lambda: 0.5) == 300

    def test_jitter_bounds(self):
        assert backoff_delay(0, 10, 300, 0.1, rand=lambda: 0.0) == pytest.approx(9.0)
        assert backoff_delay(0, 10, 300, 0.1, rand=lambda: 1.0) == pytest.approx(11.0)

    def test_random_jitter_within_range(self):
        for _ in range(50):
            delay = backoff_delay(2, 5, 300, 0.1)
            assert 18.0 <= delay <= 22.0


class TestClusterStatus:
    def test_to_dict(self):
        status = ClusterStatus(name="c1", namespace="ns1")
        data = status.to_dict()
        assert data["name"] == "c1"
        assert data["namespace"] == "ns1"
        assert data["phase"] == "Pending"
        assert data["failures"] == 0


@pytest.mark.asyncio
class TestProcess:
    """Tests for processing a single request."""

    async def test_success(self, controller, reconciler):
        result = await controller.process(C1)

        assert result.success
        reconciler.reconcile.assert_awaited_once_with(C1)
        status = controller.get_status("ns1", "c1")
        assert status.phase == "Ready"
        assert status.message == "Gateway installed"
        assert status.requeue_after == 3600
        assert status.last_reconcile_time is not None
        assert controller.queue.deadline(C1) is not None

    async def test_retryable_result_is_requeued(self, controller, reconciler):
        reconciler.reconcile.return_value = ReconcileResult(
            success=False, message="pending", requeue_after=10
        )
        await controller.process(C1)

        status = controller.get_status("ns1", "c1")
        assert status.phase == "Requeued"
        assert status.failures == 0
        loop = asyncio.get_running_loop()
        assert controller.queue.deadline(C1) == pytest.approx(loop.time() + 10, abs=1)

    async def test_no_requeue_without_delay(self, controller, reconciler):
        reconciler.reconcile.return_value = ReconcileResult(success=True, message="Not in scope")
        await controller.process(C1)
        assert controller.queue.deadline(C1) is None
        assert len(controller.queue) == 0

    async def test_failure_backs_off(self, controller, reconciler):
        reconciler.reconcile.side_effect = OperatorError.fatal("boom")
        loop = asyncio.get_running_loop()

        assert await controller.process(C1) is None
        status = controller.get_status("ns1", "c1")
        assert status.phase == "Failed"
        assert status.message == "boom"
        assert status.failures == 1
        assert status.requeue_after == 5
        assert controller.queue.deadline(C1) == pytest.approx(loop.time() + 5, abs=1)

        await controller.process(C1)
        await controller.process(C1)
        assert status.failures == 3
        assert status.requeue_after == 20

    async def test_success_resets_failures(self, controller, reconciler):
        reconciler.reconcile.side_effect = OperatorError.fatal("boom")
        await controller.process(C1)
        await controller.process(C1)

        reconciler.reconcile.side_effect = None
        await controller.process(C1)
        assert controller.get_status("ns1", "c1").failures == 0

    async def test_forgotten_cluster_drops_status(self, controller, reconciler):
        await controller.process(C1)
        assert controller.get_status("ns1", "c1") is not None

        reconciler.reconcile.return_value = ReconcileResult(
            success=True, message="Cluster not found", forget=True
        )
        await controller.process(C1)
        assert controller.get_status("ns1", "c1") is None
        assert controller.list_statuses() == []

    async def test_unexpected_exception(self, controller, reconciler):
        reconciler.reconcile.side_effect = RuntimeError("unexpected")
        assert await controller.process(C1) is None
        assert controller.get_status("ns1", "c1").phase == "Failed"

    async def test_failure_records_warning(self, reconciler):
        bus = EventBus()
        _, subscription = await bus.subscribe()
        controller = Controller(reconciler, recorder=EventRecorder(event_bus=bus))
        reconciler.reconcile.side_effect = OperatorError.fatal("boom")

        await controller.process(C1)
        event = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert event.reason == Reason.RECONCILE_FAILED
        assert event.cluster == "ns1/c1"
        assert event.message == "boom"
        controller.queue.shutdown()


@pytest.mark.asyncio
class TestEnqueueing:
    """Tests for resync, config changes and manual triggers."""

    async def test_resync_enqueues_all_clusters(
        self, controller, platform_store, make_cluster
    ):
        platform_store.put(make_cluster("c1", "ns1"))
        platform_store.put(make_cluster("c2", "ns2"))

        requests = await controller.resync()
        assert requests == [Request("c1", "ns1"), Request("c2", "ns2")]
        assert len(controller.queue) == 2

    async def test_config_event_fans_out_changes(
        self, controller, reconciler, platform_store, make_config
    ):
        reconciler.map_config_to_requests.return_value = [C1]
        config = platform_store.put(make_config(clusters=[{"clusterRef": {"name": "c1"}}]))

        assert await controller.handle_config_event("ADDED", config) == [C1]
        assert len(controller.queue) == 1

        # replayed by a re-established watch
        assert await controller.handle_config_event("ADDED", config) == []
        assert reconciler.map_config_to_requests.await_count == 1

        changed = platform_store.put(make_config(clusters=[]))
        assert await controller.handle_config_event("MODIFIED", changed) == [C1]
        assert reconciler.map_config_to_requests.await_count == 2

    async def test_deleted_config_maps_as_empty(
        self, controller, reconciler, platform_store, make_config
    ):
        config = platform_store.put(make_config(clusters=[]))
        await controller.handle_config_event("ADDED", config)

        await controller.handle_config_event("DELETED", config)
        empty = reconciler.map_config_to_requests.await_args[0][0]
        assert empty.name == "gateway"
        assert empty.spec == {}

    async def test_watch_config_reads_store_events(
        self, controller, reconciler, platform_store, make_config
    ):
        platform_store.put(make_config(clusters=[]))
        platform_store.put(make_config(clusters=[], name="other-provider"))
        controller.config.config_watch_timeout = 0.05

        await asyncio.wait_for(controller.watch_config(), timeout=1)
        [config] = [call[0][0] for call in reconciler.map_config_to_requests.await_args_list]
        assert config.name == "gateway"
        assert platform_store.watcher_count() == 0

    async def test_watch_config_without_config(self, controller, reconciler):
        controller.config.config_watch_timeout = 0.01
        await asyncio.wait_for(controller.watch_config(), timeout=1)
        reconciler.map_config_to_requests.assert_not_awaited()

    async def test_trigger_reconciliation(self, controller):
        request = controller.trigger_reconciliation("ns1", "c1")
        assert request == C1
        assert len(controller.queue) == 1

    async def test_list_statuses_sorted(self, controller):
        await controller.process(Request("b", "ns2"))
        await controller.process(Request("a", "ns2"))
        await controller.process(Request("z", "ns1"))
        names = [(s.namespace, s.name) for s in controller.list_statuses()]
        assert names == [("ns1", "z"), ("ns2", "a"), ("ns2", "b")]

    async def test_get_status_unknown(self, controller):
        assert controller.get_status("ns1", "missing") is None


@pytest.mark.asyncio
class TestLifecycle:
    async def test_start_and_stop(self, controller, reconciler):
        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0.01)
        assert controller.running

        controller.trigger_reconciliation("ns1", "c1")
        for _ in range(100):
            if reconciler.reconcile.await_count:
                break
            await asyncio.sleep(0.01)
        reconciler.reconcile.assert_awaited_with(C1)

        await controller.stop()
        await asyncio.wait_for(task, timeout=1)
        assert not controller.running
        assert controller.queue.shutting_down

    async def test_request_not_reconciled_concurrently(self, controller, reconciler):
        active = 0
        peak = 0

        async def slow_reconcile(request):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return ReconcileResult(success=True)

        reconciler.reconcile.side_effect = slow_reconcile
        task = asyncio.create_task(controller.start())
        for _ in range(5):
            controller.trigger_reconciliation("ns1", "c1")
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.1)

        assert peak == 1
        await controller.stop()
        await asyncio.wait_for(task, timeout=1)

    async def test_config_change_while_running(
        self, controller, reconciler, platform_store, make_config
    ):
        task = asyncio.create_task(controller.start())
        await asyncio.sleep(0.01)

        platform_store.put(make_config(clusters=[]))
        for _ in range(100):
            if reconciler.map_config_to_requests.await_count:
                break
            await asyncio.sleep(0.01)
        reconciler.map_config_to_requests.assert_awaited_once()

        await controller.stop()
        await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio
class TestLoopErrors:
    """The background loops log unexpected errors and keep running."""

    @pytest.fixture
    def controller(self, reconciler):
        config = ControllerConfig(resync_interval=0, backoff_base_delay=0)
        controller = Controller(reconciler, config=config)
        controller.running = True
        yield controller
        controller.queue.shutdown()

    async def test_resync_loop_survives_exception(self, controller, caplog):
        calls = []

        async def resync():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("list broke")
            controller.running = False
            return []

        controller.resync = resync
        await asyncio.wait_for(controller._resync_loop(), timeout=1)
        assert len(calls) == 2
        assert "Error in resync loop: list broke" in caplog.text

    async def test_config_loop_survives_exception(self, controller, caplog):
        calls = []

        async def watch_config():
            calls.append(1)
            if len(calls) == 1:
                raise KeyError("raw_object")
            controller.running = False

        controller.watch_config = watch_config
        await asyncio.wait_for(controller._config_loop(), timeout=1)
        assert len(calls) == 2
        assert "Error in config watch loop" in caplog.text

    async def test_config_loop_survives_store_error(self, controller, platform_store):
        platform_store.fail_on("watch", "GatewayServiceConfig", OperatorError.fatal("gone"))
        controller.config.backoff_base_delay = 0.005
        task = asyncio.create_task(controller._config_loop())
        await asyncio.sleep(0.02)
        assert not task.done()

        controller.running = False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
