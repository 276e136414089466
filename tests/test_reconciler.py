"""Unit tests for reconciler.py - cluster reconcile state machine."""

from unittest.mock import AsyncMock

import pytest

from errors import ErrorKind, OperatorError
from events import EventBus, EventRecorder, Reason
from gateway import recipes
from kube.objects import ObjectKey
from models import (
    GATEWAY_FINALIZER,
    GATEWAY_OPERATION_ANNOTATION,
    OPERATION_ANNOTATION,
    Request,
    new_config_object,
)
from reconciler import ClusterReconciler, ReconcileResult

REQUEST = Request("c1", "ns1")
CLUSTER_KEY = ObjectKey("Cluster", "ns1", "c1")
REF_TERM = {"clusterRef": {"name": "c1", "namespace": "ns1"}}


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def recorder(event_bus):
    return EventRecorder(event_bus=event_bus)


@pytest.fixture
def reconciler(platform_store, broker, recorder):
    return ClusterReconciler(
        platform_store=platform_store,
        broker=broker,
        provider_name="gateway",
        provider_namespace="openmcp-system",
        recorder=recorder,
        resync_after=3600,
    )


@pytest.fixture
def events(event_bus):
    """Collect published events."""
    published = []
    original = event_bus.publish

    async def publish(event):
        published.append(event)
        await original(event)

    event_bus.publish = publish
    return published


def has_gateway(store) -> bool:
    return store.contains(recipes.gateway_object().key)


class TestReconcileResult:
    def test_default_values(self):
        result = ReconcileResult()
        assert result.success is False
        assert result.message == ""
        assert result.requeue_after is None
        assert result.forget is False


@pytest.mark.asyncio
class TestReconcileSkips:
    async def test_missing_cluster(self, reconciler, broker):
        result = await reconciler.reconcile(REQUEST)
        assert result.success
        assert result.forget
        assert result.requeue_after is None
        assert broker.acquired == []

    async def test_not_in_scope_without_finalizer(
        self, reconciler, platform_store, broker, make_cluster, make_config
    ):
        platform_store.put(make_cluster())
        platform_store.put(make_config(clusters=[{"clusterRef": {"name": "other"}}]))

        result = await reconciler.reconcile(REQUEST)
        assert result.success
        assert result.message == "Not in scope"
        assert result.forget
        assert broker.acquired == []
        assert platform_store.writes == []

    async def test_missing_config_without_finalizer(
        self, reconciler, platform_store, broker, make_cluster
    ):
        platform_store.put(make_cluster())
        result = await reconciler.reconcile(REQUEST)
        assert result.success
        assert broker.acquired == []

    async def test_ignore_annotation(
        self, reconciler, platform_store, broker, make_cluster, make_config
    ):
        platform_store.put(make_cluster(annotations={OPERATION_ANNOTATION: "ignore"}))
        platform_store.put(make_config(clusters=[REF_TERM]))

        result = await reconciler.reconcile(REQUEST)
        assert result.success
        assert broker.acquired == []
        assert platform_store.writes == []

    async def test_gateway_annotation_wins(
        self, reconciler, platform_store, broker, make_cluster, make_config
    ):
        platform_store.put(
            make_cluster(
                annotations={
                    GATEWAY_OPERATION_ANNOTATION: "ignore",
                    OPERATION_ANNOTATION: "reconcile",
                }
            )
        )
        platform_store.put(make_config(clusters=[REF_TERM]))

        await reconciler.reconcile(REQUEST)
        assert broker.acquired == []
        cluster = platform_store.peek(CLUSTER_KEY)
        assert cluster.annotations[OPERATION_ANNOTATION] == "reconcile"

    async def test_reconcile_annotation_is_removed(
        self, reconciler, platform_store, make_cluster
    ):
        platform_store.put(make_cluster(annotations={GATEWAY_OPERATION_ANNOTATION: "reconcile"}))

        result = await reconciler.reconcile(REQUEST)
        assert result.success
        cluster = platform_store.peek(CLUSTER_KEY)
        assert GATEWAY_OPERATION_ANNOTATION not in cluster.annotations

    async def test_access_not_ready(
        self, reconciler, platform_store, cluster_store, broker, make_cluster, make_config
    ):
        broker.ready = False
        platform_store.put(make_cluster())
        platform_store.put(make_config(clusters=[REF_TERM]))

        result = await reconciler.reconcile(REQUEST)
        assert not result.success
        assert result.requeue_after == 5
        assert not platform_store.peek(CLUSTER_KEY).has_finalizer(GATEWAY_FINALIZER)
        assert cluster_store.writes == []

    async def test_invalid_config_is_fatal(
        self, reconciler, platform_store, make_cluster, make_config
    ):
        config = make_config(clusters=[REF_TERM])
        del config.data["spec"]["dns"]
        platform_store.put(make_cluster())
        platform_store.put(config)

        with pytest.raises(OperatorError) as exc_info:
            await reconciler.reconcile(REQUEST)
        assert exc_info.value.kind == ErrorKind.FATAL
        assert "dns" in str(exc_info.value)


@pytest.mark.asyncio
class TestConverge:
    async def test_installs_gateway(
        self, reconciler, platform_store, cluster_store, make_cluster, make_config, events
    ):
        platform_store.put(make_cluster())
        platform_store.put(make_config(clusters=[REF_TERM]))

        result = await reconciler.reconcile(REQUEST)
        assert result.success
        assert result.requeue_after == 3600
        assert platform_store.peek(CLUSTER_KEY).has_finalizer(GATEWAY_FINALIZER)
        assert platform_store.contains(ObjectKey("HelmRelease", "ns1", "c1.gateway"))
        assert has_gateway(cluster_store)
        assert [e.reason for e in events] == [Reason.GATEWAY_INSTALLED]

    async def test_selected_by_purpose(
        self, reconciler, platform_store, cluster_store, make_cluster, make_config
    ):
        platform_store.put(make_cluster(purposes=["workload"]))
        platform_store.put(make_config(clusters=[{"selector": {"matchPurpose": "workload"}}]))

        await reconciler.reconcile(REQUEST)
        assert has_gateway(cluster_store)

    async def test_second_reconcile_writes_nothing(
        self, reconciler, platform_store, cluster_store, make_cluster, make_config
    ):
        platform_store.put(make_cluster())
        platform_store.put(make_config(clusters=[REF_TERM]))
        await reconciler.reconcile(REQUEST)
        platform_writes = list(platform_store.writes)
        cluster_writes = list(cluster_store.writes)

        await reconciler.reconcile(REQUEST)
        assert platform_store.writes == platform_writes
        assert cluster_store.writes == cluster_writes

    async def test_finalizer_added_before_install(
        self, reconciler, platform_store, make_cluster, make_config
    ):
        platform_store.put(make_cluster())
        platform_store.put(make_config(clusters=[REF_TERM]))
        platform_store.fail_on("create", "OCIRepository", OperatorError.fatal("quota"))

        with pytest.raises(OperatorError):
            await reconciler.reconcile(REQUEST)
        assert platform_store.peek(CLUSTER_KEY).has_finalizer(GATEWAY_FINALIZER)

    async def test_missing_kind_requeues(
        self, reconciler, platform_store, cluster_store, make_cluster, make_config
    ):
        platform_store.put(make_cluster())
        platform_store.put(make_config(clusters=[REF_TERM]))
        cluster_store.fail_on(
            "get", "EnvoyProxy", OperatorError.not_yet_available("no matches for kind")
        )

        result = await reconciler.reconcile(REQUEST)
        assert not result.success
        assert result.requeue_after == 10

    async def test_recorder_failure_does_not_fail_reconcile(
        self, platform_store, broker, make_cluster, make_config
    ):
        store = AsyncMock()
        store.create.side_effect = OperatorError.fatal("events forbidden")
        reconciler = ClusterReconciler(
            platform_store=platform_store,
            broker=broker,
            provider_name="gateway",
            provider_namespace="openmcp-system",
            recorder=EventRecorder(store=store),
        )
        platform_store.put(make_cluster())
        platform_store.put(make_config(clusters=[REF_TERM]))

        result = await reconciler.reconcile(REQUEST)
        assert result.success
        store.create.assert_awaited_once()


@pytest.mark.asyncio
class TestTeardown:
    async def install(self, reconciler, platform_store, make_cluster, make_config):
        platform_store.put(make_cluster())
        platform_store.put(make_config(clusters=[REF_TERM]))
        await reconciler.reconcile(REQUEST)

    async def drain(self, reconciler, limit=5):
        results = []
        for _ in range(limit):
            result = await reconciler.reconcile(REQUEST)
            results.append(result)
            if result.success:
                break
        return results

    async def test_finalizer_without_term_tears_down(
        self, reconciler, platform_store, cluster_store, broker, make_cluster, make_config, events
    ):
        await self.install(reconciler, platform_store, make_cluster, make_config)
        platform_store.put(make_config(clusters=[]))

        results = await self.drain(reconciler)
        assert results[-1].success
        assert all(r.requeue_after == 10 for r in results[:-1])
        assert not has_gateway(cluster_store)
        assert not platform_store.contains(ObjectKey("HelmRelease", "ns1", "c1.gateway"))
        cluster = platform_store.peek(CLUSTER_KEY)
        assert not cluster.has_finalizer(GATEWAY_FINALIZER)
        assert broker.released == ["ns1/c1"]
        assert Reason.REMAINING_RESOURCES in [e.reason for e in events]
        assert events[-1].reason == Reason.GATEWAY_UNINSTALLED

    async def test_teardown_does_not_converge(
        self, reconciler, platform_store, cluster_store, make_cluster, make_config
    ):
        platform_store.put(make_cluster(finalizer=True))
        platform_store.put(make_config(clusters=[]))

        result = await reconciler.reconcile(REQUEST)
        assert result.success
        assert cluster_store.writes_for("create") == []
        assert platform_store.writes_for("create") == []
        assert not platform_store.peek(CLUSTER_KEY).has_finalizer(GATEWAY_FINALIZER)

    async def test_missing_config_tears_down(
        self, reconciler, platform_store, cluster_store, make_cluster, make_config
    ):
        await self.install(reconciler, platform_store, make_cluster, make_config)
        platform_store.purge(ObjectKey("GatewayServiceConfig", "", "gateway"))

        results = await self.drain(reconciler)
        assert results[-1].success
        assert not has_gateway(cluster_store)

    async def test_deleting_cluster_is_released(
        self, reconciler, platform_store, cluster_store, make_cluster, make_config
    ):
        await self.install(reconciler, platform_store, make_cluster, make_config)
        await platform_store.delete(platform_store.peek(CLUSTER_KEY))
        assert platform_store.peek(CLUSTER_KEY).is_deleting

        results = await self.drain(reconciler)
        assert results[-1].success
        assert not platform_store.contains(CLUSTER_KEY)
        assert not has_gateway(cluster_store)

    async def test_finalizer_kept_while_resources_remain(
        self, reconciler, platform_store, cluster_store, make_cluster, make_config
    ):
        await self.install(reconciler, platform_store, make_cluster, make_config)
        gateway = cluster_store.peek(recipes.gateway_object().key)
        gateway.metadata["finalizers"] = ["gateway-exists-finalizer.gateway.networking.k8s.io"]
        cluster_store.put(gateway)
        platform_store.put(make_config(clusters=[]))

        for _ in range(3):
            result = await reconciler.reconcile(REQUEST)
            assert not result.success
            assert str(gateway.key) in result.message
            assert platform_store.peek(CLUSTER_KEY).has_finalizer(GATEWAY_FINALIZER)

        cluster_store.purge(gateway.key)
        results = await self.drain(reconciler)
        assert results[-1].success
        assert not platform_store.peek(CLUSTER_KEY).has_finalizer(GATEWAY_FINALIZER)

    async def test_waits_for_access_release(
        self, reconciler, platform_store, broker, make_cluster, make_config
    ):
        broker.release_after = 5
        platform_store.put(make_cluster(finalizer=True))
        platform_store.put(make_config(clusters=[]))

        result = await reconciler.reconcile(REQUEST)
        assert not result.success
        assert result.requeue_after == 5
        assert platform_store.peek(CLUSTER_KEY).has_finalizer(GATEWAY_FINALIZER)

    async def test_fatal_error_propagates(
        self, reconciler, platform_store, cluster_store, make_cluster, make_config
    ):
        await self.install(reconciler, platform_store, make_cluster, make_config)
        platform_store.put(make_config(clusters=[]))
        error = OperatorError.fatal("forbidden")
        cluster_store.fail_on("delete", "Gateway", error)

        with pytest.raises(OperatorError) as exc_info:
            await reconciler.reconcile(REQUEST)
        assert exc_info.value is error


@pytest.mark.asyncio
class TestMapConfigToRequests:
    async def test_maps_matching_and_finalized_clusters(
        self, reconciler, platform_store, make_cluster, make_config
    ):
        platform_store.put(make_cluster("c1", "ns1", purposes=["workload"]))
        platform_store.put(make_cluster("c2", "ns1", purposes=["mcp"]))
        platform_store.put(make_cluster("c3", "ns2", finalizer=True))
        config = make_config(clusters=[{"selector": {"matchPurpose": "workload"}}])

        requests = await reconciler.map_config_to_requests(config)
        assert sorted(requests, key=str) == [Request("c1", "ns1"), Request("c3", "ns2")]

    async def test_ignores_other_configs(
        self, reconciler, platform_store, make_cluster, make_config
    ):
        platform_store.put(make_cluster())
        config = make_config(clusters=[REF_TERM], name="other-provider")
        assert await reconciler.map_config_to_requests(config) == []

    async def test_ignores_other_kinds(self, reconciler, make_cluster):
        assert await reconciler.map_config_to_requests(make_cluster()) == []

    async def test_list_error(self, reconciler, platform_store, make_config):
        platform_store.fail_on("list", "Cluster", OperatorError.fatal("unavailable"))
        assert await reconciler.map_config_to_requests(make_config(clusters=[REF_TERM])) == []

    async def test_invalid_config_maps_to_nothing(
        self, reconciler, platform_store, make_cluster
    ):
        platform_store.put(make_cluster("c1", "ns1", finalizer=True))
        config = new_config_object("gateway", {"clusters": [{"selector": "oops"}]})
        assert await reconciler.map_config_to_requests(config) == []

    async def test_empty_config_maps_finalized_clusters(
        self, reconciler, platform_store, make_cluster
    ):
        platform_store.put(make_cluster("c1", "ns1", finalizer=True))
        platform_store.put(make_cluster("c2", "ns1", purposes=["workload"]))
        requests = await reconciler.map_config_to_requests(new_config_object("gateway", {}))
        assert requests == [Request("c1", "ns1")]
