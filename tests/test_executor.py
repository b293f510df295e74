"""Tests for reconciler.executor module.

Uses in-memory fake providers to test execution ordering, output
propagation, retry, failure isolation and cancellation without real
infrastructure.
"""

import threading

import pytest

from config import EngineSettings
from conftest import FakeProvider, make_manifest, make_registry
from providers.base import NotFoundError, ProviderError
from reconciler.errors import ConfigurationError, InternalError
from reconciler.executor import ApplyResult, Executor
from reconciler.graph import DependencyGraph, NodeStatus
from reconciler.planner import ActionType, Plan, Planner, ResourceAction
from reconciler.state import MemoryStateStore, StateRecord


def _plan(resources, variables=None, snapshot=None):
    graph = DependencyGraph(make_manifest(resources, variables))
    return Planner(graph, snapshot or {}).plan()


def _run(plan, registry, store, settings, **kwargs):
    return Executor(plan=plan, registry=registry, store=store, settings=settings, **kwargs).run()


@pytest.fixture
def providers():
    return {
        'network': FakeProvider('network'),
        'cluster': FakeProvider('cluster'),
        'node-pool': FakeProvider('node-pool'),
        'release': FakeProvider('release'),
    }


@pytest.fixture
def registry(providers):
    return make_registry(*providers.values())


class TestApplyResult:
    """Tests for ApplyResult."""

    def test_success_means_no_failures(self):
        assert ApplyResult(applied=['a'], blocked=['b']).success
        assert not ApplyResult(failed=['a']).success

    def test_to_dict(self):
        d = ApplyResult(applied=['a'], failed=['b'], errors={'b': 'boom'}, duration=1.234).to_dict()
        assert d['success'] is False
        assert d['applied'] == ['a']
        assert d['errors'] == {'b': 'boom'}
        assert d['duration_seconds'] == 1.23


class TestExecutorApply:
    """Happy-path execution."""

    def test_creates_in_dependency_order(self, platform_resources, registry, providers, fast_settings):
        store = MemoryStateStore()
        plan = _plan(platform_resources, {'enable_addon': True})
        result = _run(plan, registry, store, fast_settings)

        assert result.success
        assert result.applied == ['network', 'cluster', 'pool', 'addon']
        assert result.failed == [] and result.blocked == []
        assert providers['network'].operations() == ['create']
        assert providers['cluster'].operations() == ['create']

    def test_outputs_propagate_to_consumers(self, platform_resources, registry, providers, fast_settings):
        plan = _plan(platform_resources, {'enable_addon': False})
        _run(plan, registry, MemoryStateStore(), fast_settings)

        _, _, cluster_attrs = providers['cluster'].calls[0]
        assert cluster_attrs == {'name': 'main', 'network_id': 'network-1'}
        _, _, pool_attrs = providers['node-pool'].calls[0]
        assert pool_attrs['cluster_id'] == 'cluster-1'

    def test_state_written_after_confirmation(self, platform_resources, registry, fast_settings):
        store = MemoryStateStore()
        plan = _plan(platform_resources, {'enable_addon': False})
        _run(plan, registry, store, fast_settings)

        record = store.get('cluster')
        assert record.version == 1
        assert record.kind == 'cluster'
        assert record.provider_id == 'cluster-1'
        assert record.last_attributes == {'name': 'main', 'network_id': 'network-1'}
        assert record.outputs['id'] == 'cluster-1'
        assert record.dependencies == ['network']
        assert store.get('addon') is None

    def test_skipped_nodes_reported(self, platform_resources, registry, providers, fast_settings):
        plan = _plan(platform_resources, {'enable_addon': False})
        result = _run(plan, registry, MemoryStateStore(), fast_settings)
        assert result.skipped == ['addon']
        assert providers['release'].calls == []
        assert plan.graph.get_node('addon').status == NodeStatus.SKIPPED

    def test_graph_status_mirrored(self, platform_resources, registry, fast_settings):
        plan = _plan(platform_resources, {'enable_addon': True})
        _run(plan, registry, MemoryStateStore(), fast_settings)
        assert {n.status for n in plan.graph.nodes} == {NodeStatus.APPLIED}

    def test_context_passed_to_every_call(self, platform_resources, registry, providers, fast_settings):
        plan = _plan(platform_resources, {'enable_addon': True})
        _run(plan, registry, MemoryStateStore(), fast_settings)
        contexts = [c for p in providers.values() for c in p.contexts]
        assert len(contexts) == 4
        assert all(c is registry.context for c in contexts)
        assert contexts[0].region == 'eu-west-1'

    def test_update_uses_recorded_provider_id(self, registry, providers, fast_settings):
        snapshot = {'network': StateRecord(
            id='network', kind='network', last_attributes={'cidr': '10.0.0.0/16'},
            provider_id='network-77', outputs={'id': 'network-77'}, version=3,
        )}
        store = MemoryStateStore(snapshot)
        plan = _plan({'network': {'kind': 'network', 'attributes': {'cidr': '10.1.0.0/16'}}},
                     snapshot=store.snapshot())
        result = _run(plan, registry, store, fast_settings)

        assert result.applied == ['network']
        assert providers['network'].calls == [('update', 'network-77', {'cidr': '10.1.0.0/16'})]
        assert store.get('network').version == 4

    def test_noop_makes_no_provider_call(self, registry, providers, fast_settings):
        snapshot = {'network': StateRecord(
            id='network', kind='network', last_attributes={'cidr': '10.0.0.0/16'},
            provider_id='network-77', outputs={'id': 'network-77'}, version=1,
        )}
        store = MemoryStateStore(snapshot)
        plan = _plan({
            'network': {'kind': 'network', 'attributes': {'cidr': '10.0.0.0/16'}},
            'cluster': {'kind': 'cluster', 'attributes': {'network_id': {'ref': 'network.id'}}},
        }, snapshot=store.snapshot())
        result = _run(plan, registry, store, fast_settings)

        assert result.unchanged == ['network']
        assert result.applied == ['cluster']
        assert providers['network'].calls == []
        assert providers['cluster'].calls[0][2] == {'network_id': 'network-77'}
        assert store.get('network').version == 1

    def test_deletes_removed_resources(self, registry, providers, fast_settings):
        providers['network'].resources['network-5'] = {}
        providers['cluster'].resources['cluster-9'] = {}
        store = MemoryStateStore({
            'network': StateRecord(id='network', kind='network', provider_id='network-5', version=1),
            'cluster': StateRecord(id='cluster', kind='cluster', provider_id='cluster-9',
                                   dependencies=['network'], version=1),
        })
        plan = _plan({'dns': {'kind': 'release'}}, snapshot=store.snapshot())
        result = _run(plan, registry, store, fast_settings)

        assert result.deleted == ['cluster', 'network']
        assert result.applied == ['dns']
        assert providers['network'].resources == {}
        assert providers['cluster'].resources == {}
        assert store.ids() == ['dns']

    def test_delete_already_absent_counts_as_deleted(self, registry, providers, fast_settings):
        providers['network'].fail('delete', NotFoundError('gone'))
        store = MemoryStateStore({
            'network': StateRecord(id='network', kind='network', provider_id='network-5', version=1),
        })
        plan = Planner(None, store.snapshot()).destroy_plan()
        result = _run(plan, registry, store, fast_settings)
        assert result.deleted == ['network']
        assert store.ids() == []


class TestExecutorConcurrency:
    """Bounded worker pool."""

    def _independent(self, count):
        return {f'r{i}': {'kind': 'network', 'attributes': {'name': f'r{i}'}} for i in range(count)}

    def test_in_flight_never_exceeds_concurrency(self, fast_settings):
        provider = FakeProvider('network', delay=0.05)
        fast_settings.concurrency = 2
        result = _run(_plan(self._independent(6)), make_registry(provider), MemoryStateStore(), fast_settings)
        assert len(result.applied) == 6
        assert provider.max_in_flight <= 2

    def test_independent_nodes_run_in_parallel(self, fast_settings):
        provider = FakeProvider('network', delay=0.1)
        fast_settings.concurrency = 4
        _run(_plan(self._independent(4)), make_registry(provider), MemoryStateStore(), fast_settings)
        assert provider.max_in_flight > 1

    def test_serial_dispatch_follows_declaration_order(self, fast_settings):
        provider = FakeProvider('network')
        fast_settings.concurrency = 1
        _run(_plan(self._independent(5)), make_registry(provider), MemoryStateStore(), fast_settings)
        assert [c[2]['name'] for c in provider.calls] == ['r0', 'r1', 'r2', 'r3', 'r4']


class TestExecutorFailures:
    """Retry, failure isolation and drift."""

    def test_transient_error_retried_with_backoff(self, platform_resources, registry, providers):
        sleeps = []
        settings = EngineSettings(max_attempts=3, backoff_base=1.0, backoff_max=30.0)
        providers['cluster'].fail('create', ProviderError('throttled', transient=True), times=2)
        plan = _plan(platform_resources, {'enable_addon': False})
        result = _run(plan, registry, MemoryStateStore(), settings, sleep=sleeps.append)

        assert result.success
        assert providers['cluster'].operations() == ['create', 'create', 'create']
        assert sleeps == [1.0, 2.0]

    def test_retries_exhausted(self, platform_resources, registry, providers, fast_settings):
        providers['cluster'].fail('create', ProviderError('throttled', transient=True), times=10)
        plan = _plan(platform_resources, {'enable_addon': True})
        result = _run(plan, registry, MemoryStateStore(), fast_settings)

        assert result.failed == ['cluster']
        assert sorted(result.blocked) == ['addon', 'pool']
        assert len(providers['cluster'].calls) == fast_settings.max_attempts
        assert result.errors['cluster'] == 'transient provider error: throttled'

    def test_permanent_error_not_retried(self, platform_resources, registry, providers, fast_settings):
        providers['network'].fail('create', ProviderError('invalid cidr'))
        plan = _plan(platform_resources, {'enable_addon': True})
        result = _run(plan, registry, MemoryStateStore(), fast_settings)

        assert len(providers['network'].calls) == 1
        assert result.failed == ['network']
        assert sorted(result.blocked) == ['addon', 'cluster', 'pool']
        assert result.errors['network'] == 'permanent provider error: invalid cidr'
        assert providers['cluster'].calls == []

    def test_failure_isolated_to_dependents(self, platform_resources, registry, providers, fast_settings):
        resources = dict(platform_resources)
        resources['dns'] = {'kind': 'release', 'attributes': {'name': 'dns'}}
        providers['cluster'].fail('create', ProviderError('quota exceeded'))
        plan = _plan(resources, {'enable_addon': True})
        store = MemoryStateStore()
        result = _run(plan, registry, store, fast_settings)

        assert not result.success
        assert result.applied == ['network', 'dns']
        assert result.failed == ['cluster']
        assert sorted(result.blocked) == ['addon', 'pool']
        assert result.errors['pool'] == "blocked by 'cluster'"
        assert sorted(store.ids()) == ['dns', 'network']
        assert plan.graph.get_node('pool').status == NodeStatus.BLOCKED

    def test_drift_fails_node_after_provider_call(self, registry, providers, fast_settings):
        store = MemoryStateStore()
        plan = _plan({
            'network': {'kind': 'network', 'attributes': {'name': 'net'}},
            'cluster': {'kind': 'cluster', 'attributes': {'network_id': {'ref': 'network.id'}}},
        })
        # Another writer records the network between plan and apply
        store.put('network', StateRecord(id='network', kind='network'), expected_version=0)
        result = _run(plan, registry, store, fast_settings)

        assert result.failed == ['network']
        assert result.blocked == ['cluster']
        assert 'State drift' in result.errors['network']
        assert providers['network'].operations() == ['create']
        assert store.get('network').version == 1

    def test_missing_output_fails_consumer(self, registry, providers, fast_settings):
        plan = _plan({
            'network': {'kind': 'network', 'attributes': {'name': 'net'}},
            'cluster': {'kind': 'cluster', 'attributes': {'arn': {'ref': 'network.arn'}}},
        })
        result = _run(plan, registry, MemoryStateStore(), fast_settings)

        assert result.applied == ['network']
        assert result.failed == ['cluster']
        assert "has no output 'arn'" in result.errors['cluster']
        assert providers['cluster'].calls == []

    def test_unexpected_adapter_exception(self, registry, providers, fast_settings):
        providers['network'].fail('create', ValueError('bad payload'))
        plan = _plan({'network': {'kind': 'network'}})
        result = _run(plan, registry, MemoryStateStore(), fast_settings)
        assert result.failed == ['network']
        assert result.errors['network'] == 'adapter error: ValueError: bad payload'

    def test_adapter_crash_does_not_stop_independent_nodes(self, registry, providers):
        settings = EngineSettings(concurrency=1, max_attempts=3, backoff_base=0.0, backoff_max=0.0)
        providers['cluster'].fail('create', RuntimeError('connection reset mid-body'))
        plan = _plan({
            'cluster': {'kind': 'cluster', 'attributes': {'name': 'prod'}},
            'pool': {'kind': 'node-pool', 'attributes': {'cluster_id': {'ref': 'cluster.id'}}},
            'network': {'kind': 'network', 'attributes': {'name': 'net'}},
        })
        store = MemoryStateStore()
        result = _run(plan, registry, store, settings)

        assert result.failed == ['cluster']
        assert result.blocked == ['pool']
        assert result.applied == ['network']
        assert result.errors['cluster'] == 'adapter error: RuntimeError: connection reset mid-body'
        assert providers['cluster'].operations() == ['create']
        assert store.ids() == ['network']
        assert plan.graph.get_node('cluster').status == NodeStatus.FAILED

    def test_internal_error_from_adapter_propagates(self, registry, providers, fast_settings):
        providers['network'].fail('create', InternalError('corrupted engine state'))
        plan = _plan({'network': {'kind': 'network'}})
        with pytest.raises(InternalError, match='corrupted engine state'):
            _run(plan, registry, MemoryStateStore(), fast_settings)

    def test_missing_adapter_is_config_error(self, fast_settings):
        plan = _plan({'network': {'kind': 'network'}, 'db': {'kind': 'database'}})
        provider = FakeProvider('network')
        with pytest.raises(ConfigurationError, match='database'):
            _run(plan, make_registry(provider), MemoryStateStore(), fast_settings)
        assert provider.calls == []


class TestExecutorCancellation:
    """Abort signal and deadline."""

    def test_abort_before_start_dispatches_nothing(self, platform_resources, registry, providers, fast_settings):
        abort = threading.Event()
        abort.set()
        plan = _plan(platform_resources, {'enable_addon': True})
        result = _run(plan, registry, MemoryStateStore(), fast_settings, abort=abort)
        assert result.cancelled == ['network', 'cluster', 'pool', 'addon']
        assert all(not p.calls for p in providers.values())

    def test_abort_lets_in_flight_finish(self, fast_settings):
        abort = threading.Event()

        class AbortingProvider(FakeProvider):
            def create(self, context, attributes):
                observed = super().create(context, attributes)
                abort.set()
                return observed

        provider = AbortingProvider('network')
        fast_settings.concurrency = 1
        store = MemoryStateStore()
        plan = _plan({
            'a': {'kind': 'network', 'attributes': {'name': 'a'}},
            'b': {'kind': 'network', 'attributes': {'name': 'b'}},
        })
        result = _run(plan, make_registry(provider), store, fast_settings, abort=abort)

        assert result.applied == ['a']
        assert result.cancelled == ['b']
        assert store.ids() == ['a']

    def test_deadline_stops_dispatch(self, platform_resources, registry, providers):
        settings = EngineSettings(deadline=0)
        plan = _plan(platform_resources, {'enable_addon': True})
        result = _run(plan, registry, MemoryStateStore(), settings)
        assert result.cancelled == ['network', 'cluster', 'pool', 'addon']
        assert result.success


class TestExecutorInvariants:
    """Engine invariant checks."""

    def test_duplicate_actions(self, registry):
        plan = Plan(actions=[
            ResourceAction('a', ActionType.CREATE, 'network'),
            ResourceAction('a', ActionType.CREATE, 'network'),
        ])
        with pytest.raises(InternalError):
            Executor(plan=plan, registry=registry, store=MemoryStateStore())

    def test_dependency_without_action(self, registry):
        plan = Plan(actions=[ResourceAction('a', ActionType.DELETE, 'network', depends_on=['ghost'])])
        with pytest.raises(InternalError, match='ghost'):
            Executor(plan=plan, registry=registry, store=MemoryStateStore())

    def test_unresolved_binding_at_dispatch(self, registry, providers, fast_settings):
        graph = DependencyGraph(make_manifest({
            'network': {'kind': 'network'},
            'cluster': {'kind': 'cluster', 'attributes': {'network_id': {'ref': 'network.id'}}},
        }))
        # Consumer ordered without its producer dependency
        plan = Plan(actions=[
            ResourceAction('cluster', ActionType.CREATE, 'cluster'),
            ResourceAction('network', ActionType.CREATE, 'network', depends_on=['cluster']),
        ], graph=graph)
        with pytest.raises(InternalError, match='unresolved binding'):
            _run(plan, registry, MemoryStateStore(), fast_settings)
        assert providers['cluster'].calls == []

    def test_dry_run(self, platform_resources, registry, providers, capsys):
        plan = _plan(platform_resources, {'enable_addon': False})
        result = Executor(plan=plan, registry=registry, store=MemoryStateStore(), dry_run=True).run()

        captured = capsys.readouterr()
        assert 'DRY-RUN: 4 action(s)' in captured.out
        assert 'CREATE  cluster (cluster) after network' in captured.out
        assert 'SKIP    addon (release)' in captured.out
        assert result.applied == []
        assert all(not p.calls for p in providers.values())
