"""Shared pytest fixtures for iac-reconciler tests."""

import itertools
import sys
import threading
import time
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import EngineSettings
from manifest import Manifest
from providers.base import NotFoundError, ProviderContext
from providers.registry import ProviderRegistry


class FakeProvider:
    """In-memory adapter that records every call.

    Created resources get ids '<kind>-<n>' and echo their attributes back
    as observed outputs, plus 'id' and any extra outputs given. Failures
    are queued per operation with fail().
    """

    def __init__(self, kind, outputs=None, delay=0.0):
        self.kind = kind
        self.outputs = dict(outputs or {})
        self.delay = delay
        self.resources = {}
        self.calls = []
        self.contexts = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._failures = []
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def fail(self, operation, error, times=1, name=None):
        """Raise error on the next `times` calls of operation.

        If name is given, only calls whose attributes (or provider id) carry
        that name are affected.
        """
        self._failures.append({'operation': operation, 'error': error, 'times': times, 'name': name})

    def _maybe_fail(self, operation, attributes=None, provider_id=None):
        with self._lock:
            for failure in self._failures:
                if failure['operation'] != operation or failure['times'] <= 0:
                    continue
                if failure['name'] is not None:
                    name = (attributes or {}).get('name')
                    if name is None and provider_id is not None:
                        name = (self.resources.get(provider_id) or {}).get('name')
                    if name != failure['name']:
                        continue
                failure['times'] -= 1
                raise failure['error']

    def _enter(self, operation, context, provider_id=None, attributes=None):
        with self._lock:
            self.calls.append((operation, provider_id, attributes))
            self.contexts.append(context)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        if self.delay:
            time.sleep(self.delay)

    def _leave(self):
        with self._lock:
            self.in_flight -= 1

    def operations(self):
        return [c[0] for c in self.calls]

    def create(self, context, attributes):
        self._enter('create', context, attributes=attributes)
        try:
            self._maybe_fail('create', attributes=attributes)
            provider_id = f"{self.kind}-{next(self._counter)}"
            self.resources[provider_id] = dict(attributes)
            observed = dict(attributes)
            observed.update(self.outputs)
            observed['id'] = provider_id
            return observed, provider_id
        finally:
            self._leave()

    def read(self, context, provider_id):
        self._enter('read', context, provider_id=provider_id)
        try:
            self._maybe_fail('read', provider_id=provider_id)
            if provider_id not in self.resources:
                raise NotFoundError(f"{self.kind} {provider_id} not found")
            observed = dict(self.resources[provider_id])
            observed.update(self.outputs)
            observed['id'] = provider_id
            return observed
        finally:
            self._leave()

    def update(self, context, provider_id, attributes):
        self._enter('update', context, provider_id=provider_id, attributes=attributes)
        try:
            self._maybe_fail('update', attributes=attributes, provider_id=provider_id)
            self.resources[provider_id] = dict(attributes)
            observed = dict(attributes)
            observed.update(self.outputs)
            observed['id'] = provider_id
            return observed
        finally:
            self._leave()

    def delete(self, context, provider_id):
        self._enter('delete', context, provider_id=provider_id)
        try:
            self._maybe_fail('delete', provider_id=provider_id)
            self.resources.pop(provider_id, None)
        finally:
            self._leave()


def make_manifest(resources, variables=None, name='test'):
    """Helper to create a manifest from resource dicts."""
    return Manifest.from_dict({
        'name': name,
        'variables': variables or {},
        'resources': resources,
    })


def make_registry(*providers, context=None):
    """Registry serving each FakeProvider under its kind."""
    registry = ProviderRegistry(context=context or ProviderContext(account='acct-1', region='eu-west-1'))
    for provider in providers:
        registry.register(provider.kind, provider)
    return registry


@pytest.fixture
def fast_settings():
    """Engine settings with no real backoff delays."""
    return EngineSettings(concurrency=4, max_attempts=3, backoff_base=0.0, backoff_max=0.0)


@pytest.fixture
def platform_resources():
    """network -> cluster -> pool plus a conditional addon on the cluster."""
    return {
        'network': {
            'kind': 'network',
            'attributes': {'name': 'net', 'cidr': '10.0.0.0/16'},
        },
        'cluster': {
            'kind': 'cluster',
            'attributes': {'name': 'main', 'network_id': {'ref': 'network.id'}},
        },
        'pool': {
            'kind': 'node-pool',
            'attributes': {'name': 'pool-a', 'cluster_id': {'ref': 'cluster.id'}, 'size': 3},
        },
        'addon': {
            'kind': 'release',
            'condition': {'var': 'enable_addon'},
            'depends_on': ['cluster'],
            'attributes': {'name': 'ingress'},
        },
    }


@pytest.fixture
def workspace(tmp_path):
    """Workspace directory with a manifests/ dir and reconciler.yaml.

    Adapters are declared as commands; CLI tests replace the registry with
    fakes.
    """
    (tmp_path / 'manifests').mkdir()
    (tmp_path / 'reconciler.yaml').write_text("""
stack: demo
engine:
  concurrency: 2
  max_attempts: 2
  backoff_base: 0
  backoff_max: 0
provider:
  account: acct-1
  region: eu-west-1
adapters:
  network:
    type: command
    command: [net-provider]
  cluster:
    type: command
    command: [cluster-provider]
""")
    (tmp_path / 'manifests' / 'platform.yaml').write_text("""
name: platform
variables:
  enable_addon: false
resources:
  network:
    kind: network
    attributes:
      name: net
      cidr: 10.0.0.0/16
  cluster:
    kind: cluster
    attributes:
      name: main
      network_id: {ref: network.id}
  addon:
    kind: cluster
    condition: {var: enable_addon}
    depends_on: [cluster]
    attributes:
      name: addon
""")
    return tmp_path
