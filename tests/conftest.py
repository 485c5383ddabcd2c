"""Shared pytest fixtures for converge tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from declarations import Resource
from resource_opr.errors import ResourceNotFoundError
from resource_opr.executor import RetryPolicy
from resource_opr.providers import BUILTIN_KINDS, ProviderRegistry
from resource_opr.state import StateStore


class FakeAdapter:
    """In-memory provider for one kind.

    Resource ids are the address ('Kind.name', taken from the 'name'
    attribute) so call logs read naturally. Failures are scripted per
    operation with fail(); hooks run before an operation executes.
    """

    def __init__(self, kind: str, immutable, calls: list, lock: threading.Lock):
        self.kind = kind
        self.immutable_attributes = frozenset(immutable)
        self.resources: dict[str, dict] = {}
        self.calls = calls
        self.failures: dict[str, list] = {}
        self.hooks: dict[str, object] = {}
        self._lock = lock
        self._counter = 0

    def fail(self, op: str, *errors):
        """Raise the given errors, in order, on the next calls to op."""
        self.failures.setdefault(op, []).extend(errors)

    def _enter(self, op: str, target: str, payload=None):
        with self._lock:
            self.calls.append((op, target, payload))
            queue = self.failures.get(op)
            error = queue.pop(0) if queue else None
        hook = self.hooks.get(op)
        if hook:
            hook(target, payload)
        if error is not None:
            raise error

    def create(self, attributes: dict) -> dict:
        if 'name' in attributes:
            rid = f"{self.kind}.{attributes['name']}"
        else:
            self._counter += 1
            rid = f"{self.kind}.{self._counter}"
        self._enter('create', rid, dict(attributes))
        self.resources[rid] = dict(attributes)
        return {'id': rid, 'address': f'{rid.lower()}.internal'}

    def read(self, resource_id: str) -> dict:
        self._enter('read', resource_id)
        if resource_id not in self.resources:
            raise ResourceNotFoundError(f"{resource_id} not found")
        return {'id': resource_id, 'address': f'{resource_id.lower()}.internal'}

    def update(self, resource_id: str, changed: dict) -> dict:
        self._enter('update', resource_id, dict(changed))
        if resource_id not in self.resources:
            raise ResourceNotFoundError(f"{resource_id} not found")
        self.resources[resource_id].update(changed)
        return {'id': resource_id}

    def delete(self, resource_id: str) -> None:
        self._enter('delete', resource_id)
        if resource_id not in self.resources:
            raise ResourceNotFoundError(f"{resource_id} not found")
        del self.resources[resource_id]


class FakeRegistry(ProviderRegistry):
    """Registry of FakeAdapters for every built-in kind sharing one call log."""

    def __init__(self):
        super().__init__()
        self.calls: list[tuple] = []
        lock = threading.Lock()
        for kind in BUILTIN_KINDS.values():
            self.register(FakeAdapter(kind.name, kind.immutable, self.calls, lock))

    def ops(self, op: str = None) -> list:
        """(op, id) pairs from the call log, optionally filtered by op."""
        return [(o, target) for o, target, _ in self.calls if op is None or o == op]


def make_resource(kind: str, name: str, **attributes) -> Resource:
    """Resource whose 'name' attribute mirrors its name."""
    return Resource(kind=kind, name=name, attributes={'name': name, **attributes})


@pytest.fixture
def registry():
    """FakeRegistry with an in-memory adapter per built-in kind."""
    return FakeRegistry()


@pytest.fixture
def store(tmp_path):
    """Empty StateStore in a temp directory."""
    return StateStore(tmp_path / 'state.json')


@pytest.fixture
def fast_retry():
    """Retry policy without delays."""
    return RetryPolicy(attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def network_stack():
    """Network, subnets, routing, compute, database and storage resources.

    Levels (longest path from a resource with no references):
        0: Network.main, Bucket.assets
        1: Subnet.a, Subnet.b, SecurityGroup.db, InternetGateway.main,
           BucketPolicy.assets
        2: RouteTable.public, Instance.web, DBSubnetGroup.db
        3: RouteTableAssociation.a, RouteTableAssociation.b, Database.main
    """
    return [
        make_resource('Network', 'main', cidr_block='10.0.0.0/16'),
        make_resource('Subnet', 'a', network_id='${Network.main.id}',
                      cidr_block='10.0.1.0/24', availability_zone='zone-a'),
        make_resource('Subnet', 'b', network_id='${Network.main.id}',
                      cidr_block='10.0.2.0/24', availability_zone='zone-b'),
        make_resource('InternetGateway', 'main', network_id='${Network.main.id}'),
        make_resource('RouteTable', 'public', network_id='${Network.main.id}',
                      routes=[{'cidr': '0.0.0.0/0', 'gateway_id': '${InternetGateway.main.id}'}]),
        make_resource('RouteTableAssociation', 'a', subnet_id='${Subnet.a.id}',
                      route_table_id='${RouteTable.public.id}'),
        make_resource('RouteTableAssociation', 'b', subnet_id='${Subnet.b.id}',
                      route_table_id='${RouteTable.public.id}'),
        make_resource('Instance', 'web', image_id='img-123', instance_type='small',
                      subnet_id='${Subnet.a.id}'),
        make_resource('DBSubnetGroup', 'db',
                      subnet_ids=['${Subnet.a.id}', '${Subnet.b.id}']),
        make_resource('SecurityGroup', 'db', network_id='${Network.main.id}',
                      ingress=[{'port': 5432, 'cidr': '10.0.0.0/16'}]),
        make_resource('Database', 'main', identifier='app-db', engine='postgres',
                      engine_version='16', db_subnet_group='${DBSubnetGroup.db.name}',
                      security_group_ids=['${SecurityGroup.db.id}']),
        make_resource('Bucket', 'assets', bucket='app-assets', region='region-1'),
        make_resource('BucketPolicy', 'assets', bucket='${Bucket.assets.bucket}',
                      policy={'public_read': False}),
    ]
