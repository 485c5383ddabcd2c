"""Tests for resource_opr.graph module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from declarations import Resource
from resource_opr.errors import (
    CyclicDependencyError,
    DuplicateResourceError,
    UndeclaredReferenceError,
    UnknownKindError,
    ValidationError,
)
from resource_opr.graph import ResourceGraph
from resource_opr.providers import BUILTIN_KINDS
from resource_opr.state import StateEntry, StateSnapshot


def _res(kind, name, **attrs):
    return Resource(kind=kind, name=name, attributes=attrs)


class TestBuild:
    """Tests for ResourceGraph.build validation."""

    def test_edges_from_references(self):
        graph = ResourceGraph.build([
            _res('Network', 'main', cidr_block='10.0.0.0/16'),
            _res('Subnet', 'a', network_id='${Network.main.id}'),
        ])
        assert graph.dependencies('Subnet.a') == ['Network.main']
        assert graph.dependents('Network.main') == ['Subnet.a']
        assert graph.dependencies('Network.main') == []

    def test_references_in_nested_values(self):
        graph = ResourceGraph.build([
            _res('Subnet', 'a'),
            _res('Subnet', 'b'),
            _res('DBSubnetGroup', 'db', subnet_ids=['${Subnet.a.id}', '${Subnet.b.id}']),
            _res('RouteTable', 'rt', routes=[{'target': 'gw-${Subnet.a.id}'}]),
        ])
        assert graph.dependencies('DBSubnetGroup.db') == ['Subnet.a', 'Subnet.b']
        assert graph.dependencies('RouteTable.rt') == ['Subnet.a']

    def test_repeated_reference_is_one_edge(self):
        graph = ResourceGraph.build([
            _res('Network', 'main'),
            _res('Subnet', 'a', network_id='${Network.main.id}', tag='${Network.main.name}'),
        ])
        assert graph.dependencies('Subnet.a') == ['Network.main']

    def test_duplicate_resource(self):
        with pytest.raises(DuplicateResourceError) as exc_info:
            ResourceGraph.build([_res('Network', 'main'), _res('Network', 'main')])
        assert exc_info.value.addresses == ['Network.main']

    def test_same_name_different_kind_allowed(self):
        graph = ResourceGraph.build([_res('Network', 'main'), _res('Subnet', 'main')])
        assert len(graph) == 2

    def test_undeclared_reference(self):
        with pytest.raises(UndeclaredReferenceError) as exc_info:
            ResourceGraph.build([
                _res('Subnet', 'a', network_id='${Network.missing.id}'),
            ])
        assert exc_info.value.missing == [('Subnet.a', 'Network.missing')]
        assert 'Network.missing' in str(exc_info.value)

    def test_undeclared_references_all_reported(self):
        with pytest.raises(UndeclaredReferenceError) as exc_info:
            ResourceGraph.build([
                _res('Subnet', 'a', network_id='${Network.x.id}'),
                _res('Subnet', 'b', network_id='${Network.y.id}'),
            ])
        assert len(exc_info.value.missing) == 2

    def test_unknown_kind(self):
        with pytest.raises(UnknownKindError) as exc_info:
            ResourceGraph.build([_res('Teleporter', 'x')], known_kinds=BUILTIN_KINDS)
        assert exc_info.value.kind == 'Teleporter'

    def test_errors_are_validation_errors(self):
        with pytest.raises(ValidationError):
            ResourceGraph.build([_res('Network', 'main'), _res('Network', 'main')])

    def test_non_strict_drops_dangling(self):
        graph = ResourceGraph.build([
            _res('Subnet', 'a', network_id='${Network.gone.id}'),
        ], strict=False)
        assert graph.dependencies('Subnet.a') == []


class TestCycles:
    """Tests for cycle detection."""

    def test_two_node_cycle(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            ResourceGraph.build([
                _res('SecurityGroup', 'a', peer='${SecurityGroup.b.id}'),
                _res('SecurityGroup', 'b', peer='${SecurityGroup.a.id}'),
            ])
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {'SecurityGroup.a', 'SecurityGroup.b'}
        assert len(cycle) == 3

    def test_self_reference(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            ResourceGraph.build([_res('SecurityGroup', 'a', peer='${SecurityGroup.a.id}')])
        assert exc_info.value.cycle == ['SecurityGroup.a', 'SecurityGroup.a']

    def test_cycle_reported_in_order(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            ResourceGraph.build([
                _res('Network', 'root'),
                _res('Subnet', 'a', next='${Subnet.b.id}', net='${Network.root.id}'),
                _res('Subnet', 'b', next='${Subnet.c.id}'),
                _res('Subnet', 'c', next='${Subnet.a.id}'),
            ])
        cycle = exc_info.value.cycle
        assert cycle == ['Subnet.a', 'Subnet.b', 'Subnet.c', 'Subnet.a']
        assert 'Subnet.a -> Subnet.b -> Subnet.c -> Subnet.a' in str(exc_info.value)

    def test_cycle_excludes_acyclic_tail(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            ResourceGraph.build([
                _res('Instance', 'web', sg='${SecurityGroup.a.id}'),
                _res('SecurityGroup', 'a', peer='${SecurityGroup.b.id}'),
                _res('SecurityGroup', 'b', peer='${SecurityGroup.a.id}'),
            ])
        assert 'Instance.web' not in exc_info.value.cycle


class TestOrdering:
    """Tests for topological order and levels."""

    def test_dependencies_first(self, network_stack):
        graph = ResourceGraph.build(network_stack)
        order = [r.address for r in graph.topological_order()]
        for res in network_stack:
            for dep in graph.dependencies(res.address):
                assert order.index(dep) < order.index(res.address)

    def test_ties_broken_by_declaration_order(self):
        graph = ResourceGraph.build([
            _res('Bucket', 'z'),
            _res('Network', 'main'),
            _res('Subnet', 'b', network_id='${Network.main.id}'),
            _res('Subnet', 'a', network_id='${Network.main.id}'),
            _res('Bucket', 'a'),
        ])
        order = [r.address for r in graph.topological_order()]
        assert order == ['Bucket.z', 'Network.main', 'Subnet.b', 'Subnet.a', 'Bucket.a']

    def test_dependency_declared_after_dependent(self):
        graph = ResourceGraph.build([
            _res('Subnet', 'a', network_id='${Network.main.id}'),
            _res('Bucket', 'logs'),
            _res('Network', 'main'),
        ])
        order = [r.address for r in graph.topological_order()]
        assert order == ['Bucket.logs', 'Network.main', 'Subnet.a']

    def test_order_is_reproducible(self, network_stack):
        first = [r.address for r in ResourceGraph.build(network_stack).topological_order()]
        second = [r.address for r in ResourceGraph.build(list(network_stack)).topological_order()]
        assert first == second

    def test_reverse_order(self, network_stack):
        graph = ResourceGraph.build(network_stack)
        assert graph.reverse_order() == list(reversed(graph.topological_order()))

    def test_priority_overrides_declaration_order(self):
        graph = ResourceGraph.build(
            [_res('Bucket', 'a'), _res('Bucket', 'b')],
            priority=['Bucket.b', 'Bucket.a'],
        )
        assert [r.address for r in graph.topological_order()] == ['Bucket.b', 'Bucket.a']

    def test_scenario_levels(self, network_stack):
        levels = ResourceGraph.build(network_stack).levels()
        assert levels['Network.main'] == 0
        for address in ('Subnet.a', 'Subnet.b', 'SecurityGroup.db'):
            assert levels[address] == 1
        # Needs both subnets
        assert levels['DBSubnetGroup.db'] == 2
        assert levels['RouteTable.public'] == 2
        assert levels['Instance.web'] == 2
        assert levels['RouteTableAssociation.a'] == 3
        assert levels['RouteTableAssociation.b'] == 3
        assert levels['Bucket.assets'] == 0
        assert levels['BucketPolicy.assets'] == 1
        assert levels['Database.main'] > levels['SecurityGroup.db']
        assert levels['Database.main'] > levels['DBSubnetGroup.db']
        assert levels['Database.main'] == max(levels.values())

    def test_transitive_dependents(self, network_stack):
        graph = ResourceGraph.build(network_stack)
        deps = graph.transitive_dependents('Subnet.a')
        assert deps == {'RouteTableAssociation.a', 'Instance.web', 'DBSubnetGroup.db', 'Database.main'}

    def test_get(self, network_stack):
        graph = ResourceGraph.build(network_stack)
        assert graph.get('Subnet', 'a').attributes['cidr_block'] == '10.0.1.0/24'
        assert 'Subnet.a' in graph
        with pytest.raises(KeyError):
            graph.get('Subnet', 'zzz')

    def test_empty_graph(self):
        graph = ResourceGraph.build([])
        assert len(graph) == 0
        assert graph.topological_order() == []
        assert graph.max_level == 0


class TestFromState:
    """Tests for rebuilding the prior graph from state."""

    def _snapshot(self, order=()):
        entries = {
            'Network.main': StateEntry('Network', 'main', provider_attributes={'id': 'n-1'}),
            'Subnet.a': StateEntry('Subnet', 'a', attributes={'network_id': '${Network.main.id}'},
                                   provider_attributes={'id': 's-1'}),
            'Instance.web': StateEntry('Instance', 'web',
                                       attributes={'subnet_id': '${Subnet.gone.id}'},
                                       provider_attributes={'id': 'i-1'}),
        }
        return StateSnapshot(serial=3, entries=entries, order=tuple(order))

    def test_edges_from_attribute_snapshots(self):
        graph = ResourceGraph.from_state(self._snapshot())
        assert graph.dependencies('Subnet.a') == ['Network.main']

    def test_dangling_references_dropped(self):
        graph = ResourceGraph.from_state(self._snapshot())
        assert graph.dependencies('Instance.web') == []

    def test_recorded_order_breaks_ties(self):
        graph = ResourceGraph.from_state(self._snapshot(order=['Instance.web', 'Network.main', 'Subnet.a']))
        order = [r.address for r in graph.topological_order()]
        assert order == ['Instance.web', 'Network.main', 'Subnet.a']
