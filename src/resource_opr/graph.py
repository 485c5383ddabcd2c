"""Graph module for resource orchestration.

Builds a dependency graph from declared resources and computes traversal
orderings for apply (dependencies first) and destroy (dependents first).

Resources live in an arena (list) and edges are index pairs, so the graph
holds no object cycles. An edge A -> B exists whenever an attribute of A
references B.
"""

import heapq
import logging
from typing import Iterable, Optional

from declarations import Resource, make_address
from resource_opr.errors import (
    CyclicDependencyError,
    DuplicateResourceError,
    UndeclaredReferenceError,
    UnknownKindError,
)

logger = logging.getLogger(__name__)


class ResourceGraph:
    """Validated, acyclic resource dependency graph.

    Provides ordered traversal for lifecycle operations:
    - topological_order(): dependencies before dependents (stable Kahn)
    - reverse_order(): dependents before dependencies
    - levels(): longest-path depth of each resource
    """

    def __init__(self, resources: list[Resource], edges: list[tuple[int, int]]):
        """Use ResourceGraph.build() instead of calling this directly."""
        self._resources = list(resources)
        self._index = {r.address: i for i, r in enumerate(self._resources)}
        self._deps: list[list[int]] = [[] for _ in self._resources]
        self._dependents: list[list[int]] = [[] for _ in self._resources]
        for src, dst in edges:
            if dst not in self._deps[src]:
                self._deps[src].append(dst)
                self._dependents[dst].append(src)
        self._order: list[int] = []

    @classmethod
    def build(
        cls,
        resources: Iterable[Resource],
        known_kinds: Optional[Iterable[str]] = None,
        strict: bool = True,
        priority: Optional[list[str]] = None,
    ) -> 'ResourceGraph':
        """Build and validate a graph from declared resources.

        Args:
            resources: Resources in declaration order
            known_kinds: If given, every resource kind must be in this set
            strict: If False, references to undeclared resources are dropped
                instead of raising (used for graphs rebuilt from state)
            priority: Optional address order used to break ties in the
                topological sort; defaults to declaration order

        Raises:
            DuplicateResourceError: Two resources share (kind, name)
            UndeclaredReferenceError: A reference names an undeclared resource
            UnknownKindError: A kind is not in known_kinds
            CyclicDependencyError: The references form a cycle
        """
        resources = list(resources)

        seen: set[str] = set()
        for res in resources:
            if res.address in seen:
                raise DuplicateResourceError(res.address)
            seen.add(res.address)

        if known_kinds is not None:
            kinds = set(known_kinds)
            for res in resources:
                if res.kind not in kinds:
                    raise UnknownKindError(res.kind, res.address)

        index = {r.address: i for i, r in enumerate(resources)}
        edges: list[tuple[int, int]] = []
        missing: list[tuple[str, str]] = []
        for i, res in enumerate(resources):
            for ref in res.references():
                target = index.get(ref.address)
                if target is None:
                    if strict:
                        missing.append((res.address, ref.address))
                    else:
                        logger.debug(f"Dropping dangling reference {res.address} -> {ref.address}")
                    continue
                edges.append((i, target))

        if missing:
            raise UndeclaredReferenceError(missing)

        graph = cls(resources, edges)
        graph._order = graph._stable_kahn(priority)
        return graph

    @classmethod
    def from_state(cls, snapshot) -> 'ResourceGraph':
        """Rebuild the prior graph from a state snapshot.

        Resources are rebuilt from the attribute snapshots that produced each
        entry. Ties are broken by the recorded apply order, then by entry
        order in the state file.
        """
        resources = [
            Resource(kind=e.kind, name=e.name, attributes=dict(e.attributes))
            for e in snapshot.entries.values()
        ]
        return cls.build(resources, strict=False, priority=list(snapshot.order))

    def _stable_kahn(self, priority: Optional[list[str]]) -> list[int]:
        """Topological sort; ready nodes are taken in priority order."""
        rank = list(range(len(self._resources)))
        if priority:
            base = len(priority)
            pos = {addr: i for i, addr in enumerate(priority)}
            rank = [pos.get(r.address, base + i) for i, r in enumerate(self._resources)]

        pending = [len(d) for d in self._deps]
        ready = [(rank[i], i) for i, n in enumerate(pending) if n == 0]
        heapq.heapify(ready)
        order: list[int] = []
        while ready:
            _, node = heapq.heappop(ready)
            order.append(node)
            for dependent in self._dependents[node]:
                pending[dependent] -= 1
                if pending[dependent] == 0:
                    heapq.heappush(ready, (rank[dependent], dependent))

        if len(order) != len(self._resources):
            remaining = {i for i, n in enumerate(pending) if n > 0}
            raise CyclicDependencyError(self._find_cycle(remaining))
        return order

    def _find_cycle(self, remaining: set[int]) -> list[str]:
        """Find one cycle among nodes left over by Kahn's algorithm."""
        state: dict[int, int] = {}  # 1 = on path, 2 = done
        for start in sorted(remaining):
            if start in state:
                continue
            path = [start]
            stack = [iter(self._deps[start])]
            state[start] = 1
            while stack:
                for nxt in stack[-1]:
                    if nxt not in remaining:
                        continue
                    if state.get(nxt) == 1:
                        loop = path[path.index(nxt):] + [nxt]
                        return [self._resources[i].address for i in loop]
                    if nxt not in state:
                        state[nxt] = 1
                        path.append(nxt)
                        stack.append(iter(self._deps[nxt]))
                        break
                else:
                    state[path.pop()] = 2
                    stack.pop()
        # Kahn only leaves nodes behind when a cycle exists
        return [self._resources[i].address for i in sorted(remaining)]

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, address: str) -> bool:
        return address in self._index

    @property
    def resources(self) -> list[Resource]:
        """Resources in declaration order."""
        return list(self._resources)

    @property
    def addresses(self) -> list[str]:
        return [r.address for r in self._resources]

    def get(self, kind: str, name: str) -> Resource:
        """Get a resource by kind and name.

        Raises:
            KeyError: If not declared
        """
        return self._resources[self._index[make_address(kind, name)]]

    def get_resource(self, address: str) -> Resource:
        """Get a resource by address.

        Raises:
            KeyError: If not declared
        """
        return self._resources[self._index[address]]

    def dependencies(self, address: str) -> list[str]:
        """Addresses the resource references directly."""
        return [self._resources[i].address for i in self._deps[self._index[address]]]

    def dependents(self, address: str) -> list[str]:
        """Addresses that reference the resource directly."""
        return [self._resources[i].address for i in self._dependents[self._index[address]]]

    def transitive_dependents(self, address: str) -> set[str]:
        """Every address that depends on the resource, directly or not."""
        found: set[int] = set()
        stack = list(self._dependents[self._index[address]])
        while stack:
            node = stack.pop()
            if node in found:
                continue
            found.add(node)
            stack.extend(self._dependents[node])
        return {self._resources[i].address for i in found}

    def topological_order(self) -> list[Resource]:
        """Resources with every dependency before its dependents."""
        return [self._resources[i] for i in self._order]

    def reverse_order(self) -> list[Resource]:
        """Resources with every dependent before its dependencies."""
        return list(reversed(self.topological_order()))

    def levels(self) -> dict[str, int]:
        """Longest-path depth per address (0 for resources with no deps)."""
        depth = [0] * len(self._resources)
        for node in self._order:
            if self._deps[node]:
                depth[node] = 1 + max(depth[d] for d in self._deps[node])
        return {r.address: depth[i] for i, r in enumerate(self._resources)}

    @property
    def max_level(self) -> int:
        if not self._resources:
            return 0
        return max(self.levels().values())

    def __repr__(self) -> str:
        return f"ResourceGraph({len(self._resources)} resources)"
