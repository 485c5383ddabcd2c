"""Planner for resource orchestration.

Diffs declared resources against a state snapshot and produces a Plan: an
ordered list of actions, each carrying the ids of the actions it waits on.

Ordering rules:
- create/update of A waits for create/update of everything A references
- a replacement is a delete followed by a create of the same resource
- a delete of B waits for the deletes of everything that depended on B in
  the prior (applied) graph, and for updates that drop a reference to B

The plan lists, in order: removals needed before replacements, then
creates/updates in topological order, then the remaining pure deletes in
reverse prior topological order. Planning never mutates state.
"""

import heapq
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from declarations import Resource
from resource_opr.errors import CyclicDependencyError
from resource_opr.graph import ResourceGraph
from resource_opr.providers import BUILTIN_KINDS
from resource_opr.state import TAINTED, StateEntry, StateSnapshot

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
REPLACE = 'replace'
DELETE = 'delete'
NOOP = 'noop'

_MISSING = object()


@dataclass
class Action:
    """A single planned operation on one resource.

    Attributes:
        type: create, update, delete or noop
        kind: Resource kind
        name: Resource name
        attributes: Declared attributes to apply (create/update)
        prior_attributes: Attribute snapshot from state (update/delete)
        changed: Attribute names that differ (update/replace)
        replacing: True for both halves of a replacement
        reason: Why the action was chosen, for reports
        depends_on: Ids of actions that must succeed first
    """
    type: str
    kind: str
    name: str
    attributes: dict = field(default_factory=dict)
    prior_attributes: dict = field(default_factory=dict)
    changed: frozenset = frozenset()
    replacing: bool = False
    reason: str = ''
    depends_on: tuple = ()

    @property
    def address(self) -> str:
        return f'{self.kind}.{self.name}'

    @property
    def id(self) -> str:
        return f'{self.type}:{self.address}'

    @property
    def label(self) -> str:
        """Action type as shown to users ('replace' for replacement halves)."""
        return REPLACE if self.replacing else self.type

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'action': self.type,
            'address': self.address,
        }
        if self.replacing:
            d['replacing'] = True
        if self.changed:
            d['changed'] = sorted(self.changed)
        if self.reason:
            d['reason'] = self.reason
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        return d


@dataclass
class Plan:
    """Ordered actions computed from (graph, state snapshot).

    Attributes:
        actions: Actions in execution order
        state_serial: Serial of the snapshot the plan was computed from
        order: Topological order of declared resources (empty for destroy)
        destroy: True if this plan tears everything down
        created_at: Timestamp of plan computation
    """
    actions: list[Action]
    state_serial: int
    order: tuple = ()
    destroy: bool = False
    created_at: float = field(default_factory=time.time)

    def get(self, action_id: str) -> Action:
        """Get an action by id.

        Raises:
            KeyError: If no such action
        """
        for action in self.actions:
            if action.id == action_id:
                return action
        raise KeyError(action_id)

    @property
    def is_noop(self) -> bool:
        return all(a.type == NOOP for a in self.actions)

    def changes(self) -> list[Action]:
        """Actions that touch the provider."""
        return [a for a in self.actions if a.type != NOOP]

    def summary(self) -> dict[str, int]:
        """Count of resources per action label (a replacement counts once)."""
        counts = {CREATE: 0, UPDATE: 0, REPLACE: 0, DELETE: 0, NOOP: 0}
        for action in self.actions:
            if action.replacing and action.type == DELETE:
                continue
            counts[action.label] += 1
        return counts

    def levels(self) -> list[list[Action]]:
        """Group actions into dependency levels, keeping plan order per level."""
        depth: dict[str, int] = {}
        for action in self.actions:
            deps = [depth[d] for d in action.depends_on if d in depth]
            depth[action.id] = 1 + max(deps) if deps else 0
        grouped: list[list[Action]] = []
        for action in self.actions:
            level = depth[action.id]
            while len(grouped) <= level:
                grouped.append([])
            grouped[level].append(action)
        return grouped

    def to_dict(self) -> dict:
        return {
            'destroy': self.destroy,
            'state_serial': self.state_serial,
            'summary': self.summary(),
            'actions': [a.to_dict() for a in self.actions],
        }


@dataclass
class _Decision:
    type: str
    changed: frozenset = frozenset()
    reason: str = ''


def _builtin_immutable(kind: str) -> frozenset:
    resource_kind = BUILTIN_KINDS.get(kind)
    return resource_kind.immutable if resource_kind else frozenset()


class Planner:
    """Computes Plans. Pure: reads snapshots, never writes state."""

    def __init__(self, immutable_attributes: Optional[Callable[[str], frozenset]] = None):
        """Initialize planner.

        Args:
            immutable_attributes: kind -> attribute names whose change forces
                a replacement. Defaults to the built-in kind catalog.
        """
        self._immutable = immutable_attributes or _builtin_immutable

    def plan(self, graph: ResourceGraph, snapshot: StateSnapshot) -> Plan:
        """Diff declarations against state and order the resulting actions."""
        prior = ResourceGraph.from_state(snapshot)
        topo = graph.topological_order()
        decisions = self._classify(graph, snapshot, prior)

        actions: dict[str, Action] = {}
        apply_ids: dict[str, str] = {}
        for res in topo:
            decision = decisions[res.address]
            entry = snapshot.get(res.address)
            prior_attrs = dict(entry.attributes) if entry else {}
            if decision.type == REPLACE:
                gone = Action(DELETE, res.kind, res.name, prior_attributes=prior_attrs,
                              changed=decision.changed, replacing=True, reason=decision.reason)
                actions[gone.id] = gone
                action = Action(CREATE, res.kind, res.name, attributes=dict(res.attributes),
                                prior_attributes=prior_attrs, changed=decision.changed,
                                replacing=True, reason=decision.reason)
            else:
                action = Action(decision.type, res.kind, res.name,
                                attributes=dict(res.attributes), prior_attributes=prior_attrs,
                                changed=decision.changed, reason=decision.reason)
            actions[action.id] = action
            if action.type != NOOP:
                apply_ids[res.address] = action.id

        for address, entry in snapshot.entries.items():
            if address not in graph:
                action = Action(DELETE, entry.kind, entry.name,
                                prior_attributes=dict(entry.attributes), reason='no longer declared')
                actions[action.id] = action

        # Wire dependencies
        for action in actions.values():
            deps: list[str] = []
            if action.type in (CREATE, UPDATE):
                if action.replacing:
                    deps.append(f'{DELETE}:{action.address}')
                for dep in graph.dependencies(action.address):
                    if dep in apply_ids:
                        deps.append(apply_ids[dep])
            elif action.type == DELETE and action.address in prior:
                for dependent in prior.dependents(action.address):
                    if f'{DELETE}:{dependent}' in actions:
                        deps.append(f'{DELETE}:{dependent}')
                    elif f'{UPDATE}:{dependent}' in actions:
                        deps.append(f'{UPDATE}:{dependent}')
            action.depends_on = tuple(dict.fromkeys(deps))

        topo_pos = {res.address: i for i, res in enumerate(topo)}
        delete_pos = {res.address: i for i, res in enumerate(prior.reverse_order())}
        early = self._ancestors(actions, [a for a in actions.values()
                                          if a.type == DELETE and a.replacing])

        def _key(action: Action) -> tuple:
            is_delete = action.type == DELETE
            pos = delete_pos.get(action.address, 0) if is_delete else topo_pos[action.address]
            if action.id in early:
                return (0, 1 if is_delete else 0, pos)
            return (2 if is_delete else 1, 0, pos)

        ordered = self._order(actions, _key)
        plan = Plan(
            actions=ordered,
            state_serial=snapshot.serial,
            order=tuple(res.address for res in topo),
        )
        logger.info(f"[plan] {plan.summary()}")
        return plan

    def plan_destroy(self, snapshot: StateSnapshot) -> Plan:
        """Plan deletion of every entry in reverse recorded apply order.

        Entries missing from the recorded order (created by a partial run)
        are destroyed first, ordered by the prior graph.
        """
        prior = ResourceGraph.from_state(snapshot)
        recorded = [a for a in snapshot.order if a in snapshot.entries]
        extra = [r.address for r in prior.topological_order() if r.address not in recorded]
        priority = list(reversed(extra)) + list(reversed(recorded))
        pos = {address: i for i, address in enumerate(priority)}

        actions: dict[str, Action] = {}
        for address, entry in snapshot.entries.items():
            action = Action(DELETE, entry.kind, entry.name,
                            prior_attributes=dict(entry.attributes), reason='destroy')
            actions[action.id] = action
        for action in actions.values():
            action.depends_on = tuple(
                f'{DELETE}:{dependent}' for dependent in prior.dependents(action.address)
            )

        ordered = self._order(actions, lambda a: (pos[a.address],))
        plan = Plan(actions=ordered, state_serial=snapshot.serial, destroy=True)
        logger.info(f"[plan] destroy {len(ordered)} resource(s)")
        return plan

    # -- classification -------------------------------------------------

    def _classify(
        self,
        graph: ResourceGraph,
        snapshot: StateSnapshot,
        prior: ResourceGraph,
    ) -> dict[str, _Decision]:
        """Decide an action type per declared resource.

        Runs to a fixpoint: forcing a resource into replacement can cascade
        to its dependents, which can force further replacements.
        """
        forced: dict[str, str] = {}
        while True:
            decisions: dict[str, _Decision] = {}
            replaced: set[str] = set()
            for res in graph.topological_order():
                decision = self._diff(res, snapshot.get(res.address), replaced, forced)
                decisions[res.address] = decision
                if decision.type == REPLACE:
                    replaced.add(res.address)

            newly: dict[str, str] = {}
            for address in replaced:
                if address not in prior:
                    continue
                for dependent in prior.dependents(address):
                    decision = decisions.get(dependent)
                    if (decision and decision.type == UPDATE and dependent not in forced
                            and self._waits_on_create(dependent, graph, decisions)):
                        newly[dependent] = f'must be removed before {address} is replaced'
            if not newly:
                return decisions
            forced.update(newly)

    def _diff(
        self,
        res: Resource,
        entry: Optional[StateEntry],
        replaced: set[str],
        forced: dict[str, str],
    ) -> _Decision:
        if entry is None or entry.resource_id is None:
            reason = 'previous create failed' if entry is not None else ''
            return _Decision(CREATE, frozenset(res.attributes), reason)

        changed = {
            key for key in set(res.attributes) | set(entry.attributes)
            if res.attributes.get(key, _MISSING) != entry.attributes.get(key, _MISSING)
        }

        if entry.status == TAINTED:
            return _Decision(REPLACE, frozenset(changed), 'tainted')
        if res.address in forced:
            return _Decision(REPLACE, frozenset(changed), forced[res.address])

        upstream = sorted({ref.address for ref in res.references() if ref.address in replaced})
        if upstream:
            for address in upstream:
                changed |= res.referencing_attributes(address)
            return _Decision(REPLACE, frozenset(changed),
                             f"depends on replaced {', '.join(upstream)}")

        if not changed:
            return _Decision(NOOP)

        immutable = changed & self._immutable(res.kind)
        if immutable:
            return _Decision(REPLACE, frozenset(changed),
                             f"immutable attribute(s) changed: {', '.join(sorted(immutable))}")
        return _Decision(UPDATE, frozenset(changed))

    @staticmethod
    def _waits_on_create(address: str, graph: ResourceGraph, decisions: dict[str, _Decision]) -> bool:
        """True if the resource's update transitively waits on a create."""
        seen: set[str] = set()
        stack = list(graph.dependencies(address))
        while stack:
            dep = stack.pop()
            if dep in seen:
                continue
            seen.add(dep)
            kind = decisions[dep].type
            if kind in (CREATE, REPLACE):
                return True
            if kind == UPDATE:
                stack.extend(graph.dependencies(dep))
        return False

    # -- ordering -------------------------------------------------------

    @staticmethod
    def _ancestors(actions: dict[str, Action], roots: list[Action]) -> set[str]:
        """Ids of the given actions and everything they wait on."""
        found: set[str] = set()
        stack = [a.id for a in roots]
        while stack:
            action_id = stack.pop()
            if action_id in found:
                continue
            found.add(action_id)
            stack.extend(actions[action_id].depends_on)
        return found

    @staticmethod
    def _order(actions: dict[str, Action], key: Callable[[Action], tuple]) -> list[Action]:
        """Stable topological sort of actions by depends_on, ties by key."""
        pending = {aid: len(a.depends_on) for aid, a in actions.items()}
        waiting: dict[str, list[str]] = {aid: [] for aid in actions}
        for aid, action in actions.items():
            for dep in action.depends_on:
                waiting[dep].append(aid)

        ready = [(key(a), aid) for aid, a in actions.items() if pending[aid] == 0]
        heapq.heapify(ready)
        ordered: list[Action] = []
        while ready:
            _, aid = heapq.heappop(ready)
            ordered.append(actions[aid])
            for nxt in waiting[aid]:
                pending[nxt] -= 1
                if pending[nxt] == 0:
                    heapq.heappush(ready, (key(actions[nxt]), nxt))

        if len(ordered) != len(actions):
            stuck = sorted(aid for aid, n in pending.items() if n > 0)
            raise CyclicDependencyError(stuck + stuck[:1])
        return ordered
