"""
Topological release of tasks from a fixed dependency graph.
"""

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

import networkx as nx

from .exceptions import (
    CyclicGraphError,
    ResolverStateError,
    UnknownDependencyError,
    UnpreparedResolverError,
)
from .topology import Topology

if TYPE_CHECKING:  # pragma: no cover
    from .task import Task, TaskKey


class GraphResolver:
    """
    Releases the tasks of one dependency graph in an order that never violates a
    dependency, Kahn style: a task is ready once every one of its dependencies has
    been marked done.

    Resolvers are single use. Keys declared `external` are dependencies owned by
    some other resolver; they are never released here, but marking them done or
    failed unblocks or blocks their dependents in this graph.
    """

    def __init__(self) -> None:
        self.digraph = nx.DiGraph()
        self._prepared = False
        self._keys: frozenset["TaskKey"] = frozenset()
        self._external: frozenset["TaskKey"] = frozenset()
        self._indegree: dict["TaskKey", int] = {}
        self._ready: set["TaskKey"] = set()
        self._released: set["TaskKey"] = set()
        self.done: set["TaskKey"] = set()
        self.failed: set["TaskKey"] = set()
        self.blocked: set["TaskKey"] = set()

    @classmethod
    def from_tasks(
        cls, tasks: Iterable["Task"], *, external: Iterable["TaskKey"] = ()
    ) -> "GraphResolver":
        return cls().prepare(
            {task.key: task.dependencies() for task in tasks}, external=external
        )

    def prepare(
        self,
        graph: Mapping["TaskKey", Iterable["TaskKey"]],
        *,
        external: Iterable["TaskKey"] = (),
    ) -> "GraphResolver":
        if self._prepared:
            raise ResolverStateError(
                "Resolvers are single use and cannot be prepared twice."
            )

        external = frozenset(external) - graph.keys()

        digraph = nx.DiGraph()
        digraph.add_nodes_from(graph)

        for key, dependencies in graph.items():
            dependencies = set(dependencies)
            if missing := dependencies - graph.keys() - external:
                raise UnknownDependencyError(key, missing)

            for dependency in dependencies:
                digraph.add_edge(dependency, key)

        # a cycle can never be detected once tasks are in flight, so check it now
        if not nx.is_directed_acyclic_graph(digraph):
            cycles = sorted(
                (tuple(cycle) for cycle in nx.simple_cycles(digraph)), key=len
            )
            raise CyclicGraphError(cycles)

        self.digraph = digraph
        self._keys = frozenset(graph)
        self._external = frozenset(key for key in external if key in digraph)
        self._indegree = {key: digraph.in_degree(key) for key in self._keys}
        self._ready = {key for key, degree in self._indegree.items() if degree == 0}
        self._prepared = True

        return self

    def _ensure_prepared(self) -> None:
        if not self._prepared:
            raise UnpreparedResolverError()

    @property
    def keys(self) -> frozenset["TaskKey"]:
        return self._keys

    @property
    def external(self) -> frozenset["TaskKey"]:
        return self._external

    @property
    def in_flight(self) -> set["TaskKey"]:
        return self._released - self.done - self.failed

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def references(self, key: "TaskKey") -> bool:
        """Whether the key is part of this graph, released here or not."""
        return key in self.digraph

    def get_ready(self) -> set["TaskKey"]:
        """Return every unblocked task not yet released, and mark it in flight."""
        self._ensure_prepared()

        ready, self._ready = self._ready, set()
        self._released |= ready
        return ready

    def _check_resolvable(self, key: "TaskKey") -> None:
        self._ensure_prepared()

        if key not in self._released and key not in self._external:
            raise ResolverStateError(
                f"Task '{key}' was never released by this resolver."
            )
        elif key in self.done or key in self.failed:
            raise ResolverStateError(f"Task '{key}' has already been resolved.")

    def mark_done(self, key: "TaskKey") -> set["TaskKey"]:
        """Record a success and return the dependents it made ready."""
        self._check_resolvable(key)
        self.done.add(key)

        unblocked = set()
        for dependent in self.digraph.successors(key):
            self._indegree[dependent] -= 1
            if self._indegree[dependent] == 0 and dependent not in self.blocked:
                unblocked.add(dependent)

        self._ready |= unblocked
        return unblocked

    def mark_failed(self, key: "TaskKey") -> set["TaskKey"]:
        """
        Record a terminal failure. Every transitive dependent is permanently
        blocked; the newly blocked keys are returned.
        """
        self._check_resolvable(key)
        self.failed.add(key)

        newly_blocked = (nx.descendants(self.digraph, key) & self._keys) - self.blocked
        self.blocked |= newly_blocked
        self._ready -= newly_blocked
        return newly_blocked

    def is_exhausted(self) -> bool:
        self._ensure_prepared()
        return self._keys <= (self.done | self.failed | self.blocked)

    def topology(self) -> Topology:
        self._ensure_prepared()
        return Topology(
            digraph=self.digraph,
            order=[k for k in nx.topological_sort(self.digraph) if k in self._keys],
            external=set(self._external),
        )
