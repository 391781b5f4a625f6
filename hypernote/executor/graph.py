"""
Query dependency graph.

Edges are derived from filter values, never stored in the document: a
query depends on ``$Q`` when any filter value (bare token or ``{...}``
template) is rooted at ``$Q``. References to names that are not queries of
the document (loop variables, unknown names) add no edge; they simply stay
unresolved until the context provides them.

Ordering is an iterative depth-first search with an explicit stack, so a
deep or pathological document cannot exhaust the interpreter stack.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum

from hypernote.document.models import QuerySpec
from hypernote.errors import CycleError


class NodeState(Enum):
    UNVISITED = "unvisited"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    CYCLIC = "cyclic"


class DependencyGraph:
    """
    Dependencies between the queries of one document scope.

    Example:
        graph = DependencyGraph(document.queries)
        graph.order()      # ["$contacts", "$feed"]
        graph.levels()     # [["$contacts"], ["$feed"]]
    """

    def __init__(self, queries: Mapping[str, QuerySpec]):
        self._dependencies: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = {}
        for name in queries:
            self._dependencies[name] = []
            self._dependents[name] = []
        for name, spec in queries.items():
            for dependency in spec.query_dependencies:
                if dependency in queries and dependency not in self._dependencies[name]:
                    self._dependencies[name].append(dependency)
                    self._dependents[dependency].append(name)

    @property
    def nodes(self) -> list[str]:
        return list(self._dependencies)

    def dependencies(self, name: str) -> list[str]:
        return list(self._dependencies.get(name, ()))

    def dependents(self, name: str) -> list[str]:
        return list(self._dependents.get(name, ()))

    def descendants(self, names: Iterable[str]) -> set[str]:
        """Every query that transitively depends on one of ``names``."""
        found: set[str] = set()
        stack = [dependent for name in names for dependent in self._dependents.get(name, ())]
        while stack:
            name = stack.pop()
            if name in found:
                continue
            found.add(name)
            stack.extend(self._dependents.get(name, ()))
        return found

    def order(self, targets: Iterable[str] | None = None) -> list[str]:
        """
        Topological order (dependencies first) of ``targets`` and their ancestors.

        Raises:
            CycleError: with the full cycle path, e.g. ``$a -> $b -> $a``
        """
        states = {name: NodeState.UNVISITED for name in self._dependencies}
        ordered: list[str] = []
        roots = list(self._dependencies) if targets is None else list(targets)

        for root in roots:
            if root not in states or states[root] is NodeState.RESOLVED:
                continue
            # Frames of (node, index of next dependency to visit)
            stack: list[tuple[str, int]] = [(root, 0)]
            states[root] = NodeState.RESOLVING
            while stack:
                node, index = stack[-1]
                dependencies = self._dependencies[node]
                if index < len(dependencies):
                    stack[-1] = (node, index + 1)
                    dependency = dependencies[index]
                    state = states[dependency]
                    if state is NodeState.RESOLVING:
                        path = [frame[0] for frame in stack]
                        cycle = path[path.index(dependency):] + [dependency]
                        for member in cycle:
                            states[member] = NodeState.CYCLIC
                        raise CycleError(cycle)
                    if state is NodeState.UNVISITED:
                        states[dependency] = NodeState.RESOLVING
                        stack.append((dependency, 0))
                else:
                    stack.pop()
                    states[node] = NodeState.RESOLVED
                    ordered.append(node)
        return ordered

    def levels(self, names: Iterable[str] | None = None) -> list[list[str]]:
        """
        Group ``names`` into waves that can run concurrently.

        A node's level is one more than the deepest selected node it
        transitively depends on. Unselected ancestors are treated as already
        satisfied but still carry ordering between selected nodes.

        Raises:
            CycleError: as ``order``
        """
        selected = set(self._dependencies if names is None else names)
        roots = [name for name in self._dependencies if name in selected]
        depth: dict[str, int] = {}
        for name in self.order(roots):
            inner = [depth[dep] for dep in self._dependencies[name]]
            if name in selected:
                depth[name] = max(inner) + 1 if inner else 0
            else:
                depth[name] = max(inner) if inner else -1

        levels = {name: level for name, level in depth.items() if name in selected}
        waves: list[list[str]] = [[] for _ in range(max(levels.values(), default=-1) + 1)]
        for name, level in levels.items():
            waves[level].append(name)
        return waves
