from __future__ import annotations

import heapq
import logging
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .catalog import Catalog, ModuleDescriptor
from .errors import CatalogError, CatalogValidationError, DependencyCycle, PhaseViolation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModuleGraph:
    """Immutable view of a validated catalog.

    Built once per run and passed explicitly to selection and execution.
    ``order`` is catalog declaration order; every deterministic tie-break uses
    it.
    """

    catalog: Catalog
    order: Tuple[str, ...]
    modules: Mapping[str, ModuleDescriptor]
    index: Mapping[str, int]

    @classmethod
    def build(cls, catalog: Catalog) -> "ModuleGraph":
        """Build the graph and validate cycles and phase ordering.

        Validation always covers the whole catalog, independent of what a
        later selection will use.
        """

        modules = {m.id: m for m in catalog.modules}
        graph = cls(
            catalog=catalog,
            order=tuple(m.id for m in catalog.modules),
            modules=MappingProxyType(modules),
            index=MappingProxyType({m.id: i for i, m in enumerate(catalog.modules)}),
        )

        violations: List[CatalogError] = []
        violations.extend(graph.find_cycles())
        violations.extend(graph.find_phase_violations())
        if violations:
            raise CatalogValidationError(violations)

        logger.debug("Module graph built: %d modules", len(graph.order))
        return graph

    def __contains__(self, module_id: object) -> bool:
        return module_id in self.modules

    def phase(self, module_id: str) -> int:
        return self.modules[module_id].phase

    def deps(self, module_id: str) -> Tuple[str, ...]:
        # Unknown ids are rejected by the loader; the filter keeps cycle
        # detection total when a graph is built from a hand-made catalog.
        return tuple(d for d in self.modules[module_id].dependencies if d in self.modules)

    def dependents(self, module_id: str) -> List[str]:
        return [m for m in self.order if module_id in self.modules[m].dependencies]

    def phases(self) -> List[int]:
        return sorted({m.phase for m in self.modules.values()})

    # -- validation ---------------------------------------------------------

    def strongly_connected_components(self) -> List[List[str]]:
        """Tarjan's algorithm. Components come out in reverse topological order."""

        index_of: Dict[str, int] = {}
        lowlink: Dict[str, int] = {}
        on_stack: Dict[str, bool] = {}
        stack: List[str] = []
        components: List[List[str]] = []
        counter = 0

        # Iterative form; deep dependency chains must not hit the recursion limit.
        for root in self.order:
            if root in index_of:
                continue
            work: List[Tuple[str, int]] = [(root, 0)]
            while work:
                node, child_i = work.pop()
                if child_i == 0:
                    index_of[node] = lowlink[node] = counter
                    counter += 1
                    stack.append(node)
                    on_stack[node] = True

                children = self.deps(node)
                recurse = False
                while child_i < len(children):
                    child = children[child_i]
                    child_i += 1
                    if child not in index_of:
                        work.append((node, child_i))
                        work.append((child, 0))
                        recurse = True
                        break
                    if on_stack.get(child):
                        lowlink[node] = min(lowlink[node], index_of[child])
                if recurse:
                    continue

                if lowlink[node] == index_of[node]:
                    component: List[str] = []
                    while True:
                        member = stack.pop()
                        on_stack[member] = False
                        component.append(member)
                        if member == node:
                            break
                    components.append(component)

                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])

        return components

    def _cycle_path(self, members: Iterable[str]) -> List[str]:
        """Return a true cycle through the earliest-declared member of an SCC."""

        scc = set(members)
        start = min(scc, key=lambda m: self.index[m])
        if start in self.deps(start):
            return [start]

        # BFS inside the component gives the shortest cycle through ``start``.
        parent: Dict[str, Optional[str]] = {start: None}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            for dep in self.deps(node):
                if dep not in scc:
                    continue
                if dep == start:
                    path = [node]
                    while parent[path[-1]] is not None:
                        path.append(parent[path[-1]])
                    return list(reversed(path))
                if dep not in parent:
                    parent[dep] = node
                    queue.append(dep)

        raise AssertionError(f"strongly connected component without a cycle: {sorted(scc)}")

    def find_cycles(self) -> List[DependencyCycle]:
        cycles: List[DependencyCycle] = []
        for component in self.strongly_connected_components():
            if len(component) > 1 or component[0] in self.deps(component[0]):
                cycles.append(DependencyCycle(self._cycle_path(component)))
        cycles.sort(key=lambda c: self.index[c.cycle[0]])
        return cycles

    def find_phase_violations(self) -> List[PhaseViolation]:
        out: List[PhaseViolation] = []
        for module_id in self.order:
            module_phase = self.phase(module_id)
            for dep in self.deps(module_id):
                dep_phase = self.phase(dep)
                if dep_phase > module_phase:
                    out.append(PhaseViolation(module_id, module_phase, dep, dep_phase))
        return out

    # -- traversal ----------------------------------------------------------

    def _sorted(self, ids: Iterable[str]) -> List[str]:
        return sorted(set(ids), key=lambda m: self.index[m])

    def closure_parents(self, seeds: Iterable[str]) -> Dict[str, Optional[str]]:
        """Dependency closure of ``seeds`` with the module that pulled each entry in.

        Seeds map to ``None``. Traversal is breadth-first, seeds in declaration
        order, dependencies in their declared order.
        """

        parents: Dict[str, Optional[str]] = {}
        queue: deque = deque()
        for seed in self._sorted(seeds):
            parents[seed] = None
            queue.append(seed)

        while queue:
            current = queue.popleft()
            for dep in self.deps(current):
                if dep not in parents:
                    parents[dep] = current
                    queue.append(dep)
        return parents

    def closure(self, seeds: Iterable[str]) -> List[str]:
        """Minimal superset of ``seeds`` closed under dependencies, in declaration order."""

        return self._sorted(self.closure_parents(seeds))

    def dependency_path(self, start: str, target: str) -> Optional[List[str]]:
        """Shortest dependency chain ``start -> ... -> target``, or None."""

        if start == target:
            return [start]
        parent: Dict[str, Optional[str]] = {start: None}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            for dep in self.deps(node):
                if dep in parent:
                    continue
                parent[dep] = node
                if dep == target:
                    path = [dep]
                    while parent[path[-1]] is not None:
                        path.append(parent[path[-1]])
                    return list(reversed(path))
                queue.append(dep)
        return None

    def topological_order(self, subset: Iterable[str]) -> List[str]:
        """Order ``subset`` so dependencies come first.

        Ties are broken by ascending phase, then declaration order. Edges to
        modules outside the subset are ignored.
        """

        selected = set(subset)
        unknown = selected - set(self.modules)
        if unknown:
            raise KeyError(f"unknown module ids: {sorted(unknown)}")

        pending: Dict[str, int] = {}
        dependents: Dict[str, List[str]] = {m: [] for m in selected}
        for m in selected:
            inside = [d for d in self.deps(m) if d in selected]
            pending[m] = len(inside)
            for d in inside:
                dependents[d].append(m)

        def key(m: str) -> Tuple[int, int, str]:
            return (self.phase(m), self.index[m], m)

        ready = [key(m) for m in selected if pending[m] == 0]
        heapq.heapify(ready)
        out: List[str] = []
        while ready:
            _, _, m = heapq.heappop(ready)
            out.append(m)
            for child in dependents[m]:
                pending[child] -= 1
                if pending[child] == 0:
                    heapq.heappush(ready, key(child))

        if len(out) != len(selected):
            # Only reachable if a cyclic graph bypassed build().
            stuck = self._sorted(selected - set(out))
            raise CatalogValidationError([DependencyCycle(stuck)])
        return out
