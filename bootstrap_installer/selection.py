from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import AmbiguousSelection, SkipViolation, UnknownSelection
from .graph import ModuleGraph

logger = logging.getLogger(__name__)


class InclusionReason(str, Enum):
    EXPLICIT = "explicit"
    DEFAULT = "default"
    DEPENDENCY = "dependency"


@dataclass(frozen=True)
class PlanEntry:
    module_id: str
    phase: int
    reason: InclusionReason
    detail: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module": self.module_id,
            "phase": self.phase,
            "reason": self.reason.value,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ExecutionPlan:
    entries: Tuple[PlanEntry, ...]
    exclusions: Mapping[str, str] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()
    no_deps: bool = False
    # Modules the operator excluded by id, tag or category.
    skipped: Tuple[str, ...] = ()

    def __iter__(self) -> Iterator[PlanEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def module_ids(self) -> List[str]:
        return [e.module_id for e in self.entries]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "exclusions": dict(sorted(self.exclusions.items())),
            "warnings": list(self.warnings),
            "no_deps": self.no_deps,
            "skipped": list(self.skipped),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n"


@dataclass(frozen=True)
class SelectionRequest:
    include_modules: Tuple[str, ...] = ()
    include_phases: Tuple[Union[int, str], ...] = ()
    exclude_modules: Tuple[str, ...] = ()
    exclude_tags: Tuple[str, ...] = ()
    exclude_categories: Tuple[str, ...] = ()
    # Expert opt-out: no dependency closure, unsafe exclusions only warn.
    no_deps: bool = False


def resolve_phase(graph: ModuleGraph, value: Union[int, str]) -> int:
    """Map a phase number or catalog phase name to a phase present in the graph."""

    phase: Optional[int] = None
    if isinstance(value, int) and not isinstance(value, bool):
        phase = value
    elif isinstance(value, str):
        text = value.strip().lower()
        if text.isdigit():
            phase = int(text)
        else:
            phase = graph.catalog.phase_names.get(text)

    if phase is None or phase not in graph.phases():
        raise UnknownSelection("phase", value, flag="--only-phase")
    return phase


def _check_known(graph: ModuleGraph, ids: Sequence[str], flag: str) -> None:
    for m in ids:
        if m not in graph:
            raise UnknownSelection("module id", m, flag=flag)


def _find_skipped_dependency(graph: ModuleGraph, start: str, excluded: Mapping[str, str]) -> Optional[List[str]]:
    """Breadth-first search from ``start`` for the nearest excluded dependency."""

    parent: Dict[str, Optional[str]] = {start: None}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for dep in graph.deps(node):
            if dep in parent:
                continue
            parent[dep] = node
            if dep in excluded:
                chain = [dep]
                while parent[chain[-1]] is not None:
                    chain.append(parent[chain[-1]])
                return list(reversed(chain))
            queue.append(dep)
    return None


def select(graph: ModuleGraph, request: SelectionRequest) -> ExecutionPlan:
    """Resolve a request into an ordered, dependency-safe plan.

    Pure: the same graph and request always give an identical plan.
    """

    _check_known(graph, request.include_modules, "--only")
    _check_known(graph, request.exclude_modules, "--skip")
    phases = [resolve_phase(graph, p) for p in request.include_phases]

    both = set(request.include_modules) & set(request.exclude_modules)
    if both:
        raise AmbiguousSelection(sorted(both))

    exclusions: Dict[str, str] = {}

    # Seeds, in declaration order.
    seeds: Dict[str, Tuple[InclusionReason, str]] = {}
    explicit = set(request.include_modules)
    if explicit or phases:
        for m in graph.order:
            if m in explicit:
                seeds[m] = (InclusionReason.EXPLICIT, "explicitly requested")
            elif graph.phase(m) in phases:
                seeds[m] = (InclusionReason.EXPLICIT, f"phase {graph.phase(m)}")
            else:
                exclusions[m] = "filtered by phase" if phases and not explicit else "not selected"
    else:
        for m in graph.order:
            if graph.modules[m].enabled_by_default:
                seeds[m] = (InclusionReason.DEFAULT, "default")
            else:
                exclusions[m] = "disabled by default"

    # Exclusions from ids, tags and categories; first reason wins.
    excluded: Dict[str, str] = {}
    for m in request.exclude_modules:
        excluded.setdefault(m, "explicitly skipped")
    for tag in request.exclude_tags:
        matched = [m for m in graph.order if tag in graph.modules[m].tags]
        if not matched:
            logger.warning("--skip-tag %s matches no module", tag)
        for m in matched:
            excluded.setdefault(m, f"skipped tag {tag}")
    for category in request.exclude_categories:
        matched = [m for m in graph.order if graph.modules[m].category == category]
        if not matched:
            logger.warning("--skip-category %s matches no module", category)
        for m in matched:
            excluded.setdefault(m, f"skipped category {category}")

    # Closure runs before exclusions are applied, so an excluded dependency
    # stays visible to the skip-safety check below. Seeds that are themselves
    # excluded do not pull anything in.
    selected: Dict[str, Tuple[InclusionReason, str]] = dict(seeds)
    if not request.no_deps:
        live_seeds = [m for m in seeds if m not in excluded]
        for m, parent in graph.closure_parents(live_seeds).items():
            if parent is not None and m not in selected:
                selected[m] = (InclusionReason.DEPENDENCY, f"dependency of {parent}")

    survivors = {m: why for m, why in selected.items() if m not in excluded}
    warnings: List[str] = []

    if not request.no_deps:
        for seed in seeds:
            if seed in excluded:
                continue
            chain = _find_skipped_dependency(graph, seed, excluded)
            if chain is not None:
                raise SkipViolation(seed, chain[-1], chain)
    else:
        logger.warning("WARNING: dependency closure disabled; install may be incomplete.")
        for m in graph.order:
            if m not in survivors:
                continue
            for dep in graph.deps(m):
                if dep not in survivors:
                    why = "skipped" if dep in excluded else "not selected"
                    msg = f"{m} depends on {dep}, which is {why}"
                    logger.warning("WARNING: unsafe selection: %s", msg)
                    warnings.append(msg)

    for m, why in excluded.items():
        exclusions[m] = why
    for m in survivors:
        exclusions.pop(m, None)

    entries = tuple(
        PlanEntry(module_id=m, phase=graph.phase(m), reason=survivors[m][0], detail=survivors[m][1])
        for m in graph.topological_order(survivors)
    )
    logger.info("Execution plan: %d module(s), %d excluded", len(entries), len(exclusions))
    return ExecutionPlan(
        entries=entries,
        exclusions=dict(sorted(exclusions.items(), key=lambda kv: graph.index[kv[0]])),
        warnings=tuple(warnings),
        no_deps=request.no_deps,
        skipped=tuple(m for m in graph.order if m in excluded and m not in survivors),
    )
