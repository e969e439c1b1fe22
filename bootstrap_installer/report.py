from __future__ import annotations

from typing import List

from .graph import ModuleGraph
from .pipeline import RunReport, UnitOutcome
from .selection import ExecutionPlan


def format_plan(plan: ExecutionPlan, graph: ModuleGraph) -> str:
    """Human-readable plan for ``--print-plan``."""

    lines: List[str] = [f"Execution plan ({len(plan)} modules):"]
    phase = None
    for entry in plan:
        if entry.phase != phase:
            phase = entry.phase
            lines.append(f"  Phase {phase}:")
        module = graph.modules[entry.module_id]
        lines.append(f"    {entry.module_id:<28} {module.severity:<9} {entry.detail}")

    if plan.exclusions:
        lines.append("Excluded:")
        for module_id, why in plan.exclusions.items():
            lines.append(f"    {module_id:<28} {why}")

    for warning in plan.warnings:
        lines.append(f"WARNING: {warning}")
    return "\n".join(lines) + "\n"


def format_modules(graph: ModuleGraph) -> str:
    lines: List[str] = [f"Modules in {graph.catalog.name} ({len(graph.order)}):"]
    for module_id in graph.order:
        module = graph.modules[module_id]
        enabled = "default" if module.enabled_by_default else "off"
        lines.append(f"    {module_id:<28} phase {module.phase:<2} {module.severity:<9} {enabled:<7} {module.description}")
    return "\n".join(lines) + "\n"


_MARKS = {
    UnitOutcome.COMPLETED: "ok",
    UnitOutcome.ALREADY_COMPLETE: "done",
    UnitOutcome.PRESENT: "present",
    UnitOutcome.SKIPPED: "skip",
    UnitOutcome.FAILED: "FAIL",
    UnitOutcome.NOT_RUN: "-",
    UnitOutcome.DRY_RUN: "dry",
}


def format_report(report: RunReport) -> str:
    lines: List[str] = []
    for unit in report.units:
        line = f"  [{_MARKS[unit.outcome]:>7}] {unit.module_id:<28} {unit.elapsed:6.1f}s"
        if unit.error:
            line += f"  {unit.severity}: {unit.error.splitlines()[0]}"
        lines.append(line)
    lines.append(f"Result: {report.result.value} ({report.summary()}) in {report.total_elapsed:.1f}s")
    if report.error:
        lines.append(report.error)
    return "\n".join(lines) + "\n"
