from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .actions import (
    ALLOWED_RUNNERS,
    Action,
    FetchVerifyExecute,
    NativeCallback,
    RunAction,
    Unimplemented,
)
from .catalog import ModuleDescriptor
from .errors import (
    UNIT_FAILURE_BY_SEVERITY,
    ActionFailed,
    ResumeRefused,
    StateError,
    UnimplementedActionError,
    UnitFailure,
)
from .events import EventKind, EventSink, LifecycleEvent, LoggingEventSink
from .executor import CallbackRegistry, UnitExecutor
from .graph import ModuleGraph
from .selection import ExecutionPlan
from .state_store import CheckpointStore, ResumeAction, UnitStatus, plan_resume
from .verify import ChecksumRegistry, VerificationGate

logger = logging.getLogger(__name__)


class RunResult(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    ABORTED_CRITICAL = "aborted_critical"
    ABORTED_VALIDATION = "aborted_validation"


EXIT_CODES: Dict[RunResult, int] = {
    RunResult.SUCCEEDED: 0,
    RunResult.ABORTED_CRITICAL: 1,
    RunResult.PARTIAL: 2,
    RunResult.ABORTED_VALIDATION: 3,
}


class UnitOutcome(str, Enum):
    COMPLETED = "completed"
    ALREADY_COMPLETE = "already_complete"
    PRESENT = "present"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_RUN = "not_run"
    DRY_RUN = "dry_run"


@dataclass(frozen=True)
class UnitReport:
    module_id: str
    outcome: UnitOutcome
    severity: str
    elapsed: float = 0.0
    error: Optional[str] = None
    step: Optional[str] = None


@dataclass(frozen=True)
class RunReport:
    result: RunResult
    units: Tuple[UnitReport, ...]
    total_elapsed: float
    error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.result]

    def count(self, *outcomes: UnitOutcome) -> int:
        return sum(1 for u in self.units if u.outcome in outcomes)

    def failures(self, severity: str) -> List[UnitReport]:
        return [u for u in self.units if u.outcome is UnitOutcome.FAILED and u.severity == severity]

    def summary(self) -> str:
        """One-line tally, e.g. ``"2 completed, 1 standard failure"``."""

        parts: List[str] = []
        done = self.count(UnitOutcome.COMPLETED, UnitOutcome.ALREADY_COMPLETE, UnitOutcome.PRESENT)
        if done:
            parts.append(f"{done} completed")
        planned = self.count(UnitOutcome.DRY_RUN)
        if planned:
            parts.append(f"{planned} dry run")
        skipped = self.count(UnitOutcome.SKIPPED)
        if skipped:
            parts.append(f"{skipped} skipped")
        for severity in ("critical", "standard", "optional"):
            n = len(self.failures(severity))
            if n:
                parts.append(f"{n} {severity} failure{'s' if n != 1 else ''}")
        not_run = self.count(UnitOutcome.NOT_RUN)
        if not_run:
            parts.append(f"{not_run} not run")
        return ", ".join(parts) if parts else "nothing to do"


class _Driver:
    def __init__(
        self,
        *,
        graph: ModuleGraph,
        store: CheckpointStore,
        executor: UnitExecutor,
        gate: Optional[VerificationGate],
        checksums: ChecksumRegistry,
        callbacks: CallbackRegistry,
        events: EventSink,
        dry_run: bool,
        strict: bool,
        clock: Callable[[], float],
    ) -> None:
        self.graph = graph
        self.store = store
        self.executor = executor
        self.gate = gate
        self.checksums = checksums
        self.callbacks = callbacks
        self.events = events
        self.dry_run = dry_run
        self.strict = strict
        self.clock = clock

    def severity_of(self, module: ModuleDescriptor) -> str:
        return "critical" if self.strict else module.severity

    def emit(self, kind: EventKind, module_id: Optional[str] = None, phase: Optional[int] = None, **data) -> None:
        self.events.emit(LifecycleEvent(kind=kind, module_id=module_id, phase=phase, data=data))

    def dispatch(self, module: ModuleDescriptor, action: Action, step: str) -> None:
        if isinstance(action, RunAction):
            if self.dry_run:
                logger.info("DRY-RUN would run %s", action.command)
                return
            self.executor.run_command(module, action.command)
        elif isinstance(action, FetchVerifyExecute):
            if action.runner not in ALLOWED_RUNNERS:
                raise ActionFailed(module.id, step, f"runner {action.runner!r} is not allowed")
            if self.dry_run:
                url, _ = self.checksums.resolve(action)
                logger.info("DRY-RUN would fetch, verify and run %s with %s", url, action.runner)
                return
            if self.gate is None:
                raise ActionFailed(module.id, step, "no verification gate configured for fetched installers")
            content = self.gate.fetch_installer(action, self.checksums)
            self.executor.run_script(module, content, action.runner, action.args)
        elif isinstance(action, NativeCallback):
            fn = self.callbacks.get(action.name)
            if fn is None:
                raise ActionFailed(module.id, step, f"no callback registered as {action.name!r}")
            if self.dry_run:
                logger.info("DRY-RUN would call %s", action.name)
                return
            fn(module)
        elif isinstance(action, Unimplemented):
            raise UnimplementedActionError(module.id, step, action.raw)
        else:
            raise ActionFailed(module.id, step, f"unknown action type {type(action).__name__}")

    def run_unit(self, module: ModuleDescriptor) -> UnitReport:
        start = self.clock()
        step: Optional[str] = None
        if not self.dry_run:
            self.store.begin(module.id)
        try:
            check = module.installed_check
            if check is not None and not self.dry_run:
                step = "installed_check"
                if self.executor.run_check(module, check.command, check.run_as):
                    logger.info("%s already present; skipping install", module.id)
                    self.store.record_success(module.id, self.clock() - start)
                    return UnitReport(module.id, UnitOutcome.PRESENT, module.severity, self.clock() - start)

            for i, action in enumerate(module.actions, start=1):
                step = f"install[{i}] {action.describe()}"
                if not self.dry_run:
                    self.store.step(step)
                self.dispatch(module, action, step)

            if not self.dry_run:
                for j, command in enumerate(module.verify, start=1):
                    step = f"verify[{j}] {command}"
                    self.store.step(step)
                    if not self.executor.run_check(module, command):
                        raise ActionFailed(module.id, step, f"verify check failed: {command}")
        except StateError:
            raise
        except Exception as e:
            elapsed = self.clock() - start
            failure: UnitFailure = UNIT_FAILURE_BY_SEVERITY[self.severity_of(module)](module.id, step, e)
            if not self.dry_run:
                self.store.record_failure(module.id, step, str(e), elapsed)
            return self.classify(module, failure, elapsed)

        elapsed = self.clock() - start
        if self.dry_run:
            return UnitReport(module.id, UnitOutcome.DRY_RUN, module.severity, elapsed)
        self.store.record_success(module.id, elapsed)
        logger.info("%s completed in %.1fs", module.id, elapsed)
        return UnitReport(module.id, UnitOutcome.COMPLETED, module.severity, elapsed)

    def classify(self, module: ModuleDescriptor, failure: UnitFailure, elapsed: float) -> UnitReport:
        if failure.severity == "optional":
            logger.debug("Optional module %s failed: %s", module.id, failure)
        else:
            logger.error("%s module %s failed: %s", failure.severity.capitalize(), module.id, failure)
            self.emit(EventKind.ERROR, module.id, severity=failure.severity, error=str(failure.cause))
        return UnitReport(
            module.id,
            UnitOutcome.FAILED,
            failure.severity,
            elapsed,
            error=str(failure.cause),
            step=failure.step,
        )


def _result_of(units: List[UnitReport]) -> RunResult:
    failed = {u.severity for u in units if u.outcome is UnitOutcome.FAILED}
    if "critical" in failed:
        return RunResult.ABORTED_CRITICAL
    if "standard" in failed:
        return RunResult.PARTIAL
    return RunResult.SUCCEEDED


def run_plan(
    plan: ExecutionPlan,
    graph: ModuleGraph,
    store: CheckpointStore,
    executor: UnitExecutor,
    gate: Optional[VerificationGate] = None,
    *,
    checksums: Optional[ChecksumRegistry] = None,
    callbacks: Optional[CallbackRegistry] = None,
    events: Optional[EventSink] = None,
    retry_failed: bool = False,
    dry_run: bool = False,
    strict: bool = False,
    clock: Callable[[], float] = time.monotonic,
) -> RunReport:
    """Run a plan in order with resume and severity semantics.

    Units already complete are not re-run. A critical failure stops the run;
    the remaining units are reported as not run. With ``dry_run`` the
    checkpoint is left untouched and nothing is fetched or executed. With
    ``strict`` every module counts as critical, so any failure stops the run.
    """

    driver = _Driver(
        graph=graph,
        store=store,
        executor=executor,
        gate=gate,
        checksums=checksums or ChecksumRegistry(),
        callbacks=callbacks or CallbackRegistry(),
        events=events or LoggingEventSink(),
        dry_run=dry_run,
        strict=strict,
        clock=clock,
    )
    run_start = clock()

    if not dry_run:
        # A module the current plan includes is no longer skipped.
        store.clear_skipped(plan.module_ids)
        store.mark_skipped(plan.skipped)

    try:
        decisions = plan_resume(store.state, plan.module_ids, retry_failed)
    except ResumeRefused as e:
        logger.error("%s", e)
        driver.emit(EventKind.ERROR, e.module_id, error=str(e))
        units = tuple(
            UnitReport(entry.module_id, UnitOutcome.NOT_RUN, graph.modules[entry.module_id].severity)
            for entry in plan
        )
        return RunReport(RunResult.ABORTED_VALIDATION, units, clock() - run_start, error=str(e))

    driver.emit(EventKind.RUN_START, units=len(plan), dry_run=dry_run)
    reports: List[UnitReport] = []
    aborted = False
    current_phase: Optional[int] = None

    for entry in plan:
        module = graph.modules[entry.module_id]
        if aborted:
            reports.append(UnitReport(module.id, UnitOutcome.NOT_RUN, module.severity))
            continue

        if entry.phase != current_phase:
            if current_phase is not None:
                driver.emit(EventKind.PHASE_END, phase=current_phase)
            current_phase = entry.phase
            driver.emit(EventKind.PHASE_START, phase=current_phase)

        decision = decisions[module.id]
        status = store.state.status_of(module.id)
        if dry_run and status is UnitStatus.SKIPPED:
            # Skip marks are only cleared by a real run.
            decision = ResumeAction.RUN
        if decision is ResumeAction.SKIP:
            outcome = UnitOutcome.ALREADY_COMPLETE if status is UnitStatus.COMPLETE else UnitOutcome.SKIPPED
            logger.info("Skipping %s (%s)", module.id, outcome.value)
            driver.emit(EventKind.UNIT_SKIPPED, module.id, entry.phase, outcome=outcome.value)
            reports.append(UnitReport(module.id, outcome, module.severity))
            continue

        if decision is ResumeAction.RETRY:
            logger.info("Retrying %s after previous failure", module.id)
        driver.emit(EventKind.UNIT_START, module.id, entry.phase, reason=entry.reason.value)
        report = driver.run_unit(module)
        driver.emit(
            EventKind.UNIT_END,
            module.id,
            entry.phase,
            outcome=report.outcome.value,
            elapsed=round(report.elapsed, 3),
        )
        reports.append(report)
        if report.outcome is UnitOutcome.FAILED and report.severity == "critical":
            aborted = True

    if current_phase is not None:
        driver.emit(EventKind.PHASE_END, phase=current_phase)

    run_report = RunReport(_result_of(reports), tuple(reports), clock() - run_start)
    driver.emit(EventKind.RUN_END, result=run_report.result.value, summary=run_report.summary())
    logger.info("Run %s: %s", run_report.result.value, run_report.summary())
    return run_report
