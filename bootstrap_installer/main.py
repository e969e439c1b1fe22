from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence, TextIO, Tuple

from .catalog import MODES, Catalog, load_catalog
from .config import PATHS, InstallerConfig, load_config
from .errors import CatalogError, SelectionError, StateError
from .events import EventSink
from .executor import CallbackRegistry, ShellExecutor, UnitExecutor
from .graph import ModuleGraph
from .logging_utils import configure_logging
from .pipeline import EXIT_CODES, RunReport, RunResult, run_plan
from .report import format_modules, format_plan, format_report
from .selection import ExecutionPlan, SelectionRequest, select
from .state_store import CheckpointState, CheckpointStore, load_checkpoint, reset_checkpoint
from .verify import ChecksumRegistry, VerificationGate

logger = logging.getLogger(__name__)


def build_plan(catalog_path: str, request: SelectionRequest) -> Tuple[Catalog, ModuleGraph, ExecutionPlan]:
    """Load, validate and select. Raises before anything is executed."""

    catalog = load_catalog(catalog_path)
    graph = ModuleGraph.build(catalog)
    plan = select(graph, request)
    return catalog, graph, plan


def load_checksums(path: str) -> ChecksumRegistry:
    if not Path(path).exists():
        logger.warning("No checksums file at %s; catalog fetches must carry url and sha256", path)
        return ChecksumRegistry()
    return ChecksumRegistry.load(path)


def run(
    *,
    catalog_path: str = PATHS.catalog_default,
    checksums_path: str = PATHS.checksums_default,
    state_path: str = PATHS.state_default,
    request: SelectionRequest = SelectionRequest(),
    config: InstallerConfig = InstallerConfig(),
    mode: Optional[str] = None,
    retry_failed: bool = False,
    reset_state: bool = False,
    dry_run: bool = False,
    strict: bool = False,
    executor: Optional[UnitExecutor] = None,
    gate: Optional[VerificationGate] = None,
    callbacks: Optional[CallbackRegistry] = None,
    events: Optional[EventSink] = None,
) -> RunReport:
    """Build the plan and run it against the checkpoint at ``state_path``."""

    catalog, graph, plan = build_plan(catalog_path, request)
    checksums = load_checksums(checksums_path)
    run_mode = mode or config.mode or catalog.defaults.mode

    if reset_state and not dry_run:
        reset_checkpoint(state_path)
    if dry_run:
        store = CheckpointStore(state_path, load_checkpoint(state_path) or CheckpointState.new(mode=run_mode))
    else:
        store = CheckpointStore.open(state_path, mode=run_mode)

    if executor is None:
        executor = ShellExecutor(
            target_user=config.target_user or catalog.defaults.user,
            workspace_root=catalog.defaults.workspace_root,
            mode=run_mode,
            timeout_s=config.command_timeout_s,
            dry_run=dry_run,
        )

    owned_gate = gate is None
    if gate is None:
        gate = VerificationGate(policy=config.retry_policy, timeout_s=config.fetch_timeout_s, events=events)
    try:
        return run_plan(
            plan,
            graph,
            store,
            executor,
            gate,
            checksums=checksums,
            callbacks=callbacks,
            events=events,
            retry_failed=retry_failed,
            dry_run=dry_run,
            strict=strict,
        )
    finally:
        if owned_gate:
            gate.close()


def _request_from_args(args: argparse.Namespace) -> SelectionRequest:
    return SelectionRequest(
        include_modules=tuple(args.only),
        include_phases=tuple(args.only_phase),
        exclude_modules=tuple(args.skip),
        exclude_tags=tuple(args.skip_tag),
        exclude_categories=tuple(args.skip_category),
        no_deps=args.no_deps,
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="bootstrap-installer")
    p.add_argument("--catalog", default=None, help="Module catalog (YAML)")
    p.add_argument("--checksums", default=None, help="Installer checksums (YAML)")
    p.add_argument("--state", default=None, help="Checkpoint file (json|yaml)")
    p.add_argument("--log", default=None, help="Path to installer log")
    p.add_argument("--config", default=None, help="Installer config (YAML)")
    p.add_argument("--mode", choices=MODES, default=None, help="Install mode (default: from catalog)")

    p.add_argument("--only", action="append", default=[], metavar="MODULE", help="Install only this module (repeatable)")
    p.add_argument("--only-phase", action="append", default=[], metavar="PHASE", help="Install only this phase, by number or name (repeatable)")
    p.add_argument("--skip", action="append", default=[], metavar="MODULE", help="Skip this module (repeatable)")
    p.add_argument("--skip-tag", action="append", default=[], metavar="TAG", help="Skip modules with this tag (repeatable)")
    p.add_argument("--skip-category", action="append", default=[], metavar="CATEGORY", help="Skip modules in this category (repeatable)")
    p.add_argument("--no-deps", action="store_true", help="Expert: do not pull in dependencies (unsafe)")

    p.add_argument("--list-modules", action="store_true", help="List the catalog's modules and exit")
    p.add_argument("--print-plan", action="store_true", help="Print the execution plan and exit")
    p.add_argument("--format", choices=("text", "json"), default="text", help="Plan output format")
    p.add_argument("--retry-failed", action="store_true", help="Retry units that failed in a previous run")
    p.add_argument("--reset-state", action="store_true", help="Move the existing checkpoint aside and start fresh")
    p.add_argument("--dry-run", action="store_true", help="Log what would run without executing or saving state")
    p.add_argument("--strict", action="store_true", help="Treat every module as critical: any failure aborts the run")
    return p


def main(argv: Optional[Sequence[str]] = None, *, out: Optional[TextIO] = None) -> int:
    args = build_parser().parse_args(argv)
    out = out or sys.stdout

    try:
        config = load_config(args.config) if args.config else InstallerConfig()
    except (OSError, ValueError) as e:
        print(f"bootstrap-installer: bad config {args.config}: {e}", file=sys.stderr)
        return EXIT_CODES[RunResult.ABORTED_VALIDATION]
    configure_logging(log_path=args.log or config.log_path)

    catalog_path = args.catalog or config.catalog_path
    request = _request_from_args(args)

    if args.list_modules:
        try:
            graph = ModuleGraph.build(load_catalog(catalog_path))
        except (CatalogError, OSError) as e:
            logger.error("%s", e)
            return EXIT_CODES[RunResult.ABORTED_VALIDATION]
        out.write(format_modules(graph))
        return 0

    if args.print_plan:
        try:
            _, graph, plan = build_plan(catalog_path, request)
        except (CatalogError, SelectionError, OSError) as e:
            logger.error("%s", e)
            return EXIT_CODES[RunResult.ABORTED_VALIDATION]
        out.write(plan.to_json() if args.format == "json" else format_plan(plan, graph))
        return 0

    try:
        report = run(
            catalog_path=catalog_path,
            checksums_path=args.checksums or config.checksums_path,
            state_path=args.state or config.state_path,
            request=request,
            config=config,
            mode=args.mode,
            retry_failed=args.retry_failed,
            reset_state=args.reset_state,
            dry_run=args.dry_run,
            strict=args.strict,
        )
    except (CatalogError, SelectionError, StateError, OSError, ValueError) as e:
        logger.error("%s", e)
        return EXIT_CODES[RunResult.ABORTED_VALIDATION]

    out.write(format_report(report))
    return report.exit_code
