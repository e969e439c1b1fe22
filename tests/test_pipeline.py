import hashlib

import httpx
import pytest

from bootstrap_installer.executor import CallbackRegistry
from bootstrap_installer.pipeline import RunResult, UnitOutcome, run_plan
from bootstrap_installer.retry import RetryPolicy
from bootstrap_installer.selection import SelectionRequest, select
from bootstrap_installer.state_store import CheckpointState, CheckpointStore, load_checkpoint
from bootstrap_installer.verify import VerificationGate

SCRIPT = b"#!/bin/sh\necho uv\n"
DIGEST = hashlib.sha256(SCRIPT).hexdigest()
URL = "https://astral.example/uv/install.sh"


@pytest.fixture
def abc(make_graph, mod):
    return make_graph(
        mod("a.a", phase=1),
        mod("b.b", phase=2, deps=["a.a"]),
        mod("c.c", phase=2, deps=["a.a"]),
    )


def _gate(content: bytes) -> VerificationGate:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=content)))
    return VerificationGate(client=client, policy=RetryPolicy(jitter=0.0), sleep=lambda _: None)


def _outcomes(report):
    return {u.module_id: u.outcome for u in report.units}


def test_full_run_then_rerun_executes_nothing(abc, tmp_path, executor_factory) -> None:
    path = str(tmp_path / "checkpoint.json")
    plan = select(abc, SelectionRequest())

    first = run_plan(plan, abc, CheckpointStore.open(path), executor_factory())
    assert first.result is RunResult.SUCCEEDED
    assert first.summary() == "3 completed"

    executor = executor_factory()
    second = run_plan(plan, abc, CheckpointStore.open(path), executor)
    assert executor.calls == []
    assert set(_outcomes(second).values()) == {UnitOutcome.ALREADY_COMPLETE}
    assert second.exit_code == 0


def test_resume_with_standard_failure(abc, tmp_path, executor_factory) -> None:
    path = str(tmp_path / "checkpoint.json")
    store = CheckpointStore.open(path)
    store.begin("a.a")
    store.record_success("a.a", 1.0)

    executor = executor_factory(fail=["echo install c.c"])
    plan = select(abc, SelectionRequest())
    report = run_plan(plan, abc, CheckpointStore.open(path), executor)

    assert executor.modules_run == ["b.b", "c.c"]
    assert report.summary() == "2 completed, 1 standard failure"
    assert report.result is RunResult.PARTIAL
    assert report.exit_code == 2

    saved = load_checkpoint(path)
    assert saved.completed == ["a.a", "b.b"]
    assert saved.failed == ["c.c"]
    assert saved.last_failure.unit == "c.c"
    assert saved.last_failure.step == "install[1] echo install c.c"


def test_critical_failure_stops_the_run(make_graph, mod, tmp_path, executor_factory) -> None:
    graph = make_graph(
        mod("base.sys", severity="critical"),
        mod("lang.bun", phase=2, deps=["base.sys"]),
        mod("lang.uv", phase=2),
    )
    executor = executor_factory(fail=["echo install base.sys"])
    report = run_plan(select(graph, SelectionRequest()), graph, CheckpointStore.open(str(tmp_path / "s.json")), executor)

    assert report.result is RunResult.ABORTED_CRITICAL
    assert report.exit_code == 1
    assert _outcomes(report) == {
        "base.sys": UnitOutcome.FAILED,
        "lang.bun": UnitOutcome.NOT_RUN,
        "lang.uv": UnitOutcome.NOT_RUN,
    }
    assert report.summary() == "1 critical failure, 2 not run"
    assert executor.modules_run == ["base.sys"]


def test_optional_failure_does_not_change_result(make_graph, mod, tmp_path, executor_factory) -> None:
    graph = make_graph(mod("shell.zsh"), mod("shell.omz", optional=True, deps=["shell.zsh"]))
    executor = executor_factory(fail=["echo install shell.omz"])
    report = run_plan(select(graph, SelectionRequest()), graph, CheckpointStore.open(str(tmp_path / "s.json")), executor)

    assert report.result is RunResult.SUCCEEDED
    assert report.summary() == "1 completed, 1 optional failure"


def test_verified_installer_runs_fetched_content(make_graph, mod, tmp_path, executor_factory) -> None:
    graph = make_graph(mod("lang.uv", install=[{"fetch": {"url": URL, "sha256": DIGEST, "runner": "sh"}}]))
    executor = executor_factory()
    report = run_plan(
        select(graph, SelectionRequest()),
        graph,
        CheckpointStore.open(str(tmp_path / "s.json")),
        executor,
        _gate(SCRIPT),
    )
    assert report.result is RunResult.SUCCEEDED
    assert ("script", "lang.uv", "sh", SCRIPT) in executor.calls


def test_digest_mismatch_never_executes(make_graph, mod, tmp_path, executor_factory) -> None:
    graph = make_graph(mod("lang.uv", install=[{"fetch": {"url": URL, "sha256": DIGEST}}]))
    executor = executor_factory()
    report = run_plan(
        select(graph, SelectionRequest()),
        graph,
        CheckpointStore.open(str(tmp_path / "s.json")),
        executor,
        _gate(b"#!/bin/sh\nrm -rf /\n"),
    )

    assert [c for c in executor.calls if c[0] == "script"] == []
    (unit,) = report.units
    assert unit.outcome is UnitOutcome.FAILED
    assert "Checksum mismatch" in unit.error
    assert report.result is RunResult.PARTIAL


def test_unapproved_retry_refuses_to_start(abc, tmp_path, executor_factory) -> None:
    path = str(tmp_path / "checkpoint.json")
    store = CheckpointStore.open(path)
    store.begin("b.b")
    store.record_failure("b.b", "install[1] echo install b.b", "exit 1", 0.1)

    executor = executor_factory()
    plan = select(abc, SelectionRequest())
    report = run_plan(plan, abc, CheckpointStore.open(path), executor)
    assert report.result is RunResult.ABORTED_VALIDATION
    assert report.exit_code == 3
    assert executor.calls == []
    assert "--retry-failed" in report.error

    report = run_plan(plan, abc, CheckpointStore.open(path), executor, retry_failed=True)
    assert report.result is RunResult.SUCCEEDED
    assert load_checkpoint(path).failed == []


def test_installed_check_skips_actions(make_graph, mod, tmp_path, executor_factory) -> None:
    graph = make_graph(mod("shell.zsh", installed_check="command -v zsh"))
    executor = executor_factory(checks={"command -v zsh": True})
    report = run_plan(select(graph, SelectionRequest()), graph, CheckpointStore.open(str(tmp_path / "s.json")), executor)

    assert _outcomes(report) == {"shell.zsh": UnitOutcome.PRESENT}
    assert executor.commands_for("shell.zsh") == []
    assert load_checkpoint(str(tmp_path / "s.json")).completed == ["shell.zsh"]


def test_failed_verify_check_fails_unit(make_graph, mod, tmp_path, executor_factory) -> None:
    graph = make_graph(mod("cli.rg", verify=["rg --version"]))
    executor = executor_factory(checks={"rg --version": False})
    report = run_plan(select(graph, SelectionRequest()), graph, CheckpointStore.open(str(tmp_path / "s.json")), executor)

    (unit,) = report.units
    assert unit.outcome is UnitOutcome.FAILED
    assert unit.step == "verify[1] rg --version"


def test_unimplemented_action_fails_unit(make_graph, mod, tmp_path, executor_factory) -> None:
    graph = make_graph(mod("tools.box", install=[{"docker": "nginx"}]))
    report = run_plan(
        select(graph, SelectionRequest()),
        graph,
        CheckpointStore.open(str(tmp_path / "s.json")),
        executor_factory(),
    )
    (unit,) = report.units
    assert unit.outcome is UnitOutcome.FAILED
    assert "unimplemented action" in unit.error


def test_native_callback_is_invoked(make_graph, mod, tmp_path, executor_factory) -> None:
    called = []
    callbacks = CallbackRegistry()
    callbacks.register("write_motd", lambda module: called.append(module.id))

    graph = make_graph(mod("finalize.motd", install=[{"callback": "write_motd"}]))
    report = run_plan(
        select(graph, SelectionRequest()),
        graph,
        CheckpointStore.open(str(tmp_path / "s.json")),
        executor_factory(),
        callbacks=callbacks,
    )
    assert report.result is RunResult.SUCCEEDED
    assert called == ["finalize.motd"]


def test_dry_run_leaves_checkpoint_alone(abc, tmp_path, executor_factory) -> None:
    path = tmp_path / "checkpoint.json"
    store = CheckpointStore(str(path), CheckpointState.new())
    executor = executor_factory()
    report = run_plan(select(abc, SelectionRequest()), abc, store, executor, dry_run=True)

    assert set(_outcomes(report).values()) == {UnitOutcome.DRY_RUN}
    assert report.summary() == "3 dry run"
    assert not path.exists()
    assert executor.calls == []


def test_explicit_skips_are_recorded(abc, tmp_path, executor_factory) -> None:
    path = str(tmp_path / "checkpoint.json")
    plan = select(abc, SelectionRequest(exclude_modules=("c.c",)))
    run_plan(plan, abc, CheckpointStore.open(path), executor_factory())
    assert load_checkpoint(path).skipped == ["c.c"]

    executor = executor_factory()
    run_plan(select(abc, SelectionRequest(include_modules=("c.c",))), abc, CheckpointStore.open(path), executor)
    assert executor.modules_run == ["c.c"]
    saved = load_checkpoint(path)
    assert saved.skipped == []
    assert saved.completed == ["a.a", "b.b", "c.c"]


def test_lifecycle_events(abc, tmp_path, executor_factory, sink) -> None:
    run_plan(
        select(abc, SelectionRequest(include_modules=("b.b",))),
        abc,
        CheckpointStore.open(str(tmp_path / "s.json")),
        executor_factory(),
        events=sink,
    )
    assert sink.kinds() == [
        "run_start",
        "phase_start",
        "unit_start",
        "unit_end",
        "phase_end",
        "phase_start",
        "unit_start",
        "unit_end",
        "phase_end",
        "run_end",
    ]
    assert sink.events[-1].data["result"] == "succeeded"


def test_strict_mode_treats_every_failure_as_critical(make_graph, mod, tmp_path, executor_factory) -> None:
    graph = make_graph(
        mod("shell.zsh"),
        mod("shell.omz", optional=True, deps=["shell.zsh"], install=[{"fetch": {"url": URL, "sha256": DIGEST}}]),
        mod("cli.modern", phase=2),
    )
    executor = executor_factory()
    report = run_plan(
        select(graph, SelectionRequest()),
        graph,
        CheckpointStore.open(str(tmp_path / "s.json")),
        executor,
        _gate(b"#!/bin/sh\necho tampered\n"),
        strict=True,
    )

    assert report.result is RunResult.ABORTED_CRITICAL
    assert _outcomes(report) == {
        "shell.zsh": UnitOutcome.COMPLETED,
        "shell.omz": UnitOutcome.FAILED,
        "cli.modern": UnitOutcome.NOT_RUN,
    }
    assert report.summary() == "1 completed, 1 critical failure, 1 not run"
    assert executor.modules_run == ["shell.zsh"]
