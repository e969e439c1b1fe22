from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from bootstrap_installer.catalog import ModuleDescriptor, parse_catalog
from bootstrap_installer.events import LifecycleEvent
from bootstrap_installer.graph import ModuleGraph


def _module(module_id: str, *, phase: int = 1, deps: Sequence[str] = (), **extra: Any) -> Dict[str, Any]:
    raw: Dict[str, Any] = {
        "id": module_id,
        "description": f"{module_id} module",
        "phase": phase,
        "dependencies": list(deps),
        "install": [f"echo install {module_id}"],
        "verify": [f"check {module_id}"],
    }
    raw.update(extra)
    return raw


def _catalog(*modules: Dict[str, Any], phases: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    raw: Dict[str, Any] = {"version": 1, "name": "Test catalog", "id": "test", "modules": list(modules)}
    if phases:
        raw["phases"] = phases
    return raw


@pytest.fixture
def mod() -> Callable[..., Dict[str, Any]]:
    return _module


@pytest.fixture
def catalog_doc() -> Callable[..., Dict[str, Any]]:
    return _catalog


@pytest.fixture
def make_graph() -> Callable[..., ModuleGraph]:
    def _make(*modules: Dict[str, Any], phases: Optional[Dict[str, int]] = None) -> ModuleGraph:
        return ModuleGraph.build(parse_catalog(_catalog(*modules, phases=phases)))

    return _make


class RecordingExecutor:
    """Executor double: records calls, fails commands listed in ``fail``."""

    def __init__(self, fail: Sequence[str] = (), checks: Optional[Dict[str, bool]] = None) -> None:
        self.fail = set(fail)
        self.checks = dict(checks or {})
        self.calls: List[Tuple[Any, ...]] = []

    def run_command(self, module: ModuleDescriptor, command: str) -> None:
        self.calls.append(("command", module.id, command))
        if command in self.fail:
            raise RuntimeError(f"command failed: {command}")

    def run_script(self, module: ModuleDescriptor, content: bytes, runner: str, args: Sequence[str]) -> None:
        self.calls.append(("script", module.id, runner, content))

    def run_check(self, module: ModuleDescriptor, command: str, run_as: Optional[str] = None) -> bool:
        self.calls.append(("check", module.id, command))
        return self.checks.get(command, True)

    def commands_for(self, module_id: str) -> List[str]:
        return [c[2] for c in self.calls if c[0] == "command" and c[1] == module_id]

    @property
    def modules_run(self) -> List[str]:
        seen: List[str] = []
        for call in self.calls:
            if call[0] in ("command", "script") and call[1] not in seen:
                seen.append(call[1])
        return seen


class ListSink:
    def __init__(self) -> None:
        self.events: List[LifecycleEvent] = []

    def emit(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[str]:
        return [e.kind.value for e in self.events]


@pytest.fixture
def executor_factory() -> Callable[..., RecordingExecutor]:
    return RecordingExecutor


@pytest.fixture
def sink() -> ListSink:
    return ListSink()
