from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from .errors import CorruptCheckpointError, InvalidTransition, ResumeRefused

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _now() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _parse_timestamp(value: str) -> datetime:
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    return datetime.fromisoformat(text)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to JSON for unknown extensions.
    return "json"


# -- unit states ------------------------------------------------------------


class UnitStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    RETRY = "retry"
    ABORTED = "aborted"
    SKIPPED = "skipped"


_TRANSITIONS: Dict[UnitStatus, frozenset] = {
    UnitStatus.PENDING: frozenset({UnitStatus.RUNNING, UnitStatus.SKIPPED}),
    UnitStatus.RUNNING: frozenset({UnitStatus.COMPLETE, UnitStatus.FAILED}),
    UnitStatus.FAILED: frozenset({UnitStatus.RETRY, UnitStatus.ABORTED}),
    UnitStatus.RETRY: frozenset({UnitStatus.RUNNING}),
    UnitStatus.COMPLETE: frozenset(),
    UnitStatus.ABORTED: frozenset(),
    UnitStatus.SKIPPED: frozenset(),
}


def transition(module_id: str, current: UnitStatus, target: UnitStatus) -> UnitStatus:
    if target not in _TRANSITIONS[current]:
        raise InvalidTransition(module_id, current.value, target.value)
    return target


# -- persisted document -----------------------------------------------------


@dataclass(frozen=True)
class FailureRecord:
    unit: str
    step: Optional[str]
    message: str
    at: str

    def to_dict(self) -> Dict[str, Any]:
        return {"unit": self.unit, "step": self.step, "message": self.message, "at": self.at}


@dataclass
class CheckpointState:
    started_at: str
    last_updated: str
    mode: str = "vibe"
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    durations: Dict[str, float] = field(default_factory=dict)
    current_unit: Optional[str] = None
    current_step: Optional[str] = None
    last_failure: Optional[FailureRecord] = None
    schema_version: int = SCHEMA_VERSION

    @classmethod
    def new(cls, mode: str = "vibe") -> "CheckpointState":
        now = _now()
        return cls(started_at=now, last_updated=now, mode=mode)

    def status_of(self, module_id: str) -> UnitStatus:
        if module_id in self.completed:
            return UnitStatus.COMPLETE
        if module_id in self.failed or (self.last_failure is not None and self.last_failure.unit == module_id):
            return UnitStatus.FAILED
        if module_id in self.skipped:
            return UnitStatus.SKIPPED
        return UnitStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "started_at": self.started_at,
            "last_updated": self.last_updated,
            "mode": self.mode,
            "completed": list(self.completed),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "durations": dict(self.durations),
            "current_unit": self.current_unit,
            "current_step": self.current_step,
            "last_failure": self.last_failure.to_dict() if self.last_failure else None,
        }

    @classmethod
    def from_dict(cls, data: Any, *, path: str = "<checkpoint>") -> "CheckpointState":
        """Validate a loaded document. Anything unexpected is corruption."""

        def bad(reason: str) -> CorruptCheckpointError:
            return CorruptCheckpointError(path, reason)

        if not isinstance(data, dict):
            raise bad(f"expected a mapping, got {type(data).__name__}")

        version = data.get("schema_version")
        if type(version) is not int or version != SCHEMA_VERSION:
            raise bad(f"unsupported schema_version {version!r} (expected {SCHEMA_VERSION})")

        for key in ("started_at", "last_updated"):
            value = data.get(key)
            if not isinstance(value, str):
                raise bad(f"{key} must be a timestamp string")
            try:
                _parse_timestamp(value)
            except ValueError:
                raise bad(f"{key} is not an ISO-8601 timestamp: {value!r}") from None

        mode = data.get("mode", "vibe")
        if not isinstance(mode, str):
            raise bad("mode must be a string")

        lists: Dict[str, List[str]] = {}
        for key in ("completed", "failed", "skipped"):
            value = data.get(key, [])
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise bad(f"{key} must be a list of module ids")
            if len(set(value)) != len(value):
                raise bad(f"{key} contains duplicate module ids")
            lists[key] = list(value)

        durations = data.get("durations", {})
        if not isinstance(durations, dict) or not all(
            isinstance(k, str) and isinstance(v, (int, float)) and not isinstance(v, bool)
            for k, v in durations.items()
        ):
            raise bad("durations must map module ids to seconds")

        for key in ("current_unit", "current_step"):
            if data.get(key) is not None and not isinstance(data.get(key), str):
                raise bad(f"{key} must be a string or null")

        failure: Optional[FailureRecord] = None
        raw_failure = data.get("last_failure")
        if raw_failure is not None:
            if not isinstance(raw_failure, dict):
                raise bad("last_failure must be a mapping or null")
            unit = raw_failure.get("unit")
            step = raw_failure.get("step")
            message = raw_failure.get("message", "")
            at = raw_failure.get("at")
            if not isinstance(unit, str) or not isinstance(message, str):
                raise bad("last_failure needs unit and message strings")
            if step is not None and not isinstance(step, str):
                raise bad("last_failure.step must be a string or null")
            if not isinstance(at, str):
                raise bad("last_failure.at must be a timestamp string")
            try:
                _parse_timestamp(at)
            except ValueError:
                raise bad(f"last_failure.at is not an ISO-8601 timestamp: {at!r}") from None
            failure = FailureRecord(unit=unit, step=step, message=message, at=at)

        return cls(
            schema_version=version,
            started_at=data["started_at"],
            last_updated=data["last_updated"],
            mode=mode,
            completed=lists["completed"],
            failed=lists["failed"],
            skipped=lists["skipped"],
            durations={k: float(v) for k, v in durations.items()},
            current_unit=data.get("current_unit"),
            current_step=data.get("current_step"),
            last_failure=failure,
        )


# -- resume decisions -------------------------------------------------------


class ResumeAction(str, Enum):
    RUN = "run"
    RETRY = "retry"
    SKIP = "skip"
    ABORT = "abort"


def resume_decision(state: CheckpointState, module_id: str, retry_failed: bool) -> ResumeAction:
    status = state.status_of(module_id)
    if status in (UnitStatus.COMPLETE, UnitStatus.SKIPPED):
        return ResumeAction.SKIP
    if status is UnitStatus.FAILED:
        return ResumeAction.RETRY if retry_failed else ResumeAction.ABORT
    return ResumeAction.RUN


def plan_resume(state: CheckpointState, module_ids: Iterable[str], retry_failed: bool) -> Dict[str, ResumeAction]:
    """Decide every unit up front; refuse to start if any previous failure is unapproved."""

    decisions = {m: resume_decision(state, m, retry_failed) for m in module_ids}
    for module_id, action in decisions.items():
        if action is ResumeAction.ABORT:
            failure = state.last_failure if state.last_failure and state.last_failure.unit == module_id else None
            raise ResumeRefused(
                module_id,
                failure.step if failure else None,
                failure.message if failure else None,
            )
    return decisions


# -- file I/O ---------------------------------------------------------------


def _atomic_write_text(path: Path, content: str) -> None:
    """Write via a temp file in the same directory, fsync, then ``os.replace``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


def _serialize(path: Path, data: Mapping[str, Any]) -> str:
    if _detect_format(path) in {"yaml", "yml"}:
        return yaml.safe_dump(dict(data), sort_keys=False)
    return json.dumps(data, indent=2, sort_keys=True) + "\n"


def load_checkpoint(path: str) -> Optional[CheckpointState]:
    """Return the stored checkpoint, ``None`` if there is none yet."""

    p = Path(path)
    if not p.exists():
        return None

    text = p.read_text(encoding="utf-8")
    try:
        if _detect_format(p) in {"yaml", "yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (ValueError, yaml.YAMLError) as e:
        raise CorruptCheckpointError(str(p), f"unparsable content ({e})") from e

    return CheckpointState.from_dict(data, path=str(p))


def save_checkpoint(path: str, state: CheckpointState) -> None:
    p = Path(path)
    _atomic_write_text(p, _serialize(p, state.to_dict()))


def reset_checkpoint(path: str) -> Optional[str]:
    """Move an existing checkpoint aside. Returns the backup path, if any."""

    p = Path(path)
    if not p.exists():
        logger.info("No checkpoint at %s; nothing to reset", p)
        return None
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    backup = p.with_name(f"{p.name}.backup.{stamp}")
    os.replace(str(p), str(backup))
    logger.warning("Checkpoint %s moved aside to %s", p, backup)
    return str(backup)


class CheckpointStore:
    """Owns the checkpoint file for one run.

    The state is persisted only at creation, after each terminal unit outcome
    and for explicit skip marks. RUNNING lives in memory.
    """

    def __init__(self, path: str, state: CheckpointState) -> None:
        self.path = path
        self.state = state
        self._running: Dict[str, UnitStatus] = {}

    @classmethod
    def open(cls, path: str, *, mode: str = "vibe") -> "CheckpointStore":
        state = load_checkpoint(path)
        if state is None:
            state = CheckpointState.new(mode=mode)
            store = cls(path, state)
            store.save()
            logger.info("Created checkpoint %s", path)
            return store
        logger.info(
            "Loaded checkpoint %s (%d complete, %d failed, %d skipped)",
            path,
            len(state.completed),
            len(state.failed),
            len(state.skipped),
        )
        if state.mode != mode:
            logger.warning("Checkpoint mode %s differs from requested mode %s", state.mode, mode)
        return cls(path, state)

    def save(self) -> None:
        self.state.last_updated = _now()
        save_checkpoint(self.path, self.state)

    def status(self, module_id: str) -> UnitStatus:
        return self._running.get(module_id) or self.state.status_of(module_id)

    def begin(self, module_id: str, step: Optional[str] = None) -> None:
        current = self.status(module_id)
        if current is UnitStatus.FAILED:
            current = transition(module_id, current, UnitStatus.RETRY)
        self._running[module_id] = transition(module_id, current, UnitStatus.RUNNING)
        self.state.current_unit = module_id
        self.state.current_step = step

    def step(self, step: str) -> None:
        self.state.current_step = step

    def record_success(self, module_id: str, elapsed: float) -> None:
        transition(module_id, self.status(module_id), UnitStatus.COMPLETE)
        self._running.pop(module_id, None)
        if module_id not in self.state.completed:
            self.state.completed.append(module_id)
        if module_id in self.state.failed:
            self.state.failed.remove(module_id)
        if self.state.last_failure is not None and self.state.last_failure.unit == module_id:
            self.state.last_failure = None
        self.state.durations[module_id] = round(elapsed, 3)
        self.state.current_unit = None
        self.state.current_step = None
        self.save()

    def record_failure(self, module_id: str, step: Optional[str], message: str, elapsed: float) -> None:
        transition(module_id, self.status(module_id), UnitStatus.FAILED)
        self._running.pop(module_id, None)
        if module_id not in self.state.failed:
            self.state.failed.append(module_id)
        self.state.durations[module_id] = round(elapsed, 3)
        self.state.current_unit = module_id
        self.state.current_step = step
        self.state.last_failure = FailureRecord(unit=module_id, step=step, message=message, at=_now())
        self.save()

    def mark_skipped(self, module_ids: Iterable[str]) -> None:
        changed = False
        for module_id in module_ids:
            current = self.status(module_id)
            if current is not UnitStatus.PENDING:
                continue
            transition(module_id, current, UnitStatus.SKIPPED)
            self.state.skipped.append(module_id)
            changed = True
        if changed:
            self.save()

    def clear_skipped(self, module_ids: Iterable[str]) -> None:
        """Forget skip marks for modules an operator now asks for explicitly."""

        cleared = [m for m in module_ids if m in self.state.skipped]
        if not cleared:
            return
        self.state.skipped = [m for m in self.state.skipped if m not in cleared]
        logger.info("Cleared skip marks: %s", ", ".join(cleared))
        self.save()
