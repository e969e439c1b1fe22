from __future__ import annotations

from typing import Optional, Sequence


class InstallerError(Exception):
    """Base class for every error raised by the installer core."""


# Catalog (fatal, pre-run)


class CatalogError(InstallerError):
    """A single structural problem in the module catalog."""

    path: str = "modules"


class SchemaViolation(CatalogError):
    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"{path}: {message}")


class DuplicateId(CatalogError):
    def __init__(self, module_id: str, index: int) -> None:
        self.module_id = module_id
        self.index = index
        self.path = f"modules[{index}].id"
        super().__init__(f"Duplicate module ID: {module_id} (modules[{index}])")


class UnknownDependency(CatalogError):
    def __init__(self, module_id: str, dependency: str) -> None:
        self.module_id = module_id
        self.dependency = dependency
        self.path = f"modules.{module_id}.dependencies"
        super().__init__(f"{module_id} depends on unknown module {dependency}")


class SelfDependency(CatalogError):
    def __init__(self, module_id: str) -> None:
        self.module_id = module_id
        self.path = f"modules.{module_id}.dependencies"
        super().__init__(f"{module_id} depends on itself")


class InvalidPhase(CatalogError):
    def __init__(self, module_id: str, phase: object) -> None:
        self.module_id = module_id
        self.phase = phase
        self.path = f"modules.{module_id}.phase"
        super().__init__(f"{module_id} has invalid phase {phase!r} (expected integer 1..10)")


class InvalidAction(CatalogError):
    def __init__(self, module_id: str, index: int, message: str) -> None:
        self.module_id = module_id
        self.index = index
        self.path = f"modules.{module_id}.install[{index}]"
        super().__init__(f"{self.path}: {message}")


class DependencyCycle(CatalogError):
    def __init__(self, path: Sequence[str]) -> None:
        self.cycle = list(path)
        self.path = f"modules.{self.cycle[0]}.dependencies"
        rendered = " -> ".join([*self.cycle, self.cycle[0]])
        super().__init__(f"Dependency cycle detected: {rendered}")


class PhaseViolation(CatalogError):
    def __init__(self, module_id: str, module_phase: int, dependency: str, dependency_phase: int) -> None:
        self.module_id = module_id
        self.module_phase = module_phase
        self.dependency = dependency
        self.dependency_phase = dependency_phase
        self.path = f"modules.{module_id}.dependencies"
        super().__init__(
            f'Phase violation: "{module_id}" (phase {module_phase}) depends on '
            f'"{dependency}" (phase {dependency_phase}). '
            "Dependencies must be in same or earlier phase."
        )


class CatalogValidationError(CatalogError):
    """All violations found in one validation pass."""

    def __init__(self, violations: Sequence[CatalogError], *, source: Optional[str] = None) -> None:
        self.violations = list(violations)
        self.source = source
        where = f" in {source}" if source else ""
        lines = [f"{len(self.violations)} catalog violation(s){where}:"]
        lines.extend(f"  - {v}" for v in self.violations)
        super().__init__("\n".join(lines))

    def of_type(self, kind: type) -> list:
        return [v for v in self.violations if isinstance(v, kind)]


# Selection (fatal, pre-run)


class SelectionError(InstallerError):
    pass


class UnknownSelection(SelectionError):
    def __init__(self, kind: str, value: object, *, flag: str) -> None:
        self.kind = kind
        self.value = value
        self.flag = flag
        super().__init__(f"Unknown {kind} in {flag}: {value}")


class AmbiguousSelection(SelectionError):
    def __init__(self, module_ids: Sequence[str]) -> None:
        self.module_ids = sorted(module_ids)
        super().__init__(
            "Modules both explicitly included and excluded: " + ", ".join(self.module_ids)
        )


class SkipViolation(SelectionError):
    def __init__(self, module_id: str, excluded: str, chain: Sequence[str]) -> None:
        self.module_id = module_id
        self.excluded = excluded
        self.chain = list(chain)
        super().__init__(
            f"Selection error: {module_id} depends on skipped {excluded} "
            f"(chain: {' -> '.join(self.chain)}). "
            f"Remove the skip of {excluded} or omit {module_id}."
        )


# Verification (per fetch)


class VerificationError(InstallerError):
    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(message)


class InsecureSourceError(VerificationError):
    def __init__(self, source: str) -> None:
        super().__init__(source, f"Refusing non-HTTPS source: {source}")


class InvalidDigestError(VerificationError):
    def __init__(self, source: str, digest: object) -> None:
        self.digest = digest
        super().__init__(source, f"Expected digest for {source} is not a SHA-256 hex string: {digest!r}")


class UnknownInstallerError(VerificationError):
    def __init__(self, tool: str) -> None:
        self.tool = tool
        super().__init__(tool, f"No checksum entry for installer {tool!r}")


class DigestMismatchError(VerificationError):
    def __init__(self, source: str, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            source,
            f"Checksum mismatch for {source}\n  Expected: {expected}\n  Actual:   {actual}",
        )


class FetchError(VerificationError):
    def __init__(self, source: str, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(source, message)


class FetchExhaustedError(VerificationError):
    def __init__(self, source: str, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(source, f"Fetching {source} failed after {attempts} attempts: {last_error}")


# Execution (per unit)


class ActionFailed(InstallerError):
    """A single action or verify check inside a unit failed."""

    def __init__(self, module_id: str, step: str, message: str) -> None:
        self.module_id = module_id
        self.step = step
        super().__init__(message)


class UnimplementedActionError(ActionFailed):
    def __init__(self, module_id: str, step: str, raw: object) -> None:
        self.raw = raw
        super().__init__(module_id, step, f"{module_id}: unimplemented action {raw!r}")


class UnitFailure(InstallerError):
    severity = "standard"

    def __init__(self, module_id: str, step: Optional[str], cause: BaseException) -> None:
        self.module_id = module_id
        self.step = step
        self.cause = cause
        super().__init__(f"{module_id} failed at {step or '<start>'}: {cause}")


class CriticalUnitFailure(UnitFailure):
    severity = "critical"


class StandardUnitFailure(UnitFailure):
    severity = "standard"


class OptionalUnitFailure(UnitFailure):
    severity = "optional"


UNIT_FAILURE_BY_SEVERITY = {
    "critical": CriticalUnitFailure,
    "standard": StandardUnitFailure,
    "optional": OptionalUnitFailure,
}


# State (fatal)


class StateError(InstallerError):
    pass


class CorruptCheckpointError(StateError):
    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(
            f"Checkpoint {path} is invalid: {reason}. "
            "Inspect it, then run with --reset-state to move it aside."
        )


class InvalidTransition(StateError):
    def __init__(self, module_id: str, current: object, target: object) -> None:
        self.module_id = module_id
        self.current = current
        self.target = target
        super().__init__(f"{module_id}: illegal state transition {current} -> {target}")


class ResumeRefused(StateError):
    def __init__(self, module_id: str, step: Optional[str], message: Optional[str]) -> None:
        self.module_id = module_id
        self.step = step
        self.failure_message = message
        super().__init__(
            f"Previous run failed at {module_id}"
            + (f" (step: {step})" if step else "")
            + (f": {message}" if message else "")
            + ". Re-run with --retry-failed to retry it."
        )
