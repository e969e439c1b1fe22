from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .actions import Action, FetchVerifyExecute, Unimplemented, looks_like_description, parse_action
from .errors import (
    CatalogError,
    CatalogValidationError,
    DuplicateId,
    InvalidAction,
    InvalidPhase,
    SchemaViolation,
    SelfDependency,
    UnknownDependency,
)

logger = logging.getLogger(__name__)

MODULE_ID_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")
CATALOG_ID_RE = re.compile(r"^[a-z][a-z0-9_]*$")

MIN_PHASE = 1
MAX_PHASE = 10

SEVERITIES = ("critical", "standard", "optional")
RUN_AS = ("target_user", "root", "current")
MODES = ("vibe", "safe")


@dataclass(frozen=True)
class InstalledCheck:
    command: str
    run_as: str = "target_user"


@dataclass(frozen=True)
class ModuleDescriptor:
    id: str
    description: str
    category: str
    phase: int = 1
    dependencies: Tuple[str, ...] = ()
    enabled_by_default: bool = True
    severity: str = "standard"
    actions: Tuple[Action, ...] = ()
    verify: Tuple[str, ...] = ()
    run_as: str = "target_user"
    tags: Tuple[str, ...] = ()
    installed_check: Optional[InstalledCheck] = None
    notes: Tuple[str, ...] = ()
    docs_url: Optional[str] = None


@dataclass(frozen=True)
class CatalogDefaults:
    user: str = "ubuntu"
    workspace_root: str = "/data/projects"
    mode: str = "vibe"


@dataclass(frozen=True)
class Catalog:
    version: int
    name: str
    id: str
    defaults: CatalogDefaults
    modules: Tuple[ModuleDescriptor, ...]
    phase_names: Mapping[str, int] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    @property
    def module_ids(self) -> List[str]:
        return [m.id for m in self.modules]

    def get(self, module_id: str) -> ModuleDescriptor:
        for m in self.modules:
            if m.id == module_id:
                return m
        raise KeyError(module_id)


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _str_list(
    raw: Any, path: str, errors: List[CatalogError], *, allow_empty_items: bool = False
) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        errors.append(SchemaViolation(path, "must be a list of strings"))
        return ()
    out: List[str] = []
    for i, item in enumerate(raw):
        if not isinstance(item, str) or (not allow_empty_items and not item.strip()):
            errors.append(SchemaViolation(f"{path}[{i}]", "must be a non-empty string"))
            continue
        out.append(item)
    return tuple(out)


def _parse_installed_check(raw: Any, path: str, errors: List[CatalogError]) -> Optional[InstalledCheck]:
    if raw is None:
        return None
    if isinstance(raw, str) and raw.strip():
        return InstalledCheck(command=raw)
    if isinstance(raw, dict):
        command = raw.get("command")
        run_as = raw.get("run_as", "target_user")
        if not (isinstance(command, str) and command.strip()):
            errors.append(SchemaViolation(f"{path}.command", "Installed check command cannot be empty"))
            return None
        if run_as not in RUN_AS:
            errors.append(SchemaViolation(f"{path}.run_as", f"must be one of {', '.join(RUN_AS)}"))
            return None
        return InstalledCheck(command=command, run_as=run_as)
    errors.append(SchemaViolation(path, "must be a command string or {command, run_as} mapping"))
    return None


def _parse_module(
    raw: Any, index: int, errors: List[CatalogError], warnings: List[str]
) -> Optional[ModuleDescriptor]:
    where = f"modules[{index}]"
    if not isinstance(raw, dict):
        errors.append(SchemaViolation(where, "module entry must be a mapping"))
        return None

    module_id = raw.get("id")
    if not isinstance(module_id, str) or not MODULE_ID_RE.match(module_id):
        errors.append(
            SchemaViolation(
                f"{where}.id",
                f'Module ID must be lowercase with dots (e.g., "shell.zsh", "lang.bun"), got {module_id!r}',
            )
        )
        return None

    where = f"modules.{module_id}"
    before = len(errors)

    description = raw.get("description")
    if not (isinstance(description, str) and description.strip()):
        errors.append(SchemaViolation(f"{where}.description", "Description cannot be empty"))

    category = raw.get("category")
    if category is None:
        category = module_id.split(".", 1)[0]
    elif not (isinstance(category, str) and category.strip()):
        errors.append(SchemaViolation(f"{where}.category", "must be a non-empty string"))

    phase = raw.get("phase", MIN_PHASE)
    if not _is_int(phase) or not (MIN_PHASE <= phase <= MAX_PHASE):
        errors.append(InvalidPhase(module_id, phase))

    enabled = raw.get("enabled_by_default", True)
    if not isinstance(enabled, bool):
        errors.append(SchemaViolation(f"{where}.enabled_by_default", "must be a boolean"))

    severity = raw.get("severity")
    if severity is None:
        optional = raw.get("optional", False)
        if not isinstance(optional, bool):
            errors.append(SchemaViolation(f"{where}.optional", "must be a boolean"))
        severity = "optional" if optional is True else "standard"
    elif severity not in SEVERITIES:
        errors.append(SchemaViolation(f"{where}.severity", f"must be one of {', '.join(SEVERITIES)}"))

    run_as = raw.get("run_as", "target_user")
    if run_as not in RUN_AS:
        errors.append(SchemaViolation(f"{where}.run_as", f"must be one of {', '.join(RUN_AS)}"))

    dependencies = _str_list(raw.get("dependencies"), f"{where}.dependencies", errors)

    actions: List[Action] = []
    verified = raw.get("verified_installer")
    if verified is not None:
        try:
            action = parse_action({"fetch": verified})
        except ValueError as e:
            errors.append(SchemaViolation(f"{where}.verified_installer", str(e)))
        else:
            if isinstance(action, FetchVerifyExecute) and action.tool is None:
                errors.append(SchemaViolation(f"{where}.verified_installer", "must reference a tool"))
            actions.append(action)

    install = raw.get("install") or []
    if not isinstance(install, list):
        errors.append(SchemaViolation(f"{where}.install", "must be a list"))
        install = []
    for i, entry in enumerate(install):
        try:
            actions.append(parse_action(entry))
        except ValueError as e:
            errors.append(InvalidAction(module_id, i, str(e)))

    verify = _str_list(raw.get("verify"), f"{where}.verify", errors)
    tags = _str_list(raw.get("tags"), f"{where}.tags", errors)
    notes = _str_list(raw.get("notes"), f"{where}.notes", errors, allow_empty_items=True)
    installed_check = _parse_installed_check(raw.get("installed_check"), f"{where}.installed_check", errors)

    docs_url = raw.get("docs_url")
    if docs_url is not None and not (isinstance(docs_url, str) and docs_url.startswith(("http://", "https://"))):
        errors.append(SchemaViolation(f"{where}.docs_url", "must be an http(s) URL"))

    if len(errors) != before:
        return None

    if not actions:
        warnings.append(f"{where}.install: no install actions and no verified installer")
    elif all(looks_like_description(a) for a in actions):
        warnings.append(f"{where}.install: Install commands appear to be descriptions, not actual commands")
    for a in actions:
        if isinstance(a, Unimplemented):
            warnings.append(f"{where}.install: unrecognized entry {a.raw!r} will fail at run time")
    if not verify:
        warnings.append(f"{where}.verify: no verify checks")

    return ModuleDescriptor(
        id=module_id,
        description=description.strip(),
        category=category,
        phase=phase,
        dependencies=dependencies,
        enabled_by_default=enabled,
        severity=severity,
        actions=tuple(actions),
        verify=verify,
        run_as=run_as,
        tags=tags,
        installed_check=installed_check,
        notes=notes,
        docs_url=docs_url,
    )


def _parse_defaults(raw: Any, errors: List[CatalogError]) -> CatalogDefaults:
    if raw is None:
        return CatalogDefaults()
    if not isinstance(raw, dict):
        errors.append(SchemaViolation("defaults", "must be a mapping"))
        return CatalogDefaults()

    base = CatalogDefaults()
    user = raw.get("user", base.user)
    workspace_root = raw.get("workspace_root", base.workspace_root)
    mode = raw.get("mode", base.mode)
    if not (isinstance(user, str) and user.strip()):
        errors.append(SchemaViolation("defaults.user", "User cannot be empty"))
    if not (isinstance(workspace_root, str) and workspace_root.strip()):
        errors.append(SchemaViolation("defaults.workspace_root", "Workspace root cannot be empty"))
    if mode not in MODES:
        errors.append(SchemaViolation("defaults.mode", f"must be one of {', '.join(MODES)}"))
    return CatalogDefaults(user=str(user), workspace_root=str(workspace_root), mode=str(mode))


def _parse_phase_names(raw: Any, errors: List[CatalogError]) -> Dict[str, int]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        errors.append(SchemaViolation("phases", "must map phase names to numbers"))
        return {}
    out: Dict[str, int] = {}
    for name, number in raw.items():
        if not isinstance(name, str) or not _is_int(number) or not (MIN_PHASE <= number <= MAX_PHASE):
            errors.append(SchemaViolation(f"phases.{name}", f"must map to an integer {MIN_PHASE}..{MAX_PHASE}"))
            continue
        out[name.lower()] = number
    return out


def parse_catalog(raw: Any, *, source: Optional[str] = None) -> Catalog:
    """Validate already-parsed catalog data.

    Collects every structural violation in one pass and raises them together
    as :class:`CatalogValidationError`. Graph-level checks (cycles, phase
    ordering) live in :mod:`bootstrap_installer.graph`.
    """

    errors: List[CatalogError] = []
    warnings: List[str] = []

    if not isinstance(raw, dict):
        raise CatalogValidationError(
            [SchemaViolation("<document>", f"catalog must be a mapping, got {type(raw).__name__}")],
            source=source,
        )

    version = raw.get("version")
    if not _is_int(version) or version < 1:
        errors.append(SchemaViolation("version", "Version must be a positive integer"))

    name = raw.get("name")
    if not (isinstance(name, str) and name.strip()):
        errors.append(SchemaViolation("name", "Name cannot be empty"))

    catalog_id = raw.get("id")
    if not isinstance(catalog_id, str) or not CATALOG_ID_RE.match(catalog_id):
        errors.append(SchemaViolation("id", "ID must be lowercase alphanumeric with underscores"))

    defaults = _parse_defaults(raw.get("defaults"), errors)
    phase_names = _parse_phase_names(raw.get("phases"), errors)

    raw_modules = raw.get("modules")
    if not isinstance(raw_modules, list) or not raw_modules:
        errors.append(SchemaViolation("modules", "At least one module required"))
        raw_modules = []

    modules: List[ModuleDescriptor] = []
    seen: Dict[str, int] = {}
    for index, entry in enumerate(raw_modules):
        if isinstance(entry, dict) and isinstance(entry.get("id"), str):
            module_id = entry["id"]
            if module_id in seen:
                errors.append(DuplicateId(module_id, index))
                continue
            seen[module_id] = index
        module = _parse_module(entry, index, errors, warnings)
        if module is not None:
            modules.append(module)

    # Reference checks run against every declared id, including modules that
    # failed their own field checks, so one bad module does not cascade.
    for module in modules:
        for dep in module.dependencies:
            if dep == module.id:
                errors.append(SelfDependency(module.id))
            elif dep not in seen:
                errors.append(UnknownDependency(module.id, dep))

    if errors:
        raise CatalogValidationError(errors, source=source)

    for w in warnings:
        logger.warning("Catalog warning: %s", w)

    return Catalog(
        version=version,
        name=name,
        id=catalog_id,
        defaults=defaults,
        modules=tuple(modules),
        phase_names=phase_names,
        warnings=tuple(warnings),
    )


def load_catalog(path: str) -> Catalog:
    """Load and validate a YAML catalog file."""

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise CatalogValidationError([SchemaViolation("<document>", f"YAML parse error: {e}")], source=str(p)) from e

    catalog = parse_catalog(data, source=str(p))
    logger.info("Loaded catalog %s (%d modules) from %s", catalog.id, len(catalog.modules), p)
    return catalog
