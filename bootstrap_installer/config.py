from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .retry import RetryPolicy


@dataclass(frozen=True)
class Paths:
    catalog_default: str = "manifests/catalog.yaml"
    checksums_default: str = "manifests/checksums.yaml"
    state_default: str = "/var/lib/bootstrap-installer/state.json"
    log_default: str = "/var/log/bootstrap-installer.log"


PATHS = Paths()


def _number(section: Dict[str, Any], key: str, default: float) -> float:
    """Numeric config value; a missing or null key means the default."""

    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"{key} must be a number (got {value!r})")
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{key} must be a number (got {value!r})") from None


@dataclass(frozen=True)
class InstallerConfig:
    raw: Dict[str, Any] = field(default_factory=dict)

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.raw.get(name) or {}
        if not isinstance(section, dict):
            raise ValueError(f"config section {name!r} must be a mapping")
        return section

    @property
    def catalog_path(self) -> str:
        return str(self._section("paths").get("catalog") or PATHS.catalog_default)

    @property
    def checksums_path(self) -> str:
        return str(self._section("paths").get("checksums") or PATHS.checksums_default)

    @property
    def state_path(self) -> str:
        return str(self._section("paths").get("state") or PATHS.state_default)

    @property
    def log_path(self) -> str:
        return str(self._section("paths").get("log") or PATHS.log_default)

    @property
    def mode(self) -> Optional[str]:
        mode = self.raw.get("mode")
        return str(mode) if mode else None

    @property
    def target_user(self) -> Optional[str]:
        user = self.raw.get("target_user")
        return str(user) if user else None

    @property
    def fetch_timeout_s(self) -> float:
        return _number(self._section("fetch"), "timeout_s", 30.0)

    @property
    def command_timeout_s(self) -> Optional[float]:
        value = _number(self.raw, "command_timeout_s", 0.0)
        return value or None

    @property
    def retry_policy(self) -> RetryPolicy:
        retry = self._section("retry")
        return RetryPolicy(
            max_attempts=int(_number(retry, "max_attempts", 3)),
            base_delay=_number(retry, "base_delay_s", 5.0),
            multiplier=_number(retry, "multiplier", 3.0),
            max_delay=_number(retry, "max_delay_s", 60.0),
        )


def load_config(path: str) -> InstallerConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("installer config must be YAML")

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"{p}: YAML parse error: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError(f"{p} must contain a mapping/object")

    config = InstallerConfig(raw=raw)
    _ = (config.catalog_path, config.fetch_timeout_s, config.command_timeout_s, config.retry_policy)
    return config
