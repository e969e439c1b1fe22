"""Unit action execution.

The driver only talks to a :class:`UnitExecutor`. :class:`ShellExecutor` is
the default and runs everything through ``lib.command.run_cmd``.
"""

from __future__ import annotations

import getpass
import logging
import os
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from .catalog import ModuleDescriptor
from .lib.command import run_cmd

logger = logging.getLogger(__name__)

Callback = Callable[[ModuleDescriptor], None]


class UnitExecutor(Protocol):
    def run_command(self, module: ModuleDescriptor, command: str) -> None:
        ...

    def run_script(self, module: ModuleDescriptor, content: bytes, runner: str, args: Sequence[str]) -> None:
        ...

    def run_check(self, module: ModuleDescriptor, command: str, run_as: Optional[str] = None) -> bool:
        ...


class CallbackRegistry:
    """Named Python callables that catalog entries can invoke with ``callback:``."""

    def __init__(self, callbacks: Optional[Mapping[str, Callback]] = None) -> None:
        self._callbacks: Dict[str, Callback] = dict(callbacks or {})

    def register(self, name: str, fn: Callback) -> Callback:
        if name in self._callbacks:
            raise ValueError(f"callback already registered: {name}")
        self._callbacks[name] = fn
        return fn

    def get(self, name: str) -> Optional[Callback]:
        return self._callbacks.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._callbacks


class ShellExecutor:
    """Run catalog commands with ``bash``, switching user with ``sudo`` as needed."""

    def __init__(
        self,
        *,
        target_user: str,
        workspace_root: Optional[str] = None,
        mode: Optional[str] = None,
        timeout_s: Optional[float] = None,
        dry_run: bool = False,
    ) -> None:
        self.target_user = target_user
        self.workspace_root = workspace_root
        self.mode = mode
        self.timeout_s = timeout_s
        self.dry_run = dry_run

    def _env(self) -> Dict[str, str]:
        env = {"TARGET_USER": self.target_user}
        if self.workspace_root:
            env["WORKSPACE_ROOT"] = self.workspace_root
        if self.mode:
            env["INSTALL_MODE"] = self.mode
        return env

    def _as(self, run_as: str, argv: List[str]) -> List[str]:
        if run_as == "current":
            return argv
        if run_as == "root":
            if os.geteuid() == 0:
                return argv
            return ["sudo", "-n", "--preserve-env=TARGET_USER,WORKSPACE_ROOT,INSTALL_MODE", *argv]
        if getpass.getuser() == self.target_user:
            return argv
        return ["sudo", "-n", "-u", self.target_user, "-H", "--preserve-env=TARGET_USER,WORKSPACE_ROOT,INSTALL_MODE", *argv]

    def run_command(self, module: ModuleDescriptor, command: str) -> None:
        run_cmd(
            self._as(module.run_as, ["bash", "-lc", command]),
            env=self._env(),
            timeout_s=self.timeout_s,
            dry_run=self.dry_run,
        )

    def run_script(self, module: ModuleDescriptor, content: bytes, runner: str, args: Sequence[str]) -> None:
        # Verified content goes to the interpreter on stdin; it never touches disk.
        run_cmd(
            self._as(module.run_as, [runner, "-s", "--", *args]),
            env=self._env(),
            input_bytes=content,
            timeout_s=self.timeout_s,
            dry_run=self.dry_run,
        )

    def run_check(self, module: ModuleDescriptor, command: str, run_as: Optional[str] = None) -> bool:
        result = run_cmd(
            self._as(run_as or module.run_as, ["bash", "-lc", command]),
            check=False,
            env=self._env(),
            timeout_s=self.timeout_s,
            dry_run=self.dry_run,
        )
        return result.returncode == 0
