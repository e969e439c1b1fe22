"""Install action variants.

Catalog ``install`` entries are free-form YAML. They are parsed once, at load
time, into a closed set of variants so the driver can dispatch on type:

- a plain string, or ``{run: "..."}``      -> :class:`RunAction`
- ``{fetch: {tool|url, sha256, runner}}``  -> :class:`FetchVerifyExecute`
- ``{callback: "name"}``                   -> :class:`NativeCallback`
- anything else                            -> :class:`Unimplemented`
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

# Only known shell interpreters may run fetched content.
ALLOWED_RUNNERS = ("bash", "sh")


@dataclass(frozen=True)
class RunAction:
    command: str

    def describe(self) -> str:
        first = self.command.strip().splitlines()[0] if self.command.strip() else ""
        return first if len(first) <= 80 else first[:77] + "..."


@dataclass(frozen=True)
class FetchVerifyExecute:
    runner: str = "bash"
    args: Tuple[str, ...] = ()
    tool: Optional[str] = None
    url: Optional[str] = None
    sha256: Optional[str] = None

    def describe(self) -> str:
        return f"verified installer {self.tool or self.url}"


@dataclass(frozen=True)
class NativeCallback:
    name: str

    def describe(self) -> str:
        return f"callback {self.name}"


@dataclass(frozen=True)
class Unimplemented:
    raw: Any

    def describe(self) -> str:
        return f"unimplemented {self.raw!r}"


Action = Union[RunAction, FetchVerifyExecute, NativeCallback, Unimplemented]


def _parse_fetch(entry: Any) -> FetchVerifyExecute:
    if not isinstance(entry, dict):
        raise ValueError("fetch must be a mapping")

    runner = entry.get("runner", "bash")
    if runner not in ALLOWED_RUNNERS:
        raise ValueError(f'runner must be one of {", ".join(ALLOWED_RUNNERS)} (got {runner!r})')

    args = entry.get("args") or []
    if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
        raise ValueError("args must be a list of strings")

    tool = entry.get("tool")
    url = entry.get("url")
    sha256 = entry.get("sha256")
    if tool is not None and not (isinstance(tool, str) and tool.strip()):
        raise ValueError("tool must be a non-empty string")
    if tool is None:
        if not (isinstance(url, str) and url.strip()):
            raise ValueError("fetch needs either tool or url")
        if not (isinstance(sha256, str) and sha256.strip()):
            raise ValueError("fetch by url needs an sha256 digest")

    return FetchVerifyExecute(
        runner=str(runner),
        args=tuple(args),
        tool=tool,
        url=url,
        sha256=sha256,
    )


def parse_action(raw: Any) -> Action:
    """Parse one install entry.

    Raises ValueError for a recognized tag with a malformed body. Entries with
    no recognized tag become :class:`Unimplemented`.
    """

    if isinstance(raw, str):
        if not raw.strip():
            raise ValueError("empty command")
        return RunAction(command=raw)

    if isinstance(raw, dict) and len(raw) == 1:
        (tag, body), = raw.items()
        if tag == "run":
            if not (isinstance(body, str) and body.strip()):
                raise ValueError("run must be a non-empty string")
            return RunAction(command=body)
        if tag == "fetch":
            return _parse_fetch(body)
        if tag == "callback":
            if not (isinstance(body, str) and body.strip()):
                raise ValueError("callback must name a registered function")
            return NativeCallback(name=body)

    return Unimplemented(raw=raw)


def looks_like_description(action: Action) -> bool:
    """True for install strings that read like prose rather than commands."""

    if not isinstance(action, RunAction):
        return False
    cmd = action.command
    return cmd.startswith('"') or "Ensure" in cmd or "Install " in cmd
