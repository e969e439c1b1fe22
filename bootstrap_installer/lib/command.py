from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


class CommandFailed(RuntimeError):
    def __init__(self, result: CmdResult, message: str) -> None:
        self.result = result
        super().__init__(message)


def fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    input_bytes: bytes | None = None,
    timeout_s: float | None = None,
    dry_run: bool = False,
) -> CmdResult:
    """Run a command with consistent logging.

    - Always logs the command (stdin payloads are not logged).
    - input_bytes is passed to stdin unchanged; output is decoded for logging.
    - dry_run logs but does not execute.
    - A timeout counts as a failure with returncode 124.
    """

    argv_list = list(argv)
    logger.info("CMD %s", fmt_argv(argv_list))

    if dry_run:
        return CmdResult(argv=argv_list, returncode=0, stdout="", stderr="")

    binary = input_bytes is not None

    try:
        p = subprocess.run(
            argv_list,
            input=input_bytes if binary else input_text,
            text=not binary,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as e:
        result = CmdResult(argv=argv_list, returncode=124, stdout="", stderr=f"timed out after {e.timeout}s")
        if check:
            raise CommandFailed(result, f"Command timed out after {e.timeout}s: {fmt_argv(argv_list)}") from e
        return result

    stdout, stderr = p.stdout, p.stderr
    if binary:
        stdout = stdout.decode("utf-8", errors="replace")
        stderr = stderr.decode("utf-8", errors="replace")

    if stdout:
        logger.debug("STDOUT %s", stdout.strip())
    if stderr:
        logger.debug("STDERR %s", stderr.strip())

    result = CmdResult(argv=argv_list, returncode=p.returncode, stdout=stdout, stderr=stderr)
    if check and p.returncode != 0:
        raise CommandFailed(result, f"Command failed ({p.returncode}): {fmt_argv(argv_list)}\n{stderr}")
    return result
