"""Subprocess execution for local provider CLIs and ssh, plus path helpers."""

from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from loguru import logger

log = logger


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str
    stderr: str


class CmdError(RuntimeError):
    """A command exited non-zero; ``result`` keeps its captured output."""

    def __init__(self, cmd: Sequence[str] | str, result: CmdResult):
        self.cmd = cmd
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip()
        super().__init__(
            f'Command failed (code={result.code}): {_display(cmd)}\n{detail}'.strip()
        )


class CmdTimeoutError(CmdError):
    def __init__(self, cmd: Sequence[str] | str, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__(cmd, CmdResult(124, '', f'Timed out after {timeout_s:g}s'))


def shell_join(cmd: Sequence[str]) -> str:
    return ' '.join(shlex.quote(c) for c in cmd)


def _display(cmd: Sequence[str] | str) -> str:
    return cmd if isinstance(cmd, str) else shell_join(cmd)


def _child_env(extra_env: Mapping[str, str] | None) -> dict[str, str] | None:
    # Empty values are dropped so a missing token never blanks an inherited one.
    if not extra_env:
        return None
    env = dict(os.environ)
    env.update({k: v for k, v in extra_env.items() if v})
    return env


def run_cmd(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture: bool = True,
    input_text: Optional[str] = None,
    extra_env: Optional[Mapping[str, str]] = None,
    timeout_s: Optional[float] = None,
) -> CmdResult:
    """
    Run a command and return its exit code and output.

    Args:
        cmd: argv list, never passed through a local shell.
        check: raise :class:`CmdError` on a non-zero exit.
        capture: when False the child's output goes straight to the
            terminal (used to stream long remote scripts) and the returned
            stdout/stderr are empty.
        input_text: text written to the child's stdin.
        extra_env: variables layered over the current environment, typically
            provider tokens.
        timeout_s: kill the child and raise :class:`CmdTimeoutError` after
            this many seconds.
    """
    log.opt(depth=1).debug('RUN: {}', shell_join(cmd))
    try:
        p = subprocess.run(
            cmd,
            input=input_text,
            capture_output=capture,
            text=True,
            env=_child_env(extra_env),
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as ex:
        log.opt(depth=1).error('Timed out after {}s: {}', timeout_s, shell_join(cmd))
        raise CmdTimeoutError(cmd, timeout_s or 0) from ex
    res = CmdResult(p.returncode, p.stdout or '', p.stderr or '')
    if p.returncode == 0:
        log.opt(depth=1).debug('OK: {}', shell_join(cmd))
    elif check:
        log.opt(depth=1).error(
            'Command failed code={} cmd={} stderr={}',
            p.returncode,
            shell_join(cmd),
            res.stderr.strip(),
        )
        raise CmdError(cmd, res)
    return res


def expand(path: str) -> str:
    return os.path.expandvars(os.path.expanduser(path))
