# actions/base.py
from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Protocol, Sequence, Union

from ..artifacts import JobArtifacts
from ..concurrency import CancelToken
from ..errors import CIError, JobCancelledError, StepTimeoutError
from ..model import Step

POLL_INTERVAL = 0.1
OUTPUT_TAIL = 4000

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "dotnet": "Install the .NET SDK or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "git": "Install Git or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


@dataclass
class StepInvocation:
    """Everything an invoker needs to execute one step. Values are already interpolated."""
    job: str
    step: Step
    command: str | None
    params: Dict[str, str]
    cwd: Path
    workspace: Path
    env: Dict[str, str]
    cancel: CancelToken
    artifacts: JobArtifacts
    timeout: float | None = None
    # workflow + job + step env only (no inherited process environment)
    declared_env: Dict[str, str] = field(default_factory=dict)
    github: Dict[str, str] = field(default_factory=dict)

    def param(self, name: str, default: str | None = None) -> str | None:
        value = self.params.get(name)
        return default if value in (None, "") else value

    def require(self, name: str) -> str:
        value = self.param(name)
        if value is None:
            raise CIError(
                kind="invalid_params",
                job=self.job,
                step=self.step.name,
                message=f"Action '{self.step.uses}' requires the '{name}' parameter",
            )
        return value

    def resolve(self, path: str) -> Path:
        p = Path(path).expanduser()
        return p if p.is_absolute() else (self.cwd / p)


@dataclass
class InvocationResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class StepInvoker(Protocol):
    """A capability that executes one kind of step: a shell command or an external action."""

    def invoke(self, invocation: StepInvocation) -> InvocationResult: ...


def normalize_action_ref(ref: str) -> str:
    """'actions/upload-artifact@v4' -> 'upload-artifact'."""
    name = ref.split("@", 1)[0].rstrip("/")
    return name.rsplit("/", 1)[-1].lower()


class ActionRegistry:
    """Maps action names (as used in `uses=`) to invokers."""

    def __init__(self, actions: Mapping[str, StepInvoker] | None = None):
        self._actions: Dict[str, StepInvoker] = {}
        for name, invoker in (actions or {}).items():
            self.register(name, invoker)

    def register(self, name: str, invoker: StepInvoker) -> None:
        self._actions[normalize_action_ref(name)] = invoker

    def names(self) -> list[str]:
        return sorted(self._actions)

    def __contains__(self, ref: str) -> bool:
        return normalize_action_ref(ref) in self._actions

    def resolve(self, ref: str, *, job: str = "", step: str | None = None) -> StepInvoker:
        invoker = self._actions.get(normalize_action_ref(ref))
        if invoker is None:
            raise CIError(
                kind="unknown_action",
                job=job,
                step=step,
                message=f"No invoker registered for action '{ref}'",
                details={"known_actions": ", ".join(self.names())},
            )
        return invoker


# ---------------------------------------------------------------------
# Subprocess execution with timeout + cancellation
# ---------------------------------------------------------------------

def _kill(proc: subprocess.Popen) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def run_command(
    cmd: Union[str, Sequence[str]],
    *,
    cwd: Path,
    env: Mapping[str, str],
    job: str,
    step: str,
    timeout: float | None = None,
    cancel: CancelToken | None = None,
    shell: bool = False,
    input: str | None = None,
) -> InvocationResult:
    """
    Run a command to completion, polling so that cancellation and the
    timeout are observed while it runs. The child gets its own process
    group; on timeout/cancel the whole group is killed.
    """
    if not cwd.exists():
        raise FileNotFoundError(f"[{job}] step '{step}' cwd not found: {cwd}")

    display = cmd if isinstance(cmd, str) else " ".join(cmd)
    proc = subprocess.Popen(
        cmd,
        shell=shell,
        cwd=str(cwd),
        env=dict(env),
        text=True,
        stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        start_new_session=hasattr(os, "killpg"),
    )
    deadline = time.monotonic() + timeout if timeout else None

    while True:
        try:
            stdout, stderr = proc.communicate(input=input, timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.is_set():
                _kill(proc)
                proc.communicate()
                raise JobCancelledError(cancel.reason or "cancelled")
            if deadline is not None and time.monotonic() >= deadline:
                _kill(proc)
                stdout, stderr = proc.communicate()
                raise StepTimeoutError(
                    job=job,
                    step=step,
                    cmd=display,
                    exit_code=-1,
                    stdout=(stdout or "")[-OUTPUT_TAIL:],
                    stderr=(stderr or "")[-OUTPUT_TAIL:],
                    timeout=timeout,
                )

    return InvocationResult(
        exit_code=proc.returncode,
        stdout=(stdout or "")[-OUTPUT_TAIL:],
        stderr=(stderr or "")[-OUTPUT_TAIL:],
    )


def check_tool_available(tool: str, *, job: str = "", step: str | None = None) -> None:
    """Check if a tool is available on PATH, raise a helpful CIError if not."""
    from shutil import which

    if which(tool) is None:
        hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
        raise CIError(
            kind="tool_unavailable",
            job=job,
            step=step,
            message=f"{tool} is not available",
            details={"hint": hint, "tool": tool},
        )


def parse_output_file(path: Path) -> Dict[str, str]:
    """
    Parse step outputs written as `name=value` lines. Multi-line values use
    the delimiter form:

        name<<EOF
        line 1
        line 2
        EOF
    """
    if not path.exists():
        return {}
    outputs: Dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delimiter = line.split("<<", 1)
            body: list[str] = []
            while i < len(lines) and lines[i] != delimiter:
                body.append(lines[i])
                i += 1
            i += 1  # skip delimiter
            outputs[name.strip()] = "\n".join(body)
        elif "=" in line:
            name, value = line.split("=", 1)
            outputs[name.strip()] = value
    return outputs
