# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - API responses
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class CycleError(ValueError):
    """The `needs` graph has a cycle. Raised before anything executes."""

    def __init__(self, members: list[str]):
        self.members = list(members)
        chain = " -> ".join(self.members + self.members[:1])
        super().__init__(f"Job graph has a cycle: {chain}")


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class StepTimeoutError(StepFailure):
    timeout: float = 0.0

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.timeout:g}s: {self.cmd}"


class JobCancelledError(Exception):
    """The in-flight step of a job was stopped because its run was cancelled."""

    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)


class RunCancelledError(JobCancelledError):
    """A run was cancelled before it could start (e.g. while queued in its concurrency group)."""


class ConcurrencyGroupBusyError(Exception):
    def __init__(self, group: str, active_run: str):
        self.group = group
        self.active_run = active_run
        super().__init__(f"Concurrency group '{group}' already has an active run: {active_run}")


class ArtifactError(Exception):
    """Base for artifact store contract violations (fatal to the offending job)."""


class DuplicateArtifactError(ArtifactError):
    def __init__(self, name: str, producer: str | None = None):
        self.name = name
        self.producer = producer
        owner = f" (uploaded by '{producer}')" if producer else ""
        super().__init__(f"Artifact '{name}' already exists in this run{owner}")


class ArtifactNotFoundError(ArtifactError, KeyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(name)

    def __str__(self) -> str:
        return f"Artifact '{self.name}' not found in this run"


class ExpressionError(ValueError):
    def __init__(self, expression: str, message: str):
        self.expression = expression
        super().__init__(f"{message} in expression: {expression!r}")
