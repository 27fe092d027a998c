# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)


class SkipReason(str, Enum):
    """Why a job ended as skipped. Only CONDITION and UPSTREAM_SKIPPED are 'by design'."""
    CONDITION = "condition"
    UPSTREAM_FAILED = "upstream_failed"
    UPSTREAM_SKIPPED = "upstream_skipped"

    @property
    def by_design(self) -> bool:
        return self is not SkipReason.UPSTREAM_FAILED


class StepOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Step:
    """
    A single unit of work inside a job.

    Exactly one of `run` (shell command) or `uses` (action reference such as
    "actions/upload-artifact@v4") is set. `params` is the action's `with:`
    mapping; its values, `run` and `env` may contain ${{ }} expressions.
    """
    name: str
    run: str | None = None
    uses: str | None = None
    id: str | None = None
    params: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    condition: str | None = None
    continue_on_error: bool = False
    timeout: float | None = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"Step '{self.name}' must define exactly one of run= or uses=")

    @property
    def key(self) -> str:
        """Identity used in the `steps` expression context."""
        return self.id or self.name


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + conditional/output metadata.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    condition: str | None = None
    outputs: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    runs_on: str = "local"
    cwd: str | None = None
    display_name: str | None = None
    matrix: Dict[str, Any] = field(default_factory=dict)
    requires: list[str] = field(default_factory=list)

    @property
    def title(self) -> str:
        return self.display_name or self.name


@dataclass
class Concurrency:
    group: str = "${{ github.workflow }}-${{ github.ref }}"
    cancel_in_progress: bool = False
    # used only when cancel_in_progress is False: "queue" | "reject"
    policy: str = "queue"

    def __post_init__(self) -> None:
        if self.policy not in ("queue", "reject"):
            raise ValueError(f"Unknown concurrency policy: {self.policy!r} (expected 'queue' or 'reject')")


@dataclass
class Workflow:
    name: str
    jobs: list[Job]
    # event kind -> branch glob filter (None = any branch). Empty mapping = any event.
    on: Dict[str, Optional[List[str]]] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    concurrency: Concurrency | None = None


TRIGGER_EVENTS = ("push", "pull_request", "manual")


@dataclass(frozen=True)
class Trigger:
    event: str
    ref: str
    run_id: str
    sha: str = ""
    actor: str = ""
    head_ref: str = ""
    base_ref: str = ""
    inputs: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.event not in TRIGGER_EVENTS:
            raise ValueError(f"Unknown trigger event: {self.event!r} (expected one of {TRIGGER_EVENTS})")
        object.__setattr__(self, "ref", normalize_ref(self.ref))

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    def context(self, workflow: str) -> Dict[str, Any]:
        """The `github` expression context."""
        return {
            "workflow": workflow,
            "event_name": self.event,
            "ref": self.ref,
            "ref_name": self.ref_name,
            "run_id": self.run_id,
            "sha": self.sha,
            "actor": self.actor,
            "head_ref": self.head_ref,
            "base_ref": self.base_ref,
        }


def normalize_ref(ref: str) -> str:
    """'main' -> 'refs/heads/main'; fully qualified refs are kept."""
    ref = ref.strip()
    if not ref or ref.startswith("refs/"):
        return ref
    return f"refs/heads/{ref}"


@dataclass
class StepResult:
    name: str
    key: str
    outcome: StepOutcome
    # conclusion differs from outcome only for continue_on_error failures
    conclusion: StepOutcome
    outputs: Dict[str, str] = field(default_factory=dict)
    exit_code: int | None = None
    error: str = ""
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.key,
            "outcome": self.outcome.value,
            "conclusion": self.conclusion.value,
            "outputs": dict(self.outputs),
            "exit_code": self.exit_code,
            "error": self.error,
            "duration": round(self.duration, 3),
        }


@dataclass
class JobResult:
    name: str
    status: JobStatus
    outputs: Dict[str, str] = field(default_factory=dict)
    artifacts: list[str] = field(default_factory=list)
    steps: list[StepResult] = field(default_factory=list)
    skip_reason: SkipReason | None = None
    failed_step: str | None = None
    error: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        if self.status is JobStatus.SUCCEEDED:
            return True
        return self.status is JobStatus.SKIPPED and self.skip_reason is not None and self.skip_reason.by_design

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "outputs": dict(self.outputs),
            "artifacts": list(self.artifacts),
            "failed_step": self.failed_step,
            "error": self.error,
            "duration": round(self.duration, 3),
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class RunResult:
    run_id: str
    workflow: str
    status: RunStatus
    trigger: Trigger
    group: str = ""
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    # artifact name -> archive handle (empty when no archive is configured)
    artifacts: Dict[str, str] = field(default_factory=dict)
    cancel_reason: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "status": self.status.value,
            "group": self.group,
            "cancel_reason": self.cancel_reason,
            "trigger": {
                "event": self.trigger.event,
                "ref": self.trigger.ref,
                "sha": self.trigger.sha,
                "actor": self.trigger.actor,
            },
            "jobs": {name: r.to_dict() for name, r in self.jobs.items()},
            "artifacts": dict(self.artifacts),
        }
