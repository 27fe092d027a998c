# runner.py
from __future__ import annotations

import runpy
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Protocol, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError

from .actions.base import ActionRegistry
from .artifacts import ArtifactStore
from .concurrency import CancelToken, ConcurrencyController
from .dag import DependencyResolver
from .errors import ExpressionError, RunCancelledError
from .executor import JobExecutor
from .expressions import evaluate_condition, interpolate, interpolate_mapping, uses_status_function
from .model import (
    Job,
    JobResult,
    JobStatus,
    RunResult,
    RunStatus,
    SkipReason,
    Trigger,
    Workflow,
)
from .settings import Settings
from .steps import StepRunner
from .ui.console import Console, get_console

POLL_INTERVAL = 0.05

# JobStatus -> value of needs.<job>.result in expressions
NEEDS_RESULT = {
    JobStatus.SUCCEEDED: "success",
    JobStatus.FAILED: "failure",
    JobStatus.SKIPPED: "skipped",
    JobStatus.CANCELLED: "cancelled",
}


class ArtifactRetention(Protocol):
    """Durable storage for a run's artifacts and report beyond the run's lifetime."""

    def store(self, run_id: str, name: str, blob: bytes) -> str: ...

    def save_report(self, result: RunResult) -> None: ...


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define one of:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...)
      - JOBS = [Job, ...]

    A bare job list becomes a Workflow named after the file.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"jobgraph_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            loaded = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from jobgraph import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        loaded = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, Workflow):
        return loaded
    if isinstance(loaded, list) and all(isinstance(j, Job) for j in loaded):
        return Workflow(name=wf_path.stem, jobs=loaded)
    raise TypeError(
        "Workflow file must return/define a Workflow or a List[Job]. "
        "Define workflow() -> Workflow, WORKFLOW = wf(...) or JOBS = [Job, ...]."
    )


def workflow_triggered(workflow: Workflow, trigger: Trigger) -> bool:
    """Apply the workflow's `on` filter (event kind + branch globs) to a trigger."""
    if not workflow.on:
        return True
    if trigger.event not in workflow.on:
        return False
    patterns = workflow.on[trigger.event]
    if not patterns:
        return True
    branch = trigger.ref_name
    if trigger.event == "pull_request" and trigger.base_ref:
        branch = Trigger(event="manual", ref=trigger.base_ref, run_id="-").ref_name
    return any(fnmatch(branch, p) for p in patterns)


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------

class Run:
    """One execution of a workflow: per-job status, artifacts, cancel token and trace."""

    def __init__(self, workflow: Workflow, trigger: Trigger, settings: Settings):
        self.workflow = workflow
        self.trigger = trigger
        self.run_id = trigger.run_id
        self.cancel_token = CancelToken()
        self.artifacts = ArtifactStore(allow_overwrite=settings.allow_artifact_overwrite)
        self.status: Dict[str, JobStatus] = {j.name: JobStatus.PENDING for j in workflow.jobs}
        self.results: Dict[str, JobResult] = {}
        self.trace: List[Tuple[str, JobStatus]] = []
        self.done = threading.Event()
        self._lock = threading.Lock()

        base_ctx = {
            "github": trigger.context(workflow.name),
            "vars": dict(settings.vars),
            "secrets": dict(settings.secrets),
            "inputs": dict(trigger.inputs),
        }
        self.base_context: Dict[str, Any] = {**base_ctx, "env": interpolate_mapping(workflow.env, base_ctx)}
        self.group = interpolate(workflow.concurrency.group, self.base_context) if workflow.concurrency else ""

    def cancel(self, reason: str = "cancelled by request") -> bool:
        return self.cancel_token.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_set()

    def set_status(self, name: str, status: JobStatus) -> None:
        with self._lock:
            self.status[name] = status
            self.trace.append((name, status))

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return {name: s.value for name, s in self.status.items()}

    def result(self) -> RunResult:
        with self._lock:
            results = {
                j.name: self.results.get(j.name) or JobResult(name=j.name, status=self.status[j.name])
                for j in self.workflow.jobs
            }
        if self.cancelled and any(r.status is JobStatus.CANCELLED for r in results.values()):
            status = RunStatus.CANCELLED
        elif all(r.ok for r in results.values()):
            status = RunStatus.SUCCEEDED
        else:
            status = RunStatus.FAILED
        return RunResult(
            run_id=self.run_id,
            workflow=self.workflow.name,
            status=status,
            trigger=self.trigger,
            group=self.group,
            jobs=results,
            cancel_reason=self.cancel_token.reason if status is RunStatus.CANCELLED else None,
        )


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class PipelineScheduler:
    """
    Event-driven dispatcher: jobs whose needs are all terminal are evaluated
    (condition / dependency policy) and dispatched to a bounded worker pool;
    each completion unblocks dependents. Independent branches keep running
    after a failure; only dependents are skipped.
    """

    def __init__(
        self,
        workflow: Workflow,
        *,
        settings: Settings | None = None,
        registry: ActionRegistry | None = None,
        workspace: str | Path = ".",
        controller: ConcurrencyController | None = None,
        archive: Optional[ArtifactRetention] = None,
        console: Console | None = None,
    ):
        self.workflow = workflow
        self.settings = settings or Settings()
        # raises CIError / CycleError before any run exists
        self.resolver = DependencyResolver(workflow.jobs)
        self.step_runner = StepRunner(registry)
        self.workspace = Path(workspace).resolve()
        self.controller = controller or ConcurrencyController()
        self.archive = archive
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def create_run(self, trigger: Trigger) -> Run:
        return Run(self.workflow, trigger, self.settings)

    def run(self, trigger: Trigger) -> RunResult:
        return self.execute(self.create_run(trigger))

    def execute(self, run: Run) -> RunResult:
        concurrency = self.workflow.concurrency
        self.console.print_run_started(
            workflow=self.workflow.name,
            run_id=run.run_id,
            ref=run.trigger.ref,
            event=run.trigger.event,
            job_count=len(self.workflow.jobs),
        )
        try:
            try:
                if concurrency is not None:
                    self.controller.acquire(
                        run,
                        cancel_in_progress=concurrency.cancel_in_progress,
                        policy=concurrency.policy,
                    )
            except RunCancelledError:
                self._cancel_remaining(run)
            else:
                try:
                    self._dispatch(run)
                finally:
                    if concurrency is not None:
                        self.controller.release(run)

            if run.cancelled:
                self.console.print_run_cancelled(run.run_id, run.cancel_token.reason or "cancelled")
            result = run.result()
            self._retain(run, result)
            return result
        finally:
            run.artifacts.clear()
            run.done.set()

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _context(self, run: Run, job: Job) -> Dict[str, Any]:
        needs = {}
        for name in self.resolver.needs(job.name):
            r = run.results[name]
            needs[name] = {"result": NEEDS_RESULT[r.status], "outputs": dict(r.outputs)}
        return {**run.base_context, "needs": needs, "matrix": dict(job.matrix)}

    def _decide(self, run: Run, job: Job, ctx: Dict[str, Any]) -> Optional[SkipReason]:
        """None = run the job, otherwise why it is skipped."""
        needs = [run.results[n] for n in self.resolver.needs(job.name)]
        all_ok = all(r.status is JobStatus.SUCCEEDED for r in needs)
        upstream_failed = any(
            r.status in (JobStatus.FAILED, JobStatus.CANCELLED) or r.skip_reason is SkipReason.UPSTREAM_FAILED
            for r in needs
        )
        cond = job.condition

        # a status function in the condition replaces the implicit success() check
        if cond is not None and uses_status_function(cond):
            functions = {
                "success": lambda: all_ok and not run.cancelled,
                "failure": lambda: upstream_failed,
                "always": lambda: True,
                "cancelled": lambda: run.cancelled,
            }
            return None if evaluate_condition(cond, ctx, functions) else SkipReason.CONDITION

        if not all_ok:
            return SkipReason.UPSTREAM_FAILED if upstream_failed else SkipReason.UPSTREAM_SKIPPED
        if cond is None or evaluate_condition(cond, ctx):
            return None
        return SkipReason.CONDITION

    def _finish(self, run: Run, result: JobResult) -> None:
        run.results[result.name] = result
        run.set_status(result.name, result.status)
        if result.status is JobStatus.SKIPPED:
            self.console.print_job_skipped(result.name, result.skip_reason.value if result.skip_reason else "")
        else:
            self.console.print_job_finished(result)

    def _promote(self, run: Run, name: str, remaining: Dict[str, int], ready: Deque[str]) -> None:
        for dependent in self.resolver.dependents(name):
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                run.set_status(dependent, JobStatus.READY)
                ready.append(dependent)

    def _cancel_remaining(self, run: Run) -> None:
        for job in self.workflow.jobs:
            if not run.status[job.name].terminal:
                self._finish(run, JobResult(name=job.name, status=JobStatus.CANCELLED, error=run.cancel_token.reason or ""))

    def _execute_job(self, run: Run, job: Job, ctx: Dict[str, Any]) -> JobResult:
        self.console.print_job_start(job.title)
        executor = JobExecutor(
            self.step_runner,
            run.artifacts,
            workspace=self.workspace,
            cancel=run.cancel_token,
            settings=self.settings,
            console=self.console,
        )
        return executor.execute(job, ctx)

    def _dispatch(self, run: Run) -> None:
        jobs = self.resolver.jobs
        remaining = {name: len(self.resolver.needs(name)) for name in jobs}
        ready: Deque[str] = deque()
        for name in self.resolver.roots():
            run.set_status(name, JobStatus.READY)
            ready.append(name)

        in_flight: Dict[Future, str] = {}
        max_workers = max(1, self.settings.max_workers)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"run-{run.run_id}") as pool:
            while ready or in_flight:
                if run.cancelled:
                    # nothing new starts; in-flight executors observe the token
                    ready.clear()

                while ready and len(in_flight) < max_workers:
                    name = ready.popleft()
                    job = jobs[name]
                    ctx = self._context(run, job)
                    try:
                        skip = self._decide(run, job, ctx)
                    except ExpressionError as e:
                        self._finish(run, JobResult(name=name, status=JobStatus.FAILED, error=str(e)))
                        self._promote(run, name, remaining, ready)
                        continue

                    if skip is not None:
                        self._finish(run, JobResult(name=name, status=JobStatus.SKIPPED, skip_reason=skip))
                        self._promote(run, name, remaining, ready)
                        continue

                    run.set_status(name, JobStatus.RUNNING)
                    in_flight[pool.submit(self._execute_job, run, job, ctx)] = name

                if not in_flight:
                    continue

                done, _ = wait(list(in_flight), timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    try:
                        result = fut.result()
                    except Exception as e:
                        # unexpected error inside the executor: contained at the job boundary
                        run.artifacts.discard(name)
                        result = JobResult(name=name, status=JobStatus.FAILED, error=f"{type(e).__name__}: {e}")
                    self._finish(run, result)
                    self._promote(run, name, remaining, ready)

        self._cancel_remaining(run)

    def _retain(self, run: Run, result: RunResult) -> None:
        if self.archive is None:
            return
        try:
            for artifact in run.artifacts.items():
                result.artifacts[artifact.name] = self.archive.store(run.run_id, artifact.name, artifact.blob)
            self.archive.save_report(result)
        except SQLAlchemyError as e:
            # the result is returned even when archiving fails
            self.console.print_error(
                "Could not archive run",
                f"Run {run.run_id}: {e}",
                suggestion="Artifacts from this run are not retrievable after it ends.",
            )


def run_pipeline(
    workflow: Union[Workflow, str, Path],
    trigger: Trigger,
    *,
    settings: Settings | None = None,
    registry: ActionRegistry | None = None,
    workspace: str | Path = ".",
    controller: ConcurrencyController | None = None,
    archive: Optional[ArtifactRetention] = None,
) -> RunResult:
    """Load (if given a path), validate and execute a workflow for one trigger."""
    if not isinstance(workflow, Workflow):
        workflow = load_workflow(workflow)
    settings = settings or Settings.from_env()
    if archive is None and settings.database_url:
        from .persistence.archive import ArtifactArchive

        archive = ArtifactArchive(settings.database_url)
    scheduler = PipelineScheduler(
        workflow,
        settings=settings,
        registry=registry,
        workspace=workspace,
        controller=controller,
        archive=archive,
    )
    return scheduler.run(trigger)
