# executor.py
from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .actions.base import StepInvocation, check_tool_available
from .artifacts import ArtifactStore, JobArtifacts
from .concurrency import CancelToken
from .errors import ArtifactError, CIError, ExpressionError, JobCancelledError
from .expressions import evaluate_condition, interpolate, interpolate_mapping
from .model import Job, JobResult, JobStatus, Step, StepOutcome, StepResult
from .settings import Settings
from .steps import StepRunner
from .ui.console import Console, get_console


def mask_secrets(text: str, secrets: Iterable[str]) -> str:
    for value in sorted((s for s in secrets if s), key=len, reverse=True):
        text = text.replace(value, "***")
    return text


class JobExecutor:
    """
    Runs the steps of one ready job, in declared order, on the calling thread.

    All cross-job communication goes through the `needs` context passed in
    and the shared ArtifactStore; the executor never touches another job's
    state.
    """

    def __init__(
        self,
        runner: StepRunner,
        artifacts: ArtifactStore,
        *,
        workspace: Path,
        cancel: CancelToken,
        settings: Settings | None = None,
        console: Console | None = None,
    ):
        self.runner = runner
        self.artifacts = artifacts
        self.workspace = Path(workspace)
        self.cancel = cancel
        self.settings = settings or Settings()
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _preflight(self, job: Job) -> None:
        labels = self.settings.runner_labels
        if labels and job.runs_on not in labels:
            raise CIError(
                kind="no_runner",
                job=job.name,
                step=None,
                message=f"No runner matches runs_on '{job.runs_on}'",
                details={"available": ", ".join(labels)},
            )
        for tool in job.requires:
            check_tool_available(tool, job=job.name)

    def _status_functions(self) -> Dict[str, Any]:
        # steps only run while no earlier step has failed the job
        return {
            "success": lambda: not self.cancel.is_set(),
            "failure": lambda: False,
            "always": lambda: True,
            "cancelled": lambda: self.cancel.is_set(),
        }

    def _invocation(self, job: Job, step: Step, ctx: Mapping[str, Any], declared_env: Dict[str, str]) -> StepInvocation:
        command = interpolate(step.run, ctx) if step.run is not None else None
        params = interpolate_mapping(step.params, ctx)
        cwd = (self.workspace / (step.cwd or job.cwd or ".")).resolve()
        env = os.environ.copy()
        env.update(declared_env)
        return StepInvocation(
            job=job.name,
            step=step,
            command=command,
            params=params,
            cwd=cwd,
            workspace=self.workspace,
            env=env,
            cancel=self.cancel,
            artifacts=JobArtifacts(self.artifacts, job.name),
            timeout=step.timeout if step.timeout is not None else self.settings.step_timeout,
            github=dict(ctx.get("github") or {}),
            declared_env=dict(declared_env),
        )

    @staticmethod
    def _record(steps_ctx: Dict[str, Any], result: StepResult) -> None:
        steps_ctx[result.key] = {
            "outputs": dict(result.outputs),
            "outcome": result.outcome.value,
            "conclusion": result.conclusion.value,
        }

    @staticmethod
    def _not_run(steps: List[Step], outcome: StepOutcome) -> List[StepResult]:
        return [StepResult(name=s.name, key=s.key, outcome=outcome, conclusion=outcome) for s in steps]

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    def execute(self, job: Job, context: Mapping[str, Any]) -> JobResult:
        """
        Run `job` against its job-level expression context (github, env,
        vars, secrets, needs, matrix, inputs). Never raises for step
        failures or cancellation: those become the JobResult status.
        """
        started = time.monotonic()
        secrets = list((context.get("secrets") or {}).values())
        result = JobResult(name=job.name, status=JobStatus.RUNNING)
        # index of the step in flight; everything from here on is reported on cancel
        current: Optional[int] = None

        def finish(status: JobStatus, error: str = "") -> JobResult:
            result.status = status
            result.error = mask_secrets(error, secrets)
            result.duration = time.monotonic() - started
            if status is JobStatus.SUCCEEDED:
                result.artifacts = self.artifacts.commit(job.name)
            else:
                result.outputs = {}
                self.artifacts.discard(job.name)
            return result

        try:
            if self.cancel.is_set():
                raise JobCancelledError(self.cancel.reason or "cancelled")
            self._preflight(job)

            ctx: Dict[str, Any] = dict(context)
            job_env = {**(context.get("env") or {}), **interpolate_mapping(job.env, ctx)}
            steps_ctx: Dict[str, Any] = {}
            ctx.update(env=job_env, steps=steps_ctx, job={"status": "success", "name": job.name})

            for idx, step in enumerate(job.steps):
                if self.cancel.is_set():
                    result.steps.extend(self._not_run(job.steps[idx:], StepOutcome.CANCELLED))
                    current = None
                    raise JobCancelledError(self.cancel.reason or "cancelled")
                current = idx

                try:
                    step_env = {**job_env, **interpolate_mapping(step.env, ctx)}
                    step_ctx = {**ctx, "env": step_env}
                    run_it = step.condition is None or evaluate_condition(
                        step.condition, step_ctx, self._status_functions()
                    )
                    invocation = self._invocation(job, step, step_ctx, step_env) if run_it else None
                except ExpressionError as e:
                    step_result = StepResult(
                        name=step.name, key=step.key,
                        outcome=StepOutcome.FAILURE, conclusion=StepOutcome.FAILURE,
                        error=str(e),
                    )
                else:
                    if invocation is None:
                        self.console.print_step_skipped(job.name, step.name)
                        step_result = self._not_run([step], StepOutcome.SKIPPED)[0]
                    else:
                        self.console.print_step(job.name, step.name)
                        step_result = self.runner.run(invocation)

                step_result.error = mask_secrets(step_result.error, secrets)
                result.steps.append(step_result)
                self._record(steps_ctx, step_result)

                if step_result.conclusion is StepOutcome.FAILURE:
                    result.failed_step = step.name
                    result.steps.extend(self._not_run(job.steps[idx + 1:], StepOutcome.SKIPPED))
                    return finish(JobStatus.FAILED, step_result.error)

            current = None
            try:
                result.outputs = interpolate_mapping(job.outputs, ctx)
            except ExpressionError as e:
                return finish(JobStatus.FAILED, str(e))
            return finish(JobStatus.SUCCEEDED)

        except JobCancelledError as e:
            if current is not None:
                result.steps.extend(self._not_run(job.steps[current:], StepOutcome.CANCELLED))
            return finish(JobStatus.CANCELLED, e.reason)
        except ArtifactError as e:
            # artifact contract violations are fatal to the job, even with continue_on_error
            if current is not None:
                step = job.steps[current]
                result.failed_step = step.name
                result.steps.append(
                    StepResult(
                        name=step.name, key=step.key,
                        outcome=StepOutcome.FAILURE, conclusion=StepOutcome.FAILURE,
                        error=str(e),
                    )
                )
                result.steps.extend(self._not_run(job.steps[current + 1:], StepOutcome.SKIPPED))
            return finish(JobStatus.FAILED, str(e))
        except CIError as e:
            return finish(JobStatus.FAILED, str(e))
        except ExpressionError as e:
            # job-level env
            return finish(JobStatus.FAILED, str(e))
