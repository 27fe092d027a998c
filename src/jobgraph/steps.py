# steps.py
from __future__ import annotations

import time

from .actions.artifacts import DownloadArtifact, UploadArtifact
from .actions.base import ActionRegistry, StepInvocation, StepInvoker
from .actions.docker import DockerInvoker
from .actions.lint import LintInvoker
from .actions.shell import ShellInvoker
from .actions.version import Checkout, GitVersion
from .errors import CIError, StepFailure
from .model import StepOutcome, StepResult


def default_registry() -> ActionRegistry:
    """Built-in action adapters, addressable with or without owner/@version."""
    return ActionRegistry(
        {
            "checkout": Checkout(),
            "git-version": GitVersion(),
            "upload-artifact": UploadArtifact(),
            "download-artifact": DownloadArtifact(),
            "docker": DockerInvoker(),
            "lint": LintInvoker(),
        }
    )


def _error_text(exc: StepFailure) -> str:
    output = (exc.stderr or exc.stdout or "").strip()
    return f"{exc}\n{output}" if output else str(exc)


class StepRunner:
    """
    Executes one step through its invoker and turns the outcome into a StepResult.

    Contained here (step outcome = failure): non-zero exit, timeout, CIError
    (unknown action, missing tool, bad params), OS errors.
    Propagated to the JobExecutor: JobCancelledError and ArtifactError.
    """

    def __init__(self, registry: ActionRegistry | None = None, shell: StepInvoker | None = None):
        self.registry = registry if registry is not None else default_registry()
        self.shell = shell if shell is not None else ShellInvoker()

    def invoker_for(self, invocation: StepInvocation) -> StepInvoker:
        step = invocation.step
        if step.uses is None:
            return self.shell
        return self.registry.resolve(step.uses, job=invocation.job, step=step.name)

    def run(self, invocation: StepInvocation) -> StepResult:
        step = invocation.step
        started = time.monotonic()

        def failed(error: str, exit_code: int | None) -> StepResult:
            return StepResult(
                name=step.name,
                key=step.key,
                outcome=StepOutcome.FAILURE,
                conclusion=StepOutcome.SUCCESS if step.continue_on_error else StepOutcome.FAILURE,
                exit_code=exit_code,
                error=error,
                duration=time.monotonic() - started,
            )

        try:
            result = self.invoker_for(invocation).invoke(invocation)
            if not result.ok:
                raise StepFailure(
                    job=invocation.job,
                    step=step.name,
                    cmd=invocation.command or step.uses or "",
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
        except StepFailure as e:
            return failed(_error_text(e), e.exit_code)
        except CIError as e:
            return failed(str(e), None)
        except OSError as e:
            return failed(f"[{invocation.job}] step '{step.name}': {e}", None)

        return StepResult(
            name=step.name,
            key=step.key,
            outcome=StepOutcome.SUCCESS,
            conclusion=StepOutcome.SUCCESS,
            outputs=dict(result.outputs),
            exit_code=result.exit_code,
            duration=time.monotonic() - started,
        )
