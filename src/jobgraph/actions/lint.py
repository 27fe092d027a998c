# actions/lint.py
from __future__ import annotations

import shlex
from typing import List

from .base import InvocationResult, StepInvocation, check_tool_available, run_command


def build_lint_command(invocation: StepInvocation) -> List[str]:
    """
    tool: linter / static-analysis executable (e.g. "ruff", "eslint")
    args: extra arguments, shell-quoted
    files: comma-separated targets (default: the step's working directory)
    """
    tool = invocation.require("tool")
    cmd_parts = [tool]

    args = invocation.param("args")
    if args:
        # Split args string into list, handling quoted strings
        cmd_parts.extend(shlex.split(args))

    files = [f.strip() for f in (invocation.param("files") or "").split(",") if f.strip()]
    cmd_parts.extend(files or ["."])
    return cmd_parts


class LintInvoker:
    """Runs a lint/static-analysis tool; a non-zero exit means findings (step failure)."""

    def invoke(self, invocation: StepInvocation) -> InvocationResult:
        cmd_parts = build_lint_command(invocation)
        check_tool_available(cmd_parts[0], job=invocation.job, step=invocation.step.name)
        result = run_command(
            cmd_parts,
            cwd=invocation.cwd,
            env=invocation.env,
            job=invocation.job,
            step=invocation.step.name,
            timeout=invocation.timeout,
            cancel=invocation.cancel,
        )
        result.outputs = {"tool": cmd_parts[0]}
        return result
