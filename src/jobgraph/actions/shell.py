# actions/shell.py
from __future__ import annotations

import os
import tempfile
from pathlib import Path

from .base import InvocationResult, StepInvocation, parse_output_file, run_command

OUTPUT_ENV = "JOBGRAPH_OUTPUT"


class ShellInvoker:
    """
    Runs a step's `run` command through the shell.

    Outputs: the command writes `name=value` lines to the file named by
    $JOBGRAPH_OUTPUT, e.g. `echo "version=1.2.3" >> "$JOBGRAPH_OUTPUT"`.
    """

    def invoke(self, invocation: StepInvocation) -> InvocationResult:
        fd, out_path = tempfile.mkstemp(prefix="jobgraph-output-")
        os.close(fd)
        try:
            env = dict(invocation.env)
            env[OUTPUT_ENV] = out_path
            result = run_command(
                invocation.command or "",
                shell=True,
                cwd=invocation.cwd,
                env=env,
                job=invocation.job,
                step=invocation.step.name,
                timeout=invocation.timeout,
                cancel=invocation.cancel,
            )
            result.outputs = parse_output_file(Path(out_path))
            return result
        finally:
            Path(out_path).unlink(missing_ok=True)
