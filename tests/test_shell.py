# tests/test_shell.py

import os
import threading
import time

import pytest

from jobgraph.actions.base import ActionRegistry, StepInvocation, parse_output_file, run_command
from jobgraph.actions.shell import ShellInvoker
from jobgraph.artifacts import ArtifactStore, JobArtifacts
from jobgraph.concurrency import CancelToken
from jobgraph.errors import CIError, JobCancelledError, StepTimeoutError
from jobgraph.model import Step


def _invocation(tmp_path, command, **kw):
    step = Step(name="step", run=command)
    return StepInvocation(
        job="job",
        step=step,
        command=command,
        params={},
        cwd=tmp_path,
        workspace=tmp_path,
        env=dict(os.environ),
        cancel=kw.pop("cancel", CancelToken()),
        artifacts=JobArtifacts(ArtifactStore(), "job"),
        **kw,
    )


def test_run_command_captures_output(tmp_path):
    result = run_command("echo out; echo err >&2; exit 3", shell=True, cwd=tmp_path, env=os.environ,
                         job="j", step="s")
    assert result.exit_code == 3
    assert not result.ok
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"


def test_run_command_timeout(tmp_path):
    started = time.monotonic()
    with pytest.raises(StepTimeoutError) as exc:
        run_command("sleep 10", shell=True, cwd=tmp_path, env=os.environ, job="j", step="s", timeout=0.3)
    assert time.monotonic() - started < 5
    assert exc.value.timeout == 0.3
    assert "timed out" in str(exc.value)


def test_run_command_cancellation_kills_process_group(tmp_path):
    token = CancelToken()
    threading.Timer(0.3, token.cancel, args=("stop",)).start()
    started = time.monotonic()
    with pytest.raises(JobCancelledError) as exc:
        run_command("sleep 10 & sleep 10; wait", shell=True, cwd=tmp_path, env=os.environ,
                    job="j", step="s", cancel=token)
    assert time.monotonic() - started < 5
    assert exc.value.reason == "stop"


def test_run_command_missing_cwd(tmp_path):
    with pytest.raises(FileNotFoundError):
        run_command("true", shell=True, cwd=tmp_path / "nope", env=os.environ, job="j", step="s")


def test_run_command_feeds_stdin(tmp_path):
    result = run_command(["cat"], cwd=tmp_path, env=os.environ, job="j", step="s", input="secret-password")
    assert result.stdout == "secret-password"


def test_parse_output_file(tmp_path):
    f = tmp_path / "out"
    f.write_text("version=1.2.3\nempty=\nnotes<<EOF\nline 1\nline=2\nEOF\nurl=http://x?a=b\n")
    assert parse_output_file(f) == {
        "version": "1.2.3",
        "empty": "",
        "notes": "line 1\nline=2",
        "url": "http://x?a=b",
    }


def test_parse_output_file_missing(tmp_path):
    assert parse_output_file(tmp_path / "missing") == {}


def test_shell_invoker_collects_outputs(tmp_path):
    inv = _invocation(tmp_path, 'echo "version=2.0.0" >> "$JOBGRAPH_OUTPUT"; echo done')
    result = ShellInvoker().invoke(inv)
    assert result.ok
    assert result.outputs == {"version": "2.0.0"}
    assert result.stdout.strip() == "done"


def test_shell_invoker_runs_in_cwd(tmp_path):
    (tmp_path / "sub").mkdir()
    inv = _invocation(tmp_path, 'echo "dir=$(basename "$(pwd -P)")" >> "$JOBGRAPH_OUTPUT"')
    inv.cwd = tmp_path / "sub"
    assert ShellInvoker().invoke(inv).outputs == {"dir": "sub"}


def test_registry_normalizes_refs_and_rejects_unknown():
    invoker = ShellInvoker()
    registry = ActionRegistry({"upload-artifact": invoker})
    assert registry.resolve("actions/upload-artifact@v4") is invoker
    assert registry.resolve("Upload-Artifact") is invoker
    assert "upload-artifact" in registry
    with pytest.raises(CIError) as exc:
        registry.resolve("acme/unknown-action@v1", job="j", step="s")
    assert exc.value.kind == "unknown_action"
