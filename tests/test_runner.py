# tests/test_runner.py

import threading
import time

import pytest

from jobgraph.actions.base import InvocationResult
from jobgraph.concurrency import ConcurrencyController
from jobgraph.dsl import job, matrix, sh, uses, wf
from jobgraph.errors import ConcurrencyGroupBusyError, CycleError
from jobgraph.model import Concurrency, JobStatus, RunStatus, SkipReason, TERMINAL_STATUSES
from jobgraph.runner import PipelineScheduler, load_workflow, run_pipeline, workflow_triggered
from jobgraph.steps import default_registry


def _wait_for(marker):
    """Shell snippet: touch own marker, then wait for a sibling's marker (proves overlap)."""
    return (
        "touch {mine}; i=0; while [ ! -f {other} ]; do "
        "i=$((i+1)); [ $i -gt 100 ] && exit 7; sleep 0.05; done"
    ).format(**marker)


def _assert_needs_terminal_before_running(result, run, workflow):
    needs = {j.name: j.needs for j in workflow.jobs}
    seen_terminal = set()
    for name, status in run.trace:
        if status is JobStatus.RUNNING:
            assert set(needs[name]) <= seen_terminal, f"{name} started before its needs finished"
        if status in TERMINAL_STATUSES:
            seen_terminal.add(name)


def test_vtld_scenario_lint_fails(run_workflow):
    workflow = wf(
        job("V", sh("version", 'echo "version=1.0.0" >> "$JOBGRAPH_OUTPUT"', id="v"),
            outputs={"version": "${{ steps.v.outputs.version }}"}),
        job("T", sh("test", _wait_for({"mine": "t.started", "other": "l.started"})), needs=["V"]),
        job("L", sh("lint", _wait_for({"mine": "l.started", "other": "t.started"}) + "; exit 1"), needs=["V"]),
        job("D", sh("deploy", "touch deployed"), needs=["T", "L"]),
        name="vtld",
    )
    result, run = run_workflow(workflow)

    assert result.jobs["V"].status is JobStatus.SUCCEEDED
    assert result.jobs["V"].outputs == {"version": "1.0.0"}
    # T only succeeds if L was running at the same time
    assert result.jobs["T"].status is JobStatus.SUCCEEDED
    assert result.jobs["L"].status is JobStatus.FAILED
    assert result.jobs["D"].status is JobStatus.SKIPPED
    assert result.jobs["D"].skip_reason is SkipReason.UPSTREAM_FAILED
    assert ("D", JobStatus.RUNNING) not in run.trace
    assert result.status is RunStatus.FAILED
    _assert_needs_terminal_before_running(result, run, workflow)


def test_vtld_scenario_all_green(run_workflow):
    workflow = wf(
        job("V", sh("v", "true")),
        job("T", sh("t", "true"), needs=["V"]),
        job("L", sh("l", "true"), needs=["V"]),
        job("D", sh("d", "true"), needs=["T", "L"]),
    )
    result, run = run_workflow(workflow)
    assert result.status is RunStatus.SUCCEEDED
    assert all(r.status is JobStatus.SUCCEEDED for r in result.jobs.values())
    _assert_needs_terminal_before_running(result, run, workflow)


def test_trace_invariant_on_wide_graph(run_workflow):
    jobs = [job("root", sh("r", "true"))]
    for i in range(6):
        jobs.append(job(f"mid{i}", sh("m", "sleep 0.05"), needs=["root"]))
    jobs.append(job("fan-in", sh("f", "true"), needs=[f"mid{i}" for i in range(6)]))
    workflow = wf(*jobs)
    result, run = run_workflow(workflow)
    assert result.status is RunStatus.SUCCEEDED
    _assert_needs_terminal_before_running(result, run, workflow)
    statuses = [s for n, s in run.trace if n == "fan-in"]
    assert statuses == [JobStatus.READY, JobStatus.RUNNING, JobStatus.SUCCEEDED]


def test_branch_condition_skips_without_failing(run_workflow, make_trigger):
    workflow = wf(
        job("build", sh("b", "true")),
        job("publish", sh("p", "touch published"), needs=["build"],
            condition="github.ref == 'refs/heads/main'"),
        job("notify", sh("n", "true"), needs=["publish"]),
    )
    result, _ = run_workflow(workflow, make_trigger(ref="develop"))
    assert result.jobs["publish"].status is JobStatus.SKIPPED
    assert result.jobs["publish"].skip_reason is SkipReason.CONDITION
    assert result.jobs["notify"].skip_reason is SkipReason.UPSTREAM_SKIPPED
    assert result.status is RunStatus.SUCCEEDED


def test_branch_condition_runs_on_main(run_workflow, make_trigger, tmp_path):
    workflow = wf(job("publish", sh("p", "touch published"), condition="github.ref == 'refs/heads/main'"))
    result, _ = run_workflow(workflow, make_trigger(ref="main"))
    assert result.jobs["publish"].status is JobStatus.SUCCEEDED
    assert (tmp_path / "published").exists()


def test_independent_branch_continues_after_failure(run_workflow):
    workflow = wf(
        job("a", sh("boom", "exit 1")),
        job("a-child", sh("x", "true"), needs=["a"]),
        job("a-grandchild", sh("x", "true"), needs=["a-child"]),
        job("b", sh("ok", "sleep 0.1")),
        job("b-child", sh("ok", "true"), needs=["b"]),
    )
    result, _ = run_workflow(workflow)
    assert result.jobs["b"].status is JobStatus.SUCCEEDED
    assert result.jobs["b-child"].status is JobStatus.SUCCEEDED
    assert result.jobs["a-child"].skip_reason is SkipReason.UPSTREAM_FAILED
    # transitively skipped because of a failure, not by design
    assert result.jobs["a-grandchild"].skip_reason is SkipReason.UPSTREAM_FAILED
    assert result.status is RunStatus.FAILED


def test_status_functions_opt_out_of_skip_policy(run_workflow):
    workflow = wf(
        job("build", sh("boom", "exit 1")),
        job("cleanup", sh("c", "true"), needs=["build"], condition="always()"),
        job("report-failure", sh("r", "true"), needs=["build"], condition="failure()"),
        job("on-success", sh("s", "true"), needs=["build"], condition="success()"),
        job("needs-result", sh("n", "true"), needs=["build"],
            condition="always() && needs.build.result == 'failure'"),
    )
    result, _ = run_workflow(workflow)
    assert result.jobs["cleanup"].status is JobStatus.SUCCEEDED
    assert result.jobs["report-failure"].status is JobStatus.SUCCEEDED
    assert result.jobs["on-success"].status is JobStatus.SKIPPED
    assert result.jobs["on-success"].skip_reason is SkipReason.CONDITION
    assert result.jobs["needs-result"].status is JobStatus.SUCCEEDED
    assert result.status is RunStatus.FAILED


def test_needs_outputs_flow_into_dependents(run_workflow, tmp_path):
    workflow = wf(
        job("versioning", sh("v", 'echo "version=v2.3.4" >> "$JOBGRAPH_OUTPUT"', id="version"),
            outputs={"version": "${{ steps.version.outputs.version }}"}),
        job("image", sh("tag", 'echo "acme/app:$version" > tag.txt'), needs=["versioning"],
            env={"version": "${{ needs.versioning.outputs.version }}"}),
    )
    result, _ = run_workflow(workflow)
    assert result.status is RunStatus.SUCCEEDED
    assert (tmp_path / "tag.txt").read_text().strip() == "acme/app:v2.3.4"


def test_artifacts_pass_between_jobs(run_workflow, tmp_path):
    workflow = wf(
        job("backend", sh("publish", "mkdir -p publish && echo api > publish/api.txt"),
            uses("up", "actions/upload-artifact@v4", params={"name": "api", "path": "publish"})),
        job("frontend", sh("build", "mkdir -p dist && echo web > dist/index.html"),
            uses("up", "actions/upload-artifact@v4", params={"name": "web", "path": "dist"})),
        job("package", uses("down", "actions/download-artifact@v4", params={"path": "app"}),
            sh("check", "cat app/api/api.txt app/web/index.html > combined.txt"),
            needs=["backend", "frontend"]),
    )
    result, run = run_workflow(workflow)
    assert result.status is RunStatus.SUCCEEDED
    assert (tmp_path / "combined.txt").read_text().split() == ["api", "web"]
    # the run's store is torn down after reporting
    assert run.artifacts.names() == []


def test_same_artifact_name_from_two_jobs_fails_one(run_workflow, tmp_path):
    (tmp_path / "f.txt").write_text("x")
    workflow = wf(
        job("one", uses("up", "upload-artifact", params={"name": "bundle", "path": "f.txt"})),
        job("two", uses("up", "upload-artifact", params={"name": "bundle", "path": "f.txt"})),
    )
    result, _ = run_workflow(workflow)
    statuses = sorted(r.status.value for r in result.jobs.values())
    assert statuses == ["failed", "succeeded"]
    failed = next(r for r in result.jobs.values() if r.status is JobStatus.FAILED)
    assert "already exists" in failed.error


def test_failed_producer_artifacts_are_not_visible(run_workflow, tmp_path):
    workflow = wf(
        job("producer", sh("make", "echo x > out.txt"),
            uses("up", "upload-artifact", params={"name": "out", "path": "out.txt"}),
            sh("fail", "exit 1")),
        job("consumer", uses("down", "download-artifact", params={"name": "out", "path": "got"}),
            needs=["producer"], condition="always()"),
    )
    result, _ = run_workflow(workflow)
    assert result.jobs["consumer"].status is JobStatus.FAILED
    assert "not found" in result.jobs["consumer"].error


def test_matrix_context(run_workflow, tmp_path):
    workflow = wf(
        matrix("language", ["csharp", "javascript"]).jobs(
            lambda lang: job(f"scan-{lang}", sh("scan", "echo ${{ matrix.language }} > ${{ matrix.language }}.txt"))
        ),
    )
    result, _ = run_workflow(workflow)
    assert result.status is RunStatus.SUCCEEDED
    assert (tmp_path / "csharp.txt").read_text().strip() == "csharp"
    assert (tmp_path / "javascript.txt").read_text().strip() == "javascript"


def test_vars_and_secrets_context(run_workflow, settings, tmp_path):
    settings.vars = {"DOCKERHUB_REPOSITORY": "acme/todo"}
    settings.secrets = {"TOKEN": "s3cret"}
    workflow = wf(
        job("j", sh("x", 'echo "${{ vars.DOCKERHUB_REPOSITORY }}" > repo.txt; test "$T" = s3cret',
                    env={"T": "${{ secrets.TOKEN }}"})),
        env={"WF": "${{ github.ref_name }}"},
    )
    result, _ = run_workflow(workflow)
    assert result.status is RunStatus.SUCCEEDED
    assert (tmp_path / "repo.txt").read_text().strip() == "acme/todo"


def test_bad_job_condition_fails_job_and_skips_dependents(run_workflow):
    workflow = wf(
        job("a", sh("x", "true"), condition="github.ref =="),
        job("b", sh("x", "true"), needs=["a"]),
    )
    result, _ = run_workflow(workflow)
    assert result.jobs["a"].status is JobStatus.FAILED
    assert result.jobs["b"].skip_reason is SkipReason.UPSTREAM_FAILED


def test_invalid_json_in_condition_fails_only_that_job(run_workflow):
    workflow = wf(
        job("a", sh("x", "true")),
        job("b", sh("x", "true"), condition="fromJSON('not json')"),
        job("c", sh("x", "true"), needs=["b"]),
    )
    result, _ = run_workflow(workflow)
    assert result.jobs["a"].status is JobStatus.SUCCEEDED
    assert result.jobs["b"].status is JobStatus.FAILED
    assert "fromJSON" in result.jobs["b"].error
    assert result.jobs["c"].skip_reason is SkipReason.UPSTREAM_FAILED
    assert result.status is RunStatus.FAILED


def test_invalid_json_in_step_condition_fails_the_job(run_workflow):
    workflow = wf(job("a", sh("x", "true", condition="fromJSON('{')")), job("b", sh("y", "true")))
    result, _ = run_workflow(workflow)
    assert result.jobs["a"].status is JobStatus.FAILED
    assert result.jobs["a"].failed_step == "x"
    assert result.jobs["b"].status is JobStatus.SUCCEEDED


def test_cycle_rejected_before_execution(tmp_path, settings):
    workflow = wf(
        job("a", sh("x", "touch ran"), needs=["b"]),
        job("b", sh("x", "touch ran"), needs=["a"]),
    )
    with pytest.raises(CycleError):
        PipelineScheduler(workflow, settings=settings, workspace=tmp_path)
    assert not (tmp_path / "ran").exists()


def test_bounded_workers(run_workflow, settings, tmp_path):
    settings.max_workers = 2
    script = (
        "mkdir -p slots; touch slots/$$; n=$(ls slots | wc -l); "
        "echo $n >> counts.txt; sleep 0.2; rm slots/$$"
    )
    workflow = wf(*[job(f"j{i}", sh("x", script)) for i in range(6)])
    result, _ = run_workflow(workflow)
    assert result.status is RunStatus.SUCCEEDED
    counts = [int(c) for c in (tmp_path / "counts.txt").read_text().split()]
    assert max(counts) <= 2


def test_cancel_run_marks_every_non_terminal_job(run_workflow, settings, tmp_path, make_trigger):
    workflow = wf(
        job("quick", sh("q", "true")),
        job("long", sh("sleep", "sleep 20")),
        job("after-long", sh("x", "true"), needs=["long"]),
    )
    scheduler = PipelineScheduler(workflow, settings=settings, workspace=tmp_path)
    run = scheduler.create_run(make_trigger())
    out = {}
    t = threading.Thread(target=lambda: out.setdefault("result", scheduler.execute(run)))
    t.start()

    deadline = time.monotonic() + 10
    while run.status["long"] is not JobStatus.RUNNING and time.monotonic() < deadline:
        time.sleep(0.02)
    run.cancel("user request")
    t.join(10)

    result = out["result"]
    assert result.status is RunStatus.CANCELLED
    assert result.cancel_reason == "user request"
    assert result.jobs["long"].status is JobStatus.CANCELLED
    assert result.jobs["after-long"].status is JobStatus.CANCELLED
    assert result.jobs["quick"].status in (JobStatus.SUCCEEDED, JobStatus.CANCELLED)
    assert all(s.terminal for s in run.status.values())


class _Snapshot:
    """Invoker that records another run's job statuses at the moment it runs."""

    def __init__(self):
        self.target = None
        self.seen = None

    def invoke(self, invocation):
        self.seen = self.target.snapshot()
        return InvocationResult(exit_code=0)


def test_preemption_cancels_previous_run_before_new_jobs_start(settings, tmp_path, make_trigger):
    snapshot = _Snapshot()
    registry = default_registry()
    registry.register("snapshot", snapshot)
    workflow = wf(
        job("long", sh("sleep", "sleep 20"), condition="github.run_id == 'first'"),
        job("after", sh("x", "true"), needs=["long"]),
        job("observer", uses("observer", "snapshot"), condition="github.run_id == 'second'"),
        name="ci",
        concurrency=Concurrency(cancel_in_progress=True),
    )
    controller = ConcurrencyController()
    scheduler = PipelineScheduler(workflow, settings=settings, workspace=tmp_path,
                                  controller=controller, registry=registry)

    first = scheduler.create_run(make_trigger(ref="main", run_id="first"))
    second = scheduler.create_run(make_trigger(ref="main", run_id="second"))
    assert first.group == second.group == "ci-refs/heads/main"
    snapshot.target = first

    out = {}
    t1 = threading.Thread(target=lambda: out.setdefault("first", scheduler.execute(first)))
    t1.start()
    deadline = time.monotonic() + 10
    while first.status["long"] is not JobStatus.RUNNING and time.monotonic() < deadline:
        time.sleep(0.02)

    out["second"] = scheduler.execute(second)
    t1.join(10)

    assert out["first"].status is RunStatus.CANCELLED
    assert "superseded by run second" in out["first"].cancel_reason
    assert out["first"].jobs["long"].status is JobStatus.CANCELLED
    assert out["first"].jobs["after"].status is JobStatus.CANCELLED
    # every job of the superseded run was terminal when the new run's job ran
    assert snapshot.seen is not None
    assert all(status in ("succeeded", "failed", "skipped", "cancelled") for status in snapshot.seen.values())
    assert out["second"].jobs["observer"].status is JobStatus.SUCCEEDED
    assert out["second"].status is RunStatus.SUCCEEDED


def test_reject_policy(settings, tmp_path, make_trigger):
    workflow = wf(job("j", sh("x", "sleep 20")), name="ci", concurrency=Concurrency(policy="reject"))
    scheduler = PipelineScheduler(workflow, settings=settings, workspace=tmp_path)
    first = scheduler.create_run(make_trigger(run_id="first"))
    t = threading.Thread(target=scheduler.execute, args=(first,))
    t.start()
    deadline = time.monotonic() + 10
    while first.status["j"] is not JobStatus.RUNNING and time.monotonic() < deadline:
        time.sleep(0.02)
    try:
        with pytest.raises(ConcurrencyGroupBusyError):
            scheduler.run(make_trigger(run_id="second"))
    finally:
        first.cancel("test done")
        t.join(10)


def test_different_refs_do_not_share_a_group(settings, tmp_path, make_trigger):
    workflow = wf(job("j", sh("x", "true")), name="ci", concurrency=Concurrency(policy="reject"))
    scheduler = PipelineScheduler(workflow, settings=settings, workspace=tmp_path)
    a = scheduler.create_run(make_trigger(ref="main"))
    b = scheduler.create_run(make_trigger(ref="develop"))
    assert a.group != b.group


def test_run_result_serializes(run_workflow):
    result, _ = run_workflow(wf(job("a", sh("x", "true")), name="demo"))
    data = result.to_dict()
    assert data["workflow"] == "demo"
    assert data["status"] == "succeeded"
    assert data["jobs"]["a"]["status"] == "succeeded"
    assert data["jobs"]["a"]["steps"][0]["outcome"] == "success"


def test_run_pipeline_from_path(tmp_path, settings, make_trigger):
    path = tmp_path / "demo_workflow.py"
    path.write_text(
        "from jobgraph import wf, job, sh\n"
        "def workflow():\n"
        "    return wf(job('hello', sh('say', 'echo hi > hello.txt')), name='demo')\n"
    )
    result = run_pipeline(path, make_trigger(), settings=settings, workspace=tmp_path)
    assert result.status is RunStatus.SUCCEEDED
    assert (tmp_path / "hello.txt").read_text().strip() == "hi"


# ----------------------------------------------------------------------
# loading and trigger filters
# ----------------------------------------------------------------------

def test_load_workflow_constant(tmp_path):
    path = tmp_path / "const_workflow.py"
    path.write_text(
        "from jobgraph import wf, job, sh\n"
        "WORKFLOW = wf(job('a', sh('x', 'true')), name='constant')\n"
    )
    assert load_workflow(path).name == "constant"


def test_load_workflow_job_list_named_after_file(tmp_path):
    path = tmp_path / "listed_workflow.py"
    path.write_text("from jobgraph import job, sh\nJOBS = [job('a', sh('x', 'true'))]\n")
    loaded = load_workflow(path)
    assert loaded.name == "listed_workflow"
    assert [j.name for j in loaded.jobs] == ["a"]


def test_load_workflow_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "missing.py")
    (tmp_path / "wf.yml").write_text("jobs: {}")
    with pytest.raises(ValueError):
        load_workflow(tmp_path / "wf.yml")
    (tmp_path / "empty_workflow.py").write_text("X = 1\n")
    with pytest.raises(TypeError):
        load_workflow(tmp_path / "empty_workflow.py")


def test_workflow_triggered_filters(make_trigger):
    workflow = wf(job("a", sh("x", "true")), on={"push": ["main", "release/*"], "pull_request": ["main"]})
    assert workflow_triggered(workflow, make_trigger(ref="main"))
    assert workflow_triggered(workflow, make_trigger(ref="release/1.2"))
    assert not workflow_triggered(workflow, make_trigger(ref="develop"))
    assert not workflow_triggered(workflow, make_trigger(ref="main", event="manual"))
    assert workflow_triggered(workflow, make_trigger(ref="refs/pull/1/merge", event="pull_request", base_ref="main"))
    assert workflow_triggered(wf(job("a", sh("x", "true"))), make_trigger(ref="anything", event="manual"))
