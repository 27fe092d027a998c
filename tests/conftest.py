# tests/conftest.py
"""
Shared fixtures: quiet console, small deterministic settings, a trigger
factory and a helper that runs a workflow inside a temporary workspace.
"""
from __future__ import annotations

import itertools

import pytest

from jobgraph.model import Trigger, Workflow
from jobgraph.runner import PipelineScheduler
from jobgraph.settings import Settings
from jobgraph.ui.console import Console, set_console

_ids = itertools.count(1)


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    return console


@pytest.fixture
def settings() -> Settings:
    return Settings(max_workers=4, step_timeout=30.0)


@pytest.fixture
def make_trigger():
    def factory(ref: str = "main", event: str = "push", **kw) -> Trigger:
        kw.setdefault("run_id", f"run-{next(_ids)}")
        return Trigger(event=event, ref=ref, **kw)

    return factory


@pytest.fixture
def run_workflow(tmp_path, settings, make_trigger):
    """Run a Workflow (or a list of jobs) to completion in tmp_path."""

    def runner(workflow, trigger: Trigger | None = None, **kw):
        if isinstance(workflow, list):
            workflow = Workflow(name="test", jobs=workflow)
        kw.setdefault("settings", settings)
        kw.setdefault("workspace", tmp_path)
        scheduler = PipelineScheduler(workflow, **kw)
        run = scheduler.create_run(trigger or make_trigger())
        result = scheduler.execute(run)
        return result, run

    return runner
