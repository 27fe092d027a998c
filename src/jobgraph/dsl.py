# src/jobgraph/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .model import Concurrency, Job, Step, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    condition: str | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        cwd=cwd,
        env=env or {},
        condition=condition,
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def uses(
    name: str,
    action: str,
    *,
    id: str | None = None,
    params: Optional[Dict[str, Any]] = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    condition: str | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> Step:
    """
    Create an action step, e.g.
        uses("Upload", "actions/upload-artifact@v4", params={"name": "dist", "path": "dist"})
    """
    return Step(
        name=name,
        uses=action,
        id=id,
        params={k: str(v) for k, v in (params or {}).items()},
        cwd=cwd,
        env=env or {},
        condition=condition,
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    condition: str | None = None,
    outputs: Optional[Dict[str, str]] = None,
    env: Optional[Dict[str, str]] = None,
    runs_on: str = "local",
    cwd: str | None = None,
    display_name: str | None = None,
    matrix: Optional[Dict[str, Any]] = None,
    requires: Optional[List[str]] = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        condition=condition,
        outputs=dict(outputs or {}),
        env=dict(env or {}),
        runs_on=runs_on,
        cwd=cwd,
        display_name=display_name,
        matrix=dict(matrix or {}),
        requires=list(requires or []),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._requires: list[str] = []
        self._condition: str | None = None
        self._runs_on: str = "local"
        self._cwd: str | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_requirements(self, *tools: str):
        self._requires.extend(tools)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs: Any):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, name: str, action: str, **kwargs: Any):
        self._steps.append(uses(name, action, **kwargs))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_outputs(self, **outputs: str):
        self._outputs.update(outputs)
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def in_dir(self, cwd: str):
        self._cwd = cwd
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=list(self._steps),
            needs=list(self._needs),
            condition=self._condition,
            outputs=dict(self._outputs),
            env=dict(self._env),
            runs_on=self._runs_on,
            cwd=self._cwd,
            requires=list(self._requires),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Matrix expander: one independent job per combination.

    Example:
        matrix("language", ["csharp", "javascript"]).jobs(
            lambda v: job(f"analyze-{v}", sh("scan", "codeql analyze --language ${{ matrix.language }}"))
        )

    Rows from `include` are appended as-is (each a full mapping). The
    builder receives the row value for single-key matrices and the full
    mapping otherwise; every produced job gets `matrix` set to its row.
    """
    def __init__(self, key: str | None = None, values: Iterable[Any] = (), include: Iterable[Mapping[str, Any]] = ()):
        self.key = key
        self.values = list(values)
        self.include = [dict(row) for row in include]

    def rows(self) -> List[Dict[str, Any]]:
        rows = [{self.key: v} for v in self.values] if self.key else []
        rows.extend(self.include)
        return rows

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        out: List[Job] = []
        for row in self.rows():
            arg = row[self.key] if self.key and set(row) == {self.key} else row
            out.append(replace(builder(arg), matrix=dict(row)))
        names = [j.name for j in out]
        if len(set(names)) != len(names):
            raise ValueError(f"Matrix expansion produced duplicate job names: {names}")
        return out


def matrix(key: str | None = None, values: Iterable[Any] = (), include: Iterable[Mapping[str, Any]] = ()) -> Matrix:
    return Matrix(key, values, include)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Job | List[Job],
    name: str = "workflow",
    on: Optional[Dict[str, Optional[List[str]]]] = None,
    env: Optional[Dict[str, str]] = None,
    concurrency: Concurrency | None = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from jobgraph import wf, job, sh

        def workflow():
            return wf(
                job(...),
                *matrix("py", ["3.11", "3.12"]).jobs(...),
                name="build",
                on={"push": ["main"], "pull_request": ["main"]},
            )

    Job lists (e.g. an unpacked-or-not matrix expansion) are flattened.
    """
    flat: List[Job] = []
    for item in jobs:
        if isinstance(item, list):
            flat.extend(item)
        else:
            flat.append(item)
    return Workflow(name=name, jobs=flat, on=dict(on or {}), env=dict(env or {}), concurrency=concurrency)


workflow = wf  # alias (avoid naming your function workflow if you use it)
