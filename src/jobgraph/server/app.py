from __future__ import annotations

import threading
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Response
from pydantic import BaseModel, Field

from ..actions.base import ActionRegistry
from ..concurrency import ConcurrencyController
from ..errors import ArtifactNotFoundError, ConcurrencyGroupBusyError
from ..model import RunResult, Trigger, Workflow
from ..persistence.archive import ArtifactArchive
from ..runner import PipelineScheduler, Run, workflow_triggered
from ..settings import Settings

# -------------------- Schemas --------------------

class CreateRunRequest(BaseModel):
    event: str = "push"
    ref: str
    run_id: Optional[str] = None
    sha: str = ""
    actor: str = ""
    head_ref: str = ""
    base_ref: str = ""
    inputs: dict[str, str] = Field(default_factory=dict)


class RunSummary(BaseModel):
    run_id: str
    workflow: str
    status: str  # running|succeeded|failed|cancelled|rejected|error
    group: str
    jobs: dict[str, str]
    error: Optional[str] = None


class RunDetail(RunSummary):
    report: Optional[dict[str, Any]] = None


class RunListing(BaseModel):
    run_id: str
    workflow: str
    status: str
    ref: str


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool


# -------------------- Run service --------------------

def _status(result: Optional[RunResult], error: Optional[str]) -> str:
    if result is not None:
        return result.status.value
    if error is not None:
        return error.split(":", 1)[0]
    return "running"


class RunService:
    """
    Starts runs on background threads and keeps their live state for the API.

    Only the newest `max_retained` finished runs stay in memory; older ones
    are dropped and, when an archive is configured, served from it.
    """

    def __init__(self, scheduler: PipelineScheduler, max_retained: int = 100):
        self.scheduler = scheduler
        self.max_retained = max(1, max_retained)
        self._runs: Dict[str, Run] = {}
        self._results: Dict[str, RunResult] = {}
        self._errors: Dict[str, str] = {}
        self._finished: Dict[str, threading.Event] = {}
        self._done_order: Deque[str] = deque()
        self._lock = threading.Lock()

    def start(self, trigger: Trigger) -> Run:
        with self._lock:
            if trigger.run_id in self._runs:
                raise KeyError(trigger.run_id)
            run = self.scheduler.create_run(trigger)
            self._runs[run.run_id] = run
            self._finished[run.run_id] = threading.Event()
        threading.Thread(target=self._execute, args=(run,), name=f"run-{run.run_id}", daemon=True).start()
        return run

    def _execute(self, run: Run) -> None:
        try:
            result = self.scheduler.execute(run)
        except ConcurrencyGroupBusyError as e:
            with self._lock:
                self._errors[run.run_id] = f"rejected: {e}"
        except Exception as e:
            with self._lock:
                self._errors[run.run_id] = f"error: {type(e).__name__}: {e}"
        else:
            with self._lock:
                self._results[run.run_id] = result
        finally:
            with self._lock:
                finished = self._finished[run.run_id]
            self._evict(run.run_id)
            finished.set()

    def _evict(self, run_id: str) -> None:
        with self._lock:
            self._done_order.append(run_id)
            while len(self._done_order) > self.max_retained:
                old = self._done_order.popleft()
                for table in (self._runs, self._results, self._errors, self._finished):
                    table.pop(old, None)

    def get(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def result(self, run_id: str) -> Optional[RunResult]:
        with self._lock:
            return self._results.get(run_id)

    def error(self, run_id: str) -> Optional[str]:
        with self._lock:
            return self._errors.get(run_id)

    def wait(self, run_id: str, timeout: float | None = None) -> bool:
        """False only if the run is still going after `timeout`; unknown or evicted runs count as finished."""
        with self._lock:
            finished = self._finished.get(run_id)
        return finished is None or finished.wait(timeout)

    def listing(self) -> List[RunListing]:
        """Runs held in memory, newest first."""
        with self._lock:
            return [
                RunListing(
                    run_id=run.run_id,
                    workflow=run.workflow.name,
                    status=_status(self._results.get(run.run_id), self._errors.get(run.run_id)),
                    ref=run.trigger.ref,
                )
                for run in reversed(list(self._runs.values()))
            ]

    def summary(self, run: Run) -> RunDetail:
        result = self.result(run.run_id)
        error = self.error(run.run_id)
        return RunDetail(
            run_id=run.run_id,
            workflow=run.workflow.name,
            status=_status(result, error),
            group=run.group,
            jobs=run.snapshot(),
            error=error,
            report=result.to_dict() if result is not None else None,
        )


# -------------------- App --------------------

def create_app(
    workflow: Workflow,
    *,
    settings: Settings | None = None,
    registry: ActionRegistry | None = None,
    controller: ConcurrencyController | None = None,
    archive: ArtifactArchive | None = None,
    workspace: str | Path = ".",
) -> FastAPI:
    settings = settings or Settings.from_env()
    if archive is None and settings.database_url:
        archive = ArtifactArchive(settings.database_url)

    scheduler = PipelineScheduler(
        workflow,
        settings=settings,
        registry=registry,
        workspace=workspace,
        controller=controller,
        archive=archive,
    )
    service = RunService(scheduler, max_retained=settings.retained_runs)

    app = FastAPI(title="jobgraph run API")
    app.state.runs = service
    app.state.archive = archive

    @app.post("/runs", response_model=RunSummary, status_code=202)
    def create_run(req: CreateRunRequest):
        try:
            trigger = Trigger(
                event=req.event,
                ref=req.ref,
                run_id=req.run_id or uuid.uuid4().hex,
                sha=req.sha,
                actor=req.actor,
                head_ref=req.head_ref,
                base_ref=req.base_ref,
                inputs=dict(req.inputs),
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if not workflow_triggered(workflow, trigger):
            raise HTTPException(
                status_code=422,
                detail=f"Workflow '{workflow.name}' is not triggered by {trigger.event} on {trigger.ref}",
            )
        try:
            run = service.start(trigger)
        except KeyError:
            raise HTTPException(status_code=409, detail=f"Run {trigger.run_id} already exists")
        return RunSummary(**service.summary(run).model_dump(exclude={"report"}))

    @app.get("/runs", response_model=List[RunListing])
    def list_runs(limit: int = Query(20, ge=1, le=500)):
        listed = {r.run_id: r for r in service.listing()}
        if archive is not None:
            for row in archive.recent_runs(limit):
                listed.setdefault(row["run_id"], RunListing(**row))
        return list(listed.values())[:limit]

    @app.get("/runs/{run_id}", response_model=RunDetail)
    def get_run(run_id: str):
        run = service.get(run_id)
        if run is not None:
            return service.summary(run)

        report = archive.load_report(run_id) if archive is not None else None
        if report is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return RunDetail(
            run_id=run_id,
            workflow=report["workflow"],
            status=report["status"],
            group=report.get("group", ""),
            jobs={name: j["status"] for name, j in report["jobs"].items()},
            report=report,
        )

    @app.post("/runs/{run_id}/cancel", response_model=CancelResponse)
    def cancel_run(run_id: str):
        run = service.get(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        cancelled = not run.done.is_set() and run.cancel("cancelled via API")
        return CancelResponse(run_id=run_id, cancelled=cancelled)

    @app.get("/runs/{run_id}/artifacts/{name}")
    def get_artifact(run_id: str, name: str):
        run = service.get(run_id)
        try:
            if run is not None and not run.done.is_set():
                blob = run.artifacts.get(name)
            elif archive is not None:
                blob = archive.fetch(run_id, name)
            else:
                raise ArtifactNotFoundError(name)
        except ArtifactNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return Response(content=blob, media_type="application/octet-stream")

    return app
