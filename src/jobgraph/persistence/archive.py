from __future__ import annotations

from typing import Any, Dict, List, Optional

import sqlalchemy as sa

from ..errors import ArtifactNotFoundError
from ..model import RunResult
from .db import make_engine, make_sessionmaker
from .models import ArtifactRecord, Base, RunRecord


def artifact_handle(run_id: str, name: str) -> str:
    return f"jobgraph://runs/{run_id}/artifacts/{name}"


class ArtifactArchive:
    """
    Durable artifact and run-report storage.

    A run's ArtifactStore lives only as long as the run; committed artifacts
    are copied here after reporting so they can be fetched later by
    (run_id, name).
    """

    def __init__(self, url: str, *, create: bool = True):
        self.engine = make_engine(url)
        self.Session = make_sessionmaker(self.engine)
        if create:
            Base.metadata.create_all(self.engine)

    def store(self, run_id: str, name: str, blob: bytes) -> str:
        with self.Session() as s, s.begin():
            # re-reporting a run_id replaces the earlier copy
            record = s.scalar(
                sa.select(ArtifactRecord).where(ArtifactRecord.run_id == run_id, ArtifactRecord.name == name)
            )
            if record is None:
                s.add(ArtifactRecord(run_id=run_id, name=name, size=len(blob), blob=blob))
            else:
                record.size = len(blob)
                record.blob = blob
        return artifact_handle(run_id, name)

    def fetch(self, run_id: str, name: str) -> bytes:
        with self.Session() as s:
            blob = s.scalar(
                sa.select(ArtifactRecord.blob).where(ArtifactRecord.run_id == run_id, ArtifactRecord.name == name)
            )
        if blob is None:
            raise ArtifactNotFoundError(name)
        return blob

    def names(self, run_id: str) -> List[str]:
        with self.Session() as s:
            q = sa.select(ArtifactRecord.name).where(ArtifactRecord.run_id == run_id).order_by(ArtifactRecord.name)
            return list(s.scalars(q))

    def save_report(self, result: RunResult) -> None:
        report = result.to_dict()
        with self.Session() as s, s.begin():
            record = s.get(RunRecord, result.run_id)
            if record is None:
                record = RunRecord(run_id=result.run_id, workflow=result.workflow)
                s.add(record)
            record.status = result.status.value
            record.ref = result.trigger.ref
            record.report_json = report

    def load_report(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self.Session() as s:
            record = s.get(RunRecord, run_id)
            return dict(record.report_json) if record is not None else None

    def recent_runs(self, limit: int = 20) -> List[Dict[str, str]]:
        with self.Session() as s:
            q = sa.select(RunRecord).order_by(RunRecord.created_at.desc(), RunRecord.run_id).limit(limit)
            return [
                {"run_id": r.run_id, "workflow": r.workflow, "status": r.status, "ref": r.ref}
                for r in s.scalars(q)
            ]
