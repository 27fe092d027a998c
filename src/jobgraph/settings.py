# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

VAR_PREFIX = "JOBGRAPH_VAR_"
SECRET_PREFIX = "JOBGRAPH_SECRET_"


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass
class Settings:
    """
    Runtime configuration. Read from the environment with `from_env()`;
    CLI options override individual fields.
    """
    max_workers: int = field(default_factory=_default_workers)
    step_timeout: float = 3600.0
    database_url: Optional[str] = None
    # empty = any runs_on label is accepted
    runner_labels: List[str] = field(default_factory=list)
    allow_artifact_overwrite: bool = False
    # finished runs the API server keeps in memory; older ones are served from the archive
    retained_runs: int = 100
    vars: Dict[str, str] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        settings = cls()
        if env.get("JOBGRAPH_MAX_WORKERS"):
            settings.max_workers = max(1, int(env["JOBGRAPH_MAX_WORKERS"]))
        if env.get("JOBGRAPH_STEP_TIMEOUT"):
            settings.step_timeout = float(env["JOBGRAPH_STEP_TIMEOUT"])
        settings.database_url = env.get("JOBGRAPH_DATABASE_URL") or None
        labels = env.get("JOBGRAPH_RUNNER_LABELS", "")
        settings.runner_labels = [l.strip() for l in labels.split(",") if l.strip()]
        settings.allow_artifact_overwrite = env.get("JOBGRAPH_ARTIFACT_OVERWRITE", "").lower() in ("1", "true", "yes")
        if env.get("JOBGRAPH_RETAINED_RUNS"):
            settings.retained_runs = max(1, int(env["JOBGRAPH_RETAINED_RUNS"]))
        settings.vars = {k[len(VAR_PREFIX):]: v for k, v in env.items() if k.startswith(VAR_PREFIX)}
        settings.secrets = {k[len(SECRET_PREFIX):]: v for k, v in env.items() if k.startswith(SECRET_PREFIX)}
        return settings
