from .dsl import job, sh, uses, matrix, wf, workflow, JobBuilder, build
from .runner import PipelineScheduler, load_workflow, run_pipeline
from .model import Concurrency, Job, Step, Trigger, Workflow

__all__ = [
    "job",
    "sh",
    "uses",
    "matrix",
    "wf",
    "workflow",
    "JobBuilder",
    "build",
    "PipelineScheduler",
    "load_workflow",
    "run_pipeline",
    "Concurrency",
    "Job",
    "Step",
    "Trigger",
    "Workflow",
]
