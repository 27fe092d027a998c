# cli.py
from __future__ import annotations

import json
import os
import subprocess
import sys
import uuid
from pathlib import Path

import click

from jobgraph.dag import DependencyResolver
from jobgraph.errors import ArtifactNotFoundError, CIError, CycleError
from jobgraph.git_facts.git import get_current_ref, head_sha
from jobgraph.model import RunStatus, Trigger
from jobgraph.persistence.archive import ArtifactArchive
from jobgraph.runner import load_workflow, run_pipeline, workflow_triggered
from jobgraph.settings import Settings
from jobgraph.artifacts import unpack_blob
from jobgraph.ui.console import Console, set_console, get_console


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / "jobgraph_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  jobgraph run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  jobgraph_workflow.py",
                "  *_workflow.py",
            ],
            suggestion="Create a workflow file:\n  jobgraph_workflow.py\n\nOr specify a workflow explicitly:\n  jobgraph run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  jobgraph run --workflow jobgraph_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _git_or(default: str, fn) -> str:
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return default


def _parse_inputs(pairs: tuple[str, ...]) -> dict[str, str]:
    inputs: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--input")
        inputs[key] = value
    return inputs


def _archive(database_url: str | None) -> ArtifactArchive:
    url = database_url or Settings.from_env().database_url
    if not url:
        get_console().print_error(
            "No artifact archive configured",
            "Artifacts are only kept after a run when an archive database is configured.",
            suggestion="Set JOBGRAPH_DATABASE_URL or pass --database-url, e.g.\n  --database-url sqlite:///.jobgraph/archive.db",
        )
        sys.exit(1)
    return ArtifactArchive(url)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final summary")
@click.pass_context
def cli(ctx, debug, quiet):
    """jobgraph: run CI/CD job graphs locally."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file path (defaults to jobgraph_workflow.py if present)",
)
@click.option(
    "--event",
    type=click.Choice(["push", "pull_request", "manual"]),
    default="push",
    show_default=True,
    help="Trigger event",
)
@click.option("--ref", default=None, help="Git ref/branch (defaults to the current branch)")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.option("--base-ref", default="", help="Target branch of a pull_request trigger")
@click.option("--head-ref", default="", help="Source branch of a pull_request trigger")
@click.option("--run-id", default=None, help="Run identifier (defaults to a random id)")
@click.option("--input", "inputs", multiple=True, metavar="KEY=VALUE", help="Manual trigger input (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel job workers")
@click.option("--timeout", default=None, type=float, help="Default step timeout in seconds")
@click.option("--workspace", default=".", show_default=True, help="Directory steps run in")
@click.option("--database-url", default=None, help="Archive database for artifacts and reports")
@click.option("--force", is_flag=True, default=False, help="Run even if the workflow's `on` filter does not match")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run report as JSON")
@click.pass_context
def run(ctx, workflow, event, ref, sha, base_ref, head_ref, run_id, inputs, workers, timeout, workspace,
        database_url, force, as_json):
    """Run a workflow for one trigger."""
    console = get_console()
    if as_json:
        console.quiet = True

    workflow_path = discover_workflow(workflow)

    try:
        wf = load_workflow(workflow_path)
        console.print_debug(f"Loaded workflow '{wf.name}' ({len(wf.jobs)} jobs) from {workflow_path}")

        trigger = Trigger(
            event=event,
            ref=ref or _git_or("refs/heads/main", lambda: get_current_ref(workspace)),
            run_id=run_id or uuid.uuid4().hex[:12],
            sha=sha or _git_or("", lambda: head_sha(workspace)),
            actor=os.environ.get("USER", ""),
            head_ref=head_ref,
            base_ref=base_ref,
            inputs=_parse_inputs(inputs),
        )

        if not force and not workflow_triggered(wf, trigger):
            console.print_info(
                f"Workflow '{wf.name}' is not triggered by {trigger.event} on {trigger.ref}; nothing to run."
            )
            return

        settings = Settings.from_env()
        if workers is not None:
            settings.max_workers = max(1, workers)
        if timeout is not None:
            settings.step_timeout = timeout
        if database_url:
            settings.database_url = database_url

        result = run_pipeline(wf, trigger, settings=settings, workspace=workspace)

        if as_json:
            click.echo(json.dumps(result.to_dict(), indent=2))
        else:
            console.print_results(result)

        if result.status is not RunStatus.SUCCEEDED:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except CycleError as e:
        console.print_error("Invalid job graph", str(e), details=[f"Jobs in cycle: {', '.join(e.members)}"])
        sys.exit(1)
    except CIError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    except click.ClickException:
        raise
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file path (defaults to jobgraph_workflow.py if present)",
)
@click.pass_context
def plan(ctx, workflow):
    """Print the workflow's ready batches without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        wf = load_workflow(workflow_path)
        console.print_plan(DependencyResolver(wf.jobs).ready_batches())
    except CycleError as e:
        console.print_error("Invalid job graph", str(e), details=[f"Jobs in cycle: {', '.join(e.members)}"])
        sys.exit(1)
    except CIError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1), help="Number of runs to show")
@click.option("--database-url", default=None, help="Archive database (defaults to JOBGRAPH_DATABASE_URL)")
def runs(limit, database_url):
    """List the most recent archived runs."""
    console = get_console()
    rows = _archive(database_url).recent_runs(limit)
    if not rows:
        console.print_info("No archived runs")
        return
    for row in rows:
        console.print_info(f"{row['run_id']}  {row['status']:<10} {row['workflow']} ({row['ref']})")


@cli.group()
def artifacts():
    """Inspect artifacts retained from finished runs."""


@artifacts.command("list")
@click.argument("run_id")
@click.option("--database-url", default=None, help="Archive database (defaults to JOBGRAPH_DATABASE_URL)")
def artifacts_list(run_id, database_url):
    """List the artifacts retained for RUN_ID."""
    console = get_console()
    names = _archive(database_url).names(run_id)
    if not names:
        console.print_info(f"No artifacts for run {run_id}")
        return
    for name in names:
        console.print_info(name)


@artifacts.command("get")
@click.argument("run_id")
@click.argument("name")
@click.option("--database-url", default=None, help="Archive database (defaults to JOBGRAPH_DATABASE_URL)")
@click.option("--output", "-o", default=".", show_default=True, help="Directory to extract the artifact into")
def artifacts_get(run_id, name, database_url, output):
    """Download artifact NAME of RUN_ID and extract it."""
    console = get_console()
    try:
        blob = _archive(database_url).fetch(run_id, name)
    except ArtifactNotFoundError as e:
        console.print_error("Artifact not found", str(e))
        sys.exit(1)
    dest = Path(output) / name
    files = unpack_blob(blob, dest)
    console.print_info(f"Extracted {len(files)} file(s) to {dest}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
