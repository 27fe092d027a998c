# actions/docker.py
from __future__ import annotations

from typing import List

from ..errors import CIError
from .base import InvocationResult, StepInvocation, check_tool_available, run_command

CONTAINER_WORKDIR = "/workspace"


def _split_list(value: str | None) -> List[str]:
    """Params are strings: accept comma- or newline-separated lists."""
    if not value:
        return []
    return [p.strip() for p in value.replace("\n", ",").split(",") if p.strip()]


def build_docker_command(invocation: StepInvocation) -> tuple[List[str], str | None]:
    """
    Translate `docker` action params into a docker CLI argv.
    Returns (argv, stdin) where stdin carries a password for `login`.

    command: build | tag | push | login | run
      build: context (default "."), file, tags (list), build-args (list of K=V)
      tag:   source, target
      push:  image (repository[:tag]); all-tags: "true" pushes every tag
      login: username, password, registry
      run:   image, run (shell command), volumes (list), user
    """
    command = invocation.require("command")

    if command == "build":
        argv = ["docker", "build"]
        for tag in _split_list(invocation.param("tags")):
            argv.extend(["-t", tag])
        if invocation.param("file"):
            argv.extend(["-f", invocation.param("file")])
        for arg in _split_list(invocation.param("build-args")):
            argv.extend(["--build-arg", arg])
        argv.append(invocation.param("context", "."))
        return argv, None

    if command == "tag":
        return ["docker", "tag", invocation.require("source"), invocation.require("target")], None

    if command == "push":
        argv = ["docker", "push"]
        if invocation.param("all-tags", "false").lower() == "true":
            argv.append("--all-tags")
        argv.append(invocation.require("image"))
        return argv, None

    if command == "login":
        argv = ["docker", "login", "--username", invocation.require("username"), "--password-stdin"]
        if invocation.param("registry"):
            argv.append(invocation.param("registry"))
        return argv, invocation.require("password")

    if command == "run":
        # Volume mount: workspace -> /workspace, working dir follows the step cwd
        workspace = invocation.workspace.resolve()
        try:
            rel = invocation.cwd.resolve().relative_to(workspace).as_posix()
        except ValueError:
            rel = "."
        argv = ["docker", "run", "--rm", "-v", f"{workspace}:{CONTAINER_WORKDIR}"]
        for vol in _split_list(invocation.param("volumes")):
            argv.extend(["-v", vol])
        argv.extend(["-w", CONTAINER_WORKDIR if rel == "." else f"{CONTAINER_WORKDIR}/{rel}"])
        for key, value in sorted(invocation.declared_env.items()):
            argv.extend(["-e", f"{key}={value}"])
        if invocation.param("user"):
            argv.extend(["--user", invocation.param("user")])
        argv.append(invocation.require("image"))
        argv.extend(["sh", "-c", invocation.require("run")])
        return argv, None

    raise CIError(
        kind="invalid_params",
        job=invocation.job,
        step=invocation.step.name,
        message=f"Unknown docker command {command!r}",
        details={"expected": "build, tag, push, login, run"},
    )


class DockerInvoker:
    """Container image build/tag/push/login, and running a command inside a container."""

    def invoke(self, invocation: StepInvocation) -> InvocationResult:
        argv, stdin = build_docker_command(invocation)
        check_tool_available("docker", job=invocation.job, step=invocation.step.name)
        result = run_command(
            argv,
            cwd=invocation.cwd,
            env=invocation.env,
            job=invocation.job,
            step=invocation.step.name,
            timeout=invocation.timeout,
            cancel=invocation.cancel,
            input=stdin,
        )
        if result.ok and argv[1] == "build":
            tags = _split_list(invocation.param("tags"))
            result.outputs = {"tags": ",".join(tags), "image": tags[0] if tags else ""}
        return result
