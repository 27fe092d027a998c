# actions/version.py
from __future__ import annotations

import re
import subprocess

from ..git_facts import git
from .base import InvocationResult, StepInvocation

_SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)")


def _parse_version(tag: str, prefix: str) -> tuple[int, int, int] | None:
    text = tag[len(prefix):] if prefix and tag.startswith(prefix) else tag
    m = _SEMVER_RE.match(text)
    if not m:
        return None
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


def _slug(branch: str) -> str:
    return re.sub(r"[^0-9A-Za-z-]+", "-", branch).strip("-").lower() or "detached"


def derive_version(
    *,
    latest_tag: str | None,
    branch: str,
    release_branch: str = "main",
    prefix: str = "",
    commits_since_tag: int = 0,
    short_sha: str = "",
) -> str:
    """
    Semantic version for the current commit.

    - No changes since the latest tag: the tag's version.
    - Release branch: latest version with the patch number bumped.
    - Any other branch: the bumped version plus a pre-release suffix,
      e.g. v1.2.4-develop.3.abc1234.
    """
    current = _parse_version(latest_tag, prefix) if latest_tag else None
    if current is not None and commits_since_tag == 0:
        major, minor, patch = current
        return f"{prefix}{major}.{minor}.{patch}"

    major, minor, patch = current or (0, 0, 0)
    base = f"{prefix}{major}.{minor}.{patch + 1}"
    if branch == release_branch:
        return base
    suffix = f"{_slug(branch)}.{commits_since_tag}"
    if short_sha:
        suffix += f".{short_sha}"
    return f"{base}-{suffix}"


class GitVersion:
    """
    uses: git-version
    with:
      release-branch: branch that produces release versions (default "main")
      prefix: tag prefix, e.g. "v"
    outputs:
      version
    """

    def invoke(self, invocation: StepInvocation) -> InvocationResult:
        cwd = invocation.cwd
        prefix = invocation.param("prefix", "")
        release_branch = invocation.param("release-branch", "main")
        branch = invocation.github.get("head_ref") or invocation.github.get("ref_name") or ""

        try:
            tags = [t for t in git.tags_matching(prefix, cwd=cwd) if _parse_version(t, prefix)]
            latest = tags[0] if tags else None
            count = git.commits_since(latest, cwd=cwd)
            sha = git.short_sha(cwd=cwd)
        except subprocess.CalledProcessError as e:
            return InvocationResult(exit_code=e.returncode or 1, stderr=(e.stderr or str(e)))

        version = derive_version(
            latest_tag=latest,
            branch=branch,
            release_branch=release_branch,
            prefix=prefix,
            commits_since_tag=count,
            short_sha=sha,
        )
        return InvocationResult(exit_code=0, stdout=version, outputs={"version": version})


class Checkout:
    """
    uses: checkout
    with:
      ref: optional ref to check out (default: leave the workspace as is)

    The workspace is already the repository; without a ref this only
    reports the commit being built.
    """

    def invoke(self, invocation: StepInvocation) -> InvocationResult:
        ref = invocation.param("ref")
        try:
            if ref:
                git.checkout(ref, cwd=invocation.workspace)
            sha = git.head_sha(cwd=invocation.workspace)
        except subprocess.CalledProcessError as e:
            return InvocationResult(exit_code=e.returncode or 1, stderr=(e.stderr or str(e)))
        return InvocationResult(exit_code=0, stdout=sha, outputs={"sha": sha})
