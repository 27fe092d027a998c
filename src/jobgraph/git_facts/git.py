# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def short_sha(cwd: Optional[str | Path] = None) -> str:
    return _git(["rev-parse", "--short", "HEAD"], cwd=cwd)


def get_current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Current branch as a fully qualified ref (refs/heads/<branch>), or the
    HEAD SHA when detached.
    """
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if branch == "HEAD":
        return head_sha(cwd)
    return f"refs/heads/{branch}"


def tags_matching(prefix: str = "", cwd: Optional[str | Path] = None) -> List[str]:
    """Tags starting with prefix, newest version first."""
    out = _git(["tag", "--list", f"{prefix}*", "--sort=-v:refname"], cwd=cwd)
    return out.splitlines() if out else []


def commits_since(ref: Optional[str], cwd: Optional[str | Path] = None) -> int:
    """Number of commits reachable from HEAD but not from ref (all commits if ref is None)."""
    rng = f"{ref}..HEAD" if ref else "HEAD"
    return int(_git(["rev-list", "--count", rng], cwd=cwd) or 0)


def checkout(ref: str, cwd: Optional[str | Path] = None) -> None:
    _git(["checkout", ref], cwd=cwd)
