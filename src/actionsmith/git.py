# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to fill in trigger metadata (ref, sha, actor) for local runs.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully qualified ref of the checkout: refs/heads/<branch>, or the
    bare SHA on a detached HEAD.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def actor(cwd: Optional[str] = None) -> str:
    """Configured user.name, or empty when unset."""
    try:
        return _git(["config", "user.name"], cwd=cwd)
    except subprocess.CalledProcessError:
        return ""


def local_trigger_fields(cwd: Optional[str] = None) -> dict:
    """
    Best-effort ref/sha/actor for a run started from a working copy.
    Outside a repository every field is empty.
    """
    try:
        return {"ref": current_ref(cwd), "sha": head_sha(cwd), "actor": actor(cwd)}
    except (subprocess.CalledProcessError, FileNotFoundError):
        return {"ref": "", "sha": "", "actor": ""}
