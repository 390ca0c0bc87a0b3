# git.py
# Small wrapper around the Git CLI, used to fill in the trigger and the
# repository URL when the CLI is run from inside a checkout.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path to the root of the enclosing Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully qualified ref of the checked out branch, e.g. `refs/heads/master`.

    On a detached HEAD `git symbolic-ref` fails; CalledProcessError is
    raised and the caller must ask for --ref.
    """
    return _git(["symbolic-ref", "HEAD"], cwd=cwd)


def remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    """URL of `remote`; CalledProcessError when the repository has no such remote."""
    return _git(["remote", "get-url", remote], cwd=cwd)
