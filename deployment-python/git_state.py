"""
Best-effort capture of the local git checkout.

Backups record which commit the operator was sitting on when the backup was
taken. None of this is required: if git is missing or the tool is not run from
inside a repository, the failure is logged and recorded instead.
"""

import logging
import subprocess
from typing import List, Optional

from backup_models import GitState

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS: int = 10


def _git(args: List[str], cwd: Optional[str] = None) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
        timeout=GIT_TIMEOUT_SECONDS,
    )
    return result.stdout.strip()


def capture_git_state(cwd: Optional[str] = None) -> GitState:
    """
    Reads branch, commit, last commit message/author/date and working tree status.

    Args:
        cwd (Optional[str]): Directory to run git in. Defaults to the current directory.

    Returns:
        GitState: The snapshot, or a GitState carrying only `error` if git failed.
    """
    try:
        return GitState(
            branch=_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd),
            commit=_git(["rev-parse", "HEAD"], cwd),
            short_commit=_git(["rev-parse", "--short", "HEAD"], cwd),
            message=_git(["log", "-1", "--pretty=%B"], cwd),
            author=_git(["log", "-1", "--pretty=%an"], cwd),
            date=_git(["log", "-1", "--pretty=%ai"], cwd),
            status=_git(["status", "--porcelain"], cwd),
        )
    except subprocess.CalledProcessError as e:
        message = (e.stderr or "").strip() or str(e)
        logger.warning(f"Could not capture git state: {message}")
        return GitState(error=message)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Could not capture git state: {e}")
        return GitState(error=str(e))


def count_commits_between(older: Optional[str], newer: Optional[str], cwd: Optional[str] = None) -> int:
    """Number of commits reachable from `newer` but not from `older`; 0 if unknown."""
    if not older or not newer:
        return 0
    try:
        return int(_git(["rev-list", "--count", f"{older}..{newer}"], cwd) or 0)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError, ValueError):
        return 0
