"""
Git adapter — shallow clones and checkout inspection.

Uses the git CLI through the CommandRunner; never a library binding.
"""

from __future__ import annotations

import logging
from pathlib import Path

from oqs_installer.adapters.shell.command import CommandRunner

logger = logging.getLogger(__name__)

# Abort transfers that stall below 1 KB/s for this many seconds
_LOW_SPEED_TIME = 60


def clone_command(
    url: str,
    destination: Path,
    *,
    ref: str | None = None,
    depth: int | None = 1,
) -> list[str]:
    """Build a ``git clone`` command line.

    ``ref`` must be a branch or tag name (``--branch`` does not accept
    commit hashes).  ``depth=None`` or ``0`` performs a full clone.
    """
    cmd = [
        "git",
        "-c", "http.lowSpeedLimit=1000",
        "-c", f"http.lowSpeedTime={_LOW_SPEED_TIME}",
        "clone",
        "--quiet",
    ]
    if depth:
        cmd += ["--depth", str(depth)]
    if ref:
        cmd += ["--branch", ref, "--single-branch"]
    cmd += [url, str(destination)]
    return cmd


def clone(
    runner: CommandRunner,
    url: str,
    destination: Path,
    *,
    ref: str | None = None,
    depth: int | None = 1,
    timeout: float | None = None,
) -> None:
    """Clone ``url`` at ``ref`` into ``destination`` (must not exist)."""
    runner.run(
        clone_command(url, destination, ref=ref, depth=depth),
        timeout=timeout,
        env_overrides={"GIT_TERMINAL_PROMPT": "0"},
        label=f"git clone {url}",
    )


def head_commit(runner: CommandRunner, repo: Path) -> str | None:
    """Commit hash checked out in ``repo``, or None if it can't be read."""
    result = runner.run(
        ["git", "-C", str(repo), "rev-parse", "HEAD"],
        tolerate_failure=True,
        timeout=30,
        label="git rev-parse",
    )
    if result.ok and result.stdout.strip():
        return result.stdout.strip()
    return None
