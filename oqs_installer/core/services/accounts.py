"""
System accounts — the privilege-separation user and its directory.

Every operation is idempotent: ``getent`` is probed in tolerate-failure
mode before anything is created.
"""

from __future__ import annotations

import grp
import logging
import os
import pwd
from pathlib import Path

from oqs_installer.adapters.shell.command import CommandRunner
from oqs_installer.core.errors import CommandError, ValidationError

logger = logging.getLogger(__name__)

NOLOGIN_SHELLS = ("/usr/sbin/nologin", "/sbin/nologin", "/bin/false")


def _exists(runner: CommandRunner, database: str, name: str) -> bool:
    result = runner.run(
        ["getent", database, name],
        tolerate_failure=True,
        timeout=30,
        label=f"getent {database} {name}",
    )
    return result.ok


def _nologin_shell() -> str:
    for shell in NOLOGIN_SHELLS:
        if Path(shell).exists():
            return shell
    return NOLOGIN_SHELLS[-1]


def ensure_group(runner: CommandRunner, name: str) -> bool:
    """Create a system group. Returns True if it was created."""
    if _exists(runner, "group", name):
        logger.debug("Group %s already exists", name)
        return False
    try:
        runner.run(["groupadd", "-r", name], timeout=60, label=f"groupadd {name}")
    except CommandError as e:
        raise ValidationError(f"Cannot create group {name}: {e.message}", output=e.output) from e
    logger.info("Created system group %s", name)
    return True


def ensure_user(
    runner: CommandRunner,
    name: str,
    group: str,
    *,
    home: Path,
    comment: str = "OQS-SSH privilege separation user",
) -> bool:
    """Create a locked system user. Returns True if it was created."""
    if _exists(runner, "passwd", name):
        logger.debug("User %s already exists", name)
        return False
    argv = [
        "useradd", "-r",
        "-g", group,
        "-d", str(home),
        "-s", _nologin_shell(),
        "-c", comment,
        name,
    ]
    try:
        runner.run(argv, timeout=60, label=f"useradd {name}")
    except CommandError as e:
        raise ValidationError(f"Cannot create user {name}: {e.message}", output=e.output) from e
    logger.info("Created system user %s", name)
    return True


def ensure_directory(path: Path, mode: int = 0o755, owner: str | None = None) -> None:
    """Create ``path`` with ``mode``; chown to ``owner`` when running as root."""
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, mode)
    if owner and os.geteuid() == 0:
        user, _, group = owner.partition(":")
        os.chown(path, _uid(user), _gid(group or user))


def _uid(user: str) -> int:
    return pwd.getpwnam(user).pw_uid


def _gid(group: str) -> int:
    return grp.getgrnam(group).gr_gid
