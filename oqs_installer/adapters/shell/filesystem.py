"""
Filesystem adapter — backups, atomic writes and permission discipline.

Backups are timestamp-suffixed (``NAME.bak.YYYYMMDD_HHMMSS``) and are
never deleted by the installer.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from pathlib import Path

logger = logging.getLogger(__name__)

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def backup_name(path: Path, backup_dir: Path | None = None) -> Path:
    """Pick a free ``<name>.bak.<timestamp>`` path for ``path``.

    A numeric suffix is appended when two backups land in the same second.
    """
    ts = time.strftime(BACKUP_TIMESTAMP_FORMAT)
    parent = backup_dir if backup_dir is not None else path.parent
    candidate = parent / f"{path.name}.bak.{ts}"
    counter = 1
    while candidate.exists() or candidate.is_symlink():
        candidate = parent / f"{path.name}.bak.{ts}.{counter}"
        counter += 1
    return candidate


def backup_path(
    path: Path,
    *,
    backup_dir: Path | None = None,
    move: bool = False,
) -> Path | None:
    """Back up a file or directory before it is overwritten.

    Args:
        path: Path to preserve.
        backup_dir: Where to put the copy (default: next to ``path``).
        move: Rename instead of copy (the original disappears).

    Returns:
        The backup location, or None if ``path`` does not exist.
    """
    if not path.exists() and not path.is_symlink():
        return None

    if backup_dir is not None:
        backup_dir.mkdir(parents=True, exist_ok=True)
    dest = backup_name(path, backup_dir)

    if move:
        shutil.move(str(path), str(dest))
    elif path.is_dir() and not path.is_symlink():
        shutil.copytree(path, dest, symlinks=True)
    else:
        shutil.copy2(path, dest, follow_symlinks=False)

    logger.info("Backed up %s → %s", path, dest)
    return dest


def remove_path(path: Path) -> bool:
    """Remove a file or directory tree. Returns True if something was removed."""
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


def write_temp_beside(dest: Path, content: str, mode: int) -> Path:
    """Write ``content`` to a hidden temp file in ``dest``'s directory.

    Same directory means the final ``os.replace`` is atomic.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp, mode)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise
    return tmp


def set_mode(path: Path, mode: int, owner: str | None = None) -> None:
    """chmod (and optionally chown ``user[:group]``) a path."""
    os.chmod(path, mode)
    if owner:
        user, _, group = owner.partition(":")
        shutil.chown(path, user=user or None, group=group or None)


def file_mode(path: Path) -> int:
    return path.stat().st_mode & 0o777


def is_more_restrictive(private_mode: int, public_mode: int) -> bool:
    """Whether ``private_mode`` grants a strict subset of ``public_mode``'s bits."""
    return (private_mode & ~public_mode) == 0 and private_mode != public_mode
