"""
Install lock — one pipeline run per install prefix.

The lock is a file beside the prefix (``/opt/oqs-ssh.lock``) holding
the owner's PID.  Ownership is an exclusive ``flock`` on that file, so
a lock left behind by a dead process is free again and is taken over
with a warning; two runs can never both win the takeover.
"""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from types import TracebackType

from oqs_installer.core.errors import LockHeld

logger = logging.getLogger(__name__)

# Attempts when the lock file is replaced between open() and flock()
_MAX_ATTEMPTS = 5


def _read_pid(path: Path) -> int | None:
    try:
        return int(path.read_text(encoding="utf-8").strip() or "0")
    except (OSError, ValueError):
        return None


def _same_file(fd: int, path: Path) -> bool:
    try:
        on_disk = os.stat(path)
    except FileNotFoundError:
        return False
    opened = os.fstat(fd)
    return (opened.st_dev, opened.st_ino) == (on_disk.st_dev, on_disk.st_ino)


class InstallLock:
    """Context manager guarding an install prefix.

    Usage::

        with InstallLock(config.lock_path):
            pipeline.run(...)
    """

    def __init__(self, path: Path):
        self.path = path
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(_MAX_ATTEMPTS):
            fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                pid = _read_pid(self.path)
                raise LockHeld(
                    f"Another installation (pid {pid or 'unknown'}) is using this prefix; "
                    f"lock file: {self.path}"
                ) from None

            # The previous owner released (and unlinked) the file after we opened it
            if not _same_file(fd, self.path):
                os.close(fd)
                continue

            previous = os.read(fd, 64).decode("utf-8", "replace").strip()
            if previous:
                logger.warning("Taking over stale install lock %s (pid %s)", self.path, previous)
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, f"{os.getpid()}\n".encode())
            self._fd = fd
            logger.debug("Acquired install lock %s", self.path)
            return
        raise LockHeld(f"Could not acquire install lock {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            if _same_file(fd, self.path):
                self.path.unlink(missing_ok=True)
        finally:
            os.close(fd)
        logger.debug("Released install lock %s", self.path)

    def __enter__(self) -> InstallLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
