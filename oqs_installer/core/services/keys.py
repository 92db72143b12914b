"""
Key manager — host and client key pairs with permission discipline.

No key math happens here: the fork's ``ssh-keygen`` produces the keys.
This module decides whether to generate, moves old pairs aside (never
deletes them), and enforces 0600 / 0644 on the result.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from pydantic import BaseModel

from oqs_installer.adapters.shell.command import CommandRunner
from oqs_installer.adapters.shell.filesystem import (
    backup_path,
    file_mode,
    is_more_restrictive,
    set_mode,
)
from oqs_installer.core.errors import CommandError, KeyGenerationFailed
from oqs_installer.core.models.artifacts import HostIdentity

logger = logging.getLogger(__name__)

PRIVATE_KEY_MODE = 0o600
PUBLIC_KEY_MODE = 0o644


class KeySpec(BaseModel):
    """Which key to generate and where."""

    keygen: Path
    algorithm: str                 # opaque identifier passed to ssh-keygen -t
    private_path: Path
    comment: str = ""
    skip_if_exists: bool = False
    owner: str | None = None       # "user:group" for chown
    timeout: float | None = 300.0

    @property
    def public_path(self) -> Path:
        return self.private_path.with_name(self.private_path.name + ".pub")


def _fingerprint(public_key: Path) -> str:
    digest = hashlib.sha256(public_key.read_bytes()).hexdigest()
    return f"sha256:{digest}"


def _identity(spec: KeySpec, *, reused: bool, backups: list[str]) -> HostIdentity:
    return HostIdentity(
        algorithm=spec.algorithm,
        private_key=str(spec.private_path),
        public_key=str(spec.public_path),
        private_mode=file_mode(spec.private_path),
        public_mode=file_mode(spec.public_path),
        fingerprint=_fingerprint(spec.public_path),
        reused=reused,
        backups=backups,
    )


def generate_key_pair(
    spec: KeySpec,
    runner: CommandRunner,
    *,
    backup_dir: Path | None = None,
) -> HostIdentity:
    """Generate (or keep) the key pair described by ``spec``.

    Raises:
        KeyGenerationFailed: ssh-keygen failed or wrote no files.
    """
    private, public = spec.private_path, spec.public_path
    if spec.skip_if_exists and private.is_file() and public.is_file():
        logger.info("Keeping existing %s key %s", spec.algorithm, private)
        set_mode(private, PRIVATE_KEY_MODE, spec.owner)
        set_mode(public, PUBLIC_KEY_MODE, spec.owner)
        return _identity(spec, reused=True, backups=[])

    backups: list[str] = []
    for path in (private, public):
        moved = backup_path(path, backup_dir=backup_dir, move=True)
        if moved is not None:
            backups.append(str(moved))

    private.parent.mkdir(parents=True, exist_ok=True)

    argv = [
        str(spec.keygen),
        "-q",
        "-t", spec.algorithm,
        "-f", str(private),
        "-N", "",
    ]
    if spec.comment:
        argv += ["-C", spec.comment]

    try:
        runner.run(argv, timeout=spec.timeout, label=f"ssh-keygen {spec.algorithm}")
    except CommandError as e:
        raise KeyGenerationFailed(
            f"Generating {spec.algorithm} key at {private} failed: {e.message}",
            output=e.output,
        ) from e

    if not private.is_file() or not public.is_file():
        raise KeyGenerationFailed(
            f"{spec.keygen} reported success but {private} / {public} are missing"
        )

    set_mode(private, PRIVATE_KEY_MODE, spec.owner)
    set_mode(public, PUBLIC_KEY_MODE, spec.owner)

    identity = _identity(spec, reused=False, backups=backups)
    if not is_more_restrictive(identity.private_mode, identity.public_mode):
        raise KeyGenerationFailed(
            f"Private key {private} mode {identity.private_mode:o} is not stricter "
            f"than public key mode {identity.public_mode:o}"
        )

    logger.info("Generated %s key %s (%s)", spec.algorithm, private, identity.fingerprint)
    return identity
