"""
Source fetcher — versioned source trees from a primary or fallback repo.

Flow:
    stale destination → backup (move) or remove
    primary url   → retried per RetryPolicy
    fallback url  → own retry budget (if configured)
    both failed   → FetchFailed naming both sources
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel

from oqs_installer.adapters.shell.command import CommandRunner
from oqs_installer.adapters.shell.filesystem import backup_path, remove_path
from oqs_installer.adapters.vcs import git
from oqs_installer.core.errors import CommandError, FetchFailed, NetworkError
from oqs_installer.core.models.artifacts import SourceArtifact
from oqs_installer.core.reliability.cancellation import CancelToken
from oqs_installer.core.reliability.retry import RetryPolicy, retry_call

logger = logging.getLogger(__name__)


class FetchRequest(BaseModel):
    """What to fetch and where to put it."""

    name: str
    primary_url: str
    fallback_url: str | None = None
    version_ref: str
    destination: Path
    depth: int | None = 1
    backup_existing: bool = False
    backup_dir: Path | None = None
    timeout: float | None = None


def _clear_destination(request: FetchRequest) -> str | None:
    """Back up or remove a pre-existing destination. Returns the backup path."""
    dest = request.destination
    if not (dest.exists() or dest.is_symlink()):
        return None

    if request.backup_existing:
        backup = backup_path(dest, backup_dir=request.backup_dir, move=True)
        return str(backup) if backup else None

    logger.info("Removing stale source tree %s", dest)
    remove_path(dest)
    return None


def _clone_once(request: FetchRequest, url: str, runner: CommandRunner) -> None:
    # A failed attempt may leave a partial tree behind; git refuses to
    # clone into a non-empty directory.
    if request.destination.exists():
        remove_path(request.destination)
    try:
        git.clone(
            runner,
            url,
            request.destination,
            ref=request.version_ref,
            depth=request.depth,
            timeout=request.timeout,
        )
    except CommandError as e:
        if request.destination.exists():
            remove_path(request.destination)
        raise NetworkError(
            f"Cannot fetch {request.name} {request.version_ref} from {url}: {e.message}",
            output=e.output,
        ) from e


def fetch_source(
    request: FetchRequest,
    runner: CommandRunner,
    policy: RetryPolicy,
    *,
    cancel: CancelToken | None = None,
) -> SourceArtifact:
    """Fetch ``request.version_ref`` into ``request.destination``.

    Raises:
        FetchFailed: Primary and fallback (if any) both exhausted.
        Cancelled: The run was cancelled during an attempt or a sleep.
    """
    backup = _clear_destination(request)
    request.destination.parent.mkdir(parents=True, exist_ok=True)

    sources = [request.primary_url]
    if request.fallback_url and request.fallback_url != request.primary_url:
        sources.append(request.fallback_url)

    errors: list[NetworkError] = []
    for index, url in enumerate(sources):
        logger.info("Fetching %s %s from %s", request.name, request.version_ref, url)
        try:
            retry_call(
                lambda url=url: _clone_once(request, url, runner),
                policy,
                cancel=cancel,
                retry_on=(NetworkError,),
                label=f"fetch {request.name} from {url}",
            )
        except NetworkError as e:
            errors.append(e)
            if index + 1 < len(sources):
                logger.warning("Primary source exhausted for %s; trying fallback %s",
                               request.name, sources[index + 1])
            continue

        commit = git.head_commit(runner, request.destination)
        return SourceArtifact(
            name=request.name,
            repository_url=url,
            version_ref=request.version_ref,
            path=str(request.destination),
            commit=commit,
            used_fallback=index > 0,
            backup_path=backup,
        )

    tried = " and ".join(sources)
    raise FetchFailed(
        f"Could not fetch {request.name} {request.version_ref} from {tried}",
        sources=sources,
        output="\n".join(e.output for e in errors if e.output),
    )
