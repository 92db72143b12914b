"""
Service registrar — install a systemd unit and bring it up.

    render unit (renderer) → daemon-reload → enable → restart → poll is-active

A unit that never reaches ``active`` is a ServiceStartFailed.  Nothing
installed by earlier steps is touched; the failure is only reported.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field

from oqs_installer.adapters.shell.command import CommandRunner
from oqs_installer.core.errors import CommandError, ServiceError, ServiceStartFailed
from oqs_installer.core.models.artifacts import ServiceUnit
from oqs_installer.core.reliability.cancellation import CancelToken
from oqs_installer.core.services.renderer import render_to_file

logger = logging.getLogger(__name__)

UNIT_MODE = 0o644


class ServiceSpec(BaseModel):
    """A unit to render and register."""

    name: str
    template: str = "sshd_oqs.service.tmpl"
    values: dict[str, object] = Field(default_factory=dict)
    unit_dir: Path = Path("/etc/systemd/system")
    supervisor: str = "systemctl"
    poll_attempts: int = 5
    poll_delay: float = 2.0
    backup_dir: Path | None = None
    template_dir: Path | None = None
    timeout: float | None = 120.0

    @property
    def unit_file(self) -> str:
        return self.name if self.name.endswith(".service") else f"{self.name}.service"

    @property
    def unit_path(self) -> Path:
        return self.unit_dir / self.unit_file


def _supervise(spec: ServiceSpec, runner: CommandRunner, *args: str) -> None:
    argv = [spec.supervisor, *args]
    try:
        runner.run(argv, timeout=spec.timeout, label=" ".join(argv))
    except CommandError as e:
        raise ServiceError(f"{' '.join(argv)} failed: {e.message}", output=e.output) from e


def unit_state(spec: ServiceSpec, runner: CommandRunner) -> str:
    """Current ``is-active`` state (``active``, ``activating``, ``failed``...)."""
    result = runner.run(
        [spec.supervisor, "is-active", spec.unit_file],
        tolerate_failure=True,
        timeout=spec.timeout,
        label=f"is-active {spec.unit_file}",
    )
    return result.stdout.strip() or "unknown"


def _status_output(spec: ServiceSpec, runner: CommandRunner) -> str:
    result = runner.run(
        [spec.supervisor, "status", "--no-pager", spec.unit_file],
        tolerate_failure=True,
        timeout=spec.timeout,
        label=f"status {spec.unit_file}",
    )
    return result.combined_output


def register_service(
    spec: ServiceSpec,
    runner: CommandRunner,
    *,
    cancel: CancelToken | None = None,
) -> ServiceUnit:
    """Render, install, enable and start ``spec``.

    Raises:
        ServiceError: A supervisor command failed.
        ServiceStartFailed: The unit did not become active in time.
    """
    backup = render_to_file(
        spec.template,
        spec.values,
        spec.unit_path,
        runner=runner,
        mode=UNIT_MODE,
        backup_dir=spec.backup_dir,
        template_dir=spec.template_dir,
    )

    _supervise(spec, runner, "daemon-reload")
    _supervise(spec, runner, "enable", spec.unit_file)
    _supervise(spec, runner, "restart", spec.unit_file)

    sleep = cancel.sleep if cancel is not None else runner.cancel.sleep
    state = "unknown"
    for attempt in range(1, spec.poll_attempts + 1):
        state = unit_state(spec, runner)
        if state == "active":
            logger.info("%s is active", spec.unit_file)
            return ServiceUnit(
                name=spec.unit_file,
                unit_path=str(spec.unit_path),
                state=state,
                enabled=True,
                backup_path=str(backup) if backup else None,
            )
        logger.debug("%s is %s (poll %d/%d)", spec.unit_file, state, attempt, spec.poll_attempts)
        if attempt < spec.poll_attempts:
            sleep(spec.poll_delay)

    raise ServiceStartFailed(
        f"{spec.unit_file} did not become active after {spec.poll_attempts} checks "
        f"(last state: {state})",
        output=_status_output(spec, runner),
    )


def disable_service(spec: ServiceSpec, runner: CommandRunner) -> None:
    """Stop and disable the unit, then remove its file. Rollback only."""
    for args in (("stop", spec.unit_file), ("disable", spec.unit_file)):
        runner.run(
            [spec.supervisor, *args],
            tolerate_failure=True,
            timeout=spec.timeout,
            label=f"{args[0]} {spec.unit_file}",
        )
    if spec.unit_path.exists():
        spec.unit_path.unlink()
        logger.info("Removed unit file %s", spec.unit_path)
    runner.run(
        [spec.supervisor, "daemon-reload"],
        tolerate_failure=True,
        timeout=spec.timeout,
        label="daemon-reload",
    )
