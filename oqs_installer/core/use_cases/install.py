"""
Install use case — one complete installation run.

Ties together everything around the pipeline:

    config → pipeline → (dry-run? describe and stop)
    → lock prefix → signals → run steps (ledger) → report → InstallResult

Never raises InstallerError for step failures; they are on the result.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from oqs_installer.adapters.shell.command import CommandRunner
from oqs_installer.core.config.loader import InstallConfig
from oqs_installer.core.engine.pipeline import Pipeline
from oqs_installer.core.errors import InstallerError, exit_code_for
from oqs_installer.core.models.pipeline import PipelineRun
from oqs_installer.core.persistence.ledger import CommandLedger
from oqs_installer.core.persistence.lock import InstallLock
from oqs_installer.core.persistence.report import load_report, resumable_steps, write_report
from oqs_installer.core.reliability.cancellation import CancelToken
from oqs_installer.core.services.dependencies import (
    BUILD_TOOLCHAIN,
    DependencyFailure,
    check_resources,
    validate_tools,
)
from oqs_installer.core.use_cases.client_install import build_client_pipeline
from oqs_installer.core.use_cases.server_install import build_server_pipeline

logger = logging.getLogger(__name__)

PIPELINES: dict[str, Callable[[InstallConfig], Pipeline]] = {
    "server": build_server_pipeline,
    "client": build_client_pipeline,
}


@dataclass
class InstallResult:
    """Outcome of ``run_install``."""

    role: str
    run: PipelineRun | None = None
    plan: list[dict[str, Any]] = field(default_factory=list)
    report_path: Path | None = None
    error: InstallerError | None = None     # failure before any step ran

    @property
    def dry_run(self) -> bool:
        return self.run is None and self.error is None

    @property
    def ok(self) -> bool:
        if self.error is not None:
            return False
        return self.run is None or self.run.succeeded

    @property
    def exit_code(self) -> int:
        if self.error is not None:
            return self.error.exit_code
        if self.run is None or self.run.succeeded:
            return 0
        failed = self.run.failed_step
        if failed is not None and failed.error is not None:
            return exit_code_for(failed.error.kind)
        return 1

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"role": self.role, "ok": self.ok, "exit_code": self.exit_code}
        if self.error is not None:
            result["error"] = {
                "kind": self.error.category,
                "error_type": type(self.error).__name__,
                "message": str(self.error),
            }
        if self.dry_run:
            result["dry_run"] = True
            result["plan"] = self.plan
        if self.run is not None:
            result["run"] = self.run.model_dump(mode="json")
        if self.report_path is not None:
            result["report_path"] = str(self.report_path)
        return result


def build_pipeline(role: str, config: InstallConfig) -> Pipeline:
    try:
        factory = PIPELINES[role]
    except KeyError:
        raise ValueError(f"Unknown role '{role}' (expected one of {', '.join(PIPELINES)})") from None
    return factory(config)


def run_install(
    role: str,
    config: InstallConfig,
    *,
    runner: CommandRunner | None = None,
    cancel: CancelToken | None = None,
) -> InstallResult:
    """Install the ``role`` ("server" or "client") described by ``config``.

    Args:
        role: Which pipeline to run.
        config: The run's immutable configuration.
        runner: Command runner (default: a real one).
        cancel: Cancellation token (default: the runner's).

    Returns:
        InstallResult; ``exit_code`` is the process exit status.
    """
    pipeline = build_pipeline(role, config)

    if config.dry_run:
        logger.info("Dry run: %d steps planned for %s", len(pipeline.steps), role)
        return InstallResult(role=role, plan=pipeline.describe())

    if runner is None:
        runner = CommandRunner(cancel=cancel, default_timeout=config.timeout)
    cancel = cancel or runner.cancel

    resume: set[str] = set()
    carried: dict[str, Any] = {}
    if config.resume:
        previous = load_report(config.report_path)
        resume = resumable_steps(previous, pipeline.name)
        if previous is not None:
            carried = previous.artifacts
        if resume:
            logger.info("Resuming: %s already succeeded", ", ".join(sorted(resume)))

    ledger = CommandLedger(config.ledger_path)
    try:
        with InstallLock(config.lock_path), cancel.handle_signals():
            run = pipeline.run(
                config,
                runner,
                cancel=cancel,
                ledger=ledger,
                resume=resume,
                carried_artifacts=carried,
            )
    except InstallerError as e:
        logger.error("%s", e)
        return InstallResult(role=role, error=e)

    try:
        write_report(run, config.report_path)
        report_path: Path | None = config.report_path
    except OSError as e:
        logger.error("Cannot write installation report %s: %s", config.report_path, e)
        report_path = None

    return InstallResult(role=role, run=run, report_path=report_path)


def check_host(config: InstallConfig, runner: CommandRunner | None = None) -> list[DependencyFailure]:
    """Toolchain and resource checks without installing anything."""
    runner = runner or CommandRunner(default_timeout=config.timeout)
    failures = validate_tools(BUILD_TOOLCHAIN, runner)
    failures += check_resources(
        [config.work_dir, config.install_prefix],
        disk_mb=config.min_disk_mb,
        ram_mb=config.min_ram_mb,
    )
    return failures
