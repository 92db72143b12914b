"""
Pipeline engine — the orchestration loop for one installation run.

A Pipeline is a declared, ordered list of steps.  Running it produces a
PipelineRun whose steps move through:

    PENDING → RUNNING → SUCCEEDED | FAILED
    SUCCEEDED → ROLLED_BACK   (rollback opt-in only)

Flow:
    for each step in order:
        requires all succeeded? → run action → record artifact
    first failure → stop, later steps stay PENDING
                  → cleanups (reverse registration order, warnings only)
                  → rollback of succeeded steps (opt-in, reverse order)

This is the only place that catches InstallerError.  Everything below
raises; everything above reads the PipelineRun.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from oqs_installer.adapters.shell.command import CommandRunner
from oqs_installer.core.errors import CommandError, InstallerError, ServiceError
from oqs_installer.core.models.command import CommandRecord
from oqs_installer.core.models.pipeline import (
    PipelineRun,
    RunStatus,
    Step,
    StepError,
    StepStatus,
    now_iso,
)
from oqs_installer.core.reliability.cancellation import CancelToken

if TYPE_CHECKING:
    from oqs_installer.core.config.loader import InstallConfig
    from oqs_installer.core.persistence.ledger import CommandLedger

logger = logging.getLogger(__name__)

StepAction = Callable[["StepContext"], Any]
RollbackAction = Callable[["StepContext"], None]
CleanupAction = Callable[[], None]


@dataclass
class StepDefinition:
    """A declared step: what to run and what it depends on."""

    name: str
    action: StepAction
    requires: tuple[str, ...] = ()
    description: str = ""
    rollback: RollbackAction | None = None


@dataclass
class StepContext:
    """Everything a step action may use.

    ``artifacts`` is the run's artifact mapping; a step's return value is
    stored there under the step name.
    """

    config: InstallConfig
    runner: CommandRunner
    cancel: CancelToken
    run: PipelineRun
    step: Step
    cleanups: list[tuple[str, CleanupAction]] = field(default_factory=list)

    @property
    def artifacts(self) -> dict[str, Any]:
        return self.run.artifacts

    def add_cleanup(self, description: str, fn: CleanupAction) -> None:
        """Register an action to run if the pipeline fails."""
        self.cleanups.append((description, fn))

    def note(self, message: str) -> None:
        self.step.notes.append(message)
        logger.info("[%s] %s", self.step.name, message)


def _failed_command(error: BaseException) -> str | None:
    """Walk the cause chain for the command that failed, if any."""
    current: BaseException | None = error
    while current is not None:
        if isinstance(current, CommandError) and current.result is not None:
            return current.result.display
        current = current.__cause__
    return None


def _to_step_error(error: BaseException) -> StepError:
    if isinstance(error, InstallerError):
        return StepError(
            kind=error.category,
            error_type=type(error).__name__,
            message=error.message,
            output=error.output,
            command=_failed_command(error),
            attempts=error.attempts,
        )
    return StepError(
        kind="internal",
        error_type=type(error).__name__,
        message=str(error) or type(error).__name__,
    )


def _artifact_value(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if isinstance(result, list) and result and all(isinstance(r, BaseModel) for r in result):
        return [r.model_dump(mode="json") for r in result]
    return result


class Pipeline:
    """An ordered list of named steps.

    Usage::

        pipeline = Pipeline("server")
        pipeline.add_step("fetch", fetch, description="Fetch sources")
        pipeline.add_step("build", build, requires=("fetch",))
        run = pipeline.run(config, runner)
    """

    def __init__(self, name: str):
        self.name = name
        self._steps: list[StepDefinition] = []

    @property
    def steps(self) -> list[StepDefinition]:
        return list(self._steps)

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self._steps]

    def add_step(
        self,
        name: str,
        action: StepAction,
        *,
        requires: Iterable[str] = (),
        description: str = "",
        rollback: RollbackAction | None = None,
    ) -> Pipeline:
        """Declare a step after all existing ones.

        Raises:
            ValueError: Duplicate name, or ``requires`` names a step that
                is not declared earlier.
        """
        known = set(self.step_names)
        if name in known:
            raise ValueError(f"Step '{name}' is already declared in pipeline '{self.name}'")
        requires = tuple(requires)
        unknown = [r for r in requires if r not in known]
        if unknown:
            raise ValueError(
                f"Step '{name}' requires undeclared step(s): {', '.join(unknown)}"
            )
        self._steps.append(
            StepDefinition(
                name=name,
                action=action,
                requires=requires,
                description=description,
                rollback=rollback,
            )
        )
        return self

    def describe(self) -> list[dict[str, Any]]:
        """The plan without running anything (``--dry-run``)."""
        return [
            {
                "name": s.name,
                "description": s.description,
                "requires": list(s.requires),
                "rollback": s.rollback is not None,
            }
            for s in self._steps
        ]

    def new_run(self, config: InstallConfig) -> PipelineRun:
        """A PipelineRun with every declared step PENDING."""
        return PipelineRun(
            pipeline=self.name,
            config=config.public_dict(),
            log_file=str(config.effective_log_file),
            steps=[
                Step(name=s.name, description=s.description, requires=list(s.requires))
                for s in self._steps
            ],
        )

    # ── Execution ───────────────────────────────────────────────

    def run(
        self,
        config: InstallConfig,
        runner: CommandRunner,
        *,
        cancel: CancelToken | None = None,
        ledger: CommandLedger | None = None,
        resume: Iterable[str] = (),
        carried_artifacts: Mapping[str, Any] | None = None,
        run: PipelineRun | None = None,
    ) -> PipelineRun:
        """Execute the steps in declaration order.

        Args:
            config: The run's immutable configuration.
            runner: Command runner shared by every step.
            cancel: Cancellation token (default: the runner's).
            ledger: Optional NDJSON ledger for command records.
            resume: Step names that succeeded in a previous run; they are
                marked SUCCEEDED without running.
            carried_artifacts: Artifacts of the previous run, copied for
                resumed steps.
            run: Pre-created run (see ``new_run``).

        Returns:
            The finished PipelineRun.  Failures are recorded on it,
            never raised.
        """
        cancel = cancel or runner.cancel
        run = run or self.new_run(config)
        resume = set(resume)
        carried = dict(carried_artifacts or {})

        run.status = RunStatus.RUNNING
        cleanups: list[tuple[str, CleanupAction]] = []
        completed: list[tuple[StepDefinition, StepContext]] = []
        active: list[Step] = []

        def sink(record: CommandRecord) -> None:
            step = active[-1] if active else None
            record = record.model_copy(
                update={"step": step.name if step else "cleanup", "run_id": run.run_id}
            )
            if step is not None:
                step.commands.append(record)
            if ledger is not None:
                ledger.write(record)

        logger.info("Pipeline %s started (run %s, %d steps)", self.name, run.run_id,
                    len(self._steps))

        failed = False
        with runner.recording(sink):
            for definition in self._steps:
                step = run.get_step(definition.name)

                if definition.name in resume:
                    step.status = StepStatus.SUCCEEDED
                    step.resumed = True
                    if definition.name in carried:
                        run.artifacts[definition.name] = carried[definition.name]
                    logger.info("[%s] already succeeded in a previous run; skipping",
                                definition.name)
                    continue

                unmet = [
                    r for r in definition.requires
                    if run.get_step(r).status != StepStatus.SUCCEEDED
                ]
                if unmet:
                    step.error = StepError(
                        kind="dependency",
                        error_type="UnmetRequirement",
                        message=f"required step(s) not succeeded: {', '.join(unmet)}",
                    )
                    step.mark_finished(StepStatus.FAILED, 0.0)
                    failed = True
                    break

                ctx = StepContext(config=config, runner=runner, cancel=cancel, run=run, step=step)
                active.append(step)
                step.mark_running()
                logger.info("[%s] %s", step.name, step.description or "running")
                start = time.monotonic()
                try:
                    cancel.raise_if_cancelled()
                    result = definition.action(ctx)
                except Exception as e:
                    cleanups.extend(ctx.cleanups)
                    step.error = _to_step_error(e)
                    step.mark_finished(StepStatus.FAILED, time.monotonic() - start)
                    if isinstance(e, InstallerError) and e.step is None:
                        e.step = step.name
                    self._log_failure(step, e)
                    failed = True
                    break
                finally:
                    active.pop()

                cleanups.extend(ctx.cleanups)
                if result is not None:
                    run.artifacts[step.name] = _artifact_value(result)
                step.mark_finished(StepStatus.SUCCEEDED, time.monotonic() - start)
                completed.append((definition, ctx))
                logger.info("[%s] succeeded in %.1fs", step.name, step.duration_ms / 1000)

            if failed:
                with runner.shielded():
                    self._run_cleanups(run, cleanups)
                    if config.rollback_on_failure:
                        self._rollback(run, completed)

        run.status = RunStatus.FAILED if failed else RunStatus.SUCCEEDED
        run.ended_at = now_iso()
        logger.info("Pipeline %s finished: %s", self.name, run.status.value)
        return run

    @staticmethod
    def _log_failure(step: Step, error: BaseException) -> None:
        details = step.error
        log = logger.warning if isinstance(error, ServiceError) else logger.error
        if not isinstance(error, InstallerError):
            logger.error("[%s] unexpected error", step.name, exc_info=error)
        log("[%s] failed (%s): %s", step.name, details.kind, details.message)
        if details.command:
            log("[%s] command: %s", step.name, details.command)
        if details.output:
            log("[%s] output:\n%s", step.name, details.output.rstrip())

    @staticmethod
    def _run_cleanups(run: PipelineRun, cleanups: list[tuple[str, CleanupAction]]) -> None:
        for description, fn in reversed(cleanups):
            logger.info("Cleanup: %s", description)
            try:
                fn()
            except Exception as e:
                warning = f"{description}: {e}"
                run.cleanup_warnings.append(warning)
                logger.warning("Cleanup failed: %s", warning)

    @staticmethod
    def _rollback(
        run: PipelineRun,
        completed: list[tuple[StepDefinition, StepContext]],
    ) -> None:
        for definition, ctx in reversed(completed):
            if definition.rollback is None:
                continue
            logger.warning("Rolling back step %s", definition.name)
            try:
                definition.rollback(ctx)
            except Exception as e:
                warning = f"rollback of {definition.name}: {e}"
                run.cleanup_warnings.append(warning)
                logger.warning("Rollback failed: %s", warning)
                continue
            ctx.step.status = StepStatus.ROLLED_BACK
