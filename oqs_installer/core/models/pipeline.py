"""
Pipeline models — Step and PipelineRun.

A PipelineRun is created when an installation is invoked, mutated only
by the engine as steps complete, and serialised into the installation
report when it terminates.

Step states:
    PENDING → RUNNING → SUCCEEDED | FAILED
    SUCCEEDED → ROLLED_BACK   (only with explicit rollback opt-in)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from oqs_installer.core.models.command import CommandRecord


def now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return f"run-{now}-{uuid.uuid4().hex[:6]}"


class StepStatus(StrEnum):
    """Lifecycle of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RunStatus(StrEnum):
    """Overall status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepError(BaseModel):
    """Why a step failed."""

    kind: str                       # error category (network, build, ...)
    error_type: str                 # exception class name
    message: str
    output: str = ""
    command: str | None = None
    attempts: int = 1


class Step(BaseModel):
    """A named unit of work inside one pipeline run."""

    name: str
    description: str = ""
    requires: list[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING
    resumed: bool = False

    started_at: str | None = None
    ended_at: str | None = None
    duration_ms: int = 0

    commands: list[CommandRecord] = Field(default_factory=list)
    error: StepError | None = None
    notes: list[str] = Field(default_factory=list)

    def mark_running(self) -> None:
        self.status = StepStatus.RUNNING
        self.started_at = now_iso()

    def mark_finished(self, status: StepStatus, elapsed: float) -> None:
        self.status = status
        self.ended_at = now_iso()
        self.duration_ms = int(elapsed * 1000)


class PipelineRun(BaseModel):
    """One installation invocation."""

    run_id: str = Field(default_factory=generate_run_id)
    pipeline: str
    status: RunStatus = RunStatus.PENDING
    started_at: str = Field(default_factory=now_iso)
    ended_at: str | None = None
    log_file: str | None = None

    steps: list[Step] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    artifacts: dict[str, Any] = Field(default_factory=dict)
    cleanup_warnings: list[str] = Field(default_factory=list)

    def get_step(self, name: str) -> Step | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    @property
    def failed_step(self) -> Step | None:
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step
        return None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def steps_with_status(self, status: StepStatus) -> list[str]:
        return [s.name for s in self.steps if s.status == status]
