"""
Domain models — Pydantic types for the installer.

All models are re-exported here for convenient access:

    from oqs_installer.core.models import Step, PipelineRun, CommandResult
"""

from oqs_installer.core.models.artifacts import (
    BuildArtifact,
    HostIdentity,
    ServiceUnit,
    SourceArtifact,
)
from oqs_installer.core.models.command import CommandRecord, CommandResult
from oqs_installer.core.models.pipeline import (
    PipelineRun,
    RunStatus,
    Step,
    StepError,
    StepStatus,
)

__all__ = [
    # artifacts.py
    "BuildArtifact",
    "HostIdentity",
    "ServiceUnit",
    "SourceArtifact",
    # command.py
    "CommandRecord",
    "CommandResult",
    # pipeline.py
    "PipelineRun",
    "RunStatus",
    "Step",
    "StepError",
    "StepStatus",
]
