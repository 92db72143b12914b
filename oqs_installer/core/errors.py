"""
Error taxonomy — every failure the installer can report.

Components raise these; the pipeline engine is the single place that
catches them and turns them into a ``StepError`` on the failing step.
Each category carries a stable process exit code for scripting consumers:

    generic     1     (CommandFailed, CommandTimeout, uncategorised)
    validation  10    (missing tools, privileges, resources)
    network     11    (fetch / package download failures)
    build       12    (configure / compile / install, missing outputs)
    config      13    (template rendering, self-test, option values)
    key         14    (key generation)
    service     15    (unit never reached "active")
    lock        16    (another run holds the install prefix)
    cancelled   130   (SIGINT / SIGTERM)
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from oqs_installer.core.models.command import CommandResult


class InstallerError(Exception):
    """Base class for all installer failures."""

    category: str = "generic"
    exit_code: int = 1

    def __init__(self, message: str, *, output: str = "", step: str | None = None):
        super().__init__(message)
        self.message = message
        self.output = output
        self.step = step
        self.attempts = 1

    def __str__(self) -> str:
        if self.attempts > 1:
            return f"{self.message} (after {self.attempts} attempts)"
        return self.message


# ── Command execution ───────────────────────────────────────────


class CommandError(InstallerError):
    """An external command did not complete successfully."""

    def __init__(self, message: str, result: CommandResult | None = None, **kwargs):
        if result is not None and "output" not in kwargs:
            kwargs["output"] = result.combined_output
        super().__init__(message, **kwargs)
        self.result = result


class CommandFailed(CommandError):
    """Non-zero exit status."""


class CommandTimeout(CommandError):
    """The command exceeded its timeout and its process group was killed."""


class Cancelled(InstallerError):
    """An external cancellation signal was observed."""

    category = "cancelled"
    exit_code = 130


# ── Categories ──────────────────────────────────────────────────


class ValidationError(InstallerError):
    """Missing or insufficient tool, resource, or privilege. Never retried."""

    category = "validation"
    exit_code = 10


class NetworkError(InstallerError):
    """A fetch or download failed."""

    category = "network"
    exit_code = 11


class FetchFailed(NetworkError):
    """Both the primary and the fallback source could not be fetched."""

    def __init__(self, message: str, sources: Sequence[str] = (), **kwargs):
        super().__init__(message, **kwargs)
        self.sources = list(sources)


class BuildError(InstallerError):
    """configure / compile / install failed."""

    category = "build"
    exit_code = 12


class BuildArtifactMissing(BuildError):
    """The build finished but expected output files are absent."""

    def __init__(self, missing: Sequence[str], **kwargs):
        self.missing = list(missing)
        super().__init__(
            "Expected build outputs missing: " + ", ".join(self.missing), **kwargs
        )


class ConfigError(InstallerError):
    """Configuration values, template rendering, or config self-test."""

    category = "config"
    exit_code = 13


class UnresolvedPlaceholder(ConfigError):
    """A template placeholder had no value in the supplied mapping."""

    def __init__(self, names: Sequence[str], **kwargs):
        self.names = list(names)
        super().__init__(
            "Unresolved template placeholder(s): " + ", ".join(self.names), **kwargs
        )


class ConfigValidationFailed(ConfigError):
    """The external config checker rejected the rendered file."""


class KeyGenerationFailed(InstallerError):
    """The key-generation command failed or produced no key files."""

    category = "key"
    exit_code = 14


class ServiceError(InstallerError):
    """The supervised service could not be brought up."""

    category = "service"
    exit_code = 15


class ServiceStartFailed(ServiceError):
    """The unit did not reach ``active`` within the polling budget."""


class LockHeld(InstallerError):
    """Another installation run owns the install prefix."""

    category = "lock"
    exit_code = 16


# ── Exit codes ──────────────────────────────────────────────────

EXIT_CODES: dict[str, int] = {
    cls.category: cls.exit_code
    for cls in (
        InstallerError,
        Cancelled,
        ValidationError,
        NetworkError,
        BuildError,
        ConfigError,
        KeyGenerationFailed,
        ServiceError,
        LockHeld,
    )
}


def exit_code_for(category: str) -> int:
    """Process exit code for an error category (1 when unknown)."""
    return EXIT_CODES.get(category, InstallerError.exit_code)
