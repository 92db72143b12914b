"""
Dependency validation — tools, versions, privileges and resources.

Validation never installs anything.  ``install_packages`` is a separate,
explicit pipeline step; ``validate_tools`` runs after it and decides
whether the toolchain is good enough to build.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from oqs_installer.adapters.shell.command import CommandRunner
from oqs_installer.core.errors import CommandError, NetworkError, ValidationError
from oqs_installer.core.reliability.cancellation import CancelToken
from oqs_installer.core.reliability.retry import RetryPolicy, retry_call

logger = logging.getLogger(__name__)

_DEFAULT_VERSION_PATTERN = r"(\d+(?:\.\d+)+)"

# ── Package lists (Debian family) ───────────────────────────────

_BUILD_PACKAGES = [
    "build-essential",
    "autoconf",
    "automake",
    "libtool",
    "make",
    "cmake",
    "ninja-build",
    "pkg-config",
    "libssl-dev",
    "zlib1g-dev",
    "git",
]

SERVER_PACKAGES = _BUILD_PACKAGES + ["libpam0g-dev"]
CLIENT_PACKAGES = list(_BUILD_PACKAGES)


# ── Version comparison ──────────────────────────────────────────


def parse_version(version: str) -> tuple[int, ...]:
    """Numeric dot-separated segments of ``version``.

    A leading ``v`` and any non-numeric suffix are ignored:
    ``"v3.22.1-rc2"`` → ``(3, 22, 1)``.

    Raises:
        ValueError: No leading numeric segment.
    """
    match = re.match(r"v?(\d+(?:\.\d+)*)", version.strip())
    if not match:
        raise ValueError(f"Not a version string: {version!r}")
    return tuple(int(part) for part in match.group(1).split("."))


def compare_versions(a: str, b: str) -> int:
    """Component-wise comparison; a missing segment compares as 0.

    Returns:
        -1 if a < b, 0 if equal, 1 if a > b.
    """
    pa, pb = parse_version(a), parse_version(b)
    width = max(len(pa), len(pb))
    pa = pa + (0,) * (width - len(pa))
    pb = pb + (0,) * (width - len(pb))
    return (pa > pb) - (pa < pb)


def version_satisfies(installed: str, minimum: str) -> bool:
    return compare_versions(installed, minimum) >= 0


# ── Tool validation ─────────────────────────────────────────────


@dataclass(frozen=True)
class ToolRequirement:
    """A tool that must be on PATH, optionally at a minimum version."""

    name: str
    minimum_version: str | None = None
    version_args: tuple[str, ...] = ("--version",)
    version_pattern: str = _DEFAULT_VERSION_PATTERN


@dataclass(frozen=True)
class DependencyFailure:
    tool: str
    reason: str

    def __str__(self) -> str:
        return f"{self.tool}: {self.reason}"


BUILD_TOOLCHAIN: list[ToolRequirement] = [
    ToolRequirement("cmake", minimum_version="3.5"),
    ToolRequirement("ninja"),
    ToolRequirement("git", minimum_version="2.0"),
    ToolRequirement("make"),
    ToolRequirement("autoconf"),
    ToolRequirement("automake"),
    ToolRequirement("gcc"),
]


def detect_tool_version(
    runner: CommandRunner,
    requirement: ToolRequirement,
    executable: str,
) -> str | None:
    """Run the tool's version command and extract the version string.

    Some tools print their version on stderr, so both streams are searched.
    """
    result = runner.run(
        [executable, *requirement.version_args],
        tolerate_failure=True,
        timeout=30,
        label=f"{requirement.name} version",
    )
    output = f"{result.stdout}\n{result.stderr}"
    match = re.search(requirement.version_pattern, output)
    return match.group(1) if match else None


def validate_tools(
    requirements: Iterable[ToolRequirement],
    runner: CommandRunner,
) -> list[DependencyFailure]:
    """Check every requirement; an empty list means validation passed."""
    failures: list[DependencyFailure] = []

    for req in requirements:
        executable = runner.which(req.name)
        if executable is None:
            failures.append(DependencyFailure(req.name, "not found on PATH"))
            continue

        if req.minimum_version is None:
            continue

        version = detect_tool_version(runner, req, executable)
        if version is None:
            failures.append(DependencyFailure(req.name, "cannot determine installed version"))
        elif not version_satisfies(version, req.minimum_version):
            failures.append(
                DependencyFailure(
                    req.name,
                    f"version {version} < required {req.minimum_version}",
                )
            )
        else:
            logger.debug("%s %s satisfies >= %s", req.name, version, req.minimum_version)

    return failures


def require_tools(requirements: Iterable[ToolRequirement], runner: CommandRunner) -> None:
    """``validate_tools`` that raises ValidationError on any failure."""
    failures = validate_tools(requirements, runner)
    if failures:
        raise ValidationError(
            "Toolchain validation failed: " + "; ".join(str(f) for f in failures)
        )


# ── Host checks ─────────────────────────────────────────────────


def check_privileges(require_root: bool) -> list[DependencyFailure]:
    if require_root and os.geteuid() != 0:
        return [DependencyFailure("privileges", "must be run as root")]
    return []


def _read_available_ram_mb(meminfo: Path = Path("/proc/meminfo")) -> int | None:
    try:
        with meminfo.open(encoding="utf-8") as f:
            for line in f:
                if line.startswith("MemAvailable:"):
                    return int(line.split()[1]) // 1024
    except (OSError, ValueError, IndexError):
        return None
    return None


def _nearest_existing(path: Path) -> Path:
    current = path
    while not current.exists() and current != current.parent:
        current = current.parent
    return current


def check_resources(
    paths: Sequence[Path],
    *,
    disk_mb: int,
    ram_mb: int,
) -> list[DependencyFailure]:
    """Check free disk under each path and available RAM.

    RAM is skipped where ``/proc/meminfo`` is unavailable.
    """
    failures: list[DependencyFailure] = []

    seen: set[Path] = set()
    for path in paths:
        probe = _nearest_existing(path)
        if probe in seen:
            continue
        seen.add(probe)
        try:
            free_mb = shutil.disk_usage(probe).free // (1024 * 1024)
        except OSError as e:
            failures.append(DependencyFailure("disk", f"cannot check {probe}: {e}"))
            continue
        if free_mb < disk_mb:
            failures.append(
                DependencyFailure("disk", f"need {disk_mb}MB free at {probe}, have {free_mb}MB")
            )

    ram_free = _read_available_ram_mb()
    if ram_free is not None and ram_free < ram_mb:
        failures.append(DependencyFailure("memory", f"need {ram_mb}MB RAM, have {ram_free}MB"))

    return failures


def check_writable(paths: Sequence[Path]) -> list[DependencyFailure]:
    """Every path (or its nearest existing ancestor) must be writable."""
    failures = []
    for path in paths:
        probe = _nearest_existing(path)
        if not os.access(probe, os.W_OK):
            failures.append(DependencyFailure("filesystem", f"{probe} is not writable"))
    return failures


# ── Package installation ────────────────────────────────────────


@dataclass
class PackageInstallResult:
    manager: str | None
    installed: list[str] = field(default_factory=list)
    skipped_reason: str = ""


def detect_package_manager(runner: CommandRunner) -> str | None:
    """``apt-get`` on Debian-family hosts, otherwise None."""
    if Path("/etc/debian_version").exists() and runner.which("apt-get"):
        return "apt-get"
    return None


# apt-get / sudo output that means "not allowed", never transient
_PERMISSION_MARKERS = (
    "permission denied",
    "are you root",
    "a password is required",
    "not in the sudoers",
)


def _elevation(runner: CommandRunner) -> list[str]:
    """``sudo -n`` when not root, as the package manager needs root."""
    if os.geteuid() == 0:
        return []
    if runner.which("sudo"):
        return ["sudo", "-n"]
    raise ValidationError(
        "Installing packages needs root or passwordless sudo; "
        "rerun as root or pass --skip-packages"
    )


def _permission_denied(error: CommandError) -> bool:
    text = error.output.lower()
    return any(marker in text for marker in _PERMISSION_MARKERS)


def install_packages(
    runner: CommandRunner,
    packages: Sequence[str],
    policy: RetryPolicy,
    *,
    cancel: CancelToken | None = None,
    timeout: float | None = None,
    manager: str | None = None,
) -> PackageInstallResult:
    """Install build dependencies through the system package manager.

    On unsupported systems the packages are listed in a warning and the
    run continues; toolchain validation decides afterwards.

    Raises:
        ValidationError: Not root and no usable sudo (never retried).
        NetworkError: update/install kept failing after retries.
    """
    manager = manager or detect_package_manager(runner)
    if manager is None:
        logger.warning(
            "Non-Debian system detected; install these packages manually: %s",
            " ".join(packages),
        )
        return PackageInstallResult(manager=None, skipped_reason="unsupported package manager")

    prefix = _elevation(runner)
    env = {"DEBIAN_FRONTEND": "noninteractive"}

    def _apt(args: list[str], label: str) -> None:
        try:
            runner.run([*prefix, manager, *args], timeout=timeout, env_overrides=env, label=label)
        except CommandError as e:
            if _permission_denied(e):
                raise ValidationError(
                    f"{label} was refused: insufficient privileges", output=e.output
                ) from e
            raise NetworkError(f"{label} failed: {e}", output=e.output) from e

    retry_call(lambda: _apt(["update", "-y"], "apt-get update"), policy,
               cancel=cancel, retry_on=(NetworkError,), label="apt-get update")
    retry_call(lambda: _apt(["install", "-y", "--no-install-recommends", *packages],
                            "apt-get install"), policy,
               cancel=cancel, retry_on=(NetworkError,), label="apt-get install")

    logger.info("Installed %d packages via %s", len(packages), manager)
    return PackageInstallResult(manager=manager, installed=list(packages))
