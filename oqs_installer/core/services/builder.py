"""
Builder — configure / compile / install pipelines for fetched sources.

Two plan factories cover the upstream projects:

    cmake_plan      → liboqs        (cmake -GNinja, shared + PIC)
    autotools_plan  → OpenSSH fork  (autoreconf, ./configure, make -jN)

``run_build`` executes a plan in strict sequence and aborts on the first
failure.  Builds are never retried.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field

from oqs_installer.adapters.shell.command import CommandRunner
from oqs_installer.core.errors import (
    BuildArtifactMissing,
    BuildError,
    CommandError,
    CommandTimeout,
)
from oqs_installer.core.models.artifacts import BuildArtifact

logger = logging.getLogger(__name__)


class BuildPlan(BaseModel):
    """Everything needed to turn a source tree into installed files."""

    name: str
    source_dir: Path
    install_prefix: Path
    build_dir: Path | None = None          # cwd for configure/compile/install
    prepare: list[list[str]] = Field(default_factory=list)
    configure: list[str]
    compile: list[str]
    install: list[str]
    env: dict[str, str] = Field(default_factory=dict)
    command_timeout: float | None = 900.0
    compile_timeout: float | None = 3600.0
    expected_outputs: list[str] = Field(default_factory=list)

    @property
    def work_dir(self) -> Path:
        return self.build_dir if self.build_dir is not None else self.source_dir


def cmake_plan(
    name: str,
    source_dir: Path,
    install_prefix: Path,
    *,
    jobs: int,
    extra_args: list[str] | None = None,
    generator: str = "Ninja",
    command_timeout: float | None = 900.0,
    compile_timeout: float | None = 3600.0,
    expected_outputs: list[str] | None = None,
) -> BuildPlan:
    """Out-of-tree CMake build in ``<source>/build``."""
    build_dir = source_dir / "build"
    configure = [
        "cmake",
        "-S", str(source_dir),
        "-B", str(build_dir),
        f"-G{generator}",
        "-DCMAKE_BUILD_TYPE=Release",
        f"-DCMAKE_INSTALL_PREFIX={install_prefix}",
    ] + list(extra_args or [])

    return BuildPlan(
        name=name,
        source_dir=source_dir,
        install_prefix=install_prefix,
        build_dir=None,
        configure=configure,
        compile=["cmake", "--build", str(build_dir), "--parallel", str(jobs)],
        install=["cmake", "--install", str(build_dir)],
        command_timeout=command_timeout,
        compile_timeout=compile_timeout,
        expected_outputs=list(expected_outputs or []),
    )


def liboqs_plan(source_dir: Path, install_prefix: Path, *, jobs: int,
                command_timeout: float | None = 900.0,
                compile_timeout: float | None = 3600.0) -> BuildPlan:
    return cmake_plan(
        "liboqs",
        source_dir,
        install_prefix,
        jobs=jobs,
        extra_args=[
            "-DBUILD_SHARED_LIBS=ON",
            "-DCMAKE_POSITION_INDEPENDENT_CODE=ON",
            "-DOQS_BUILD_ONLY_LIB=ON",
        ],
        command_timeout=command_timeout,
        compile_timeout=compile_timeout,
        expected_outputs=["include/oqs/oqs.h"],
    )


def autotools_plan(
    name: str,
    source_dir: Path,
    install_prefix: Path,
    *,
    jobs: int,
    configure_args: list[str] | None = None,
    install_target: str = "install",
    env: dict[str, str] | None = None,
    command_timeout: float | None = 900.0,
    compile_timeout: float | None = 3600.0,
    expected_outputs: list[str] | None = None,
) -> BuildPlan:
    """In-tree ``autoreconf -i && ./configure && make -jN && make install``."""
    return BuildPlan(
        name=name,
        source_dir=source_dir,
        install_prefix=install_prefix,
        prepare=[["autoreconf", "-i"]],
        configure=["./configure", f"--prefix={install_prefix}"] + list(configure_args or []),
        compile=["make", f"-j{jobs}"],
        install=["make", install_target],
        env=dict(env or {}),
        command_timeout=command_timeout,
        compile_timeout=compile_timeout,
        expected_outputs=list(expected_outputs or []),
    )


def openssh_plan(
    source_dir: Path,
    install_prefix: Path,
    *,
    jobs: int,
    liboqs_prefix: Path,
    openssl_dir: Path,
    privsep_dir: Path | None = None,
    privsep_user: str | None = None,
    command_timeout: float | None = 900.0,
    compile_timeout: float | None = 3600.0,
) -> BuildPlan:
    """Build the OQS OpenSSH fork against liboqs.

    ``install-nokeys`` leaves host key creation to the key manager.
    """
    lib_dir = install_prefix / "lib"
    args = [
        f"--sysconfdir={install_prefix / 'etc'}",
        f"--with-liboqs-dir={liboqs_prefix}",
        f"--with-ssl-dir={openssl_dir}",
        f"--with-ldflags=-Wl,-rpath -Wl,{lib_dir}",
        "--with-libs=-lm",
        f"--with-cflags=-I{install_prefix / 'include'}",
    ]
    if privsep_dir is not None:
        args.append(f"--with-privsep-path={privsep_dir}")
    if privsep_user:
        args.append(f"--with-privsep-user={privsep_user}")

    return autotools_plan(
        "openssh",
        source_dir,
        install_prefix,
        jobs=jobs,
        configure_args=args,
        install_target="install-nokeys",
        env={
            "CPPFLAGS": f"-I{liboqs_prefix / 'include'}",
            "LDFLAGS": f"-L{liboqs_prefix / 'lib'}",
        },
        command_timeout=command_timeout,
        compile_timeout=compile_timeout,
        expected_outputs=["sbin/sshd", "bin/ssh", "bin/ssh-keygen"],
    )


def _run_phase(
    plan: BuildPlan,
    runner: CommandRunner,
    phase: str,
    argv: list[str],
    timeout: float | None,
) -> None:
    label = f"{plan.name}: {phase}"
    logger.info("[%s] %s", plan.name, phase)
    try:
        runner.run(
            argv,
            cwd=plan.work_dir,
            timeout=timeout,
            env_overrides=plan.env or None,
            label=label,
        )
    except CommandTimeout as e:
        raise BuildError(
            f"{plan.name} {phase} exceeded {timeout}s and was stopped",
            output=e.output,
        ) from e
    except CommandError as e:
        raise BuildError(f"{plan.name} {phase} failed: {e.message}", output=e.output) from e


def run_build(plan: BuildPlan, runner: CommandRunner) -> BuildArtifact:
    """Run prepare → configure → compile → install, then verify outputs.

    Raises:
        BuildError: Any phase failed (carries the command's output).
        BuildArtifactMissing: Phases succeeded but outputs are absent.
    """
    if not plan.source_dir.is_dir():
        raise BuildError(f"Source tree for {plan.name} not found: {plan.source_dir}")

    plan.install_prefix.mkdir(parents=True, exist_ok=True)

    for argv in plan.prepare:
        _run_phase(plan, runner, "prepare", argv, plan.command_timeout)
    _run_phase(plan, runner, "configure", plan.configure, plan.command_timeout)
    _run_phase(plan, runner, "compile", plan.compile, plan.compile_timeout)
    _run_phase(plan, runner, "install", plan.install, plan.command_timeout)

    verify_outputs(plan.install_prefix, plan.expected_outputs)

    return BuildArtifact(
        name=plan.name,
        install_prefix=str(plan.install_prefix),
        source_path=str(plan.source_dir),
        outputs=[str(plan.install_prefix / rel) for rel in plan.expected_outputs],
    )


def verify_outputs(prefix: Path, expected: list[str]) -> None:
    """Raise BuildArtifactMissing listing every expected file that is absent."""
    missing = [rel for rel in expected if not (prefix / rel).exists()]
    if missing:
        raise BuildArtifactMissing([str(prefix / rel) for rel in missing])


def run_self_tests(
    source_dir: Path,
    runner: CommandRunner,
    *,
    script: str = "oqs-test/run_tests.sh",
    timeout: float | None = 3600.0,
) -> bool:
    """Run the fork's bundled test script if present.

    Returns:
        True if tests ran, False if the script does not exist.
    """
    test_script = source_dir / script
    if not test_script.is_file():
        logger.info("Test script %s not found; skipping tests", test_script)
        return False
    try:
        runner.run(["bash", str(test_script)], cwd=source_dir, timeout=timeout, label="self-tests")
    except CommandError as e:
        raise BuildError(f"Self-tests failed: {e.message}", output=e.output) from e
    return True
