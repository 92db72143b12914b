"""
Shared steps — what the server and client installs have in common.

Both roles check the host, install packages, validate the toolchain,
then fetch and build liboqs and the OpenSSH fork into the same prefix.
Step actions take a StepContext and return the artifact to record.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from pathlib import Path

from oqs_installer.adapters.shell.filesystem import remove_path
from oqs_installer.core.config.loader import InstallConfig
from oqs_installer.core.engine.pipeline import Pipeline, StepContext
from oqs_installer.core.errors import ValidationError
from oqs_installer.core.models.artifacts import BuildArtifact, SourceArtifact
from oqs_installer.core.reliability.retry import RetryPolicy
from oqs_installer.core.services.builder import (
    liboqs_plan,
    openssh_plan,
    run_build,
    run_self_tests,
)
from oqs_installer.core.services.dependencies import (
    BUILD_TOOLCHAIN,
    check_privileges,
    check_resources,
    check_writable,
    install_packages,
    require_tools,
)
from oqs_installer.core.services.fetcher import FetchRequest, fetch_source

logger = logging.getLogger(__name__)


def retry_policy(config: InstallConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retries,
        delay=config.retry_delay,
        backoff_multiplier=config.retry_backoff,
    )


def liboqs_source_dir(config: InstallConfig) -> Path:
    return config.work_dir / "liboqs"


def openssh_source_dir(config: InstallConfig) -> Path:
    return config.work_dir / "openssh"


# ── Steps ───────────────────────────────────────────────────────


def preflight(ctx: StepContext, *, require_root: bool) -> dict:
    """Privileges, free disk and RAM, writable target directories."""
    config = ctx.config
    targets = [config.work_dir, config.install_prefix, config.state_dir, config.backup_dir]

    failures = check_privileges(require_root)
    failures += check_resources(
        [config.work_dir, config.install_prefix],
        disk_mb=config.min_disk_mb,
        ram_mb=config.min_ram_mb,
    )
    failures += check_writable(targets)
    if failures:
        raise ValidationError("Preflight checks failed: " + "; ".join(str(f) for f in failures))

    return {"checked": [str(p) for p in targets]}


def install_build_packages(ctx: StepContext, packages: list[str]) -> dict | None:
    if ctx.config.skip_packages:
        ctx.note("package installation skipped (--skip-packages)")
        return None
    result = install_packages(
        ctx.runner,
        packages,
        retry_policy(ctx.config),
        cancel=ctx.cancel,
        timeout=ctx.config.timeout,
    )
    if result.skipped_reason:
        ctx.note(f"packages not installed: {result.skipped_reason}")
    return asdict(result)


def validate_toolchain(ctx: StepContext) -> None:
    require_tools(BUILD_TOOLCHAIN, ctx.runner)


def _fetch(ctx: StepContext, name: str, url: str, fallback: str | None,
           ref: str, destination: Path) -> SourceArtifact:
    config = ctx.config
    request = FetchRequest(
        name=name,
        primary_url=url,
        fallback_url=fallback,
        version_ref=ref,
        destination=destination,
        depth=config.clone_depth or None,
        backup_existing=config.backup_sources,
        backup_dir=config.backup_dir / "sources",
        timeout=config.timeout,
    )
    artifact = fetch_source(request, ctx.runner, retry_policy(config), cancel=ctx.cancel)
    if artifact.used_fallback:
        ctx.note(f"{name} fetched from fallback {artifact.repository_url}")
    return artifact


def fetch_liboqs(ctx: StepContext) -> SourceArtifact:
    config = ctx.config
    return _fetch(ctx, "liboqs", config.liboqs_repo, config.liboqs_fallback_repo,
                  config.liboqs_version, liboqs_source_dir(config))


def fetch_openssh(ctx: StepContext) -> SourceArtifact:
    config = ctx.config
    return _fetch(ctx, "openssh", config.ssh_repo, config.ssh_fallback_repo,
                  config.ssh_version, openssh_source_dir(config))


def build_liboqs(ctx: StepContext) -> BuildArtifact:
    config = ctx.config
    plan = liboqs_plan(
        liboqs_source_dir(config),
        config.install_prefix,
        jobs=config.jobs,
        command_timeout=config.timeout,
        compile_timeout=config.compile_timeout,
    )
    build_dir = plan.source_dir / "build"
    ctx.add_cleanup(f"remove liboqs build directory {build_dir}", lambda: remove_path(build_dir))
    return run_build(plan, ctx.runner)


def build_openssh(ctx: StepContext, *, with_privsep: bool) -> BuildArtifact:
    config = ctx.config
    plan = openssh_plan(
        openssh_source_dir(config),
        config.install_prefix,
        jobs=config.jobs,
        liboqs_prefix=config.install_prefix,
        openssl_dir=config.openssl_dir,
        privsep_dir=config.privsep_dir if with_privsep else None,
        privsep_user=config.sshd_user if with_privsep else None,
        command_timeout=config.timeout,
        compile_timeout=config.compile_timeout,
    )
    source_dir = plan.source_dir
    ctx.add_cleanup(
        f"make clean in {source_dir}",
        lambda: ctx.runner.run(["make", "clean"], cwd=source_dir,
                               tolerate_failure=True, timeout=300, label="make clean"),
    )
    return run_build(plan, ctx.runner)


def test_openssh(ctx: StepContext) -> dict:
    ran = run_self_tests(
        openssh_source_dir(ctx.config),
        ctx.runner,
        timeout=ctx.config.compile_timeout,
    )
    if not ran:
        ctx.note("no bundled test script; tests skipped")
    return {"ran": ran}


def remove_install_prefix(ctx: StepContext) -> None:
    """Rollback: delete everything installed under the prefix."""
    prefix = ctx.config.install_prefix
    if remove_path(prefix):
        logger.warning("Removed install prefix %s", prefix)


# ── Pipeline assembly ───────────────────────────────────────────


def add_host_steps(pipeline: Pipeline, *, packages: list[str], require_root: bool) -> None:
    """preflight → packages → toolchain."""
    pipeline.add_step(
        "preflight",
        lambda ctx: preflight(ctx, require_root=require_root),
        description="Check privileges, disk, memory and writable paths",
    )
    pipeline.add_step(
        "packages",
        lambda ctx: install_build_packages(ctx, packages),
        requires=("preflight",),
        description="Install build dependencies",
    )
    pipeline.add_step(
        "toolchain",
        validate_toolchain,
        requires=("packages",),
        description="Validate build toolchain versions",
    )


def add_source_steps(
    pipeline: Pipeline,
    config: InstallConfig,
    *,
    after: tuple[str, ...],
    with_privsep: bool,
) -> str:
    """fetch/build liboqs and OpenSSH, then test. Returns the last step name.

    ``after`` lists the steps both fetches depend on.
    """
    pipeline.add_step(
        "fetch-liboqs",
        fetch_liboqs,
        requires=after,
        description=f"Fetch liboqs {config.liboqs_version}",
    )
    pipeline.add_step(
        "build-liboqs",
        build_liboqs,
        requires=("fetch-liboqs",),
        description=f"Build liboqs into {config.install_prefix}",
        rollback=remove_install_prefix,
    )
    pipeline.add_step(
        "fetch-openssh",
        fetch_openssh,
        requires=after,
        description=f"Fetch OpenSSH fork {config.ssh_version}",
    )
    pipeline.add_step(
        "build-openssh",
        lambda ctx: build_openssh(ctx, with_privsep=with_privsep),
        requires=("build-liboqs", "fetch-openssh"),
        description=f"Build OpenSSH into {config.install_prefix}",
    )
    last = "build-openssh"
    if not config.skip_tests:
        pipeline.add_step(
            "test-openssh",
            test_openssh,
            requires=("build-openssh",),
            description="Run the bundled OpenSSH test script",
        )
        last = "test-openssh"
    return last
