"""
Server install — build the fork and run it as a second sshd.

Steps:
    preflight → packages → toolchain → privsep-account
    → fetch-liboqs → build-liboqs → fetch-openssh → build-openssh
    → test-openssh → host-keys → sshd-config → logrotate → service

The stock sshd on port 22 is never touched; the quantum-safe daemon
listens on its own port with its own config, keys and unit.
"""

from __future__ import annotations

import logging
import shutil

from oqs_installer.adapters.shell.filesystem import remove_path
from oqs_installer.core.config.loader import InstallConfig
from oqs_installer.core.engine.pipeline import Pipeline, StepContext
from oqs_installer.core.models.artifacts import HostIdentity, ServiceUnit
from oqs_installer.core.services.accounts import ensure_directory, ensure_group, ensure_user
from oqs_installer.core.services.dependencies import SERVER_PACKAGES
from oqs_installer.core.services.keys import KeySpec, generate_key_pair
from oqs_installer.core.services.registrar import ServiceSpec, disable_service, register_service
from oqs_installer.core.services.renderer import PATH_TOKEN, render_to_file
from oqs_installer.core.use_cases.common import add_host_steps, add_source_steps

logger = logging.getLogger(__name__)

SSHD_CONFIG_MODE = 0o644
HOST_KEY_DIR_MODE = 0o755


def privsep_account(ctx: StepContext) -> dict:
    """sshd's unprivileged user, group and empty chroot directory."""
    config = ctx.config
    created = []
    if ensure_group(ctx.runner, config.sshd_group):
        created.append(f"group:{config.sshd_group}")
    if ensure_user(ctx.runner, config.sshd_user, config.sshd_group, home=config.privsep_dir):
        created.append(f"user:{config.sshd_user}")
    ensure_directory(config.privsep_dir, 0o755, "root:root")
    return {
        "user": config.sshd_user,
        "group": config.sshd_group,
        "privsep_dir": str(config.privsep_dir),
        "created": created,
    }


def host_keys(ctx: StepContext) -> list[HostIdentity]:
    config = ctx.config
    ensure_directory(config.host_key_dir, HOST_KEY_DIR_MODE)
    backup_dir = config.backup_dir / "keys"

    identities = [
        generate_key_pair(
            KeySpec(
                keygen=config.keygen_binary,
                algorithm=config.host_key_algorithm,
                private_path=config.host_key_path,
                comment=f"{config.service_name} host key",
                skip_if_exists=not config.force,
            ),
            ctx.runner,
            backup_dir=backup_dir,
        )
    ]

    # Classic key for the stock sshd; created only when missing.
    classic = config.classic_host_key_path
    if classic is not None:
        identities.append(
            generate_key_pair(
                KeySpec(
                    keygen=config.keygen_binary,
                    algorithm=config.classic_host_key_algorithm,
                    private_path=classic,
                    skip_if_exists=True,
                ),
                ctx.runner,
                backup_dir=backup_dir,
            )
        )

    for identity in identities:
        state = "kept" if identity.reused else "generated"
        ctx.note(f"{identity.algorithm} host key {state}: {identity.private_key}")
    return identities


def sshd_config_values(config: InstallConfig) -> dict[str, object]:
    return {
        "PORT": config.port,
        "LISTEN_ADDRESS": config.listen_address,
        "HOST_KEY_PATH": config.host_key_path,
        "HOST_KEY_ALGORITHMS": config.host_key_algorithm,
        "KEX_ALGORITHMS": config.kex_algorithms,
        "PUBKEY_ALGORITHMS": config.host_key_algorithm,
        "PID_FILE": config.pid_file,
        "PASSWORD_AUTHENTICATION": config.password_authentication,
    }


def sshd_config(ctx: StepContext) -> dict:
    config = ctx.config
    dest = config.sshd_config_path
    backup = render_to_file(
        "sshd_config.tmpl",
        sshd_config_values(config),
        dest,
        runner=ctx.runner,
        mode=SSHD_CONFIG_MODE,
        self_test=[str(config.sshd_binary), "-t", "-f", PATH_TOKEN],
        backup_dir=config.backup_dir / "config",
        template_dir=config.template_dir,
    )
    return {"path": str(dest), "backup": str(backup) if backup else None}


def restore_sshd_config(ctx: StepContext) -> None:
    """Rollback: put the previous config back, or remove ours."""
    previous = (ctx.artifacts.get("sshd-config") or {}).get("backup")
    dest = ctx.config.sshd_config_path
    if previous:
        shutil.copy2(previous, dest)
        logger.warning("Restored %s from %s", dest, previous)
    elif remove_path(dest):
        logger.warning("Removed %s", dest)


def logrotate(ctx: StepContext) -> dict:
    config = ctx.config
    dest = config.logrotate_dir / config.service_name
    render_to_file(
        "logrotate.tmpl",
        {"LOG_FILE": config.sshd_log_file},
        dest,
        runner=ctx.runner,
        mode=0o644,
        backup_dir=config.backup_dir / "config",
        template_dir=config.template_dir,
    )
    return {"path": str(dest)}


def service_spec(config: InstallConfig) -> ServiceSpec:
    return ServiceSpec(
        name=config.service_name,
        values={
            "SERVICE_NAME": config.service_name,
            "SERVICE_USER": config.service_user,
            "SERVICE_GROUP": config.service_group,
            "LIB_DIR": config.lib_dir,
            "SSHD_BINARY": config.sshd_binary,
            "CONFIG_PATH": config.sshd_config_path,
            "LOG_FILE": config.sshd_log_file,
            "RESTART_POLICY": config.restart_policy,
        },
        unit_dir=config.unit_dir,
        poll_attempts=config.service_poll_attempts,
        poll_delay=config.service_poll_delay,
        backup_dir=config.backup_dir / "units",
        template_dir=config.template_dir,
    )


def service(ctx: StepContext) -> ServiceUnit:
    unit = register_service(service_spec(ctx.config), ctx.runner, cancel=ctx.cancel)
    ctx.note(f"{unit.name} is {unit.state} on port {ctx.config.port}")
    return unit


def build_server_pipeline(config: InstallConfig) -> Pipeline:
    pipeline = Pipeline("server")
    add_host_steps(pipeline, packages=SERVER_PACKAGES, require_root=True)
    pipeline.add_step(
        "privsep-account",
        privsep_account,
        requires=("toolchain",),
        description=f"Ensure privilege separation user {config.sshd_user}",
    )
    last = add_source_steps(pipeline, config, after=("privsep-account",), with_privsep=True)
    pipeline.add_step(
        "host-keys",
        host_keys,
        requires=(last,),
        description=f"Generate {config.host_key_algorithm} host key",
    )
    pipeline.add_step(
        "sshd-config",
        sshd_config,
        requires=("host-keys",),
        description=f"Render {config.sshd_config_path}",
        rollback=restore_sshd_config,
    )
    pipeline.add_step(
        "logrotate",
        logrotate,
        requires=("sshd-config",),
        description=f"Rotate {config.sshd_log_file}",
    )
    if not config.no_service:
        pipeline.add_step(
            "service",
            service,
            requires=("sshd-config",),
            description=f"Register and start {config.service_name}",
            rollback=lambda ctx: disable_service(service_spec(ctx.config), ctx.runner),
        )
    return pipeline
