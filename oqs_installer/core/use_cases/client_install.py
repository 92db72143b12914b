"""
Client install — build the fork, create a user key and a host alias.

Steps:
    preflight → packages → toolchain
    → fetch-liboqs → build-liboqs → fetch-openssh → build-openssh
    → test-openssh → client-key → client-config

The generated config lives in its own file and is used with
``ssh -F <config> <alias>``; ``~/.ssh/config`` is left alone.
"""

from __future__ import annotations

import getpass
import logging

from oqs_installer.core.config.loader import InstallConfig
from oqs_installer.core.engine.pipeline import Pipeline, StepContext
from oqs_installer.core.errors import ConfigError
from oqs_installer.core.models.artifacts import HostIdentity
from oqs_installer.core.services.accounts import ensure_directory
from oqs_installer.core.services.dependencies import CLIENT_PACKAGES
from oqs_installer.core.services.keys import KeySpec, generate_key_pair
from oqs_installer.core.services.renderer import PATH_TOKEN, render_to_file
from oqs_installer.core.use_cases.common import add_host_steps, add_source_steps

logger = logging.getLogger(__name__)

SSH_DIR_MODE = 0o700
CLIENT_CONFIG_MODE = 0o600


def host_alias(config: InstallConfig) -> str:
    return config.host_alias or f"{config.server_host or 'oqs-server'}-oqs"


def client_key(ctx: StepContext) -> HostIdentity:
    config = ctx.config
    key_path = config.identity_path
    ensure_directory(key_path.parent, SSH_DIR_MODE)
    identity = generate_key_pair(
        KeySpec(
            keygen=config.keygen_binary,
            algorithm=config.host_key_algorithm,
            private_path=key_path,
            comment=f"{getpass.getuser()}@oqs-client",
            skip_if_exists=not config.force,
        ),
        ctx.runner,
        backup_dir=config.backup_dir / "keys",
    )
    ctx.note(f"public key to authorize on the server: {identity.public_key}")
    return identity


def client_config_values(config: InstallConfig) -> dict[str, object]:
    if not config.server_host:
        raise ConfigError("server_host is required for the client config (--server-host)")
    return {
        "SSH_BINARY": config.ssh_binary,
        "CONFIG_PATH": config.client_config_path,
        "HOST_ALIAS": host_alias(config),
        "SERVER_HOST": config.server_host,
        "SERVER_PORT": config.effective_server_port,
        "SERVER_USER": config.server_user or getpass.getuser(),
        "HOST_KEY_ALGORITHMS": config.host_key_algorithm,
        "KEX_ALGORITHMS": config.kex_algorithms,
        "PUBKEY_ALGORITHMS": config.host_key_algorithm,
        "IDENTITY_FILE": config.identity_path,
    }


def client_config(ctx: StepContext) -> dict:
    config = ctx.config
    values = client_config_values(config)
    dest = config.client_config_path
    alias = values["HOST_ALIAS"]
    ensure_directory(dest.parent, SSH_DIR_MODE)
    backup = render_to_file(
        "ssh_config.tmpl",
        values,
        dest,
        runner=ctx.runner,
        mode=CLIENT_CONFIG_MODE,
        # ssh -G parses the file and prints the resolved options
        self_test=[str(config.ssh_binary), "-G", "-F", PATH_TOKEN, str(alias)],
        backup_dir=config.backup_dir / "config",
        template_dir=config.template_dir,
    )
    ctx.note(f"connect with: {config.ssh_binary} -F {dest} {alias}")
    return {
        "path": str(dest),
        "host_alias": alias,
        "backup": str(backup) if backup else None,
    }


def build_client_pipeline(config: InstallConfig) -> Pipeline:
    pipeline = Pipeline("client")
    add_host_steps(pipeline, packages=CLIENT_PACKAGES, require_root=False)
    last = add_source_steps(pipeline, config, after=("toolchain",), with_privsep=False)
    pipeline.add_step(
        "client-key",
        client_key,
        requires=(last,),
        description=f"Generate {config.host_key_algorithm} user key {config.identity_path}",
    )
    pipeline.add_step(
        "client-config",
        client_config,
        requires=("client-key",),
        description=f"Write host alias {host_alias(config)} to {config.client_config_path}",
    )
    return pipeline
