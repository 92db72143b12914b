"""
Configuration loader — one immutable InstallConfig per run.

Values are resolved in precedence order:
    CLI flag  >  environment variable  >  YAML config file  >  built-in default

Environment variables are ``OQS_<FIELD>`` (e.g. ``OQS_INSTALL_PREFIX``).
The variable names used by the legacy shell installers are accepted as
aliases, below the ``OQS_`` spelling.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field

from oqs_installer.core.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "OQS_"

# Legacy variable → field
ENV_ALIASES: dict[str, str] = {
    "LIBOQS_REPO": "liboqs_repo",
    "LIBOQS_BRANCH": "liboqs_version",
    "OPENSSH_REPO": "ssh_repo",
    "OPENSSH_BRANCH": "ssh_version",
    "INSTALL_PREFIX": "install_prefix",
    "NEW_SSH_PORT": "port",
    "SSHD_USER": "sshd_user",
    "SSHD_GROUP": "sshd_group",
    "OPENSSL_SYS_DIR": "openssl_dir",
}

DEFAULT_LIBOQS_REPO = "https://github.com/open-quantum-safe/liboqs.git"
DEFAULT_SSH_REPO = "https://github.com/open-quantum-safe/openssh.git"


def _is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def _default_state_dir() -> Path:
    if _is_root():
        return Path("/var/lib/oqs-installer")
    return Path.home() / ".local" / "state" / "oqs-installer"


def _default_backup_dir() -> Path:
    if _is_root():
        return Path("/var/backups/oqs-ssh")
    return Path.home() / ".local" / "state" / "oqs-installer" / "backups"


def _default_work_dir() -> Path:
    if _is_root():
        return Path("/var/tmp/oqs-build")
    return Path.home() / ".cache" / "oqs-installer" / "src"


def _default_jobs() -> int:
    return os.cpu_count() or 1


class InstallConfig(BaseModel):
    """All options of one installation run. Frozen once constructed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # ── Paths ────────────────────────────────────────────────────
    install_prefix: Path = Path("/opt/oqs-ssh")
    work_dir: Path = Field(default_factory=_default_work_dir)
    backup_dir: Path = Field(default_factory=_default_backup_dir)
    state_dir: Path = Field(default_factory=_default_state_dir)
    log_file: Path | None = None
    template_dir: Path | None = None

    # ── Sources ──────────────────────────────────────────────────
    liboqs_repo: str = DEFAULT_LIBOQS_REPO
    liboqs_fallback_repo: str | None = None
    liboqs_version: str = "main"
    ssh_repo: str = DEFAULT_SSH_REPO
    ssh_fallback_repo: str | None = None
    ssh_version: str = "OQS-v9"
    clone_depth: int = Field(default=1, ge=0)

    # ── Build ────────────────────────────────────────────────────
    jobs: int = Field(default_factory=_default_jobs, ge=1)
    openssl_dir: Path = Path("/usr")
    compile_timeout: float = Field(default=3600.0, gt=0)
    min_disk_mb: int = Field(default=2048, ge=0)
    min_ram_mb: int = Field(default=512, ge=0)

    # ── Network / retry ──────────────────────────────────────────
    timeout: float = Field(default=600.0, gt=0)
    retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=5.0, ge=0)
    retry_backoff: float = Field(default=2.0, ge=1)

    # ── Server ───────────────────────────────────────────────────
    port: int = Field(default=8022, ge=1, le=65535)
    listen_address: str = "0.0.0.0"
    host_key_algorithm: str = "ssh-falcon512"
    kex_algorithms: str = "kyber-512-sha256"
    classic_host_key_algorithm: str | None = "rsa"
    ssh_config_dir: Path = Path("/etc/ssh")
    host_key_dir: Path = Path("/etc/ssh/quantum_keys")
    sshd_config_name: str = "sshd_config_oqs"
    sshd_user: str = "sshd"
    sshd_group: str = "sshd"
    privsep_dir: Path = Path("/var/empty")
    sshd_log_file: Path = Path("/var/log/sshd_oqs.log")
    logrotate_dir: Path = Path("/etc/logrotate.d")
    password_authentication: bool = False

    # ── Service ──────────────────────────────────────────────────
    service_name: str = "sshd_oqs"
    unit_dir: Path = Path("/etc/systemd/system")
    restart_policy: str = "on-failure"
    service_user: str = "root"
    service_group: str = "root"
    service_poll_attempts: int = Field(default=5, ge=1)
    service_poll_delay: float = Field(default=2.0, ge=0)

    # ── Client ───────────────────────────────────────────────────
    server_host: str | None = None
    server_user: str | None = None
    server_port: int | None = Field(default=None, ge=1, le=65535)
    host_alias: str | None = None
    client_key_path: Path | None = None
    client_config_path: Path = Field(
        default_factory=lambda: Path.home() / ".ssh" / "config_oqs"
    )

    # ── Behaviour ────────────────────────────────────────────────
    dry_run: bool = False
    skip_tests: bool = False
    skip_packages: bool = False
    force: bool = False
    backup_sources: bool = False
    no_service: bool = False
    rollback_on_failure: bool = False
    resume: bool = False

    # ── Derived paths ────────────────────────────────────────────

    @property
    def bin_dir(self) -> Path:
        return self.install_prefix / "bin"

    @property
    def sbin_dir(self) -> Path:
        return self.install_prefix / "sbin"

    @property
    def lib_dir(self) -> Path:
        return self.install_prefix / "lib"

    @property
    def sshd_binary(self) -> Path:
        return self.sbin_dir / "sshd"

    @property
    def keygen_binary(self) -> Path:
        return self.bin_dir / "ssh-keygen"

    @property
    def ssh_binary(self) -> Path:
        return self.bin_dir / "ssh"

    @property
    def sshd_config_path(self) -> Path:
        return self.ssh_config_dir / self.sshd_config_name

    @property
    def pid_file(self) -> Path:
        return Path("/run") / f"{self.service_name}.pid"

    @property
    def host_key_path(self) -> Path:
        return self.host_key_dir / f"ssh_host_{_key_slug(self.host_key_algorithm)}_key"

    @property
    def classic_host_key_path(self) -> Path | None:
        if not self.classic_host_key_algorithm:
            return None
        return self.ssh_config_dir / f"ssh_host_{self.classic_host_key_algorithm}_key"

    @property
    def identity_path(self) -> Path:
        if self.client_key_path is not None:
            return self.client_key_path
        return Path.home() / ".ssh" / f"id_{_key_slug(self.host_key_algorithm)}"

    @property
    def effective_server_port(self) -> int:
        return self.server_port if self.server_port is not None else self.port

    @property
    def lock_path(self) -> Path:
        prefix = self.install_prefix
        return prefix.parent / f"{prefix.name}.lock"

    @property
    def ledger_path(self) -> Path:
        return self.state_dir / "commands.ndjson"

    @property
    def report_path(self) -> Path:
        return self.state_dir / "install-report.json"

    @property
    def effective_log_file(self) -> Path:
        return self.log_file if self.log_file is not None else self.state_dir / "install.log"

    def public_dict(self) -> dict[str, Any]:
        """JSON-friendly snapshot for reports and dry-run output."""
        return self.model_dump(mode="json")


def _key_slug(algorithm: str) -> str:
    """``ssh-falcon512`` → ``falcon512`` for key file names."""
    return algorithm.removeprefix("ssh-")


def env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    """Collect configuration values from environment variables."""
    fields = InstallConfig.model_fields
    values: dict[str, str] = {}

    for alias, field_name in ENV_ALIASES.items():
        if environ.get(alias):
            values[field_name] = environ[alias]

    for field_name in fields:
        key = ENV_PREFIX + field_name.upper()
        if key in environ and environ[key] != "":
            values[field_name] = environ[key]

    return values


def read_config_file(path: Path) -> dict[str, Any]:
    """Load a YAML mapping of option name → value."""
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # Accept either a flat mapping or one nested under "install"
    if "install" in data and isinstance(data["install"], dict):
        data = data["install"]

    return {str(k).replace("-", "_"): v for k, v in data.items()}


def load_config(
    cli: Mapping[str, Any] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    config_file: Path | None = None,
) -> InstallConfig:
    """Build the run's InstallConfig from all layers.

    Args:
        cli: Values from command-line flags; ``None`` means "not given".
        environ: Environment mapping (default: ``os.environ``).
        config_file: Optional YAML file with option values.

    Raises:
        ConfigError: Unknown option names or invalid values.
    """
    environ = os.environ if environ is None else environ

    merged: dict[str, Any] = {}
    if config_file is not None:
        merged.update(read_config_file(config_file))
    merged.update(env_overrides(environ))
    merged.update({k: v for k, v in (cli or {}).items() if v is not None})

    try:
        config = InstallConfig.model_validate(merged)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e

    logger.debug("Configuration resolved (prefix=%s, port=%d)", config.install_prefix, config.port)
    return config
