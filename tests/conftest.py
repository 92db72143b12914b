"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from oqs_installer.adapters.mock import ScriptedRunner
from oqs_installer.core.config.loader import InstallConfig
from oqs_installer.core.services.dependencies import BUILD_TOOLCHAIN

GIT_CLONE = ("git", "-c", "http.lowSpeedLimit=1000", "-c", "http.lowSpeedTime=60", "clone")


def make_config(tmp_path: Path, **overrides) -> InstallConfig:
    """InstallConfig with every path under ``tmp_path`` and no waiting."""
    values = {
        "install_prefix": tmp_path / "prefix",
        "work_dir": tmp_path / "work",
        "backup_dir": tmp_path / "backups",
        "state_dir": tmp_path / "state",
        "ssh_config_dir": tmp_path / "etc" / "ssh",
        "host_key_dir": tmp_path / "etc" / "ssh" / "quantum_keys",
        "unit_dir": tmp_path / "systemd",
        "logrotate_dir": tmp_path / "logrotate.d",
        "privsep_dir": tmp_path / "empty",
        "sshd_log_file": tmp_path / "log" / "sshd_oqs.log",
        "client_config_path": tmp_path / "home" / ".ssh" / "config_oqs",
        "client_key_path": tmp_path / "home" / ".ssh" / "id_falcon512",
        "jobs": 2,
        "retries": 2,
        "retry_delay": 0,
        "min_disk_mb": 0,
        "min_ram_mb": 0,
        "skip_packages": True,
        "service_poll_delay": 0,
    }
    values.update(overrides)
    return InstallConfig(**values)


def write_key_pair(argv: list[str]) -> None:
    """Side effect standing in for ``ssh-keygen -f PATH``."""
    private = Path(argv[argv.index("-f") + 1])
    private.parent.mkdir(parents=True, exist_ok=True)
    private.write_text("PRIVATE KEY\n")
    Path(f"{private}.pub").write_text(f"{argv[argv.index('-t') + 1]} AAAAkey comment\n")


def make_source_tree(argv: list[str]) -> None:
    """Side effect standing in for ``git clone URL DEST``."""
    Path(argv[-1]).mkdir(parents=True, exist_ok=True)


def scripted_install_runner(config: InstallConfig) -> ScriptedRunner:
    """A runner under which a whole server or client install succeeds."""
    runner = ScriptedRunner()
    for req in BUILD_TOOLCHAIN:
        runner.provide_tool(req.name)
    runner.on(["/usr/bin/cmake", "--version"], stdout="cmake version 3.27.4\n")
    runner.on(["/usr/bin/git", "--version"], stdout="git version 2.43.0\n")
    runner.on(GIT_CLONE, side_effect=make_source_tree)

    prefix = config.install_prefix

    def install_liboqs(_argv):
        header = prefix / "include" / "oqs" / "oqs.h"
        header.parent.mkdir(parents=True, exist_ok=True)
        header.write_text("/* oqs */\n")

    def install_openssh(_argv):
        for rel in ("sbin/sshd", "bin/ssh", "bin/ssh-keygen"):
            path = prefix / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("#!/bin/sh\n")

    runner.on(["cmake", "--install"], side_effect=install_liboqs)
    runner.on(["make", "install-nokeys"], side_effect=install_openssh)
    runner.on([str(config.keygen_binary)], side_effect=write_key_pair)
    runner.on(["systemctl", "is-active"], stdout="active\n")
    return runner


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def config(tmp_path: Path) -> InstallConfig:
    return make_config(tmp_path)


@pytest.fixture
def config_factory(tmp_path: Path):
    """Build an InstallConfig under tmp_path with overrides."""
    return lambda **overrides: make_config(tmp_path, **overrides)


@pytest.fixture
def install_runner():
    """Build a ScriptedRunner under which a full install succeeds."""
    return scripted_install_runner


@pytest.fixture
def keygen_side_effect():
    return write_key_pair
