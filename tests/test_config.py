"""
Tests for configuration loading — precedence, aliases, validation.
"""

from pathlib import Path

import pydantic
import pytest

from oqs_installer.core.config.loader import (
    InstallConfig,
    env_overrides,
    load_config,
    read_config_file,
)
from oqs_installer.core.errors import ConfigError


class TestDefaults:
    def test_defaults(self):
        config = load_config(environ={})
        assert config.install_prefix == Path("/opt/oqs-ssh")
        assert config.port == 8022
        assert config.host_key_algorithm == "ssh-falcon512"
        assert config.kex_algorithms == "kyber-512-sha256"
        assert config.retries == 3
        assert not config.dry_run
        assert not config.rollback_on_failure

    def test_derived_paths(self):
        config = InstallConfig(install_prefix=Path("/opt/oqs-ssh"), state_dir=Path("/s"))
        assert config.sshd_binary == Path("/opt/oqs-ssh/sbin/sshd")
        assert config.keygen_binary == Path("/opt/oqs-ssh/bin/ssh-keygen")
        assert config.lib_dir == Path("/opt/oqs-ssh/lib")
        assert config.sshd_config_path == Path("/etc/ssh/sshd_config_oqs")
        assert config.host_key_path == Path("/etc/ssh/quantum_keys/ssh_host_falcon512_key")
        assert config.classic_host_key_path == Path("/etc/ssh/ssh_host_rsa_key")
        assert config.lock_path == Path("/opt/oqs-ssh.lock")
        assert config.report_path == Path("/s/install-report.json")
        assert config.effective_log_file == Path("/s/install.log")
        assert config.pid_file == Path("/run/sshd_oqs.pid")

    def test_no_classic_key(self):
        assert InstallConfig(classic_host_key_algorithm=None).classic_host_key_path is None

    def test_client_port_follows_server_port(self):
        assert InstallConfig(port=2222).effective_server_port == 2222
        assert InstallConfig(port=2222, server_port=9000).effective_server_port == 9000

    def test_frozen(self):
        config = InstallConfig()
        with pytest.raises(pydantic.ValidationError):
            config.port = 22


class TestPrecedence:
    @pytest.fixture
    def config_file(self, tmp_path: Path) -> Path:
        path = tmp_path / "oqs.yaml"
        path.write_text("port: 2200\njobs: 3\nliboqs_version: file-ref\n")
        return path

    def test_file_over_default(self, config_file):
        config = load_config(environ={}, config_file=config_file)
        assert config.port == 2200
        assert config.jobs == 3

    def test_env_over_file(self, config_file):
        config = load_config(environ={"OQS_PORT": "2300"}, config_file=config_file)
        assert config.port == 2300
        assert config.jobs == 3

    def test_cli_over_env(self, config_file):
        config = load_config(
            {"port": 2400, "jobs": None},
            environ={"OQS_PORT": "2300", "OQS_JOBS": "5"},
            config_file=config_file,
        )
        assert config.port == 2400
        assert config.jobs == 5

    def test_legacy_alias_below_prefixed_name(self):
        values = env_overrides({"NEW_SSH_PORT": "2022", "OQS_PORT": "2023"})
        assert values["port"] == "2023"
        assert env_overrides({"NEW_SSH_PORT": "2022"})["port"] == "2022"

    def test_legacy_aliases(self):
        config = load_config(environ={
            "LIBOQS_BRANCH": "0.12.0",
            "OPENSSH_BRANCH": "OQS-v9",
            "INSTALL_PREFIX": "/usr/local/oqs",
            "SSHD_USER": "oqs",
        })
        assert config.liboqs_version == "0.12.0"
        assert config.install_prefix == Path("/usr/local/oqs")
        assert config.sshd_user == "oqs"

    def test_empty_env_value_ignored(self):
        assert load_config(environ={"OQS_PORT": ""}).port == 8022

    def test_env_booleans(self):
        config = load_config(environ={"OQS_SKIP_TESTS": "true", "OQS_FORCE": "0"})
        assert config.skip_tests
        assert not config.force


class TestValidation:
    @pytest.mark.parametrize("port", [0, 70000])
    def test_port_out_of_range(self, port):
        with pytest.raises(ConfigError, match="port"):
            load_config({"port": port}, environ={})

    def test_non_numeric_env(self):
        with pytest.raises(ConfigError, match="jobs"):
            load_config(environ={"OQS_JOBS": "many"})

    def test_unknown_option_in_file(self, tmp_path):
        path = tmp_path / "oqs.yaml"
        path.write_text("colour: blue\n")
        with pytest.raises(ConfigError, match="colour"):
            load_config(environ={}, config_file=path)

    def test_config_error_exit_code(self):
        with pytest.raises(ConfigError) as exc:
            load_config({"retries": 0}, environ={})
        assert exc.value.exit_code == 13


class TestReadConfigFile:
    def test_nested_install_section(self, tmp_path):
        path = tmp_path / "oqs.yaml"
        path.write_text("install:\n  install-prefix: /opt/pq\n  skip-tests: true\n")
        assert read_config_file(path) == {"install_prefix": "/opt/pq", "skip_tests": True}

    def test_empty_file(self, tmp_path):
        path = tmp_path / "oqs.yaml"
        path.write_text("")
        assert read_config_file(path) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            read_config_file(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "oqs.yaml"
        path.write_text("port: [8022\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            read_config_file(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "oqs.yaml"
        path.write_text("- 8022\n")
        with pytest.raises(ConfigError, match="mapping"):
            read_config_file(path)
