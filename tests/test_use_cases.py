"""
Tests for the install use cases — full server and client runs on a scripted host.
"""

import json

import pytest

from oqs_installer.adapters.shell.filesystem import file_mode
from oqs_installer.core.errors import LockHeld
from oqs_installer.core.models.pipeline import RunStatus, StepStatus
from oqs_installer.core.persistence.lock import InstallLock
from oqs_installer.core.services.renderer import parse_directives
from oqs_installer.core.use_cases.client_install import host_alias
from oqs_installer.core.use_cases.install import build_pipeline, check_host, run_install

SERVER_STEPS = [
    "preflight", "packages", "toolchain", "privsep-account",
    "fetch-liboqs", "build-liboqs", "fetch-openssh", "build-openssh", "test-openssh",
    "host-keys", "sshd-config", "logrotate", "service",
]

CLIENT_STEPS = [
    "preflight", "packages", "toolchain",
    "fetch-liboqs", "build-liboqs", "fetch-openssh", "build-openssh", "test-openssh",
    "client-key", "client-config",
]


@pytest.fixture(autouse=True)
def _as_root(monkeypatch):
    monkeypatch.setattr("oqs_installer.core.use_cases.common.check_privileges",
                        lambda require_root: [])
    monkeypatch.setattr("getpass.getuser", lambda: "tester")


class TestPipelines:
    def test_server_steps(self, config):
        assert build_pipeline("server", config).step_names == SERVER_STEPS

    def test_server_optional_steps(self, config_factory):
        names = build_pipeline("server", config_factory(skip_tests=True, no_service=True)).step_names
        assert "test-openssh" not in names
        assert "service" not in names
        assert names[-1] == "logrotate"

    def test_client_steps(self, config):
        assert build_pipeline("client", config).step_names == CLIENT_STEPS

    def test_unknown_role(self, config):
        with pytest.raises(ValueError, match="Unknown role"):
            build_pipeline("router", config)

    def test_host_alias(self, config_factory):
        assert host_alias(config_factory(server_host="pq.example")) == "pq.example-oqs"
        assert host_alias(config_factory(host_alias="lab")) == "lab"
        assert host_alias(config_factory()) == "oqs-server-oqs"


class TestServerInstall:
    def test_full_install(self, config, install_runner):
        runner = install_runner(config)

        result = run_install("server", config, runner=runner)

        assert result.ok, result.run.failed_step
        assert result.exit_code == 0
        run = result.run
        assert run.status == RunStatus.SUCCEEDED
        assert [s.name for s in run.steps] == SERVER_STEPS

        directives = parse_directives(config.sshd_config_path.read_text())
        assert directives["Port"] == "8022"
        assert directives["HostKey"] == str(config.host_key_path)
        assert directives["KexAlgorithms"] == "kyber-512-sha256"
        assert directives["PasswordAuthentication"] == "no"

        assert file_mode(config.host_key_path) == 0o600
        assert (config.unit_dir / "sshd_oqs.service").is_file()
        assert (config.logrotate_dir / "sshd_oqs").is_file()
        assert [h["algorithm"] for h in run.artifacts["host-keys"]] == ["ssh-falcon512", "rsa"]
        assert run.artifacts["service"]["state"] == "active"

    def test_report_and_ledger_written(self, config, install_runner):
        result = run_install("server", config, runner=install_runner(config))

        report = json.loads(config.report_path.read_text())
        assert report["run_id"] == result.run.run_id
        assert report["status"] == "succeeded"
        assert result.report_path == config.report_path

        lines = config.ledger_path.read_text().splitlines()
        steps = {json.loads(line)["step"] for line in lines}
        assert {"toolchain", "fetch-liboqs", "build-openssh", "service"} <= steps
        assert not config.lock_path.exists()

    def test_build_order_and_flags(self, config, install_runner):
        runner = install_runner(config)
        run_install("server", config, runner=runner)

        labels = [c.argv[:2] for c in runner.calls
                  if c.argv[0] in ("cmake", "./configure", "make", "autoreconf")]
        assert labels.index(["cmake", "--install"]) < labels.index(["autoreconf", "-i"])
        configure = runner.calls_to("./configure")[0].argv
        assert f"--with-liboqs-dir={config.install_prefix}" in configure
        assert f"--with-privsep-user={config.sshd_user}" in configure

    def test_sshd_config_self_tested(self, config, install_runner):
        runner = install_runner(config)
        run_install("server", config, runner=runner)
        check = runner.calls_to(str(config.sshd_binary), "-t")
        assert len(check) == 1
        assert check[0].argv[-1] != str(config.sshd_config_path)

    def test_no_service(self, config_factory, install_runner):
        config = config_factory(no_service=True)
        runner = install_runner(config)
        result = run_install("server", config, runner=runner)
        assert result.ok
        assert runner.calls_to("systemctl") == []

    def test_rerun_replaces_source_trees(self, config, install_runner):
        run_install("server", config, runner=install_runner(config))
        second = run_install("server", config, runner=install_runner(config))

        assert second.ok
        assert not (config.backup_dir / "sources").exists()
        assert second.run.artifacts["fetch-liboqs"]["backup_path"] is None

    def test_rerun_backs_up_sources_on_request(self, config_factory, install_runner):
        config = config_factory(backup_sources=True)
        run_install("server", config, runner=install_runner(config))
        run_install("server", config, runner=install_runner(config))

        names = sorted(p.name.split(".bak.")[0] for p in (config.backup_dir / "sources").iterdir())
        assert names == ["liboqs", "openssh"]

    def test_timeout_applies_to_configure_not_compile(self, config_factory, install_runner):
        config = config_factory(timeout=42, compile_timeout=4200)
        runner = install_runner(config)
        run_install("server", config, runner=runner)

        assert runner.calls_to("./configure")[0].timeout == 42
        assert runner.calls_to("make", "install-nokeys")[0].timeout == 42
        assert runner.calls_to("make", f"-j{config.jobs}")[0].timeout == 4200

    def test_build_failure(self, config, install_runner):
        runner = install_runner(config)
        runner.on(["make", "install-nokeys"], exit_code=2, stderr="install: cannot create")

        result = run_install("server", config, runner=runner)

        assert result.exit_code == 12
        run = result.run
        assert run.failed_step.name == "build-openssh"
        assert run.get_step("host-keys").status == StepStatus.PENDING
        assert run.failed_step.error.command == "make install-nokeys"
        # make clean is registered as a cleanup
        assert runner.calls_to("make", "clean")
        assert not config.sshd_config_path.exists()

    def test_network_failure(self, config, install_runner):
        runner = install_runner(config)
        runner.on(["git"], exit_code=128, stderr="fatal: unable to access",
                  contains=config.liboqs_repo)

        result = run_install("server", config, runner=runner)

        assert result.exit_code == 11
        assert result.run.failed_step.name == "fetch-liboqs"
        clones = [c for c in runner.calls if config.liboqs_repo in c.argv]
        assert len(clones) == config.retries

    def test_service_failure_keeps_installed_files(self, config, install_runner):
        runner = install_runner(config)
        runner.on(["systemctl", "is-active"], exit_code=3, stdout="failed\n")

        result = run_install("server", config, runner=runner)

        assert result.exit_code == 15
        assert result.run.failed_step.name == "service"
        assert config.sshd_binary.exists()
        assert config.sshd_config_path.exists()
        assert config.host_key_path.exists()

    def test_rollback_on_failure(self, config_factory, install_runner):
        config = config_factory(rollback_on_failure=True)
        runner = install_runner(config)
        runner.on(["systemctl", "is-active"], exit_code=3, stdout="failed\n")

        result = run_install("server", config, runner=runner)

        run = result.run
        assert run.get_step("build-liboqs").status == StepStatus.ROLLED_BACK
        assert run.get_step("sshd-config").status == StepStatus.ROLLED_BACK
        assert not config.install_prefix.exists()
        assert not config.sshd_config_path.exists()
        # Keys are never removed
        assert config.host_key_path.exists()

    def test_rollback_restores_previous_sshd_config(self, config_factory, install_runner):
        config = config_factory(rollback_on_failure=True)
        config.sshd_config_path.parent.mkdir(parents=True)
        config.sshd_config_path.write_text("Port 2222\n")
        runner = install_runner(config)
        runner.on(["systemctl", "is-active"], exit_code=3, stdout="failed\n")

        run_install("server", config, runner=runner)

        assert config.sshd_config_path.read_text() == "Port 2222\n"

    def test_existing_host_key_kept(self, config, install_runner):
        config.host_key_dir.mkdir(parents=True)
        config.host_key_path.write_text("OLD PRIVATE\n")
        config.host_key_path.with_name(config.host_key_path.name + ".pub").write_text("OLD PUB\n")
        runner = install_runner(config)

        result = run_install("server", config, runner=runner)

        assert result.ok
        assert config.host_key_path.read_text() == "OLD PRIVATE\n"
        assert result.run.artifacts["host-keys"][0]["reused"]

    def test_force_regenerates_host_key(self, config_factory, install_runner):
        config = config_factory(force=True)
        config.host_key_dir.mkdir(parents=True)
        config.host_key_path.write_text("OLD PRIVATE\n")
        config.host_key_path.with_name(config.host_key_path.name + ".pub").write_text("OLD PUB\n")

        result = run_install("server", config, runner=install_runner(config))

        assert result.ok
        assert config.host_key_path.read_text() == "PRIVATE KEY\n"
        backups = result.run.artifacts["host-keys"][0]["backups"]
        assert len(backups) == 2

    def test_resume_skips_succeeded_steps(self, config_factory, install_runner):
        config = config_factory()
        runner = install_runner(config)
        runner.on(["systemctl", "is-active"], exit_code=3, stdout="failed\n")
        first = run_install("server", config, runner=runner)
        assert first.exit_code == 15

        resumed_config = config_factory(resume=True)
        runner = install_runner(resumed_config)
        second = run_install("server", resumed_config, runner=runner)

        assert second.ok
        assert second.run.get_step("build-openssh").resumed
        assert not second.run.get_step("service").resumed
        assert runner.calls_to("git") == []
        assert runner.calls_to("systemctl", "restart")
        assert second.run.artifacts["fetch-liboqs"]["path"] == str(config.work_dir / "liboqs")

    def test_lock_held(self, config, install_runner):
        runner = install_runner(config)

        with InstallLock(config.lock_path):
            result = run_install("server", config, runner=runner)

        assert isinstance(result.error, LockHeld)
        assert result.exit_code == 16
        assert result.run is None
        assert runner.calls == []

    def test_dry_run(self, config_factory, install_runner):
        config = config_factory(dry_run=True)
        runner = install_runner(config)

        result = run_install("server", config, runner=runner)

        assert result.dry_run
        assert result.ok
        assert [s["name"] for s in result.plan] == SERVER_STEPS
        assert runner.calls == []
        assert not config.report_path.exists()
        assert result.to_dict()["plan"][0]["name"] == "preflight"


class TestClientInstall:
    def test_full_install(self, config_factory, install_runner):
        config = config_factory(server_host="pq.example", server_user="alice", port=2222)
        runner = install_runner(config)

        result = run_install("client", config, runner=runner)

        assert result.ok, result.run.failed_step
        directives = parse_directives(config.client_config_path.read_text())
        assert directives["Host"] == "pq.example-oqs"
        assert directives["HostName"] == "pq.example"
        assert directives["Port"] == "2222"
        assert directives["User"] == "alice"
        assert directives["IdentityFile"] == str(config.client_key_path)
        assert file_mode(config.client_config_path) == 0o600
        assert file_mode(config.client_key_path) == 0o600
        assert file_mode(config.client_key_path.parent) == 0o700
        assert runner.calls_to("systemctl") == []
        assert runner.calls_to("getent") == []

        check = runner.calls_to(str(config.ssh_binary), "-G")
        assert check[0].argv[-1] == "pq.example-oqs"

    def test_client_configure_flags(self, config_factory, install_runner):
        config = config_factory(server_host="pq.example")
        runner = install_runner(config)
        run_install("client", config, runner=runner)
        configure = runner.calls_to("./configure")[0].argv
        assert not any(a.startswith("--with-privsep") for a in configure)

    def test_packages_refused_for_non_root(self, config_factory, install_runner, monkeypatch):
        config = config_factory(server_host="pq.example", skip_packages=False)
        runner = install_runner(config)
        runner.provide_tool("sudo")
        runner.on(["sudo", "-n", "apt-get"], exit_code=100,
                  stderr="E: Could not open lock file /var/lib/dpkg/lock-frontend - "
                         "open (13: Permission denied)\n")
        monkeypatch.setattr("oqs_installer.core.services.dependencies.os.geteuid", lambda: 1000)
        monkeypatch.setattr("oqs_installer.core.services.dependencies.detect_package_manager",
                            lambda _runner: "apt-get")

        result = run_install("client", config, runner=runner)

        assert result.exit_code == 10
        failed = result.run.failed_step
        assert failed.name == "packages"
        assert failed.error.kind == "validation"
        assert len(runner.calls_to("sudo", "-n", "apt-get")) == 1

    def test_missing_server_host(self, config, install_runner):
        result = run_install("client", config, runner=install_runner(config))
        assert result.exit_code == 13
        assert result.run.failed_step.name == "client-config"
        assert "server_host" in result.run.failed_step.error.message


class TestCheckHost:
    def test_ready_host(self, config, install_runner):
        assert check_host(config, install_runner(config)) == []

    def test_missing_tool(self, config, runner):
        failures = check_host(config, runner)
        assert {f.tool for f in failures} >= {"cmake", "gcc"}
