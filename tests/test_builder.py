"""
Tests for the builder — plans, phase ordering, failure handling, outputs.
"""

from pathlib import Path

import pytest

from oqs_installer.adapters.mock import ScriptedRunner
from oqs_installer.core.errors import BuildArtifactMissing, BuildError
from oqs_installer.core.services.builder import (
    autotools_plan,
    liboqs_plan,
    openssh_plan,
    run_build,
    run_self_tests,
    verify_outputs,
)


@pytest.fixture
def source(tmp_path: Path) -> Path:
    src = tmp_path / "src"
    src.mkdir()
    return src


def _touch_outputs(prefix: Path, *rels: str):
    def effect(_argv):
        for rel in rels:
            path = prefix / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("")
    return effect


class TestPlans:
    def test_liboqs_plan(self, source, tmp_path):
        plan = liboqs_plan(source, tmp_path / "prefix", jobs=4)
        assert plan.configure[0] == "cmake"
        assert "-GNinja" in plan.configure
        assert f"-DCMAKE_INSTALL_PREFIX={tmp_path / 'prefix'}" in plan.configure
        assert "-DBUILD_SHARED_LIBS=ON" in plan.configure
        assert plan.compile[-2:] == ["--parallel", "4"]
        assert plan.expected_outputs == ["include/oqs/oqs.h"]

    def test_openssh_plan(self, source, tmp_path):
        prefix = tmp_path / "prefix"
        plan = openssh_plan(
            source, prefix, jobs=8,
            liboqs_prefix=prefix, openssl_dir=Path("/usr"),
            privsep_dir=Path("/var/empty"), privsep_user="sshd",
        )
        assert plan.prepare == [["autoreconf", "-i"]]
        assert plan.configure[:2] == ["./configure", f"--prefix={prefix}"]
        assert f"--with-liboqs-dir={prefix}" in plan.configure
        assert "--with-ssl-dir=/usr" in plan.configure
        assert "--with-privsep-path=/var/empty" in plan.configure
        assert "--with-privsep-user=sshd" in plan.configure
        assert plan.compile == ["make", "-j8"]
        assert plan.install == ["make", "install-nokeys"]
        assert plan.env["LDFLAGS"] == f"-L{prefix / 'lib'}"
        assert "sbin/sshd" in plan.expected_outputs

    def test_openssh_plan_without_privsep(self, source, tmp_path):
        plan = openssh_plan(source, tmp_path, jobs=1, liboqs_prefix=tmp_path,
                            openssl_dir=Path("/usr"))
        assert not any(a.startswith("--with-privsep") for a in plan.configure)


class TestRunBuild:
    def test_phases_run_in_order(self, source, tmp_path, runner: ScriptedRunner):
        prefix = tmp_path / "prefix"
        plan = autotools_plan("demo", source, prefix, jobs=2, expected_outputs=["bin/demo"])
        runner.on(["make", "install"], side_effect=_touch_outputs(prefix, "bin/demo"))

        artifact = run_build(plan, runner)

        assert runner.commands == [
            ["autoreconf", "-i"],
            ["./configure", f"--prefix={prefix}"],
            ["make", "-j2"],
            ["make", "install"],
        ]
        assert all(c.cwd == str(source) for c in runner.calls)
        assert artifact.outputs == [str(prefix / "bin/demo")]
        assert artifact.install_prefix == str(prefix)

    def test_compile_uses_compile_timeout(self, source, tmp_path, runner):
        prefix = tmp_path / "prefix"
        plan = autotools_plan("demo", source, prefix, jobs=1, compile_timeout=1234)
        run_build(plan, runner)
        assert runner.calls_to("make", "-j1")[0].timeout == 1234
        assert runner.calls_to("./configure")[0].timeout == plan.command_timeout

    def test_first_failure_aborts(self, source, tmp_path, runner):
        runner.on(["./configure"], exit_code=1, stderr="configure: error: liboqs not found")
        plan = autotools_plan("openssh", source, tmp_path / "prefix", jobs=1)

        with pytest.raises(BuildError) as exc:
            run_build(plan, runner)

        assert "configure" in str(exc.value)
        assert "liboqs not found" in exc.value.output
        assert runner.calls_to("make") == []
        assert exc.value.exit_code == 12

    def test_compile_timeout_is_build_error(self, source, tmp_path, runner):
        runner.on(["make", "-j1"], timed_out=True, exit_code=-9)
        plan = autotools_plan("openssh", source, tmp_path / "prefix", jobs=1)
        with pytest.raises(BuildError, match="exceeded"):
            run_build(plan, runner)

    def test_build_is_not_retried(self, source, tmp_path, runner):
        runner.on(["make", "-j1"], exit_code=2)
        plan = autotools_plan("openssh", source, tmp_path / "prefix", jobs=1)
        with pytest.raises(BuildError):
            run_build(plan, runner)
        assert len(runner.calls_to("make", "-j1")) == 1

    def test_missing_outputs(self, source, tmp_path, runner):
        plan = liboqs_plan(source, tmp_path / "prefix", jobs=1)
        with pytest.raises(BuildArtifactMissing) as exc:
            run_build(plan, runner)
        assert exc.value.missing == [str(tmp_path / "prefix" / "include/oqs/oqs.h")]

    def test_missing_source_tree(self, tmp_path, runner):
        plan = liboqs_plan(tmp_path / "nope", tmp_path / "prefix", jobs=1)
        with pytest.raises(BuildError, match="not found"):
            run_build(plan, runner)
        assert runner.commands == []


class TestVerifyOutputs:
    def test_lists_every_missing_file(self, tmp_path):
        (tmp_path / "bin").mkdir()
        (tmp_path / "bin" / "ssh").write_text("")
        with pytest.raises(BuildArtifactMissing) as exc:
            verify_outputs(tmp_path, ["bin/ssh", "sbin/sshd", "bin/ssh-keygen"])
        assert exc.value.missing == [str(tmp_path / "sbin/sshd"), str(tmp_path / "bin/ssh-keygen")]

    def test_all_present(self, tmp_path):
        (tmp_path / "lib").mkdir()
        (tmp_path / "lib" / "liboqs.so").write_text("")
        verify_outputs(tmp_path, ["lib/liboqs.so"])


class TestSelfTests:
    def test_skipped_without_script(self, source, runner):
        assert run_self_tests(source, runner) is False
        assert runner.commands == []

    def test_runs_bundled_script(self, source, runner):
        (source / "oqs-test").mkdir()
        (source / "oqs-test" / "run_tests.sh").write_text("#!/bin/bash\n")
        assert run_self_tests(source, runner) is True
        assert runner.commands == [["bash", str(source / "oqs-test" / "run_tests.sh")]]

    def test_failure_is_build_error(self, source, runner):
        (source / "oqs-test").mkdir()
        (source / "oqs-test" / "run_tests.sh").write_text("")
        runner.on(["bash"], exit_code=1, stdout="FAIL: kex")
        with pytest.raises(BuildError) as exc:
            run_self_tests(source, runner)
        assert "FAIL: kex" in exc.value.output
