"""
Shell command adapter — the single place where external commands run.

Every build tool, package manager, git, keygen and systemctl call in
the installer goes through ``CommandRunner.run``.  Timeouts, process-group
cleanup, cancellation and structured logging are centralised here.

Failure signalling:
    - non-zero exit        → CommandFailed   (unless tolerate_failure=True)
    - timeout elapsed      → CommandTimeout  (process group killed)
    - cancellation token   → Cancelled       (process group killed)
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager

from oqs_installer.core.errors import Cancelled, CommandFailed, CommandTimeout
from oqs_installer.core.models.command import CommandRecord, CommandResult
from oqs_installer.core.reliability.cancellation import CancelToken

logger = logging.getLogger(__name__)

RecordSink = Callable[[CommandRecord], None]

# How often a running command checks the cancellation token
_POLL_INTERVAL = 0.25

# Grace period between SIGTERM and SIGKILL for a process group
_KILL_GRACE = 3.0


class CommandRunner:
    """Execute external commands and capture their output.

    Args:
        cancel: Shared cancellation token for the run.
        env: Base environment (default: the process environment).
        default_timeout: Timeout used when ``run`` gets none.
    """

    def __init__(
        self,
        *,
        cancel: CancelToken | None = None,
        env: Mapping[str, str] | None = None,
        default_timeout: float | None = None,
    ):
        self.cancel = cancel or CancelToken()
        self._env = dict(env) if env is not None else None
        self.default_timeout = default_timeout
        self._sinks: list[RecordSink] = []

    # ── Sinks ───────────────────────────────────────────────────

    def add_sink(self, sink: RecordSink) -> None:
        self._sinks.append(sink)

    def remove_sink(self, sink: RecordSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    @contextmanager
    def recording(self, sink: RecordSink) -> Iterator[None]:
        """Attach ``sink`` for the duration of the block."""
        self.add_sink(sink)
        try:
            yield
        finally:
            self.remove_sink(sink)

    @contextmanager
    def shielded(self) -> Iterator[None]:
        """Run the block under a fresh cancellation token.

        Cleanup and rollback commands must still execute after the
        run's token has fired; they stay bounded by their timeouts.
        """
        token, self.cancel = self.cancel, CancelToken()
        try:
            yield
        finally:
            self.cancel = token

    def _emit(self, result: CommandResult, label: str) -> None:
        record = result.to_record(label)
        logger.info(
            "cmd=%s exit=%d duration=%dms",
            result.display,
            result.exit_code,
            record.duration_ms,
        )
        for sink in list(self._sinks):
            sink(record)

    # ── Lookup ──────────────────────────────────────────────────

    def which(self, tool: str) -> str | None:
        """Resolve ``tool`` on the runner's PATH."""
        path = (self._env or os.environ).get("PATH")
        return shutil.which(tool, path=path)

    # ── Execution ───────────────────────────────────────────────

    def run(
        self,
        argv: Sequence[str | os.PathLike[str]],
        *,
        cwd: str | os.PathLike[str] | None = None,
        timeout: float | None = None,
        env_overrides: Mapping[str, str] | None = None,
        tolerate_failure: bool = False,
        label: str = "",
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            argv: Command and arguments (no shell).
            cwd: Working directory.
            timeout: Seconds before the process group is killed.
            env_overrides: Extra environment variables.
            tolerate_failure: Return non-zero results instead of raising.
                Used for idempotent probes like ``getent passwd sshd``.
            label: Human-readable name stored in the command record.

        Returns:
            CommandResult with exit code, output and elapsed time.
        """
        args = [os.fspath(a) for a in argv]
        cwd_str = os.fspath(cwd) if cwd is not None else None
        timeout = timeout if timeout is not None else self.default_timeout

        self.cancel.raise_if_cancelled()

        env = dict(self._env if self._env is not None else os.environ)
        if env_overrides:
            env.update(env_overrides)

        logger.debug("Executing: %s (cwd=%s, timeout=%s)", shlex.join(args), cwd_str, timeout)
        result, cancelled = self._execute(args, cwd_str, env, timeout)
        self._emit(result, label)

        if cancelled:
            raise Cancelled(f"Cancelled while running: {result.display}")
        if result.timed_out:
            raise CommandTimeout(
                f"Command timed out after {timeout}s: {result.display}", result
            )
        if result.exit_code != 0 and not tolerate_failure:
            raise CommandFailed(
                f"Command failed (exit {result.exit_code}): {result.display}", result
            )
        return result

    def _execute(
        self,
        args: list[str],
        cwd: str | None,
        env: dict[str, str],
        timeout: float | None,
    ) -> tuple[CommandResult, bool]:
        """Spawn the child in its own session and wait for it.

        Returns:
            (result, cancelled)
        """
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                args,
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            result = CommandResult(
                argv=args,
                cwd=cwd,
                exit_code=127,
                stderr=str(e),
                elapsed=time.monotonic() - start,
            )
            return result, False

        stdout, stderr, timed_out, cancelled = self._wait(proc, timeout, start)
        result = CommandResult(
            argv=args,
            cwd=cwd,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout or "",
            stderr=stderr or "",
            elapsed=time.monotonic() - start,
            timed_out=timed_out,
        )
        return result, cancelled

    def _wait(
        self,
        proc: subprocess.Popen,
        timeout: float | None,
        start: float,
    ) -> tuple[str, str, bool, bool]:
        """Collect output while watching the deadline and the cancel token."""
        deadline = start + timeout if timeout else None
        while True:
            wait = _POLL_INTERVAL
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))
            try:
                stdout, stderr = proc.communicate(timeout=wait)
                return stdout, stderr, False, False
            except subprocess.TimeoutExpired:
                if self.cancel.cancelled:
                    stdout, stderr = _kill_group(proc)
                    return stdout, stderr, False, True
                if deadline is not None and time.monotonic() >= deadline:
                    stdout, stderr = _kill_group(proc)
                    return stdout, stderr, True, False


def _kill_group(proc: subprocess.Popen) -> tuple[str, str]:
    """Terminate the child's whole process group, escalating to SIGKILL."""
    for sig, grace in ((signal.SIGTERM, _KILL_GRACE), (signal.SIGKILL, None)):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            break
        try:
            return proc.communicate(timeout=grace)
        except subprocess.TimeoutExpired:
            continue
    return proc.communicate()
