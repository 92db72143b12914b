"""
Scripted runner — test double for CommandRunner.

Simulates external commands without touching the system.  Responses are
matched on the command prefix; each response can carry a side effect
(for example, creating the key files a real ssh-keygen would write).
Unmatched commands succeed with empty output.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from oqs_installer.adapters.shell.command import CommandRunner
from oqs_installer.core.models.command import CommandResult

SideEffect = Callable[[list[str]], None]


@dataclass
class ScriptedResponse:
    """One canned outcome for commands starting with ``prefix``."""

    prefix: tuple[str, ...]
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    side_effect: SideEffect | None = None
    times: int | None = None          # None = unlimited
    contains: str | None = None       # extra argument that must be present
    used: int = 0

    def matches(self, argv: list[str]) -> bool:
        if self.times is not None and self.used >= self.times:
            return False
        if self.contains is not None and self.contains not in argv:
            return False
        return tuple(argv[: len(self.prefix)]) == self.prefix


@dataclass
class CallRecord:
    argv: list[str]
    cwd: str | None
    env: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None


class ScriptedRunner(CommandRunner):
    """CommandRunner whose commands are answered from a script.

    Later ``on()`` registrations take priority over earlier ones, so a
    test can set a default and then override a single call.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._responses: list[ScriptedResponse] = []
        self.calls: list[CallRecord] = []
        self.tools: dict[str, str] = {}

    def on(
        self,
        prefix: Sequence[str],
        *,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
        side_effect: SideEffect | None = None,
        times: int | None = None,
        contains: str | None = None,
    ) -> ScriptedResponse:
        response = ScriptedResponse(
            prefix=tuple(prefix),
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            timed_out=timed_out,
            side_effect=side_effect,
            times=times,
            contains=contains,
        )
        self._responses.insert(0, response)
        return response

    def provide_tool(self, name: str, path: str | None = None) -> None:
        """Make ``which(name)`` resolve."""
        self.tools[name] = path or f"/usr/bin/{name}"

    def which(self, tool: str) -> str | None:
        return self.tools.get(tool)

    @property
    def commands(self) -> list[list[str]]:
        return [c.argv for c in self.calls]

    def calls_to(self, *prefix: str) -> list[CallRecord]:
        return [c for c in self.calls if tuple(c.argv[: len(prefix)]) == prefix]

    def _execute(self, args, cwd, env, timeout):
        self.calls.append(CallRecord(argv=list(args), cwd=cwd, env=env, timeout=timeout))
        for response in self._responses:
            if response.matches(args):
                response.used += 1
                if response.side_effect is not None:
                    response.side_effect(list(args))
                result = CommandResult(
                    argv=list(args),
                    cwd=cwd,
                    exit_code=response.exit_code,
                    stdout=response.stdout,
                    stderr=response.stderr,
                    timed_out=response.timed_out,
                )
                return result, False
        return CommandResult(argv=list(args), cwd=cwd), False
