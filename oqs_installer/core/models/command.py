"""
Command models — what was run and what came back.

``CommandResult`` is returned by the runner to its caller.
``CommandRecord`` is the trimmed, serialisable form appended to the
current step and to the command ledger.
"""

from __future__ import annotations

import shlex
from datetime import UTC, datetime

from pydantic import BaseModel, Field

# Captured output kept in records (the full text stays on CommandResult)
OUTPUT_TAIL_CHARS = 2000


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    return text[-limit:] if text else ""


class CommandResult(BaseModel):
    """Outcome of one external command."""

    argv: list[str]
    cwd: str | None = None
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    elapsed: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def display(self) -> str:
        """Shell-quoted command line for messages."""
        return shlex.join(self.argv)

    @property
    def combined_output(self) -> str:
        parts = [p.strip() for p in (self.stdout, self.stderr) if p and p.strip()]
        return "\n".join(parts)

    def to_record(self, label: str = "") -> CommandRecord:
        return CommandRecord(
            label=label,
            command=self.argv[0] if self.argv else "",
            args=self.argv[1:],
            cwd=self.cwd,
            exit_code=self.exit_code,
            duration_ms=int(self.elapsed * 1000),
            timed_out=self.timed_out,
            stdout_tail=_tail(self.stdout),
            stderr_tail=_tail(self.stderr),
        )


class CommandRecord(BaseModel):
    """Structured log entry for a single command execution."""

    timestamp: str = Field(default_factory=_now_iso)
    label: str = ""
    step: str | None = None
    run_id: str | None = None
    command: str
    args: list[str] = Field(default_factory=list)
    cwd: str | None = None
    exit_code: int = 0
    duration_ms: int = 0
    timed_out: bool = False
    stdout_tail: str = ""
    stderr_tail: str = ""
