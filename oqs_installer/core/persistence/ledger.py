"""
Command ledger — append-only NDJSON log of every external command.

One line per command: what ran, where, how long, exit code, and the
tail of its output.  Entries are never modified or deleted.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from oqs_installer.core.models.command import CommandRecord

logger = logging.getLogger(__name__)


class CommandLedger:
    """Append-only command ledger writer."""

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def write(self, record: CommandRecord) -> None:
        """Append a record to the ledger.

        Write failures are logged; the installation does not stop because
        its audit trail is unwritable.
        """
        line = json.dumps(record.model_dump(mode="json"), ensure_ascii=False) + "\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.error("Failed to write command record to %s: %s", self._path, e)

    def read_all(self) -> list[CommandRecord]:
        """Read all records, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        records = []
        with self._path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(CommandRecord.model_validate(json.loads(line)))
                except ValueError as e:
                    logger.warning("Skipping corrupt ledger entry at line %d: %s", line_num, e)
        return records

    def for_run(self, run_id: str) -> list[CommandRecord]:
        return [r for r in self.read_all() if r.run_id == run_id]
