"""
Cancellation token — one external stop signal shared by a whole run.

The token is checked between commands, while a command is running,
and inside every retry sleep.  ``handle_signals()`` wires SIGINT and
SIGTERM to it for the duration of an installation.
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from oqs_installer.core.errors import Cancelled

logger = logging.getLogger(__name__)


class CancelToken:
    """Thread-safe, one-way cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()
            logger.warning("Cancellation requested: %s", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(f"Installation cancelled ({self._reason})")

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``; raise Cancelled if interrupted."""
        self.raise_if_cancelled()
        if seconds > 0 and self._event.wait(seconds):
            self.raise_if_cancelled()

    @contextmanager
    def handle_signals(self) -> Iterator[CancelToken]:
        """Route SIGINT/SIGTERM to this token while the block runs.

        Only the main thread may install handlers; elsewhere this is a no-op.
        """
        if threading.current_thread() is not threading.main_thread():
            yield self
            return

        def _handler(signum: int, _frame: object) -> None:
            self.cancel(signal.Signals(signum).name)

        previous = {
            sig: signal.signal(sig, _handler)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            yield self
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
