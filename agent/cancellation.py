"""
Cooperative cancellation for the task loop.

A CancellationToken is handed to every suspension point (stream increments,
tool dispatch, asks). Nothing is interrupted: code checks the token and stops
at the next point it reaches. A token can also be marked abandoned, meaning
its loop has been replaced by a newer one and must not write shared state.
"""

import logging
import threading
from typing import Optional

from .errors import TaskAbortedError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Abort flag checked by value at each suspension point."""

    def __init__(self, epoch: Optional["SessionEpoch"] = None):
        self._cancelled = threading.Event()
        self._abandoned = threading.Event()
        self._epoch = epoch
        self._generation = epoch.current if epoch is not None else 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set() or self.abandoned

    @property
    def abandoned(self) -> bool:
        """True once this token's loop is no longer the session's current one."""
        if self._abandoned.is_set():
            return True
        return self._epoch is not None and self._epoch.current != self._generation

    @property
    def generation(self) -> int:
        return self._generation

    def cancel(self) -> None:
        self._cancelled.set()

    def abandon(self) -> None:
        self._abandoned.set()
        self._cancelled.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TaskAbortedError("abandoned" if self.abandoned else "aborted")


class SessionEpoch:
    """Generation counter for the session that hosts task loops.

    Each new loop calls `advance()` and gets a token bound to the new generation;
    every earlier token then reports itself abandoned.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def advance(self) -> CancellationToken:
        with self._lock:
            self._current += 1
            logger.debug(f"Session epoch advanced to {self._current}")
        return CancellationToken(self)
