"""Background stream tasks.

A producer runs on a worker thread while the caller blocks on the
consuming side (a guestfish tar-in or a decompressor). Exceptions raised
by the producer are kept and re-raised when the task is joined.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class BackgroundTask:
    """Run a callable on a thread and join it with error propagation."""

    def __init__(self, target: Callable[[], None], name: str = "stream-writer") -> None:
        self._target = target
        self._error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self) -> None:
        try:
            self._target()
        except BaseException as e:
            logger.debug("%s failed: %s", self._thread.name, e)
            self._error = e

    def start(self) -> BackgroundTask:
        """Start the worker thread."""
        self._thread.start()
        return self

    @property
    def error(self) -> BaseException | None:
        """Exception raised by the target, if any."""
        return self._error

    @property
    def running(self) -> bool:
        """Whether the worker thread is still alive."""
        return self._thread.is_alive()

    def join(self, reraise: bool = True, timeout: float | None = None) -> None:
        """Wait for the target to finish.

        Args:
            reraise: Re-raise the target's exception in the caller.
            timeout: Give up waiting after this many seconds.
        """
        self._thread.join(timeout)
        if reraise and self._error is not None:
            raise self._error


__all__ = ["BackgroundTask"]
