"""Utility functions shared across the servolink package."""

import logging
import threading
from queue import Queue
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class DeferredExecution:
    """A thread that accepts closures to run, and runs them in the order they are received."""

    _STOP = object()

    def __init__(self, name: str) -> None:
        """
        Create the work queue and start its daemon worker thread.

        Parameters:
            name (str): Name given to the worker thread (visible in thread dumps).
        """
        self.name = name
        self.queue: Queue = Queue()
        self.thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.thread.start()

    def queueWork(self, runnable: Callable[[], None]) -> None:  # pylint: disable=C0103
        """Queue up a zero-argument callable to run on the worker thread."""
        self.queue.put(runnable)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every callable queued before this call has run.

        Returns:
            bool: `True` if the queue drained within `timeout`, `False` otherwise.
        """
        if threading.current_thread() is self.thread:
            return True
        done = threading.Event()
        self.queueWork(done.set)
        return done.wait(timeout=timeout)

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop the worker once pending work has run; queued work after this is dropped."""
        self.queue.put(self._STOP)
        if threading.current_thread() is not self.thread:
            self.thread.join(timeout=timeout)

    def _run(self) -> None:
        while True:
            runnable = self.queue.get()
            if runnable is self._STOP:
                return
            self._invoke(runnable)

    def _invoke(self, runnable: Callable[[], None]) -> None:
        try:
            runnable()
        except Exception:  # noqa: BLE001 - keep the worker alive
            logger.exception("Unexpected error in deferred execution %s", self.name)
