"""Utility functions for BLE operations."""

import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from threading import Thread
from typing import Callable, Optional, TypeVar

from servolink.interfaces.ble.constants import ERROR_TIMEOUT, logger
from servolink.interfaces.ble.errors import OperationTimeout

T = TypeVar("T")


def _sleep(delay: float) -> None:
    """
    Throttle execution for the given duration in seconds.

    Wrapped so tests can replace it without touching `time.sleep` globally.
    """
    time.sleep(delay)


def call_with_timeout(
    func: Callable[[], T],
    timeout: Optional[float],
    label: str,
    on_timeout: Optional[Callable[[], None]] = None,
) -> T:
    """
    Run a blocking adapter call on a worker thread and wait for it at most `timeout` seconds.

    The deadline is enforced here rather than trusted to the adapter. When it expires the
    worker is abandoned (its late result or exception is consumed and logged), `on_timeout`
    is invoked so the caller can cancel the pending radio operation, and
    `OperationTimeout` is raised.

    Parameters:
        func: Zero-argument callable performing the adapter operation.
        timeout: Maximum seconds to wait; `None` runs `func` inline with no deadline.
        label: Short description used in the timeout message.
        on_timeout: Optional cancellation hook invoked after the deadline passes.

    Returns:
        Whatever `func` returned.

    Raises:
        OperationTimeout: If `func` did not finish before the deadline.
        Exception: Anything raised by `func` is re-raised unchanged.
    """
    if timeout is None:
        return func()

    future: "Future[T]" = Future()

    def _worker() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(func())
        except BaseException as exc:  # noqa: BLE001 - handed back to the waiting caller
            future.set_exception(exc)

    Thread(target=_worker, name=f"BLE-{label}", daemon=True).start()
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        future.add_done_callback(_log_late_outcome(label))
        if on_timeout is not None:
            try:
                on_timeout()
            except Exception as cancel_error:  # noqa: BLE001 - cancellation is best effort
                logger.debug("Cancelling %s after timeout failed: %s", label, cancel_error)
        raise OperationTimeout(ERROR_TIMEOUT.format(label, timeout)) from exc


def _log_late_outcome(label: str) -> Callable[["Future"], None]:
    def _consume(future: "Future") -> None:
        error = future.exception()
        if error is not None:
            logger.debug("%s finished after its deadline with error: %s", label, error)
        else:
            logger.debug("%s finished after its deadline", label)

    return _consume


__all__ = ["_sleep", "call_with_timeout"]
