"""Error types and error handling utilities for BLE operations."""

from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional, Sequence

from servolink.interfaces.ble.constants import (
    ERROR_ALREADY_IN_PROGRESS,
    ERROR_CONNECTION_FAILED,
    ERROR_LINK_LOST,
    ERROR_NOT_WRITABLE,
    ERROR_PERMISSIONS_DENIED,
    ERROR_RADIO_NOT_READY,
    ERROR_SCAN_TIMEOUT,
    ERROR_TOPOLOGY_NOT_VERIFIED,
    ERROR_WRITING_BLE,
    LINK_LOST_MARKERS,
    logger,
)


class BLEError(Exception):
    """Base class for every error raised by the servolink BLE stack."""


# Adapter boundary errors


class AdapterError(BLEError):
    """A radio adapter operation failed."""


class AdapterTimeoutError(AdapterError):
    """A radio adapter operation did not complete in time."""


class PeripheralDisconnectedError(AdapterError):
    """The adapter reports that the peripheral link is gone."""


# Core taxonomy


class OperationTimeout(BLEError):
    """A suspending operation exceeded the timeout enforced by the core."""


class RadioNotReady(BLEError):
    """The radio is not powered on, so no scan was started."""

    def __init__(self, state) -> None:
        self.state = state
        label = getattr(state, "value", state)
        super().__init__(ERROR_RADIO_NOT_READY.format(label))


class PermissionDenied(BLEError):
    """Required Bluetooth permissions were not granted."""

    def __init__(self, message: str = ERROR_PERMISSIONS_DENIED) -> None:
        super().__init__(message)


class ScanError(BLEError):
    """The adapter reported a scan failure."""

    def __init__(self, cause: Optional[BaseException] = None, message: Optional[str] = None) -> None:
        self.cause = cause
        super().__init__(message or f"Scan error: {cause}")


class ScanTimeout(ScanError):
    """No matching advertisement arrived before the scan deadline."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(None, ERROR_SCAN_TIMEOUT)


class AlreadyInProgress(BLEError):
    """A pipeline is already running; requests are rejected, never queued."""

    def __init__(self, state) -> None:
        self.state = state
        label = getattr(state, "value", state)
        super().__init__(ERROR_ALREADY_IN_PROGRESS.format(label))


class ConnectError(BLEError):
    """Connecting failed after the allowed number of attempts."""

    def __init__(self, cause: Optional[BaseException], attempts: int) -> None:
        self.cause = cause
        self.attempts = attempts
        super().__init__(ERROR_CONNECTION_FAILED.format(cause, attempts))


class TopologyNotVerified(BLEError):
    """The expected service/characteristic was not verified for this connection."""

    def __init__(self, reason: str, missing: Sequence[str] = ()) -> None:
        self.reason = reason
        self.missing = tuple(missing)
        detail = reason
        if self.missing:
            detail = f"{reason} ({', '.join(self.missing)})"
        super().__init__(ERROR_TOPOLOGY_NOT_VERIFIED.format(detail))


class NotWritable(BLEError):
    """The verified characteristic has no write capability."""

    def __init__(self, characteristic_uuid: str) -> None:
        self.characteristic_uuid = characteristic_uuid
        super().__init__(ERROR_NOT_WRITABLE.format(characteristic_uuid))


class NotReadable(BLEError):
    """The verified characteristic cannot be read."""


class NotNotifiable(BLEError):
    """The verified characteristic supports neither notify nor indicate."""


class WriteFailed(BLEError):
    """A characteristic write failed for a reason other than link loss."""

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(ERROR_WRITING_BLE.format(cause))


class LinkLost(BLEError):
    """The link to the peripheral dropped; the caller should offer to reconnect."""

    def __init__(self, cause: object = None) -> None:
        self.cause = cause
        super().__init__(ERROR_LINK_LOST.format(cause))


class DisconnectError(BLEError):
    """The adapter failed to tear the link down; local cleanup still happened."""

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"Disconnect error: {cause}")


class NotificationDecodeError(BLEError):
    """An inbound notification payload could not be decoded as text."""

    def __init__(self, raw: bytes, cause: Optional[BaseException] = None) -> None:
        self.raw = bytes(raw)
        self.cause = cause
        super().__init__(f"Malformed notification payload: {self.raw.hex()}")


def is_link_lost(error: BaseException) -> bool:
    """
    Decide whether an adapter failure means the peripheral link is gone.

    A typed `PeripheralDisconnectedError` anywhere in the cause chain wins. Otherwise
    the failure text is searched for LINK_LOST_MARKERS, which also matches unrelated
    errors that happen to mention those words.
    """
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (PeripheralDisconnectedError, LinkLost)):
            return True
        current = current.__cause__
    text = str(error).lower()
    return any(marker in text for marker in LINK_LOST_MARKERS)


class BLEErrorHandler:
    """
    Helper class for consistent error handling in BLE operations.

    Centralises the two patterns used throughout the package: running a callable
    with a fallback value, and running cleanup code that must never raise.
    """

    @staticmethod
    def safe_execute(
        func,
        default_return=None,
        log_error: bool = True,
        error_msg: str = "Error in operation",
        reraise: bool = False,
    ):
        """
        Execute a zero-argument callable and return its result, falling back to a provided default on failure.

        BLE errors and future timeouts are logged at debug level; anything else is logged with a traceback.

        Parameters:
            func (callable): A zero-argument callable to execute.
            default_return: Value to return if execution fails.
            log_error (bool): If True, log caught exceptions.
            error_msg (str): Message prefix used when logging errors.
            reraise (bool): If True, re-raise any caught exception instead of returning default_return.

        Returns:
            The value returned by `func()` on success, or `default_return` if execution failed.
        """
        try:
            return func()
        except (BLEError, FutureTimeoutError) as e:
            if log_error:
                logger.debug("%s: %s", error_msg, e)
            if reraise:
                raise
            return default_return
        except Exception:
            if log_error:
                logger.exception("%s", error_msg)
            if reraise:
                raise
            return default_return

    @staticmethod
    def safe_cleanup(func, cleanup_name: str = "cleanup operation") -> bool:
        """
        Execute a cleanup callable and suppress any exception it raises.

        Returns:
            bool: `True` if the cleanup ran without raising, `False` otherwise.
        """
        try:
            func()
        except Exception as e:  # noqa: BLE001 - cleanup paths must not raise
            logger.debug("Error during %s: %s", cleanup_name, e)
            return False
        return True


__all__ = [
    "AdapterError",
    "AdapterTimeoutError",
    "AlreadyInProgress",
    "BLEError",
    "BLEErrorHandler",
    "ConnectError",
    "DisconnectError",
    "LinkLost",
    "NotNotifiable",
    "NotReadable",
    "NotWritable",
    "NotificationDecodeError",
    "OperationTimeout",
    "PeripheralDisconnectedError",
    "PermissionDenied",
    "RadioNotReady",
    "ScanError",
    "ScanTimeout",
    "TopologyNotVerified",
    "WriteFailed",
    "is_link_lost",
]
