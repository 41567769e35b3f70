"""BLE notification subscription tracking."""

from threading import RLock
from typing import Callable, Optional

from servolink.interfaces.ble.adapter import RadioAdapter, SubscriptionHandle
from servolink.interfaces.ble.constants import logger
from servolink.interfaces.ble.errors import BLEError


class NotificationManager:
    """
    Track the single notification subscription a session is allowed to hold.
    """

    def __init__(self):
        self._handle: Optional[SubscriptionHandle] = None
        self._lock = RLock()

    @property
    def active(self) -> bool:
        with self._lock:
            return self._handle is not None

    def subscribe(
        self,
        adapter: RadioAdapter,
        device_id: str,
        service_uuid: str,
        characteristic_uuid: str,
        on_notify: Callable[[bytes], None],
        on_error: Callable[[BaseException], None],
    ) -> SubscriptionHandle:
        """
        Enable notifications through the adapter and remember the resulting handle.

        Raises:
            BLEError: If a subscription is already active.
            AdapterError: If the adapter refused to subscribe.
        """
        with self._lock:
            if self._handle is not None:
                raise BLEError(
                    f"Already subscribed to {self._handle.characteristic_uuid}"
                )
            handle = adapter.subscribe(
                device_id, service_uuid, characteristic_uuid, on_notify, on_error
            )
            self._handle = handle
            logger.debug("Subscribed to notifications on %s", characteristic_uuid)
            return handle

    def unsubscribe(self, adapter: RadioAdapter) -> None:
        """Disable the tracked subscription; errors are logged and the handle forgotten."""
        with self._lock:
            handle = self._handle
            self._handle = None
        if handle is None:
            return
        try:
            adapter.unsubscribe(handle)
        except Exception as e:  # noqa: BLE001 - link may already be gone
            logger.debug(
                "Failed to unsubscribe %s: %s", handle.characteristic_uuid, e
            )

    def forget(self) -> None:
        """Drop the tracked subscription without touching the adapter."""
        with self._lock:
            self._handle = None


__all__ = ["NotificationManager"]
