"""Radio adapter boundary consumed by the BLE core."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from itertools import count
from typing import Callable, List, Optional

from servolink.interfaces.ble.gatt import (
    CharacteristicDescriptor,
    ServiceDescriptor,
    WriteMode,
)


class RadioState(Enum):
    """Power/availability state of the local Bluetooth radio."""

    UNKNOWN = "Unknown"
    RESETTING = "Resetting"
    UNSUPPORTED = "Unsupported"
    UNAUTHORIZED = "Unauthorized"
    POWERED_OFF = "PoweredOff"
    POWERED_ON = "PoweredOn"


@dataclass(frozen=True)
class Candidate:
    """An advertising peripheral as seen by the scanner."""

    id: str
    name: Optional[str] = None
    local_name: Optional[str] = None
    rssi: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.name or self.local_name or self.id


_handle_ids = count(1)


@dataclass(frozen=True)
class SubscriptionHandle:
    """Opaque token identifying an active notification subscription."""

    device_id: str
    service_uuid: str
    characteristic_uuid: str
    token: int = field(default_factory=lambda: next(_handle_ids))


ScanResultCallback = Callable[[Candidate], None]
ErrorCallback = Callable[[BaseException], None]
NotifyCallback = Callable[[bytes], None]
DisconnectCallback = Callable[[str], None]


class RadioAdapter(ABC):
    """
    Blocking facade over a platform BLE stack.

    Callbacks (`on_result`, `on_notify`, `on_error`, disconnect handlers) may be invoked
    from the adapter's own thread; implementations must not call them while holding locks
    that the core also takes. Failures are reported as `AdapterError` subclasses.
    """

    @abstractmethod
    def init(self) -> None:
        """Prepare the adapter for use; calling it again is a no-op."""

    @abstractmethod
    def shutdown(self) -> None:
        """Release adapter resources; calling it again is a no-op."""

    @abstractmethod
    def state(self) -> RadioState:
        """Return the current radio state."""

    @abstractmethod
    def start_scan(
        self, on_result: ScanResultCallback, on_error: ErrorCallback
    ) -> None:
        """Start an unfiltered scan, reporting every advertisement to `on_result`."""

    @abstractmethod
    def stop_scan(self) -> None:
        """Stop the running scan, if any."""

    @abstractmethod
    def connect(self, device_id: str, timeout: Optional[float] = None) -> None:
        """Open a link to `device_id`."""

    @abstractmethod
    def cancel_connection(self, device_id: str) -> None:
        """Abort a pending or established link to `device_id`."""

    @abstractmethod
    def discover_services(self, device_id: str) -> List[ServiceDescriptor]:
        """Enumerate every service exposed by the connected peripheral."""

    @abstractmethod
    def characteristics_for(
        self, device_id: str, service_uuid: str
    ) -> List[CharacteristicDescriptor]:
        """Enumerate the characteristics of one service."""

    @abstractmethod
    def read(self, device_id: str, service_uuid: str, characteristic_uuid: str) -> bytes:
        """Read the current value of a characteristic."""

    @abstractmethod
    def write(
        self,
        device_id: str,
        service_uuid: str,
        characteristic_uuid: str,
        data: bytes,
        mode: WriteMode,
    ) -> None:
        """Write `data` to a characteristic using `mode`."""

    @abstractmethod
    def subscribe(
        self,
        device_id: str,
        service_uuid: str,
        characteristic_uuid: str,
        on_notify: NotifyCallback,
        on_error: ErrorCallback,
    ) -> SubscriptionHandle:
        """Enable notifications on a characteristic."""

    @abstractmethod
    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Disable notifications for `handle`."""

    @abstractmethod
    def on_disconnect(
        self, device_id: str, handler: Optional[DisconnectCallback]
    ) -> None:
        """Register the handler for unsolicited link loss, replacing any previous one."""

    @abstractmethod
    def disconnect(self, device_id: str) -> None:
        """Tear the link to `device_id` down."""


__all__ = [
    "Candidate",
    "DisconnectCallback",
    "ErrorCallback",
    "NotifyCallback",
    "RadioAdapter",
    "RadioState",
    "ScanResultCallback",
    "SubscriptionHandle",
    "WriteMode",
]
