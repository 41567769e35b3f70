"""BLE constants and configuration."""

import logging
from dataclasses import dataclass

logger = logging.getLogger("servolink.ble")

# Peripheral identifiers (HM-10 style serial bridge)
DEVICE_NAME = "BT05"
SERVICE_UUID = "0000FFE0-0000-1000-8000-00805F9B34FB"
CHARACTERISTIC_UUID = "0000FFE1-0000-1000-8000-00805F9B34FB"

# Placeholder identity reported when a disconnect arrives without a known device
UNKNOWN_DEVICE_NAME = "Device"


@dataclass(frozen=True)
class PeripheralProfile:
    """Identifiers of the peripheral class this driver talks to."""

    name: str = DEVICE_NAME
    service_uuid: str = SERVICE_UUID
    characteristic_uuid: str = CHARACTERISTIC_UUID


DEFAULT_PROFILE = PeripheralProfile()


class BLEConfig:
    """Configuration constants for BLE operations."""

    SCAN_TIMEOUT = 15.0
    CONNECT_ATTEMPT_TIMEOUT = 10.0
    CONNECT_MAX_RETRIES = 2
    CONNECT_RETRY_DELAY = 1.0
    CONNECT_RETRY_BACKOFF = 1.0
    CONNECT_RETRY_MAX_DELAY = 8.0
    GATT_IO_TIMEOUT = 10.0
    RADIO_STATE_TIMEOUT = 5.0
    DISCONNECT_TIMEOUT_SECONDS = 5.0
    EVENT_THREAD_JOIN_TIMEOUT = 2.0
    SESSION_EVENT_FLUSH_TIMEOUT = 2.0


# Error message constants
ERROR_TIMEOUT = "{0} timed out after {1:.1f} seconds"
ERROR_RADIO_NOT_READY = "Bluetooth is not ready (state: {0}). Please enable Bluetooth."
ERROR_PERMISSIONS_DENIED = "Required permissions not granted"
ERROR_SCAN_TIMEOUT = "Scan timed out. Device not found."
ERROR_ALREADY_IN_PROGRESS = "Already connected or connection in progress (state: {0})"
ERROR_CONNECTION_FAILED = "Connection failed after {1} attempt(s): {0}"
ERROR_TOPOLOGY_NOT_VERIFIED = "Service/characteristic not verified: {0}"
ERROR_NOT_WRITABLE = "Characteristic {0} supports neither write mode"
ERROR_WRITING_BLE = "Error writing BLE: {0}"
ERROR_LINK_LOST = "The connection to the device was lost: {0}"
ERROR_NOT_CONNECTED = "Not connected to device"

# Substrings in adapter error text treated as loss of link
LINK_LOST_MARKERS = ("disconnected", "not connected")

__all__ = [
    "BLEConfig",
    "CHARACTERISTIC_UUID",
    "DEFAULT_PROFILE",
    "DEVICE_NAME",
    "ERROR_ALREADY_IN_PROGRESS",
    "ERROR_CONNECTION_FAILED",
    "ERROR_LINK_LOST",
    "ERROR_NOT_CONNECTED",
    "ERROR_NOT_WRITABLE",
    "ERROR_PERMISSIONS_DENIED",
    "ERROR_RADIO_NOT_READY",
    "ERROR_SCAN_TIMEOUT",
    "ERROR_TIMEOUT",
    "ERROR_TOPOLOGY_NOT_VERIFIED",
    "ERROR_WRITING_BLE",
    "LINK_LOST_MARKERS",
    "PeripheralProfile",
    "SERVICE_UUID",
    "UNKNOWN_DEVICE_NAME",
    "logger",
]
