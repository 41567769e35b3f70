"""BLE interface package for servolink."""

from servolink.interfaces.ble.constants import (
    CHARACTERISTIC_UUID,
    DEFAULT_PROFILE,
    DEVICE_NAME,
    SERVICE_UUID,
    BLEConfig,
    PeripheralProfile,
    logger,
)
from servolink.interfaces.ble.errors import *
from servolink.interfaces.ble.gatt import *
from servolink.interfaces.ble.adapter import *
from servolink.interfaces.ble.state import *
from servolink.interfaces.ble.policies import *
from servolink.interfaces.ble.codec import *
from servolink.interfaces.ble.discovery import *
from servolink.interfaces.ble.connection import *
from servolink.interfaces.ble.notifications import *
from servolink.interfaces.ble.session import *
from servolink.interfaces.ble.permissions import *
from servolink.interfaces.ble.client import *
from servolink.interfaces.ble.interface import *
from servolink.interfaces.ble.utils import _sleep

__all__ = [
    # Core classes
    "ServoInterface",
    "Session",
    "Scanner",
    "Connector",
    "ConnectionValidator",
    "ConnectedDevice",
    "NotificationManager",
    "BLEStateManager",
    "ConnectionState",
    "BLEErrorHandler",
    "BackoffSchedule",
    "RetryPolicy",
    # Adapter boundary
    "RadioAdapter",
    "RadioState",
    "Candidate",
    "SubscriptionHandle",
    "BleakRadioAdapter",
    "get_adapter",
    # GATT model
    "CharacteristicDescriptor",
    "ServiceDescriptor",
    "Topology",
    "Verified",
    "Unverified",
    "VerificationOutcome",
    "WriteMode",
    "normalize_uuid",
    "select_write_mode",
    "verify_topology",
    # Commands and notifications
    "SetActuator",
    "Command",
    "NotificationEvent",
    "NotificationKind",
    "encode_command",
    "decode_notification",
    # Presentation
    "Alert",
    "AlertKind",
    "InterfaceStatus",
    # Permissions
    "PermissionProvider",
    "StaticPermissionProvider",
    "CallablePermissionProvider",
    "name_matcher",
    # Errors
    "BLEError",
    "AdapterError",
    "AdapterTimeoutError",
    "PeripheralDisconnectedError",
    "OperationTimeout",
    "RadioNotReady",
    "PermissionDenied",
    "ScanError",
    "ScanTimeout",
    "AlreadyInProgress",
    "ConnectError",
    "TopologyNotVerified",
    "NotWritable",
    "NotReadable",
    "NotNotifiable",
    "WriteFailed",
    "LinkLost",
    "DisconnectError",
    "NotificationDecodeError",
    "is_link_lost",
    # Constants/helpers
    "BLEConfig",
    "PeripheralProfile",
    "DEFAULT_PROFILE",
    "DEVICE_NAME",
    "SERVICE_UUID",
    "CHARACTERISTIC_UUID",
    "_sleep",
    "logger",
]
