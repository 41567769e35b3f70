"""Main BLE interface class."""

import atexit
import contextlib
from dataclasses import dataclass
from enum import Enum
from threading import RLock
from typing import Callable, List, Optional, Tuple

from pubsub import pub

from servolink import publishingThread
from servolink.interfaces.ble.adapter import RadioAdapter
from servolink.interfaces.ble.codec import NotificationEvent, SetActuator
from servolink.interfaces.ble.connection import (
    ConnectedDevice,
    ConnectionValidator,
    Connector,
)
from servolink.interfaces.ble.constants import (
    DEFAULT_PROFILE,
    ERROR_NOT_CONNECTED,
    ERROR_PERMISSIONS_DENIED,
    BLEConfig,
    PeripheralProfile,
    logger,
)
from servolink.interfaces.ble.discovery import Scanner, name_matcher
from servolink.interfaces.ble.errors import (
    AlreadyInProgress,
    BLEError,
    BLEErrorHandler,
    ConnectError,
    DisconnectError,
    LinkLost,
    PermissionDenied,
    RadioNotReady,
    TopologyNotVerified,
)
from servolink.interfaces.ble.gatt import Topology, Verified
from servolink.interfaces.ble.permissions import (
    PermissionProvider,
    StaticPermissionProvider,
)
from servolink.interfaces.ble.session import Session
from servolink.interfaces.ble.state import BLEStateManager, ConnectionState


class AlertKind(Enum):
    RADIO_NOT_READY = "radio not ready"
    PERMISSION_DENIED = "permission denied"
    CONDITION_DETECTED = "condition detected"
    LINK_LOST = "link lost"


@dataclass(frozen=True)
class Alert:
    """An interruptive message for the presentation layer; `actions` are the offered choices."""

    kind: AlertKind
    title: str
    message: str
    actions: Tuple[str, ...] = ("ok",)


@dataclass(frozen=True)
class InterfaceStatus:
    connected: bool
    scanning: bool
    actuator_on: bool


RECONNECT_ACTIONS = ("reconnect", "cancel")


class ServoInterface:
    """
    Drive one BT05-class servo/rain-sensor peripheral over BLE.

    `connect()` runs the whole pipeline (permissions, radio check, scan, connect with
    retries, GATT verification, notification subscription). Progress and events are
    published over pypubsub from `servolink.publishingThread`:

    - servolink.log.line (line, interface)
    - servolink.status (status, interface)
    - servolink.connection.established / servolink.connection.lost (interface)
    - servolink.notification (event, interface)
    - servolink.alert (alert, interface)
    """

    def __init__(
        self,
        adapter: Optional[RadioAdapter] = None,
        permissions: Optional[PermissionProvider] = None,
        profile: PeripheralProfile = DEFAULT_PROFILE,
        *,
        scan_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        connect_timeout: Optional[float] = None,
        io_timeout: Optional[float] = None,
        session_executor_factory: Optional[Callable[[], object]] = None,
    ) -> None:
        """
        Parameters:
            adapter: Radio adapter; defaults to the process-wide bleak adapter.
            permissions: Consulted before every scan; defaults to always granted.
            profile: Name and GATT identifiers of the peripheral.
            scan_timeout, max_retries, connect_timeout, io_timeout: Override BLEConfig.
            session_executor_factory: Builds the ordered executor each session uses for
                adapter events (one per session when None).
        """
        if adapter is None:
            from servolink.interfaces.ble.client import get_adapter

            adapter = get_adapter()
        self.adapter = adapter
        self.permissions = permissions or StaticPermissionProvider()
        self.profile = profile
        self.scan_timeout = BLEConfig.SCAN_TIMEOUT if scan_timeout is None else scan_timeout
        self.max_retries = (
            BLEConfig.CONNECT_MAX_RETRIES if max_retries is None else max_retries
        )
        self.connect_timeout = (
            BLEConfig.CONNECT_ATTEMPT_TIMEOUT if connect_timeout is None else connect_timeout
        )
        self.io_timeout = BLEConfig.GATT_IO_TIMEOUT if io_timeout is None else io_timeout
        self._session_executor_factory = session_executor_factory

        self._state_lock = RLock()
        self._state_manager = BLEStateManager()
        self._validator = ConnectionValidator(self._state_manager)
        self._scanner = Scanner(self.adapter, self._state_manager, status=self._log_line)
        self._connector = Connector(
            self.adapter, self._state_manager, status=self._log_line, profile=profile
        )
        self._session: Optional[Session] = None
        self._actuator_on = False
        self._status_log: List[str] = []
        self._closed = False

        self.adapter.init()
        self._exit_handler = atexit.register(self.close)

    def __repr__(self):
        rep = f"ServoInterface(name={self.profile.name!r}, state={self.connection_state.value!r}"
        session = self._session
        if session is not None and session.is_open:
            rep += f", device={session.device_id!r}"
        return rep + ")"

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.close()

    @property
    def connection_state(self) -> ConnectionState:
        return self._state_manager.state

    @property
    def is_connected(self) -> bool:
        return self._state_manager.is_connected

    @property
    def actuator_on(self) -> bool:
        with self._state_lock:
            return self._actuator_on

    @property
    def status(self) -> InterfaceStatus:
        state = self._state_manager.state
        return InterfaceStatus(
            connected=state == ConnectionState.CONNECTED,
            scanning=state == ConnectionState.SCANNING,
            actuator_on=self.actuator_on,
        )

    @property
    def status_log(self) -> List[str]:
        """Every status line emitted so far, oldest first."""
        with self._state_lock:
            return list(self._status_log)

    @property
    def topology(self) -> Optional[Topology]:
        return self._state_manager.topology

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def connect(self) -> ConnectedDevice:
        """
        Scan for the peripheral, connect, verify its topology and subscribe to notifications.

        Returns:
            ConnectedDevice: The link; check `verified` before relying on commands.

        Raises:
            AlreadyInProgress: Another pipeline or session is active.
            PermissionDenied: The permission collaborator refused.
            RadioNotReady: The radio is not powered on.
            ScanTimeout / ScanError: No peripheral found, or the scan failed.
            ConnectError: Every connection attempt failed, or discovery failed.
            LinkLost: The link dropped before the session took over.
        """
        with self._state_lock:
            if self._closed:
                raise BLEError("Interface is closed")
            self._validator.validate_scan_request()

        if not self.permissions.request_required_permissions():
            self._log_line(ERROR_PERMISSIONS_DENIED)
            self._alert(
                AlertKind.PERMISSION_DENIED,
                "Permissions required",
                "Bluetooth permissions are required to scan for the device.",
            )
            raise PermissionDenied()

        if not self._state_manager.transition_to(ConnectionState.SCANNING):
            raise AlreadyInProgress(self._state_manager.state)
        self._publish_status()

        try:
            candidate = self._scanner.scan(
                name_matcher(self.profile.name), self.scan_timeout, label=self.profile.name
            )
            self._publish_status()
            connected = self._connector.connect(
                candidate, self.max_retries, self.connect_timeout, self.io_timeout
            )
        except Exception as e:
            self._abort_pipeline(e)
            raise

        try:
            executor = (
                self._session_executor_factory() if self._session_executor_factory else None
            )
            session = Session(
                self.adapter,
                connected,
                state_manager=self._state_manager,
                on_disconnect=self._handle_link_lost,
                status=self._log_line,
                executor=executor,
                io_timeout=self.io_timeout,
            )
        except Exception as e:
            logger.warning("Session setup for %s failed: %s", connected.device_id, e)
            BLEErrorHandler.safe_cleanup(
                lambda: self.adapter.on_disconnect(connected.device_id, None),
                "disconnect handler removal",
            )
            BLEErrorHandler.safe_cleanup(
                lambda: self.adapter.disconnect(connected.device_id),
                "disconnect after failed session setup",
            )
            self._abort_pipeline(e)
            raise

        if session.link_lost:
            raise LinkLost(ERROR_NOT_CONNECTED)

        with self._state_lock:
            self._session = session
            self._actuator_on = False
        self._start_monitoring(session)

        publishingThread.queueWork(
            lambda: pub.sendMessage("servolink.connection.established", interface=self)
        )
        self._publish_status()
        return connected

    def reconnect(self) -> ConnectedDevice:
        """Run the pipeline again; the action behind the link-lost prompt."""
        return self.connect()

    def _start_monitoring(self, session: Session) -> None:
        topology = session.topology
        if not isinstance(topology, Verified):
            logger.warning("Not subscribing: topology is %s", topology.outcome.value)
            return
        try:
            session.subscribe(self._handle_notification, self._handle_notification_error)
        except BLEError as e:
            # Commands still work without notifications
            self._log_line(f"Monitor error: {e}")

    def _abort_pipeline(self, error: BaseException) -> None:
        if isinstance(error, RadioNotReady):
            self._log_line(str(error))
            self._alert(
                AlertKind.RADIO_NOT_READY,
                "Bluetooth not enabled",
                "Please enable Bluetooth on your device and try again.",
            )
        elif isinstance(error, ConnectError):
            self._log_line(f"Connection error: {error}")
        else:
            self._log_line(str(error))

        with self._state_manager.lock:
            if not self._state_manager.is_idle:
                self._state_manager.transition_to(ConnectionState.ERROR)
                if not self._state_manager.transition_to(ConnectionState.IDLE):
                    self._state_manager.reset()
        self._publish_status()

    def set_actuator(self, on: bool) -> None:
        """
        Drive the actuator on or off; `actuator_on` changes only when the write succeeds.

        Raises:
            TopologyNotVerified: Not connected, or connected to an unverified topology.
            LinkLost: The link dropped (a reconnect alert is published).
            NotWritable / WriteFailed: The write could not be performed.
        """
        session = self._session
        if session is None:
            self._log_line(ERROR_NOT_CONNECTED)
            raise TopologyNotVerified(ERROR_NOT_CONNECTED)

        label = "ON" if on else "OFF"
        self._log_line(f"Sending command: {label}")
        try:
            session.send_command(SetActuator(on))
        except LinkLost as e:
            self._log_line(f"Command error: {e}")
            self._alert(
                AlertKind.LINK_LOST,
                "Connection Lost",
                "The connection to the device was lost. Would you like to reconnect?",
                RECONNECT_ACTIONS,
            )
            raise
        except BLEError as e:
            self._log_line(f"Command error: {e}")
            raise

        with self._state_lock:
            self._actuator_on = on
        self._log_line(f"Command sent successfully: {label}")
        self._publish_status()

    def toggle_actuator(self) -> bool:
        """Flip the actuator and return its new position."""
        target = not self.actuator_on
        self.set_actuator(target)
        return target

    def read_value(self) -> NotificationEvent:
        """One-shot read of the characteristic value."""
        session = self._session
        if session is None:
            raise TopologyNotVerified(ERROR_NOT_CONNECTED)
        event = session.read_value()
        self._log_line(f"Read: {event.text}")
        return event

    def disconnect(self) -> None:
        """
        Disconnect from the peripheral. Adapter errors are reported, never raised.

        A no-op when nothing is connected.
        """
        with self._state_lock:
            session = self._session
        if session is None or not session.is_open:
            logger.debug("disconnect() called with no open session")
            return

        self._log_line("Disconnecting...")
        try:
            session.disconnect()
        except DisconnectError as e:
            self._log_line(f"Disconnect error: {e}")
        with self._state_lock:
            self._actuator_on = False
        self._log_line(f"Disconnected from {session.device_name}")
        publishingThread.queueWork(
            lambda: pub.sendMessage("servolink.connection.lost", interface=self)
        )
        self._publish_status()

    def close(self) -> None:
        """
        Disconnect, release the adapter and unregister the exit handler.

        Idempotent; also runs at interpreter exit.
        """
        with self._state_lock:
            if self._closed:
                logger.debug("ServoInterface.close called on closed interface; ignoring")
                return
            self._closed = True

        if self._state_manager.is_scanning:
            BLEErrorHandler.safe_cleanup(self.adapter.stop_scan, "scan stop")
        BLEErrorHandler.safe_execute(self.disconnect, error_msg="Error disconnecting")

        if self._exit_handler:
            with contextlib.suppress(ValueError):
                atexit.unregister(self._exit_handler)
            self._exit_handler = None

        BLEErrorHandler.safe_cleanup(self.adapter.shutdown, "adapter shutdown")
        if not publishingThread.flush(BLEConfig.DISCONNECT_TIMEOUT_SECONDS):
            logger.debug("Timed out waiting for publish queue flush")

    def _handle_link_lost(self, device_name: str) -> None:
        with self._state_lock:
            self._actuator_on = False
        self._log_line(f"Disconnected from {device_name}")
        publishingThread.queueWork(
            lambda: pub.sendMessage("servolink.connection.lost", interface=self)
        )
        self._publish_status()

    def _handle_notification(self, event: NotificationEvent) -> None:
        self._log_line(f"Received: {event.text}")
        publishingThread.queueWork(
            lambda: pub.sendMessage("servolink.notification", event=event, interface=self)
        )
        if event.condition_detected:
            self._alert(
                AlertKind.CONDITION_DETECTED,
                "Rain Detected!",
                "Rainwater has been detected by the sensor.",
            )

    def _handle_notification_error(self, error: BaseException) -> None:
        self._log_line(f"Monitor error: {error}")

    def _log_line(self, line: str) -> None:
        with self._state_lock:
            self._status_log.append(line)
        logger.info("%s", line)
        publishingThread.queueWork(
            lambda: pub.sendMessage("servolink.log.line", line=line, interface=self)
        )

    def _publish_status(self) -> None:
        status = self.status
        publishingThread.queueWork(
            lambda: pub.sendMessage("servolink.status", status=status, interface=self)
        )

    def _alert(
        self,
        kind: AlertKind,
        title: str,
        message: str,
        actions: Tuple[str, ...] = ("ok",),
    ) -> None:
        alert = Alert(kind, title, message, actions)
        logger.warning("Alert: %s - %s", title, message)
        publishingThread.queueWork(
            lambda: pub.sendMessage("servolink.alert", alert=alert, interface=self)
        )


__all__ = [
    "Alert",
    "AlertKind",
    "InterfaceStatus",
    "RECONNECT_ACTIONS",
    "ServoInterface",
]
