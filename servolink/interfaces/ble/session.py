"""A connected session: commands, notifications and teardown for one peripheral link."""

from threading import Event, Lock, RLock
from typing import Callable, Optional, Union

from servolink.interfaces.ble.adapter import RadioAdapter, SubscriptionHandle
from servolink.interfaces.ble.codec import (
    Command,
    NotificationEvent,
    SetActuator,
    build_command,
    decode_notification,
)
from servolink.interfaces.ble.connection import ConnectedDevice
from servolink.interfaces.ble.constants import (
    ERROR_NOT_CONNECTED,
    UNKNOWN_DEVICE_NAME,
    BLEConfig,
    logger,
)
from servolink.interfaces.ble.errors import (
    BLEError,
    BLEErrorHandler,
    DisconnectError,
    LinkLost,
    NotificationDecodeError,
    NotNotifiable,
    NotReadable,
    OperationTimeout,
    TopologyNotVerified,
    WriteFailed,
    is_link_lost,
)
from servolink.interfaces.ble.gatt import Topology, Verified, WriteMode, select_write_mode
from servolink.interfaces.ble.notifications import NotificationManager
from servolink.interfaces.ble.state import BLEStateManager, ConnectionState
from servolink.interfaces.ble.utils import call_with_timeout
from servolink.util import DeferredExecution

EventCallback = Callable[[NotificationEvent], None]
ErrorCallback = Callable[[BaseException], None]


class Session:
    """
    Own a verified (or partially verified) link until it is torn down.

    Adapter callbacks (notifications, unsolicited disconnects) are queued on a single
    ordered executor so they are handled one at a time in arrival order, never on the
    radio thread. Once the link drops, commands fail immediately with `LinkLost`.
    """

    def __init__(
        self,
        adapter: RadioAdapter,
        connected: ConnectedDevice,
        *,
        state_manager: Optional[BLEStateManager] = None,
        on_disconnect: Optional[Callable[[str], None]] = None,
        status: Optional[Callable[[str], None]] = None,
        executor=None,
        io_timeout: Optional[float] = None,
    ):
        self.adapter = adapter
        self.connected = connected
        self.state_manager = state_manager
        self._on_disconnect = on_disconnect
        self._status = status
        self._io_timeout = BLEConfig.GATT_IO_TIMEOUT if io_timeout is None else io_timeout
        self._owns_executor = executor is None
        self._executor = executor or DeferredExecution(
            f"BLE-session-{connected.device_id}"
        )
        self._notifications = NotificationManager()
        self._on_event: Optional[EventCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._lock = RLock()
        self._write_lock = Lock()
        # Clear while an adapter write is running, including one abandoned after a timeout
        self._write_idle = Event()
        self._write_idle.set()
        self._closed = False
        self._link_lost = False

        candidate = connected.candidate
        self.device_name = candidate.name or candidate.local_name or UNKNOWN_DEVICE_NAME

        adapter.on_disconnect(connected.device_id, self._handle_adapter_disconnect)
        if connected.link_dropped.is_set():
            logger.info("Peripheral %s disconnected before the session started", self.device_id)
            self._handle_link_loss()

    @property
    def device_id(self) -> str:
        return self.connected.device_id

    @property
    def topology(self) -> Topology:
        return self.connected.topology

    @property
    def verified(self) -> bool:
        return self.connected.verified

    @property
    def is_open(self) -> bool:
        with self._lock:
            return not self._closed

    @property
    def link_lost(self) -> bool:
        with self._lock:
            return self._link_lost

    @property
    def subscribed(self) -> bool:
        return self._notifications.active

    def subscribe(
        self, on_event: EventCallback, on_error: Optional[ErrorCallback] = None
    ) -> SubscriptionHandle:
        """
        Enable notifications on the verified characteristic.

        Each payload is decoded and passed to `on_event`; decode and transport errors go to
        `on_error` and leave the subscription in place.

        Raises:
            TopologyNotVerified: Unverified topology or closed session.
            LinkLost: The link already dropped.
            NotNotifiable: The characteristic supports neither notify nor indicate.
            BLEError: A subscription is already active.
        """
        with self._lock:
            topology = self._require_verified()
            characteristic = topology.characteristic
            if not characteristic.notifiable:
                raise NotNotifiable(
                    f"Characteristic {characteristic.uuid} does not support notifications"
                )
            if self._notifications.active:
                raise BLEError("Session already has a notification subscription")
            self._on_event = on_event
            self._on_error = on_error
            try:
                return self._notifications.subscribe(
                    self.adapter,
                    self.device_id,
                    topology.service.uuid,
                    characteristic.uuid,
                    self._enqueue_payload,
                    self._enqueue_error,
                )
            except Exception:
                self._on_event = None
                self._on_error = None
                raise

    def send_command(self, command: Union[Command, SetActuator]) -> None:
        """
        Write a command to the verified characteristic.

        Writes are serialised: a write that outlived its timeout still holds the
        characteristic until the adapter returns. The caller should update any tracked
        actuator state only after this returns.

        Raises:
            TopologyNotVerified: Unverified topology or closed session.
            LinkLost: The link dropped before or during the write.
            NotWritable: The characteristic supports neither write mode.
            WriteFailed: The write failed for any other reason, or an earlier write is
                still running after its timeout.
        """
        if isinstance(command, SetActuator):
            command = build_command(command)
        with self._write_lock:
            topology = self._require_verified()
            mode = select_write_mode(topology.characteristic)
            command = command.with_mode(mode)
            if not self._write_idle.wait(self._io_timeout):
                raise WriteFailed(OperationTimeout("previous write still in progress"))
            self._report(f"Using write {mode.value}")
            logger.debug(
                "Writing %r to %s (%s)",
                command.payload,
                topology.characteristic.uuid,
                mode.value,
            )
            self._write_idle.clear()
            try:
                call_with_timeout(
                    lambda: self._write(topology, command.payload, mode),
                    self._io_timeout,
                    "write",
                )
            except Exception as e:  # noqa: BLE001 - classified below
                if is_link_lost(e):
                    logger.warning("Write failed because the link dropped: %s", e)
                    self._handle_link_loss()
                    raise LinkLost(e) from e
                raise WriteFailed(e) from e

    def read_value(self) -> NotificationEvent:
        """
        Read and decode the current characteristic value.

        Raises:
            TopologyNotVerified: Unverified topology or closed session.
            LinkLost: The link dropped.
            NotReadable: The characteristic is not readable.
            NotificationDecodeError: The value is not ASCII.
        """
        topology = self._require_verified()
        characteristic = topology.characteristic
        if not characteristic.readable:
            raise NotReadable(f"Characteristic {characteristic.uuid} is not readable")
        try:
            raw = call_with_timeout(
                lambda: self.adapter.read(
                    self.device_id, topology.service.uuid, characteristic.uuid
                ),
                self._io_timeout,
                "read",
            )
        except Exception as e:  # noqa: BLE001 - classified below
            if is_link_lost(e):
                self._handle_link_loss()
                raise LinkLost(e) from e
            raise
        return decode_notification(raw)

    def disconnect(self) -> None:
        """
        Tear the link down. Local state always returns to IDLE.

        Calling this again, or after the link dropped, is a no-op.

        Raises:
            DisconnectError: The adapter failed to disconnect (after local cleanup).
        """
        with self._lock:
            if self._closed:
                logger.debug("Session for %s already closed", self.device_id)
                return
            self._closed = True

        if self.state_manager is not None and self._is_current():
            self.state_manager.transition_to(ConnectionState.DISCONNECTING)
        self._notifications.unsubscribe(self.adapter)
        BLEErrorHandler.safe_cleanup(
            lambda: self.adapter.on_disconnect(self.device_id, None),
            "disconnect handler removal",
        )

        error: Optional[BaseException] = None
        try:
            call_with_timeout(
                lambda: self.adapter.disconnect(self.device_id),
                BLEConfig.DISCONNECT_TIMEOUT_SECONDS,
                "disconnect",
            )
        except Exception as e:  # noqa: BLE001 - reported after cleanup
            error = e
        finally:
            self._teardown()

        if error is not None:
            logger.warning("Disconnect from %s failed: %s", self.device_id, error)
            raise DisconnectError(error) from error
        logger.info("Disconnected from %s", self.device_id)

    def flush_events(self, timeout: Optional[float] = None) -> bool:
        """Wait until every adapter event queued so far has been handled."""
        if timeout is None:
            timeout = BLEConfig.SESSION_EVENT_FLUSH_TIMEOUT
        return self._executor.flush(timeout)

    def _report(self, line: str) -> None:
        if self._status is not None:
            self._status(line)

    def _write(self, topology: Verified, payload: bytes, mode: WriteMode) -> None:
        try:
            self.adapter.write(
                self.device_id,
                topology.service.uuid,
                topology.characteristic.uuid,
                payload,
                mode,
            )
        finally:
            self._write_idle.set()

    def _require_verified(self) -> Verified:
        with self._lock:
            if self._link_lost:
                raise LinkLost(ERROR_NOT_CONNECTED)
            if self._closed:
                raise TopologyNotVerified("session closed")
        topology = self.connected.topology
        if not isinstance(topology, Verified):
            raise TopologyNotVerified(topology.outcome.value, topology.missing)
        return topology

    def _enqueue_payload(self, raw: bytes) -> None:
        payload = bytes(raw)
        self._executor.queueWork(lambda: self._deliver_payload(payload))

    def _enqueue_error(self, error: BaseException) -> None:
        self._executor.queueWork(lambda: self._deliver_error(error))

    def _deliver_payload(self, raw: bytes) -> None:
        on_event = self._on_event
        if on_event is None:
            return
        try:
            event = decode_notification(raw)
        except NotificationDecodeError as e:
            logger.debug("Dropping undecodable notification: %s", e)
            self._deliver_error(e)
            return
        BLEErrorHandler.safe_execute(
            lambda: on_event(event), error_msg="Error in notification callback"
        )

    def _deliver_error(self, error: BaseException) -> None:
        on_error = self._on_error
        if on_error is None:
            logger.debug("Notification error with no handler: %s", error)
            return
        BLEErrorHandler.safe_execute(
            lambda: on_error(error), error_msg="Error in notification error callback"
        )

    def _handle_adapter_disconnect(self, _device_id: str) -> None:
        logger.info("Peripheral %s disconnected", self.device_id)
        self._handle_link_loss()

    def _handle_link_loss(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._link_lost = True
        self._executor.queueWork(self._finish_link_loss)

    def _finish_link_loss(self) -> None:
        self._notifications.forget()
        BLEErrorHandler.safe_cleanup(
            lambda: self.adapter.on_disconnect(self.device_id, None),
            "disconnect handler removal",
        )
        BLEErrorHandler.safe_cleanup(
            lambda: self.adapter.disconnect(self.device_id), "link release"
        )
        callback = self._on_disconnect
        self._teardown()
        if callback is not None:
            BLEErrorHandler.safe_execute(
                lambda: callback(self.device_name), error_msg="Error in disconnect callback"
            )

    def _is_current(self) -> bool:
        return (
            self.state_manager is not None
            and self.state_manager.device is self.connected.candidate
        )

    def _teardown(self) -> None:
        self._on_event = None
        self._on_error = None
        if self.state_manager is not None:
            with self.state_manager.lock:
                if self._is_current() and not self.state_manager.is_idle:
                    if not self.state_manager.transition_to(ConnectionState.IDLE):
                        self.state_manager.reset()
        if self._owns_executor:
            self._executor.close(BLEConfig.EVENT_THREAD_JOIN_TIMEOUT)


__all__ = ["Session"]
