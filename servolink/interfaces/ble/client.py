"""Radio adapter backed by bleak, with blocking calls over a private event loop."""

import asyncio
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from threading import RLock, Thread
from typing import Any, Dict, List, Optional, Tuple

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from servolink.interfaces.ble.adapter import (
    Candidate,
    DisconnectCallback,
    ErrorCallback,
    NotifyCallback,
    RadioAdapter,
    RadioState,
    ScanResultCallback,
    SubscriptionHandle,
)
from servolink.interfaces.ble.constants import (
    ERROR_NOT_CONNECTED,
    ERROR_TIMEOUT,
    LINK_LOST_MARKERS,
    BLEConfig,
    logger,
)
from servolink.interfaces.ble.errors import (
    AdapterError,
    AdapterTimeoutError,
    BLEErrorHandler,
    PeripheralDisconnectedError,
)
from servolink.interfaces.ble.gatt import (
    CharacteristicDescriptor,
    ServiceDescriptor,
    WriteMode,
    normalize_uuid,
)

# Fragments of bleak error text (or BleakBluetoothNotAvailableError.reason names)
_RADIO_STATE_HINTS: Tuple[Tuple[str, RadioState], ...] = (
    ("powered_off", RadioState.POWERED_OFF),
    ("powered off", RadioState.POWERED_OFF),
    ("not powered", RadioState.POWERED_OFF),
    ("turned off", RadioState.POWERED_OFF),
    ("denied", RadioState.UNAUTHORIZED),
    ("unauthorized", RadioState.UNAUTHORIZED),
    ("not authorized", RadioState.UNAUTHORIZED),
    ("permission", RadioState.UNAUTHORIZED),
    ("no_bluetooth", RadioState.UNSUPPORTED),
    ("no bluetooth", RadioState.UNSUPPORTED),
    ("not supported", RadioState.UNSUPPORTED),
    ("unsupported", RadioState.UNSUPPORTED),
)


def radio_state_from_error(error: BaseException) -> RadioState:
    """Map a failed scanner probe to the most likely radio state."""
    reason = getattr(error, "reason", None)
    text = f"{getattr(reason, 'name', reason or '')} {error}".lower()
    for hint, state in _RADIO_STATE_HINTS:
        if hint in text:
            return state
    return RadioState.UNKNOWN


def _translate(error: BaseException, label: str) -> AdapterError:
    text = str(error) or type(error).__name__
    if any(marker in text.lower() for marker in LINK_LOST_MARKERS):
        return PeripheralDisconnectedError(f"{label}: {text}")
    return AdapterError(f"{label}: {text}")


class BleakRadioAdapter(RadioAdapter):
    """
    `RadioAdapter` implementation on top of bleak.

    Bleak is asyncio-only, so the adapter runs an event loop on a dedicated daemon thread
    and exposes every operation as a blocking call. Scan results, notifications and
    disconnect callbacks are delivered from that thread.
    """

    def __init__(self, adapter: Optional[str] = None) -> None:
        """
        Parameters:
            adapter: Platform adapter name (e.g. "hci1" on BlueZ); None uses the default.
        """
        self.adapter_name = adapter
        self._lock = RLock()
        self._eventLoop: Optional[asyncio.AbstractEventLoop] = None
        self._eventThread: Optional[Thread] = None
        self._scanner: Optional[BleakScanner] = None
        self._devices: Dict[str, Any] = {}
        self._clients: Dict[str, BleakClient] = {}
        self._pending_connects: Dict[str, Future] = {}
        self._disconnect_handlers: Dict[str, DisconnectCallback] = {}
        self._subscriptions: Dict[int, Any] = {}

    @property
    def initialized(self) -> bool:
        with self._lock:
            return self._eventThread is not None and self._eventThread.is_alive()

    def init(self) -> None:
        with self._lock:
            if self.initialized:
                return
            self._eventLoop = asyncio.new_event_loop()
            self._eventThread = Thread(
                target=self._run_event_loop, name="BLERadioAdapter", daemon=True
            )
            try:
                self._eventThread.start()
            except RuntimeError:
                self._eventLoop.close()
                self._eventLoop = None
                self._eventThread = None
                raise
            logger.debug("Bleak radio adapter initialised (adapter=%s)", self.adapter_name)

    def shutdown(self) -> None:
        with self._lock:
            if not self.initialized:
                return
            device_ids = list(self._clients)
        BLEErrorHandler.safe_cleanup(self.stop_scan, "scan stop during shutdown")
        for device_id in device_ids:
            BLEErrorHandler.safe_cleanup(
                lambda d=device_id: self.disconnect(d), f"disconnect {device_id}"
            )
        with self._lock:
            loop, thread = self._eventLoop, self._eventThread
            pending = list(self._pending_connects.values())
            self._pending_connects.clear()
            self._eventLoop = None
            self._eventThread = None
            self._devices.clear()
            self._disconnect_handlers.clear()
            self._subscriptions.clear()
        for future in pending:
            future.cancel()
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=BLEConfig.EVENT_THREAD_JOIN_TIMEOUT)
        if thread.is_alive():
            logger.warning(
                "BLE event thread did not exit within %.1fs",
                BLEConfig.EVENT_THREAD_JOIN_TIMEOUT,
            )

    def state(self) -> RadioState:
        """
        Probe the radio by briefly starting a scanner.

        Bleak has no portable power-state query, so a failed start is mapped from its
        error text.
        """
        with self._lock:
            if self._scanner is not None:
                return RadioState.POWERED_ON

        async def _probe():
            scanner = BleakScanner(**self._backend_kwargs())
            await scanner.start()
            await scanner.stop()

        try:
            self.async_await(_probe(), timeout=BLEConfig.RADIO_STATE_TIMEOUT, label="radio probe")
        except AdapterTimeoutError:
            return RadioState.UNKNOWN
        except AdapterError as e:
            state = radio_state_from_error(e.__cause__ or e)
            logger.debug("Radio probe failed (%s): %s", state.value, e)
            return state
        return RadioState.POWERED_ON

    def start_scan(self, on_result: ScanResultCallback, on_error: ErrorCallback) -> None:
        def _detection(device, advertisement_data):
            with self._lock:
                self._devices[device.address] = device
            candidate = Candidate(
                id=device.address,
                name=device.name,
                local_name=getattr(advertisement_data, "local_name", None),
                rssi=getattr(advertisement_data, "rssi", None),
            )
            BLEErrorHandler.safe_execute(
                lambda: on_result(candidate), error_msg="Error in scan result callback"
            )

        with self._lock:
            if self._scanner is not None:
                raise AdapterError("Scan already running")
            scanner = BleakScanner(detection_callback=_detection, **self._backend_kwargs())
            self._scanner = scanner
        try:
            self.async_await(scanner.start(), timeout=BLEConfig.RADIO_STATE_TIMEOUT, label="scan start")
        except AdapterError:
            with self._lock:
                self._scanner = None
            raise
        logger.debug("Scanning started")

    def stop_scan(self) -> None:
        with self._lock:
            scanner = self._scanner
            self._scanner = None
        if scanner is None:
            return
        self.async_await(scanner.stop(), timeout=BLEConfig.RADIO_STATE_TIMEOUT, label="scan stop")
        logger.debug("Scanning stopped")

    def connect(self, device_id: str, timeout: Optional[float] = None) -> None:
        if timeout is None:
            timeout = BLEConfig.CONNECT_ATTEMPT_TIMEOUT
        with self._lock:
            target = self._devices.get(device_id, device_id)
            client = BleakClient(
                target,
                disconnected_callback=self._disconnected_callback(device_id),
                timeout=timeout,
                **self._backend_kwargs(),
            )
            self._clients[device_id] = client
            try:
                future = self.async_run(client.connect())
            except AdapterError:
                del self._clients[device_id]
                raise
            self._pending_connects[device_id] = future
        try:
            self._wait(future, None, "connect")
        except AdapterError:
            with self._lock:
                if self._clients.get(device_id) is client:
                    del self._clients[device_id]
            raise
        finally:
            with self._lock:
                if self._pending_connects.get(device_id) is future:
                    del self._pending_connects[device_id]

        with self._lock:
            current = self._clients.get(device_id) is client
        if not current:
            # Cancelled after the link came up
            BLEErrorHandler.safe_cleanup(
                lambda: self.async_await(
                    client.disconnect(),
                    timeout=BLEConfig.DISCONNECT_TIMEOUT_SECONDS,
                    label="disconnect",
                ),
                "disconnect of cancelled connect",
            )
            raise AdapterError("connect cancelled")

    def cancel_connection(self, device_id: str) -> None:
        """
        Abort a pending connect to `device_id` and release its client.

        Raises:
            AdapterError: The client failed to disconnect.
        """
        with self._lock:
            client = self._clients.pop(device_id, None)
            pending = self._pending_connects.pop(device_id, None)
        if pending is not None and pending.cancel():
            logger.debug("Cancelled pending connect to %s", device_id)
        if client is None:
            return
        self.async_await(
            client.disconnect(),
            timeout=BLEConfig.DISCONNECT_TIMEOUT_SECONDS,
            label="cancel connection",
        )

    def on_disconnect(self, device_id: str, handler: Optional[DisconnectCallback]) -> None:
        with self._lock:
            if handler is None:
                self._disconnect_handlers.pop(device_id, None)
            else:
                self._disconnect_handlers[device_id] = handler

    def disconnect(self, device_id: str) -> None:
        with self._lock:
            client = self._clients.pop(device_id, None)
            for token, (handle, _char) in list(self._subscriptions.items()):
                if handle.device_id == device_id:
                    del self._subscriptions[token]
        if client is None:
            return
        self.async_await(
            client.disconnect(), timeout=BLEConfig.DISCONNECT_TIMEOUT_SECONDS, label="disconnect"
        )

    def discover_services(self, device_id: str) -> List[ServiceDescriptor]:
        client = self._connected_client(device_id)
        return [ServiceDescriptor(normalize_uuid(s.uuid)) for s in client.services]

    def characteristics_for(
        self, device_id: str, service_uuid: str
    ) -> List[CharacteristicDescriptor]:
        client = self._connected_client(device_id)
        service = client.services.get_service(service_uuid)
        if service is None:
            return []
        return [
            CharacteristicDescriptor(
                uuid=normalize_uuid(c.uuid),
                properties=frozenset(c.properties),
                service_uuid=normalize_uuid(service.uuid),
            )
            for c in service.characteristics
        ]

    def read(self, device_id: str, service_uuid: str, characteristic_uuid: str) -> bytes:
        client = self._connected_client(device_id)
        characteristic = self._characteristic(client, service_uuid, characteristic_uuid)
        return bytes(self.async_await(client.read_gatt_char(characteristic), label="read"))

    def write(
        self,
        device_id: str,
        service_uuid: str,
        characteristic_uuid: str,
        data: bytes,
        mode: WriteMode,
    ) -> None:
        client = self._connected_client(device_id)
        characteristic = self._characteristic(client, service_uuid, characteristic_uuid)
        self.async_await(
            client.write_gatt_char(
                characteristic, data, response=mode == WriteMode.WITH_RESPONSE
            ),
            label="write",
        )

    def subscribe(
        self,
        device_id: str,
        service_uuid: str,
        characteristic_uuid: str,
        on_notify: NotifyCallback,
        on_error: ErrorCallback,
    ) -> SubscriptionHandle:
        client = self._connected_client(device_id)
        characteristic = self._characteristic(client, service_uuid, characteristic_uuid)

        def _notification_handler(_sender, data):
            BLEErrorHandler.safe_execute(
                lambda: on_notify(bytes(data)), error_msg="Error in notification callback"
            )

        self.async_await(
            client.start_notify(characteristic, _notification_handler), label="start notify"
        )
        handle = SubscriptionHandle(
            device_id, normalize_uuid(service_uuid), normalize_uuid(characteristic_uuid)
        )
        with self._lock:
            self._subscriptions[handle.token] = (handle, characteristic)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        with self._lock:
            entry = self._subscriptions.pop(handle.token, None)
            client = self._clients.get(handle.device_id)
        if entry is None or client is None:
            return
        _handle, characteristic = entry
        self.async_await(client.stop_notify(characteristic), label="stop notify")

    def async_await(self, coro, timeout: Optional[float] = None, label: str = "BLE operation"):
        """
        Run `coro` on the adapter loop and wait for its result.

        Raises:
            AdapterTimeoutError: `timeout` elapsed; the pending task is cancelled.
            PeripheralDisconnectedError: Bleak reported that the link is gone.
            AdapterError: Any other bleak failure.
        """
        return self._wait(self.async_run(coro), timeout, label)

    @staticmethod
    def _wait(future: Future, timeout: Optional[float], label: str):
        try:
            return future.result(timeout)
        except CancelledError as e:
            raise AdapterError(f"{label} cancelled") from e
        except (FutureTimeoutError, asyncio.TimeoutError) as e:
            # On 3.11+ both names alias the builtin TimeoutError
            future.cancel()
            if timeout is None:
                raise AdapterTimeoutError(f"{label} timed out") from e
            raise AdapterTimeoutError(ERROR_TIMEOUT.format(label, timeout)) from e
        except (BleakError, OSError) as e:
            raise _translate(e, label) from e

    def async_run(self, coro):
        """Schedule `coro` on the adapter loop and return its concurrent future."""
        with self._lock:
            loop = self._eventLoop
        if loop is None:
            coro.close()
            raise AdapterError("Radio adapter is not initialised; call init() first")
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def _run_event_loop(self) -> None:
        loop = self._eventLoop
        asyncio.set_event_loop(loop)
        BLEErrorHandler.safe_execute(
            loop.run_forever, error_msg="Error in event loop", reraise=False
        )
        loop.close()

    def _backend_kwargs(self) -> Dict[str, Any]:
        if self.adapter_name:
            return {"adapter": self.adapter_name}
        return {}

    def _disconnected_callback(self, device_id: str):
        def _callback(client) -> None:
            with self._lock:
                if self._clients.get(device_id) is not client:
                    logger.debug("Ignoring disconnect from stale client for %s", device_id)
                    return
                del self._clients[device_id]
                handler = self._disconnect_handlers.get(device_id)
            logger.debug("Bleak reported disconnect from %s", device_id)
            if handler is not None:
                BLEErrorHandler.safe_execute(
                    lambda: handler(device_id), error_msg="Error in disconnect handler"
                )

        return _callback

    def _connected_client(self, device_id: str) -> BleakClient:
        with self._lock:
            client = self._clients.get(device_id)
        if client is None or not client.is_connected:
            raise PeripheralDisconnectedError(ERROR_NOT_CONNECTED)
        return client

    @staticmethod
    def _characteristic(client: BleakClient, service_uuid: str, characteristic_uuid: str):
        service = client.services.get_service(service_uuid)
        if service is None:
            raise AdapterError(f"Service {service_uuid} not present")
        characteristic = service.get_characteristic(characteristic_uuid)
        if characteristic is None:
            raise AdapterError(f"Characteristic {characteristic_uuid} not present")
        return characteristic


_ADAPTER_LOCK = RLock()
_ADAPTER: Optional[BleakRadioAdapter] = None


def get_adapter(adapter: Optional[str] = None) -> BleakRadioAdapter:
    """
    Return the process-wide bleak adapter, creating it on first use.

    The adapter name only applies to the first call; later calls return the same instance.
    """
    global _ADAPTER
    with _ADAPTER_LOCK:
        if _ADAPTER is None:
            _ADAPTER = BleakRadioAdapter(adapter)
        elif adapter is not None and adapter != _ADAPTER.adapter_name:
            logger.warning(
                "Radio adapter already created for %s; ignoring %s",
                _ADAPTER.adapter_name,
                adapter,
            )
        return _ADAPTER


__all__ = ["BleakRadioAdapter", "get_adapter", "radio_state_from_error"]
