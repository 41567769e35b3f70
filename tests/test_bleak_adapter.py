"""Tests for the bleak-backed radio adapter, with bleak replaced by in-process fakes."""

import asyncio
import threading
import time
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError

from servolink.interfaces.ble import client as client_module
from servolink.interfaces.ble.adapter import RadioState
from servolink.interfaces.ble.client import (
    BleakRadioAdapter,
    get_adapter,
    radio_state_from_error,
)
from servolink.interfaces.ble.connection import Connector
from servolink.interfaces.ble.errors import (
    AdapterError,
    AdapterTimeoutError,
    PeripheralDisconnectedError,
)
from servolink.interfaces.ble.gatt import WriteMode, normalize_uuid

from ble_fixtures import CHARACTERISTIC, DEVICE_ID, SERVICE, bt05


class FakeCharacteristic:
    def __init__(self, uuid, properties):
        self.uuid = uuid
        self.properties = list(properties)


class FakeService:
    def __init__(self, uuid, characteristics=()):
        self.uuid = uuid
        self.characteristics = list(characteristics)

    def get_characteristic(self, uuid):
        wanted = normalize_uuid(uuid)
        return next((c for c in self.characteristics if normalize_uuid(c.uuid) == wanted), None)


class FakeServiceCollection:
    def __init__(self, services):
        self._services = list(services)

    def __iter__(self):
        return iter(self._services)

    def get_service(self, uuid):
        wanted = normalize_uuid(uuid)
        return next((s for s in self._services if normalize_uuid(s.uuid) == wanted), None)


class FakeBleakScanner:
    """Stands in for bleak.BleakScanner."""

    advertisements = []
    start_error = None
    instances = []

    def __init__(self, detection_callback=None, **kwargs):
        self.detection_callback = detection_callback
        self.kwargs = kwargs
        self.running = False
        FakeBleakScanner.instances.append(self)

    async def start(self):
        if FakeBleakScanner.start_error is not None:
            raise FakeBleakScanner.start_error
        self.running = True
        if self.detection_callback is not None:
            for device, advertisement in FakeBleakScanner.advertisements:
                self.detection_callback(device, advertisement)

    async def stop(self):
        self.running = False


class FakeBleakClient:
    """Stands in for bleak.BleakClient."""

    connect_error = None
    connect_delays = []
    disconnect_error = None
    write_error = None
    instances = []

    def __init__(self, address_or_device, disconnected_callback=None, timeout=10.0, **kwargs):
        self.target = address_or_device
        self.disconnected_callback = disconnected_callback
        self.timeout = timeout
        self.kwargs = kwargs
        self.is_connected = False
        self.writes = []
        self.notify_handlers = {}
        self.stopped = []
        self.disconnect_requested = threading.Event()
        self.connect_cancelled = False
        self.services = FakeServiceCollection(
            [
                FakeService("00001800-0000-1000-8000-00805f9b34fb"),
                FakeService(
                    SERVICE,
                    [FakeCharacteristic(CHARACTERISTIC, ["read", "write-without-response", "notify"])],
                ),
            ]
        )
        FakeBleakClient.instances.append(self)

    async def connect(self):
        if FakeBleakClient.connect_delays:
            delay = FakeBleakClient.connect_delays.pop(0)
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.connect_cancelled = True
                raise
        if FakeBleakClient.connect_error is not None:
            raise FakeBleakClient.connect_error
        self.is_connected = True

    async def disconnect(self):
        self.disconnect_requested.set()
        if FakeBleakClient.disconnect_error is not None:
            raise FakeBleakClient.disconnect_error
        self.is_connected = False

    async def read_gatt_char(self, characteristic):
        return bytearray(b"RAIN\n")

    async def write_gatt_char(self, characteristic, data, response=False):
        if FakeBleakClient.write_error is not None:
            raise FakeBleakClient.write_error
        self.writes.append((characteristic.uuid, bytes(data), response))

    async def start_notify(self, characteristic, callback):
        self.notify_handlers[characteristic.uuid] = callback

    async def stop_notify(self, characteristic):
        self.stopped.append(characteristic.uuid)
        self.notify_handlers.pop(characteristic.uuid, None)


@pytest.fixture
def bleak_fakes(monkeypatch):
    for cls in (FakeBleakScanner, FakeBleakClient):
        cls.instances = []
    FakeBleakScanner.advertisements = [
        (
            SimpleNamespace(address=DEVICE_ID, name="BT05"),
            SimpleNamespace(local_name="BT05", rssi=-55),
        ),
        (
            SimpleNamespace(address="11:22:33:44:55:66", name=None),
            SimpleNamespace(local_name=None, rssi=-90),
        ),
    ]
    FakeBleakScanner.start_error = None
    FakeBleakClient.connect_error = None
    FakeBleakClient.connect_delays = []
    FakeBleakClient.disconnect_error = None
    FakeBleakClient.write_error = None
    monkeypatch.setattr(client_module, "BleakScanner", FakeBleakScanner)
    monkeypatch.setattr(client_module, "BleakClient", FakeBleakClient)
    return SimpleNamespace(scanner=FakeBleakScanner, client=FakeBleakClient)


@pytest.fixture
def radio(bleak_fakes):  # pylint: disable=W0613
    adapter = BleakRadioAdapter()
    adapter.init()
    yield adapter
    adapter.shutdown()


def connect(radio):
    """Scan so the adapter knows the BLEDevice, then connect to it."""
    radio.start_scan(lambda _c: None, lambda _e: None)
    radio.stop_scan()
    radio.connect(DEVICE_ID, timeout=1.0)
    return FakeBleakClient.instances[-1]


@pytest.mark.parametrize(
    "error, expected",
    [
        (BleakError("Bluetooth device is turned off"), RadioState.POWERED_OFF),
        (BleakError("org.bluez.Error.NotReady: Resource Not Ready, powered off"), RadioState.POWERED_OFF),
        (BleakError("BLE is not authorized - check macOS privacy settings"), RadioState.UNAUTHORIZED),
        (BleakError("No Bluetooth adapters found."), RadioState.UNSUPPORTED),
        (BleakError("something else"), RadioState.UNKNOWN),
    ],
)
def test_radio_state_from_error(error, expected):
    assert radio_state_from_error(error) is expected


def test_radio_state_from_reason_attribute():
    error = BleakError("unavailable")
    error.reason = SimpleNamespace(name="POWERED_OFF")
    assert radio_state_from_error(error) is RadioState.POWERED_OFF


class TestLifecycle:
    def test_init_is_idempotent(self, bleak_fakes):  # pylint: disable=W0613
        adapter = BleakRadioAdapter()
        adapter.init()
        thread = adapter._eventThread
        adapter.init()
        assert adapter._eventThread is thread
        adapter.shutdown()
        adapter.shutdown()
        assert not adapter.initialized

    def test_operations_before_init_fail(self, bleak_fakes):  # pylint: disable=W0613
        adapter = BleakRadioAdapter()
        with pytest.raises(AdapterError):
            adapter.connect(DEVICE_ID)

    def test_async_await_timeout(self, radio):
        with pytest.raises(AdapterTimeoutError):
            radio.async_await(asyncio.sleep(5), timeout=0.05, label="sleep")

    def test_backend_kwargs_carry_adapter_name(self, bleak_fakes):
        adapter = BleakRadioAdapter("hci1")
        adapter.init()
        try:
            adapter.start_scan(lambda _c: None, lambda _e: None)
            adapter.stop_scan()
        finally:
            adapter.shutdown()
        assert bleak_fakes.scanner.instances[-1].kwargs == {"adapter": "hci1"}


class TestScanning:
    def test_state_powered_on(self, radio):
        assert radio.state() is RadioState.POWERED_ON

    def test_state_from_failed_probe(self, radio, bleak_fakes):
        bleak_fakes.scanner.start_error = BleakError("Bluetooth device is turned off")
        assert radio.state() is RadioState.POWERED_OFF

    def test_scan_delivers_candidates(self, radio):
        found = []
        radio.start_scan(found.append, lambda _e: None)
        radio.stop_scan()

        assert [c.id for c in found] == [DEVICE_ID, "11:22:33:44:55:66"]
        assert found[0].name == "BT05"
        assert found[0].local_name == "BT05"
        assert found[0].rssi == -55
        assert found[1].display_name == "11:22:33:44:55:66"

    def test_second_scan_rejected(self, radio):
        radio.start_scan(lambda _c: None, lambda _e: None)
        with pytest.raises(AdapterError):
            radio.start_scan(lambda _c: None, lambda _e: None)
        radio.stop_scan()

    def test_failed_start_allows_retry(self, radio, bleak_fakes):
        bleak_fakes.scanner.start_error = BleakError("InProgress")
        with pytest.raises(AdapterError):
            radio.start_scan(lambda _c: None, lambda _e: None)

        bleak_fakes.scanner.start_error = None
        radio.start_scan(lambda _c: None, lambda _e: None)
        radio.stop_scan()

    def test_stop_without_scan_is_noop(self, radio):
        radio.stop_scan()


class TestLink:
    def test_connect_uses_scanned_device(self, radio):
        client = connect(radio)

        assert client.is_connected
        assert client.target.address == DEVICE_ID
        assert client.timeout == 1.0

    def test_connect_failure(self, radio, bleak_fakes):
        bleak_fakes.client.connect_error = BleakError("Device with address not found")

        with pytest.raises(AdapterError) as excinfo:
            radio.connect(DEVICE_ID)

        assert not isinstance(excinfo.value, PeripheralDisconnectedError)
        with pytest.raises(PeripheralDisconnectedError):
            radio.discover_services(DEVICE_ID)

    def test_discovery(self, radio):
        connect(radio)

        services = radio.discover_services(DEVICE_ID)
        characteristics = radio.characteristics_for(DEVICE_ID, SERVICE)

        assert [s.uuid for s in services] == ["00001800-0000-1000-8000-00805f9b34fb", SERVICE]
        (characteristic,) = characteristics
        assert characteristic.uuid == CHARACTERISTIC
        assert characteristic.service_uuid == SERVICE
        assert characteristic.writable_without_response
        assert not characteristic.writable_with_response
        assert radio.characteristics_for(DEVICE_ID, "0000abcd-0000-1000-8000-00805f9b34fb") == []

    @pytest.mark.parametrize(
        "mode, response",
        [(WriteMode.WITH_RESPONSE, True), (WriteMode.WITHOUT_RESPONSE, False)],
    )
    def test_write(self, radio, mode, response):
        client = connect(radio)

        radio.write(DEVICE_ID, SERVICE, CHARACTERISTIC, b"ON\n", mode)

        assert client.writes == [(CHARACTERISTIC, b"ON\n", response)]

    def test_write_link_lost_translation(self, radio, bleak_fakes):
        connect(radio)
        bleak_fakes.client.write_error = BleakError("Not connected")

        with pytest.raises(PeripheralDisconnectedError):
            radio.write(DEVICE_ID, SERVICE, CHARACTERISTIC, b"ON\n", WriteMode.WITH_RESPONSE)

    def test_write_other_failure(self, radio, bleak_fakes):
        connect(radio)
        bleak_fakes.client.write_error = BleakError("ATT error: 0x03")

        with pytest.raises(AdapterError) as excinfo:
            radio.write(DEVICE_ID, SERVICE, CHARACTERISTIC, b"ON\n", WriteMode.WITH_RESPONSE)
        assert not isinstance(excinfo.value, PeripheralDisconnectedError)

    def test_missing_characteristic(self, radio):
        connect(radio)
        with pytest.raises(AdapterError):
            radio.write(
                DEVICE_ID,
                SERVICE,
                "0000ffe9-0000-1000-8000-00805f9b34fb",
                b"ON\n",
                WriteMode.WITH_RESPONSE,
            )

    def test_read(self, radio):
        connect(radio)
        assert radio.read(DEVICE_ID, SERVICE, CHARACTERISTIC) == b"RAIN\n"

    def test_notifications(self, radio):
        client = connect(radio)
        received = []

        handle = radio.subscribe(
            DEVICE_ID, SERVICE, CHARACTERISTIC, received.append, lambda _e: None
        )
        client.notify_handlers[CHARACTERISTIC](None, bytearray(b"RAIN\n"))
        radio.unsubscribe(handle)

        assert received == [b"RAIN\n"]
        assert isinstance(received[0], bytes)
        assert client.stopped == [CHARACTERISTIC]
        assert handle.characteristic_uuid == CHARACTERISTIC

    def test_unsolicited_disconnect_reaches_handler(self, radio):
        client = connect(radio)
        dropped = threading.Event()
        seen = []

        def handler(device_id):
            seen.append(device_id)
            dropped.set()

        radio.on_disconnect(DEVICE_ID, handler)
        client.disconnected_callback(client)

        assert dropped.wait(1.0)
        assert seen == [DEVICE_ID]
        with pytest.raises(PeripheralDisconnectedError):
            radio.discover_services(DEVICE_ID)

    def test_removed_handler_is_not_called(self, radio):
        client = connect(radio)
        seen = []
        radio.on_disconnect(DEVICE_ID, seen.append)
        radio.on_disconnect(DEVICE_ID, None)

        client.disconnected_callback(client)

        assert seen == []

    def test_disconnect(self, radio):
        client = connect(radio)

        radio.disconnect(DEVICE_ID)
        radio.disconnect(DEVICE_ID)

        assert not client.is_connected

    def test_cancel_connection(self, radio):
        client = connect(radio)

        radio.cancel_connection(DEVICE_ID)
        radio.cancel_connection("00:00:00:00:00:00")

        assert DEVICE_ID not in radio._clients
        assert client.disconnect_requested.wait(1.0)

    def test_cancel_connection_reports_disconnect_failure(self, radio, bleak_fakes):
        connect(radio)
        bleak_fakes.client.disconnect_error = BleakError("org.bluez.Error.Failed")

        with pytest.raises(AdapterError):
            radio.cancel_connection(DEVICE_ID)

        bleak_fakes.client.disconnect_error = None
        assert DEVICE_ID not in radio._clients

    def test_timed_out_attempt_is_cancelled(self, radio, bleak_fakes):
        radio.start_scan(lambda _c: None, lambda _e: None)
        radio.stop_scan()
        bleak_fakes.client.connect_delays = [0.3]

        connected = Connector(radio).connect(bt05(), max_retries=1, per_attempt_timeout=0.1)

        first, second = bleak_fakes.client.instances
        assert connected.attempts == 2
        assert first.disconnect_requested.wait(1.0)
        time.sleep(0.4)
        assert first.connect_cancelled
        assert not first.is_connected
        assert radio._clients[DEVICE_ID] is second
        assert second.is_connected

    def test_disconnect_from_replaced_client_is_ignored(self, radio):
        first = connect(radio)
        radio.cancel_connection(DEVICE_ID)
        second = connect(radio)
        seen = []
        radio.on_disconnect(DEVICE_ID, seen.append)

        first.disconnected_callback(first)

        assert seen == []
        assert radio._clients[DEVICE_ID] is second
        second.disconnected_callback(second)
        assert seen == [DEVICE_ID]

    def test_shutdown_disconnects_clients(self, bleak_fakes):  # pylint: disable=W0613
        adapter = BleakRadioAdapter()
        adapter.init()
        client = connect(adapter)

        adapter.shutdown()

        assert not client.is_connected


def test_get_adapter_is_singleton(monkeypatch):
    monkeypatch.setattr(client_module, "_ADAPTER", None)
    first = get_adapter("hci0")
    second = get_adapter()
    assert first is second
    assert get_adapter("hci1") is first
    assert first.adapter_name == "hci0"
