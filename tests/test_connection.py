"""Tests for the retrying Connector and GATT verification."""

import pytest

from servolink.interfaces.ble.connection import ConnectionValidator, Connector
from servolink.interfaces.ble.errors import (
    AdapterError,
    AlreadyInProgress,
    ConnectError,
    OperationTimeout,
)
from servolink.interfaces.ble.gatt import (
    CharacteristicDescriptor,
    ServiceDescriptor,
    Unverified,
    VerificationOutcome,
    Verified,
)
from servolink.interfaces.ble.state import BLEStateManager, ConnectionState

from ble_fixtures import CHARACTERISTIC, DEVICE_ID, SERVICE, FakeAdapter, bt05


def _candidate_found(manager: BLEStateManager):
    candidate = bt05()
    manager.transition_to(ConnectionState.SCANNING)
    manager.transition_to(ConnectionState.CANDIDATE_FOUND, candidate)
    return candidate


class TestConnectionValidator:
    """Pipeline admission."""

    def test_idle_is_admitted(self):
        ConnectionValidator(BLEStateManager()).validate_scan_request()

    @pytest.mark.parametrize(
        "path",
        [
            [ConnectionState.SCANNING],
            [ConnectionState.SCANNING, ConnectionState.CANDIDATE_FOUND],
            [ConnectionState.SCANNING, ConnectionState.ERROR],
        ],
    )
    def test_busy_is_rejected(self, path):
        manager = BLEStateManager()
        for state in path:
            manager.transition_to(state)
        with pytest.raises(AlreadyInProgress) as excinfo:
            ConnectionValidator(manager).validate_scan_request()
        assert excinfo.value.state is path[-1]


class TestRetry:
    """Bounded connect retries with a fixed delay."""

    @pytest.mark.parametrize("retries", [0, 1, 2, 4])
    def test_succeeds_within_bound(self, retries, no_sleep):
        adapter = FakeAdapter()
        adapter.connect_failures = [AdapterError("busy")] * retries

        connected = Connector(adapter).connect(bt05(), max_retries=retries)

        assert connected.attempts == retries + 1
        assert adapter.call_names().count("connect") == retries + 1
        assert no_sleep == [1.0] * retries

    @pytest.mark.parametrize("retries", [0, 2])
    def test_gives_up_after_bound(self, retries, no_sleep):
        adapter = FakeAdapter()
        last = AdapterError("final")
        adapter.connect_failures = [AdapterError("busy")] * retries + [last]

        with pytest.raises(ConnectError) as excinfo:
            Connector(adapter).connect(bt05(), max_retries=retries)

        assert excinfo.value.attempts == retries + 1
        assert excinfo.value.cause is last
        assert adapter.call_names().count("connect") == retries + 1
        assert "discover_services" not in adapter.call_names()
        assert len(no_sleep) == retries

    def test_default_retry_count(self):
        adapter = FakeAdapter()
        adapter.connect_failures = [AdapterError("busy")] * 3

        with pytest.raises(ConnectError) as excinfo:
            Connector(adapter).connect(bt05())

        assert excinfo.value.attempts == 3

    def test_attempt_timeout_cancels_pending_connect(self):
        adapter = FakeAdapter()
        adapter.connect_delay = 0.3

        with pytest.raises(ConnectError) as excinfo:
            Connector(adapter).connect(bt05(), max_retries=0, per_attempt_timeout=0.05)

        assert isinstance(excinfo.value.cause, OperationTimeout)
        assert ("cancel_connection", DEVICE_ID) in adapter.calls

    def test_status_lines_during_retry(self):
        adapter = FakeAdapter()
        adapter.connect_failures = [AdapterError("busy")]
        lines = []

        Connector(adapter, status=lines.append).connect(bt05(), max_retries=2)

        assert lines[:4] == [
            "Connecting to BT05...",
            "Connection attempt failed, retrying...",
            "Retry attempt 1...",
            "Connected!",
        ]


class TestDiscovery:
    """Service discovery and verification after the link is up."""

    def test_verified_pipeline(self):
        adapter = FakeAdapter()
        manager = BLEStateManager()
        candidate = _candidate_found(manager)
        lines = []

        connected = Connector(adapter, manager, lines.append).connect(candidate)

        assert connected.verified
        assert isinstance(connected.topology, Verified)
        assert connected.device_id == DEVICE_ID
        assert manager.state is ConnectionState.CONNECTED
        assert manager.topology is connected.topology
        assert lines[-5:] == [
            "Discovering services and characteristics...",
            "Found 2 services",
            "Found 1 characteristics for service",
            f"Target service found: {SERVICE}",
            f"Target characteristic found: {CHARACTERISTIC}",
        ]

    def test_service_missing_still_connects(self):
        adapter = FakeAdapter()
        adapter.services = [ServiceDescriptor("00001800-0000-1000-8000-00805f9b34fb")]
        manager = BLEStateManager()
        candidate = _candidate_found(manager)
        lines = []

        connected = Connector(adapter, manager, lines.append).connect(candidate)

        assert not connected.verified
        assert isinstance(connected.topology, Unverified)
        assert connected.topology.reason is VerificationOutcome.SERVICE_MISSING
        assert manager.state is ConnectionState.CONNECTED
        assert "characteristics_for" not in adapter.call_names()
        assert "WARNING: Target service 0000FFE0-0000-1000-8000-00805F9B34FB not found!" in lines
        assert "Available service: 00001800-0000-1000-8000-00805f9b34fb" in lines

    def test_characteristic_missing(self):
        adapter = FakeAdapter()
        other = "0000ffe2-0000-1000-8000-00805f9b34fb"
        adapter.characteristics[SERVICE] = [
            CharacteristicDescriptor(other, frozenset({"notify"}), SERVICE)
        ]
        lines = []

        connected = Connector(adapter, status=lines.append).connect(bt05())

        assert connected.topology.outcome is VerificationOutcome.CHARACTERISTIC_MISSING
        assert f"Available characteristic: {other}" in lines

    def test_discovery_failure_disconnects(self):
        adapter = FakeAdapter()
        adapter.discover_error = AdapterError("GATT error 133")
        manager = BLEStateManager()
        candidate = _candidate_found(manager)

        with pytest.raises(ConnectError) as excinfo:
            Connector(adapter, manager).connect(candidate)

        assert excinfo.value.cause is adapter.discover_error
        assert excinfo.value.attempts == 1
        assert ("disconnect", DEVICE_ID) in adapter.calls
        assert DEVICE_ID not in adapter.disconnect_handlers
        assert manager.state is ConnectionState.DISCOVERING

    def test_drop_during_discovery_aborts(self):
        class DroppingAdapter(FakeAdapter):
            def discover_services(self, device_id):
                services = super().discover_services(device_id)
                self.drop_link(device_id)
                return services

        adapter = DroppingAdapter()

        with pytest.raises(ConnectError) as excinfo:
            Connector(adapter).connect(bt05())

        assert "disconnected during discovery" in str(excinfo.value.cause)
        assert ("disconnect", DEVICE_ID) in adapter.calls
