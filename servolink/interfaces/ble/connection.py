"""Connection establishment: request validation, retrying connect and GATT verification."""

from dataclasses import dataclass, field
from threading import Event
from typing import Callable, List, Optional

from servolink.interfaces.ble.adapter import Candidate, RadioAdapter
from servolink.interfaces.ble.constants import (
    DEFAULT_PROFILE,
    BLEConfig,
    PeripheralProfile,
    logger,
)
from servolink.interfaces.ble.errors import (
    AlreadyInProgress,
    BLEErrorHandler,
    ConnectError,
    PeripheralDisconnectedError,
)
from servolink.interfaces.ble.gatt import (
    CharacteristicDescriptor,
    ServiceDescriptor,
    Topology,
    Unverified,
    VerificationOutcome,
    normalize_uuid,
    verify_topology,
)
from servolink.interfaces.ble.policies import RetryPolicy
from servolink.interfaces.ble.state import BLEStateManager, ConnectionState
from servolink.interfaces.ble.utils import _sleep, call_with_timeout


class ConnectionValidator:
    """Encapsulate pipeline pre-checks."""

    def __init__(self, state_manager: BLEStateManager):
        self.state_manager = state_manager

    def validate_scan_request(self) -> None:
        """
        Validate that a new scan/connect pipeline may start.

        Raises:
            AlreadyInProgress: If the machine is not IDLE. Requests are never queued.
        """
        if not self.state_manager.can_scan:
            raise AlreadyInProgress(self.state_manager.state)


@dataclass(frozen=True)
class ConnectedDevice:
    """A linked peripheral together with the outcome of GATT verification."""

    candidate: Candidate
    topology: Topology
    attempts: int = 1
    # Set by the adapter when the link drops before a session takes over
    link_dropped: Event = field(default_factory=Event, compare=False, repr=False)

    @property
    def device_id(self) -> str:
        return self.candidate.id

    @property
    def verified(self) -> bool:
        return self.topology.is_verified


class Connector:
    """
    Link to a scanned candidate with bounded retries, then discover and verify its GATT table.
    """

    def __init__(
        self,
        adapter: RadioAdapter,
        state_manager: Optional[BLEStateManager] = None,
        status: Optional[Callable[[str], None]] = None,
        profile: PeripheralProfile = DEFAULT_PROFILE,
    ):
        self.adapter = adapter
        self.state_manager = state_manager
        self.profile = profile
        self._status = status

    def _report(self, line: str) -> None:
        if self._status is not None:
            self._status(line)

    def _transition(self, new_state: ConnectionState) -> None:
        if self.state_manager is not None:
            self.state_manager.transition_to(new_state)

    def connect(
        self,
        candidate: Candidate,
        max_retries: Optional[int] = None,
        per_attempt_timeout: Optional[float] = None,
        gatt_timeout: Optional[float] = None,
    ) -> ConnectedDevice:
        """
        Connect to `candidate`, retrying failed attempts, then verify the expected service.

        Parameters:
            candidate: The scanned peripheral.
            max_retries: Retries after the first attempt (default BLEConfig.CONNECT_MAX_RETRIES).
            per_attempt_timeout: Deadline per attempt (default BLEConfig.CONNECT_ATTEMPT_TIMEOUT).
            gatt_timeout: Deadline for each discovery call (default BLEConfig.GATT_IO_TIMEOUT).

        Returns:
            ConnectedDevice: Always carries a topology; callers branch on `verified`.

        Raises:
            ConnectError: Every attempt failed, or discovery failed after linking.
        """
        if per_attempt_timeout is None:
            per_attempt_timeout = BLEConfig.CONNECT_ATTEMPT_TIMEOUT
        if gatt_timeout is None:
            gatt_timeout = BLEConfig.GATT_IO_TIMEOUT

        self._transition(ConnectionState.CONNECTING)
        attempts = self._connect_with_retry(candidate, max_retries, per_attempt_timeout)
        self._report("Connected!")

        dropped = Event()
        self.adapter.on_disconnect(candidate.id, lambda _device_id: dropped.set())

        self._transition(ConnectionState.DISCOVERING)
        self._report("Discovering services and characteristics...")
        try:
            services, characteristics = self._discover(candidate.id, gatt_timeout)
            if dropped.is_set():
                raise PeripheralDisconnectedError("Peripheral disconnected during discovery")
        except Exception as e:  # noqa: BLE001 - any discovery failure aborts the link
            logger.warning("Discovery on %s failed: %s", candidate.id, e)
            BLEErrorHandler.safe_cleanup(
                lambda: self.adapter.on_disconnect(candidate.id, None),
                "disconnect handler removal",
            )
            BLEErrorHandler.safe_cleanup(
                lambda: self.adapter.disconnect(candidate.id),
                "disconnect after failed discovery",
            )
            raise ConnectError(e, attempts) from e

        self._transition(ConnectionState.VERIFYING)
        topology = verify_topology(
            services,
            characteristics,
            self.profile.service_uuid,
            self.profile.characteristic_uuid,
        )
        self._report_topology(topology, services, characteristics)
        if self.state_manager is not None:
            self.state_manager.set_topology(topology)
        self._transition(ConnectionState.CONNECTED)
        return ConnectedDevice(candidate, topology, attempts, dropped)

    def _connect_with_retry(
        self, candidate: Candidate, max_retries: Optional[int], timeout: float
    ) -> int:
        schedule = RetryPolicy.connect(max_retries)
        device_id = candidate.id
        self._report(f"Connecting to {candidate.name or candidate.id}...")
        while True:
            attempt = schedule.attempt
            if attempt > 1:
                self._report(f"Retry attempt {attempt - 1}...")
            try:
                call_with_timeout(
                    lambda: self.adapter.connect(device_id, timeout),
                    timeout,
                    "connect",
                    on_timeout=lambda: self.adapter.cancel_connection(device_id),
                )
                logger.info("Connected to %s on attempt %d", device_id, attempt)
                return attempt
            except Exception as e:  # noqa: BLE001 - every failure counts as an attempt
                delay = schedule.record_failure()
                if delay is None:
                    logger.warning(
                        "Giving up on %s after %d attempt(s): %s", device_id, attempt, e
                    )
                    raise ConnectError(e, attempt) from e
                logger.info(
                    "Connection attempt %d to %s failed (%s); retrying in %.1fs",
                    attempt,
                    device_id,
                    e,
                    delay,
                )
                self._report("Connection attempt failed, retrying...")
                _sleep(delay)

    def _discover(self, device_id: str, timeout: float):
        services: List[ServiceDescriptor] = call_with_timeout(
            lambda: self.adapter.discover_services(device_id),
            timeout,
            "service discovery",
        )
        self._report(f"Found {len(services)} services")

        wanted = normalize_uuid(self.profile.service_uuid)
        target = next((s for s in services if normalize_uuid(s.uuid) == wanted), None)
        characteristics: List[CharacteristicDescriptor] = []
        if target is not None:
            characteristics = call_with_timeout(
                lambda: self.adapter.characteristics_for(device_id, target.uuid),
                timeout,
                "characteristic discovery",
            )
            self._report(f"Found {len(characteristics)} characteristics for service")
        return services, characteristics

    def _report_topology(self, topology: Topology, services, characteristics) -> None:
        if isinstance(topology, Unverified):
            if topology.reason == VerificationOutcome.SERVICE_MISSING:
                self._report(f"WARNING: Target service {self.profile.service_uuid} not found!")
                for service in services:
                    self._report(f"Available service: {service.uuid}")
            else:
                self._report(
                    f"WARNING: Target characteristic {self.profile.characteristic_uuid} not found!"
                )
                for characteristic in characteristics:
                    self._report(f"Available characteristic: {characteristic.uuid}")
            logger.warning("Topology not verified: %s", topology.reason.value)
            return
        self._report(f"Target service found: {topology.service.uuid}")
        self._report(f"Target characteristic found: {topology.characteristic.uuid}")


__all__ = ["ConnectedDevice", "ConnectionValidator", "Connector"]
