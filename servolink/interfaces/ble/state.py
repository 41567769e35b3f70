"""BLE connection state management."""

from enum import Enum
from threading import RLock
from typing import TYPE_CHECKING, Optional

from servolink.interfaces.ble.constants import logger
from servolink.interfaces.ble.gating import _claim_session, _release_session

if TYPE_CHECKING:
    from servolink.interfaces.ble.adapter import Candidate
    from servolink.interfaces.ble.gatt import Topology


class ConnectionState(Enum):
    """Enum for managing BLE connection states."""

    IDLE = "idle"
    SCANNING = "scanning"
    CANDIDATE_FOUND = "candidate found"
    CONNECTING = "connecting"
    DISCOVERING = "discovering"
    VERIFYING = "verifying"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    ERROR = "error"


_VALID_TRANSITIONS = {
    ConnectionState.IDLE: {ConnectionState.SCANNING, ConnectionState.ERROR},
    ConnectionState.SCANNING: {
        ConnectionState.CANDIDATE_FOUND,
        ConnectionState.IDLE,
        ConnectionState.ERROR,
    },
    ConnectionState.CANDIDATE_FOUND: {
        ConnectionState.CONNECTING,
        ConnectionState.IDLE,
        ConnectionState.ERROR,
    },
    ConnectionState.CONNECTING: {
        ConnectionState.DISCOVERING,
        ConnectionState.IDLE,
        ConnectionState.ERROR,
    },
    ConnectionState.DISCOVERING: {
        ConnectionState.VERIFYING,
        ConnectionState.IDLE,
        ConnectionState.ERROR,
    },
    ConnectionState.VERIFYING: {
        ConnectionState.CONNECTED,
        ConnectionState.IDLE,
        ConnectionState.ERROR,
    },
    ConnectionState.CONNECTED: {
        ConnectionState.DISCONNECTING,
        ConnectionState.IDLE,
        ConnectionState.ERROR,
    },
    ConnectionState.DISCONNECTING: {ConnectionState.IDLE, ConnectionState.ERROR},
    ConnectionState.ERROR: {ConnectionState.IDLE},
}


class BLEStateManager:
    """Thread-safe state machine and device registry for one BLE session.

    Leaving IDLE claims the process-wide session slot, so at most one manager per
    process is ever outside IDLE. Returning to IDLE releases the slot and forgets the
    device and its discovered topology.
    """

    def __init__(self):
        self._state_lock = RLock()
        self._state = ConnectionState.IDLE
        self._device: Optional["Candidate"] = None
        self._topology: Optional["Topology"] = None

    @property
    def lock(self) -> RLock:
        """Expose the reentrant lock controlling state transitions."""
        return self._state_lock

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def is_idle(self) -> bool:
        return self.state == ConnectionState.IDLE

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def is_scanning(self) -> bool:
        return self.state == ConnectionState.SCANNING

    @property
    def is_active(self) -> bool:
        """True while a pipeline or session is running."""
        return self.state not in (ConnectionState.IDLE, ConnectionState.ERROR)

    @property
    def can_scan(self) -> bool:
        """Check if a new pipeline can be started."""
        return self.state == ConnectionState.IDLE

    @property
    def device(self) -> Optional["Candidate"]:
        with self._state_lock:
            return self._device

    @property
    def topology(self) -> Optional["Topology"]:
        with self._state_lock:
            return self._topology

    def set_topology(self, topology: Optional["Topology"]) -> None:
        with self._state_lock:
            self._topology = topology

    def transition_to(
        self, new_state: ConnectionState, device: Optional["Candidate"] = None
    ) -> bool:
        """Thread-safe state transition with validation.

        Args:
        ----
            new_state: Target state to transition to
            device: Peripheral associated with this transition (optional)

        Returns:
        -------
            True if transition was valid and applied, False otherwise

        """
        with self._state_lock:
            old_state = self._state
            if not self._is_valid_transition(old_state, new_state):
                logger.warning(
                    "Invalid state transition: %s → %s",
                    old_state.value,
                    new_state.value,
                )
                return False
            if old_state == ConnectionState.IDLE and not _claim_session(self):
                logger.warning(
                    "Refusing %s → %s: another session is active in this process",
                    old_state.value,
                    new_state.value,
                )
                return False

            self._state = new_state
            if device is not None:
                self._device = device
            if new_state == ConnectionState.IDLE:
                self._clear()

            logger.debug("State transition: %s → %s", old_state.value, new_state.value)
            return True

    def reset(self) -> None:
        """Force the machine back to IDLE regardless of the current state."""
        with self._state_lock:
            if self._state != ConnectionState.IDLE:
                logger.debug("State reset: %s → idle", self._state.value)
            self._state = ConnectionState.IDLE
            self._clear()

    def _clear(self) -> None:
        self._device = None
        self._topology = None
        _release_session(self)

    @staticmethod
    def _is_valid_transition(
        from_state: ConnectionState, to_state: ConnectionState
    ) -> bool:
        return to_state in _VALID_TRANSITIONS.get(from_state, set())


__all__ = ["BLEStateManager", "ConnectionState"]
