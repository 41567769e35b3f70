"""BLE peripheral discovery by advertised name."""

import time
from threading import Event, Lock
from typing import Callable, Dict, List, Optional

from servolink.interfaces.ble.adapter import Candidate, RadioAdapter, RadioState
from servolink.interfaces.ble.constants import BLEConfig, logger
from servolink.interfaces.ble.errors import (
    AdapterError,
    BLEErrorHandler,
    RadioNotReady,
    ScanError,
    ScanTimeout,
)
from servolink.interfaces.ble.state import BLEStateManager, ConnectionState

Predicate = Callable[[Candidate], bool]
StatusCallback = Callable[[str], None]


def name_matcher(target: str) -> Predicate:
    """
    Build a predicate matching advertisements whose name or local name contains `target`.

    Matching is case-sensitive; an exact name is a match as well.
    """

    def _matches(candidate: Candidate) -> bool:
        for name in (candidate.name, candidate.local_name):
            if name and target in name:
                return True
        return False

    return _matches


class _ScanAttempt:
    """Outcome holder shared between the adapter callbacks and the waiting caller."""

    def __init__(self, predicate: Predicate):
        self.predicate = predicate
        self.done = Event()
        self.lock = Lock()
        self.match: Optional[Candidate] = None
        self.error: Optional[BaseException] = None

    def on_result(self, candidate: Candidate) -> None:
        with self.lock:
            if self.done.is_set():
                return
            try:
                matched = self.predicate(candidate)
            except Exception as e:  # noqa: BLE001 - a faulty predicate ends the scan
                self.error = e
                self.done.set()
                return
            if matched:
                self.match = candidate
                self.done.set()

    def on_error(self, error: BaseException) -> None:
        with self.lock:
            if self.done.is_set():
                return
            self.error = error
            self.done.set()


class Scanner:
    """
    Find the first advertising peripheral that satisfies a predicate.

    The scan deadline is enforced here; the adapter scan is always stopped before
    `scan()` returns or raises.
    """

    def __init__(
        self,
        adapter: RadioAdapter,
        state_manager: Optional[BLEStateManager] = None,
        status: Optional[StatusCallback] = None,
    ):
        self.adapter = adapter
        self.state_manager = state_manager
        self._status = status

    def _report(self, line: str) -> None:
        if self._status is not None:
            self._status(line)

    def ensure_radio_ready(self) -> RadioState:
        """
        Raise `RadioNotReady` unless the radio is powered on.

        Raises:
            RadioNotReady: The radio is off, unauthorised, unsupported or unknown.
            ScanError: The adapter could not report its state.
        """
        try:
            state = self.adapter.state()
        except AdapterError as e:
            raise ScanError(e) from e
        if state != RadioState.POWERED_ON:
            raise RadioNotReady(state)
        return state

    def scan(
        self,
        predicate: Predicate,
        timeout: Optional[float] = None,
        label: Optional[str] = None,
    ) -> Candidate:
        """
        Scan until an advertisement satisfies `predicate` or `timeout` seconds pass.

        Parameters:
            predicate: Filter applied locally to every advertisement.
            timeout: Upper bound on scan duration; defaults to BLEConfig.SCAN_TIMEOUT.
            label: Name reported in the "Scanning for ..." status line.

        Returns:
            Candidate: The first matching advertisement. Later ones are ignored.

        Raises:
            RadioNotReady: Radio not powered on; no scan was started.
            ScanTimeout: Nothing matched before the deadline.
            ScanError: The adapter reported a scan failure.
        """
        if timeout is None:
            timeout = BLEConfig.SCAN_TIMEOUT
        self.ensure_radio_ready()
        if label:
            self._report(f"Scanning for {label}...")

        attempt = _ScanAttempt(predicate)
        started = time.monotonic()
        logger.debug("Starting scan (timeout %.1fs)", timeout)
        try:
            try:
                self.adapter.start_scan(attempt.on_result, attempt.on_error)
            except Exception as e:  # noqa: BLE001 - any start failure is a scan error
                raise ScanError(e) from e

            if not attempt.done.wait(timeout):
                with attempt.lock:
                    # Close the window so a late match cannot race the timeout
                    attempt.done.set()
                    match, error = attempt.match, attempt.error
                if match is None and error is None:
                    logger.info("Scan timed out after %.1fs", timeout)
                    raise ScanTimeout(timeout)
            else:
                match, error = attempt.match, attempt.error

            if error is not None:
                raise ScanError(error) from error
        finally:
            BLEErrorHandler.safe_cleanup(self.adapter.stop_scan, "scan stop")

        logger.debug(
            "Matched %s after %.2fs", match.display_name, time.monotonic() - started
        )
        if self.state_manager is not None:
            self.state_manager.transition_to(ConnectionState.CANDIDATE_FOUND, match)
        self._report(f"Found {label or match.display_name}! ({match.display_name})")
        return match

    def collect(
        self, duration: Optional[float] = None, predicate: Optional[Predicate] = None
    ) -> List[Candidate]:
        """
        Scan for the full `duration` and return every distinct matching advertiser.

        The most recent advertisement per device id is kept.
        """
        if duration is None:
            duration = BLEConfig.SCAN_TIMEOUT
        self.ensure_radio_ready()

        seen: Dict[str, Candidate] = {}
        lock = Lock()
        failed = Event()
        errors: List[BaseException] = []

        def _on_result(candidate: Candidate) -> None:
            if predicate is not None and not predicate(candidate):
                return
            with lock:
                seen[candidate.id] = candidate

        def _on_error(error: BaseException) -> None:
            errors.append(error)
            failed.set()

        try:
            try:
                self.adapter.start_scan(_on_result, _on_error)
            except Exception as e:  # noqa: BLE001 - any start failure is a scan error
                raise ScanError(e) from e
            failed.wait(duration)
            if errors:
                raise ScanError(errors[0]) from errors[0]
        finally:
            BLEErrorHandler.safe_cleanup(self.adapter.stop_scan, "scan stop")

        with lock:
            return sorted(
                seen.values(),
                key=lambda c: c.rssi if c.rssi is not None else -999,
                reverse=True,
            )


__all__ = ["Predicate", "Scanner", "StatusCallback", "name_matcher"]
