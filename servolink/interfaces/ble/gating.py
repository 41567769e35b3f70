"""Process-wide BLE session gating utilities."""

from threading import RLock
from typing import Optional

_REGISTRY_LOCK = RLock()
_ACTIVE_OWNER: Optional[int] = None


def _owner_key(owner: object) -> int:
    return id(owner)


def _claim_session(owner: object) -> bool:
    """
    Reserve the single process-wide session slot for `owner`.

    Returns True when the slot was free or already held by `owner`.
    """
    global _ACTIVE_OWNER
    key = _owner_key(owner)
    with _REGISTRY_LOCK:
        if _ACTIVE_OWNER is None or _ACTIVE_OWNER == key:
            _ACTIVE_OWNER = key
            return True
        return False


def _release_session(owner: object) -> None:
    """Release the slot if `owner` holds it."""
    global _ACTIVE_OWNER
    with _REGISTRY_LOCK:
        if _ACTIVE_OWNER == _owner_key(owner):
            _ACTIVE_OWNER = None


def _reset_registry() -> None:
    """Forget any holder; used by tests and process teardown."""
    global _ACTIVE_OWNER
    with _REGISTRY_LOCK:
        _ACTIVE_OWNER = None
