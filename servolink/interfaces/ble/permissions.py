"""Permission collaborator consulted before every scan."""

from typing import Callable, Optional, Protocol


class PermissionProvider(Protocol):
    """Acquires whatever OS-level permissions scanning and connecting need."""

    def request_required_permissions(self) -> bool:
        """Return True when every required permission is granted."""
        ...


class StaticPermissionProvider:
    """Answer with a fixed value; desktop stacks need no runtime permission grant."""

    def __init__(self, granted: bool = True):
        self.granted = granted

    def request_required_permissions(self) -> bool:
        return self.granted


class CallablePermissionProvider:
    """Adapt a zero-argument callable (e.g. a UI prompt) to `PermissionProvider`."""

    def __init__(self, request: Callable[[], Optional[bool]]):
        self._request = request

    def request_required_permissions(self) -> bool:
        return bool(self._request())


__all__ = [
    "CallablePermissionProvider",
    "PermissionProvider",
    "StaticPermissionProvider",
]
