"""
Shared pytest fixtures for BLE interface tests.
"""

from types import SimpleNamespace
from typing import List, Tuple

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401

import servolink
from ble_fixtures import FakeAdapter, ImmediateExecution
from servolink.interfaces.ble import gating


@pytest.fixture(autouse=True)
def reset_session_gate():
    """Release the process-wide session slot around every test."""
    gating._reset_registry()
    yield
    gating._reset_registry()


@pytest.fixture(autouse=True)
def sync_publishing(monkeypatch):
    """Make `servolink.publishingThread.queueWork` run callbacks immediately."""

    def queueWork(callback):
        if callback:
            callback()

    monkeypatch.setattr(servolink.publishingThread, "queueWork", queueWork)
    return queueWork


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Replace the retry sleep hook and record requested delays."""
    delays: List[float] = []
    monkeypatch.setattr(
        "servolink.interfaces.ble.connection._sleep", lambda delay: delays.append(delay)
    )
    return delays


@pytest.fixture
def published(monkeypatch):
    """
    Record pubsub messages sent by the interface module.

    Returns:
        list: (topic, kwargs) tuples in publication order.
    """
    messages: List[Tuple[str, dict]] = []
    fake_pub = SimpleNamespace(
        sendMessage=lambda topic, **kwargs: messages.append((topic, kwargs)),
        subscribe=lambda *_args, **_kwargs: None,
        AUTO_TOPIC=None,
    )
    monkeypatch.setattr("servolink.interfaces.ble.interface.pub", fake_pub)
    return messages


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def make_interface(fake_adapter):
    """Build ServoInterface instances on the fake adapter and close them afterwards."""
    from servolink.interfaces.ble.interface import ServoInterface

    created = []

    def _make(adapter=None, **kwargs):
        kwargs.setdefault("scan_timeout", 0.5)
        kwargs.setdefault("connect_timeout", 1.0)
        kwargs.setdefault("io_timeout", 1.0)
        kwargs.setdefault("session_executor_factory", ImmediateExecution)
        iface = ServoInterface(adapter or fake_adapter, **kwargs)
        created.append(iface)
        return iface

    yield _make
    for iface in created:
        iface.close()
