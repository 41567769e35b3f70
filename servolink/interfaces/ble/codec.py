"""Command encoding and notification decoding for the servo bridge."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from servolink.interfaces.ble.errors import NotificationDecodeError
from servolink.interfaces.ble.gatt import WriteMode

COMMAND_ON = "ON\n"
COMMAND_OFF = "OFF\n"
CONDITION_KEYWORD = "RAIN"
WIRE_ENCODING = "ascii"


class NotificationKind(Enum):
    CONDITION_DETECTED = "condition detected"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class SetActuator:
    """Intent: drive the actuator on or off."""

    on: bool


@dataclass(frozen=True)
class Command:
    """An encoded intent ready to be written."""

    intent: SetActuator
    payload: bytes
    mode: Optional[WriteMode] = None

    def with_mode(self, mode: WriteMode) -> "Command":
        return Command(self.intent, self.payload, mode)


@dataclass(frozen=True)
class NotificationEvent:
    text: str
    kind: NotificationKind
    raw: bytes

    @property
    def condition_detected(self) -> bool:
        return self.kind is NotificationKind.CONDITION_DETECTED


def encode_command(intent: SetActuator) -> bytes:
    """Encode an intent as its newline-terminated ASCII wire form."""
    text = COMMAND_ON if intent.on else COMMAND_OFF
    return text.encode(WIRE_ENCODING)


def build_command(intent: SetActuator) -> Command:
    return Command(intent, encode_command(intent))


def decode_notification(raw: bytes) -> NotificationEvent:
    """
    Decode an inbound notification payload.

    The payload must be ASCII. It is classified as CONDITION_DETECTED when the text
    contains the case-sensitive keyword "RAIN"; anything else is UNCLASSIFIED.

    Raises:
        NotificationDecodeError: If the payload is not valid ASCII.
    """
    raw = bytes(raw)
    try:
        text = raw.decode(WIRE_ENCODING)
    except UnicodeDecodeError as exc:
        raise NotificationDecodeError(raw, exc) from exc
    kind = (
        NotificationKind.CONDITION_DETECTED
        if CONDITION_KEYWORD in text
        else NotificationKind.UNCLASSIFIED
    )
    return NotificationEvent(text=text, kind=kind, raw=raw)


__all__ = [
    "COMMAND_OFF",
    "COMMAND_ON",
    "CONDITION_KEYWORD",
    "Command",
    "NotificationEvent",
    "NotificationKind",
    "SetActuator",
    "build_command",
    "decode_notification",
    "encode_command",
]
