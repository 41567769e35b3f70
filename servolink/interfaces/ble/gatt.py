"""GATT descriptors, topology verification and write-mode selection."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Sequence, Tuple, Union

from servolink.interfaces.ble.errors import NotWritable

# Capability names as reported by the platform stack (bleak uses the same strings)
READ = "read"
WRITE = "write"
WRITE_WITHOUT_RESPONSE = "write-without-response"
NOTIFY = "notify"
INDICATE = "indicate"

BLUETOOTH_BASE_UUID = "0000{0}-0000-1000-8000-00805f9b34fb"
_SHORT_UUID = re.compile(r"^(?:0x)?([0-9a-f]{4}|[0-9a-f]{8})$")


def normalize_uuid(uuid: str) -> str:
    """
    Return the canonical lowercase 128-bit form of a UUID string.

    16-bit ("ffe0") and 32-bit short forms are expanded against the Bluetooth base UUID.
    """
    value = str(uuid).strip().lower()
    match = _SHORT_UUID.match(value)
    if match:
        short = match.group(1)
        if len(short) == 4:
            return BLUETOOTH_BASE_UUID.format(short)
        return f"{short}-0000-1000-8000-00805f9b34fb"
    return value


class WriteMode(Enum):
    """How a characteristic write is acknowledged."""

    WITH_RESPONSE = "with-response"
    WITHOUT_RESPONSE = "without-response"


@dataclass(frozen=True)
class CharacteristicDescriptor:
    """A discovered characteristic and its capability set."""

    uuid: str
    properties: FrozenSet[str] = frozenset()
    service_uuid: Optional[str] = None

    @property
    def readable(self) -> bool:
        return READ in self.properties

    @property
    def writable_with_response(self) -> bool:
        return WRITE in self.properties

    @property
    def writable_without_response(self) -> bool:
        return WRITE_WITHOUT_RESPONSE in self.properties

    @property
    def notifiable(self) -> bool:
        return NOTIFY in self.properties or INDICATE in self.properties


@dataclass(frozen=True)
class ServiceDescriptor:
    """A discovered GATT service."""

    uuid: str


class VerificationOutcome(Enum):
    """Result of checking the discovered GATT table against the expected identifiers."""

    VERIFIED = "verified"
    SERVICE_MISSING = "service missing"
    CHARACTERISTIC_MISSING = "characteristic missing"


@dataclass(frozen=True)
class DiscoveredTopology:
    """Every service and characteristic UUID seen during discovery, for diagnostics."""

    services: Tuple[str, ...] = ()
    characteristics: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Verified:
    """The expected service and characteristic are both present."""

    service: ServiceDescriptor
    characteristic: CharacteristicDescriptor
    discovered: DiscoveredTopology = field(default_factory=DiscoveredTopology)

    outcome = VerificationOutcome.VERIFIED
    is_verified = True


@dataclass(frozen=True)
class Unverified:
    """The expected service or characteristic is missing; `missing` names what was not found."""

    reason: VerificationOutcome
    missing: Tuple[str, ...]
    discovered: DiscoveredTopology = field(default_factory=DiscoveredTopology)

    is_verified = False

    @property
    def outcome(self) -> VerificationOutcome:
        return self.reason


Topology = Union[Verified, Unverified]


def verify_topology(
    services: Iterable[ServiceDescriptor],
    characteristics: Iterable[CharacteristicDescriptor],
    service_uuid: str,
    characteristic_uuid: str,
) -> Topology:
    """
    Check discovered services/characteristics for the expected pair.

    Parameters:
        services: Every service the peripheral exposes.
        characteristics: Characteristics of the expected service (empty when it is missing).
        service_uuid: Expected service identifier, any UUID form.
        characteristic_uuid: Expected characteristic identifier, any UUID form.

    Returns:
        `Verified` with the matching descriptors, or `Unverified` naming the missing identifier.
    """
    services = list(services)
    characteristics = list(characteristics)
    discovered = DiscoveredTopology(
        services=tuple(normalize_uuid(s.uuid) for s in services),
        characteristics=tuple(normalize_uuid(c.uuid) for c in characteristics),
    )
    wanted_service = normalize_uuid(service_uuid)
    wanted_characteristic = normalize_uuid(characteristic_uuid)

    service = next(
        (s for s in services if normalize_uuid(s.uuid) == wanted_service), None
    )
    if service is None:
        return Unverified(
            VerificationOutcome.SERVICE_MISSING, (wanted_service,), discovered
        )
    characteristic = next(
        (c for c in characteristics if normalize_uuid(c.uuid) == wanted_characteristic),
        None,
    )
    if characteristic is None:
        return Unverified(
            VerificationOutcome.CHARACTERISTIC_MISSING,
            (wanted_characteristic,),
            discovered,
        )
    return Verified(service, characteristic, discovered)


def select_write_mode(characteristic: CharacteristicDescriptor) -> WriteMode:
    """
    Pick the write mode for a characteristic, preferring acknowledged writes.

    Raises:
        NotWritable: If the characteristic supports neither write mode.
    """
    if characteristic.writable_with_response:
        return WriteMode.WITH_RESPONSE
    if characteristic.writable_without_response:
        return WriteMode.WITHOUT_RESPONSE
    raise NotWritable(characteristic.uuid)


def describe_missing(topology: Topology) -> Sequence[str]:
    """Return the identifiers an unverified topology is missing (empty when verified)."""
    if isinstance(topology, Unverified):
        return topology.missing
    return ()


__all__ = [
    "CharacteristicDescriptor",
    "DiscoveredTopology",
    "INDICATE",
    "NOTIFY",
    "READ",
    "ServiceDescriptor",
    "Topology",
    "Unverified",
    "Verified",
    "VerificationOutcome",
    "WRITE",
    "WRITE_WITHOUT_RESPONSE",
    "WriteMode",
    "describe_missing",
    "normalize_uuid",
    "select_write_mode",
    "verify_topology",
]
