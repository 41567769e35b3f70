"""Command line entry point: ``python -m servolink``."""

import argparse
import logging
import sys
import threading
from typing import List, Optional

from pubsub import pub
from tabulate import tabulate

from servolink import __version__
from servolink.interfaces.ble.client import get_adapter
from servolink.interfaces.ble.constants import BLEConfig, PeripheralProfile
from servolink.interfaces.ble.discovery import Scanner, name_matcher
from servolink.interfaces.ble.errors import BLEError
from servolink.interfaces.ble.gatt import Verified
from servolink.interfaces.ble.interface import ServoInterface

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="servolink",
        description="Control a BT05 servo/rain-sensor peripheral over Bluetooth LE.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--name",
        default=PeripheralProfile().name,
        help="Advertised name (substring) to look for (default: %(default)s)",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=BLEConfig.SCAN_TIMEOUT,
        help="Seconds to scan before giving up (default: %(default)s)",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=BLEConfig.CONNECT_MAX_RETRIES,
        help="Connection retries after the first attempt (default: %(default)s)",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=BLEConfig.CONNECT_ATTEMPT_TIMEOUT,
        help="Seconds allowed per connection attempt (default: %(default)s)",
    )
    parser.add_argument("--adapter", default=None, help="Bluetooth adapter, e.g. hci1")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command", required=True)
    scan = commands.add_parser("scan", help="List advertising peripherals")
    scan.add_argument(
        "--all", action="store_true", help="List every advertiser, not only name matches"
    )
    commands.add_parser("topology", help="Connect and print the discovered GATT table")
    commands.add_parser("on", help="Switch the actuator on")
    commands.add_parser("off", help="Switch the actuator off")
    commands.add_parser("toggle", help="Switch the actuator on, then off again")
    commands.add_parser("read", help="Read the characteristic value once")
    monitor = commands.add_parser("monitor", help="Print notifications until interrupted")
    monitor.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds instead of waiting for Ctrl-C",
    )
    return parser


def _profile(args) -> PeripheralProfile:
    return PeripheralProfile(name=args.name)


def _make_interface(args) -> ServoInterface:
    return ServoInterface(
        get_adapter(args.adapter),
        profile=_profile(args),
        scan_timeout=args.scan_timeout,
        max_retries=args.retries,
        connect_timeout=args.connect_timeout,
    )


def _print_line(line, interface):  # pylint: disable=W0613
    print(line)


def cmd_scan(args) -> int:
    adapter = get_adapter(args.adapter)
    adapter.init()
    try:
        predicate = None if args.all else name_matcher(args.name)
        found = Scanner(adapter).collect(args.scan_timeout, predicate)
    finally:
        adapter.shutdown()
    if not found:
        print("No matching peripherals found")
        return 1
    rows = [
        {
            "Address": c.id,
            "Name": c.name,
            "Local name": c.local_name,
            "RSSI": c.rssi,
        }
        for c in found
    ]
    print(tabulate(rows, headers="keys", missingval="N/A", tablefmt="fancy_grid"))
    return 0


def cmd_topology(iface: ServoInterface, args) -> int:  # pylint: disable=W0613
    connected = iface.connect()
    topology = connected.topology
    rows = [{"Kind": "service", "UUID": uuid} for uuid in topology.discovered.services]
    rows += [
        {"Kind": "characteristic", "UUID": uuid}
        for uuid in topology.discovered.characteristics
    ]
    print(tabulate(rows, headers="keys", missingval="N/A", tablefmt="fancy_grid"))
    if isinstance(topology, Verified):
        props = ", ".join(sorted(topology.characteristic.properties)) or "none"
        print(f"Verified; characteristic properties: {props}")
    else:
        print(f"Not verified: {topology.reason.value} ({', '.join(topology.missing)})")
    return 0 if topology.is_verified else 2


def cmd_command(iface: ServoInterface, args) -> int:
    iface.connect()
    if args.command == "toggle":
        iface.toggle_actuator()
        iface.toggle_actuator()
    else:
        iface.set_actuator(args.command == "on")
    return 0


def cmd_read(iface: ServoInterface, args) -> int:  # pylint: disable=W0613
    iface.connect()
    event = iface.read_value()
    print(event.text)
    return 0


def cmd_monitor(iface: ServoInterface, args) -> int:
    stop = threading.Event()

    def on_lost(interface):
        if interface is iface:
            stop.set()

    pub.subscribe(on_lost, "servolink.connection.lost")
    try:
        iface.connect()
        stop.wait(args.duration)
    except KeyboardInterrupt:
        pass
    finally:
        pub.unsubscribe(on_lost, "servolink.connection.lost")
    return 0


_SESSION_COMMANDS = {
    "topology": cmd_topology,
    "on": cmd_command,
    "off": cmd_command,
    "toggle": cmd_command,
    "read": cmd_read,
    "monitor": cmd_monitor,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "scan":
            return cmd_scan(args)
        pub.subscribe(_print_line, "servolink.log.line")
        try:
            with _make_interface(args) as iface:
                return _SESSION_COMMANDS[args.command](iface, args)
        finally:
            pub.unsubscribe(_print_line, "servolink.log.line")
    except BLEError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
