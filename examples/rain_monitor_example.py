"""
Example: keep a BT05 rain sensor connected and react to its alerts.

A single `ServoInterface` is reused across reconnects:
- `servolink.alert` carries interruptive messages; on "Rain Detected!" the example closes the servo.
- `servolink.connection.lost` wakes the main loop, which calls `reconnect()` after `--retry-delay` seconds.
"""

import argparse
import logging
import threading
import time

from pubsub import pub  # type: ignore[import-untyped]  # pylint: disable=E0401

from servolink.interfaces.ble import AlertKind, BLEError, ServoInterface

RETRY_DELAY_SECONDS = 5

logger = logging.getLogger(__name__)

disconnected_event = threading.Event()


def on_alert(alert, interface):
    """Log alerts and switch the actuator off when rain is reported."""
    logger.warning("%s: %s", alert.title, alert.message)
    if alert.kind is AlertKind.CONDITION_DETECTED and interface.actuator_on:
        try:
            interface.set_actuator(False)
        except BLEError:
            logger.exception("Could not close the servo")


def on_connection_lost(interface):  # pylint: disable=W0613
    disconnected_event.set()


def main():
    parser = argparse.ArgumentParser(description="BT05 rain monitor with reconnects.")
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=RETRY_DELAY_SECONDS,
        help=f"Seconds to wait before reconnect attempts (default: {RETRY_DELAY_SECONDS}).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging level (default: INFO).",
    )
    args = parser.parse_args()
    if args.retry_delay <= 0:
        parser.error("--retry-delay must be > 0")
    logging.basicConfig(level=getattr(logging, args.log_level, logging.INFO))

    pub.subscribe(on_alert, "servolink.alert")
    pub.subscribe(on_connection_lost, "servolink.connection.lost")
    try:
        with ServoInterface() as iface:
            while True:
                disconnected_event.clear()
                try:
                    connected = iface.reconnect()
                    if not connected.verified:
                        logger.error("Peripheral does not expose the expected service")
                        return
                    iface.set_actuator(True)
                    disconnected_event.wait()
                    logger.info("Disconnected.")
                except BLEError:
                    logger.exception("Connection failed")
                logger.info("Retrying in %s seconds...", args.retry_delay)
                time.sleep(args.retry_delay)
    except KeyboardInterrupt:
        logger.info("Exiting...")
    finally:
        pub.unsubscribe(on_alert, "servolink.alert")
        pub.unsubscribe(on_connection_lost, "servolink.connection.lost")


if __name__ == "__main__":
    main()
