"""
# A Python driver for BT05-class BLE servo/rain-sensor peripherals

The peripheral exposes a single custom GATT service with a single
read/write/notify characteristic. This package scans for it by name, connects
with bounded retries, verifies the expected topology, sends actuator commands
and relays sensor notifications.

Typical usage:

    from pubsub import pub
    from servolink.interfaces.ble import ServoInterface

    def on_line(line, interface):
        print(line)

    pub.subscribe(on_line, "servolink.log.line")
    with ServoInterface() as iface:
        iface.connect()
        iface.set_actuator(True)

Published topics (all sent from `publishingThread`):

- servolink.log.line - one human readable status line per transition or error
- servolink.status - structured InterfaceStatus snapshot
- servolink.connection.established / servolink.connection.lost
- servolink.notification - decoded NotificationEvent from the peripheral
- servolink.alert - interruptive Alert (radio off, permissions, rain, link lost)
"""

from servolink.util import DeferredExecution

__version__ = "0.3.0"

# Runs pubsub callbacks off the radio thread, in the order they were queued.
publishingThread = DeferredExecution("publishing")

__all__ = ["DeferredExecution", "publishingThread", "__version__"]
