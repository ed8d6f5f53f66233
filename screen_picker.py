"""Screen Recorder Picker - headless xdg-desktop-portal ScreenCast backend.

Instead of showing a picker UI, this service asks the running screen
recorder (the companion app) over IPC which source the user selected and
approves the request with it.

    companion app            this service             xdg-desktop-portal
          |                       |<--- ScreenCast request ----|
          |<-- GetSelection ------|                            |
          |--- selection -------->|                            |
          |                       |--- auto-approve ---------->|
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading

import dbus
import dbus.mainloop.glib
import dbus.service
from gi.repository import GLib

from ipc_client import DEFAULT_TIMEOUT, IpcClient, get_socket_path
from portal_backend import ScreenCastBackend
from portal_dbus import PORTAL_OBJECT_PATH, SERVICE_NAME, ScreenCastPortal

logger = logging.getLogger("screen_picker")


def setup_logging(level):
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    # Connection failures are reported by IpcClient already
    logging.getLogger("websockets").setLevel(logging.WARNING)


class EventLoopThread(threading.Thread):
    """asyncio loop the portal handlers run on, next to the GLib loop."""

    def __init__(self):
        super().__init__(name="asyncio-loop", daemon=True)
        self.loop = asyncio.new_event_loop()

    def run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()
        self.loop.close()

    def stop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.join(timeout=2.0)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Headless ScreenCast portal backend")
    parser.add_argument("--socket-path", default=None,
                        help=f"Companion app IPC socket (default: {get_socket_path()})")
    parser.add_argument("--ipc-timeout", type=float, default=DEFAULT_TIMEOUT,
                        help="Seconds to wait for the companion app")
    parser.add_argument("--log-level", default=os.environ.get("SCREEN_PICKER_LOG", "INFO").upper(),
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Log verbosity (default: $SCREEN_PICKER_LOG or INFO)")
    parser.add_argument("--replace", action="store_true",
                        help="Take over the bus name from a running instance")
    args = parser.parse_args(argv)
    if args.ipc_timeout <= 0:
        parser.error("--ipc-timeout must be positive")
    return args


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level)

    ipc_client = IpcClient(args.socket_path, timeout=args.ipc_timeout)
    logger.info("Starting screen-recorder-picker service")
    logger.info(f"IPC socket path: {ipc_client.socket_path}")

    dbus.mainloop.glib.DBusGMainLoop(set_as_default=True)
    try:
        bus = dbus.SessionBus()
        # The name is released when bus_name is garbage collected
        bus_name = dbus.service.BusName(
            SERVICE_NAME, bus, allow_replacement=True, replace_existing=args.replace, do_not_queue=True)
    except dbus.exceptions.NameExistsException:
        logger.error(f"{SERVICE_NAME} is already owned by another process (use --replace to take over)")
        return 1
    except dbus.exceptions.DBusException as e:
        logger.error(f"Cannot connect to the D-Bus session bus: {e}")
        return 1
    logger.info(f"Registered service name: {SERVICE_NAME}")

    loop_thread = EventLoopThread()
    loop_thread.start()

    backend = ScreenCastBackend(ipc_client=ipc_client)
    portal = ScreenCastPortal(backend, loop_thread.loop)
    portal.add_to_connection(bus, PORTAL_OBJECT_PATH)
    logger.info(f"Portal backend registered at {PORTAL_OBJECT_PATH}")

    mainloop = GLib.MainLoop()

    # Handle shutdown signals
    def signal_handler(*args):
        logger.info("Shutting down initiated...")
        mainloop.quit()
        return GLib.SOURCE_REMOVE

    for sig in (signal.SIGINT, signal.SIGTERM):
        GLib.unix_signal_add(GLib.PRIORITY_DEFAULT, sig, signal_handler)

    # Losing the bus name (e.g. --replace from another instance) ends the service
    bus.add_signal_receiver(
        lambda name: name == SERVICE_NAME and signal_handler(),
        signal_name="NameLost",
        dbus_interface="org.freedesktop.DBus",
        path="/org/freedesktop/DBus",
    )

    logger.info("Portal backend ready - waiting for requests")
    try:
        mainloop.run()
    finally:
        # In-flight Start calls end on their own IPC timeout
        portal.drain(timeout=args.ipc_timeout + 1.0)
        loop_thread.stop()
        logger.info("Shutdown complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
