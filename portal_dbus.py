"""D-Bus export of the screencast backend (dbus-python on a GLib main loop).

Method handlers reply asynchronously: each call is run as a coroutine on
an asyncio loop living in another thread, and the reply is handed back to
the GLib thread with GLib.idle_add.
"""

import asyncio
import concurrent.futures
import logging

import dbus
import dbus.service
from gi.repository import GLib

from picker_types import RESPONSE_CANCELLED

logger = logging.getLogger(__name__)

SERVICE_NAME = "org.freedesktop.impl.portal.desktop.screenrecorder"
PORTAL_OBJECT_PATH = "/org/freedesktop/portal/desktop"
SCREENCAST_IFACE = "org.freedesktop.impl.portal.ScreenCast"
SESSION_IFACE = "org.freedesktop.impl.portal.Session"
PROPERTIES_IFACE = "org.freedesktop.DBus.Properties"


def unwrap(value):
    """dbus-python value -> plain Python value."""
    if isinstance(value, dbus.Boolean):
        return bool(value)
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return float(value)
    if isinstance(value, str):
        return str(value)
    if isinstance(value, bytes):
        return bytes(value)
    if isinstance(value, dict):
        return {unwrap(k): unwrap(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return tuple(unwrap(v) for v in value)
    if isinstance(value, list):
        return [unwrap(v) for v in value]
    return value


# SelectSources options and the D-Bus type each must arrive as
SELECT_SOURCES_OPTION_TYPES = {
    "types": dbus.UInt32,
    "cursor_mode": dbus.UInt32,
    "persist_mode": dbus.UInt32,
    "restore_token": dbus.String,
}


def typed_options(options, expected_types):
    """Unwrap a vardict, dropping known options that arrived with the wrong D-Bus type.

    Type information is lost once unwrapped, so an i32 "types" would
    otherwise pass for a u32.
    """
    kept = {}
    for key, value in options.items():
        expected = expected_types.get(str(key))
        if expected is not None and not isinstance(value, expected):
            logger.warning(f"Ignoring option {key}: expected {expected.__name__}, got {type(value).__name__}")
            continue
        kept[key] = value
    return unwrap(kept)


def _wrap_stream_property(value):
    if isinstance(value, tuple):
        # position and size are (ii)
        return dbus.Struct([dbus.Int32(v) for v in value], signature="ii")
    if isinstance(value, int):
        return dbus.UInt32(value)
    return dbus.String(value)


def to_dbus_results(results):
    """Backend results -> a{sv} with explicit types for the portal."""
    wrapped = {}
    for key, value in results.items():
        if key == "streams":
            wrapped[key] = dbus.Array(
                [
                    dbus.Struct(
                        (dbus.UInt32(node_id),
                         dbus.Dictionary({k: _wrap_stream_property(v) for k, v in props.items()}, signature="sv")),
                        signature="ua{sv}",
                    )
                    for node_id, props in value
                ],
                signature="(ua{sv})",
            )
        else:
            wrapped[key] = value
    return dbus.Dictionary(wrapped, signature="sv")


class PropertiesObject(dbus.service.Object):
    """Object with read-only properties served through org.freedesktop.DBus.Properties."""

    def _properties(self):
        return {}

    def _interface_properties(self, interface):
        props = self._properties()
        if interface not in props:
            raise dbus.exceptions.DBusException(
                f"Unknown interface: {interface}", name="org.freedesktop.DBus.Error.UnknownInterface")
        return props[interface]

    @dbus.service.method(dbus_interface=PROPERTIES_IFACE, in_signature="ss", out_signature="v")
    def Get(self, interface, prop):
        props = self._interface_properties(interface)
        if prop in props:
            return props[prop]
        raise dbus.exceptions.DBusException(
            f"Unknown property: {prop}", name="org.freedesktop.DBus.Error.UnknownProperty")

    @dbus.service.method(dbus_interface=PROPERTIES_IFACE, in_signature="s", out_signature="a{sv}")
    def GetAll(self, interface):
        return dbus.Dictionary(self._interface_properties(interface), signature="sv")

    @dbus.service.method(dbus_interface=PROPERTIES_IFACE, in_signature="ssv")
    def Set(self, interface, prop, value):
        raise dbus.exceptions.DBusException(
            f"Property {prop} is read-only", name="org.freedesktop.DBus.Error.PropertyReadOnly")


class PortalSession(PropertiesObject):
    """Session object exported at the session handle the portal gave us."""

    def __init__(self, path, on_closed):
        super().__init__()
        self.path = path
        self.on_closed = on_closed

    def _properties(self):
        return {SESSION_IFACE: {"version": dbus.UInt32(1)}}

    @dbus.service.method(dbus_interface=SESSION_IFACE)
    def Close(self):
        logger.info(f"Session closed: {self.path}")
        self.Closed()
        self.remove_from_connection()
        self.on_closed(self.path)

    @dbus.service.signal(dbus_interface=SESSION_IFACE)
    def Closed(self):
        pass


class ScreenCastPortal(PropertiesObject):
    """org.freedesktop.impl.portal.ScreenCast bound to a ScreenCastBackend."""

    def __init__(self, backend, loop):
        super().__init__()
        self.backend = backend
        self.loop = loop
        self._pending = set()
        self._sessions = {}

    def _properties(self):
        return {
            SCREENCAST_IFACE: {
                "AvailableSourceTypes": dbus.UInt32(self.backend.AVAILABLE_SOURCE_TYPES),
                "AvailableCursorModes": dbus.UInt32(self.backend.AVAILABLE_CURSOR_MODES),
                "Version": dbus.UInt32(self.backend.VERSION),
            }
        }

    def _dispatch(self, coro, reply_handler):
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        self._pending.add(future)
        future.add_done_callback(lambda f: GLib.idle_add(self._reply, f, reply_handler))

    def _reply(self, future, reply_handler):
        self._pending.discard(future)
        try:
            status, results = future.result()
        except Exception:
            logger.exception("Portal call failed, answering cancelled")
            status, results = RESPONSE_CANCELLED, {}
        reply_handler(dbus.UInt32(status), to_dbus_results(results))
        return False

    def _export_session(self, session_handle):
        if session_handle in self._sessions:
            return
        session = PortalSession(session_handle, lambda path: self._sessions.pop(path, None))
        try:
            session.add_to_connection(self.connection, session_handle)
        except KeyError as e:
            # Path already taken on this connection
            logger.warning(f"Could not export session object {session_handle}: {e}")
            return
        self._sessions[session_handle] = session

    @dbus.service.method(dbus_interface=SCREENCAST_IFACE, in_signature="oosa{sv}", out_signature="ua{sv}",
                         async_callbacks=("reply_handler", "error_handler"))
    def CreateSession(self, handle, session_handle, app_id, options, reply_handler, error_handler):
        self._export_session(str(session_handle))
        self._dispatch(
            self.backend.create_session(str(handle), str(session_handle), str(app_id), unwrap(options)),
            reply_handler)

    @dbus.service.method(dbus_interface=SCREENCAST_IFACE, in_signature="oosa{sv}", out_signature="ua{sv}",
                         async_callbacks=("reply_handler", "error_handler"))
    def SelectSources(self, handle, session_handle, app_id, options, reply_handler, error_handler):
        self._dispatch(
            self.backend.select_sources(str(handle), str(session_handle), str(app_id),
                                        typed_options(options, SELECT_SOURCES_OPTION_TYPES)),
            reply_handler)

    @dbus.service.method(dbus_interface=SCREENCAST_IFACE, in_signature="oossa{sv}", out_signature="ua{sv}",
                         async_callbacks=("reply_handler", "error_handler"))
    def Start(self, handle, session_handle, app_id, parent_window, options, reply_handler, error_handler):
        self._dispatch(
            self.backend.start(str(handle), str(session_handle), str(app_id), str(parent_window), unwrap(options)),
            reply_handler)

    def drain(self, timeout):
        """Wait for in-flight calls, then flush their queued replies."""
        pending = list(self._pending)
        if pending:
            logger.info(f"Waiting for {len(pending)} in-flight portal calls...")
            _, not_done = concurrent.futures.wait(pending, timeout=timeout)
            if not_done:
                logger.warning(f"{len(not_done)} portal calls still running at shutdown")
        context = GLib.MainContext.default()
        while context.pending():
            context.iteration(False)
