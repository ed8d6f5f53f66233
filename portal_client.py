"""Request a screencast through the public portal and print what comes back.

Goes through org.freedesktop.portal.Desktop, so with this backend
installed the answer reflects whatever the companion app has selected.
"""

import json
import sys
import uuid

import dbus
import dbus.mainloop.glib
from gi.repository import GLib

# dbus-python requires a main loop for signals
dbus.mainloop.glib.DBusGMainLoop(set_as_default=True)

SOURCE_TYPE_NAMES = {1: "monitor", 2: "window", 4: "virtual"}


class PortalError(Exception):
    pass


def describe_streams(streams):
    """streams is a(ua{sv}): [(node_id, properties), ...] -> list of plain dicts"""
    described = []
    for node_id, props in streams:
        source_type = int(props.get("source_type", 0))
        entry = {
            "node_id": int(node_id),
            "source_type": SOURCE_TYPE_NAMES.get(source_type, str(source_type)),
            "id": str(props["id"]) if "id" in props else None,
        }
        if "position" in props:
            entry["position"] = [int(v) for v in props["position"]]
        if "size" in props:
            entry["size"] = [int(v) for v in props["size"]]
        described.append(entry)
    return described


class PortalClient:
    def __init__(self):
        self.bus = dbus.SessionBus()
        self.portal_obj = self.bus.get_object('org.freedesktop.portal.Desktop', '/org/freedesktop/portal/desktop')
        self.portal_iface = dbus.Interface(self.portal_obj, 'org.freedesktop.portal.ScreenCast')
        self.loop = GLib.MainLoop()
        self.response_data = None
        self.response_error = None
        self.token = f"picker_client_{uuid.uuid4().hex[:8]}"

    def _response_handler(self, response, results, path=None):
        # response: uint32 (0=success, 1=cancelled, 2=other)
        if response == 0:
            self.response_data = results
        elif response == 1:
            self.response_error = "Request cancelled (no selection in the companion app?)"
        else:
            self.response_error = f"Request failed with code {response}"
        self.loop.quit()

    def _call(self, method, *args, options):
        # Subscribe before calling so a fast Response is not missed
        handle_token = f"{self.token}_{method.lower()}"
        sender = self.bus.get_unique_name()[1:].replace('.', '_')
        request_path = f"/org/freedesktop/portal/desktop/request/{sender}/{handle_token}"
        match = self.bus.add_signal_receiver(
            self._response_handler,
            signal_name='Response',
            dbus_interface='org.freedesktop.portal.Request',
            bus_name='org.freedesktop.portal.Desktop',
            path=request_path
        )
        self.response_data = None
        self.response_error = None
        options = dbus.Dictionary(dict(options, handle_token=dbus.String(handle_token)), signature='sv')
        try:
            getattr(self.portal_iface, method)(*args, options)
            self.loop.run()
        finally:
            match.remove()

        if self.response_error:
            raise PortalError(f"{method}: {self.response_error}")
        return self.response_data

    def create_session(self):
        results = self._call('CreateSession', options={
            'session_handle_token': dbus.String(self.token),
        })
        return results['session_handle']

    def select_sources(self, session_handle):
        self._call('SelectSources', session_handle, options={
            'types': dbus.UInt32(3),  # 1 (Monitor) | 2 (Window)
            'cursor_mode': dbus.UInt32(2),  # Embedded
            'multiple': dbus.Boolean(False),
        })

    def start(self, session_handle):
        results = self._call('Start', session_handle, '', options={})
        streams = results.get('streams')
        if not streams:
            raise PortalError("No streams returned")
        return describe_streams(streams)


def main():
    try:
        client = PortalClient()
        print("Creating session...", file=sys.stderr)
        session_handle = client.create_session()
        print(f"Session Handle: {session_handle}", file=sys.stderr)
        client.select_sources(session_handle)
        print("Starting session...", file=sys.stderr)
        streams = client.start(session_handle)
    except (PortalError, dbus.exceptions.DBusException) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(json.dumps(streams, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
