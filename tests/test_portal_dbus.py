import time

import pytest

dbus = pytest.importorskip("dbus")
pytest.importorskip("gi")

from gi.repository import GLib  # noqa: E402

from conftest import FakeIpcClient  # noqa: E402
from picker_types import RESPONSE_CANCELLED, RESPONSE_SUCCESS, Session, SourceSelection  # noqa: E402
from portal_backend import ScreenCastBackend  # noqa: E402
from portal_dbus import (  # noqa: E402
    SCREENCAST_IFACE,
    SELECT_SOURCES_OPTION_TYPES,
    SESSION_IFACE,
    PortalSession,
    ScreenCastPortal,
    to_dbus_results,
    typed_options,
    unwrap,
)
from portal_client import describe_streams  # noqa: E402
from screen_picker import EventLoopThread  # noqa: E402

SESSION = "/org/freedesktop/portal/desktop/session/1_42/s1"
REQUEST = "/org/freedesktop/portal/desktop/request/1_42/r1"


@pytest.fixture
def loop_thread():
    thread = EventLoopThread()
    thread.start()
    yield thread
    thread.stop()


class FailingBackend(ScreenCastBackend):
    async def start(self, handle, session_handle, app_id, parent_window, options):
        raise RuntimeError("backend blew up")


def wait_for_replies(replies, count, timeout=2.0):
    """Run the GLib main context until count replies came back."""
    context = GLib.MainContext.default()
    deadline = time.monotonic() + timeout
    while len(replies) < count and time.monotonic() < deadline:
        while context.pending():
            context.iteration(False)
        time.sleep(0.01)
    assert len(replies) == count


def capture(replies):
    def reply_handler(status, results):
        replies.append((status, results))
    return reply_handler


def test_unwrap_options():
    options = dbus.Dictionary({
        "types": dbus.UInt32(3),
        "multiple": dbus.Boolean(False),
        "restore_token": dbus.String("tok"),
        "handle_token": dbus.ObjectPath("/x"),
    }, signature="sv")
    plain = unwrap(options)
    assert plain == {"types": 3, "multiple": False, "restore_token": "tok", "handle_token": "/x"}
    assert type(plain["types"]) is int
    assert type(plain["multiple"]) is bool


def test_typed_options_drop_wrong_dbus_types():
    options = dbus.Dictionary({
        "types": dbus.Int32(2),
        "cursor_mode": dbus.UInt64(1),
        "persist_mode": dbus.UInt32(2),
        "restore_token": dbus.ObjectPath("/tok"),
        "multiple": dbus.Boolean(True),
    }, signature="sv")
    assert typed_options(options, SELECT_SOURCES_OPTION_TYPES) == {"persist_mode": 2, "multiple": True}


def test_streams_are_typed_for_the_portal():
    results = to_dbus_results({"streams": [(0, {"source_type": 1, "id": "mon-0",
                                                "position": (10, 20), "size": (800, 600)})]})
    streams = results["streams"]
    assert streams.signature == "(ua{sv})"
    node_id, props = streams[0]
    assert isinstance(node_id, dbus.UInt32)
    assert isinstance(props["source_type"], dbus.UInt32)
    assert isinstance(props["id"], dbus.String)
    assert props["position"].signature == "ii"
    assert tuple(props["size"]) == (800, 600)


def test_empty_results():
    results = to_dbus_results({})
    assert results == {}
    assert results.signature == "sv"


def test_describe_streams():
    streams = to_dbus_results({"streams": [(0, {"source_type": 2, "id": "0x4a00007"}),
                                           (0, {"source_type": 1, "id": "mon-0",
                                                "position": (5, 6), "size": (7, 8)})]})["streams"]
    assert describe_streams(streams) == [
        {"node_id": 0, "source_type": "window", "id": "0x4a00007"},
        {"node_id": 0, "source_type": "monitor", "id": "mon-0", "position": [5, 6], "size": [7, 8]},
    ]


def test_screencast_properties(loop_thread):
    portal = ScreenCastPortal(ScreenCastBackend(ipc_client=FakeIpcClient(None)), loop_thread.loop)
    assert portal.GetAll(SCREENCAST_IFACE) == {"AvailableSourceTypes": 3, "AvailableCursorModes": 2, "Version": 4}
    assert portal.Get(SCREENCAST_IFACE, "Version") == 4

    with pytest.raises(dbus.exceptions.DBusException) as excinfo:
        portal.Set(SCREENCAST_IFACE, "Version", dbus.UInt32(5))
    assert excinfo.value.get_dbus_name() == "org.freedesktop.DBus.Error.PropertyReadOnly"

    with pytest.raises(dbus.exceptions.DBusException) as excinfo:
        portal.Get(SCREENCAST_IFACE, "Nope")
    assert excinfo.value.get_dbus_name() == "org.freedesktop.DBus.Error.UnknownProperty"

    with pytest.raises(dbus.exceptions.DBusException) as excinfo:
        portal.GetAll("org.example.Other")
    assert excinfo.value.get_dbus_name() == "org.freedesktop.DBus.Error.UnknownInterface"


def test_start_replies_with_stream(loop_thread):
    portal = ScreenCastPortal(
        ScreenCastBackend(ipc_client=FakeIpcClient(SourceSelection("window", "0x4a00007"))), loop_thread.loop)
    replies = []
    portal.Start(dbus.ObjectPath(REQUEST), dbus.ObjectPath(SESSION), "org.example.App", "",
                 dbus.Dictionary({}, signature="sv"), reply_handler=capture(replies), error_handler=None)
    wait_for_replies(replies, 1)

    status, results = replies[0]
    assert status == RESPONSE_SUCCESS
    assert isinstance(status, dbus.UInt32)
    node_id, props = results["streams"][0]
    assert (node_id, props["source_type"], props["id"]) == (0, 2, "0x4a00007")
    assert portal._pending == set()


def test_backend_exception_is_answered_cancelled(loop_thread):
    portal = ScreenCastPortal(FailingBackend(ipc_client=FakeIpcClient(None)), loop_thread.loop)
    replies = []
    errors = []
    portal.Start(dbus.ObjectPath(REQUEST), dbus.ObjectPath(SESSION), "", "",
                 dbus.Dictionary({}, signature="sv"), reply_handler=capture(replies), error_handler=errors.append)
    wait_for_replies(replies, 1)

    assert replies == [(RESPONSE_CANCELLED, {})]
    assert errors == []


def test_select_sources_ignores_wrongly_typed_options(loop_thread):
    backend = ScreenCastBackend(ipc_client=FakeIpcClient(None))
    backend.registry.create(SESSION)
    portal = ScreenCastPortal(backend, loop_thread.loop)
    replies = []
    options = dbus.Dictionary({
        "types": dbus.Int32(2),
        "cursor_mode": dbus.UInt32(1),
        "restore_token": dbus.String("tok-1"),
    }, signature="sv")
    portal.SelectSources(dbus.ObjectPath(REQUEST), dbus.ObjectPath(SESSION), "", options,
                         reply_handler=capture(replies), error_handler=None)
    wait_for_replies(replies, 1)

    assert replies[0][0] == RESPONSE_SUCCESS
    assert backend.registry.get(SESSION) == Session(source_types=3, cursor_mode=1, persist_mode=0,
                                                    restore_token="tok-1")


def test_drain_waits_for_in_flight_calls(loop_thread):
    backend = ScreenCastBackend(ipc_client=FakeIpcClient(SourceSelection("monitor", "mon-0"), delay=0.2))
    portal = ScreenCastPortal(backend, loop_thread.loop)
    replies = []
    portal.Start(dbus.ObjectPath(REQUEST), dbus.ObjectPath(SESSION), "", "",
                 dbus.Dictionary({}, signature="sv"), reply_handler=capture(replies), error_handler=None)
    assert len(portal._pending) == 1

    portal.drain(timeout=2.0)
    # The reply may be queued just after the future resolves
    wait_for_replies(replies, 1)
    assert replies[0][0] == RESPONSE_SUCCESS
    assert portal._pending == set()


def test_session_close_emits_closed_and_forgets_session(monkeypatch):
    closed = []
    calls = []
    session = PortalSession(SESSION, closed.append)
    monkeypatch.setattr(session, "Closed", lambda: calls.append("Closed"))
    monkeypatch.setattr(session, "remove_from_connection", lambda *args: calls.append("unexported"))

    session.Close()

    assert calls == ["Closed", "unexported"]
    assert closed == [SESSION]
    assert session.GetAll(SESSION_IFACE) == {"version": 1}


def test_closed_session_is_forgotten_by_the_portal(monkeypatch, loop_thread):
    monkeypatch.setattr(ScreenCastPortal, "connection", object())
    monkeypatch.setattr(PortalSession, "add_to_connection", lambda self, conn, path: None)
    monkeypatch.setattr(PortalSession, "remove_from_connection", lambda self, *args: None)
    monkeypatch.setattr(PortalSession, "Closed", lambda self: None)
    portal = ScreenCastPortal(ScreenCastBackend(ipc_client=FakeIpcClient(None)), loop_thread.loop)

    portal._export_session(SESSION)
    portal._export_session(SESSION)
    assert list(portal._sessions) == [SESSION]

    portal._sessions[SESSION].Close()
    assert portal._sessions == {}
