"""Screencast portal backend logic.

Implements what org.freedesktop.impl.portal.ScreenCast asks of us without
showing a picker: the selection is taken from the companion application
over IPC and approved automatically. Bus plumbing lives in portal_dbus.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ipc_client import IpcClient
from picker_types import (
    CURSOR_MODE_EMBEDDED,
    I32_MAX,
    PERSIST_MODE_NONE,
    RESPONSE_CANCELLED,
    RESPONSE_SUCCESS,
    SOURCE_TYPE_MONITOR,
    SOURCE_TYPE_WINDOW,
    U32_MAX,
    NoSelection,
    SelectionError,
    SourceSelection,
    TransportError,
)
from session_registry import SessionRegistry

logger = logging.getLogger(__name__)

# Node id 0 asks the portal to resolve the source id to a real PipeWire node
PLACEHOLDER_NODE_ID = 0

_PORTAL_SOURCE_TYPES = {
    "monitor": SOURCE_TYPE_MONITOR,
    "window": SOURCE_TYPE_WINDOW,
    # Regions are captured as the full monitor, the app crops to position/size
    "region": SOURCE_TYPE_MONITOR,
}


def _get_u32(options, key):
    """Option value if it is an unsigned 32-bit int, else None."""
    value = options.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if not 0 <= value <= U32_MAX:
        return None
    return value


def _get_string(options, key):
    """Option value if it is a string, else None."""
    value = options.get(key)
    return value if isinstance(value, str) else None


@dataclass(frozen=True)
class SourceOptions:
    source_types: int = SOURCE_TYPE_MONITOR | SOURCE_TYPE_WINDOW
    cursor_mode: int = CURSOR_MODE_EMBEDDED
    persist_mode: int = PERSIST_MODE_NONE
    restore_token: Optional[str] = None

    @classmethod
    def from_options(cls, options):
        """Pull the SelectSources options out of a vardict.

        Missing or wrongly typed entries fall back to the defaults.
        """
        options = options or {}
        defaults = cls()
        source_types = _get_u32(options, "types")
        cursor_mode = _get_u32(options, "cursor_mode")
        persist_mode = _get_u32(options, "persist_mode")
        return cls(
            source_types=defaults.source_types if source_types is None else source_types,
            cursor_mode=defaults.cursor_mode if cursor_mode is None else cursor_mode,
            persist_mode=defaults.persist_mode if persist_mode is None else persist_mode,
            restore_token=_get_string(options, "restore_token"),
        )


def portal_source_type(source_type):
    return _PORTAL_SOURCE_TYPES.get(source_type, SOURCE_TYPE_MONITOR)


def build_stream(selection):
    """Turn a companion selection into a (node_id, properties) stream."""
    properties = {
        "source_type": portal_source_type(selection.source_type),
        "id": selection.source_id,
    }
    geom = selection.geometry
    if geom is not None:
        # Portal expects (i32, i32) pairs
        properties["position"] = (geom.x, geom.y)
        properties["size"] = (min(geom.width, I32_MAX), min(geom.height, I32_MAX))
    return PLACEHOLDER_NODE_ID, properties


class ScreenCastBackend:
    AVAILABLE_SOURCE_TYPES = SOURCE_TYPE_MONITOR | SOURCE_TYPE_WINDOW
    # Embedded cursor only (drawn into the frame)
    AVAILABLE_CURSOR_MODES = CURSOR_MODE_EMBEDDED
    VERSION = 4

    def __init__(self, registry=None, ipc_client=None):
        self.registry = registry if registry is not None else SessionRegistry()
        self.ipc_client = ipc_client if ipc_client is not None else IpcClient()

    async def create_session(self, handle, session_handle, app_id, options):
        logger.info(f"CreateSession: handle={handle}, session={session_handle}, app_id={app_id!r}")
        self.registry.create(session_handle)
        return RESPONSE_SUCCESS, {}

    async def select_sources(self, handle, session_handle, app_id, options):
        logger.info(f"SelectSources: handle={handle}, session={session_handle}")
        source_options = SourceOptions.from_options(options)
        logger.info(
            f"SelectSources options: types={source_options.source_types}, "
            f"cursor_mode={source_options.cursor_mode}, persist_mode={source_options.persist_mode}, "
            f"restore_token={source_options.restore_token!r}"
        )
        self.registry.update(session_handle, source_options)
        return RESPONSE_SUCCESS, {}

    async def start(self, handle, session_handle, app_id, parent_window, options):
        logger.info(f"Start: handle={handle}, session={session_handle}")

        session = self.registry.get(session_handle)
        if session is None:
            logger.warning(f"Start: session not found: {session_handle}")

        try:
            selection = await self.ipc_client.query_selection(session)
        except TransportError as e:
            logger.error(f"Failed to query companion app: {e}")
            return RESPONSE_CANCELLED, {}

        if isinstance(selection, SourceSelection):
            logger.info(
                f"Got selection from companion app: type={selection.source_type}, "
                f"id={selection.source_id}, geometry={selection.geometry}"
            )
            return RESPONSE_SUCCESS, {"streams": [build_stream(selection)]}
        if isinstance(selection, NoSelection):
            logger.warning("No selection available from companion app")
        elif isinstance(selection, SelectionError):
            logger.error(f"Error from companion app: {selection.message}")
        else:
            logger.error(f"Unexpected answer from companion app: {selection!r}")
        return RESPONSE_CANCELLED, {}
