"""Client for the companion application's selection socket."""

import asyncio
import logging
import os

import websockets

import ipc_protocol
from picker_types import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3.0
CLOSE_TIMEOUT = 0.5
SOCKET_DIR_NAME = "screen-recorder"
SOCKET_FILE_NAME = "picker.sock"


def get_socket_path():
    """Where the companion application listens."""
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return os.path.join(runtime_dir, SOCKET_DIR_NAME, SOCKET_FILE_NAME)
    return os.path.join("/tmp", f"{SOCKET_DIR_NAME}-{os.getuid()}", SOCKET_FILE_NAME)


class IpcClient:
    def __init__(self, socket_path=None, timeout=DEFAULT_TIMEOUT):
        self.socket_path = socket_path or get_socket_path()
        self.timeout = timeout

    async def query_selection(self, session=None):
        """Ask the companion what is currently selected.

        One connection per call: connect, send one GetSelection, read one
        answer, close. Connect, send and receive together are bounded by
        self.timeout; the close handshake only gets CLOSE_TIMEOUT on top.
        Raises TransportError on any failure.
        """
        request_data = {}
        if session is not None:
            # Hints only, the companion decides what it offers
            request_data = {"sourceTypes": session.source_types, "cursorMode": session.cursor_mode}

        try:
            return await self._exchange(request_data)
        except asyncio.TimeoutError as e:
            raise TransportError(f"No answer from {self.socket_path} within {self.timeout}s") from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"Cannot talk to companion at {self.socket_path}: {e}") from e

    async def _exchange(self, request_data):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        request_id = ipc_protocol.new_request_id()

        websocket = await websockets.unix_connect(
            self.socket_path,
            subprotocols=[ipc_protocol.SUBPROTOCOL],
            open_timeout=self.timeout,
            close_timeout=CLOSE_TIMEOUT,
            ping_interval=None,
            max_size=1024 * 1024,
        )
        try:
            logger.debug(f"Connected to companion, sending request {request_id}")
            message = await asyncio.wait_for(
                self._request(websocket, ipc_protocol.encode_request(request_id, request_data)),
                timeout=max(deadline - loop.time(), 0),
            )
        finally:
            # An answer already received stands even if the close is slow
            await websocket.close()
        return ipc_protocol.decode_response(message, request_id)

    async def _request(self, websocket, payload):
        await websocket.send(payload)
        return await websocket.recv()
