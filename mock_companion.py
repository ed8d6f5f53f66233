"""Stand-in for the screen recorder app on the selection socket.

Serves a fixed answer to every GetSelection request, which is enough to
drive the portal backend without the real app running.
"""

import argparse
import asyncio
import inspect
import logging
import os
import signal

import websockets

import ipc_protocol
from ipc_client import get_socket_path
from picker_types import Geometry, NoSelection, ProtocolError, SelectionError, SourceSelection

logger = logging.getLogger(__name__)


# Filter out "opening handshake failed" errors from clients that hang up early
class NoiselessHandshakeFilter(logging.Filter):
    def filter(self, record):
        return "opening handshake failed" not in record.getMessage()


def select_subprotocol(connection, client_subprotocols):
    # Permissive: clients that don't ask for a subprotocol are still served
    if ipc_protocol.SUBPROTOCOL in client_subprotocols:
        return ipc_protocol.SUBPROTOCOL
    return None


class CompanionServer:
    """Answers GetSelection requests on a Unix socket.

    provider(request_data) returns a Selection, or an awaitable of one.
    """

    def __init__(self, socket_path, provider, delay=0.0):
        self.socket_path = socket_path
        self.provider = provider
        self.delay = delay
        self.requests_received = []
        self.server = None

    async def handler(self, websocket):
        try:
            async for message in websocket:
                try:
                    request_id, request_data = ipc_protocol.decode_request(message)
                except ProtocolError as e:
                    logger.error(f"Failed to parse request: {e}")
                    continue

                logger.info(f"Received GetSelection (ID: {request_id}, data: {request_data})")
                self.requests_received.append(request_data)

                selection = self.provider(request_data)
                if inspect.isawaitable(selection):
                    selection = await selection
                if self.delay:
                    await asyncio.sleep(self.delay)

                await websocket.send(ipc_protocol.encode_response(request_id, selection))
                logger.info(f"Sent {type(selection).__name__} for {request_id}")
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Picker connection closed")

    async def start(self):
        os.makedirs(os.path.dirname(self.socket_path), mode=0o700, exist_ok=True)
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)
        self.server = await websockets.unix_serve(
            self.handler,
            self.socket_path,
            subprotocols=[ipc_protocol.SUBPROTOCOL],
            select_subprotocol=select_subprotocol,
            ping_interval=None,
        )
        logger.info(f"Mock companion listening on {self.socket_path}")

    async def stop(self):
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc_info):
        await self.stop()


def parse_geometry(value):
    """'X,Y,WxH' -> Geometry"""
    try:
        x, y, size = value.split(",")
        width, height = size.lower().split("x")
        return Geometry(int(x), int(y), int(width), int(height))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected X,Y,WxH, got {value!r}")


def selection_from_args(args):
    if args.none:
        return NoSelection()
    if args.error:
        return SelectionError(args.error)
    geometry = args.geometry
    if args.source_type == "region" and geometry is None:
        raise SystemExit("--geometry is required for region selections")
    return SourceSelection(args.source_type, args.source_id, geometry)


async def main():
    parser = argparse.ArgumentParser(description="Mock companion app for screen-recorder-picker")
    parser.add_argument("--socket-path", default=get_socket_path())
    parser.add_argument("--source-type", default="monitor", help="monitor, window or region")
    parser.add_argument("--source-id", default="mon-0")
    parser.add_argument("--geometry", type=parse_geometry, help="Region as X,Y,WxH")
    parser.add_argument("--none", action="store_true", help="Report that nothing is selected")
    parser.add_argument("--error", metavar="MESSAGE", help="Report an internal error")
    parser.add_argument("--delay", type=float, default=0.0, help="Seconds to wait before answering")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    logging.getLogger("websockets.server").addFilter(NoiselessHandshakeFilter())

    selection = selection_from_args(args)
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    async with CompanionServer(args.socket_path, lambda request_data: selection, delay=args.delay):
        logger.info(f"Serving {selection}. Press Ctrl+C to stop.")
        await shutdown_event.wait()
    logger.info("Shutdown complete.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
