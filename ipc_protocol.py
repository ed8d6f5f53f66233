"""Wire format spoken between the picker and the companion application.

Every message is one binary WebSocket frame holding a msgpack map with an
op-coded envelope:

    {"op": 6, "d": {"rpcVersion": 1, "requestType": "GetSelection",
                    "requestId": "...", "requestData": {...}}}

    {"op": 7, "d": {"rpcVersion": 1, "requestType": "GetSelection",
                    "requestId": "...",
                    "requestStatus": {"result": True, "code": 100},
                    "responseData": {"kind": "selection", ...}}}

responseData.kind is "selection", "none" or "error".
"""

import uuid

import msgpack

from picker_types import (
    I32_MAX,
    I32_MIN,
    U32_MAX,
    Geometry,
    NoSelection,
    ProtocolError,
    SelectionError,
    SourceSelection,
)

SUBPROTOCOL = "screenpicker.msgpack.v1"
RPC_VERSION = 1

OP_REQUEST = 6
OP_REQUEST_RESPONSE = 7

REQUEST_GET_SELECTION = "GetSelection"

STATUS_SUCCESS = 100


def new_request_id():
    return uuid.uuid4().hex


def encode_request(request_id, request_data=None):
    return msgpack.packb({
        "op": OP_REQUEST,
        "d": {
            "rpcVersion": RPC_VERSION,
            "requestType": REQUEST_GET_SELECTION,
            "requestId": request_id,
            "requestData": request_data or {},
        }
    })


def _unpack(message):
    if not isinstance(message, bytes):
        raise ProtocolError(f"Expected a binary frame, got {type(message).__name__}")
    try:
        msg_obj = msgpack.unpackb(message, raw=False)
    except (msgpack.UnpackException, ValueError) as e:
        raise ProtocolError(f"Undecodable message: {e}") from e
    if not isinstance(msg_obj, dict) or not isinstance(msg_obj.get("d"), dict):
        raise ProtocolError("Message is not an op envelope")
    d = msg_obj["d"]
    if d.get("rpcVersion") != RPC_VERSION:
        raise ProtocolError(f"Unsupported rpcVersion: {d.get('rpcVersion')!r}")
    return msg_obj.get("op"), d


def decode_request(message):
    """Companion side: returns (request_id, request_data)."""
    op, d = _unpack(message)
    if op != OP_REQUEST:
        raise ProtocolError(f"Expected op {OP_REQUEST}, got {op!r}")
    if d.get("requestType") != REQUEST_GET_SELECTION:
        raise ProtocolError(f"Unknown request type: {d.get('requestType')!r}")
    request_id = d.get("requestId")
    if not isinstance(request_id, str):
        raise ProtocolError("Request has no requestId")
    request_data = d.get("requestData")
    return request_id, request_data if isinstance(request_data, dict) else {}


def _selection_data(selection):
    if isinstance(selection, SourceSelection):
        data = {
            "kind": "selection",
            "sourceType": selection.source_type,
            "sourceId": selection.source_id,
        }
        if selection.geometry is not None:
            g = selection.geometry
            data["geometry"] = {"x": g.x, "y": g.y, "width": g.width, "height": g.height}
        return data
    if isinstance(selection, SelectionError):
        return {"kind": "error", "message": selection.message}
    return {"kind": "none"}


def encode_response(request_id, selection):
    return msgpack.packb({
        "op": OP_REQUEST_RESPONSE,
        "d": {
            "rpcVersion": RPC_VERSION,
            "requestType": REQUEST_GET_SELECTION,
            "requestId": request_id,
            "requestStatus": {"result": True, "code": STATUS_SUCCESS},
            "responseData": _selection_data(selection),
        }
    })


def _int_field(obj, key, low, high):
    value = obj.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise ProtocolError(f"Invalid geometry field {key}: {value!r}")
    return value


def _decode_geometry(raw):
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ProtocolError("geometry must be a map")
    return Geometry(
        x=_int_field(raw, "x", I32_MIN, I32_MAX),
        y=_int_field(raw, "y", I32_MIN, I32_MAX),
        width=_int_field(raw, "width", 0, U32_MAX),
        height=_int_field(raw, "height", 0, U32_MAX),
    )


def decode_response(message, request_id):
    """Decode one op 7 frame into a Selection variant.

    Raises ProtocolError for anything that is not a well-formed answer to
    request_id.
    """
    op, d = _unpack(message)
    if op != OP_REQUEST_RESPONSE:
        raise ProtocolError(f"Expected op {OP_REQUEST_RESPONSE}, got {op!r}")
    if d.get("requestId") != request_id:
        raise ProtocolError(f"Response for unknown request {d.get('requestId')!r}")

    status = d.get("requestStatus")
    if isinstance(status, dict) and status.get("result") is False:
        return SelectionError(str(status.get("comment") or f"request failed with code {status.get('code')}"))

    data = d.get("responseData")
    if not isinstance(data, dict):
        raise ProtocolError("Response has no responseData")

    kind = data.get("kind")
    if kind == "none":
        return NoSelection()
    if kind == "error":
        return SelectionError(str(data.get("message", "")))
    if kind == "selection":
        source_type = data.get("sourceType")
        source_id = data.get("sourceId")
        if not isinstance(source_type, str) or not isinstance(source_id, str):
            raise ProtocolError("Selection is missing sourceType/sourceId")
        return SourceSelection(source_type, source_id, _decode_geometry(data.get("geometry")))
    raise ProtocolError(f"Unknown response kind: {kind!r}")
