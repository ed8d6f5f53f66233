"""Types shared by the portal backend and the companion IPC."""

from dataclasses import dataclass, replace
from typing import Optional, Union

# Portal response codes (0=success, 1=cancelled by user, 2=other error)
RESPONSE_SUCCESS = 0
RESPONSE_CANCELLED = 1
RESPONSE_OTHER_ERROR = 2

# Source type flags
SOURCE_TYPE_MONITOR = 1
SOURCE_TYPE_WINDOW = 2
SOURCE_TYPE_VIRTUAL = 4

# Cursor modes
CURSOR_MODE_HIDDEN = 1
CURSOR_MODE_EMBEDDED = 2
CURSOR_MODE_METADATA = 4

PERSIST_MODE_NONE = 0
PERSIST_MODE_TRANSIENT = 1
PERSIST_MODE_PERSISTENT = 2

I32_MIN = -(2 ** 31)
I32_MAX = 2 ** 31 - 1
U32_MAX = 2 ** 32 - 1


class TransportError(Exception):
    """The companion application could not be reached or answered badly."""


class ProtocolError(TransportError):
    """The companion application answered with something we cannot decode."""


@dataclass
class Session:
    source_types: int = 0
    cursor_mode: int = CURSOR_MODE_EMBEDDED
    persist_mode: int = PERSIST_MODE_NONE
    restore_token: Optional[str] = None

    def copy(self) -> "Session":
        return replace(self)


@dataclass(frozen=True)
class Geometry:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class SourceSelection:
    """The user picked something. Geometry is only set for regions."""
    source_type: str
    source_id: str
    geometry: Optional[Geometry] = None


@dataclass(frozen=True)
class NoSelection:
    pass


@dataclass(frozen=True)
class SelectionError:
    message: str


Selection = Union[SourceSelection, NoSelection, SelectionError]
