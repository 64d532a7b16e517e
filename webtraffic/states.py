"""
Session states and object kinds

Closed enumerations shared by the client and server state machines,
each with a total mapping to the display names used in state
transition traces.
"""

from enum import IntEnum
from typing import Dict


class ClientState(IntEnum):
    """HTTP client session state"""
    NOT_STARTED = 0
    CONNECTING = 1
    EXPECTING_MAIN_OBJECT = 2
    PARSING_MAIN_OBJECT = 3
    EXPECTING_EMBEDDED_OBJECT = 4
    READING = 5
    STOPPED = 6

    @property
    def display_name(self) -> str:
        return CLIENT_STATE_NAMES[self]


class ServerState(IntEnum):
    """HTTP server session manager state"""
    NOT_STARTED = 0
    LISTENING = 1
    STOPPED = 2

    @property
    def display_name(self) -> str:
        return SERVER_STATE_NAMES[self]


class ObjectKind(IntEnum):
    """Kind tag carried by every request and object descriptor"""
    MAIN = 1
    EMBEDDED = 2

    @property
    def display_name(self) -> str:
        return OBJECT_KIND_NAMES[self]


CLIENT_STATE_NAMES: Dict[ClientState, str] = {
    ClientState.NOT_STARTED: "NOT_STARTED",
    ClientState.CONNECTING: "CONNECTING",
    ClientState.EXPECTING_MAIN_OBJECT: "EXPECTING_MAIN_OBJECT",
    ClientState.PARSING_MAIN_OBJECT: "PARSING_MAIN_OBJECT",
    ClientState.EXPECTING_EMBEDDED_OBJECT: "EXPECTING_EMBEDDED_OBJECT",
    ClientState.READING: "READING",
    ClientState.STOPPED: "STOPPED",
}

SERVER_STATE_NAMES: Dict[ServerState, str] = {
    ServerState.NOT_STARTED: "NOT_STARTED",
    ServerState.LISTENING: "LISTENING",
    ServerState.STOPPED: "STOPPED",
}

OBJECT_KIND_NAMES: Dict[ObjectKind, str] = {
    ObjectKind.MAIN: "main",
    ObjectKind.EMBEDDED: "embedded",
}

_NAME_TABLES = {
    ClientState: CLIENT_STATE_NAMES,
    ServerState: SERVER_STATE_NAMES,
}


def state_name(state) -> str:
    """
    Display name of a client or server state

    The enums share integer values, so the table is picked by type
    rather than by value.

    Raises:
        TypeError: If state is not a ClientState or ServerState
    """
    try:
        names = _NAME_TABLES[type(state)]
    except KeyError:
        raise TypeError(f"Not a session state: {state!r}") from None
    return names[state]
