"""
HTTP Server - multi-socket session manager

Listens on one socket and serves every accepted connection
independently. Each accepted socket has its own sub-session holding the
request framer, the queue of requests waiting to be served and the
fragmentation cursor of the response being written. Connections stay
open across requests until the client closes them.
"""

import functools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .constants import HTTP_PORT
from .errors import InvalidStateError, ProtocolViolationError
from .packet import ObjectDescriptor, Request, RequestParser, fragment_sizes
from .scheduler import EventId, Simulator
from .states import ObjectKind, ServerState, state_name
from .trace import TraceSource
from .transport import Address, SimulatedNetwork, Socket, resolve_transport
from .variables import HttpVariables

logger = logging.getLogger("HTTP.Server")

ConnectionId = Tuple[str, int]


def accept_all(remote: Address) -> bool:
    """Default accept policy"""
    return True


@dataclass
class HttpServerConfig:
    """
    HTTP Server Configuration

    Attributes:
        local_address: Address to listen on
        local_port: Port to listen on
        transport: Transport kind (must be a reliable stream)
        response_delay: Delay before a response starts being written (seconds)
        mtu: Maximum packet size; drawn from the provider at start if None
    """
    local_address: str = ""
    local_port: int = HTTP_PORT
    transport: str = "tcp"
    response_delay: float = 0.0
    mtu: Optional[int] = None

    def __post_init__(self):
        if self.response_delay < 0:
            raise ValueError("response_delay must not be negative")
        if self.mtu is not None and self.mtu <= 0:
            raise ValueError("mtu must be positive")
        if not 0 < self.local_port <= 65535:
            raise ValueError(f"Invalid local port: {self.local_port}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_address": self.local_address,
            "local_port": self.local_port,
            "transport": self.transport,
            "response_delay": self.response_delay,
            "mtu": self.mtu,
        }


@dataclass
class HttpServerStats:
    """HTTP Server Statistics"""
    connection_requests: int = 0
    connections_rejected: int = 0
    sockets_accepted: int = 0
    sockets_closed_by_peer: int = 0
    sockets_closed_on_stop: int = 0
    protocol_violations: int = 0
    main_requests: int = 0
    embedded_requests: int = 0
    main_objects_served: int = 0
    embedded_objects_served: int = 0
    packets_sent: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    state_changes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_requests": self.connection_requests,
            "connections_rejected": self.connections_rejected,
            "sockets_accepted": self.sockets_accepted,
            "sockets_closed_by_peer": self.sockets_closed_by_peer,
            "sockets_closed_on_stop": self.sockets_closed_on_stop,
            "protocol_violations": self.protocol_violations,
            "main_requests": self.main_requests,
            "embedded_requests": self.embedded_requests,
            "main_objects_served": self.main_objects_served,
            "embedded_objects_served": self.embedded_objects_served,
            "packets_sent": self.packets_sent,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "state_changes": self.state_changes,
        }


class AcceptedSocket:
    """Per-connection sub-session of the server"""

    def __init__(self, connection_id: ConnectionId, sock: Socket, accepted_at: float):
        self.connection_id = connection_id
        self.socket = sock
        self.accepted_at = accepted_at
        self.parser = RequestParser()
        self.pending: Deque[Request] = deque()

        # Response in progress
        self.current: Optional[ObjectDescriptor] = None
        self.fragments: List[int] = []
        self.next_fragment = 0
        self.timer: Optional[EventId] = None

        self.last_kind: Optional[ObjectKind] = None
        self.objects_served = 0
        self.pages_served = 0

    @property
    def busy(self) -> bool:
        return self.current is not None

    @property
    def bytes_remaining(self) -> int:
        return sum(self.fragments[self.next_fragment:])

    def release(self) -> None:
        """Cancel the pending timer and drop the socket callbacks"""
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        self.socket.set_receive_callback(None)
        self.socket.set_send_callback(None)
        self.socket.set_close_callbacks(None, None)
        self.pending.clear()
        self.current = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "peer": f"{self.connection_id[0]}:{self.connection_id[1]}",
            "accepted_at": self.accepted_at,
            "busy": self.busy,
            "bytes_remaining": self.bytes_remaining,
            "pending_requests": len(self.pending),
            "last_kind": self.last_kind.display_name if self.last_kind else None,
            "objects_served": self.objects_served,
            "pages_served": self.pages_served,
        }


class HttpServer:
    """
    HTTP server session manager

    Trace sources:
        tx_trace(kind, size): a response packet was written
        rx_trace(size, peer): request bytes arrived from a peer
        state_transition_trace(old_name, new_name): the state changed
    """

    def __init__(
        self,
        simulator: Simulator,
        network: SimulatedNetwork,
        variables: HttpVariables,
        config: Optional[HttpServerConfig] = None,
        name: str = "",
        accept_policy: Callable[[Address], bool] = accept_all,
    ):
        """
        Initialize HTTP server

        Args:
            simulator: Scheduler for response delays
            network: Network the listening socket is created on
            variables: Provider of object sizes, owned by this server
            config: Server configuration
            name: Identifier for logging and statistics
            accept_policy: Decides whether a connection request is accepted
        """
        self.simulator = simulator
        self.network = network
        self.variables = variables
        self.config = config or HttpServerConfig()
        self.name = name or f"server-{id(self):x}"
        self.accept_policy = accept_policy

        self._state = ServerState.NOT_STARTED
        self._listen_socket: Optional[Socket] = None
        self._accepted: Dict[ConnectionId, AcceptedSocket] = {}
        self._mtu: Optional[int] = self.config.mtu
        self._peer_variables: Dict[str, HttpVariables] = {}

        self.tx_trace = TraceSource("Tx")
        self.rx_trace = TraceSource("Rx")
        self.state_transition_trace = TraceSource("StateTransition")

        self.stats = HttpServerStats()

    @property
    def state(self) -> ServerState:
        return self._state

    def get_state(self) -> ServerState:
        return self._state

    def get_state_string(self) -> str:
        return state_name(self._state)

    @property
    def is_active(self) -> bool:
        """True while at least one accepted socket is open"""
        return bool(self._accepted)

    @property
    def accepted_socket_count(self) -> int:
        return len(self._accepted)

    @property
    def connection_ids(self) -> List[ConnectionId]:
        return list(self._accepted)

    def get_accepted_socket(self, connection_id: ConnectionId) -> Optional[AcceptedSocket]:
        return self._accepted.get(connection_id)

    @property
    def mtu(self) -> Optional[int]:
        return self._mtu

    def assign_peer_variables(self, peer_address: str, variables: HttpVariables) -> None:
        """
        Serve requests from one client address with a dedicated provider

        A client and the server agree on object sizes when both draw them
        from providers with the same seed and stream. When several clients
        share a server, each gets its own provider here.
        """
        self._peer_variables[peer_address] = variables

    def variables_for(self, connection_id: ConnectionId) -> HttpVariables:
        return self._peer_variables.get(connection_id[0], self.variables)

    @property
    def pending_timer_count(self) -> int:
        return sum(
            1 for sub in self._accepted.values()
            if sub.timer is not None and sub.timer.is_pending
        )

    def start(self) -> None:
        """
        Open the listening socket

        Raises:
            UnsupportedTransportError: If the configured transport cannot be used
            InvalidStateError: If the server has already been stopped
            ValueError: If the MTU exceeds the socket send buffer
        """
        if self._state == ServerState.STOPPED:
            raise InvalidStateError(f"Server {self.name} has been stopped")
        if self._state != ServerState.NOT_STARTED:
            logger.warning(f"[HTTP] Server {self.name} already listening")
            return

        resolve_transport(self.config.transport)

        if self._mtu is None:
            self._mtu = self.variables.get_mtu_size()
        if self._mtu > self.network.send_buffer_size:
            # Packets are written whole, a larger one would never fit
            raise ValueError(
                f"MTU {self._mtu} exceeds the {self.network.send_buffer_size} byte send buffer"
            )

        sock = self.network.create_socket(self.config.transport, self.config.local_address)
        sock.bind(self.config.local_address, self.config.local_port)
        sock.listen(self._connection_request, self._new_connection)
        self._listen_socket = sock

        self._switch_to_state(ServerState.LISTENING)
        logger.info(
            f"[HTTP] Server {self.name} listening on "
            f"{self.config.local_address}:{self.config.local_port} (MTU {self._mtu})"
        )

    def stop(self) -> None:
        """Close the listening socket and every accepted socket"""
        if self._state == ServerState.STOPPED:
            return

        if self._listen_socket is not None:
            self._listen_socket.close()
            self._listen_socket = None

        for connection_id in list(self._accepted):
            self._remove(connection_id, close=True)
            self.stats.sockets_closed_on_stop += 1

        self._switch_to_state(ServerState.STOPPED)
        logger.info(f"[HTTP] Server {self.name} stopped")

    # CONNECTIONS

    def _connection_request(self, sock: Socket, remote: Address) -> bool:
        self.stats.connection_requests += 1
        if self._state != ServerState.LISTENING:
            return False

        accepted = bool(self.accept_policy(remote))
        if not accepted:
            self.stats.connections_rejected += 1
            logger.info(f"[HTTP] Server {self.name} rejected connection from {remote[0]}:{remote[1]}")
        return accepted

    def _new_connection(self, sock: Socket, remote: Address) -> None:
        if self._state != ServerState.LISTENING:
            sock.close()
            return

        connection_id = tuple(remote)
        if connection_id in self._accepted:
            logger.error(
                f"[HTTP] Server {self.name} already has a connection from "
                f"{remote[0]}:{remote[1]}, closing the new one"
            )
            sock.close()
            return

        sub = AcceptedSocket(connection_id, sock, self.simulator.now)
        sock.set_receive_callback(functools.partial(self._received_data, connection_id))
        sock.set_send_callback(functools.partial(self._send_space_available, connection_id))
        closed = functools.partial(self._peer_closed, connection_id)
        sock.set_close_callbacks(closed, closed)
        self._accepted[connection_id] = sub
        self.stats.sockets_accepted += 1

        logger.debug(
            f"[HTTP] Server {self.name} accepted {remote[0]}:{remote[1]} "
            f"({len(self._accepted)} open)"
        )

    def _peer_closed(self, connection_id: ConnectionId, sock: Socket) -> None:
        sub = self._accepted.get(connection_id)
        if sub is None or sub.socket is not sock:
            return

        self.stats.sockets_closed_by_peer += 1
        self._remove(connection_id, close=False)
        logger.debug(
            f"[HTTP] Server {self.name} connection from {connection_id[0]}:{connection_id[1]} "
            f"closed by peer ({len(self._accepted)} open)"
        )

    def _remove(self, connection_id: ConnectionId, close: bool) -> None:
        sub = self._accepted.pop(connection_id)
        sub.release()
        if close:
            sub.socket.close()

    # REQUESTS

    def _received_data(self, connection_id: ConnectionId, sock: Socket, data: bytes) -> None:
        sub = self._accepted.get(connection_id)
        if sub is None or sub.socket is not sock:
            return

        self.stats.bytes_received += len(data)
        self.rx_trace(len(data), connection_id)

        try:
            requests = sub.parser.feed(data)
        except ProtocolViolationError as e:
            self.stats.protocol_violations += 1
            logger.warning(
                f"[HTTP] Server {self.name} closing {connection_id[0]}:{connection_id[1]}: {e}"
            )
            self._remove(connection_id, close=True)
            return

        for request in requests:
            if request.kind == ObjectKind.MAIN:
                self.stats.main_requests += 1
            else:
                self.stats.embedded_requests += 1
            sub.pending.append(request)

        self._serve_next(sub)

    def _serve_next(self, sub: AcceptedSocket) -> None:
        if sub.busy or not sub.pending:
            return

        request = sub.pending.popleft()
        variables = self.variables_for(sub.connection_id)
        if request.kind == ObjectKind.MAIN:
            size = variables.get_main_object_size()
            sub.pages_served += 1
        else:
            size = variables.get_embedded_object_size()

        sub.current = ObjectDescriptor(kind=request.kind, size=size)
        sub.last_kind = request.kind
        sub.fragments = fragment_sizes(size, self._mtu)
        sub.next_fragment = 0

        logger.debug(
            f"[HTTP] Server {self.name} serving {request.kind.display_name} object "
            f"of {size} bytes in {len(sub.fragments)} packet(s)"
        )

        if self.config.response_delay > 0:
            sub.timer = self.simulator.schedule(
                self.config.response_delay,
                self._response_delay_elapsed,
                sub.connection_id,
            )
        else:
            self._write(sub)

    def _response_delay_elapsed(self, connection_id: ConnectionId) -> None:
        sub = self._accepted.get(connection_id)
        if sub is None:
            return
        sub.timer = None
        self._write(sub)

    def _send_space_available(self, connection_id: ConnectionId, sock: Socket, available: int) -> None:
        sub = self._accepted.get(connection_id)
        if sub is None or sub.socket is not sock:
            return
        if sub.busy and sub.timer is None:
            self._write(sub)

    def _write(self, sub: AcceptedSocket) -> None:
        """Write as many whole packets as the send buffer takes"""
        kind = sub.current.kind
        while sub.next_fragment < len(sub.fragments):
            size = sub.fragments[sub.next_fragment]
            if sub.socket.tx_available < size:
                return

            sub.socket.send(bytes(size))
            sub.next_fragment += 1
            self.stats.packets_sent += 1
            self.stats.bytes_sent += size
            self.tx_trace(kind, size)

        sub.objects_served += 1
        if kind == ObjectKind.MAIN:
            self.stats.main_objects_served += 1
        else:
            self.stats.embedded_objects_served += 1
        sub.current = None
        sub.fragments = []
        sub.next_fragment = 0

        self._serve_next(sub)

    def _switch_to_state(self, new_state: ServerState) -> None:
        if new_state == self._state:
            return

        old_state = self._state
        self._state = new_state
        self.stats.state_changes += 1

        logger.info(
            f"[HTTP] Server {self.name} state: {old_state.display_name} -> {new_state.display_name}"
        )
        self.state_transition_trace(old_state.display_name, new_state.display_name)

    def to_dict(self) -> Dict[str, Any]:
        """Get server status"""
        return {
            "name": self.name,
            "state": self._state.display_name,
            "local_address": self.config.local_address,
            "local_port": self.config.local_port,
            "transport": self.config.transport,
            "mtu": self._mtu,
            "response_delay": self.config.response_delay,
            "is_active": self.is_active,
            "accepted_sockets": [sub.to_dict() for sub in self._accepted.values()],
            "statistics": self.stats.to_dict(),
        }
