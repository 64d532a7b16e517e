"""
Simulated transport

Reliable, ordered byte-stream sockets running on the discrete-event
scheduler. Sessions only see the Socket interface; the concrete class
is picked from the transport-kind registry, so a session can be wired
to any stream transport that honours the same callbacks.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, Optional, Set, Tuple, Type

from .constants import (
    DEFAULT_LINK_DELAY,
    DEFAULT_SEND_BUFFER_SIZE,
    EPHEMERAL_PORT_MAX,
    EPHEMERAL_PORT_MIN,
)
from .errors import SocketError, UnsupportedTransportError
from .scheduler import Simulator

logger = logging.getLogger("HTTP.Transport")

Address = Tuple[str, int]

# Kinds that exist but cannot carry the sessions (not reliable streams)
UNRELIABLE_TRANSPORT_KINDS = frozenset({"udp"})


class SocketState(Enum):
    """Simulated socket state"""
    CLOSED = "closed"
    BOUND = "bound"
    LISTENING = "listening"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Socket(ABC):
    """Bidirectional reliable byte-stream socket used by the sessions"""

    @abstractmethod
    def bind(self, address: str = "", port: int = 0) -> None:
        ...

    @abstractmethod
    def listen(
        self,
        accept_policy: Callable[["Socket", Address], bool],
        on_new_connection: Callable[["Socket", Address], None],
    ) -> None:
        ...

    @abstractmethod
    def connect(
        self,
        address: str,
        port: int,
        on_succeeded: Callable[["Socket"], None],
        on_failed: Callable[["Socket"], None],
    ) -> None:
        ...

    @abstractmethod
    def send(self, data: bytes) -> int:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def set_receive_callback(self, callback: Optional[Callable[["Socket", bytes], None]]) -> None:
        ...

    @abstractmethod
    def set_send_callback(self, callback: Optional[Callable[["Socket", int], None]]) -> None:
        ...

    @abstractmethod
    def set_close_callbacks(
        self,
        normal_close: Optional[Callable[["Socket"], None]],
        error_close: Optional[Callable[["Socket"], None]],
    ) -> None:
        ...

    @property
    @abstractmethod
    def tx_available(self) -> int:
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...


class SimulatedNetwork:
    """
    In-memory network of simulated sockets

    Every byte sent arrives at the peer after the one-way link delay,
    plus serialization time when a data rate is set, in the order it
    was sent.
    """

    def __init__(
        self,
        simulator: Simulator,
        delay: float = DEFAULT_LINK_DELAY,
        data_rate: Optional[float] = None,
        send_buffer_size: int = DEFAULT_SEND_BUFFER_SIZE,
    ):
        """
        Initialize network

        Args:
            simulator: Scheduler carrying every delivery
            delay: One-way link delay in seconds
            data_rate: Link rate in bits per second, unlimited if None
            send_buffer_size: Send buffer of each socket in bytes
        """
        if delay < 0:
            raise ValueError("Link delay must not be negative")
        if data_rate is not None and data_rate <= 0:
            raise ValueError("Data rate must be positive")
        if send_buffer_size <= 0:
            raise ValueError("Send buffer size must be positive")

        self.simulator = simulator
        self.delay = delay
        self.data_rate = data_rate
        self.send_buffer_size = send_buffer_size

        self._bound: Dict[Address, "TcpSocket"] = {}
        self._listeners: Dict[Address, "TcpSocket"] = {}
        self._open_sockets: Set["TcpSocket"] = set()
        self._next_port: Dict[str, int] = {}

        self.bytes_delivered = 0
        self.packets_delivered = 0
        self.bytes_discarded = 0

    @property
    def open_socket_count(self) -> int:
        return len(self._open_sockets)

    def create_socket(self, kind: str = "tcp", address: str = "") -> Socket:
        """
        Create a socket of a transport kind

        Raises:
            UnsupportedTransportError: If the kind is unknown or unreliable
        """
        socket_class = resolve_transport(kind)
        sock = socket_class(self, address)
        self._open_sockets.add(sock)
        return sock

    def serialization_time(self, size: int) -> float:
        if self.data_rate is None:
            return 0.0
        return size * 8 / self.data_rate

    def _allocate_port(self, address: str) -> int:
        port = self._next_port.get(address, EPHEMERAL_PORT_MIN)
        while (address, port) in self._bound:
            port += 1
            if port > EPHEMERAL_PORT_MAX:
                port = EPHEMERAL_PORT_MIN
        self._next_port[address] = port + 1
        return port

    def _register(self, sock: "TcpSocket", address: str, port: int) -> int:
        if port == 0:
            port = self._allocate_port(address)
        elif (address, port) in self._bound:
            raise SocketError(f"Address already in use: {address}:{port}")
        self._bound[(address, port)] = sock
        return port

    def _release(self, sock: "TcpSocket") -> None:
        self._open_sockets.discard(sock)
        if sock.local_name and self._bound.get(sock.local_name) is sock:
            del self._bound[sock.local_name]
        if sock.local_name and self._listeners.get(sock.local_name) is sock:
            del self._listeners[sock.local_name]

    def _handle_connection_request(self, client: "TcpSocket", remote: Address) -> None:
        """SYN arrives at the remote end"""
        if client.state != SocketState.CONNECTING:
            return

        listener = self._listeners.get(remote)
        accepted = False
        if listener is not None and listener.state == SocketState.LISTENING:
            accepted = listener._ask_accept_policy(client.local_name)

        if not accepted:
            logger.debug(f"[HTTP] Connection {client.local_name} -> {remote} refused")
            self.simulator.schedule(self.delay, client._connection_failed)
            return

        server_side = TcpSocket(self, remote[0])
        server_side.local_name = remote
        server_side.state = SocketState.CONNECTED
        server_side.peer = client
        client.peer = server_side
        self._open_sockets.add(server_side)

        listener._notify_new_connection(server_side, client.local_name)
        self.simulator.schedule(self.delay, client._connection_succeeded)


class TcpSocket(Socket):
    """Simulated reliable stream socket"""

    def __init__(self, network: SimulatedNetwork, address: str = ""):
        self.network = network
        self.address = address
        self.local_name: Optional[Address] = None
        self.state = SocketState.CLOSED
        self.peer: Optional["TcpSocket"] = None

        self._bytes_in_flight = 0
        self._link_free_at = 0.0
        self._released = False

        self._accept_policy: Optional[Callable[[Socket, Address], bool]] = None
        self._on_new_connection: Optional[Callable[[Socket, Address], None]] = None
        self._on_connect_succeeded: Optional[Callable[[Socket], None]] = None
        self._on_connect_failed: Optional[Callable[[Socket], None]] = None
        self._on_receive: Optional[Callable[[Socket, bytes], None]] = None
        self._on_send: Optional[Callable[[Socket, int], None]] = None
        self._on_normal_close: Optional[Callable[[Socket], None]] = None
        self._on_error_close: Optional[Callable[[Socket], None]] = None

        self.bytes_sent = 0
        self.bytes_received = 0

    def __repr__(self) -> str:
        return f"TcpSocket({self.local_name}, {self.state.value})"

    @property
    def peer_name(self) -> Optional[Address]:
        return self.peer.local_name if self.peer is not None else None

    @property
    def tx_available(self) -> int:
        if self.state != SocketState.CONNECTED:
            return 0
        return self.network.send_buffer_size - self._bytes_in_flight

    @property
    def is_open(self) -> bool:
        return not self._released

    def bind(self, address: str = "", port: int = 0) -> None:
        if self._released:
            raise SocketError("Socket is closed")
        if self.local_name is not None:
            raise SocketError(f"Socket already bound to {self.local_name}")
        address = address or self.address
        port = self.network._register(self, address, port)
        self.address = address
        self.local_name = (address, port)
        self.state = SocketState.BOUND

    def listen(
        self,
        accept_policy: Callable[[Socket, Address], bool],
        on_new_connection: Callable[[Socket, Address], None],
    ) -> None:
        if self.state != SocketState.BOUND:
            raise SocketError("Socket must be bound before listening")
        self._accept_policy = accept_policy
        self._on_new_connection = on_new_connection
        self.state = SocketState.LISTENING
        self.network._listeners[self.local_name] = self
        logger.debug(f"[HTTP] Listening on {self.local_name[0]}:{self.local_name[1]}")

    def connect(
        self,
        address: str,
        port: int,
        on_succeeded: Callable[[Socket], None],
        on_failed: Callable[[Socket], None],
    ) -> None:
        if self._released:
            raise SocketError("Socket is closed")
        if self.state == SocketState.CLOSED:
            self.bind()
        if self.state != SocketState.BOUND:
            raise SocketError(f"Cannot connect from state {self.state.value}")

        self._on_connect_succeeded = on_succeeded
        self._on_connect_failed = on_failed
        self.state = SocketState.CONNECTING
        self.network.simulator.schedule(
            self.network.delay,
            self.network._handle_connection_request,
            self,
            (address, port),
        )

    def send(self, data: bytes) -> int:
        """
        Queue bytes for delivery

        Returns:
            Number of bytes accepted, limited by free send buffer space
        """
        if self.state != SocketState.CONNECTED or self.peer is None:
            raise SocketError(f"Cannot send from state {self.state.value}")

        accepted = min(len(data), self.tx_available)
        if accepted == 0:
            return 0

        chunk = bytes(data[:accepted])
        network = self.network
        now = network.simulator.now
        start = max(now, self._link_free_at)
        self._link_free_at = start + network.serialization_time(accepted)
        self._bytes_in_flight += accepted
        self.bytes_sent += accepted

        network.simulator.schedule(
            self._link_free_at + network.delay - now,
            self.peer._deliver,
            self,
            chunk,
        )
        return accepted

    def close(self) -> None:
        """Close the socket; the peer gets a normal close after all sent data"""
        if self._released:
            return

        peer = self.peer
        if peer is not None and self.state in (SocketState.CONNECTED, SocketState.CONNECTING):
            now = self.network.simulator.now
            self.network.simulator.schedule(
                max(now, self._link_free_at) + self.network.delay - now,
                peer._peer_closed,
                False,
            )
        self._shutdown()

    def abort(self) -> None:
        """Close the socket and signal an error close to the peer"""
        if self._released:
            return
        peer = self.peer
        if peer is not None and self.state in (SocketState.CONNECTED, SocketState.CONNECTING):
            self.network.simulator.schedule(self.network.delay, peer._peer_closed, True)
        self._shutdown()

    def set_receive_callback(self, callback: Optional[Callable[[Socket, bytes], None]]) -> None:
        self._on_receive = callback

    def set_send_callback(self, callback: Optional[Callable[[Socket, int], None]]) -> None:
        self._on_send = callback

    def set_close_callbacks(
        self,
        normal_close: Optional[Callable[[Socket], None]],
        error_close: Optional[Callable[[Socket], None]],
    ) -> None:
        self._on_normal_close = normal_close
        self._on_error_close = error_close

    # Network side

    def _shutdown(self) -> None:
        self.state = SocketState.CLOSED
        self._released = True
        self.network._release(self)
        self._accept_policy = None
        self._on_new_connection = None
        self._on_connect_succeeded = None
        self._on_connect_failed = None
        self._on_receive = None
        self._on_send = None
        self._on_normal_close = None
        self._on_error_close = None

    def _ask_accept_policy(self, remote: Address) -> bool:
        if self._accept_policy is None:
            return True
        return bool(self._accept_policy(self, remote))

    def _notify_new_connection(self, sock: "TcpSocket", remote: Address) -> None:
        if self._on_new_connection is not None:
            self._on_new_connection(sock, remote)

    def _connection_succeeded(self) -> None:
        if self.state != SocketState.CONNECTING:
            return
        self.state = SocketState.CONNECTED
        if self._on_connect_succeeded is not None:
            self._on_connect_succeeded(self)

    def _connection_failed(self) -> None:
        if self.state != SocketState.CONNECTING:
            return
        callback = self._on_connect_failed
        self._shutdown()
        if callback is not None:
            callback(self)

    def _deliver(self, sender: "TcpSocket", chunk: bytes) -> None:
        sender._bytes_in_flight -= len(chunk)

        if self._released:
            self.network.bytes_discarded += len(chunk)
            logger.debug(f"[HTTP] Discarding {len(chunk)} bytes for closed socket {self.local_name}")
        else:
            self.bytes_received += len(chunk)
            self.network.bytes_delivered += len(chunk)
            self.network.packets_delivered += 1
            if self._on_receive is not None:
                self._on_receive(self, chunk)

        if not sender._released and sender._on_send is not None:
            sender._on_send(sender, sender.tx_available)

    def _peer_closed(self, error: bool) -> None:
        if self._released:
            return
        callback = self._on_error_close if error else self._on_normal_close
        self._shutdown()
        if callback is not None:
            callback(self)


TRANSPORT_KINDS: Dict[str, Type[Socket]] = {
    "tcp": TcpSocket,
}


def resolve_transport(kind: str) -> Type[Socket]:
    """
    Look up the socket class of a transport kind

    Raises:
        UnsupportedTransportError: If the kind is unknown or not a reliable stream
    """
    key = (kind or "").lower()
    if key in UNRELIABLE_TRANSPORT_KINDS:
        raise UnsupportedTransportError(
            f"Transport '{kind}' is not a reliable byte stream"
        )
    try:
        return TRANSPORT_KINDS[key]
    except KeyError:
        raise UnsupportedTransportError(f"Unknown transport '{kind}'") from None


def register_transport(kind: str, socket_class: Type[Socket]) -> None:
    """Make another reliable stream transport available by name"""
    TRANSPORT_KINDS[kind.lower()] = socket_class
