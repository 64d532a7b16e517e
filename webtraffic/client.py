"""
HTTP Client - web browsing session state machine

Simulates one browsing user: connect, request the main object, parse it
to find out how many embedded objects it references, fetch those one
at a time, read the page, then start over on a fresh connection.

States:
    NOT_STARTED -> CONNECTING -> EXPECTING_MAIN_OBJECT -> PARSING_MAIN_OBJECT
    -> EXPECTING_EMBEDDED_OBJECT (once per embedded object) -> READING
    -> CONNECTING -> ...                         (STOPPED from anywhere)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .constants import (
    DEFAULT_CONNECT_RETRY_ATTEMPTS,
    DEFAULT_CONNECT_RETRY_BACKOFF,
    DEFAULT_CONNECT_RETRY_MULTIPLIER,
    HTTP_PORT,
    REQUEST_HEADER_LEN,
)
from .errors import InvalidStateError
from .packet import ObjectDescriptor, Request, encode_request
from .scheduler import EventId, Simulator
from .states import ClientState, ObjectKind, state_name
from .trace import TraceSource
from .transport import SimulatedNetwork, Socket, resolve_transport
from .variables import HttpVariables

logger = logging.getLogger("HTTP.Client")


@dataclass
class RetryPolicy:
    """
    Reconnect behaviour after a failed or lost connection

    Attributes:
        max_attempts: Reconnect attempts before giving up (0 = never retry)
        backoff: Delay before the first reconnect attempt (seconds)
        multiplier: Factor applied to the delay after every failed attempt
    """
    max_attempts: int = DEFAULT_CONNECT_RETRY_ATTEMPTS
    backoff: float = DEFAULT_CONNECT_RETRY_BACKOFF
    multiplier: float = DEFAULT_CONNECT_RETRY_MULTIPLIER

    def __post_init__(self):
        if self.max_attempts < 0:
            raise ValueError("max_attempts must not be negative")
        if self.backoff < 0:
            raise ValueError("backoff must not be negative")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be at least 1.0")

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect attempt number `attempt` (1-based)"""
        return self.backoff * (self.multiplier ** (attempt - 1))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff": self.backoff,
            "multiplier": self.multiplier,
        }


@dataclass
class HttpClientConfig:
    """
    HTTP Client Configuration

    Attributes:
        remote_address: Server address
        remote_port: Server port
        transport: Transport kind (must be a reliable stream)
        request_size: Size of every request in bytes, from the provider if None
        local_address: Address the client socket binds to
        connect_retry: Reconnect policy
    """
    remote_address: str
    remote_port: int = HTTP_PORT
    transport: str = "tcp"
    request_size: Optional[int] = None
    local_address: str = ""
    connect_retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self):
        if self.request_size is not None and self.request_size < REQUEST_HEADER_LEN:
            raise ValueError(
                f"request_size must be at least {REQUEST_HEADER_LEN} bytes"
            )
        if not 0 < self.remote_port <= 65535:
            raise ValueError(f"Invalid remote port: {self.remote_port}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "remote_address": self.remote_address,
            "remote_port": self.remote_port,
            "transport": self.transport,
            "request_size": self.request_size,
            "local_address": self.local_address,
            "connect_retry": self.connect_retry.to_dict(),
        }


@dataclass
class HttpClientStats:
    """HTTP Client Statistics"""
    connect_attempts: int = 0
    connect_failures: int = 0
    connections_lost: int = 0
    main_requests_sent: int = 0
    embedded_requests_sent: int = 0
    main_objects_received: int = 0
    embedded_objects_received: int = 0
    bytes_received: int = 0
    surplus_bytes: int = 0
    unexpected_bytes: int = 0
    pages_completed: int = 0
    state_changes: int = 0
    last_state_change: Optional[float] = None

    @property
    def requests_sent(self) -> int:
        return self.main_requests_sent + self.embedded_requests_sent

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connect_attempts": self.connect_attempts,
            "connect_failures": self.connect_failures,
            "connections_lost": self.connections_lost,
            "requests_sent": self.requests_sent,
            "main_requests_sent": self.main_requests_sent,
            "embedded_requests_sent": self.embedded_requests_sent,
            "main_objects_received": self.main_objects_received,
            "embedded_objects_received": self.embedded_objects_received,
            "bytes_received": self.bytes_received,
            "surplus_bytes": self.surplus_bytes,
            "unexpected_bytes": self.unexpected_bytes,
            "pages_completed": self.pages_completed,
            "state_changes": self.state_changes,
            "last_state_change": self.last_state_change,
        }


class HttpClient:
    """
    HTTP client session

    Owns at most one socket and at most one pending timer at a time.
    Everything it waits for is a scheduled callback or a socket
    callback; after stop() none of them has any effect.

    Trace sources:
        tx_trace(request): a request was written to the socket
        rx_packet_trace(kind, size): part of an object arrived
        rx_object_trace(descriptor): an object arrived completely
        state_transition_trace(old_name, new_name): the state changed
    """

    def __init__(
        self,
        simulator: Simulator,
        network: SimulatedNetwork,
        variables: HttpVariables,
        config: HttpClientConfig,
        name: str = "",
    ):
        """
        Initialize HTTP client

        Args:
            simulator: Scheduler for every delay
            network: Network the client socket is created on
            variables: Provider of object sizes and delays, owned by this client
            config: Client configuration
            name: Identifier for logging and statistics
        """
        self.simulator = simulator
        self.network = network
        self.variables = variables
        self.config = config
        self.name = name or f"client-{id(self):x}"

        self._state = ClientState.NOT_STARTED
        self._socket: Optional[Socket] = None
        self._timer: Optional[EventId] = None
        self._embedded_objects_to_be_requested = 0

        # Object in transit
        self._expected: Optional[ObjectDescriptor] = None
        self._received_bytes = 0
        self._pending_tx = b""

        self._consecutive_failures = 0

        self.tx_trace = TraceSource("Tx")
        self.rx_packet_trace = TraceSource("RxPacket")
        self.rx_object_trace = TraceSource("RxObject")
        self.state_transition_trace = TraceSource("StateTransition")

        self.stats = HttpClientStats()

        self._receive_handlers: Dict[ClientState, Callable[[bytes], None]] = {
            ClientState.EXPECTING_MAIN_OBJECT: self._receive_main_object,
            ClientState.EXPECTING_EMBEDDED_OBJECT: self._receive_embedded_object,
        }

        logger.debug(
            f"[HTTP] Created client {self.name} for "
            f"{config.remote_address}:{config.remote_port} ({config.transport})"
        )

    @property
    def state(self) -> ClientState:
        """Current session state"""
        return self._state

    def get_state(self) -> ClientState:
        return self._state

    def get_state_string(self) -> str:
        return state_name(self._state)

    @property
    def socket(self) -> Optional[Socket]:
        """Active socket, if any"""
        return self._socket

    @property
    def embedded_objects_to_be_requested(self) -> int:
        """Embedded objects of the current page not yet received"""
        return self._embedded_objects_to_be_requested

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None and self._timer.is_pending

    @property
    def outstanding_requests(self) -> int:
        """Requests sent whose object has not fully arrived (0 or 1)"""
        return 1 if self._expected is not None else 0

    @property
    def request_size(self) -> int:
        if self.config.request_size is not None:
            return self.config.request_size
        return self.variables.get_request_size()

    def start(self) -> None:
        """
        Start the session

        Raises:
            UnsupportedTransportError: If the configured transport cannot be used
            InvalidStateError: If the session has already been stopped
        """
        if self._state == ClientState.STOPPED:
            raise InvalidStateError(f"Client {self.name} has been stopped")
        if self._state != ClientState.NOT_STARTED:
            logger.warning(f"[HTTP] Client {self.name} already started")
            return

        resolve_transport(self.config.transport)
        logger.info(f"[HTTP] Client {self.name} started")
        self._open_connection()

    def stop(self) -> None:
        """Stop the session, closing the socket and cancelling the timer"""
        if self._state == ClientState.STOPPED:
            return

        self._cancel_timer()
        self._close_socket()
        self._expected = None
        self._received_bytes = 0
        self._embedded_objects_to_be_requested = 0
        self._switch_to_state(ClientState.STOPPED)
        logger.info(f"[HTTP] Client {self.name} stopped")

    # CONNECTION

    def _open_connection(self) -> None:
        self._close_socket()

        sock = self.network.create_socket(self.config.transport, self.config.local_address)
        sock.set_receive_callback(self._received_data)
        sock.set_send_callback(self._send_space_available)
        sock.set_close_callbacks(self._peer_closed, self._peer_closed)
        self._socket = sock

        self.stats.connect_attempts += 1
        self._switch_to_state(ClientState.CONNECTING)
        sock.connect(
            self.config.remote_address,
            self.config.remote_port,
            self._connection_succeeded,
            self._connection_failed,
        )

    def _connection_succeeded(self, sock: Socket) -> None:
        if sock is not self._socket or self._state != ClientState.CONNECTING:
            return

        logger.debug(f"[HTTP] Client {self.name} connected")
        self._consecutive_failures = 0
        self._request_main_object()

    def _connection_failed(self, sock: Socket) -> None:
        if sock is not self._socket or self._state != ClientState.CONNECTING:
            return

        self._socket = None
        self.stats.connect_failures += 1
        logger.warning(
            f"[HTTP] Client {self.name} failed to connect to "
            f"{self.config.remote_address}:{self.config.remote_port}"
        )
        self._retry_or_give_up()

    def _peer_closed(self, sock: Socket) -> None:
        if sock is not self._socket or self._state == ClientState.STOPPED:
            return

        self._socket = None
        if self._state == ClientState.READING:
            logger.debug(f"[HTTP] Client {self.name} connection closed by server while reading")
            return

        self.stats.connections_lost += 1
        logger.warning(
            f"[HTTP] Client {self.name} lost connection in state {self._state.display_name}"
        )
        self._cancel_timer()
        self._expected = None
        self._received_bytes = 0
        self._pending_tx = b""
        self._embedded_objects_to_be_requested = 0
        self._switch_to_state(ClientState.CONNECTING)
        self._retry_or_give_up()

    def _retry_or_give_up(self) -> None:
        policy = self.config.connect_retry
        self._consecutive_failures += 1

        if self._consecutive_failures > policy.max_attempts:
            logger.warning(
                f"[HTTP] Client {self.name} giving up after "
                f"{self._consecutive_failures} failed connection(s)"
            )
            self.stop()
            return

        delay = policy.delay_for(self._consecutive_failures)
        logger.info(
            f"[HTTP] Client {self.name} reconnecting in {delay:.3f}s "
            f"(attempt {self._consecutive_failures}/{policy.max_attempts})"
        )
        self._timer = self.simulator.schedule(delay, self._retry_timer_expired)

    def _retry_timer_expired(self) -> None:
        self._timer = None
        if self._state == ClientState.STOPPED:
            return
        self._open_connection()

    def _close_socket(self) -> None:
        if self._socket is None:
            return
        sock = self._socket
        self._socket = None
        self._pending_tx = b""
        sock.set_receive_callback(None)
        sock.set_send_callback(None)
        sock.set_close_callbacks(None, None)
        sock.close()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # REQUESTS

    def _request_main_object(self) -> None:
        self._switch_to_state(ClientState.EXPECTING_MAIN_OBJECT)
        self.stats.main_requests_sent += 1
        self._send_request(ObjectKind.MAIN, self.variables.get_main_object_size())

    def _request_embedded_object(self) -> None:
        self._switch_to_state(ClientState.EXPECTING_EMBEDDED_OBJECT)
        self.stats.embedded_requests_sent += 1
        self._send_request(ObjectKind.EMBEDDED, self.variables.get_embedded_object_size())

    def _send_request(self, kind: ObjectKind, object_size: int) -> None:
        if self._expected is not None:
            raise InvalidStateError(
                f"Client {self.name} already has a request in flight"
            )

        request = Request(kind=kind, size=self.request_size)
        self._expected = ObjectDescriptor(kind=kind, size=object_size)
        self._received_bytes = 0
        self._pending_tx = encode_request(request)
        self._flush()

        logger.debug(
            f"[HTTP] Client {self.name} requested {kind.display_name} object "
            f"({request.size} bytes request, expecting {object_size} bytes)"
        )
        self.tx_trace(request)

        if object_size == 0:
            # No bytes will arrive for an empty object
            self._receive_handlers[self._state](b"")

    def _flush(self) -> None:
        if not self._pending_tx or self._socket is None:
            return
        sent = self._socket.send(self._pending_tx)
        self._pending_tx = self._pending_tx[sent:]

    def _send_space_available(self, sock: Socket, available: int) -> None:
        if sock is self._socket and self._pending_tx:
            self._flush()

    # RESPONSES

    def _received_data(self, sock: Socket, data: bytes) -> None:
        if sock is not self._socket or self._state == ClientState.STOPPED:
            return

        handler = self._receive_handlers.get(self._state)
        if handler is None:
            self.stats.unexpected_bytes += len(data)
            logger.warning(
                f"[HTTP] Client {self.name} ignoring {len(data)} bytes "
                f"received in state {self._state.display_name}"
            )
            return
        handler(data)

    def _receive_main_object(self, data: bytes) -> None:
        if self._accumulate(data):
            self.stats.main_objects_received += 1
            self._enter_parsing_time()

    def _receive_embedded_object(self, data: bytes) -> None:
        if self._accumulate(data):
            self.stats.embedded_objects_received += 1
            self._embedded_objects_to_be_requested -= 1

            if self._embedded_objects_to_be_requested > 0:
                self._request_embedded_object()
            else:
                self._enter_reading_time()

    def _accumulate(self, data: bytes) -> bool:
        """Add received bytes to the object in transit, True once it is complete"""
        expected = self._expected
        self._received_bytes += len(data)
        self.stats.bytes_received += len(data)
        if data:
            self.rx_packet_trace(expected.kind, len(data))

        if self._received_bytes < expected.size:
            return False

        surplus = self._received_bytes - expected.size
        if surplus:
            self.stats.surplus_bytes += surplus
            logger.warning(
                f"[HTTP] Client {self.name} received {surplus} bytes more than the "
                f"{expected.size} bytes expected for the {expected.kind.display_name} object"
            )

        self._expected = None
        self._received_bytes = 0
        logger.debug(
            f"[HTTP] Client {self.name} received {expected.kind.display_name} object "
            f"({expected.size} bytes)"
        )
        self.rx_object_trace(expected)
        return True

    # DELAYS

    def _enter_parsing_time(self) -> None:
        delay = self.variables.get_parsing_time()
        self._timer = self.simulator.schedule(delay, self._parse_main_object)
        self._switch_to_state(ClientState.PARSING_MAIN_OBJECT)

    def _parse_main_object(self) -> None:
        self._timer = None
        if self._state != ClientState.PARSING_MAIN_OBJECT:
            return

        count = self.variables.get_num_of_embedded_objects()
        self._embedded_objects_to_be_requested = count
        logger.debug(f"[HTTP] Client {self.name} found {count} embedded object(s)")

        if count > 0:
            self._request_embedded_object()
        else:
            self._enter_reading_time()

    def _enter_reading_time(self) -> None:
        self.stats.pages_completed += 1

        delay = self.variables.get_reading_time()
        self._timer = self.simulator.schedule(delay, self._reading_time_elapsed)
        self._switch_to_state(ClientState.READING)

    def _reading_time_elapsed(self) -> None:
        self._timer = None
        if self._state != ClientState.READING:
            return
        self._open_connection()

    def _switch_to_state(self, new_state: ClientState) -> None:
        """Set session state and fire the state transition trace"""
        if new_state == self._state:
            return

        old_state = self._state
        self._state = new_state
        self.stats.state_changes += 1
        self.stats.last_state_change = self.simulator.now

        logger.info(
            f"[HTTP] Client {self.name} state: {old_state.display_name} -> {new_state.display_name}"
        )
        self.state_transition_trace(old_state.display_name, new_state.display_name)

    def to_dict(self) -> Dict[str, Any]:
        """Convert session to dictionary"""
        return {
            "name": self.name,
            "state": self._state.display_name,
            "remote_address": self.config.remote_address,
            "remote_port": self.config.remote_port,
            "transport": self.config.transport,
            "embedded_objects_to_be_requested": self._embedded_objects_to_be_requested,
            "outstanding_requests": self.outstanding_requests,
            "connected": self._socket is not None,
            "statistics": self.stats.to_dict(),
        }
