"""
Web Traffic - synthetic HTTP browsing sessions

Generates web-browsing request/response traffic between simulated
clients and servers over a reliable byte-stream transport. Runs are
fully reproducible for a given seed.

Features:
- Client session state machine: main object, parsing delay, embedded
  objects, reading delay, next page
- Server session manager serving many connections independently
- MTU fragmentation of responses with send-buffer back-pressure
- 3GPP/NGMN web browsing distributions with per-variable streams
- Trace sources for sent and received data and state transitions
- Throughput statistics and YAML experiment files

Usage:
    from webtraffic import (
        Simulator, SimulatedNetwork, HttpVariables, HttpVariablesConfig,
        HttpServer, HttpServerConfig, HttpClient, HttpClientConfig,
    )

    sim = Simulator()
    net = SimulatedNetwork(sim)
    server = HttpServer(sim, net, HttpVariables(HttpVariablesConfig(seed=7)),
                        HttpServerConfig(local_address="10.0.0.1"))
    client = HttpClient(sim, net, HttpVariables(HttpVariablesConfig(seed=7)),
                        HttpClientConfig(remote_address="10.0.0.1"))
    server.start()
    client.start()
    sim.run(until=600)
"""

from .states import ClientState, ServerState, ObjectKind, state_name
from .errors import (
    WebTrafficError,
    UnsupportedTransportError,
    ProtocolViolationError,
    InvalidStateError,
    SocketError,
)
from .trace import TraceSource
from .packet import (
    Request,
    ObjectDescriptor,
    RequestParser,
    encode_request,
    decode_request,
    fragment_sizes,
)
from .variables import HttpVariables, HttpVariablesConfig
from .scheduler import Simulator, EventId
from .transport import (
    Socket,
    SimulatedNetwork,
    TcpSocket,
    TRANSPORT_KINDS,
    resolve_transport,
    register_transport,
)
from .client import HttpClient, HttpClientConfig, HttpClientStats, RetryPolicy
from .server import HttpServer, HttpServerConfig, HttpServerStats, AcceptedSocket
from .stats import ThroughputCollector, IdentifierType, OutputType
from .config import ExperimentConfig
from .experiment import Experiment
from .constants import (
    HTTP_PORT,
    DEFAULT_REQUEST_SIZE,
    LOW_MTU_SIZE,
    HIGH_MTU_SIZE,
)

__version__ = "0.1.0"

__all__ = [
    # States
    "ClientState",
    "ServerState",
    "ObjectKind",
    "state_name",
    # Errors
    "WebTrafficError",
    "UnsupportedTransportError",
    "ProtocolViolationError",
    "InvalidStateError",
    "SocketError",
    # Trace
    "TraceSource",
    # Packet
    "Request",
    "ObjectDescriptor",
    "RequestParser",
    "encode_request",
    "decode_request",
    "fragment_sizes",
    # Provider
    "HttpVariables",
    "HttpVariablesConfig",
    # Scheduler
    "Simulator",
    "EventId",
    # Transport
    "Socket",
    "SimulatedNetwork",
    "TcpSocket",
    "TRANSPORT_KINDS",
    "resolve_transport",
    "register_transport",
    # Sessions
    "HttpClient",
    "HttpClientConfig",
    "HttpClientStats",
    "RetryPolicy",
    "HttpServer",
    "HttpServerConfig",
    "HttpServerStats",
    "AcceptedSocket",
    # Statistics and experiments
    "ThroughputCollector",
    "IdentifierType",
    "OutputType",
    "ExperimentConfig",
    "Experiment",
    # Constants
    "HTTP_PORT",
    "DEFAULT_REQUEST_SIZE",
    "LOW_MTU_SIZE",
    "HIGH_MTU_SIZE",
]
