"""Tests for the HTTP server session manager"""

from unittest.mock import Mock

import pytest

from webtraffic.client import HttpClient, HttpClientConfig
from webtraffic.errors import InvalidStateError, UnsupportedTransportError
from webtraffic.packet import Request, encode_request
from webtraffic.server import HttpServer, HttpServerConfig
from webtraffic.states import ClientState, ObjectKind, ServerState
from webtraffic.transport import SimulatedNetwork

SERVER_ADDRESS = "10.0.0.1"


@pytest.fixture
def make_server(simulator, network, fixed_variables):
    def factory(net=None, variables=None, accept_policy=None, **config):
        config.setdefault("local_address", SERVER_ADDRESS)
        kwargs = {}
        if accept_policy is not None:
            kwargs["accept_policy"] = accept_policy
        return HttpServer(
            simulator, net or network,
            variables or fixed_variables(),
            HttpServerConfig(**config),
            name="server",
            **kwargs
        )
    return factory


@pytest.fixture
def make_client(simulator, network, fixed_variables):
    def factory(address, net=None):
        return HttpClient(
            simulator, net or network, fixed_variables(),
            HttpClientConfig(remote_address=SERVER_ADDRESS, local_address=address),
            name=address,
        )
    return factory


def raw_connection(simulator, network, payload, address="10.0.9.9"):
    """Connect a bare socket to the server and write payload once connected"""
    sock = network.create_socket("tcp", address)
    sock.connect(SERVER_ADDRESS, 80, lambda s: s.send(payload), Mock())
    return sock


class TestHttpServerConfig:

    def test_defaults(self):
        config = HttpServerConfig()
        assert config.local_port == 80
        assert config.response_delay == 0.0
        assert config.mtu is None

    def test_negative_delay(self):
        with pytest.raises(ValueError):
            HttpServerConfig(response_delay=-0.1)

    def test_invalid_mtu(self):
        with pytest.raises(ValueError):
            HttpServerConfig(mtu=0)


class TestLifecycle:
    """Tests for start and stop"""

    def test_start_listens(self, make_server, recorder):
        server = make_server()
        server.state_transition_trace.connect(recorder.sink("state"))

        server.start()

        assert server.state == ServerState.LISTENING
        assert server.get_state_string() == "LISTENING"
        assert recorder.of("state") == [("NOT_STARTED", "LISTENING")]
        assert not server.is_active

    def test_mtu_drawn_at_start(self, make_server, fixed_variables):
        variables = fixed_variables(mtu_size=1460)
        server = make_server(variables=variables)
        assert server.mtu is None
        server.start()
        assert server.mtu == 1460
        assert variables.calls == ["mtu_size"]

    def test_configured_mtu(self, make_server, fixed_variables):
        variables = fixed_variables()
        server = make_server(variables=variables, mtu=1000)
        server.start()
        assert server.mtu == 1000
        assert "mtu_size" not in variables.calls

    def test_mtu_larger_than_send_buffer(self, simulator, make_server):
        """Test an MTU that can never fit the send buffer is refused at start"""
        network = SimulatedNetwork(simulator, send_buffer_size=1000)
        server = make_server(net=network, mtu=1460)

        with pytest.raises(ValueError):
            server.start()
        assert network.open_socket_count == 0
        assert server.state == ServerState.NOT_STARTED

    def test_drawn_mtu_larger_than_send_buffer(self, simulator, make_server, fixed_variables):
        network = SimulatedNetwork(simulator, send_buffer_size=1000)
        server = make_server(net=network, variables=fixed_variables(mtu_size=1460))
        with pytest.raises(ValueError):
            server.start()

    def test_unsupported_transport(self, network, make_server):
        server = make_server(transport="udp")
        with pytest.raises(UnsupportedTransportError):
            server.start()
        assert network.open_socket_count == 0
        assert server.state == ServerState.NOT_STARTED

    def test_stop(self, network, make_server, recorder):
        server = make_server()
        server.state_transition_trace.connect(recorder.sink("state"))
        server.start()

        server.stop()
        server.stop()

        assert server.state == ServerState.STOPPED
        assert recorder.of("state") == [("NOT_STARTED", "LISTENING"), ("LISTENING", "STOPPED")]
        assert network.open_socket_count == 0

    def test_start_after_stop(self, make_server):
        server = make_server()
        server.start()
        server.stop()
        with pytest.raises(InvalidStateError):
            server.start()


class TestConnections:
    """Tests for accepted socket bookkeeping"""

    def test_sockets_tracked_per_client(self, simulator, make_server, make_client):
        server = make_server()
        server.start()
        clients = [make_client(f"10.0.1.{i}") for i in range(1, 4)]
        for client in clients:
            client.start()

        simulator.run(until=0.05)

        assert server.accepted_socket_count == 3
        assert server.is_active
        assert {cid[0] for cid in server.connection_ids} == {"10.0.1.1", "10.0.1.2", "10.0.1.3"}

        for client in clients:
            client.stop()
        simulator.run(until=1.0)

        assert server.accepted_socket_count == 0
        assert not server.is_active
        assert server.stats.sockets_accepted == 3
        assert server.stats.sockets_closed_by_peer == 3

    def test_stop_closes_accepted_sockets(self, simulator, network, make_server, make_client):
        server = make_server()
        server.start()
        clients = [make_client(f"10.0.1.{i}") for i in range(1, 3)]
        for client in clients:
            client.start()
        simulator.run(until=0.05)

        server.stop()
        simulator.run(until=1.0)

        assert server.accepted_socket_count == 0
        assert server.stats.sockets_closed_on_stop == 2
        assert network.open_socket_count == 0
        assert all(client.state == ClientState.STOPPED for client in clients)

    def test_accept_policy_rejects(self, simulator, make_server, make_client):
        policy = Mock(return_value=False)
        server = make_server(accept_policy=policy)
        server.start()
        client = make_client("10.0.1.1")

        client.start()
        simulator.run(until=1.0)

        policy.assert_called_once()
        assert policy.call_args[0][0][0] == "10.0.1.1"
        assert server.stats.connections_rejected == 1
        assert server.accepted_socket_count == 0
        assert client.state == ClientState.STOPPED

    def test_get_accepted_socket(self, simulator, make_server, make_client):
        server = make_server()
        server.start()
        make_client("10.0.1.1").start()
        simulator.run(until=0.05)

        connection_id = server.connection_ids[0]
        sub = server.get_accepted_socket(connection_id)
        assert sub.pages_served == 1
        assert sub.objects_served == 1
        assert sub.last_kind == ObjectKind.MAIN
        assert not sub.busy
        assert server.get_accepted_socket(("10.9.9.9", 1)) is None


class TestResponses:
    """Tests for serving objects"""

    def test_main_object_fragmented_by_mtu(self, simulator, make_server, make_client, recorder):
        server = make_server(mtu=536)
        server.tx_trace.connect(recorder.sink("tx"))
        server.start()

        make_client("10.0.1.1").start()
        simulator.run(until=0.05)

        assert recorder.of("tx") == [(ObjectKind.MAIN, 536)] * 5 + [(ObjectKind.MAIN, 320)]
        assert server.stats.packets_sent == 6
        assert server.stats.bytes_sent == 3000

    def test_rx_trace_reports_request_bytes(self, simulator, make_server, make_client, recorder):
        server = make_server()
        server.rx_trace.connect(recorder.sink("rx"))
        server.start()

        make_client("10.0.1.1").start()
        simulator.run(until=0.05)

        ((size, peer),) = recorder.of("rx")
        assert size == 350
        assert peer[0] == "10.0.1.1"

    def test_pipelined_requests_served_in_order(self, simulator, network, make_server, recorder):
        server = make_server(mtu=536)
        server.tx_trace.connect(recorder.sink("tx"))
        server.start()

        payload = (
            encode_request(Request(ObjectKind.MAIN, 350))
            + encode_request(Request(ObjectKind.EMBEDDED, 350))
        )
        raw_connection(simulator, network, payload)
        simulator.run(until=1.0)

        kinds = [kind for kind, _ in recorder.of("tx")]
        assert kinds == [ObjectKind.MAIN] * 6 + [ObjectKind.EMBEDDED] * 2
        assert server.stats.main_objects_served == 1
        assert server.stats.embedded_objects_served == 1

    def test_split_request_is_reassembled(self, simulator, network, make_server):
        server = make_server()
        server.start()
        data = encode_request(Request(ObjectKind.MAIN, 350))

        sock = network.create_socket("tcp", "10.0.9.9")

        def write_in_parts(s):
            s.send(data[:2])
            s.send(data[2:200])
            s.send(data[200:])

        sock.connect(SERVER_ADDRESS, 80, write_in_parts, Mock())
        simulator.run(until=1.0)

        assert server.stats.main_requests == 1
        assert server.stats.main_objects_served == 1

    def test_protocol_violation_closes_only_that_socket(self, simulator, network, make_server, make_client):
        server = make_server()
        server.start()
        client = make_client("10.0.1.1")
        client.start()
        bad = raw_connection(simulator, network, b"GET / HTTP/1.1\r\n\r\n")

        simulator.run(until=0.2)

        assert server.stats.protocol_violations == 1
        assert not bad.is_open
        assert client.state == ClientState.READING
        assert server.accepted_socket_count == 1

    def test_response_delay(self, simulator, make_server, make_client):
        server = make_server(response_delay=0.5)
        server.start()
        client = make_client("10.0.1.1")
        client.start()

        simulator.run(until=0.4)
        assert client.state == ClientState.EXPECTING_MAIN_OBJECT
        assert server.pending_timer_count == 1

        simulator.run(until=0.6)
        assert client.state == ClientState.PARSING_MAIN_OBJECT
        assert server.pending_timer_count == 0

    def test_stop_cancels_response_delay(self, simulator, make_server, make_client, recorder):
        server = make_server(response_delay=0.5)
        server.tx_trace.connect(recorder.sink("tx"))
        server.start()
        make_client("10.0.1.1").start()
        simulator.run(until=0.4)

        server.stop()
        simulator.run(until=2.0)

        assert server.pending_timer_count == 0
        assert recorder.of("tx") == []

    def test_back_pressure(self, simulator, make_server, make_client):
        """Test a small send buffer delays packets without losing any"""
        network = SimulatedNetwork(simulator, delay=0.001, send_buffer_size=1000)
        server = make_server(net=network, mtu=536)
        server.start()
        client = make_client("10.0.1.1", net=network)
        client.start()

        simulator.run(until=0.2)

        assert client.state == ClientState.READING
        assert client.stats.surplus_bytes == 0
        assert server.stats.bytes_sent == 3000 + 3 * 1000

    def test_per_peer_variables(self, simulator, make_server, make_client, fixed_variables):
        server = make_server()
        server.assign_peer_variables("10.0.1.2", fixed_variables(main_object_size=5000))
        server.start()
        make_client("10.0.1.1").start()
        make_client("10.0.1.2").start()

        simulator.run(until=0.05)

        served = {
            cid[0]: server.get_accepted_socket(cid).objects_served
            for cid in server.connection_ids
        }
        assert served == {"10.0.1.1": 1, "10.0.1.2": 1}
        assert server.stats.bytes_sent == 3000 + 5000

    def test_to_dict(self, simulator, make_server, make_client):
        server = make_server()
        server.start()
        make_client("10.0.1.1").start()
        simulator.run(until=0.05)

        data = server.to_dict()
        assert data["state"] == "LISTENING"
        assert data["is_active"] is True
        assert data["accepted_sockets"][0]["peer"].startswith("10.0.1.1:")
        assert data["statistics"]["main_objects_served"] == 1
