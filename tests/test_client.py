"""Tests for the HTTP client session state machine"""

import pytest

from webtraffic.client import HttpClient, HttpClientConfig, RetryPolicy
from webtraffic.errors import InvalidStateError, UnsupportedTransportError
from webtraffic.server import HttpServer, HttpServerConfig
from webtraffic.states import ClientState, ObjectKind

SERVER_ADDRESS = "10.0.0.1"

# With FixedVariables and a 1 ms link: the main object is complete at
# 4 ms, parsing ends at 104 ms, the third embedded object is complete
# at 110 ms and reading lasts until 5.110 s.
MAIN_DONE = 0.0045
PARSING_DONE = 0.1045
PAGE_DONE = 0.111


@pytest.fixture
def server(simulator, network, fixed_variables):
    server = HttpServer(
        simulator, network, fixed_variables(),
        HttpServerConfig(local_address=SERVER_ADDRESS),
        name="server",
    )
    server.start()
    return server


@pytest.fixture
def make_client(simulator, network, fixed_variables):
    def factory(address="10.0.1.1", variables=None, **config):
        config.setdefault("remote_address", SERVER_ADDRESS)
        return HttpClient(
            simulator, network,
            variables or fixed_variables(),
            HttpClientConfig(local_address=address, **config),
            name=f"client@{address}",
        )
    return factory


class TestHttpClientConfig:
    """Tests for client configuration"""

    def test_defaults(self):
        config = HttpClientConfig(remote_address=SERVER_ADDRESS)
        assert config.remote_port == 80
        assert config.transport == "tcp"
        assert config.request_size is None
        assert config.connect_retry.max_attempts == 0

    def test_request_size_too_small(self):
        with pytest.raises(ValueError):
            HttpClientConfig(remote_address=SERVER_ADDRESS, request_size=2)

    def test_invalid_port(self):
        with pytest.raises(ValueError):
            HttpClientConfig(remote_address=SERVER_ADDRESS, remote_port=0)

    def test_retry_delays(self):
        policy = RetryPolicy(max_attempts=3, backoff=0.5, multiplier=2.0)
        assert [policy.delay_for(i) for i in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_retry_validation(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=-1)
        with pytest.raises(ValueError):
            RetryPolicy(multiplier=0.5)


class TestPageCycle:
    """Tests for a complete browsing page"""

    def test_initial_state(self, make_client):
        client = make_client()
        assert client.state == ClientState.NOT_STARTED
        assert client.get_state_string() == "NOT_STARTED"
        assert client.socket is None

    def test_page_with_embedded_objects(self, simulator, server, make_client, recorder):
        """Test one main and three embedded objects, requested one at a time"""
        client = make_client()
        client.tx_trace.connect(recorder.sink("tx"))
        client.rx_object_trace.connect(recorder.sink("rx"))

        client.start()
        simulator.run(until=PAGE_DONE)

        assert client.state == ClientState.READING
        assert recorder.labels() == ["tx", "rx"] * 4
        requests = [event[0] for event in recorder.of("tx")]
        assert [r.kind for r in requests] == [ObjectKind.MAIN] + [ObjectKind.EMBEDDED] * 3
        assert all(r.size == 350 for r in requests)
        objects = [event[0] for event in recorder.of("rx")]
        assert [o.size for o in objects] == [3000, 1000, 1000, 1000]
        assert client.stats.pages_completed == 1

    def test_state_sequence(self, simulator, server, make_client, recorder):
        client = make_client()
        client.state_transition_trace.connect(recorder.sink("state"))

        client.start()
        simulator.run(until=PAGE_DONE)

        assert recorder.of("state") == [
            ("NOT_STARTED", "CONNECTING"),
            ("CONNECTING", "EXPECTING_MAIN_OBJECT"),
            ("EXPECTING_MAIN_OBJECT", "PARSING_MAIN_OBJECT"),
            ("PARSING_MAIN_OBJECT", "EXPECTING_EMBEDDED_OBJECT"),
            ("EXPECTING_EMBEDDED_OBJECT", "READING"),
        ]

    def test_no_embedded_objects(self, simulator, server, make_client, fixed_variables, recorder):
        """Test a page without embedded objects goes straight to reading"""
        client = make_client(variables=fixed_variables(num_of_embedded_objects=0))
        client.state_transition_trace.connect(recorder.sink("state"))
        client.tx_trace.connect(recorder.sink("tx"))

        client.start()
        simulator.run(until=PARSING_DONE)

        assert client.state == ClientState.READING
        assert ("PARSING_MAIN_OBJECT", "READING") in recorder.of("state")
        assert len(recorder.of("tx")) == 1
        assert client.embedded_objects_to_be_requested == 0

    def test_embedded_counter(self, simulator, server, make_client):
        """Test the counter goes 3, 2, 1, 0 as embedded objects arrive"""
        client = make_client()
        seen = []
        client.rx_object_trace.connect(
            lambda descriptor: seen.append(client.embedded_objects_to_be_requested)
        )

        client.start()
        simulator.run(until=MAIN_DONE)
        assert client.state == ClientState.PARSING_MAIN_OBJECT
        assert client.embedded_objects_to_be_requested == 0

        simulator.run(until=PARSING_DONE)
        assert client.state == ClientState.EXPECTING_EMBEDDED_OBJECT
        assert client.embedded_objects_to_be_requested == 3

        simulator.run(until=PAGE_DONE)
        # Observed before each decrement
        assert seen == [0, 3, 2, 1]
        assert client.embedded_objects_to_be_requested == 0

    def test_one_request_outstanding(self, simulator, server, make_client):
        client = make_client()
        outstanding = []
        client.tx_trace.connect(lambda request: outstanding.append(client.outstanding_requests))
        client.rx_object_trace.connect(lambda descriptor: outstanding.append(client.outstanding_requests))

        client.start()
        simulator.run(until=PAGE_DONE)

        assert outstanding == [1, 0] * 4

    def test_packets_follow_mtu(self, simulator, server, make_client, recorder):
        client = make_client()
        client.rx_packet_trace.connect(recorder.sink("packet"))

        client.start()
        simulator.run(until=MAIN_DONE)

        assert recorder.of("packet") == [(ObjectKind.MAIN, 536)] * 5 + [(ObjectKind.MAIN, 320)]

    def test_next_page_on_new_connection(self, simulator, server, make_client):
        """Test reading ends with a fresh connection and another main object"""
        client = make_client()
        client.start()
        simulator.run(until=PAGE_DONE)
        first_socket = client.socket

        simulator.run(until=PAGE_DONE + 5.01)

        assert client.stats.connect_attempts == 2
        assert client.stats.main_requests_sent == 2
        assert client.socket is not first_socket
        assert server.stats.sockets_closed_by_peer == 1

    def test_configured_request_size(self, simulator, server, make_client, recorder):
        client = make_client(request_size=1000)
        client.tx_trace.connect(recorder.sink("tx"))
        client.start()
        simulator.run(until=MAIN_DONE)
        assert recorder.of("tx")[0][0].size == 1000

    def test_surplus_bytes_are_reported(self, simulator, network, make_client, fixed_variables):
        """Test a server sending more than expected does not go unnoticed"""
        server = HttpServer(
            simulator, network, fixed_variables(main_object_size=3500),
            HttpServerConfig(local_address=SERVER_ADDRESS),
        )
        server.start()
        client = make_client()

        client.start()
        simulator.run(until=MAIN_DONE)

        assert client.state == ClientState.PARSING_MAIN_OBJECT
        assert client.stats.surplus_bytes == 6 * 536 - 3000
        assert client.stats.unexpected_bytes == 3500 - 6 * 536

    def test_to_dict(self, simulator, server, make_client):
        client = make_client()
        client.start()
        simulator.run(until=PAGE_DONE)
        data = client.to_dict()
        assert data["state"] == "READING"
        assert data["statistics"]["requests_sent"] == 4
        assert data["connected"] is True


class TestStop:
    """Tests for stopping the session"""

    @pytest.mark.parametrize("stop_at,state", [
        (0.0005, ClientState.CONNECTING),
        (0.0015, ClientState.CONNECTING),
        (0.0035, ClientState.EXPECTING_MAIN_OBJECT),
        (0.05, ClientState.PARSING_MAIN_OBJECT),
        (0.105, ClientState.EXPECTING_EMBEDDED_OBJECT),
        (1.0, ClientState.READING),
    ])
    def test_stop_from_every_state(self, simulator, network, server, make_client, stop_at, state):
        """Test stop leaves no socket, no timer and no server-side connection"""
        client = make_client()
        client.start()
        simulator.run(until=stop_at)
        assert client.state == state

        client.stop()
        simulator.run(until=stop_at + 10.0)

        assert client.state == ClientState.STOPPED
        assert client.socket is None
        assert not client.has_pending_timer
        assert client.outstanding_requests == 0
        assert server.accepted_socket_count == 0
        # Only the listener is left
        assert network.open_socket_count == 1

    def test_stop_before_start(self, make_client):
        client = make_client()
        client.stop()
        assert client.state == ClientState.STOPPED

    def test_stop_is_idempotent(self, simulator, server, make_client, recorder):
        client = make_client()
        client.state_transition_trace.connect(recorder.sink("state"))
        client.start()
        simulator.run(until=0.05)

        client.stop()
        client.stop()

        assert recorder.of("state").count(("PARSING_MAIN_OBJECT", "STOPPED")) == 1
        assert recorder.of("state")[-1] == ("PARSING_MAIN_OBJECT", "STOPPED")

    def test_start_after_stop(self, make_client):
        client = make_client()
        client.stop()
        with pytest.raises(InvalidStateError):
            client.start()

    def test_second_start_is_ignored(self, simulator, server, make_client):
        client = make_client()
        client.start()
        client.start()
        simulator.run(until=PAGE_DONE)
        assert client.stats.connect_attempts == 1


class TestTransportSelection:

    @pytest.mark.parametrize("transport", ["udp", "sctp"])
    def test_unsupported_transport(self, network, make_client, transport):
        """Test the error comes before any socket is opened"""
        client = make_client(transport=transport)
        with pytest.raises(UnsupportedTransportError):
            client.start()
        assert network.open_socket_count == 0
        assert client.state == ClientState.NOT_STARTED


class TestConnectionFailures:
    """Tests for refused and lost connections"""

    def test_refused_connection_stops(self, simulator, network, make_client, recorder):
        client = make_client()
        client.state_transition_trace.connect(recorder.sink("state"))

        client.start()
        simulator.run(until=1.0)

        assert client.state == ClientState.STOPPED
        assert client.stats.connect_failures == 1
        assert recorder.of("state")[-1] == ("CONNECTING", "STOPPED")
        assert network.open_socket_count == 0

    def test_retry_then_give_up(self, simulator, make_client):
        client = make_client(connect_retry=RetryPolicy(max_attempts=2, backoff=1.0, multiplier=2.0))

        client.start()
        simulator.run(until=2.0)
        assert client.state == ClientState.CONNECTING
        assert client.has_pending_timer

        simulator.run(until=10.0)
        assert client.state == ClientState.STOPPED
        assert client.stats.connect_attempts == 3
        assert client.stats.connect_failures == 3

    def test_retry_succeeds_once_server_listens(self, simulator, network, make_client, fixed_variables):
        server = HttpServer(
            simulator, network, fixed_variables(),
            HttpServerConfig(local_address=SERVER_ADDRESS),
        )
        simulator.schedule(0.5, server.start)
        client = make_client(connect_retry=RetryPolicy(max_attempts=1, backoff=1.0))

        client.start()
        simulator.run(until=1.2)

        assert client.stats.connect_failures == 1
        assert client.stats.pages_completed == 1
        assert client.state == ClientState.READING

    def test_connection_lost_mid_page(self, simulator, server, make_client):
        client = make_client()
        client.start()
        simulator.run(until=0.105)
        assert client.state == ClientState.EXPECTING_EMBEDDED_OBJECT

        server.stop()
        simulator.run(until=1.0)

        assert client.stats.connections_lost == 1
        assert client.state == ClientState.STOPPED
        assert client.socket is None

    def test_close_while_reading_is_ignored(self, simulator, server, make_client):
        """Test the server closing during reading only matters at the next page"""
        client = make_client()
        client.start()
        simulator.run(until=1.0)

        server.stop()
        simulator.run(until=2.0)
        assert client.state == ClientState.READING
        assert client.stats.connections_lost == 0

        simulator.run(until=10.0)
        assert client.state == ClientState.STOPPED
        assert client.stats.connect_failures == 1


class TestEmptyObjects:
    """Tests for objects of zero bytes"""

    @pytest.fixture
    def start_pair(self, simulator, network, fixed_variables, make_client):
        def factory(**sizes):
            server = HttpServer(
                simulator, network, fixed_variables(**sizes),
                HttpServerConfig(local_address=SERVER_ADDRESS),
            )
            server.start()
            client = make_client(variables=fixed_variables(**sizes))
            return server, client
        return factory

    def test_empty_main_object(self, simulator, start_pair, recorder):
        """Test an empty main object completes without any byte arriving"""
        server, client = start_pair(main_object_size=0, num_of_embedded_objects=0)
        client.rx_object_trace.connect(recorder.sink("rx"))
        client.rx_packet_trace.connect(recorder.sink("packet"))

        client.start()
        simulator.run(until=1.0)

        assert client.state == ClientState.READING
        assert client.stats.main_objects_received == 1
        assert [event[0].size for event in recorder.of("rx")] == [0]
        assert recorder.of("packet") == []
        assert server.stats.main_objects_served == 1
        assert server.stats.packets_sent == 0

    def test_empty_embedded_objects(self, simulator, start_pair, recorder):
        server, client = start_pair(embedded_object_size=0)
        client.tx_trace.connect(recorder.sink("tx"))
        client.rx_object_trace.connect(recorder.sink("rx"))

        client.start()
        simulator.run(until=1.0)

        assert client.state == ClientState.READING
        assert recorder.labels() == ["tx", "rx"] * 4
        assert client.stats.embedded_objects_received == 3
        assert client.embedded_objects_to_be_requested == 0
        assert client.stats.unexpected_bytes == 0
        assert server.stats.embedded_objects_served == 3
