"""
Experiment - scenario assembly and execution

Builds the scheduler, the network, every server and client described
by an ExperimentConfig, runs the scenario for its duration and
summarizes what happened.

Every client gets a dedicated provider (same experiment seed, its own
stream), and the server it talks to serves that client's address with
an identically seeded provider, so both sides draw the same object
sizes.
"""

import logging
from typing import Any, Dict, List

from .client import HttpClient
from .config import ExperimentConfig
from .scheduler import Simulator
from .server import HttpServer
from .stats import IdentifierType, OutputType, ThroughputCollector
from .transport import SimulatedNetwork, resolve_transport
from .variables import HttpVariables

logger = logging.getLogger("HTTP.Experiment")


class Experiment:
    """One run of a configured scenario"""

    def __init__(self, config: ExperimentConfig):
        self.config = config
        self.simulator = Simulator()
        self.network = SimulatedNetwork(
            self.simulator,
            delay=config.network.link_delay,
            data_rate=config.network.data_rate,
            send_buffer_size=config.network.send_buffer_size,
        )
        self.servers: Dict[str, HttpServer] = {}
        self.clients: Dict[str, HttpClient] = {}
        self.collector = ThroughputCollector(
            self.simulator,
            identifier_type=IdentifierType.RECEIVER,
            output_type=OutputType.SCALAR,
        )
        self._built = False
        self._finished = False

    def _client_addresses(self) -> List[str]:
        addresses = []
        for index, spec in enumerate(self.config.clients):
            addresses.append(spec.address or f"10.0.1.{index + 1}")
        if len(set(addresses)) != len(addresses):
            raise ValueError("client addresses must be unique")
        return addresses

    def build(self) -> None:
        """
        Create and start the servers, schedule the clients

        Raises:
            UnsupportedTransportError: If any configured transport cannot be used
        """
        if self._built:
            return

        # Transport kinds are checked before any socket exists
        for server_spec in self.config.servers:
            resolve_transport(server_spec.transport)
        for client_spec in self.config.clients:
            resolve_transport(client_spec.transport)
        addresses = self._client_addresses()

        cfg = self.config
        for index, server_spec in enumerate(cfg.servers):
            variables = HttpVariables(cfg.variables.to_variables_config(cfg.seed, 10000 + index))
            server = HttpServer(
                self.simulator,
                self.network,
                variables,
                server_spec.to_server_config(),
                name=server_spec.name,
            )
            server.start()
            self.servers[server_spec.name] = server

        for index, (client_spec, address) in enumerate(zip(cfg.clients, addresses)):
            stream = client_spec.stream if client_spec.stream is not None else index
            server_spec = cfg.get_server(client_spec.server)
            server = self.servers[server_spec.name]

            client_config = client_spec.to_client_config(server_spec)
            client_config.local_address = address
            client = HttpClient(
                self.simulator,
                self.network,
                HttpVariables(cfg.variables.to_variables_config(cfg.seed, stream)),
                client_config,
                name=client_spec.name,
            )
            server.assign_peer_variables(
                address, HttpVariables(cfg.variables.to_variables_config(cfg.seed, stream))
            )
            self.collector.attach(client)
            self.clients[client_spec.name] = client

            self.simulator.schedule(client_spec.start_time, client.start)
            if client_spec.stop_time is not None:
                self.simulator.schedule(client_spec.stop_time, client.stop)

        self._built = True
        logger.info(
            f"[HTTP] Experiment built: {len(self.servers)} server(s), "
            f"{len(self.clients)} client(s), seed {cfg.seed}"
        )

    def run(self) -> Dict[str, Any]:
        """Run until the configured duration, stop everything, return the summary"""
        self.build()
        if not self._finished:
            self.simulator.run(until=self.config.duration)
            self.shutdown()
        return self.summary()

    def shutdown(self) -> None:
        """Stop every client and server"""
        for client in self.clients.values():
            client.stop()
        for server in self.servers.values():
            server.stop()
        # Let the closes reach the peers
        self.simulator.run(until=self.simulator.now + self.network.delay * 2)
        self._finished = True

    def summary(self) -> Dict[str, Any]:
        return {
            "duration": self.config.duration,
            "seed": self.config.seed,
            "time": self.simulator.now,
            "events_executed": self.simulator.events_executed,
            "network": {
                "bytes_delivered": self.network.bytes_delivered,
                "packets_delivered": self.network.packets_delivered,
                "bytes_discarded": self.network.bytes_discarded,
                "open_sockets": self.network.open_socket_count,
            },
            "servers": [server.to_dict() for server in self.servers.values()],
            "clients": [client.to_dict() for client in self.clients.values()],
            "throughput": self.collector.to_dict(),
        }
