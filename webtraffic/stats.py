"""
Application throughput statistics

Observes client receive traces and reports received throughput in
kilobits per second, either as one average per identifier (scalar) or
as a time series of fixed intervals (scatter). Results stay in memory.
"""

import functools
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Dict, List, Tuple

from .client import HttpClient
from .scheduler import Simulator
from .states import ObjectKind

logger = logging.getLogger("HTTP.Stats")


class IdentifierType(Enum):
    """How samples are grouped"""
    GLOBAL = "global"       # Everything together
    SENDER = "sender"       # Per server address the bytes came from
    RECEIVER = "receiver"   # Per receiving client


class OutputType(Enum):
    """Shape of the results"""
    SCALAR = "scalar"       # Average over the whole observation
    SCATTER = "scatter"     # One value per interval


class ThroughputCollector:
    """Received throughput per identifier"""

    def __init__(
        self,
        simulator: Simulator,
        identifier_type: IdentifierType = IdentifierType.GLOBAL,
        output_type: OutputType = OutputType.SCALAR,
        interval: float = 1.0,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")

        self.simulator = simulator
        self.identifier_type = identifier_type
        self.output_type = output_type
        self.interval = interval

        self._start_time = simulator.now
        self._total_bytes: Dict[str, int] = defaultdict(int)
        self._interval_bytes: Dict[str, Dict[int, int]] = defaultdict(lambda: defaultdict(int))
        self._attached: List[Tuple[HttpClient, Any]] = []

    def identifier_for(self, client: HttpClient) -> str:
        if self.identifier_type == IdentifierType.GLOBAL:
            return "global"
        if self.identifier_type == IdentifierType.SENDER:
            return f"{client.config.remote_address}:{client.config.remote_port}"
        return client.name

    def attach(self, client: HttpClient) -> str:
        """Start observing the bytes a client receives, returns its identifier"""
        identifier = self.identifier_for(client)
        callback = functools.partial(self._rx, identifier)
        client.rx_packet_trace.connect(callback)
        self._attached.append((client, callback))
        # Identifiers with no traffic still report zero
        self._total_bytes[identifier] += 0
        logger.debug(f"[HTTP] Collecting throughput of {client.name} as '{identifier}'")
        return identifier

    def detach_all(self) -> None:
        for client, callback in self._attached:
            client.rx_packet_trace.disconnect(callback)
        self._attached.clear()

    def _rx(self, identifier: str, kind: ObjectKind, size: int) -> None:
        self._total_bytes[identifier] += size
        index = int((self.simulator.now - self._start_time) // self.interval)
        self._interval_bytes[identifier][index] += size

    @property
    def elapsed(self) -> float:
        return self.simulator.now - self._start_time

    def total_bytes(self, identifier: str = "global") -> int:
        return self._total_bytes.get(identifier, 0)

    def average_kbps(self, identifier: str) -> float:
        """Average received throughput since collection started"""
        if self.elapsed <= 0:
            return 0.0
        return self._total_bytes.get(identifier, 0) * 8 / 1000.0 / self.elapsed

    def series_kbps(self, identifier: str) -> List[Tuple[float, float]]:
        """(end of interval, kbit/s) for every interval completed so far"""
        completed = int(self.elapsed // self.interval)
        buckets = self._interval_bytes.get(identifier, {})
        return [
            (
                self._start_time + (i + 1) * self.interval,
                buckets.get(i, 0) * 8 / 1000.0 / self.interval,
            )
            for i in range(completed)
        ]

    def results(self) -> Dict[str, Any]:
        if self.output_type == OutputType.SCALAR:
            return {ident: round(self.average_kbps(ident), 3) for ident in sorted(self._total_bytes)}
        return {ident: self.series_kbps(ident) for ident in sorted(self._total_bytes)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier_type": self.identifier_type.value,
            "output_type": self.output_type.value,
            "interval": self.interval,
            "elapsed": self.elapsed,
            "total_bytes": dict(self._total_bytes),
            "throughput_kbps": self.results(),
        }
