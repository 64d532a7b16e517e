"""
Pytest configuration file

Shared fixtures: a scheduler, a simulated network, a provider with
fixed values and a recorder for trace notifications.
"""
import sys
import os

import pytest

# Add the project root to the path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from webtraffic.scheduler import Simulator
from webtraffic.transport import SimulatedNetwork


class FixedVariables:
    """Provider returning constant sizes and delays"""

    def __init__(
        self,
        main_object_size=3000,
        embedded_object_size=1000,
        num_of_embedded_objects=3,
        parsing_time=0.1,
        reading_time=5.0,
        mtu_size=536,
        request_size=350,
    ):
        self.main_object_size = main_object_size
        self.embedded_object_size = embedded_object_size
        self.num_of_embedded_objects = num_of_embedded_objects
        self.parsing_time = parsing_time
        self.reading_time = reading_time
        self.mtu_size = mtu_size
        self.request_size = request_size
        self.calls = []

    def get_main_object_size(self):
        self.calls.append("main_object_size")
        return self.main_object_size

    def get_embedded_object_size(self):
        self.calls.append("embedded_object_size")
        return self.embedded_object_size

    def get_num_of_embedded_objects(self):
        self.calls.append("num_of_embedded_objects")
        return self.num_of_embedded_objects

    def get_parsing_time(self):
        self.calls.append("parsing_time")
        return self.parsing_time

    def get_reading_time(self):
        self.calls.append("reading_time")
        return self.reading_time

    def get_mtu_size(self):
        self.calls.append("mtu_size")
        return self.mtu_size

    def get_request_size(self):
        return self.request_size


class TraceRecorder:
    """Collects trace notifications in firing order"""

    def __init__(self):
        self.events = []

    def sink(self, label):
        def callback(*args):
            self.events.append((label,) + args)
        return callback

    def labels(self):
        return [event[0] for event in self.events]

    def of(self, label):
        return [event[1:] for event in self.events if event[0] == label]


@pytest.fixture
def simulator():
    """Fresh virtual-time scheduler"""
    return Simulator()


@pytest.fixture
def network(simulator):
    """Network with a 1 ms one-way delay"""
    return SimulatedNetwork(simulator, delay=0.001)


@pytest.fixture
def fixed_variables():
    """Factory of constant providers"""
    return FixedVariables


@pytest.fixture
def recorder():
    return TraceRecorder()
