"""
HTTP Variables - object-size/delay provider

Container of the random variables behind the web browsing traffic
model (3GPP TR 25.892 / NGMN evaluation methodology):

- main object size: truncated log-normal, mean 10710 bytes, standard
  deviation 25032 bytes, bounded to [100, 2000000];
- embedded object size: truncated log-normal, mean 7758 bytes, standard
  deviation 126168 bytes, bounded to [50, 2000000];
- number of embedded objects per page: truncated Pareto with scale 2,
  shape 1.1 and maximum 55, shifted down by the scale so pages may
  carry no embedded objects at all;
- reading time: exponential, mean 30 seconds;
- parsing time: exponential, mean 0.13 seconds;
- MTU: 1460 bytes with probability 0.76, otherwise 536 bytes;
- request size: constant 350 bytes.

Every variable owns its own generator seeded from (seed, stream,
variable name). Two instances created with the same seed and stream
therefore return the same sequence for each variable, independently
of how calls to the other variables interleave. This is what lets a
client and a server agree on object sizes without talking about them.
"""

import math
import random
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict

from .constants import (
    DEFAULT_REQUEST_SIZE,
    EMBEDDED_OBJECT_SIZE_MAX,
    EMBEDDED_OBJECT_SIZE_MEAN,
    EMBEDDED_OBJECT_SIZE_MIN,
    EMBEDDED_OBJECT_SIZE_STD_DEV,
    HIGH_MTU_PROBABILITY,
    HIGH_MTU_SIZE,
    LOW_MTU_SIZE,
    MAIN_OBJECT_SIZE_MAX,
    MAIN_OBJECT_SIZE_MEAN,
    MAIN_OBJECT_SIZE_MIN,
    MAIN_OBJECT_SIZE_STD_DEV,
    NUM_OF_EMBEDDED_OBJECTS_MAX,
    NUM_OF_EMBEDDED_OBJECTS_SCALE,
    NUM_OF_EMBEDDED_OBJECTS_SHAPE,
    PARSING_TIME_MEAN,
    READING_TIME_MEAN,
)

logger = logging.getLogger("HTTP.Variables")

_VARIABLE_NAMES = (
    "main_object_size",
    "embedded_object_size",
    "num_of_embedded_objects",
    "reading_time",
    "parsing_time",
    "mtu_size",
)


@dataclass
class HttpVariablesConfig:
    """
    Distribution parameters of the provider

    Attributes:
        seed: Base seed of every generator
        stream: Stream index, selects an independent sequence for the same seed
        main_object_size_mean: Mean of the main object size (bytes)
        main_object_size_std_dev: Standard deviation of the main object size
        main_object_size_min: Lower truncation bound
        main_object_size_max: Upper truncation bound
        embedded_object_size_mean: Mean of the embedded object size (bytes)
        embedded_object_size_std_dev: Standard deviation of the embedded object size
        embedded_object_size_min: Lower truncation bound
        embedded_object_size_max: Upper truncation bound
        num_of_embedded_objects_scale: Pareto scale (minimum before the shift)
        num_of_embedded_objects_shape: Pareto shape
        num_of_embedded_objects_max: Upper truncation bound before the shift
        reading_time_mean: Mean reading time (seconds)
        parsing_time_mean: Mean parsing time (seconds)
        high_mtu_probability: Probability of drawing the high MTU
        request_size: Constant request size (bytes)
    """
    seed: int = 1
    stream: int = 0
    main_object_size_mean: float = MAIN_OBJECT_SIZE_MEAN
    main_object_size_std_dev: float = MAIN_OBJECT_SIZE_STD_DEV
    main_object_size_min: int = MAIN_OBJECT_SIZE_MIN
    main_object_size_max: int = MAIN_OBJECT_SIZE_MAX
    embedded_object_size_mean: float = EMBEDDED_OBJECT_SIZE_MEAN
    embedded_object_size_std_dev: float = EMBEDDED_OBJECT_SIZE_STD_DEV
    embedded_object_size_min: int = EMBEDDED_OBJECT_SIZE_MIN
    embedded_object_size_max: int = EMBEDDED_OBJECT_SIZE_MAX
    num_of_embedded_objects_scale: int = NUM_OF_EMBEDDED_OBJECTS_SCALE
    num_of_embedded_objects_shape: float = NUM_OF_EMBEDDED_OBJECTS_SHAPE
    num_of_embedded_objects_max: int = NUM_OF_EMBEDDED_OBJECTS_MAX
    reading_time_mean: float = READING_TIME_MEAN
    parsing_time_mean: float = PARSING_TIME_MEAN
    high_mtu_probability: float = HIGH_MTU_PROBABILITY
    request_size: int = DEFAULT_REQUEST_SIZE

    def __post_init__(self):
        if self.main_object_size_min > self.main_object_size_max:
            raise ValueError("main_object_size_min must not exceed main_object_size_max")
        if self.embedded_object_size_min > self.embedded_object_size_max:
            raise ValueError("embedded_object_size_min must not exceed embedded_object_size_max")
        if self.num_of_embedded_objects_scale > self.num_of_embedded_objects_max:
            raise ValueError("num_of_embedded_objects_scale must not exceed num_of_embedded_objects_max")
        if self.num_of_embedded_objects_shape <= 0:
            raise ValueError("num_of_embedded_objects_shape must be positive")
        if self.reading_time_mean < 0 or self.parsing_time_mean < 0:
            raise ValueError("delay means must not be negative")
        if not 0.0 <= self.high_mtu_probability <= 1.0:
            raise ValueError("high_mtu_probability must be within [0, 1]")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class HttpVariables:
    """
    Object-size/delay provider for HTTP sessions

    Pass one instance to every session; sessions that must agree on
    object sizes (a client and the server it talks to) get instances
    with the same seed and stream.
    """

    def __init__(self, config: HttpVariablesConfig = None):
        self.config = config or HttpVariablesConfig()
        self._rngs: Dict[str, random.Random] = {}
        self._reseed()

    def _reseed(self) -> None:
        for name in _VARIABLE_NAMES:
            self._rngs[name] = random.Random(
                f"{self.config.seed}:{self.config.stream}:{name}"
            )
        logger.debug(
            f"[HTTP] Variables seeded (seed={self.config.seed}, stream={self.config.stream})"
        )

    def set_stream(self, stream: int) -> None:
        """
        Select a fixed stream and restart every variable from its beginning

        Different streams give different value sequences; the same
        stream (and seed) always gives the same ones.
        """
        self.config.stream = stream
        self._reseed()

    def set_seed(self, seed: int) -> None:
        """Change the base seed and restart every variable"""
        self.config.seed = seed
        self._reseed()

    # THE MORE USEFUL METHODS

    def get_main_object_size(self) -> int:
        """Random size of a main object in bytes"""
        cfg = self.config
        return self._truncated_lognormal(
            self._rngs["main_object_size"],
            cfg.main_object_size_mean,
            cfg.main_object_size_std_dev,
            cfg.main_object_size_min,
            cfg.main_object_size_max,
        )

    def get_embedded_object_size(self) -> int:
        """Random size of an embedded object in bytes"""
        cfg = self.config
        return self._truncated_lognormal(
            self._rngs["embedded_object_size"],
            cfg.embedded_object_size_mean,
            cfg.embedded_object_size_std_dev,
            cfg.embedded_object_size_min,
            cfg.embedded_object_size_max,
        )

    def get_num_of_embedded_objects(self) -> int:
        """Random number of embedded objects referenced by a main object"""
        cfg = self.config
        rng = self._rngs["num_of_embedded_objects"]
        scale = cfg.num_of_embedded_objects_scale
        while True:
            # Inverse transform; 1 - random() is in (0, 1]
            value = scale / math.pow(1.0 - rng.random(), 1.0 / cfg.num_of_embedded_objects_shape)
            if value <= cfg.num_of_embedded_objects_max:
                return int(value) - scale

    def get_reading_time(self) -> float:
        """Random reading time in seconds"""
        mean = self.config.reading_time_mean
        if mean == 0:
            return 0.0
        return self._rngs["reading_time"].expovariate(1.0 / mean)

    def get_parsing_time(self) -> float:
        """Random parsing time in seconds"""
        mean = self.config.parsing_time_mean
        if mean == 0:
            return 0.0
        return self._rngs["parsing_time"].expovariate(1.0 / mean)

    def get_mtu_size(self) -> int:
        """Either the high or the low MTU, in bytes"""
        if self._rngs["mtu_size"].random() < self.config.high_mtu_probability:
            return HIGH_MTU_SIZE
        return LOW_MTU_SIZE

    def get_request_size(self) -> int:
        """Constant request size in bytes"""
        return self.config.request_size

    # THE REST ARE THE NOT-SO-USEFUL METHODS

    def set_main_object_size_mean(self, mean: float) -> None:
        self.config.main_object_size_mean = mean

    def set_main_object_size_std_dev(self, std_dev: float) -> None:
        self.config.main_object_size_std_dev = std_dev

    def set_embedded_object_size_mean(self, mean: float) -> None:
        self.config.embedded_object_size_mean = mean

    def set_embedded_object_size_std_dev(self, std_dev: float) -> None:
        self.config.embedded_object_size_std_dev = std_dev

    def set_num_of_embedded_objects_max(self, maximum: int) -> None:
        self.config.num_of_embedded_objects_max = maximum

    def set_num_of_embedded_objects_shape(self, shape: float) -> None:
        self.config.num_of_embedded_objects_shape = shape

    def set_num_of_embedded_objects_scale(self, scale: int) -> None:
        self.config.num_of_embedded_objects_scale = scale

    def set_reading_time_mean(self, mean: float) -> None:
        self.config.reading_time_mean = mean

    def set_parsing_time_mean(self, mean: float) -> None:
        self.config.parsing_time_mean = mean

    def get_num_of_embedded_objects_mean(self) -> float:
        """Mean of the untruncated Pareto, shifted by the scale"""
        shape = self.config.num_of_embedded_objects_shape
        scale = self.config.num_of_embedded_objects_scale
        if shape <= 1.0:
            return math.inf
        return shape * scale / (shape - 1.0) - scale

    @staticmethod
    def _truncated_lognormal(
        rng: random.Random,
        mean: float,
        std_dev: float,
        minimum: int,
        maximum: int,
    ) -> int:
        """Draw from a log-normal given its own mean and std dev, redrawing outside the bounds"""
        if std_dev == 0:
            return int(min(max(mean, minimum), maximum))

        variance = std_dev * std_dev
        sigma = math.sqrt(math.log(1.0 + variance / (mean * mean)))
        mu = math.log(mean) - 0.5 * sigma * sigma
        while True:
            value = rng.lognormvariate(mu, sigma)
            if minimum <= value <= maximum:
                return int(value)

    def to_dict(self) -> Dict[str, Any]:
        return self.config.to_dict()
