"""
Experiment configuration

Pydantic models for experiment files (YAML) and their conversion into
the session configuration dataclasses.

Example:
    duration: 600
    seed: 7
    network:
      link_delay: 0.005
    servers:
      - name: web
        address: 10.0.0.1
    clients:
      - name: user1
        server: web
        address: 10.0.1.1
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, model_validator

from .client import HttpClientConfig, RetryPolicy
from .constants import (
    DEFAULT_CONNECT_RETRY_ATTEMPTS,
    DEFAULT_CONNECT_RETRY_BACKOFF,
    DEFAULT_CONNECT_RETRY_MULTIPLIER,
    DEFAULT_LINK_DELAY,
    DEFAULT_REQUEST_SIZE,
    DEFAULT_RESPONSE_DELAY,
    DEFAULT_SEND_BUFFER_SIZE,
    EMBEDDED_OBJECT_SIZE_MAX,
    EMBEDDED_OBJECT_SIZE_MEAN,
    EMBEDDED_OBJECT_SIZE_MIN,
    EMBEDDED_OBJECT_SIZE_STD_DEV,
    HIGH_MTU_PROBABILITY,
    HIGH_MTU_SIZE,
    HTTP_PORT,
    MAIN_OBJECT_SIZE_MAX,
    MAIN_OBJECT_SIZE_MEAN,
    MAIN_OBJECT_SIZE_MIN,
    MAIN_OBJECT_SIZE_STD_DEV,
    NUM_OF_EMBEDDED_OBJECTS_MAX,
    NUM_OF_EMBEDDED_OBJECTS_SCALE,
    NUM_OF_EMBEDDED_OBJECTS_SHAPE,
    PARSING_TIME_MEAN,
    READING_TIME_MEAN,
    REQUEST_HEADER_LEN,
)
from .server import HttpServerConfig
from .variables import HttpVariablesConfig

logger = logging.getLogger("HTTP.Config")


class VariablesSpec(BaseModel):
    """Distribution parameters shared by every provider of the experiment"""
    main_object_size_mean: float = Field(MAIN_OBJECT_SIZE_MEAN, gt=0)
    main_object_size_std_dev: float = Field(MAIN_OBJECT_SIZE_STD_DEV, ge=0)
    main_object_size_min: int = Field(MAIN_OBJECT_SIZE_MIN, ge=1)
    main_object_size_max: int = Field(MAIN_OBJECT_SIZE_MAX, ge=1)
    embedded_object_size_mean: float = Field(EMBEDDED_OBJECT_SIZE_MEAN, gt=0)
    embedded_object_size_std_dev: float = Field(EMBEDDED_OBJECT_SIZE_STD_DEV, ge=0)
    embedded_object_size_min: int = Field(EMBEDDED_OBJECT_SIZE_MIN, ge=1)
    embedded_object_size_max: int = Field(EMBEDDED_OBJECT_SIZE_MAX, ge=1)
    num_of_embedded_objects_scale: int = Field(NUM_OF_EMBEDDED_OBJECTS_SCALE, ge=1)
    num_of_embedded_objects_shape: float = Field(NUM_OF_EMBEDDED_OBJECTS_SHAPE, gt=0)
    num_of_embedded_objects_max: int = Field(NUM_OF_EMBEDDED_OBJECTS_MAX, ge=1)
    reading_time_mean: float = Field(READING_TIME_MEAN, ge=0)
    parsing_time_mean: float = Field(PARSING_TIME_MEAN, ge=0)
    high_mtu_probability: float = Field(HIGH_MTU_PROBABILITY, ge=0, le=1)
    request_size: int = Field(DEFAULT_REQUEST_SIZE, ge=REQUEST_HEADER_LEN)

    def to_variables_config(self, seed: int, stream: int) -> HttpVariablesConfig:
        return HttpVariablesConfig(seed=seed, stream=stream, **self.model_dump())


class NetworkSpec(BaseModel):
    """Simulated network characteristics"""
    link_delay: float = Field(DEFAULT_LINK_DELAY, ge=0)
    data_rate: Optional[float] = Field(None, gt=0)  # bits per second
    send_buffer_size: int = Field(DEFAULT_SEND_BUFFER_SIZE, gt=0)


class RetrySpec(BaseModel):
    """Client reconnect policy"""
    max_attempts: int = Field(DEFAULT_CONNECT_RETRY_ATTEMPTS, ge=0)
    backoff: float = Field(DEFAULT_CONNECT_RETRY_BACKOFF, ge=0)
    multiplier: float = Field(DEFAULT_CONNECT_RETRY_MULTIPLIER, ge=1)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff=self.backoff,
            multiplier=self.multiplier,
        )


class ServerSpec(BaseModel):
    """One simulated web server"""
    name: str = Field(..., min_length=1)
    address: str = "10.0.0.1"
    port: int = Field(HTTP_PORT, gt=0, le=65535)
    transport: str = "tcp"
    response_delay: float = Field(DEFAULT_RESPONSE_DELAY, ge=0)
    mtu: Optional[int] = Field(None, gt=0)

    def to_server_config(self) -> HttpServerConfig:
        return HttpServerConfig(
            local_address=self.address,
            local_port=self.port,
            transport=self.transport,
            response_delay=self.response_delay,
            mtu=self.mtu,
        )


class ClientSpec(BaseModel):
    """One simulated browsing user"""
    name: str = Field(..., min_length=1)
    server: str = Field(..., min_length=1)
    address: str = ""
    transport: str = "tcp"
    request_size: Optional[int] = Field(None, ge=REQUEST_HEADER_LEN)
    start_time: float = Field(0.0, ge=0)
    stop_time: Optional[float] = Field(None, gt=0)
    stream: Optional[int] = Field(None, ge=0)
    retry: RetrySpec = Field(default_factory=RetrySpec)

    def to_client_config(self, server: ServerSpec) -> HttpClientConfig:
        return HttpClientConfig(
            remote_address=server.address,
            remote_port=server.port,
            transport=self.transport,
            request_size=self.request_size,
            local_address=self.address,
            connect_retry=self.retry.to_policy(),
        )


class ExperimentConfig(BaseModel):
    """Complete experiment description"""
    duration: float = Field(300.0, gt=0)
    seed: int = 1
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    variables: VariablesSpec = Field(default_factory=VariablesSpec)
    servers: List[ServerSpec] = Field(..., min_length=1)
    clients: List[ClientSpec] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _check_references(self) -> "ExperimentConfig":
        server_names = [s.name for s in self.servers]
        if len(set(server_names)) != len(server_names):
            raise ValueError("server names must be unique")

        client_names = [c.name for c in self.clients]
        if len(set(client_names)) != len(client_names):
            raise ValueError("client names must be unique")

        endpoints = [(s.address, s.port) for s in self.servers]
        if len(set(endpoints)) != len(endpoints):
            raise ValueError("servers must listen on distinct address/port pairs")

        buffer_size = self.network.send_buffer_size
        for server in self.servers:
            # Without a fixed MTU the server may draw the high one
            mtu = server.mtu if server.mtu is not None else HIGH_MTU_SIZE
            if mtu > buffer_size:
                raise ValueError(
                    f"server '{server.name}' MTU {mtu} exceeds the {buffer_size} byte send buffer"
                )

        for client in self.clients:
            if client.server not in server_names:
                raise ValueError(f"client '{client.name}' refers to unknown server '{client.server}'")
            if client.stop_time is not None and client.stop_time <= client.start_time:
                raise ValueError(f"client '{client.name}' stops before it starts")
        return self

    def get_server(self, name: str) -> ServerSpec:
        for server in self.servers:
            if server.name == name:
                return server
        raise KeyError(name)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExperimentConfig":
        return cls.model_validate(data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ExperimentConfig":
        """
        Load an experiment file

        Raises:
            pydantic.ValidationError: If the content does not describe a valid experiment
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        logger.debug(f"[HTTP] Loaded experiment configuration from {path}")
        return cls.from_dict(data)

    def to_yaml(self) -> str:
        return yaml.dump(self.model_dump(), default_flow_style=False, sort_keys=False)
