"""
HTTP traffic wire format

Request Format (big endian):
    0                   1                   2                   3
    0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1
   +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
   |     Kind      |               Request Length ...              |
   +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
   |  ... Length   |              Zero padding ...                 |
   +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+

Kind is 1 (main object) or 2 (embedded object). Request Length is the
total size of the request including this header, so the server can
frame requests arriving over a byte stream.

Responses carry no header: a response is the raw object payload cut
into packets of at most one MTU.
"""

import struct
from dataclasses import dataclass
from typing import List

from .constants import REQUEST_HEADER_LEN
from .errors import ProtocolViolationError
from .states import ObjectKind

_REQUEST_HEADER = struct.Struct("!BI")


@dataclass(frozen=True)
class Request:
    """
    Client request

    Attributes:
        kind: Requested object kind
        size: Total request size in bytes (header included)
    """
    kind: ObjectKind
    size: int


@dataclass(frozen=True)
class ObjectDescriptor:
    """An object drawn from the provider for one request/response exchange"""
    kind: ObjectKind
    size: int


def encode_request(request: Request) -> bytes:
    """
    Encode a request into its fixed-size wire form

    Args:
        request: Request to encode

    Returns:
        Encoded bytes, exactly request.size long
    """
    if request.size < REQUEST_HEADER_LEN:
        raise ValueError(
            f"Request size {request.size} is smaller than header ({REQUEST_HEADER_LEN} bytes)"
        )
    header = _REQUEST_HEADER.pack(int(request.kind), request.size)
    return header + bytes(request.size - REQUEST_HEADER_LEN)


def decode_request(data: bytes) -> Request:
    """
    Decode a complete request

    Raises:
        ProtocolViolationError: If the header is truncated, the kind is
            unknown or the declared length does not match
    """
    if len(data) < REQUEST_HEADER_LEN:
        raise ProtocolViolationError(f"Request too short: {len(data)} bytes")

    kind_value, length = _REQUEST_HEADER.unpack_from(data)
    try:
        kind = ObjectKind(kind_value)
    except ValueError:
        raise ProtocolViolationError(f"Unknown request kind: {kind_value}") from None

    if length < REQUEST_HEADER_LEN:
        raise ProtocolViolationError(f"Invalid request length: {length}")
    if length != len(data):
        raise ProtocolViolationError(
            f"Request length mismatch: declared {length}, got {len(data)}"
        )
    return Request(kind=kind, size=length)


class RequestParser:
    """
    Incremental request framer for one accepted socket

    Bytes are fed as they arrive; complete requests come out in order.
    Partial requests are kept until the rest arrives.
    """

    def __init__(self):
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> List[Request]:
        """
        Append received bytes and extract every complete request

        Raises:
            ProtocolViolationError: If a header cannot be classified
        """
        self._buffer.extend(data)
        requests = []

        while len(self._buffer) >= REQUEST_HEADER_LEN:
            kind_value, length = _REQUEST_HEADER.unpack_from(self._buffer)
            if kind_value not in ObjectKind._value2member_map_:
                raise ProtocolViolationError(f"Unknown request kind: {kind_value}")
            if length < REQUEST_HEADER_LEN:
                raise ProtocolViolationError(f"Invalid request length: {length}")
            if len(self._buffer) < length:
                break

            requests.append(decode_request(bytes(self._buffer[:length])))
            del self._buffer[:length]

        return requests


def fragment_sizes(size: int, mtu: int) -> List[int]:
    """
    Packet sizes for a response payload

    For a payload of S bytes and an MTU of M, there are ceil(S / M)
    packets, all of size M except the last, which carries the rest.

    Args:
        size: Payload size in bytes
        mtu: Maximum packet size in bytes

    Returns:
        Packet sizes in sending order
    """
    if mtu <= 0:
        raise ValueError(f"MTU must be positive, got {mtu}")
    if size < 0:
        raise ValueError(f"Payload size must not be negative, got {size}")

    count = (size + mtu - 1) // mtu
    if count == 0:
        return []
    return [mtu] * (count - 1) + [size - mtu * (count - 1)]
