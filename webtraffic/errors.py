"""Exceptions raised by the web traffic sessions."""


class WebTrafficError(Exception):
    """Base class for all web traffic errors"""
    pass


class UnsupportedTransportError(WebTrafficError, ValueError):
    """Raised when the configured transport kind is unknown or not a reliable stream"""
    pass


class ProtocolViolationError(WebTrafficError):
    """Raised when an inbound request cannot be classified"""
    pass


class InvalidStateError(WebTrafficError, RuntimeError):
    """Raised when a session is driven from a state that does not allow it"""
    pass


class SocketError(WebTrafficError, OSError):
    """Raised by simulated socket operations that cannot proceed"""
    pass
