"""
Trace sources

A trace source keeps an ordered list of observers and notifies them
synchronously, in registration order, every time the owning session
fires it. Observers only watch: an observer that raises is logged and
skipped, and the session carries on.
"""

import logging
from typing import Any, Callable, List

logger = logging.getLogger("HTTP.Trace")


class TraceSource:
    """Named observer list fired by a session"""

    def __init__(self, name: str):
        self.name = name
        self._callbacks: List[Callable[..., Any]] = []

    def connect(self, callback: Callable[..., Any]) -> None:
        """Register an observer"""
        self._callbacks.append(callback)

    def disconnect(self, callback: Callable[..., Any]) -> bool:
        """Remove an observer, returns True if it was registered"""
        try:
            self._callbacks.remove(callback)
        except ValueError:
            return False
        return True

    @property
    def connected(self) -> int:
        return len(self._callbacks)

    def __call__(self, *args: Any) -> None:
        for callback in list(self._callbacks):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"[HTTP] Trace '{self.name}' callback error: {e}")

    def __repr__(self) -> str:
        return f"TraceSource({self.name!r}, observers={len(self._callbacks)})"
