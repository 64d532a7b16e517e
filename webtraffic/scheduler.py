"""
Discrete-event scheduler

Virtual-time event loop driving every session. Nothing in the sessions
blocks: each wait is a callback scheduled here, and the loop jumps the
clock straight to the next event.
"""

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger("HTTP.Scheduler")


@dataclass(order=True)
class _ScheduledEvent:
    time: float
    seq: int
    callback: Callable[..., Any] = field(compare=False)
    args: Tuple[Any, ...] = field(compare=False, default=())
    cancelled: bool = field(compare=False, default=False)
    fired: bool = field(compare=False, default=False)


class EventId:
    """Handle of a scheduled event"""

    __slots__ = ("_event",)

    def __init__(self, event: _ScheduledEvent):
        self._event = event

    @property
    def time(self) -> float:
        """Virtual time the event is due"""
        return self._event.time

    @property
    def is_pending(self) -> bool:
        return not (self._event.cancelled or self._event.fired)

    @property
    def is_expired(self) -> bool:
        return not self.is_pending

    def cancel(self) -> None:
        """Cancel the event; a no-op once it has fired"""
        self._event.cancelled = True

    def __repr__(self) -> str:
        return f"EventId(time={self._event.time:.6f}, pending={self.is_pending})"


class Simulator:
    """
    Virtual-time scheduler

    Events due at the same time fire in the order they were scheduled.
    """

    def __init__(self):
        self._now = 0.0
        self._queue: List[_ScheduledEvent] = []
        self._seq = itertools.count()
        self._stopped = False
        self.events_executed = 0

    @property
    def now(self) -> float:
        """Current virtual time in seconds"""
        return self._now

    @property
    def pending_count(self) -> int:
        """Number of events still due to fire"""
        return sum(1 for e in self._queue if not e.cancelled)

    def schedule(self, delay: float, callback: Callable[..., Any], *args: Any) -> EventId:
        """
        Schedule a callback after a delay

        Args:
            delay: Delay in seconds from now (not negative)
            callback: Callable invoked with args when due

        Returns:
            Handle that can cancel the event
        """
        if delay < 0:
            raise ValueError(f"Cannot schedule an event in the past (delay={delay})")
        event = _ScheduledEvent(self._now + delay, next(self._seq), callback, args)
        heapq.heappush(self._queue, event)
        return EventId(event)

    def schedule_now(self, callback: Callable[..., Any], *args: Any) -> EventId:
        """Schedule a callback at the current time, after events already due now"""
        return self.schedule(0.0, callback, *args)

    def cancel(self, event_id: Optional[EventId]) -> None:
        if event_id is not None:
            event_id.cancel()

    def stop(self) -> None:
        """Make run() return after the current event"""
        self._stopped = True

    def run(self, until: Optional[float] = None) -> float:
        """
        Execute events in time order

        Args:
            until: Stop before the first event due after this time and
                leave the clock at it; run until the queue drains if None

        Returns:
            Virtual time when the loop returned
        """
        self._stopped = False

        while self._queue and not self._stopped:
            event = self._queue[0]
            if until is not None and event.time > until:
                break
            heapq.heappop(self._queue)
            if event.cancelled:
                continue

            self._now = event.time
            event.fired = True
            self.events_executed += 1
            event.callback(*event.args)

        if until is not None and not self._stopped and until > self._now:
            self._now = until

        # Drop cancelled events left at the head
        while self._queue and self._queue[0].cancelled:
            heapq.heappop(self._queue)

        logger.debug(f"[HTTP] Scheduler paused at t={self._now:.6f}s ({self.pending_count} pending)")
        return self._now
