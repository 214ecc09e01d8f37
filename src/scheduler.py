#!/usr/bin/env python3
"""
scheduler.py

A single-threaded discrete-event scheduler. Actions are plain callables
scheduled at a virtual time; each one runs to completion before the next is
considered. Events with equal times fire in the order they were scheduled.

Every action may carry an owner (a node id). Tearing down a node cancels all
of its pending actions; a cancelled action never runs.
"""

import heapq
import itertools

from utils import get_logger

logger = get_logger(__name__)


class EventHandle:
    """Returned by schedule_at(); pass it to Scheduler.cancel()."""

    def __init__(self, time, seq, action, owner=None, label=None):
        self.time = time
        self.seq = seq
        self.action = action
        self.owner = owner
        self.label = label
        self.cancelled = False
        self.fired = False

    @property
    def pending(self):
        return not (self.cancelled or self.fired)

    def __lt__(self, other):
        return (self.time, self.seq) < (other.time, other.seq)

    def __repr__(self):
        state = "cancelled" if self.cancelled else ("fired" if self.fired else "pending")
        return f"EventHandle(t={self.time}, owner={self.owner!r}, label={self.label!r}, {state})"


class Scheduler:
    """Virtual-time event queue."""

    def __init__(self, start_time=0.0):
        self.now = float(start_time)
        self._queue = []
        self._seq = itertools.count()

    def schedule_at(self, time, action, owner=None, label=None):
        if time < self.now:
            raise ValueError(f"Cannot schedule at {time}, current time is {self.now}")
        handle = EventHandle(float(time), next(self._seq), action, owner, label)
        heapq.heappush(self._queue, handle)
        return handle

    def schedule_in(self, delay, action, owner=None, label=None):
        if delay < 0:
            raise ValueError("Delay cannot be negative")
        return self.schedule_at(self.now + delay, action, owner, label)

    def cancel(self, handle):
        if handle is not None and handle.pending:
            handle.cancelled = True

    def cancel_owner(self, owner):
        """Cancel every pending action owned by `owner`. Returns how many were cancelled."""
        count = 0
        for handle in self._queue:
            if handle.owner == owner and handle.pending:
                handle.cancelled = True
                count += 1
        if count:
            logger.debug("Cancelled %d pending actions of %r", count, owner)
        return count

    def pending(self):
        return sum(1 for h in self._queue if h.pending)

    def next_time(self):
        while self._queue and not self._queue[0].pending:
            heapq.heappop(self._queue)
        return self._queue[0].time if self._queue else None

    def step(self):
        """Fire the next pending action. Returns False if nothing is left."""
        while self._queue:
            handle = heapq.heappop(self._queue)
            if not handle.pending:
                continue
            self.now = handle.time
            handle.fired = True
            handle.action()
            return True
        return False

    def run(self, until=None):
        """
        Fire actions in time order until the queue is empty or the next action
        lies beyond `until`. The clock is advanced to `until` if given.
        Returns the number of actions fired.
        """
        fired = 0
        while True:
            t = self.next_time()
            if t is None or (until is not None and t > until):
                break
            if self.step():
                fired += 1
        if until is not None and until > self.now:
            self.now = float(until)
        return fired
