"""
Cancellation and deadline handling for broker calls.

A CallContext is passed down through every blocking step (Atlas requests,
MongoDB probes, propagation sleeps) so a caller can bound or abort the whole
call from one place.
"""

import threading
import time

from broker_errors import Cancelled


class CallContext:
    """
    Deadline plus cancellation signal for one call.

    Args:
        timeout (float, optional): Seconds until the deadline. None means no deadline.
        clock (callable, optional): Monotonic clock returning seconds. Defaults to time.monotonic.
        parent (CallContext, optional): Context whose cancellation and deadline also bound this one.
    """

    def __init__(self, timeout=None, clock=None, parent=None):
        self._clock = clock or (parent._clock if parent else time.monotonic)
        self._parent = parent
        self._cancelled = parent._cancelled if parent else threading.Event()
        self._deadline = None
        if timeout is not None:
            self._deadline = self._clock() + timeout
        if parent is not None and parent.deadline is not None:
            if self._deadline is None or parent.deadline < self._deadline:
                self._deadline = parent.deadline

    @classmethod
    def detached(cls, timeout):
        """A fresh context that ignores any parent's cancellation."""
        return cls(timeout=timeout)

    @property
    def deadline(self):
        return self._deadline

    def now(self):
        return self._clock()

    def remaining(self):
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self):
        return self._cancelled.is_set()

    def done(self):
        return self.cancelled or self.remaining() == 0.0

    def check(self, message="Operation cancelled"):
        if self.done():
            raise Cancelled(message)

    def with_timeout(self, timeout):
        # The child shares this context's cancellation signal.
        return CallContext(timeout=timeout, parent=self)

    def wait(self, seconds):
        """
        Sleep for up to ``seconds``, never past the deadline.

        Returns:
            bool: True if the context ended (cancelled or deadline reached) before or
                  during the wait, False if the full duration elapsed.
        """
        limit = max(0.0, seconds)
        remaining = self.remaining()
        if remaining is not None:
            limit = min(limit, remaining)
        self._cancelled.wait(limit)
        return self.done()
