# Bounded, blocking FIFO shared by the worker threads of one stage.

import threading
from collections import deque


class WorkQueue:
    """
    ``push`` blocks while the queue holds ``capacity`` items. ``pop`` blocks while it
    is empty. After ``terminate`` no more items are accepted, ``pop`` keeps handing
    out what is left and then returns None.
    """

    def __init__(self, capacity):
        if capacity < 1:
            raise ValueError(f"queue capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._items = deque()
        self._cond = threading.Condition()
        self._terminated = False

    def push(self, item):
        """Returns False, without queueing, if the queue has been terminated."""
        if item is None:
            raise ValueError("None cannot be queued")
        with self._cond:
            while len(self._items) >= self.capacity and not self._terminated:
                self._cond.wait()
            if self._terminated:
                return False
            self._items.append(item)
            self._cond.notify_all()
            return True

    def pop(self):
        with self._cond:
            while not self._items and not self._terminated:
                self._cond.wait()
            if not self._items:
                return None
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    def clear(self):
        """Drop everything still queued; returns how many items were dropped."""
        with self._cond:
            dropped = len(self._items)
            self._items.clear()
            self._cond.notify_all()
            return dropped

    def terminate(self):
        with self._cond:
            self._terminated = True
            self._cond.notify_all()

    @property
    def terminated(self):
        return self._terminated

    def __len__(self):
        with self._cond:
            return len(self._items)
