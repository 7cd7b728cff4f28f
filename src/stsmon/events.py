"""Bounded hand-off of device updates from bus threads to a consumer.

Bus threads must never wait on a slow consumer, so ``publish`` does
not block: when the queue is full the oldest pending update is thrown
away to make room.

Example:
    >>> from stsmon.events import UpdateChannel
    >>> channel = UpdateChannel(maxsize=100)
    >>> poller.subscribe(channel.publish)
    >>> update = channel.get(timeout=1.0)
"""

import logging
import queue
import threading

log = logging.getLogger(__name__)


class UpdateChannel:
    """Non-blocking, bounded FIFO of ``DeviceUpdate`` values.

    Safe to publish from several bus threads at once.  Order is kept
    per publisher.

    Args:
        maxsize: Maximum number of pending updates (> 0).
    """

    def __init__(self, maxsize: int = 1000):
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0, got %d" % maxsize)
        self._queue = queue.Queue(maxsize)
        self._lock = threading.Lock()
        self.dropped = 0

    def publish(self, update) -> None:
        """Enqueue *update*, discarding the oldest one if full."""
        with self._lock:
            try:
                self._queue.put_nowait(update)
                return
            except queue.Full:
                pass
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                log.warning("update consumer too slow, %d dropped so far",
                            self.dropped)
            self._queue.put_nowait(update)

    def get(self, timeout: float | None = None):
        """Return the next update, or None if none arrives in *timeout*."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list:
        """Return every pending update without waiting."""
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def __len__(self):
        return self._queue.qsize()
