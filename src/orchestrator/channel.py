"""
src/orchestrator/channel.py

Bounded producer/consumer channel used by the streaming loop.

The producer blocks while the buffer is full; `cancel()` is the single stop
signal: pending and future puts return False and iteration ends.
"""


import queue
import threading
from typing import Any, Iterator


_CLOSED = object()
_POLL_SECONDS = 0.05


class Channel:

    def __init__(self, maxsize: int):

        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self.cancelled = threading.Event()

    def put(self, item: Any) -> bool:
        """Block until there is room. Returns False if the channel was cancelled."""

        while not self.cancelled.is_set():
            try:
                self._queue.put(item, timeout=_POLL_SECONDS)
                return not self.cancelled.is_set()
            except queue.Full:
                continue

        return False

    def close(self) -> None:
        """Producer side: no more items."""

        self.put(_CLOSED)

    def cancel(self) -> None:
        """Consumer side: stop the producer and discard anything buffered."""

        self.cancelled.set()

        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break

    def __iter__(self) -> Iterator[Any]:

        while True:
            try:
                item = self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self.cancelled.is_set():
                    return
                continue

            if item is _CLOSED or self.cancelled.is_set():
                return

            yield item
