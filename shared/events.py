"""
Lifecycle events and the hand-off between the index worker and the dispatcher.

This module provides:
- LifecycleKind / LifecycleEvent, the output of diffing two index commits
- AckToken, a single-use acknowledgment handle released by the dispatcher
- AckChannel, the bounded queue carrying (event, token) from the worker
  thread to the asyncio loop
- EventSerializer, a deterministic JSON form of events
"""

import asyncio
import concurrent.futures
import logging
import threading
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from shared.models import IndexRecord

logger = logging.getLogger(__name__)


class LifecycleKind(str, Enum):
    """What happened to a package version."""

    NEW_VERSION = "new_version"
    YANKED = "yanked"
    UNYANKED = "unyanked"

    @property
    def verb(self) -> str:
        """Past-tense verb used in notification text."""
        return {
            LifecycleKind.NEW_VERSION: "updated",
            LifecycleKind.YANKED: "yanked",
            LifecycleKind.UNYANKED: "unyanked",
        }[self]


class LifecycleEvent(BaseModel):
    """A lifecycle change derived from exactly one pair of consecutive commits."""

    model_config = ConfigDict(frozen=True)

    record: IndexRecord
    kind: LifecycleKind
    prev_commit: str = Field(..., description="Commit the diff starts from")
    next_commit: str = Field(..., description="Commit the event was derived from")

    @property
    def package(self) -> str:
        return self.record.name

    def __str__(self) -> str:
        return f"{self.kind.value}({self.record})"


class EventSerializer:
    """Helper for event serialization and deserialization."""

    @staticmethod
    def serialize(event: LifecycleEvent) -> str:
        """Serialize an event to a JSON string; equal events give equal strings."""
        return event.model_dump_json()

    @staticmethod
    def deserialize(json_str: str) -> LifecycleEvent:
        """Deserialize an event from a JSON string."""
        return LifecycleEvent.model_validate_json(json_str)


class AckToken:
    """
    Single-use acknowledgment handle.

    Created by the worker for each event it hands off and released exactly
    once by the dispatcher. Releasing again is a no-op.
    """

    def __init__(self):
        self._released = threading.Event()
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released.is_set()

    def release(self) -> bool:
        """Release the token. Returns False if it was already released."""
        with self._lock:
            if self._released.is_set():
                return False
            self._released.set()
            return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until released or until ``timeout`` elapses."""
        return self._released.wait(timeout)


_CLOSED = object()

ChannelItem = Tuple[LifecycleEvent, AckToken]


class AckChannel:
    """
    Bounded FIFO from the index worker thread to the dispatcher's event loop.

    The worker side (``put``/``close``) is called from a plain thread; the
    dispatcher side iterates with ``async for``. At most ``capacity`` items
    wait in the queue, which keeps the worker from running ahead.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, capacity: int = 2):
        self._loop = loop
        self._queue: "asyncio.Queue" = asyncio.Queue(maxsize=capacity)
        self._closed = threading.Event()
        self.capacity = capacity

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def qsize(self) -> int:
        return self._queue.qsize()

    def put(
        self,
        event: LifecycleEvent,
        token: AckToken,
        cancel: threading.Event,
        poll_interval: float = 1.0,
    ) -> bool:
        """
        Hand an event to the dispatcher, blocking while the queue is full.

        Returns False if ``cancel`` was set before the item was accepted.
        """
        if self.closed:
            raise RuntimeError("AckChannel is closed")

        future = asyncio.run_coroutine_threadsafe(self._queue.put((event, token)), self._loop)
        while True:
            try:
                future.result(timeout=poll_interval)
                return True
            except concurrent.futures.TimeoutError:
                if cancel.is_set():
                    if not future.cancel():
                        # Already accepted by the queue
                        future.result()
                        return True
                    logger.info(f"Hand-off of {event} cancelled")
                    return False

    def close(self):
        """Signal end of stream; the consumer stops after draining queued items."""
        if self._closed.is_set():
            return
        self._closed.set()
        sentinel = self._queue.put(_CLOSED)
        try:
            asyncio.run_coroutine_threadsafe(sentinel, self._loop)
        except RuntimeError as e:
            # Event loop already gone, nobody is left to consume.
            sentinel.close()
            logger.debug(f"AckChannel closed after event loop shutdown: {e}")

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChannelItem:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


__all__ = [
    "LifecycleKind",
    "LifecycleEvent",
    "EventSerializer",
    "AckToken",
    "AckChannel",
    "ChannelItem",
]
