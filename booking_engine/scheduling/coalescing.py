"""De-duplication and supersession of in-flight slot computations."""

import logging
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from typing import Callable, Generic, Hashable, TypeVar

from booking_engine.core import config
from booking_engine.core.errors import RequestCancelled
from booking_engine.scheduling.types import SlotRequest

logger = logging.getLogger(__name__)

T = TypeVar('T')

Compute = Callable[[SlotRequest, threading.Event], T]


def listing_channel(request: SlotRequest) -> Hashable:
    """Requests on one channel supersede each other."""
    return (request.provider_id, request.listing_id)


class _InFlight(Generic[T]):
    def __init__(self, request: SlotRequest, future: 'Future[T]', cancel_event: threading.Event, started_at: float):
        self.request = request
        self.future = future
        self.cancel_event = cancel_event
        self.started_at = started_at


class RequestCoalescer(Generic[T]):
    """Runs slot computations so that

    * an identical request arriving within ``window_ms`` of the previous one
      shares its future instead of starting a new computation, and
    * a different request on the same channel cancels the one still running.

    One coalescer is owned by whoever serves requests; it keeps no global state.
    """

    def __init__(
        self,
        window_ms: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_workers: int | None = None,
        channel: Callable[[SlotRequest], Hashable] = listing_channel,
    ):
        self.window = (config.REQUEST_DEDUP_WINDOW_MS if window_ms is None else window_ms) / 1000
        self.clock = clock
        self.channel = channel
        self._executor = ThreadPoolExecutor(max_workers=max_workers or config.FETCH_MAX_WORKERS)
        self._lock = threading.Lock()
        self._in_flight: dict[Hashable, _InFlight[T]] = {}

    def submit(self, request: SlotRequest, compute: Compute) -> 'Future[T]':
        channel = self.channel(request)
        now = self.clock()
        superseded = None

        with self._lock:
            self._evict_expired(now)
            current = self._in_flight.get(channel)
            if current is not None:
                if current.request == request and now - current.started_at < self.window:
                    logger.debug('Coalescing duplicate slot request %s', request)
                    return current.future
                if not current.future.done():
                    superseded = current

            cancel_event = threading.Event()
            future = self._executor.submit(compute, request, cancel_event)
            entry = _InFlight(request, future, cancel_event, now)
            self._in_flight[channel] = entry

        # Cancelling a queued future runs its done-callbacks on this thread, and those take the lock.
        if superseded is not None:
            logger.info('Cancelling superseded slot request %s', superseded.request)
            superseded.cancel_event.set()
            superseded.future.cancel()

        future.add_done_callback(lambda _: self._forget(channel, entry))
        return future

    def run(self, request: SlotRequest, compute: Compute, timeout: float | None = None) -> T:
        """Submit and wait; a superseded request raises ``RequestCancelled``."""
        future = self.submit(request, compute)
        try:
            return future.result(timeout=timeout)
        except CancelledError as exc:
            raise RequestCancelled('Slot computation superseded by a newer request.') from exc

    def _forget(self, channel: Hashable, entry: _InFlight[T]) -> None:
        # Finished entries stay until the dedup window passes; _evict_expired drops them later.
        if self.window > 0 and not entry.future.cancelled():
            return
        with self._lock:
            if self._in_flight.get(channel) is entry:
                del self._in_flight[channel]

    def _evict_expired(self, now: float) -> None:
        expired = [
            channel
            for channel, entry in self._in_flight.items()
            if entry.future.done() and now - entry.started_at >= self.window
        ]
        for channel in expired:
            del self._in_flight[channel]

    def in_flight_count(self) -> int:
        with self._lock:
            return sum(1 for entry in self._in_flight.values() if not entry.future.done())

    def tracked_count(self) -> int:
        """Entries still held, finished ones waiting out the dedup window included."""
        with self._lock:
            return len(self._in_flight)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            for entry in self._in_flight.values():
                entry.cancel_event.set()
            self._in_flight.clear()
        self._executor.shutdown(wait=wait, cancel_futures=True)
