import threading
import time

import pytest

from booking_engine.core.errors import RequestCancelled
from booking_engine.scheduling.coalescing import RequestCoalescer
from booking_engine.scheduling.types import SlotRequest


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, milliseconds: int) -> None:
        self.now += milliseconds / 1000


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def coalescer(clock: FakeClock):
    instance = RequestCoalescer(window_ms=200, clock=clock, max_workers=2)
    try:
        yield instance
    finally:
        instance.shutdown()


def make_request(week_index: int = 0, **fields) -> SlotRequest:
    values = {'provider_id': 10, 'listing_id': 1, 'service_duration_minutes': 60, 'week_index': week_index}
    values.update(fields)
    return SlotRequest(**values)


def test_slot_requests_are_hashable_values() -> None:
    assert make_request() == make_request()
    assert len({make_request(), make_request(), make_request(week_index=1)}) == 2


def test_duplicate_request_inside_the_window_shares_the_computation(coalescer, clock: FakeClock) -> None:
    calls = []

    def compute(request: SlotRequest, cancel_event: threading.Event) -> list:
        calls.append(request)
        return ['slots']

    first = coalescer.submit(make_request(), compute)
    clock.advance(150)
    second = coalescer.submit(make_request(), compute)

    assert second is first
    assert second.result(timeout=5) == ['slots']
    assert len(calls) == 1


def test_duplicate_request_after_the_window_recomputes(coalescer, clock: FakeClock) -> None:
    calls = []

    def compute(request: SlotRequest, cancel_event: threading.Event) -> int:
        calls.append(request)
        return len(calls)

    assert coalescer.run(make_request(), compute, timeout=5) == 1
    clock.advance(250)
    assert coalescer.run(make_request(), compute, timeout=5) == 2


def test_newer_request_cancels_the_superseded_one(coalescer) -> None:
    started = threading.Event()

    def slow_compute(request: SlotRequest, cancel_event: threading.Event) -> str:
        started.set()
        if cancel_event.wait(timeout=5):
            raise RequestCancelled('superseded')
        return 'finished'

    def fast_compute(request: SlotRequest, cancel_event: threading.Event) -> str:
        return f'week {request.week_index}'

    superseded = coalescer.submit(make_request(week_index=0), slow_compute)
    assert started.wait(timeout=5)

    latest = coalescer.submit(make_request(week_index=1), fast_compute)

    assert latest.result(timeout=5) == 'week 1'
    with pytest.raises(RequestCancelled):
        superseded.result(timeout=5)


def test_requests_for_other_listings_run_side_by_side(coalescer) -> None:
    def compute(request: SlotRequest, cancel_event: threading.Event) -> int:
        return request.listing_id

    first = coalescer.submit(make_request(listing_id=1), compute)
    second = coalescer.submit(make_request(listing_id=2), compute)

    assert (first.result(timeout=5), second.result(timeout=5)) == (1, 2)


def test_superseding_cancels_a_queued_request(clock: FakeClock) -> None:
    coalescer = RequestCoalescer(window_ms=200, clock=clock, max_workers=1)
    release = threading.Event()
    submitted = []

    def blocking(request: SlotRequest, cancel_event: threading.Event) -> str:
        release.wait(timeout=5)
        return 'done'

    try:
        coalescer.submit(make_request(listing_id=9), blocking)
        queued = coalescer.submit(make_request(week_index=0), blocking)
        superseding = threading.Thread(
            target=lambda: submitted.append(coalescer.submit(make_request(week_index=1), blocking)),
            daemon=True,
        )
        superseding.start()
        superseding.join(timeout=5)

        assert superseding.is_alive() is False
        assert len(submitted) == 1
        assert queued.cancelled() is True
        assert coalescer.in_flight_count() == 2
    finally:
        release.set()
        coalescer.shutdown()


def test_run_raises_request_cancelled_for_a_superseded_wait(clock: FakeClock) -> None:
    coalescer = RequestCoalescer(window_ms=200, clock=clock, max_workers=1)
    release = threading.Event()
    outcome = {}

    def blocking(request: SlotRequest, cancel_event: threading.Event) -> str:
        release.wait(timeout=5)
        return 'done'

    def waiter() -> None:
        try:
            coalescer.run(make_request(week_index=0), blocking, timeout=5)
        except RequestCancelled as exc:
            outcome['error'] = exc

    try:
        coalescer.submit(make_request(listing_id=9), blocking)
        thread = threading.Thread(target=waiter, daemon=True)
        thread.start()
        for _ in range(500):
            if coalescer.in_flight_count() == 2:
                break
            time.sleep(0.01)
        coalescer.submit(make_request(week_index=1), blocking)
        thread.join(timeout=5)

        assert isinstance(outcome.get('error'), RequestCancelled)
    finally:
        release.set()
        coalescer.shutdown()


def test_finished_requests_are_dropped_once_the_window_passes(coalescer, clock: FakeClock) -> None:
    def compute(request: SlotRequest, cancel_event: threading.Event) -> int:
        return request.listing_id

    assert coalescer.run(make_request(listing_id=1), compute, timeout=5) == 1
    assert coalescer.tracked_count() == 1

    clock.advance(250)
    assert coalescer.run(make_request(listing_id=2), compute, timeout=5) == 2

    assert coalescer.tracked_count() == 1
