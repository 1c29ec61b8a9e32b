"""Bounded, ordered asset fetching."""

import random
import threading
import time
from types import SimpleNamespace

import pytest

from satchel.archive.fetcher import BoundedFetcher
from satchel.errors import FetchError


def _assets(count):
    return [SimpleNamespace(id=f"a{index}", storage_key=f"k{index}") for index in range(count)]


class _TrackingLoader:
    def __init__(self, *, delay=0.0, jitter=0.0, failing=()):
        self.delay = delay
        self.jitter = jitter
        self.failing = set(failing)
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, asset):
        with self._lock:
            self.calls.append(asset.storage_key)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delay + random.uniform(0, self.jitter))
            if asset.storage_key in self.failing:
                raise IOError("gone")
            return asset.storage_key.encode("utf-8")
        finally:
            with self._lock:
                self.active -= 1


def test_results_follow_input_order():
    loader = _TrackingLoader(jitter=0.01)
    fetcher = BoundedFetcher(loader, concurrency=4)

    results = list(fetcher.fetch(_assets(12)))

    assert [result.index for result in results] == list(range(12))
    assert [result.data for result in results] == [f"k{index}".encode() for index in range(12)]


def test_concurrency_is_bounded():
    loader = _TrackingLoader(delay=0.01)
    fetcher = BoundedFetcher(loader, concurrency=3)

    list(fetcher.fetch(_assets(15)))

    assert 1 <= loader.max_active <= 3


def test_each_asset_is_fetched_once():
    loader = _TrackingLoader(jitter=0.005)
    fetcher = BoundedFetcher(loader, concurrency=5)

    list(fetcher.fetch(_assets(20)))

    assert sorted(loader.calls) == sorted(f"k{index}" for index in range(20))


def test_fetching_is_driven_by_the_consumer():
    loader = _TrackingLoader()
    fetcher = BoundedFetcher(loader, concurrency=3)
    stream = fetcher.fetch(_assets(50))

    first = next(stream)
    # Give any scheduled work time to start.
    time.sleep(0.05)

    assert first.index == 0
    assert len(loader.calls) <= 4
    stream.close()


def test_failures_are_reported_inline():
    loader = _TrackingLoader(failing={"k2"})
    fetcher = BoundedFetcher(loader, concurrency=2)

    results = list(fetcher.fetch(_assets(4)))

    assert [result.ok for result in results] == [True, True, False, True]
    assert isinstance(results[2].error, FetchError)
    assert results[2].error.asset_id == "a2"
    assert results[2].data is None


def test_non_bytes_payload_is_a_fetch_error():
    fetcher = BoundedFetcher(lambda asset: "not-bytes", concurrency=1)

    (result,) = list(fetcher.fetch(_assets(1)))

    assert not result.ok
    assert "str" in str(result.error)


def test_empty_input_yields_nothing():
    assert list(BoundedFetcher(_TrackingLoader()).fetch([])) == []


def test_per_call_concurrency_override():
    loader = _TrackingLoader(delay=0.01)
    fetcher = BoundedFetcher(loader, concurrency=8)

    list(fetcher.fetch(_assets(10), concurrency=1))

    assert loader.max_active == 1


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        BoundedFetcher(_TrackingLoader(), concurrency=0)
