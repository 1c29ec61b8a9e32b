"""Bounded-concurrency asset fetching with ordered, pull-based delivery."""

from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Deque, Iterable, Iterator, Optional, Tuple

from satchel.errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5


@dataclass
class FetchResult:
    index: int
    asset: Any
    data: Optional[bytes] = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BoundedFetcher:
    """Fetch assets through ``load_bytes`` with at most ``concurrency`` in flight.

    ``fetch`` is a generator: results come back in the caller's order, and
    new fetches are scheduled only as earlier results are taken, so a slow
    consumer holds at most ``concurrency`` fetched assets in memory no matter
    how many assets were requested. Each asset is loaded at most once.
    Per-asset failures are returned as ``FetchResult.error``, never raised.
    """

    def __init__(self, load_bytes: Callable[[Any], bytes], *, concurrency: int = DEFAULT_CONCURRENCY):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._load_bytes = load_bytes
        self.concurrency = concurrency

    def _load(self, asset: Any) -> Tuple[Optional[bytes], Optional[FetchError]]:
        asset_id = str(getattr(asset, "id", asset))
        try:
            data = self._load_bytes(asset)
        except Exception as exc:
            logger.warning("Fetch failed for asset %s: %s", asset_id, exc)
            return None, FetchError(f"Failed to fetch asset {asset_id}: {exc}", asset_id=asset_id)
        if not isinstance(data, (bytes, bytearray)):
            return None, FetchError(f"Asset {asset_id} loader returned {type(data).__name__}", asset_id=asset_id)
        return bytes(data), None

    def fetch(self, assets: Iterable[Any], concurrency: Optional[int] = None) -> Iterator[FetchResult]:
        items = list(assets)
        if not items:
            return
        limit = max(1, int(concurrency or self.concurrency))
        executor = ThreadPoolExecutor(max_workers=min(limit, len(items)), thread_name_prefix="satchel-fetch")
        window: Deque[Tuple[int, Future]] = deque()
        next_index = 0
        try:
            while next_index < len(items) and len(window) < limit:
                window.append((next_index, executor.submit(self._load, items[next_index])))
                next_index += 1

            while window:
                index, future = window.popleft()
                data, error = future.result()
                # Refill the freed slot before handing the result over.
                if next_index < len(items):
                    window.append((next_index, executor.submit(self._load, items[next_index])))
                    next_index += 1
                yield FetchResult(index=index, asset=items[index], data=data, error=error)
        finally:
            for _, future in window:
                future.cancel()
            executor.shutdown(wait=False, cancel_futures=True)
