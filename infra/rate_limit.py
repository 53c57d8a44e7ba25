"""Per-endpoint request counters.

Each endpoint url gets a counter that resets once a full second has passed
since its last reset. An endpoint may be selected only while its counter is
below floor(capacity * safety); the safety share keeps us under the provider's
advertised limit instead of sitting exactly on it.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from bot import config


@dataclass
class RateCounter:
    count: int
    last_reset: float


class RateLimiter:
    def __init__(
        self,
        *,
        safety: Optional[float] = None,
        window_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.safety = float(safety if safety is not None else config.RPC_RATE_LIMIT_SAFETY)
        self.window_s = float(window_s)
        self._clock = clock
        self._counters: Dict[str, RateCounter] = {}

    def register(self, url: str) -> None:
        self._counters.setdefault(url, RateCounter(count=0, last_reset=self._clock()))

    def forget(self, url: str) -> None:
        self._counters.pop(url, None)

    def safe_limit(self, capacity: int) -> int:
        return int(math.floor(int(capacity) * self.safety))

    def can_request(self, url: str, capacity: int) -> bool:
        counter = self._counters.get(url)
        if counter is None:
            return True
        now = self._clock()
        if now - counter.last_reset >= self.window_s:
            counter.count = 0
            counter.last_reset = now
            return True
        return counter.count < self.safe_limit(capacity)

    def note_request(self, url: str) -> None:
        counter = self._counters.get(url)
        if counter is not None:
            counter.count += 1

    def count(self, url: str) -> int:
        counter = self._counters.get(url)
        return counter.count if counter is not None else 0
