"""Hit counter that turns a stream of hash distances into one stop decision."""

from __future__ import annotations

import logging
import time
from typing import Callable, List

log = logging.getLogger(__name__)


class DecisionEngine:
    """
    A distance <= max_distance is a hit. `required_hits` hits inside
    `window_sec` fire one trigger, then everything is ignored for
    `cooldown_sec` so near-identical frames cannot re-trigger before the
    stop has taken effect. Times come from `clock` (seconds).
    """

    def __init__(self, max_distance: int, required_hits: int, window_sec: float, cooldown_sec: float,
                 clock: Callable[[], float] = time.time):
        self.max_distance = max_distance
        self.required_hits = max(1, int(required_hits))
        self.window_sec = float(window_sec)
        self.cooldown_sec = float(cooldown_sec)
        self.clock = clock

        self.hits: List[float] = []
        self.cooldown_until: float = 0.0

    def register(self, distance: int) -> bool:
        now = self.clock()
        if now < self.cooldown_until:
            return False

        if distance <= self.max_distance:
            self.hits.append(now)
            self.hits = [t for t in self.hits if now - t <= self.window_sec]
            log.debug("hits=%d/%d (distance=%d)", len(self.hits), self.required_hits, distance)

        if len(self.hits) >= self.required_hits:
            self.hits = []
            self.cooldown_until = now + self.cooldown_sec
            return True

        return False

    def in_cooldown(self) -> bool:
        return self.clock() < self.cooldown_until
