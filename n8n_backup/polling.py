"""Bounded fixed-interval polling."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollingPolicy:
    """Poll a predicate up to ``max_attempts`` times, ``interval`` seconds apart."""

    max_attempts: int = 24
    interval: float = 5.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    @property
    def budget(self) -> float:
        """Worst-case wall-clock seconds spent sleeping."""
        return max(self.max_attempts - 1, 0) * self.interval

    def wait_until(self, predicate: Callable[[], bool], label: str = "condition") -> bool:
        """Return True as soon as ``predicate`` holds, False when attempts run out."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                if predicate():
                    logger.info(f"[poll] {label} ready after {attempt} attempt(s)")
                    return True
            except Exception as e:
                logger.debug(f"[poll] {label} check raised: {e}")

            if attempt < self.max_attempts:
                logger.info(f"[poll] Waiting for {label} ({attempt}/{self.max_attempts})...")
                self.sleep(self.interval)

        logger.error(f"[poll] {label} not ready after {self.max_attempts} attempts")
        return False
