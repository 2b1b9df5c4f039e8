"""Randomised page pacing scaled by time of day."""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)


@dataclass
class PacingConfig:
    """Delay range between two page fetches of the same session (seconds)."""

    min_delay: float = 8.0
    max_delay: float = 15.0
    night_multiplier: float = 1.5  # 22:00 - 06:59
    lunch_multiplier: float = 0.8  # 12:00 - 14:59


def time_of_day_multiplier(hour: int, config: Optional[PacingConfig] = None) -> float:
    config = config or PacingConfig()
    if hour >= 22 or hour <= 6:
        return config.night_multiplier
    if 12 <= hour <= 14:
        return config.lunch_multiplier
    return 1.0


class Pacer:
    """Sleeps a human-looking interval before each page."""

    def __init__(
        self,
        config: Optional[PacingConfig] = None,
        *,
        rng: Optional[random.Random] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config or PacingConfig()
        self._rng = rng or random.Random()
        self._now = now

    def next_delay(self) -> float:
        base = self._rng.uniform(self.config.min_delay, self.config.max_delay)
        return base * time_of_day_multiplier(self._now().hour, self.config)

    async def wait(self) -> float:
        """Sleep for ``next_delay()``; cancellable like any other await."""
        delay = self.next_delay()
        if delay > 0:
            LOGGER.debug("Pacing delay: %.2fs", delay)
            await asyncio.sleep(delay)
        return delay
